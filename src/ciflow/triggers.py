# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Any, Iterable, Mapping, Optional

from .model import EVENT_KINDS, Event, EventFilter, PipelineDefinition, RunContext

KIND_ALIASES = {
    "workflow_dispatch": "manual",
    "dispatch": "manual",
}

# kinds whose branch filter applies to the target (base) branch, not the ref
_BASE_FILTERED = frozenset({"pull_request", "pull_request_target", "merge_group"})


@dataclass(frozen=True)
class TriggerDecision:
    accepted: bool
    context: Optional[RunContext] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, context: RunContext) -> "TriggerDecision":
        return cls(True, context=context)

    @classmethod
    def reject(cls, reason: str) -> "TriggerDecision":
        return cls(False, reason=reason)


def normalize_kind(kind: str) -> str:
    kind = kind.strip().lower()
    return KIND_ALIASES.get(kind, kind)


def branch_name(ref: str | None) -> str:
    """refs/heads/main -> main, refs/tags/v1 -> v1, anything else unchanged."""
    if not ref:
        return ""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def is_protected(ref: str | None, protected_branches: Iterable[str]) -> bool:
    if not ref or not ref.startswith("refs/heads/"):
        return False
    name = branch_name(ref)
    return any(fnmatch(name, p) for p in protected_branches)


def _branch_matches(ref: str, patterns: Iterable[str]) -> bool:
    name = branch_name(ref)
    return any(fnmatch(name, p) or fnmatch(ref, p) for p in patterns)


def evaluate_trigger(
    definition: PipelineDefinition,
    event: Event,
    *,
    protected_branches: Iterable[str] = ("main",),
    vars: Optional[Mapping[str, Any]] = None,
) -> TriggerDecision:
    """
    Decide whether `event` starts a run of `definition`.

    Pure function: returns Accept(initial context) or Reject(reason).
    """
    kind = normalize_kind(event.kind)
    if kind not in EVENT_KINDS:
        return TriggerDecision.reject(f"unknown event kind '{event.kind}'")

    filt: EventFilter | None = definition.triggers.get(kind)
    if filt is None:
        declared = sorted(definition.triggers)
        return TriggerDecision.reject(f"event '{kind}' is not a trigger of '{definition.name}' (declared: {declared})")

    if filt.types is not None and event.action not in filt.types:
        return TriggerDecision.reject(
            f"activity type '{event.action}' not in declared types {list(filt.types)}"
        )

    if filt.draft is not None and bool(event.draft) != filt.draft:
        state = "draft" if event.draft else "ready"
        return TriggerDecision.reject(f"{kind} is {state}; trigger requires draft={str(filt.draft).lower()}")

    if filt.branches:
        target = event.ref
        if kind in _BASE_FILTERED and event.base_ref:
            target = event.base_ref
        if not _branch_matches(target, filt.branches):
            return TriggerDecision.reject(
                f"branch '{branch_name(target)}' does not match {list(filt.branches)}"
            )

    merged_vars = dict(definition.vars)
    if vars:
        merged_vars.update(vars)

    context = RunContext(
        event=kind,
        ref=event.ref,
        draft=bool(event.draft),
        action=event.action,
        base_ref=event.base_ref,
        actor=event.actor,
        sha=event.sha,
        workflow=definition.name,
        protected=is_protected(event.ref, protected_branches),
        vars=merged_vars,
        env=dict(definition.env),
    )
    return TriggerDecision.accept(context)
