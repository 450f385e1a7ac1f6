# actions.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .artifacts import Artifact, ArtifactStore, pack_files, unpack_files
from .errors import StepCancelled, StepFailure


@dataclass
class ActionResult:
    exit_code: int = 0
    output: str = ""


@dataclass
class ActionContext:
    """Everything an action handler may touch while it runs."""
    run_id: str
    job: str
    step: str
    params: Mapping[str, Any]
    workspace: Path
    env: Mapping[str, str]
    artifacts: ArtifactStore
    cancel_event: threading.Event = field(default_factory=threading.Event)
    log: Callable[[str], None] = print

    def param(self, name: str, default: Any = None, *, required: bool = False) -> Any:
        for key in (name, name.replace("-", "_"), name.replace("_", "-")):
            if key in self.params:
                return self.params[key]
        if required:
            raise StepFailure(self.job, self.step, f"missing required input '{name}'", fatal=True)
        return default

    def put_artifact(self, name: str, payload: bytes, manifest: Optional[Dict] = None) -> Artifact:
        # an attempt abandoned on timeout or cancel must not publish
        if self.cancel_event.is_set():
            raise StepCancelled(self.job, self.step)
        return self.artifacts.put(self.run_id, name, payload, producer=self.job, manifest=manifest)

    def get_artifact(self, name: str) -> bytes:
        return self.artifacts.get(self.run_id, name, reader=self.job)


ActionHandler = Callable[[ActionContext], Optional[ActionResult]]


def normalize_action(name: str) -> str:
    """'actions/upload-artifact@v3' -> 'upload-artifact'"""
    base = name.split("@", 1)[0].rstrip("/")
    return base.rsplit("/", 1)[-1].lower()


def _patterns(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def upload_artifact(ctx: ActionContext) -> ActionResult:
    name = str(ctx.param("name", required=True))
    patterns = _patterns(ctx.param("path", required=True))
    on_missing = str(ctx.param("if-no-files-found", "warn")).lower()

    payload, manifest = pack_files(ctx.workspace, patterns)
    count = len(manifest.get("files", []))
    if count == 0:
        msg = f"no files found for artifact '{name}' (patterns: {patterns})"
        if on_missing == "error":
            raise StepFailure(ctx.job, ctx.step, msg)
        if on_missing == "warn":
            ctx.log(f"warning: {msg}")
        return ActionResult(output=msg)

    ctx.put_artifact(name, payload, manifest)
    return ActionResult(output=f"uploaded artifact '{name}' ({count} files, {len(payload)} bytes)")


def download_artifact(ctx: ActionContext) -> ActionResult:
    name = str(ctx.param("name", required=True))
    dest = ctx.param("path") or "."
    target = Path(str(dest)).expanduser()
    if not target.is_absolute():
        target = ctx.workspace / target

    payload = ctx.get_artifact(name)
    files = unpack_files(payload, target)
    return ActionResult(output=f"downloaded artifact '{name}' ({len(files)} files) to {target}")


def checkout(ctx: ActionContext) -> ActionResult:
    # sources are provisioned by the host; nothing to fetch locally
    return ActionResult(output=f"workspace: {ctx.workspace}")


BUILTIN_ACTIONS: Dict[str, ActionHandler] = {
    "upload-artifact": upload_artifact,
    "download-artifact": download_artifact,
    "checkout": checkout,
}


class ActionRegistry:
    """Maps normalized action names to handlers."""

    def __init__(self, handlers: Optional[Mapping[str, ActionHandler]] = None, *, builtins: bool = True):
        self._handlers: Dict[str, ActionHandler] = {}
        if builtins:
            self._handlers.update(BUILTIN_ACTIONS)
        for name, fn in (handlers or {}).items():
            self.register(name, fn)

    def register(self, name: str, handler: ActionHandler) -> None:
        if not callable(handler):
            raise TypeError(f"action handler for {name!r} must be callable")
        self._handlers[normalize_action(name)] = handler

    def action(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of register()."""
        def deco(fn: ActionHandler) -> ActionHandler:
            self.register(name, fn)
            return fn
        return deco

    def get(self, name: str) -> ActionHandler:
        return self._handlers[normalize_action(name)]

    def __contains__(self, name: str) -> bool:
        return normalize_action(name) in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def with_overrides(self, handlers: Mapping[str, ActionHandler]) -> "ActionRegistry":
        merged = ActionRegistry(builtins=False)
        merged._handlers.update(self._handlers)
        for name, fn in handlers.items():
            merged.register(name, fn)
        return merged
