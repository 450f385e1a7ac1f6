# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .conditions import parse
from .model import (
    EVENT_KINDS,
    NO_RETRY,
    ConcurrencySpec,
    EventFilter,
    Job,
    PipelineDefinition,
    RetryPolicy,
    Step,
)
from .triggers import normalize_kind


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    retry: Union[RetryPolicy, int, None] = None,
    condition: Any = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a shell step. `retry` may be a RetryPolicy or a max attempt count."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        retry=_retry(retry),
        condition=parse(condition),
        continue_on_error=continue_on_error,
    )


def uses(
    name: str,
    action: str,
    /,
    *,
    with_: Optional[Mapping[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    retry: Union[RetryPolicy, int, None] = None,
    condition: Any = None,
    continue_on_error: bool = False,
    **params: Any,
) -> Step:
    """
    Create an action step.

        uses("upload", "upload-artifact", name="build", path="dist/")
    """
    merged = dict(with_ or {})
    merged.update(params)
    return Step(
        name=name,
        uses=action,
        with_=merged,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        retry=_retry(retry),
        condition=parse(condition),
        continue_on_error=continue_on_error,
    )


action = uses


def retry(max_attempts: int = 3, *, delay: float = 0.0, retry_on_timeout: bool = True, fatal_exit_codes: Iterable[int] = ()) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        delay=delay,
        retry_on_timeout=retry_on_timeout,
        fatal_exit_codes=tuple(fatal_exit_codes),
    )


def _retry(value: Union[RetryPolicy, int, None]) -> RetryPolicy:
    if value is None:
        return NO_RETRY
    if isinstance(value, RetryPolicy):
        return value
    return RetryPolicy(max_attempts=int(value))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    condition: Any = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    display_name: str | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        condition=parse(condition),
        continue_on_error=continue_on_error,
        timeout=timeout,
        env={k: str(v) for k, v in (env or {}).items()},
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: Any = None
        self._continue_on_error = False
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action_name: str, **params: Any):
        self._steps.append(uses(name, action_name, **params))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def when(self, condition: Any):
        self._condition = condition
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            *self._steps,
            needs=self._needs,
            condition=self._condition,
            continue_on_error=self._continue_on_error,
            timeout=self._timeout,
            env=self._env,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers / concurrency / pipeline
# ---------------------------------------------------------------------

def trigger(
    kind: str,
    *,
    branches: Optional[Iterable[str]] = None,
    types: Optional[Iterable[str]] = None,
    draft: bool | None = None,
) -> tuple[str, EventFilter]:
    return normalize_kind(kind), EventFilter(
        branches=tuple(branches) if branches is not None else None,
        types=tuple(types) if types is not None else None,
        draft=draft,
    )


def concurrency(group: str, *, cancel_in_progress: Any = True) -> ConcurrencySpec:
    cip = cancel_in_progress if isinstance(cancel_in_progress, bool) else parse(cancel_in_progress)
    return ConcurrencySpec(group=group, cancel_in_progress=cip)


def _flatten(items: Iterable[Any]) -> List[Job]:
    out: List[Job] = []
    for it in items:
        if isinstance(it, Job):
            out.append(it)
        else:
            out.extend(_flatten(it))
    return out


def pipeline(
    name: str,
    *jobs: Union[Job, Iterable[Job]],
    on: Union[str, Iterable[Any], Mapping[str, Any], None] = None,
    concurrency: Union[ConcurrencySpec, str, None] = None,
    env: Optional[Dict[str, str]] = None,
    vars: Optional[Dict[str, Any]] = None,
    actions: Optional[Mapping[str, Callable[..., Any]]] = None,
) -> PipelineDefinition:
    """
    Declare a whole pipeline.

        pipeline(
            "ci",
            job("build", sh("make", "make")),
            matrix("py", ["3.11", "3.12"]).jobs(lambda v: job(f"test-{v}", ..., needs=["build"])),
            on=[trigger("push", branches=["main"]), "pull_request"],
            concurrency="${{ github.workflow }}-${{ github.ref }}",
        )

    `on` defaults to every event kind.
    """
    if isinstance(concurrency, str):
        concurrency = ConcurrencySpec(group=concurrency)
    return PipelineDefinition(
        name=name,
        jobs=tuple(_flatten(jobs)),
        triggers=_triggers(on),
        concurrency=concurrency,
        env={k: str(v) for k, v in (env or {}).items()},
        vars=dict(vars or {}),
        actions=dict(actions or {}),
    )


def _triggers(on: Union[str, Iterable[Any], Mapping[str, Any], None]) -> Dict[str, EventFilter]:
    if on is None:
        return {k: EventFilter() for k in EVENT_KINDS}
    if isinstance(on, str):
        return {normalize_kind(on): EventFilter()}
    if isinstance(on, Mapping):
        out: Dict[str, EventFilter] = {}
        for kind, filt in on.items():
            out[normalize_kind(kind)] = filt if isinstance(filt, EventFilter) else EventFilter()
        return out
    out = {}
    for item in on:
        if isinstance(item, str):
            out[normalize_kind(item)] = EventFilter()
        else:
            kind, filt = item
            out[kind] = filt
    return out


def wf(*jobs: Job) -> List[Job]:
    """
    Workflow helper for job-list files:

        def workflow():
            return wf(job(...), job(...))

    A bare job list is accepted on every event kind. Use pipeline() for
    triggers and concurrency.
    """
    return list(jobs)
