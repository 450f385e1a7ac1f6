# model.py
from __future__ import annotations

import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Tuple


class Status(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset({Status.SUCCEEDED, Status.FAILED, Status.CANCELLED, Status.SKIPPED})


class Verdict(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


EVENT_KINDS = ("push", "pull_request", "pull_request_target", "schedule", "manual", "merge_group")


# ---------------------------------------------------------------------
# Definition side (immutable)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """How many times a step is attempted and which failures are worth another try."""
    max_attempts: int = 1
    delay: float = 0.0
    retry_on_timeout: bool = True
    fatal_exit_codes: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")


NO_RETRY = RetryPolicy()


@dataclass(frozen=True)
class Step:
    """
    A single unit of sequential work inside a job.

    Exactly one of `run` (shell command) or `uses` (action name) is set.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Mapping[str, Any] = field(default_factory=dict)
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Any = None          # parsed conditions.Expr or None
    timeout: float | None = None   # seconds
    retry: RetryPolicy = NO_RETRY
    continue_on_error: bool = False

    @property
    def kind(self) -> str:
        return "action" if self.uses else "run"


@dataclass(frozen=True)
class Job:
    """A CI job: ordered steps plus dependency edges and gating metadata."""
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    condition: Any = None
    continue_on_error: bool = False
    timeout: float | None = None   # seconds
    env: Mapping[str, str] = field(default_factory=dict)
    display_name: str | None = None


@dataclass(frozen=True)
class EventFilter:
    """Per-event-kind trigger predicate."""
    branches: Tuple[str, ...] | None = None
    types: Tuple[str, ...] | None = None
    draft: bool | None = None      # required draft flag, None = either


@dataclass(frozen=True)
class ConcurrencySpec:
    group: str                         # template, e.g. "${{ github.workflow }}-${{ github.ref }}"
    cancel_in_progress: Any = True     # bool or parsed conditions.Expr


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[Job, ...]
    triggers: Mapping[str, EventFilter] = field(default_factory=dict)
    concurrency: ConcurrencySpec | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    vars: Mapping[str, Any] = field(default_factory=dict)
    actions: Mapping[str, Callable[..., Any]] = field(default_factory=dict)
    source: str | None = None

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]


# ---------------------------------------------------------------------
# Run side (mutable)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """An incoming repository event."""
    kind: str
    ref: str
    draft: bool = False
    action: str | None = None          # activity sub-type, e.g. "opened"
    base_ref: str | None = None        # PR target branch
    actor: str | None = None
    sha: str | None = None


@dataclass(frozen=True)
class RunContext:
    event: str
    ref: str
    draft: bool = False
    action: str | None = None
    base_ref: str | None = None
    actor: str | None = None
    sha: str | None = None
    workflow: str = ""
    protected: bool = False
    vars: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass
class StepResult:
    name: str
    status: Status
    attempts: int = 0
    exit_code: int | None = None
    error: str | None = None
    fatal: bool = False
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (Status.SUCCEEDED, Status.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "exit_code": self.exit_code,
            "error": self.error,
            "duration": round(self.duration, 3),
        }


_seq = itertools.count()


@dataclass
class JobExecution:
    """Per-run mutable state of one Job."""
    name: str
    status: Status = Status.PENDING
    started_at: float | None = None
    finished_at: float | None = None
    reason: str | None = None
    failing_step: str | None = None
    steps: List[StepResult] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    # (status, global sequence number) for ordering checks
    transitions: List[Tuple[Status, int]] = field(default_factory=list)

    def transition(self, status: Status, reason: str | None = None) -> None:
        if self.status.terminal:
            raise RuntimeError(f"job {self.name!r} already terminal ({self.status.value})")
        self.status = status
        self.transitions.append((status, next(_seq)))
        if status is Status.RUNNING:
            self.started_at = time.time()
        if status.terminal:
            self.finished_at = time.time()
        if reason is not None:
            self.reason = reason

    def seq_of(self, status: Status) -> int | None:
        for s, n in self.transitions:
            if s is status:
                return n
        return None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass(eq=False)
class PipelineRun:
    definition: PipelineDefinition
    context: RunContext
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    group_key: str | None = None
    protected: bool = False
    executions: Dict[str, JobExecution] = field(default_factory=dict)
    verdict: Verdict | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    cancel_reason: str | None = None
    superseded_by: str | None = None

    def __post_init__(self) -> None:
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        for j in self.definition.jobs:
            self.executions.setdefault(j.name, JobExecution(name=j.name))

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def superseded(self) -> bool:
        return self.superseded_by is not None

    @property
    def terminal(self) -> bool:
        return self.verdict is not None

    def cancel(self, reason: str = "cancelled", *, superseded_by: str | None = None) -> bool:
        """
        Signal cancellation. Returns False if the run already finished.

        A superseded run is terminal (Cancelled) from this instant on; its
        scheduler still drains in-flight steps cooperatively.
        """
        with self._lock:
            if self.verdict is not None:
                return False
            if not self._cancel.is_set():
                self.cancel_reason = reason
                self.superseded_by = superseded_by
                self._cancel.set()
            if superseded_by is not None:
                self.verdict = Verdict.CANCELLED
            return True

    def finish(self, verdict: Verdict) -> None:
        with self._lock:
            if not self.superseded:
                self.verdict = verdict
            self.finished_at = time.time()

    @property
    def done(self) -> bool:
        """True once the scheduler has drained (finished_at recorded)."""
        return self.finished_at is not None

    def statuses(self) -> Dict[str, Status]:
        return {name: ex.status for name, ex in self.executions.items()}
