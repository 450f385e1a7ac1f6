# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the persisted run log
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            if v is None or v == "":
                continue
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(CIError):
    """The pipeline definition is invalid; the run never starts."""

    def __init__(self, message: str, problems: Optional[List[str]] = None, *, source: str | None = None):
        self.problems = list(problems or [message])
        super().__init__(
            kind="DefinitionError",
            message=message,
            details={"source": source, "problems": "; ".join(self.problems)},
        )


class TriggerRejected(CIError):
    """The event does not start a run. Not a failure."""

    def __init__(self, reason: str, *, workflow: str | None = None):
        self.reason = reason
        super().__init__(kind="TriggerRejected", message=reason, details={"workflow": workflow})


class StepFailure(CIError):
    """A step attempt finished with a non-zero status."""

    def __init__(
        self,
        job: str,
        step: str,
        message: str,
        *,
        exit_code: int | None = None,
        cmd: str | None = None,
        stdout: str = "",
        stderr: str = "",
        fatal: bool = False,
        kind: str = "StepFailure",
    ):
        self.job = job
        self.step = step
        self.exit_code = exit_code
        self.cmd = cmd
        self.stdout = stdout
        self.stderr = stderr
        self.fatal = fatal
        super().__init__(
            kind=kind,
            message=message,
            details={"job": job, "step": step, "exit": exit_code, "cmd": cmd},
        )


class StepTimeout(StepFailure):
    """A step attempt exceeded its deadline."""

    def __init__(self, job: str, step: str, timeout: float, *, cmd: str | None = None, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        super().__init__(
            job,
            step,
            f"timed out after {timeout:g}s",
            cmd=cmd,
            stdout=stdout,
            stderr=stderr,
            kind="StepTimeout",
        )


class StepCancelled(CIError):
    """Raised inside a step when the run's cancellation signal is observed."""

    def __init__(self, job: str, step: str):
        super().__init__(kind="StepCancelled", message="cancelled", details={"job": job, "step": step})


class DependencyFailed(CIError):
    """A job did not run because a prerequisite failed, was cancelled or was skipped."""

    def __init__(self, job: str, dependency: str, dependency_status: str):
        self.job = job
        self.dependency = dependency
        super().__init__(
            kind="DependencyFailed",
            message=f"dependency '{dependency}' {dependency_status}",
            details={"job": job},
        )


class ArtifactError(CIError):
    pass


class ArtifactNotFound(ArtifactError):
    def __init__(self, run_id: str, name: str, reason: str = "not found"):
        self.run_id = run_id
        self.name = name
        super().__init__(kind="ArtifactNotFound", message=f"artifact '{name}' {reason}", details={"run": run_id})


class DuplicateArtifact(ArtifactError):
    def __init__(self, run_id: str, name: str, producer: str):
        self.run_id = run_id
        self.name = name
        super().__init__(
            kind="DuplicateArtifact",
            message=f"artifact '{name}' was already written by job '{producer}'",
            details={"run": run_id},
        )


class CancelledBySupersession(CIError):
    """The run was cancelled because a newer run took its concurrency group."""

    def __init__(self, run_id: str, group: str, superseded_by: str):
        self.run_id = run_id
        self.group = group
        self.superseded_by = superseded_by
        super().__init__(
            kind="CancelledBySupersession",
            message=f"superseded by run {superseded_by}",
            details={"run": run_id, "group": group},
        )


class ExpressionError(CIError):
    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(kind="ExpressionError", message=message, details={"expression": expression})
