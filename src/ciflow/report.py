# report.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .model import PipelineRun, Status, Verdict

EXIT_CODES = {
    Verdict.SUCCEEDED: 0,
    Verdict.FAILED: 1,
    Verdict.CANCELLED: 2,
}
EXIT_DEFINITION_ERROR = 3


@dataclass
class JobReport:
    name: str
    status: str
    duration: Optional[float] = None
    failing_step: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    artifacts: List[str] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "duration": None if self.duration is None else round(self.duration, 3),
            "failing_step": self.failing_step,
            "reason": self.reason,
            "attempts": self.attempts,
            "artifacts": list(self.artifacts),
            "steps": list(self.steps),
        }


@dataclass
class RunReport:
    run_id: str
    workflow: str
    verdict: str
    jobs: List[JobReport]
    counts: Dict[str, int]
    event: str = ""
    ref: str = ""
    group: Optional[str] = None
    cancel_reason: Optional[str] = None
    superseded_by: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[Verdict(self.verdict)]

    def job(self, name: str) -> JobReport:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "verdict": self.verdict,
            "event": self.event,
            "ref": self.ref,
            "group": self.group,
            "cancel_reason": self.cancel_reason,
            "superseded_by": self.superseded_by,
            "counts": dict(self.counts),
            "jobs": [j.to_dict() for j in self.jobs],
        }


def verdict_of(run: PipelineRun) -> Verdict:
    """
    Superseded runs are Cancelled. Otherwise any blocking Failed job fails
    the run; a run cancelled by an external signal is Cancelled; else
    Succeeded. Failures of continue-on-error jobs are reported but do not
    fail the run.
    """
    if run.superseded:
        return Verdict.CANCELLED
    defs = {j.name: j for j in run.definition.jobs}
    for name, ex in run.executions.items():
        if ex.status is Status.FAILED and not defs[name].continue_on_error:
            return Verdict.FAILED
    if run.cancelled or any(ex.status is Status.CANCELLED for ex in run.executions.values()):
        return Verdict.CANCELLED
    return Verdict.SUCCEEDED


def aggregate(run: PipelineRun) -> RunReport:
    """Collect terminal job states into the run verdict plus a per-job report."""
    verdict = verdict_of(run)
    order = run.definition.job_names
    jobs: List[JobReport] = []
    for name in order:
        ex = run.executions[name]
        jobs.append(
            JobReport(
                name=name,
                status=ex.status.value,
                duration=ex.duration,
                failing_step=ex.failing_step,
                reason=ex.reason,
                attempts=sum(s.attempts for s in ex.steps),
                artifacts=list(ex.artifacts),
                steps=[s.to_dict() for s in ex.steps],
            )
        )

    counts = Counter(j.status for j in jobs)
    return RunReport(
        run_id=run.id,
        workflow=run.definition.name,
        verdict=verdict.value,
        jobs=jobs,
        counts={s.value: counts.get(s.value, 0) for s in (Status.SUCCEEDED, Status.FAILED, Status.CANCELLED, Status.SKIPPED)},
        event=run.context.event,
        ref=run.context.ref,
        group=run.group_key,
        cancel_reason=run.cancel_reason,
        superseded_by=run.superseded_by,
    )


def exit_code(verdict: Verdict | str) -> int:
    return EXIT_CODES[Verdict(verdict)]
