# retry.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import ArtifactError, StepCancelled, StepFailure, StepTimeout
from .model import NO_RETRY, RetryPolicy, Status, Step, StepResult


@dataclass
class CommandResult:
    """What an external command/action hands back for one attempt."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""


# invoke(step, timeout_seconds_or_None) -> CommandResult
# may raise StepTimeout, StepCancelled, StepFailure or anything else
Invoke = Callable[[Step, Optional[float]], CommandResult]


@dataclass
class RetryState:
    """
    Attempt bookkeeping for one step: how many attempts ran, when the next
    one may start, and the error that ended the last one.
    """
    policy: RetryPolicy
    attempts: int = 0
    next_eligible_at: float = 0.0
    last_error: Optional[StepFailure] = None
    succeeded: bool = False

    def retryable(self, err: StepFailure) -> bool:
        if err.fatal:
            return False
        if isinstance(err, StepTimeout):
            return self.policy.retry_on_timeout
        if err.exit_code is not None and err.exit_code in self.policy.fatal_exit_codes:
            return False
        return True

    def record_failure(self, err: StepFailure, now: float) -> None:
        self.attempts += 1
        self.last_error = err
        self.next_eligible_at = now + self.policy.delay

    def record_success(self) -> None:
        self.attempts += 1
        self.last_error = None
        self.succeeded = True

    @property
    def exhausted(self) -> bool:
        if self.succeeded:
            return False
        if self.attempts >= self.policy.max_attempts:
            return True
        return self.last_error is not None and not self.retryable(self.last_error)

    def wait_time(self, now: float) -> float:
        return max(0.0, self.next_eligible_at - now)


class RetryExecutor:
    """
    Runs one step under its RetryPolicy and timeout.

    Cancellation is cooperative: the run's cancel event is checked before
    every attempt and while waiting between attempts; `invoke` is expected
    to raise StepCancelled if it notices the signal mid-command.
    """

    def __init__(
        self,
        invoke: Invoke,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_retry: Optional[Callable[[Step, RetryState], None]] = None,
    ):
        self._invoke = invoke
        self._clock = clock
        self._on_retry = on_retry

    def run(
        self,
        step: Step,
        policy: Optional[RetryPolicy] = None,
        *,
        job: str = "",
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> StepResult:
        policy = policy or step.retry or NO_RETRY
        cancel_event = cancel_event or threading.Event()
        state = RetryState(policy=policy)
        started = self._clock()

        def result(status: Status, err: Optional[StepFailure] = None, out: Optional[CommandResult] = None) -> StepResult:
            return StepResult(
                name=step.name,
                status=status,
                attempts=state.attempts,
                exit_code=(out.exit_code if out else (err.exit_code if err else None)),
                error=(str(err.message) if err else None),
                fatal=bool(err and err.fatal),
                duration=self._clock() - started,
                stdout=(out.stdout if out else (err.stdout if err else "")),
                stderr=(out.stderr if out else (err.stderr if err else "")),
            )

        while True:
            if cancel_event.is_set():
                return result(Status.CANCELLED, state.last_error)

            timeout, job_limited = self._attempt_timeout(step, deadline)
            if timeout is not None and timeout <= 0:
                err = StepTimeout(job, step.name, step.timeout or 0.0, cmd=step.run)
                err.fatal = True
                err.message = "job timeout exceeded"
                state.record_failure(err, self._clock())
                return result(Status.FAILED, err)

            try:
                out = self._invoke(step, timeout)
            except StepCancelled:
                return result(Status.CANCELLED, state.last_error)
            except StepTimeout as e:
                if job_limited:
                    e.fatal = True
                    e.message = "job timeout exceeded"
                state.record_failure(e, self._clock())
            except StepFailure as e:
                state.record_failure(e, self._clock())
            except ArtifactError as e:
                err = StepFailure(job, step.name, f"{e.kind}: {e.message}", cmd=step.run or step.uses, fatal=True)
                state.record_failure(err, self._clock())
            except Exception as e:
                err = StepFailure(job, step.name, f"{type(e).__name__}: {e}", cmd=step.run or step.uses)
                state.record_failure(err, self._clock())
            else:
                if out.exit_code == 0:
                    state.record_success()
                    return result(Status.SUCCEEDED, out=out)
                err = StepFailure(
                    job,
                    step.name,
                    f"exited with {out.exit_code}",
                    exit_code=out.exit_code,
                    cmd=step.run or step.uses,
                    stdout=out.stdout,
                    stderr=out.stderr,
                )
                state.record_failure(err, self._clock())

            if state.exhausted:
                return result(Status.FAILED, state.last_error)

            if self._on_retry is not None:
                self._on_retry(step, state)
            if cancel_event.wait(state.wait_time(self._clock())):
                return result(Status.CANCELLED, state.last_error)

    def _attempt_timeout(self, step: Step, deadline: Optional[float]) -> tuple[Optional[float], bool]:
        """(timeout for the next attempt, whether the job deadline is the binding limit)"""
        step_t = step.timeout
        if deadline is None:
            return step_t, False
        remaining = deadline - self._clock()
        if step_t is None or remaining < step_t:
            return remaining, True
        return step_t, False
