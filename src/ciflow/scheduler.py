# scheduler.py
from __future__ import annotations

import os
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

from .artifacts import ArtifactStore
from .conditions import EvalContext, evaluate
from .dag import ancestors, build_dag
from .errors import DependencyFailed
from .executor import StepContext, StepExecutor, hint_for
from .model import Job, PipelineRun, Status, StepResult
from .retry import RetryExecutor, RetryState
from .ui.console import Console, get_console

# a dependency in one of these states keeps its dependents from running
_BLOCKING = frozenset({Status.FAILED, Status.CANCELLED})


def default_parallelism() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Drives every job of one PipelineRun to a terminal state.

    The loop is event-driven: it blocks until some in-flight job finishes,
    settles that job, unlocks its dependents and fills free slots with newly
    runnable jobs. Jobs execute on a bounded thread pool; steps of a job run
    strictly in sequence on the job's worker.
    """

    def __init__(
        self,
        run: PipelineRun,
        *,
        executor: StepExecutor,
        artifacts: ArtifactStore,
        workspace: str | Path = ".",
        max_parallel: Optional[int] = None,
        base_env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.run = run
        self.executor = executor
        self.artifacts = artifacts
        self.workspace = Path(workspace).resolve()
        self.max_parallel = max(1, max_parallel or default_parallelism())
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.console = console or get_console()
        self._clock = clock

        self.jobs: Dict[str, Job] = {j.name: j for j in run.definition.jobs}
        self.adj, indeg = build_dag(run.definition.jobs)
        self._remaining: Dict[str, int] = dict(indeg)
        self._ready: Deque[str] = deque()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def execute(self) -> Dict[str, Status]:
        run = self.run
        self.artifacts.register_run(run.id, ancestors(run.definition.jobs))

        for name in sorted(self.jobs):
            ex = run.executions[name]
            if self.jobs[name].needs:
                ex.transition(Status.WAITING)
            else:
                ex.transition(Status.RUNNABLE)
                self._ready.append(name)

        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(
            max_workers=self.max_parallel,
            thread_name_prefix=f"ciflow-{run.id[:8]}",
        ) as pool:
            while True:
                if run.cancelled:
                    self._cancel_unstarted()

                # fill free slots with runnable jobs
                while self._ready and len(in_flight) < self.max_parallel:
                    name = self._ready.popleft()
                    if run.executions[name].status.terminal:
                        continue
                    if not self._condition_holds(name):
                        self._settle(name, Status.SKIPPED, "condition false")
                        continue
                    run.executions[name].transition(Status.RUNNING)
                    self.console.print_job_start(name)
                    in_flight[pool.submit(self._run_job, name)] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-runnable jobs
                done, _pending = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        status, reason = fut.result()
                    except Exception as e:
                        status, reason = Status.FAILED, f"{type(e).__name__}: {e}"
                        self.console.print_exception(e)
                    self._settle(name, status, reason)

        return run.statuses()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _settle(self, name: str, status: Status, reason: Optional[str]) -> None:
        """Move a job to a terminal state and unlock (or skip) its dependents."""
        ex = self.run.executions[name]
        ex.transition(status, reason)
        ex.artifacts = [a.name for a in self.artifacts.list(self.run.id) if a.producer == name]

        if status is Status.SKIPPED:
            self.console.print_job_skipped(name, reason or "skipped")
        else:
            self.console.print_job_finished(name, status.value, ex.duration)

        for child in sorted(self.adj[name]):
            self._remaining[child] -= 1
            if self._remaining[child] == 0 and not self.run.executions[child].status.terminal:
                self._unlock(child)

    def _unlock(self, name: str) -> None:
        """Waiting -> Runnable, or straight to Skipped/Cancelled."""
        if self.run.cancelled:
            self._settle(name, Status.CANCELLED, self.run.cancel_reason)
            return

        for need in self.jobs[name].needs:
            dep_status = self.run.executions[need].status
            blocked = dep_status is Status.SKIPPED or (
                dep_status in _BLOCKING and not self.jobs[need].continue_on_error
            )
            if blocked:
                reason = DependencyFailed(name, need, dep_status.value).message
                self._settle(name, Status.SKIPPED, reason)
                return

        self.run.executions[name].transition(Status.RUNNABLE)
        self._ready.append(name)

    def _cancel_unstarted(self) -> None:
        reason = self.run.cancel_reason or "run cancelled"
        self._ready.clear()
        for name in sorted(self.jobs):
            ex = self.run.executions[name]
            if not ex.status.terminal and ex.status is not Status.RUNNING:
                ex.transition(Status.CANCELLED, reason)
                self.console.print_job_finished(name, Status.CANCELLED.value)

    def _condition_holds(self, name: str) -> bool:
        job = self.jobs[name]
        if job.condition is None:
            return True
        ctx = EvalContext.for_run(
            self.run.context,
            self.run.statuses(),
            needs=job.needs,
            cancelled=self.run.cancelled,
            env=job.env,
        )
        return evaluate(job.condition, ctx)

    # ------------------------------------------------------------------
    # Job worker
    # ------------------------------------------------------------------

    def _run_job(self, name: str) -> Tuple[Status, Optional[str]]:
        run = self.run
        job = self.jobs[name]
        ex = run.executions[name]
        sctx = StepContext(
            run=run,
            job=job,
            workspace=self.workspace,
            artifacts=self.artifacts,
            base_env=self.base_env,
        )

        def on_retry(step, state: RetryState) -> None:
            err = state.last_error.message if state.last_error else None
            self.console.print_step_retry(name, step.name, state.attempts, state.policy.max_attempts, err)

        retry = RetryExecutor(lambda s, t: self.executor.invoke(sctx, s, t), clock=self._clock, on_retry=on_retry)
        deadline = self._clock() + job.timeout if job.timeout is not None else None
        step_failed = False

        for step in job.steps:
            if run.cancelled:
                return Status.CANCELLED, run.cancel_reason

            if step.condition is not None:
                ctx = EvalContext.for_run(
                    run.context,
                    run.statuses(),
                    needs=job.needs,
                    cancelled=run.cancelled,
                    step_failed=step_failed,
                    env={**job.env, **step.env},
                )
                if not evaluate(step.condition, ctx):
                    ex.steps.append(StepResult(name=step.name, status=Status.SKIPPED))
                    self.console.print_step_skipped(name, step.name)
                    continue

            self.console.print_step(name, step.name)
            result = retry.run(step, step.retry, job=name, cancel_event=run.cancel_event, deadline=deadline)
            ex.steps.append(result)

            if result.status is Status.CANCELLED:
                return Status.CANCELLED, run.cancel_reason

            if result.status is Status.FAILED:
                self.console.print_failure(
                    f"{name} / {step.name}",
                    result.error or "failed",
                    exit_code=result.exit_code,
                    hint=hint_for(step.run, result.exit_code),
                    output=result.stderr or result.stdout,
                )
                if step.continue_on_error and not result.fatal:
                    step_failed = True
                    continue
                ex.failing_step = step.name
                return Status.FAILED, result.error

        return Status.SUCCEEDED, None

