# engine.py
from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .actions import ActionRegistry
from .artifacts import ArtifactStore
from .concurrency import Admission, ConcurrencyController
from .dag import validate
from .errors import TriggerRejected
from .executor import StepExecutor
from .history import RunHistory
from .model import Event, PipelineDefinition, PipelineRun
from .report import RunReport, aggregate, verdict_of
from .scheduler import Scheduler
from .triggers import evaluate_trigger
from .ui.console import Console, get_console


class Engine:
    """
    Orchestrator for pipeline runs.

    event -> trigger decision -> concurrency registration (may supersede a
    prior run) -> scheduler walks the job graph -> aggregated report ->
    persisted run log, artifact retention.

    All cross-run state (the concurrency registry, the artifact store, the
    run index) lives on the instance, so independent engines never interact.
    """

    def __init__(
        self,
        *,
        controller: Optional[ConcurrencyController] = None,
        artifacts: Optional[ArtifactStore] = None,
        actions: Optional[ActionRegistry] = None,
        history: Optional[RunHistory] = None,
        workspace: str | Path = ".",
        max_parallel: Optional[int] = None,
        protected_branches: Iterable[str] = ("main",),
        kill_grace: float = 10.0,
        base_env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.controller = controller or ConcurrencyController()
        self.artifacts = artifacts or ArtifactStore()
        self.actions = actions or ActionRegistry()
        self.history = history
        self.workspace = Path(workspace)
        self.max_parallel = max_parallel
        self.protected_branches = tuple(protected_branches)
        self.kill_grace = kill_grace
        self.base_env = base_env
        self.console = console or get_console()

        self._runs: Dict[str, PipelineRun] = {}
        self._reports: Dict[str, RunReport] = {}
        self._lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Lifecycle of one run
    # ------------------------------------------------------------------

    def start(
        self,
        definition: PipelineDefinition,
        event: Event,
        *,
        vars: Optional[Mapping[str, Any]] = None,
    ) -> PipelineRun:
        """
        Accept an event: create the run and register it with its concurrency
        group. Raises DefinitionError for an invalid job graph and
        TriggerRejected if the event does not start a run.
        """
        validate(definition.jobs)

        decision = evaluate_trigger(
            definition,
            event,
            protected_branches=self.protected_branches,
            vars=vars,
        )
        if not decision.accepted or decision.context is None:
            raise TriggerRejected(decision.reason or "rejected", workflow=definition.name)

        run = PipelineRun(definition=definition, context=decision.context)

        if definition.concurrency is not None:
            key, protected = self.controller.resolve(definition.concurrency, run.context)
            admission: Admission = self.controller.register(key, run, protected=protected)
            for prior in admission.cancelled:
                self.console.print_run_superseded(prior.id, run.id)

        with self._lock:
            self._runs[run.id] = run
        return run

    def execute(self, run: PipelineRun) -> RunReport:
        """Drive a started run to completion and report it."""
        self.console.print_run_started(
            workflow=run.definition.name,
            run_id=run.id,
            event=run.context.event,
            ref=run.context.ref,
            job_count=len(run.definition.jobs),
            group=run.group_key,
        )

        executor = StepExecutor(
            self.actions.with_overrides(run.definition.actions),
            kill_grace=self.kill_grace,
            log=self.console.print_info,
        )
        try:
            scheduler = Scheduler(
                run,
                executor=executor,
                artifacts=self.artifacts,
                workspace=self.workspace,
                max_parallel=self.max_parallel,
                base_env=self.base_env,
                console=self.console,
            )
            scheduler.execute()
        finally:
            run.finish(verdict_of(run))
            report = aggregate(run)
            self.controller.release(run)
            self.artifacts.complete_run(run.id)
            self.artifacts.reclaim()
            with self._lock:
                self._reports[run.id] = report

        if self.history is not None:
            self.history.record(run, report)
            self.history.prune()

        return report

    def run(
        self,
        definition: PipelineDefinition,
        event: Event,
        *,
        vars: Optional[Mapping[str, Any]] = None,
    ) -> RunReport:
        """start() + execute() on the calling thread."""
        return self.execute(self.start(definition, event, vars=vars))

    def submit(
        self,
        definition: PipelineDefinition,
        event: Event,
        *,
        vars: Optional[Mapping[str, Any]] = None,
    ) -> PipelineRun:
        """start() now, execute() on a background thread. Raises TriggerRejected."""
        run = self.start(definition, event, vars=vars)
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=max(4, (os.cpu_count() or 2)),
                    thread_name_prefix="ciflow-run",
                )
            fut: Future = self._pool.submit(self.execute, run)
        fut.add_done_callback(lambda f: self._report_crash(run, f))
        return run

    def _report_crash(self, run: PipelineRun, fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            self.console.print_error("Run crashed", f"run {run.id} raised {type(exc).__name__}", details=[str(exc)])

    # ------------------------------------------------------------------
    # Queries / control
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def get_report(self, run_id: str) -> Optional[RunReport]:
        with self._lock:
            return self._reports.get(run_id)

    def superseded_by(self, run_id: str) -> List[str]:
        """Ids of the runs that `run_id` cancelled on admission."""
        with self._lock:
            return sorted(r.id for r in self._runs.values() if r.superseded_by == run_id)

    def cancel(self, run_id: str, reason: str = "cancelled by request") -> bool:
        """External cancellation signal. Returns False for unknown or finished runs."""
        run = self.get_run(run_id)
        if run is None:
            return False
        return run.cancel(reason)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
