# concurrency.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .conditions import EvalContext, evaluate, resolve
from .errors import CancelledBySupersession
from .model import ConcurrencySpec, PipelineRun, RunContext


@dataclass
class Admission:
    admitted: bool
    key: Optional[str]
    protected: bool = False
    cancelled: List[PipelineRun] = field(default_factory=list)


class ConcurrencyController:
    """
    Lock-guarded registry: concurrency group key -> active (non-terminal) runs.

    An unprotected key holds at most one non-terminal run: registering a new
    run supersedes the current holder. Runs registered as protected are never
    cancelled by newer runs, so several may be active under the same key.

    One instance is shared by every run an Engine manages; tests create
    their own instances.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: Dict[str, List[PipelineRun]] = {}

    @staticmethod
    def resolve(spec: ConcurrencySpec, context: RunContext) -> Tuple[str, bool]:
        """
        Returns (group key, protected) for a run context.

        Runs on a protected branch are always protected; elsewhere a false
        cancel-in-progress opts the group out of supersession.
        """
        ctx = EvalContext.for_run(context)
        key = resolve(spec.group, ctx)
        if context.protected:
            return key, True
        return key, not evaluate(spec.cancel_in_progress, ctx)

    def register(self, key: str, run: PipelineRun, *, protected: bool = False) -> Admission:
        cancelled: List[PipelineRun] = []
        with self._lock:
            holders = self._groups.setdefault(key, [])
            for prior in list(holders):
                if prior.terminal:
                    holders.remove(prior)
                    continue
                if prior.protected:
                    continue
                reason = str(CancelledBySupersession(prior.id, key, run.id).message)
                if prior.cancel(reason, superseded_by=run.id):
                    cancelled.append(prior)
                holders.remove(prior)

            run.group_key = key
            run.protected = protected
            holders.append(run)

        return Admission(admitted=True, key=key, protected=protected, cancelled=cancelled)

    def release(self, run: PipelineRun) -> None:
        if run.group_key is None:
            return
        with self._lock:
            holders = self._groups.get(run.group_key)
            if not holders:
                return
            if run in holders:
                holders.remove(run)
            if not holders:
                del self._groups[run.group_key]

    def active(self, key: str) -> List[PipelineRun]:
        with self._lock:
            return [r for r in self._groups.get(key, []) if not r.terminal]

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._groups)
