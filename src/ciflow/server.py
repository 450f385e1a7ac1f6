from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .dag import validate
from .engine import Engine
from .errors import TriggerRejected
from .model import Event, PipelineDefinition

# -------------------- Schemas --------------------

class EventIn(BaseModel):
    kind: str
    ref: str
    draft: bool = False
    action: Optional[str] = None
    base_ref: Optional[str] = None
    actor: Optional[str] = None
    sha: Optional[str] = None
    vars: Dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> Event:
        return Event(
            kind=self.kind,
            ref=self.ref,
            draft=self.draft,
            action=self.action,
            base_ref=self.base_ref,
            actor=self.actor,
            sha=self.sha,
        )


class StartedRun(BaseModel):
    run_id: str
    workflow: str
    group: Optional[str] = None
    superseded: List[str] = Field(default_factory=list)


class Rejection(BaseModel):
    workflow: str
    reason: str


class EventResponse(BaseModel):
    started: List[StartedRun]
    rejected: List[Rejection]


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


# -------------------- App --------------------

def create_app(engine: Engine, definitions: Sequence[PipelineDefinition]) -> FastAPI:
    """
    Event ingress for a long-running orchestrator.

    Every known definition sees every event; accepted runs execute on the
    engine's background pool. Invalid job graphs raise DefinitionError
    before the app is built.
    """
    for definition in definitions:
        validate(definition.jobs)

    app = FastAPI(title="ciflow")
    app.state.engine = engine
    app.state.definitions = list(definitions)

    @app.post("/events", response_model=EventResponse)
    def post_event(req: EventIn) -> EventResponse:
        started: List[StartedRun] = []
        rejected: List[Rejection] = []
        event = req.to_event()

        for definition in app.state.definitions:
            try:
                run = engine.submit(definition, event, vars=req.vars)
            except TriggerRejected as e:
                rejected.append(Rejection(workflow=definition.name, reason=e.reason))
                continue
            started.append(
                StartedRun(
                    run_id=run.id,
                    workflow=definition.name,
                    group=run.group_key,
                    superseded=engine.superseded_by(run.id),
                )
            )

        return EventResponse(started=started, rejected=rejected)

    @app.get("/runs/{run_id}")
    def get_run(run_id: str) -> Dict[str, Any]:
        report = engine.get_report(run_id)
        if report is not None:
            return {"state": "finished", **report.to_dict()}

        run = engine.get_run(run_id)
        if run is None:
            if engine.history is not None:
                stored = engine.history.get(run_id)
                if stored is not None:
                    return {"state": "finished", **stored["report"]}
            raise HTTPException(status_code=404, detail="run not found")

        return {
            "state": "running",
            "run_id": run.id,
            "workflow": run.definition.name,
            "group": run.group_key,
            "verdict": run.verdict.value if run.verdict else None,
            "cancel_reason": run.cancel_reason,
            "jobs": {name: st.value for name, st in run.statuses().items()},
        }

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str) -> CancelResponse:
        if engine.get_run(run_id) is None:
            raise HTTPException(status_code=404, detail="run not found")
        return CancelResponse(run_id=run_id, cancelled=engine.cancel(run_id))

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "workflows": [d.name for d in app.state.definitions],
            "groups": engine.controller.keys(),
        }

    @app.on_event("shutdown")
    def shutdown() -> None:
        engine.shutdown(wait=False)

    return app
