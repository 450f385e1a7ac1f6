from __future__ import annotations

from ciflow.dsl import job, pipeline, sh
from ciflow.history import RunHistory
from ciflow.model import PipelineRun, RunContext, Status, Verdict
from ciflow.report import aggregate


def _finished_run(created_at):
    definition = pipeline("ci", job("build", sh("x", "true")))
    run = PipelineRun(definition=definition, context=RunContext(event="push", ref="refs/heads/main"), created_at=created_at)
    ex = run.executions["build"]
    for st in (Status.RUNNABLE, Status.RUNNING, Status.SUCCEEDED):
        ex.transition(st)
    run.finish(Verdict.SUCCEEDED)
    return run


def test_record_and_get():
    history = RunHistory("sqlite://")
    run = _finished_run(1_700_000_000.0)
    history.record(run, aggregate(run))

    row = history.get(run.id)
    assert row["workflow"] == "ci"
    assert row["verdict"] == "succeeded"
    assert row["created_at"].startswith("2023-11-14")
    assert row["jobs"] == [
        {
            "name": "build",
            "status": "succeeded",
            "duration": row["jobs"][0]["duration"],
            "failing_step": None,
            "reason": None,
            "steps": [],
        }
    ]
    assert history.get("missing") is None


def test_recording_twice_replaces_job_rows():
    history = RunHistory("sqlite://")
    run = _finished_run(1_700_000_000.0)
    history.record(run, aggregate(run))
    history.record(run, aggregate(run))
    assert len(history.get(run.id)["jobs"]) == 1


def test_recent_is_newest_first():
    history = RunHistory("sqlite://")
    old, new = _finished_run(1_000.0), _finished_run(2_000.0)
    for run in (old, new):
        history.record(run, aggregate(run))
    assert [r["id"] for r in history.recent()] == [new.id, old.id]
    assert len(history.recent(limit=1)) == 1


def test_prune_honours_retention():
    history = RunHistory("sqlite://", retention=100.0, clock=lambda: 10_000.0)
    old, fresh = _finished_run(5_000.0), _finished_run(9_950.0)
    for run in (old, fresh):
        history.record(run, aggregate(run))

    assert history.prune() == 1
    assert history.get(old.id) is None
    assert history.get(fresh.id) is not None
    assert history.prune() == 0


def test_file_backed_history(tmp_path):
    url = f"sqlite:///{(tmp_path / 'nested' / 'history.db').as_posix()}"
    run = _finished_run(1_700_000_000.0)
    RunHistory(url).record(run, aggregate(run))
    assert RunHistory(url).get(run.id)["verdict"] == "succeeded"
