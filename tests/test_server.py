from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from ciflow.dsl import concurrency, job, pipeline, sh, trigger
from ciflow.errors import DefinitionError
from ciflow.server import create_app


def _poll(client, run_id, timeout=10.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        body = client.get(f"/runs/{run_id}").json()
        if body["state"] == "finished":
            return body
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


@pytest.fixture
def client(engine):
    definitions = [
        pipeline(
            "ci",
            job("build", sh("compile", "true")),
            job("test", sh("pytest", "true"), needs=["build"]),
            on=[trigger("push"), trigger("pull_request", types=["opened"], draft=False)],
            concurrency=concurrency("${{ github.workflow }}-${{ github.ref }}"),
        ),
        pipeline("release", job("publish", sh("upload", "true")), on=[trigger("push", branches=["main"])]),
    ]
    with TestClient(create_app(engine, definitions)) as c:
        yield c


def test_health(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["workflows"] == ["ci", "release"]


def test_event_starts_matching_pipelines(client):
    resp = client.post("/events", json={"kind": "push", "ref": "refs/heads/feature"})
    assert resp.status_code == 200
    body = resp.json()
    assert [s["workflow"] for s in body["started"]] == ["ci"]
    assert body["started"][0]["group"] == "ci-refs/heads/feature"
    assert body["rejected"][0]["workflow"] == "release"

    report = _poll(client, body["started"][0]["run_id"])
    assert report["verdict"] == "succeeded"
    assert [j["status"] for j in report["jobs"]] == ["succeeded", "succeeded"]


def test_draft_pull_request_starts_nothing(client):
    body = client.post(
        "/events",
        json={"kind": "pull_request", "ref": "refs/pull/3/merge", "draft": True, "action": "opened"},
    ).json()
    assert body["started"] == []
    assert {r["workflow"] for r in body["rejected"]} == {"ci", "release"}


def test_unknown_run_is_404(client):
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404


def test_cancel_finished_run_reports_false(client):
    run_id = client.post("/events", json={"kind": "push", "ref": "refs/heads/x"}).json()["started"][0]["run_id"]
    _poll(client, run_id)
    resp = client.post(f"/runs/{run_id}/cancel")
    assert resp.status_code == 200
    assert resp.json() == {"run_id": run_id, "cancelled": False}


def test_invalid_event_payload_is_rejected(client):
    assert client.post("/events", json={"ref": "refs/heads/main"}).status_code == 422


def test_invalid_definition_fails_at_startup(engine):
    broken = pipeline("ci", job("a", sh("x", "true"), needs=["b"]), job("b", sh("y", "true"), needs=["a"]))
    with pytest.raises(DefinitionError):
        create_app(engine, [broken])
