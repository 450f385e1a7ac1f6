from __future__ import annotations

import pytest

from ciflow.actions import ActionContext, ActionRegistry, ActionResult, normalize_action, upload_artifact
from ciflow.artifacts import ArtifactStore
from ciflow.errors import StepCancelled, StepFailure


def _ctx(tmp_path, store=None, **params):
    return ActionContext(
        run_id="r1",
        job="build",
        step="upload",
        params=params,
        workspace=tmp_path,
        env={},
        artifacts=store or ArtifactStore(),
        log=lambda msg: None,
    )


def test_action_names_are_normalized():
    assert normalize_action("actions/upload-artifact@v4") == "upload-artifact"
    assert normalize_action("Local/Greet") == "greet"


def test_registry_lookup_and_decorator():
    registry = ActionRegistry()
    assert "actions/checkout@v4" in registry

    @registry.action("acme/stamp@v2")
    def stamp(ctx):
        return ActionResult(output="stamped")

    assert registry.get("stamp") is stamp
    assert "stamp" in registry.names()
    assert "stamp" not in ActionRegistry()
    with pytest.raises(TypeError):
        registry.register("broken", "not callable")


def test_overrides_do_not_leak_into_base_registry():
    base = ActionRegistry()
    merged = base.with_overrides({"greet": lambda ctx: None})
    assert "greet" in merged
    assert "greet" not in base


def test_params_accept_dash_and_underscore(tmp_path):
    ctx = _ctx(tmp_path, **{"if_no_files_found": "ignore"})
    assert ctx.param("if-no-files-found") == "ignore"
    with pytest.raises(StepFailure) as exc:
        ctx.param("name", required=True)
    assert exc.value.fatal


def test_upload_with_no_matching_files(tmp_path):
    store = ArtifactStore()
    result = upload_artifact(_ctx(tmp_path, store, name="logs", path="*.log"))
    assert "no files found" in result.output
    assert store.list("r1") == []

    with pytest.raises(StepFailure):
        upload_artifact(_ctx(tmp_path, store, name="logs", path="*.log", **{"if-no-files-found": "error"}))


def test_upload_accepts_multiline_patterns(tmp_path):
    (tmp_path / "a.log").write_text("a")
    (tmp_path / "b.txt").write_text("b")
    store = ArtifactStore()
    upload_artifact(_ctx(tmp_path, store, name="out", path="a.log\nb.txt\n"))
    assert store.info("r1", "out").manifest["files"][0]["path"] in ("a.log", "b.txt")
    assert len(store.info("r1", "out").manifest["files"]) == 2


def test_aborted_attempt_does_not_publish(tmp_path):
    (tmp_path / "app.bin").write_text("x")
    store = ArtifactStore()
    ctx = _ctx(tmp_path, store, name="bin", path="app.bin")
    ctx.cancel_event.set()
    with pytest.raises(StepCancelled):
        upload_artifact(ctx)
    assert store.list("r1") == []

    upload_artifact(_ctx(tmp_path, store, name="bin", path="app.bin"))
    assert [a.name for a in store.list("r1")] == ["bin"]
