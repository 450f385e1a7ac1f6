from __future__ import annotations

import pytest

from ciflow import build, job, matrix, pipeline, sh, trigger, uses, wf
from ciflow.conditions import Literal
from ciflow.model import EVENT_KINDS, ConcurrencySpec, EventFilter


def test_job_applies_default_cwd_and_retry_count():
    j = job("test", sh("a", "pytest", retry=2), sh("b", "ls", cwd="docs"), cwd="src", needs=["build"])
    assert [s.cwd for s in j.steps] == ["src", "docs"]
    assert j.steps[0].retry.max_attempts == 2
    assert j.needs == ("build",)


def test_job_without_steps_is_rejected():
    with pytest.raises(ValueError):
        job("empty")
    with pytest.raises(ValueError):
        build("empty").build()


def test_builder_api():
    j = (
        build("deploy")
        .depends_on("build", "test")
        .define_step("push", "make deploy", timeout=60)
        .use_action("notify", "local/notify@v1", channel="ci")
        .with_env(STAGE="prod")
        .when("${{ github.ref == 'refs/heads/main' }}")
        .allow_failure()
        .timeout_after(600)
        .build()
    )
    assert j.needs == ("build", "test")
    assert j.steps[0].timeout == 60
    assert j.steps[1].with_ == {"channel": "ci"}
    assert j.env == {"STAGE": "prod"}
    assert j.continue_on_error
    assert j.timeout == 600
    assert j.condition is not None


def test_uses_merges_with_and_params():
    step = uses("up", "upload-artifact", with_={"name": "a"}, path="dist/")
    assert step.kind == "action"
    assert step.with_ == {"name": "a", "path": "dist/"}


def test_condition_literals_parse():
    assert sh("x", "true", condition=False).condition == Literal(False)


def test_matrix_expands_jobs():
    jobs = matrix("py", ["3.11", "3.12"]).jobs(lambda v: job(f"test-{v}", sh("t", f"python{v} -m pytest")))
    definition = pipeline("ci", job("build", sh("b", "make")), jobs)
    assert definition.job_names == ["build", "test-3.11", "test-3.12"]


def test_pipeline_triggers_and_concurrency():
    definition = pipeline(
        "ci",
        job("a", sh("x", "true")),
        on=[trigger("pull_request", types=["opened"]), "workflow_dispatch", ("push", EventFilter(branches=("main",)))],
        concurrency="${{ github.workflow }}",
    )
    assert set(definition.triggers) == {"pull_request", "manual", "push"}
    assert definition.concurrency == ConcurrencySpec(group="${{ github.workflow }}")

    assert set(pipeline("all", job("a", sh("x", "true"))).triggers) == set(EVENT_KINDS)
    assert set(pipeline("one", job("a", sh("x", "true")), on="push").triggers) == {"push"}


def test_wf_returns_job_list():
    jobs = wf(job("a", sh("x", "true")), job("b", sh("y", "true")))
    assert [j.name for j in jobs] == ["a", "b"]
