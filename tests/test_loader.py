from __future__ import annotations

import textwrap

import pytest

from ciflow.errors import DefinitionError
from ciflow.loader import discover_definition, find_definition_files, load_definition
from ciflow.model import Event
from ciflow.schema import load_document
from ciflow.triggers import evaluate_trigger

COVERAGE_YML = """
name: coverage
on:
  pull_request:
    branches: [main]
    types: [opened, synchronize, reopened, ready_for_review]
  push:
    branches: [main]
  workflow_dispatch:
concurrency:
  group: ${{ github.workflow }}-${{ github.ref }}
  cancel-in-progress: ${{ github.ref != 'refs/heads/main' }}
env:
  BUILD_TIMEOUT: '30'
jobs:
  build:
    timeout-minutes: ${{ fromJSON(env.BUILD_TIMEOUT) }}
    steps:
      - uses: actions/checkout@v4
      - name: compile
        run: make
        continue-on-error: true
      - uses: nick-fields/retry@v3
        with:
          command: make test
          max_attempts: 4
          retry_wait_seconds: 2
          timeout_minutes: 5
  check:
    needs: build
    if: ${{ github.event_name == 'push' }}
    steps:
      - run: ./check.sh
        retry:
          max-attempts: 2
"""


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


def test_yaml_document_compiles(tmp_path):
    definition = load_definition(_write(tmp_path, "ciflow.yml", COVERAGE_YML))
    assert definition.name == "coverage"
    assert set(definition.triggers) == {"pull_request", "push", "manual"}
    assert definition.triggers["pull_request"].types == ("opened", "synchronize", "reopened", "ready_for_review")

    build = definition.job("build")
    assert build.timeout == 30 * 60
    assert build.steps[0].uses == "actions/checkout@v4"
    assert build.steps[1].continue_on_error is True

    retried = build.steps[2]
    assert retried.uses is None
    assert retried.run == "make test"
    assert retried.retry.max_attempts == 4
    assert retried.retry.delay == 2.0
    assert retried.timeout == 300.0

    check = definition.job("check")
    assert check.needs == ("build",)
    assert check.steps[0].retry.max_attempts == 2
    assert check.condition is not None


def test_yaml_triggers_filter_events(tmp_path):
    definition = load_definition(_write(tmp_path, "ciflow.yml", COVERAGE_YML))
    pr = Event(kind="pull_request", ref="refs/pull/1/merge", base_ref="main", action="labeled")
    assert not evaluate_trigger(definition, pr).accepted
    assert evaluate_trigger(definition, Event(kind="workflow_dispatch", ref="refs/heads/x")).accepted


def test_cycle_is_reported_with_source(tmp_path):
    path = _write(
        tmp_path,
        "cycle.yml",
        """
        on: push
        jobs:
          a: {needs: b, steps: [{run: "true"}]}
          b: {needs: a, steps: [{run: "true"}]}
        """,
    )
    with pytest.raises(DefinitionError) as exc:
        load_definition(path)
    assert "cycle" in exc.value.message
    assert exc.value.details["source"] == str(path.resolve())


def test_schema_problems_are_collected():
    doc = {
        "on": ["push", "nightly"],
        "jobs": {
            "a": {"steps": [{"run": "x", "uses": "y"}]},
            "b": {"steps": [{"run": "echo ${{ github.ref == }}"}]},
        },
    }
    with pytest.raises(DefinitionError) as exc:
        load_document(doc)
    assert any("exactly one of 'run' or 'uses'" in p for p in exc.value.problems)


def test_compile_problems_are_collected():
    doc = {
        "on": ["push", "nightly"],
        "jobs": {
            "a": {"if": "github.ref ==", "steps": [{"run": "echo ${{ (oops }}"}]},
            "b": {"timeout-minutes": -1, "steps": [{"run": "true"}]},
        },
    }
    with pytest.raises(DefinitionError) as exc:
        load_document(doc)
    problems = "\n".join(exc.value.problems)
    assert "unknown event kind 'nightly'" in problems
    assert "jobs.a.if" in problems
    assert "jobs.a.steps[0]" in problems
    assert "timeout-minutes must be > 0" in problems


def test_empty_jobs_rejected():
    with pytest.raises(DefinitionError):
        load_document({"on": "push", "jobs": {}})
    with pytest.raises(DefinitionError):
        load_document(["not", "a", "mapping"])


def test_unparseable_yaml(tmp_path):
    with pytest.raises(DefinitionError) as exc:
        load_definition(_write(tmp_path, "bad.yml", "jobs: [unclosed"))
    assert "cannot parse" in exc.value.message


def test_python_workflow_file(tmp_path):
    path = _write(
        tmp_path,
        "ci_workflow.py",
        """
        from ciflow import job, pipeline, sh, trigger
        from ciflow.actions import ActionResult

        def stamp(ctx):
            return ActionResult(output="ok")

        ACTIONS = {"stamp": stamp}

        def workflow():
            return pipeline(
                "py-ci",
                job("build", sh("make", "make")),
                job("test", sh("pytest", "pytest"), needs=["build"]),
                on=[trigger("push", branches=["main"])],
            )
        """,
    )
    definition = load_definition(path)
    assert definition.name == "py-ci"
    assert definition.job_names == ["build", "test"]
    assert "stamp" in definition.actions
    assert definition.source == str(path.resolve())


def test_python_job_list_accepts_every_event(tmp_path):
    path = _write(
        tmp_path,
        "jobs_workflow.py",
        """
        from ciflow import job, sh

        JOBS = [job("only", sh("noop", "true"))]
        """,
    )
    definition = load_definition(path)
    assert definition.name == "jobs_workflow"
    assert "pull_request" in definition.triggers


def test_python_workflow_errors_become_definition_errors(tmp_path):
    path = _write(tmp_path, "boom_workflow.py", "raise RuntimeError('nope')\n")
    with pytest.raises(DefinitionError) as exc:
        load_definition(path)
    assert "RuntimeError: nope" in exc.value.problems[0]

    empty = _write(tmp_path, "empty_workflow.py", "X = 1\n")
    with pytest.raises(DefinitionError):
        load_definition(empty)


def test_unsupported_suffix(tmp_path):
    with pytest.raises(DefinitionError):
        load_definition(_write(tmp_path, "pipeline.toml", ""))


def test_discovery(tmp_path):
    with pytest.raises(DefinitionError):
        discover_definition(directory=tmp_path)

    _write(tmp_path, "ciflow.yml", COVERAGE_YML)
    assert discover_definition(directory=tmp_path) == tmp_path / "ciflow.yml"

    _write(tmp_path, "extra_workflow.py", "JOBS = []\n")
    assert len(find_definition_files(tmp_path)) == 2
    with pytest.raises(DefinitionError) as exc:
        discover_definition(directory=tmp_path)
    assert "multiple" in exc.value.message


def test_explicit_path_without_suffix(tmp_path):
    _write(tmp_path, "pipeline.yml", COVERAGE_YML)
    assert discover_definition(str(tmp_path / "pipeline")) == tmp_path / "pipeline.yml"
    with pytest.raises(DefinitionError):
        discover_definition(str(tmp_path / "absent.yml"))


@pytest.mark.parametrize("ref,superseded", [("refs/heads/main", False), ("refs/heads/feature", True)])
def test_yaml_concurrency_defaults_to_cancel_except_on_protected_branches(engine, make_event, ref, superseded):
    definition = load_document(
        {
            "on": "push",
            "concurrency": {"group": "${{ github.workflow }}-${{ github.ref }}"},
            "jobs": {"build": {"steps": [{"run": "true"}]}},
        },
        default_name="ci",
    )
    assert definition.concurrency.cancel_in_progress is True

    first = engine.start(definition, make_event(ref=ref))
    second = engine.start(definition, make_event(ref=ref))
    assert first.cancelled is superseded
    engine.execute(first)
    assert engine.execute(second).verdict == "succeeded"
