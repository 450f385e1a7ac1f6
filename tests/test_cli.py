from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from ciflow.cli import cli

PASSING = """
name: demo
on:
  push:
    branches: [main]
jobs:
  build:
    steps:
      - run: echo built > built.txt
  test:
    needs: build
    steps:
      - run: test -f built.txt
"""

FAILING = """
on: push
jobs:
  build:
    steps:
      - run: exit 4
  test:
    needs: [build]
    steps:
      - run: "true"
"""

CYCLE = """
on: push
jobs:
  a: {needs: b, steps: [{run: "true"}]}
  b: {needs: a, steps: [{run: "true"}]}
"""


@pytest.fixture
def invoke(tmp_path):
    runner = CliRunner()

    def _invoke(text, *args, event="push", ref="refs/heads/main"):
        path = tmp_path / "ciflow.yml"
        path.write_text(text)
        argv = [
            "run", str(path),
            "--event", event,
            "--ref", ref,
            "--actor", "tester",
            "--sha", "0" * 40,
            "--workspace", str(tmp_path),
            *args,
        ]
        return runner.invoke(cli, argv, env={"CIFLOW_HOME": str(tmp_path / "home")})

    return _invoke


def test_successful_run_exits_zero(invoke, tmp_path):
    result = invoke(PASSING)
    assert result.exit_code == 0, result.output
    assert "VERDICT: SUCCEEDED" in result.output
    assert (tmp_path / "built.txt").exists()


def test_failed_run_exits_one(invoke):
    result = invoke(FAILING, "--no-history")
    assert result.exit_code == 1
    assert "build: FAILED" in result.output
    assert "test: SKIPPED" in result.output


def test_definition_error_exits_three(invoke):
    result = invoke(CYCLE)
    assert result.exit_code == 3
    assert "cycle" in result.output


def test_not_started_is_not_a_failure(invoke):
    result = invoke(PASSING, "--json", ref="refs/heads/feature")
    assert result.exit_code == 0
    assert "RUN NOT STARTED" in result.output
    assert '"started": false' in result.output


def test_draft_flag_reaches_trigger_filter(invoke):
    text = """
on:
  pull_request:
    types: [opened]
    draft: false
jobs:
  build:
    steps:
      - run: "true"
"""
    result = invoke(text, "--draft", "--action", "opened", event="pull_request")
    assert result.exit_code == 0
    assert "draft" in result.output
    assert "VERDICT" not in result.output


def test_json_report(invoke):
    result = invoke(PASSING, "--json", "--no-history")
    assert result.exit_code == 0
    payload = json.loads(result.output[result.output.index("{\n"):])
    assert payload["verdict"] == "succeeded"
    assert [j["name"] for j in payload["jobs"]] == ["build", "test"]


def test_bad_var_is_a_usage_error(invoke):
    result = invoke(PASSING, "--var", "novalue")
    assert result.exit_code == 2
    assert "KEY=VALUE" in result.output


def test_history_lists_recorded_runs(invoke, tmp_path):
    assert invoke(PASSING).exit_code == 0
    result = CliRunner().invoke(cli, ["history"], env={"CIFLOW_HOME": str(tmp_path / "home")})
    assert result.exit_code == 0
    assert "succeeded" in result.output
    assert "demo" in result.output


def test_validate_prints_stages(tmp_path):
    path = tmp_path / "ciflow.yml"
    path.write_text(PASSING)
    result = CliRunner().invoke(cli, ["validate", str(path)])
    assert result.exit_code == 0
    assert "Stage 1: build" in result.output
    assert "Stage 2: test" in result.output
    assert "Triggers: push" in result.output
