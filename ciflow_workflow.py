# ciflow_workflow.py
# Pipeline for ciflow itself: lint, test, build a wheel and smoke-test it.
from __future__ import annotations

from ciflow.dsl import concurrency, job, matrix, pipeline, retry, sh, trigger, uses


def workflow():
    return pipeline(
        "ciflow",
        # Lint job - ruff over the package and tests
        job(
            "lint",
            sh("Ruff check", "ruff check src tests", timeout=300),
            continue_on_error=True,
        ),

        # Test job - installs the package with its test extra and runs pytest
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'", retry=retry(3, delay=5)),
            sh("Run pytest", "pytest -q", timeout=900),
            needs=["lint"],
        ),

        # Wheel build, handed to the smoke tests below
        job(
            "build",
            sh("Build wheel", "pip wheel --no-deps -w dist ."),
            uses("Upload wheel", "upload-artifact", name="wheel", path="dist/*.whl"),
            needs=["test"],
        ),

        matrix("cmd", ["--help", "validate --help", "history --help"]).jobs(
            lambda cmd: job(
                f"smoke {cmd.split()[0].lstrip('-')}",
                uses("Download wheel", "download-artifact", name="wheel", path="smoke"),
                sh("Install wheel", "pip install smoke/*.whl"),
                sh("Run CLI", f"ciflow {cmd}"),
                needs=["build"],
                timeout=600,
            )
        ),

        # Summary line, main only
        job(
            "report",
            sh("Summary", "echo \"pipeline finished for $CIFLOW_REF\""),
            needs=["build"],
            condition="${{ github.ref == 'refs/heads/main' }}",
        ),

        on=[
            trigger("push", branches=["main"]),
            trigger("pull_request", branches=["main"], types=["opened", "synchronize", "reopened", "ready_for_review"]),
            "workflow_dispatch",
        ],
        concurrency=concurrency(
            "${{ github.workflow }}-${{ github.ref }}",
            cancel_in_progress="${{ github.ref != 'refs/heads/main' }}",
        ),
        env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
    )
