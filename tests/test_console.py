from __future__ import annotations

from ciflow.ui.console import Console


def test_step_lines_use_plain_labels(capsys):
    console = Console()
    console.print_step("build", "compile")
    console.print_step_retry("build", "compile", 1, 3, "exit 1")
    console.print_step_skipped("build", "publish")
    out = capsys.readouterr().out.splitlines()
    assert out == [
        "[build] STEP: compile",
        "[build] RETRY: compile (attempt 1/3 failed: exit 1)",
        "[build] STEP: publish skipped (condition false)",
    ]
    assert all(line.isascii() for line in out)


def test_quiet_console_hides_step_progress(capsys):
    console = Console(quiet=True)
    console.print_step("build", "compile")
    console.print_step_skipped("build", "publish")
    assert capsys.readouterr().out == ""
