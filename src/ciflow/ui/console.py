"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ciflow.report import RunReport


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        event: str,
        ref: str,
        job_count: int,
        group: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = [
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Event: {event} ({ref})",
            f"Jobs: {job_count}",
        ]
        if group:
            lines.append(f"Concurrency group: {group}")
        self._emit(*lines, "")

    def print_trigger_rejected(self, workflow: str, reason: str) -> None:
        self._emit(f"\nRUN NOT STARTED: {workflow}", f"Reason: {reason}")

    def print_run_superseded(self, run_id: str, by: str) -> None:
        self._emit(f"\nRUN CANCELLED: {run_id} (superseded by {by})")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._emit(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._emit(f"[{job}] STEP: {name}")

    def print_step_retry(self, job: str, name: str, attempt: int, max_attempts: int, error: str | None) -> None:
        if not self.quiet:
            self._emit(f"[{job}] RETRY: {name} (attempt {attempt}/{max_attempts} failed: {error or 'unknown error'})")

    def print_step_skipped(self, job: str, name: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] STEP: {name} skipped (condition false)")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
        output: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
            output: Optional captured output tail (shown in debug mode)
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
            if output:
                lines.append(output.rstrip())
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        if self.quiet:
            return
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._emit(f"[{name}] STATUS: {status}{suffix}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._emit(f"[{name}] STATUS: skipped ({reason})")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in report.jobs:
            detail = ""
            if job.failing_step:
                detail = f" (step: {job.failing_step})"
            elif job.reason:
                detail = f" ({job.reason})"
            lines.append(f"  {job.name}: {job.status.upper()}{detail}")
        counts = ", ".join(f"{n} {k}" for k, n in sorted(report.counts.items()) if n)
        lines.append("-" * 40)
        lines.append(f"VERDICT: {report.verdict.upper()}" + (f" ({counts})" if counts else ""))
        self._emit(*lines)

    def print_history(self, rows: Iterable[dict]) -> None:
        rows = list(rows)
        if not rows:
            self._emit("No recorded runs.")
            return
        for row in rows:
            self._emit(
                f"{row['id'][:12]}  {row['verdict'] or 'running':<10} {row['workflow']}  "
                f"{row['event']} {row['ref']}  {row['created_at']}"
            )

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
