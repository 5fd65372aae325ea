"""Console output formatting utilities for kindci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs print from worker threads
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
        run_id: str,
        workflow: str,
        event: str,
        ref: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Workflow: {workflow}",
            f"Trigger: {event} ({ref})",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_job(self, job_id: str, runs_on: Iterable[str], steps: int) -> None:
        """Print one expanded job of the plan."""
        labels = ", ".join(runs_on) or "any"
        self._emit(f"  {job_id}  [runs-on: {labels}]  ({steps} steps)")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: {name}")

    def print_state(self, job: str, state: str) -> None:
        """Print a job state transition (debug only)."""
        if self.debug:
            self._emit(f"[{job}] state: {state}")

    def print_resource(self, job: str, resource: str, action: str) -> None:
        """Print resource acquire/release message."""
        self._emit(f"[{job}] RESOURCE {action}: {resource}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        """Print step skipped message."""
        self._emit(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # last line only outside debug mode
            error_line = reason.strip().split("\n")[-1] if reason else "Unknown error"
            if error_line:
                lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_teardown_error(self, message: str) -> None:
        """Teardown failures are never hidden."""
        self._emit("", "!" * 40, f"TEARDOWN FAILED: {message}", "!" * 40, err=True)

    def print_artifact(self, job: str, label: str, location: str) -> None:
        self._emit(f"[{job}] ARTIFACT: {label} -> {location}")

    def print_artifact_missing(self, job: str, label: str, path: str) -> None:
        self._emit(f"[{job}] WARNING: artifact '{label}' not found at {path}", err=True)

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        line = f"JOB FINISHED: {name} -> {status.upper()}"
        if duration is not None:
            line += f" ({duration:.1f}s)"
        self._emit(line)

    def print_results(self, results: dict[str, str], overall: str) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        lines.append("-" * 40)
        lines.append(f"  PIPELINE: {overall.upper()}")
        self._emit(*lines)

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
