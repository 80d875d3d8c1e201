"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Optional, TextIO

from ..model import Status, StepResult

GLYPHS = {
    Status.SUCCEEDED: "✓",
    Status.FAILED: "✗",
    Status.SKIPPED: "⏭",
    Status.PENDING: "·",
    Status.RUNNING: "▶",
}


class Console:
    """Centralized live console output. Safe to call from worker threads."""

    def __init__(
        self,
        debug: bool = False,
        *,
        stream_output: bool = False,
        quiet: bool = False,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ):
        """
        Initialize console formatter.

        Args:
            debug: If True, show stack traces and debug messages
            stream_output: If True, echo every line of step output as it arrives
            quiet: If True, suppress live progress lines (errors still print)
        """
        self.debug = debug
        self.stream_output = stream_output
        self.quiet = quiet
        self._out = out
        self._err = err
        self._lock = threading.Lock()

    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err or sys.stderr

    def _emit(self, text: str, *, stream: Optional[TextIO] = None) -> None:
        with self._lock:
            print(text, file=stream or self.out, flush=True)

    def print_run_started(self, workflow: str, event: str, instance_count: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._emit(f"\nRUN STARTED\nWorkflow: {workflow}\nEvent: {event}\nJobs: {instance_count}\n")

    def print_not_triggered(self, workflow: str, event: str) -> None:
        if self.quiet:
            return
        self._emit(f"Workflow '{workflow}' is not triggered by {event}")

    def print_job_start(self, name: str) -> None:
        if self.quiet:
            return
        self._emit(f"[{name}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        if self.quiet:
            return
        self._emit(f"[{job}] ▶ {step}")

    def print_output(self, job: str, line: str) -> None:
        if self.quiet or not self.stream_output:
            return
        self._emit(f"[{job}] | {line}")

    def print_step_result(self, job: str, result: StepResult) -> None:
        if self.quiet:
            return
        detail = ""
        if result.marker is not None:
            detail = f" ({result.marker.value})"
        elif result.status is Status.FAILED and result.exit_code is not None:
            detail = f" (exit={result.exit_code})"
        self._emit(f"[{job}] {GLYPHS[result.status]} {result.name}{detail}")

    def print_job_result(self, name: str, status: Status) -> None:
        if self.quiet:
            return
        self._emit(f"[{name}] JOB {status.value.upper()}")

    def print_report(self, text: str) -> None:
        """The final report always goes to stdout, quiet or not."""
        self._emit(text)

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
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), stream=self.err)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self.err)
        else:
            self._emit(f"Error: {exc}", stream=self.err)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", stream=self.err)


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
