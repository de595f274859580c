"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..model import DeployDecision, JobOutcome, JobSpec, PipelineReport


class Console:
    """Centralized console output formatting.

    Jobs report from worker threads, so every print goes through one lock
    to keep multi-line blocks together.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only print errors and the final results
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        branch: Optional[str],
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nPIPELINE STARTED",
            f"Pipeline: {pipeline}",
            f"Branch: {branch or '(unknown)'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_job(self, job: "JobSpec") -> None:
        """Print one expanded job."""
        flags = []
        if job.allow_failure:
            flags.append("allow-failure")
        if job.privileged:
            flags.append("privileged")
        if job.services:
            flags.append("services=" + ",".join(job.services))
        suffix = f" [{'; '.join(flags)}]" if flags else ""
        self._out(f"  {job.label} (mode: {job.mode.value}){suffix}")

    def print_job_start(self, job: "JobSpec") -> None:
        if not self.quiet:
            self._out(f"[{job.label}] JOB STARTED (mode: {job.mode.value})")

    def print_step(self, job: "JobSpec", name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job.label}] ▶ {name}")

    def print_job_finished(self, outcome: "JobOutcome") -> None:
        if self.quiet:
            return
        job = outcome.job
        mark = "✓" if outcome.ok else "✗"
        line = f"{mark} {job.label}: {outcome.status.value} ({outcome.duration:.1f}s)"
        if outcome.suppressed:
            line += " (allowed to fail)"
        lines = [line]
        if outcome.error:
            error_line = outcome.error if self.debug else outcome.error.split("\n")[0]
            lines.append(f"    {error_line}")
        self._out(*lines)

    def print_cache_restored(self, job: "JobSpec", hit: bool) -> None:
        if not self.quiet:
            self._out(f"[{job.label}] CACHE: {'hit' if hit else 'miss'}")

    def print_cache_saved(self, job: "JobSpec", status: str) -> None:
        if not self.quiet:
            self._out(f"[{job.label}] CACHE: {status}")

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_deploy(self, decision: "DeployDecision") -> None:
        if decision.error:
            self._out(f"\nDEPLOY FAILED: {decision.error}", err=True)
        elif decision.fired:
            self._out(f"\nDEPLOY: fired ({decision.reason})")
        else:
            self._out(f"\nDEPLOY: skipped ({decision.reason})")

    def print_results(self, report: "PipelineReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        if report.skipped_reason:
            lines.append(f"  skipped: {report.skipped_reason}")
        for o in report.outcomes:
            status = o.status.value.upper()
            if o.suppressed:
                status += " (allowed)"
            lines.append(f"  {o.job.label}: {status} {o.duration:.1f}s")
        for w in report.warnings:
            lines.append(f"  warning: {w}")
        lines.append(f"PIPELINE: {report.outcome.value.upper()}")
        self._out(*lines)

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
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
