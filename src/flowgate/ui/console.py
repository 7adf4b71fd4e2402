"""Console output formatting utilities for flowgate."""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
                   and engine log records
        """
        self.debug = debug

    def configure_logging(self) -> None:
        """Route engine loggers to stderr; DEBUG in debug mode, WARNING otherwise."""
        root = logging.getLogger("flowgate")
        root.setLevel(logging.DEBUG if self.debug else logging.WARNING)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
        # one handler, bound to the current stderr
        root.handlers[:] = [handler]

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run: {run_id}")
        print(f"Workflow: {workflow}")
        print(f"Jobs: {job_count}")
        print()

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        print(f"\nJOB STARTED: {name}")

    def print_success(self, name: str) -> None:
        print(f"JOB SUCCEEDED: {name}")

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
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        print(f"JOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        print(f"JOB CANCELLED: {name} ({reason})")

    def print_plan(self, levels: list[list[str]]) -> None:
        """Print expanded instances stage by stage."""
        for idx, level in enumerate(levels):
            print(f"=== Stage {idx + 1} ===")
            for name in level:
                print(f"  {name}")

    def print_results(self, jobs: list[dict[str, Any]], verdict: str) -> None:
        """Print final results table and verdict."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        width = max((len(j["display"]) for j in jobs), default=0)
        for j in jobs:
            marker = "*" if j.get("required") else " "
            print(f" {marker} {j['display']:<{width}}  {j['result'].upper()}")
        print("-" * 40)
        print(f"VERDICT: {verdict.upper()}  (* = required)")

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


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
