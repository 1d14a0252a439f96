"""Console output formatting utilities for assetflow."""

from __future__ import annotations

import sys
from typing import List, Optional

from ..model import BuildReport, Status


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_build_started(self, project: str, groups: List[str], workers: Optional[int]) -> None:
        """Print build start information."""
        print("\nBUILD STARTED")
        print(f"Project: {project}")
        print(f"Groups: {', '.join(groups)}")
        if workers:
            print(f"Workers: {workers}")
        print()

    def print_groups(self, rows: List[tuple]) -> None:
        """Print (name, sources, dest, transforms) rows."""
        self.print_header("GROUPS")
        for name, sources, dest, transforms in rows:
            print(f"  {name}")
            print(f"    from: {', '.join(sources)}")
            print(f"    to:   {dest}")
            print(f"    via:  {' -> '.join(transforms)}")

    def print_report(self, report: BuildReport) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for task, result in report.results.items():
            line = f"  {task}: {result.status.value.upper()}"
            if result.status is Status.SUCCEEDED:
                line += f" ({len(result.outputs)} file(s), {result.duration:.2f}s)"
            print(line)
            if result.error is not None:
                if self.debug:
                    print(f"    {result.error!r}")
                else:
                    # first line only outside debug mode
                    print(f"    {str(result.error).splitlines()[0]}")
        print(
            f"\n{len(report.succeeded)} succeeded, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
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

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
