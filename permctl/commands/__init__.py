"""
Command implementations behind the click entrypoint.

Each `run_*` function prints its outcome with rich and returns a process
exit code; the CLI layer only parses arguments and calls sys.exit.
"""

from __future__ import annotations

from rich.console import Console

from ..errors import PermctlError


def report_error(err: Console, error: PermctlError, action: str) -> int:
    """Print a one-line failure (yellow for soft errors) and return its exit code."""
    if error.soft:
        err.print(f"! {error.message}", style="yellow", markup=False, highlight=False, soft_wrap=True)
    else:
        err.print(f"✗ Failed to {action}: {error.message}", style="bold red", markup=False, highlight=False, soft_wrap=True)
    return error.exit_code
