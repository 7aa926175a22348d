"""Maintenance commands: cleanup (periodic), verify, init."""

from __future__ import annotations

from pathlib import Path

from rich.console import Console

from ..accounts import AccountResolver
from ..config import Config
from ..errors import NotFound, PermctlError
from ..manager import PermissionManager, VerifyStatus, init_config
from . import report_error


def run_cleanup(manager: PermissionManager) -> int:
    """Entry point for the periodic timer; always regenerates the file."""
    console = Console()
    err = Console(stderr=True)
    try:
        result = manager.cleanup()
    except PermctlError as e:
        return report_error(err, e, "clean up")

    if result.count:
        console.print(f"✓ Cleaned up {result.count} expired permission(s)", style="green")
        for g in result.expired:
            console.print(f"  {g.user} {g.command}", style="dim", highlight=False, soft_wrap=True)
    else:
        console.print("No expired permissions to clean up")
    console.print(
        f"  {result.active} active permission(s) in {manager.config.sudoers_path}",
        style="dim",
        highlight=False,
        soft_wrap=True,
    )
    return 0


def run_verify(manager: PermissionManager) -> int:
    """
    Report whether the authorization file matches the ledger.

    Drift is a finding, not an error: it prints a warning and exits 0.
    A missing file is reported as NotFound.
    """
    console = Console()
    err = Console(stderr=True)
    try:
        report = manager.verify()
    except PermctlError as e:
        return report_error(err, e, "verify")

    for warning in report.warnings:
        err.print(f"! {warning}", style="yellow", markup=False, highlight=False, soft_wrap=True)

    if report.status is VerifyStatus.MISSING:
        return report_error(err, NotFound(f"authorization file not found: {report.path}"), "verify")

    if report.status is VerifyStatus.CONSISTENT:
        console.print(
            f"✓ Consistent: {report.path} matches the ledger ({len(report.expected_rules)} rule(s))",
            style="green",
            highlight=False,
            soft_wrap=True,
        )
        return 0

    err.print(f"! Drifted: {report.path} differs from the ledger", style="yellow", highlight=False, soft_wrap=True)
    for line in report.missing_rules:
        console.print(f"  - {line}", style="red", markup=False, highlight=False, soft_wrap=True)
    for line in report.unexpected_rules:
        console.print(f"  + {line}", style="green", markup=False, highlight=False, soft_wrap=True)
    console.print("Run `permctl cleanup` to regenerate the file.", style="dim", markup=False)
    return 0


def run_init(
    config_path: Path,
    *,
    force: bool = False,
    template: Config | None = None,
    accounts: AccountResolver | None = None,
) -> int:
    console = Console()
    err = Console(stderr=True)

    if force and config_path.exists():
        err.print(f"⚠ --force will replace {config_path}", style="yellow", highlight=False, soft_wrap=True)

    try:
        result = init_config(config_path, force=force, template=template, accounts=accounts)
    except PermctlError as e:
        return report_error(err, e, "initialize")

    console.print(f"✓ Created configuration at {result.config_path}", style="green", highlight=False, soft_wrap=True)
    if result.backup_path:
        console.print(f"  previous configuration saved to {result.backup_path}", style="dim", highlight=False, soft_wrap=True)
    console.print(f"  ledger: {result.config.db_path}", style="dim", highlight=False, soft_wrap=True)
    console.print(f"  authorization file: {result.config.sudoers_path}", style="dim", highlight=False, soft_wrap=True)
    console.print("  Review the allowed commands before granting access.", style="dim")
    return 0
