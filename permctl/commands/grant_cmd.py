"""Grant and revoke commands."""

from __future__ import annotations

from rich.console import Console

from ..errors import PermctlError
from ..manager import PermissionManager
from . import report_error


def run_grant(manager: PermissionManager, user: str, command: str, duration: int | None = None) -> int:
    console = Console()
    err = Console(stderr=True)
    try:
        grant = manager.grant(user, command, duration)
    except PermctlError as e:
        return report_error(err, e, "grant permission")

    console.print(
        f"✓ Granted {grant.user} {grant.command} until {grant.expires_at:%Y-%m-%d %H:%M:%S %Z}",
        style="green",
        highlight=False,
        soft_wrap=True,
    )
    console.print(f"  id: {grant.id}", style="dim", highlight=False, soft_wrap=True)
    console.print(f"  duration: {grant.duration_minutes} minutes", style="dim", highlight=False, soft_wrap=True)
    return 0


def run_revoke(manager: PermissionManager, user: str, command: str) -> int:
    console = Console()
    err = Console(stderr=True)
    try:
        manager.revoke(user, command)
    except PermctlError as e:
        return report_error(err, e, "revoke permission")

    console.print(f"✓ Revoked {user} {command}", style="green", highlight=False, soft_wrap=True)
    return 0
