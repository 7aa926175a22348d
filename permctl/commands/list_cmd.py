"""Read-only listing commands: grants, allowed commands, audit trail."""

from __future__ import annotations

import json
from datetime import datetime

from rich.console import Console
from rich.table import Table

from ..audit_log import AuditLog, format_audit_entry
from ..config import Config
from ..errors import PermctlError
from ..manager import PermissionManager
from ..models import GrantFilter, GrantStatus
from . import report_error


_STATUS_STYLE = {
    GrantStatus.ACTIVE: "green",
    GrantStatus.REVOKED: "yellow",
    GrantStatus.EXPIRED: "dim",
}


def _fmt_time(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else ""


def run_list(
    manager: PermissionManager,
    *,
    user: str | None = None,
    show_all: bool = False,
    output_json: bool = False,
) -> int:
    console = Console()
    err = Console(stderr=True)
    try:
        grants = manager.list_grants(GrantFilter(user=user, include_inactive=show_all))
    except PermctlError as e:
        return report_error(err, e, "list permissions")

    if output_json:
        print(json.dumps([g.to_dict() for g in grants], indent=2))
        return 0

    if not grants:
        scope = f" for user {user}" if user else ""
        console.print(
            f"No {'' if show_all else 'active '}permissions found{scope}",
            style="dim",
            markup=False,
            highlight=False,
            soft_wrap=True,
        )
        return 0

    table = Table(title="Permissions" if show_all else "Active permissions")
    table.add_column("user", style="cyan", no_wrap=True)
    table.add_column("command")
    table.add_column("status")
    table.add_column("granted (UTC)")
    table.add_column("expires (UTC)")
    table.add_column("granted by", style="dim")
    if show_all:
        table.add_column("ended", style="dim")

    for g in grants:
        row = [
            g.user,
            g.command,
            f"[{_STATUS_STYLE[g.status]}]{g.status.value}[/]",
            _fmt_time(g.granted_at),
            _fmt_time(g.expires_at),
            g.granted_by,
        ]
        if show_all:
            row.append(f"{g.reason} by {g.ended_by}" if g.reason else "")
        table.add_row(*row)

    console.print(table)
    return 0


def run_commands(config: Config, *, verbose: bool = False) -> int:
    console = Console()
    if not config.allowed_commands:
        console.print("No commands are allowlisted", style="dim")
        return 0

    if not verbose:
        console.print("Allowed commands:")
        for cmd in sorted(config.allowed_commands):
            console.print(f"  {cmd}", highlight=False, soft_wrap=True)
        return 0

    table = Table(title="Allowed commands")
    table.add_column("command", style="cyan", no_wrap=True)
    table.add_column("description")
    table.add_column("default", justify="right")
    table.add_column("max", justify="right")
    table.add_column("required groups")
    table.add_column("max users", justify="right")

    for cmd, policy in sorted(config.allowed_commands.items()):
        table.add_row(
            cmd,
            policy.description,
            f"{config.effective_duration(cmd, None)}m",
            f"{policy.max_duration}m",
            ", ".join(policy.required_groups) or "-",
            str(policy.max_concurrent_users),
        )

    console.print(table)
    return 0


def run_audit(config: Config, *, last_n: int = 20, output_json: bool = False) -> int:
    console = Console()
    entries = AuditLog(config.log_path).read(last_n=last_n)

    if not entries:
        console.print("[dim]No audit entries recorded.[/dim]")
        return 0

    for entry in entries:
        if output_json:
            print(json.dumps(entry.to_dict()))
        else:
            console.print(format_audit_entry(entry), markup=False, highlight=False, soft_wrap=True)
    return 0
