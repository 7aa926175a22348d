"""
Authorization file rendering.

The sudoers drop-in is a pure projection of the active grant set. It is
always regenerated in full, never patched, so the file can only drift from
the ledger when a write fails, and the next regeneration repairs it.
"""

from __future__ import annotations

from typing import Iterable

from .accounts import is_safe_command, is_safe_username
from .errors import PolicyViolation
from .models import PermissionGrant


BANNER = (
    "# This file is managed by permctl. Do not edit manually.\n"
    "# Changes are overwritten on every grant, revoke and cleanup.\n"
)

RULE_TEMPLATE = "{user} ALL=(ALL) NOPASSWD: {command}"


def format_rule(user: str, command: str) -> str:
    """Build one sudoers rule, refusing tokens outside the safe sets."""
    if not is_safe_username(user):
        raise PolicyViolation(f"refusing to render unsafe username {user!r}")
    if not is_safe_command(command):
        raise PolicyViolation(f"refusing to render unsafe command {command!r}")
    return RULE_TEMPLATE.format(user=user, command=command)


def render(grants: Iterable[PermissionGrant]) -> str:
    """
    Render the authorization file for a set of grants.

    Output depends only on the set of (user, command) pairs: rules are
    deduplicated and sorted, so the same set in any order yields
    byte-identical text.
    """
    pairs = sorted({(g.user, g.command) for g in grants})
    lines = [format_rule(user, command) for user, command in pairs]
    body = "".join(line + "\n" for line in lines)
    return BANNER + ("\n" + body if body else "")


def parse(text: str) -> list[str]:
    """Rule lines of an authorization file (comments and blanks dropped)."""
    rules = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        rules.append(stripped)
    return rules
