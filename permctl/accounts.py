"""
Local account resolution and input safety checks.

Usernames and command paths end up verbatim in a sudoers file, so both are
restricted to character sets that carry no sudoers syntax (no whitespace,
commas, colons, `=`, `!`, `#`, quotes or shell metacharacters).

Account lookups go through an AccountResolver so tests can substitute a
fixed set of users and groups.
"""

from __future__ import annotations

import grp
import pwd
import re
from typing import Protocol

from .errors import InvalidUser


# POSIX-portable login names (useradd's default NAME_REGEX, plus machine accounts)
_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}\$?$")
_COMMAND_RE = re.compile(r"^/[A-Za-z0-9._+/-]+$")


def is_safe_username(name: str) -> bool:
    return bool(_USERNAME_RE.fullmatch(name))


def is_safe_command(path: str) -> bool:
    if not _COMMAND_RE.fullmatch(path):
        return False
    # No relative segments; the allowlist compares exact strings
    return not any(part in (".", "..") for part in path.split("/"))


def validate_username(name: str) -> str:
    """Return `name` unchanged, or raise InvalidUser if it is unsafe."""
    if not isinstance(name, str) or not is_safe_username(name):
        raise InvalidUser(f"invalid username: {name!r}")
    return name


class AccountResolver(Protocol):
    """Protocol for resolving local accounts and their group memberships."""

    def user_exists(self, user: str) -> bool:
        ...

    def groups_of(self, user: str) -> set[str]:
        """Names of all groups `user` belongs to (primary and supplementary)."""
        ...


class SystemAccounts:
    """Resolve accounts from the local passwd and group databases."""

    def user_exists(self, user: str) -> bool:
        try:
            pwd.getpwnam(user)
        except KeyError:
            return False
        return True

    def groups_of(self, user: str) -> set[str]:
        try:
            entry = pwd.getpwnam(user)
        except KeyError:
            return set()

        names = {g.gr_name for g in grp.getgrall() if user in g.gr_mem}
        try:
            names.add(grp.getgrgid(entry.pw_gid).gr_name)
        except KeyError:
            pass  # Primary gid with no group entry
        return names


class StaticAccounts:
    """Fixed in-memory account table."""

    def __init__(self, users: dict[str, set[str]] | None = None):
        self.users = {name: set(groups) for name, groups in (users or {}).items()}

    def user_exists(self, user: str) -> bool:
        return user in self.users

    def groups_of(self, user: str) -> set[str]:
        return set(self.users.get(user, set()))
