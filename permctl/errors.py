"""
Error taxonomy for permctl.

Every lifecycle failure is raised as a PermctlError subclass. The command
layer catches the base class, prints a single line and exits with
`exit_code`. Soft errors (`soft = True`) are reported as warnings rather
than failures, but still exit non-zero.
"""

from __future__ import annotations

from pathlib import Path


class PermctlError(Exception):
    """Base class for all permctl errors."""

    exit_code: int = 1
    soft: bool = False
    kind: str = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(PermctlError):
    """Configuration file is missing, unreadable or invalid."""

    kind = "config"


class PolicyViolation(PermctlError):
    """Request is not permitted by the policy config."""

    kind = "policy"


class InvalidDuration(PolicyViolation):
    """Duration is non-positive or exceeds the command's maximum."""

    kind = "duration"


class GroupRequirementNotMet(PolicyViolation):
    """User is missing a group the command requires."""

    kind = "group"

    def __init__(self, user: str, group: str):
        super().__init__(f"user {user} is not in required group {group}")
        self.user = user
        self.group = group


class InvalidUser(PermctlError):
    """Username is unsafe or does not resolve to a local account."""

    kind = "user"


class NotFound(PermctlError):
    """Revoke/verify target is absent."""

    kind = "not_found"
    soft = True


class LockTimeout(PermctlError):
    """Exclusive lock could not be acquired in time. Safe to retry."""

    kind = "lock"

    def __init__(self, lock_path: Path, timeout: float):
        super().__init__(f"timed out after {timeout:g}s waiting for lock {lock_path}")
        self.lock_path = lock_path
        self.timeout = timeout


class StorageFailure(PermctlError):
    """Ledger store unreachable or transaction failed (rolled back)."""

    kind = "storage"


class IoFailure(PermctlError):
    """Filesystem error, reported with the offending path."""

    kind = "io"

    def __init__(self, path: Path, detail: str):
        super().__init__(f"{path}: {detail}")
        self.path = Path(path)
        self.detail = detail

    @classmethod
    def from_os_error(cls, err: OSError, path: Path | str) -> IoFailure:
        return cls(Path(path), err.strerror or str(err))


class SyncPending(IoFailure):
    """
    Ledger change committed, but the authorization file was not rewritten.

    `result` is the committed operation's return value. The next successful
    regeneration brings the file back in line with the ledger.
    """

    kind = "sync_pending"

    def __init__(self, path: Path, detail: str, result: object = None):
        super().__init__(path, detail)
        self.message = f"{self.message} (ledger updated; run `permctl cleanup` to rewrite the file)"
        self.args = (self.message,)
        self.result = result


class AlreadyInitialized(PermctlError):
    """`init` found existing state and --force was not given."""

    kind = "initialized"

    def __init__(self, path: Path):
        super().__init__(f"configuration already exists at {path} (use --force to overwrite)")
        self.path = path
