"""
Permission lifecycle operations.

PermissionManager is the public surface layered on the Synchronizer:
grant, revoke, list_grants, cleanup and verify. Mutating operations sweep
expired grants first, run their ledger transaction under the exclusive
lock, regenerate the authorization file, release the lock and then append
to the audit log.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, TypeVar

from .accounts import AccountResolver, SystemAccounts, validate_username
from .audit_log import (
    FAILURE,
    NOT_FOUND,
    OP_CLEANUP,
    OP_EXPIRE,
    OP_GRANT,
    OP_INIT,
    OP_REVOKE,
    AuditLog,
)
from .config import Config, save_config
from .errors import AlreadyInitialized, IoFailure, LockTimeout, NotFound, PermctlError, SyncPending
from .ledger import SYSTEM_ACTOR, GrantLedger
from .models import GrantFilter, PermissionGrant
from .renderer import BANNER, parse
from .sync import SUDOERS_MODE, Synchronizer
from .util import current_actor, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VerifyStatus(str, Enum):
    CONSISTENT = "consistent"
    DRIFTED = "drifted"
    MISSING = "missing"


@dataclass(frozen=True)
class VerifyReport:
    """Outcome of comparing the on-disk authorization file with the ledger."""

    status: VerifyStatus
    path: Path
    expected_rules: list[str]
    missing_rules: list[str] = field(default_factory=list)  # In ledger, absent from file
    unexpected_rules: list[str] = field(default_factory=list)  # In file, not in ledger
    warnings: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.status is VerifyStatus.CONSISTENT


@dataclass(frozen=True)
class CleanupResult:
    expired: list[PermissionGrant]
    active: int

    @property
    def count(self) -> int:
        return len(self.expired)


@dataclass(frozen=True)
class InitResult:
    config_path: Path
    config: Config
    backup_path: Path | None = None


class PermissionManager:
    """
    Lifecycle operations over one ledger and one authorization file.

    All collaborators are explicit: the config, the account resolver and
    the clock are passed in, and the lock is acquired per call.
    """

    def __init__(
        self,
        config: Config,
        *,
        accounts: AccountResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
        actor: str | None = None,
    ):
        self.config = config
        self.clock = clock
        self.actor = actor or current_actor()
        self.ledger = GrantLedger(config, accounts or SystemAccounts())
        self.sync = Synchronizer(config, self.ledger, clock=clock)
        self.audit = AuditLog(config.log_path)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record_expired(self, expired: list[PermissionGrant]) -> None:
        for grant in expired:
            self.audit.record(
                OP_EXPIRE,
                SYSTEM_ACTOR,
                user=grant.user,
                command=grant.command,
                reason="expired",
                metadata={"grant_id": grant.id, "expires_at": grant.expires_at.isoformat()},
            )

    def _locked(self, body: Callable[[datetime], T]) -> tuple[T, list[PermissionGrant]]:
        """Sweep then run `body` under exclusive access; audit any expiries."""
        expired: list[PermissionGrant] = []

        def operation() -> T:
            now = self.clock()
            expired.extend(self.ledger.expire(now))
            return body(now)

        try:
            result = self.sync.with_exclusive_access(operation)
        except PermctlError:
            self._record_expired(expired)
            raise
        self._record_expired(expired)
        return result, expired

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    def grant(self, user: str, command: str, duration: int | None = None) -> PermissionGrant:
        """
        Grant `user` time-bounded access to `command`.

        Args:
            user: Local account name
            command: Absolute path of an allowlisted command
            duration: Minutes; defaults to the command's, then the global, default

        Returns:
            The new active grant (id and effective expiry)

        Raises:
            SyncPending: the grant was recorded but the file write failed
                (audited as a successful grant with `file_error`)
        """
        minutes = self.config.effective_duration(command, duration)
        try:
            validate_username(user)
            grant, _ = self._locked(
                lambda now: self.ledger.create(user, command, minutes, now=now, granted_by=self.actor)
            )
        except SyncPending as e:
            self._record_grant(e.result, minutes, file_error=e.message)
            raise
        except PermctlError as e:
            self.audit.record(
                OP_GRANT,
                self.actor,
                user=user,
                command=command,
                outcome=FAILURE,
                reason=e.message,
                metadata={"error": e.kind, "duration": minutes},
            )
            raise

        self._record_grant(grant, minutes)
        return grant

    def _record_grant(self, grant: PermissionGrant, minutes: int, file_error: str | None = None) -> None:
        metadata = {
            "grant_id": grant.id,
            "duration": minutes,
            "expires_at": grant.expires_at.isoformat(),
        }
        if file_error:
            metadata["file_error"] = file_error
        self.audit.record(OP_GRANT, self.actor, user=grant.user, command=grant.command, metadata=metadata)

    def revoke(self, user: str, command: str) -> None:
        """
        Revoke the active grant for (user, command).

        Raises:
            NotFound: no active grant existed (soft failure; still audited)
            SyncPending: the revoke was recorded but the file write failed
        """
        file_error = None
        try:
            validate_username(user)
            revoked, _ = self._locked(
                lambda now: self.ledger.revoke(user, command, now=now, revoked_by=self.actor)
            )
        except SyncPending as e:
            revoked, file_error, pending = e.result, e.message, e
        except PermctlError as e:
            self.audit.record(
                OP_REVOKE,
                self.actor,
                user=user,
                command=command,
                outcome=FAILURE,
                reason=e.message,
                metadata={"error": e.kind},
            )
            raise
        else:
            pending = None

        metadata = {"file_error": file_error} if file_error else None
        if not revoked:
            self.audit.record(
                OP_REVOKE,
                self.actor,
                user=user,
                command=command,
                outcome=NOT_FOUND,
                reason="no active grant",
                metadata=metadata,
            )
            raise NotFound(f"no active grant for {user} on {command}")

        self.audit.record(OP_REVOKE, self.actor, user=user, command=command, metadata=metadata)
        if pending is not None:
            raise pending

    def list_grants(self, grant_filter: GrantFilter | None = None) -> list[PermissionGrant]:
        """
        List grants ordered by expiry.

        Expired-but-unmarked grants are swept first so the result never
        shows a grant as active past its expiry. The sweep only takes the
        lock when there is something to sweep.
        """
        now = self.clock()
        if self.ledger.has_expired(now):
            try:
                self._locked(lambda _now: None)
            except LockTimeout:
                logger.warning("Lock busy; sweeping ledger without regenerating %s", self.config.sudoers_path)
                self._record_expired(self.ledger.expire(now))
            except SyncPending as e:
                logger.warning("Swept expired grants but %s", e.message)
        return self.ledger.list(grant_filter, now=now)

    def cleanup(self) -> CleanupResult:
        """Sweep expired grants and regenerate the file (even if nothing expired)."""
        try:
            active, expired = self._locked(lambda now: len(self.ledger.active_grants(now)))
        except SyncPending as e:
            self.audit.record(OP_CLEANUP, self.actor, outcome=FAILURE, reason=e.message, metadata={"error": e.kind})
            raise
        self.audit.record(
            OP_CLEANUP,
            self.actor,
            metadata={"expired": len(expired), "active": active},
        )
        logger.info("Cleanup: %d expired, %d active", len(expired), active)
        return CleanupResult(expired=expired, active=active)

    def verify(self) -> VerifyReport:
        """
        Compare the authorization file with the ledger's active set.

        The ledger is swept first so expected content never includes a
        stale grant; the file itself is left alone. Drift is reported,
        never repaired. Run `cleanup` to force regeneration.
        """
        now = self.clock()
        swept = self.ledger.expire(now)
        self._record_expired(swept)
        expected = self.sync.expected_content(now)
        expected_rules = parse(expected)
        actual = self.sync.read_current()
        path = self.config.sudoers_path

        warnings = self._environment_warnings()
        if swept:
            # Sweeping here does not touch the file, and list no longer sees
            # anything to sweep; only a locked operation removes these rules.
            warnings.append(
                f"{len(swept)} grant(s) expired since the last regeneration; "
                "run `permctl cleanup` to remove their rules"
            )
        if actual is None:
            return VerifyReport(
                status=VerifyStatus.MISSING,
                path=path,
                expected_rules=expected_rules,
                missing_rules=expected_rules,
                warnings=warnings,
            )

        try:
            mode = stat.S_IMODE(path.stat().st_mode)
        except OSError as e:
            raise IoFailure.from_os_error(e, path) from e
        if mode != SUDOERS_MODE:
            warnings.append(f"{path} has mode {mode:o}, expected {SUDOERS_MODE:o}")

        if actual == expected:
            return VerifyReport(
                status=VerifyStatus.CONSISTENT,
                path=path,
                expected_rules=expected_rules,
                warnings=warnings,
            )

        actual_rules = parse(actual)
        missing = sorted(set(expected_rules) - set(actual_rules))
        unexpected = sorted(set(actual_rules) - set(expected_rules))
        if not missing and not unexpected:
            if not actual.startswith(BANNER):
                warnings.append("managed-file banner missing or altered")
            else:
                warnings.append("rule order or whitespace differs from canonical rendering")

        return VerifyReport(
            status=VerifyStatus.DRIFTED,
            path=path,
            expected_rules=expected_rules,
            missing_rules=missing,
            unexpected_rules=unexpected,
            warnings=warnings,
        )

    def _environment_warnings(self) -> list[str]:
        warnings = []
        for directory in (self.config.db_path.parent, self.config.log_path.parent):
            if not directory.is_dir():
                warnings.append(f"required directory not found: {directory}")
        if os.geteuid() != 0:
            warnings.append("not running as root; writes to system paths may fail")
        return warnings


def init_config(
    config_path: Path,
    *,
    force: bool = False,
    template: Config | None = None,
    accounts: AccountResolver | None = None,
    actor: str | None = None,
) -> InitResult:
    """
    Write the initial config and create the ledger and authorization file.

    With `force`, an existing config is copied to `<name>.bak` before being
    replaced. The ledger is kept, and the file is regenerated from it, so
    active grants survive a re-init.

    Raises:
        AlreadyInitialized: config exists and `force` is not set
    """
    backup_path = None
    if config_path.exists():
        if not force:
            raise AlreadyInitialized(config_path)
        backup_path = config_path.with_name(config_path.name + ".bak")
        try:
            shutil.copy2(config_path, backup_path)
        except OSError as e:
            raise IoFailure.from_os_error(e, backup_path) from e
        logger.info("Backed up %s to %s", config_path, backup_path)

    config = template or Config.default()
    save_config(config, config_path)

    try:
        config.log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoFailure.from_os_error(e, config.log_path.parent) from e

    manager = PermissionManager(config, accounts=accounts, actor=actor)
    manager.ledger.initialize()
    manager.sync.with_exclusive_access(lambda: None)
    manager.audit.record(
        OP_INIT,
        manager.actor,
        metadata={
            "config_path": str(config_path),
            "forced": force,
            "backup_path": str(backup_path) if backup_path else None,
        },
    )
    return InitResult(config_path=config_path, config=config, backup_path=backup_path)
