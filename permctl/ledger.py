"""
Durable grant ledger.

Grants live in a single SQLite table. Every mutation runs inside one
`BEGIN IMMEDIATE` transaction: either the whole call applies or nothing
does. A partial unique index backs the one-active-grant-per-pair rule at
the storage level.

Status transitions:
    active -> revoked   (explicit revoke, or superseded by a newer grant)
    active -> expired   (sweep once expires_at has passed)
Both targets are terminal; rows are never deleted.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

from .accounts import AccountResolver, validate_username
from .config import Config
from .errors import (
    GroupRequirementNotMet,
    InvalidDuration,
    InvalidUser,
    IoFailure,
    PolicyViolation,
    StorageFailure,
)
from .models import (
    REASON_EXPIRED,
    REASON_REVOKED,
    REASON_SUPERSEDED,
    GrantFilter,
    GrantStatus,
    PermissionGrant,
)
from .util import new_ulid, to_db_timestamp

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS permission_grants (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    command TEXT NOT NULL,
    granted_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    granted_by TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'revoked', 'expired')),
    ended_at TEXT,
    ended_by TEXT,
    reason TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_grants_one_active
    ON permission_grants (username, command)
    WHERE status = 'active';

CREATE INDEX IF NOT EXISTS idx_grants_status_expires
    ON permission_grants (status, expires_at);

CREATE INDEX IF NOT EXISTS idx_grants_user
    ON permission_grants (username);
"""


class GrantLedger:
    """
    Transactional store of permission grants.

    The ledger is the only component that mutates grant rows. Policy checks
    for new grants (allowlist, duration bounds, account existence, group
    membership, concurrency caps) happen here so no caller can insert a
    grant that bypasses them.
    """

    def __init__(self, config: Config, accounts: AccountResolver, *, timeout: float = 30.0):
        self.config = config
        self.accounts = accounts
        self.db_path: Path = config.db_path
        self.timeout = timeout
        self._schema_ready = False

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoFailure.from_os_error(e, self.db_path.parent) from e

        try:
            # Autocommit mode; transactions are opened explicitly
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute("PRAGMA synchronous = FULL;")
            if not self._schema_ready:
                conn.executescript(_SCHEMA)
                self._schema_ready = True
        except sqlite3.Error as e:
            raise StorageFailure(f"cannot open ledger {self.db_path}: {e}") from e
        return conn

    def initialize(self) -> None:
        """Create the database file and schema if absent."""
        conn = self._connect()
        conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        Any exception rolls back. sqlite errors surface as StorageFailure;
        permctl errors raised by the block propagate unchanged.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageFailure(f"ledger transaction failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageFailure(f"ledger read failed: {e}") from e
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _check_policy(self, user: str, command: str, duration: int) -> None:
        validate_username(user)

        policy = self.config.policy_for(command)
        if policy is None:
            raise PolicyViolation(f"command not allowed: {command}")

        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            raise InvalidDuration(f"duration must be a positive number of minutes, got {duration!r}")
        if duration > policy.max_duration:
            raise InvalidDuration(
                f"duration {duration} exceeds maximum allowed for {command} ({policy.max_duration} minutes)"
            )

        if not self.accounts.user_exists(user):
            raise InvalidUser(f"user not found: {user}")

        if policy.required_groups:
            groups = self.accounts.groups_of(user)
            for group in policy.required_groups:
                if group not in groups:
                    raise GroupRequirementNotMet(user, group)

    def create(
        self,
        user: str,
        command: str,
        duration: int,
        *,
        now: datetime,
        granted_by: str,
    ) -> PermissionGrant:
        """
        Record a new active grant, superseding any active grant for the pair.

        Raises:
            PolicyViolation: command not allowlisted, or concurrency cap reached
            InvalidDuration: duration <= 0 or above the command maximum
            GroupRequirementNotMet: user lacks a required group
            InvalidUser: unsafe username or no such account
            StorageFailure: the transaction failed (nothing was written)
        """
        self._check_policy(user, command, duration)
        policy = self.config.allowed_commands[command]

        grant = PermissionGrant(
            id=new_ulid(now),
            user=user,
            command=command,
            granted_at=now,
            expires_at=now + timedelta(minutes=duration),
            granted_by=granted_by,
        )
        now_ts = to_db_timestamp(now)

        with self._transaction() as conn:
            holders = conn.execute(
                """
                SELECT COUNT(*) FROM permission_grants
                WHERE status = 'active' AND command = ? AND username != ? AND expires_at > ?
                """,
                (command, user, now_ts),
            ).fetchone()[0]
            if holders >= policy.max_concurrent_users:
                raise PolicyViolation(
                    f"{command} already has {holders} active grant(s) "
                    f"(max_concurrent_users={policy.max_concurrent_users})"
                )

            superseded = conn.execute(
                """
                UPDATE permission_grants
                SET status = 'revoked', ended_at = ?, ended_by = ?, reason = ?
                WHERE username = ? AND command = ? AND status = 'active'
                """,
                (now_ts, granted_by, REASON_SUPERSEDED, user, command),
            ).rowcount

            conn.execute(
                """
                INSERT INTO permission_grants
                    (id, username, command, granted_at, expires_at, granted_by, status)
                VALUES (?, ?, ?, ?, ?, ?, 'active')
                """,
                (
                    grant.id,
                    user,
                    command,
                    now_ts,
                    to_db_timestamp(grant.expires_at),
                    granted_by,
                ),
            )

        if superseded:
            logger.info("Superseded previous grant for %s on %s", user, command)
        logger.debug("Created grant %s: %s %s until %s", grant.id, user, command, grant.expires_at)
        return grant

    def revoke(self, user: str, command: str, *, now: datetime, revoked_by: str) -> bool:
        """Revoke the active grant for a pair. Returns False if none existed."""
        now_ts = to_db_timestamp(now)
        with self._transaction() as conn:
            count = conn.execute(
                """
                UPDATE permission_grants
                SET status = 'revoked', ended_at = ?, ended_by = ?, reason = ?
                WHERE username = ? AND command = ? AND status = 'active' AND expires_at > ?
                """,
                (now_ts, revoked_by, REASON_REVOKED, user, command, now_ts),
            ).rowcount
        return count > 0

    def expire(self, now: datetime) -> list[PermissionGrant]:
        """Transition every active grant past its expiry; return them as they were."""
        now_ts = to_db_timestamp(now)
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM permission_grants
                WHERE status = 'active' AND expires_at <= ?
                ORDER BY expires_at, username, command
                """,
                (now_ts,),
            ).fetchall()
            if rows:
                conn.execute(
                    """
                    UPDATE permission_grants
                    SET status = 'expired', ended_at = ?, ended_by = ?, reason = ?
                    WHERE status = 'active' AND expires_at <= ?
                    """,
                    (now_ts, SYSTEM_ACTOR, REASON_EXPIRED, now_ts),
                )
        expired = [PermissionGrant.from_row(r) for r in rows]
        if expired:
            logger.info("Swept %d expired grant(s)", len(expired))
        return expired

    def sweep_expired(self, now: datetime) -> int:
        return len(self.expire(now))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list(self, grant_filter: GrantFilter | None = None, *, now: datetime) -> list[PermissionGrant]:
        """Grants matching the filter, ordered by expires_at ascending."""
        grant_filter = grant_filter or GrantFilter()
        clauses: list[str] = []
        params: list[str] = []

        if not grant_filter.include_inactive:
            clauses.append("status = 'active' AND expires_at > ?")
            params.append(to_db_timestamp(now))
        if grant_filter.user is not None:
            clauses.append("username = ?")
            params.append(grant_filter.user)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM permission_grants {where} ORDER BY expires_at, username, command, id",
                params,
            ).fetchall()
        return [PermissionGrant.from_row(r) for r in rows]

    def active_grants(self, now: datetime) -> list[PermissionGrant]:
        return self.list(GrantFilter(), now=now)

    def is_active(self, user: str, command: str, now: datetime) -> bool:
        with self._reader() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM permission_grants
                WHERE username = ? AND command = ? AND status = 'active' AND expires_at > ?
                LIMIT 1
                """,
                (user, command, to_db_timestamp(now)),
            ).fetchone()
        return row is not None

    def has_expired(self, now: datetime) -> bool:
        """True if any active row is past expiry and awaits a sweep."""
        with self._reader() as conn:
            row = conn.execute(
                "SELECT 1 FROM permission_grants WHERE status = 'active' AND expires_at <= ? LIMIT 1",
                (to_db_timestamp(now),),
            ).fetchone()
        return row is not None

    def get(self, grant_id: str) -> PermissionGrant | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM permission_grants WHERE id = ?", (grant_id,)).fetchone()
        return PermissionGrant.from_row(row) if row else None

    def count(self, status: GrantStatus | None = None) -> int:
        with self._reader() as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) FROM permission_grants").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM permission_grants WHERE status = ?", (status.value,)
                ).fetchone()
        return int(row[0])
