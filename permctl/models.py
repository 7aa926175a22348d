"""Grant records as stored in the ledger."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .util import from_db_timestamp


class GrantStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"  # Terminal; explicit revoke or superseded
    EXPIRED = "expired"  # Terminal; swept after expires_at


# Reasons recorded on the terminal transition
REASON_REVOKED = "revoked"
REASON_SUPERSEDED = "superseded"
REASON_EXPIRED = "expired"


@dataclass(frozen=True)
class PermissionGrant:
    """A time-bounded authorization for one user to run one command."""

    id: str
    user: str
    command: str
    granted_at: datetime
    expires_at: datetime
    granted_by: str
    status: GrantStatus = GrantStatus.ACTIVE
    ended_at: datetime | None = None
    ended_by: str | None = None
    reason: str | None = None

    @property
    def duration_minutes(self) -> int:
        return int((self.expires_at - self.granted_at).total_seconds() // 60)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: dict[str, Any] = {
            "id": self.id,
            "user": self.user,
            "command": self.command,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "granted_by": self.granted_by,
            "status": self.status.value,
        }
        if self.ended_at is not None:
            result["ended_at"] = self.ended_at.isoformat()
        if self.ended_by is not None:
            result["ended_by"] = self.ended_by
        if self.reason is not None:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> PermissionGrant:
        return cls(
            id=row["id"],
            user=row["username"],
            command=row["command"],
            granted_at=from_db_timestamp(row["granted_at"]),  # type: ignore[arg-type]
            expires_at=from_db_timestamp(row["expires_at"]),  # type: ignore[arg-type]
            granted_by=row["granted_by"],
            status=GrantStatus(row["status"]),
            ended_at=from_db_timestamp(row["ended_at"]),
            ended_by=row["ended_by"],
            reason=row["reason"],
        )


@dataclass(frozen=True)
class GrantFilter:
    """Selection for `list`: everything, or one user; active only by default."""

    user: str | None = None
    include_inactive: bool = False
