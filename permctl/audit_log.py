"""
Audit log for permission lifecycle transitions.

Every grant, revoke, expiry, cleanup sweep and init is recorded as one JSON
object per line. The log is append-only: permctl never rewrites or prunes
it (rotation belongs to logrotate or similar).

This module provides:
- Structured audit entries (actor, subject, outcome)
- Append and tail helpers
- Human-readable formatting for `permctl audit`
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import IoFailure

# Operations
OP_GRANT = "grant"
OP_REVOKE = "revoke"
OP_EXPIRE = "expire"
OP_CLEANUP = "cleanup"
OP_INIT = "init"

# Outcomes
SUCCESS = "success"
FAILURE = "failure"
NOT_FOUND = "not_found"


@dataclass
class AuditEntry:
    """A single audit log entry."""
    timestamp: str
    operation: str
    actor: str
    user: str | None = None
    command: str | None = None
    outcome: str = SUCCESS
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "operation": self.operation,
            "actor": self.actor,
            "subject": {"user": self.user, "command": self.command},
            "outcome": self.outcome,
            "reason": self.reason,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        """Create from dictionary."""
        subject = data.get("subject") or {}
        return cls(
            timestamp=data["timestamp"],
            operation=data["operation"],
            actor=data.get("actor", ""),
            user=subject.get("user"),
            command=subject.get("command"),
            outcome=data.get("outcome", SUCCESS),
            reason=data.get("reason"),
            metadata=data.get("metadata", {}),
        )


class AuditLog:
    """Append-only JSON Lines audit stream at a fixed path."""

    def __init__(self, log_path: Path):
        self.log_path = log_path

    def record(
        self,
        operation: str,
        actor: str,
        *,
        user: str | None = None,
        command: str | None = None,
        outcome: str = SUCCESS,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """
        Append one entry to the audit log.

        Args:
            operation: Lifecycle operation (grant, revoke, expire, cleanup, init)
            actor: Invoking principal
            user: Subject account, if any
            command: Subject command, if any
            outcome: success, failure or not_found
            reason: Failure reason or transition reason
            metadata: Additional context (grant id, expiry, counts)
            timestamp: Entry time (defaults to now, UTC)

        Returns:
            The written entry
        """
        entry = AuditEntry(
            timestamp=(timestamp or datetime.now(timezone.utc)).isoformat(),
            operation=operation,
            actor=actor,
            user=user,
            command=command,
            outcome=outcome,
            reason=reason,
            metadata=metadata or {},
        )

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as e:
            raise IoFailure.from_os_error(e, self.log_path) from e

        return entry

    def read(self, last_n: int | None = None) -> list[AuditEntry]:
        """
        Read entries from the audit log.

        Args:
            last_n: If specified, return only the last N entries

        Returns:
            List of audit entries, oldest first
        """
        if not self.log_path.exists():
            return []

        entries = []
        with self.log_path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    try:
                        entries.append(AuditEntry.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError):
                        continue  # Skip malformed lines

        if last_n is not None:
            return entries[-last_n:] if last_n > 0 else []
        return entries


def format_audit_entry(entry: AuditEntry) -> str:
    """Format an audit entry for human-readable display."""
    subject = " ".join(part for part in (entry.user, entry.command) if part)
    head = f"[{entry.timestamp}] {entry.operation} {entry.outcome}"
    if subject:
        head += f" {subject}"
    lines = [head, f"  actor: {entry.actor}"]

    if entry.reason:
        lines.append(f"  reason: {entry.reason}")
    for key, value in entry.metadata.items():
        lines.append(f"  {key}: {value}")

    return "\n".join(lines)
