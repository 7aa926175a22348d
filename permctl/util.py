"""
Small utilities shared across permctl: grant ids, timestamps, actor lookup.
"""

from __future__ import annotations

import getpass
import os
from datetime import datetime, timezone


_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _crockford(value: int, width: int) -> str:
    digits = []
    for _ in range(width):
        value, digit = divmod(value, 32)
        digits.append(_CROCKFORD32[digit])
    return "".join(reversed(digits))


def new_ulid(at: datetime | None = None) -> str:
    """
    Grant id: a 26-char ULID stamped with the grant's creation time.

    The first 10 characters encode `at` in milliseconds, the last 16 carry
    80 random bits, so ids of grants created by the same clock sort in
    creation order.
    """
    ms = int((at or utcnow()).timestamp() * 1000)
    if not 0 <= ms < 1 << 48:
        raise ValueError(f"time outside ULID range: {at}")
    return _crockford(ms, 10) + _crockford(int.from_bytes(os.urandom(10), "big"), 16)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO string; lexicographic order equals time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def current_actor() -> str:
    """Invoking principal: the sudo caller if present, else the login user."""
    sudo_user = os.environ.get("SUDO_USER", "").strip()
    if sudo_user:
        return sudo_user
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return f"uid:{os.getuid()}"
