"""
Tests for the grant ledger.

Covers policy checks on create, supersession, revoke, expiry sweeps and
transaction rollback.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from permctl.errors import (
    GroupRequirementNotMet,
    InvalidDuration,
    InvalidUser,
    PolicyViolation,
    StorageFailure,
)
from permctl.ledger import SYSTEM_ACTOR, GrantLedger
from permctl.models import (
    REASON_EXPIRED,
    REASON_REVOKED,
    REASON_SUPERSEDED,
    GrantFilter,
    GrantStatus,
)
from permctl.util import to_db_timestamp


DOCKER = "/usr/bin/docker"
APT = "/usr/bin/apt"
SYSTEMCTL = "/usr/bin/systemctl"


def test_create_records_active_grant(ledger: GrantLedger, clock) -> None:
    now = clock()
    grant = ledger.create("alice", DOCKER, 60, now=now, granted_by="admin")

    assert len(grant.id) == 26
    assert grant.status is GrantStatus.ACTIVE
    assert grant.expires_at == now + timedelta(minutes=60)
    assert grant.duration_minutes == 60
    assert ledger.get(grant.id) == grant
    assert ledger.is_active("alice", DOCKER, now)


def test_regrant_supersedes_previous(ledger: GrantLedger, clock) -> None:
    first = ledger.create("alice", DOCKER, 60, now=clock(), granted_by="admin")
    clock.advance(minutes=5)
    second = ledger.create("alice", DOCKER, 120, now=clock(), granted_by="root")

    active = ledger.active_grants(clock())
    assert [g.id for g in active] == [second.id]

    old = ledger.get(first.id)
    assert old.status is GrantStatus.REVOKED
    assert old.reason == REASON_SUPERSEDED
    assert old.ended_by == "root"
    assert old.ended_at == clock()
    assert ledger.count() == 2


def test_command_not_allowlisted(ledger: GrantLedger, clock) -> None:
    with pytest.raises(PolicyViolation, match="not allowed") as excinfo:
        ledger.create("alice", "/bin/sh", 10, now=clock(), granted_by="admin")

    assert type(excinfo.value) is PolicyViolation
    assert ledger.count() == 0


@pytest.mark.parametrize("duration", [0, -1, 481])
def test_duration_bounds(ledger: GrantLedger, clock, duration: int) -> None:
    with pytest.raises(InvalidDuration):
        ledger.create("alice", DOCKER, duration, now=clock(), granted_by="admin")


def test_duration_at_maximum_allowed(ledger: GrantLedger, clock) -> None:
    grant = ledger.create("alice", DOCKER, 480, now=clock(), granted_by="admin")

    assert grant.duration_minutes == 480


def test_missing_group_rejected(ledger: GrantLedger, clock) -> None:
    with pytest.raises(GroupRequirementNotMet) as excinfo:
        ledger.create("bob", DOCKER, 10, now=clock(), granted_by="admin")

    assert excinfo.value.group == "docker"
    assert ledger.count() == 0


@pytest.mark.parametrize("user", ["zed", "Alice", "bob;rm", "a b", ""])
def test_unknown_or_unsafe_user_rejected(ledger: GrantLedger, clock, user: str) -> None:
    with pytest.raises(InvalidUser):
        ledger.create(user, APT, 10, now=clock(), granted_by="admin")


def test_concurrent_user_cap(ledger: GrantLedger, clock) -> None:
    ledger.create("alice", SYSTEMCTL, 10, now=clock(), granted_by="admin")

    with pytest.raises(PolicyViolation, match="max_concurrent_users"):
        ledger.create("bob", SYSTEMCTL, 10, now=clock(), granted_by="admin")

    # The holder itself may renew
    ledger.create("alice", SYSTEMCTL, 20, now=clock(), granted_by="admin")

    # Expired holders do not count against the cap
    clock.advance(minutes=21)
    ledger.create("bob", SYSTEMCTL, 10, now=clock(), granted_by="admin")


def test_revoke(ledger: GrantLedger, clock) -> None:
    grant = ledger.create("bob", APT, 30, now=clock(), granted_by="admin")

    assert ledger.revoke("bob", APT, now=clock(), revoked_by="admin") is True
    assert ledger.revoke("bob", APT, now=clock(), revoked_by="admin") is False

    row = ledger.get(grant.id)
    assert row.status is GrantStatus.REVOKED
    assert row.reason == REASON_REVOKED
    assert not ledger.is_active("bob", APT, clock())


def test_revoke_after_expiry_finds_nothing(ledger: GrantLedger, clock) -> None:
    ledger.create("bob", APT, 30, now=clock(), granted_by="admin")
    clock.advance(minutes=30)

    assert ledger.revoke("bob", APT, now=clock(), revoked_by="admin") is False


def test_expire_sweeps_only_past_due(ledger: GrantLedger, clock) -> None:
    short = ledger.create("bob", APT, 10, now=clock(), granted_by="admin")
    long = ledger.create("alice", DOCKER, 60, now=clock(), granted_by="admin")

    clock.advance(minutes=5)
    assert ledger.has_expired(clock()) is False
    assert ledger.expire(clock()) == []

    clock.advance(minutes=5)
    assert ledger.has_expired(clock()) is True
    expired = ledger.expire(clock())

    assert [g.id for g in expired] == [short.id]
    assert expired[0].status is GrantStatus.ACTIVE  # As it was before the sweep
    row = ledger.get(short.id)
    assert row.status is GrantStatus.EXPIRED
    assert row.reason == REASON_EXPIRED
    assert row.ended_by == SYSTEM_ACTOR
    assert ledger.get(long.id).status is GrantStatus.ACTIVE
    assert ledger.sweep_expired(clock()) == 0


def test_expired_grant_hidden_before_sweep(ledger: GrantLedger, clock) -> None:
    ledger.create("bob", APT, 10, now=clock(), granted_by="admin")
    clock.advance(minutes=10)

    assert ledger.active_grants(clock()) == []
    assert ledger.count(GrantStatus.ACTIVE) == 1


def test_list_filters_and_orders_by_expiry(ledger: GrantLedger, clock) -> None:
    ledger.create("alice", DOCKER, 90, now=clock(), granted_by="admin")
    ledger.create("bob", APT, 10, now=clock(), granted_by="admin")
    ledger.create("alice", APT, 45, now=clock(), granted_by="admin")
    ledger.revoke("alice", APT, now=clock(), revoked_by="admin")

    active = ledger.list(now=clock())
    assert [(g.user, g.command) for g in active] == [("bob", APT), ("alice", DOCKER)]

    alice_all = ledger.list(GrantFilter(user="alice", include_inactive=True), now=clock())
    assert [(g.command, g.status) for g in alice_all] == [
        (APT, GrantStatus.REVOKED),
        (DOCKER, GrantStatus.ACTIVE),
    ]


def test_failed_transaction_rolls_back(ledger: GrantLedger, clock) -> None:
    grant = ledger.create("alice", DOCKER, 60, now=clock(), granted_by="admin")

    with pytest.raises(RuntimeError):
        with ledger._transaction() as conn:
            conn.execute("UPDATE permission_grants SET status = 'revoked' WHERE id = ?", (grant.id,))
            raise RuntimeError("boom")

    assert ledger.get(grant.id).status is GrantStatus.ACTIVE


def test_one_active_grant_per_pair_enforced_by_storage(ledger: GrantLedger, clock) -> None:
    ledger.create("alice", DOCKER, 60, now=clock(), granted_by="admin")
    now_ts = to_db_timestamp(clock())

    with pytest.raises(StorageFailure):
        with ledger._transaction() as conn:
            conn.execute(
                """
                INSERT INTO permission_grants
                    (id, username, command, granted_at, expires_at, granted_by, status)
                VALUES ('dup', 'alice', ?, ?, ?, 'admin', 'active')
                """,
                (DOCKER, now_ts, now_ts),
            )

    assert ledger.count(GrantStatus.ACTIVE) == 1


def test_grant_to_dict(ledger: GrantLedger, clock) -> None:
    grant = ledger.create("bob", APT, 30, now=clock(), granted_by="admin")
    ledger.revoke("bob", APT, now=clock(), revoked_by="root")

    data = ledger.get(grant.id).to_dict()
    assert data["user"] == "bob"
    assert data["status"] == "revoked"
    assert data["ended_by"] == "root"
    assert data["reason"] == "revoked"
