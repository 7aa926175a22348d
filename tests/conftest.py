"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from permctl.accounts import StaticAccounts
from permctl.config import CommandPolicy, Config
from permctl.ledger import GrantLedger
from permctl.manager import PermissionManager
from permctl.util import utcnow


DOCKER = "/usr/bin/docker"
APT = "/usr/bin/apt"
SYSTEMCTL = "/usr/bin/systemctl"


class FakeClock:
    """Controllable clock; starts at the real current time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(minutes=minutes, seconds=seconds)
        return self.now


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Policy config with every managed path under tmp_path."""
    return Config(
        allowed_commands={
            DOCKER: CommandPolicy(
                description="Docker command access",
                max_duration=480,
                required_groups=("docker",),
                max_concurrent_users=5,
            ),
            APT: CommandPolicy(
                description="Package management",
                max_duration=120,
                default_duration=30,
                max_concurrent_users=3,
            ),
            SYSTEMCTL: CommandPolicy(
                description="Service control",
                max_duration=60,
                max_concurrent_users=1,
            ),
        },
        sudoers_path=tmp_path / "sudoers.d" / "permctl",
        db_path=tmp_path / "lib" / "permissions.db",
        log_path=tmp_path / "log" / "audit.log",
        lock_timeout=5.0,
        visudo_path=None,
    )


@pytest.fixture
def accounts() -> StaticAccounts:
    return StaticAccounts(
        {
            "alice": {"alice", "docker"},
            "bob": {"bob"},
            "carol": {"carol", "docker"},
            "dave": {"dave", "docker"},
            "erin": {"erin", "docker"},
        }
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(config: Config, accounts: StaticAccounts) -> GrantLedger:
    ledger = GrantLedger(config, accounts)
    ledger.initialize()
    return ledger


@pytest.fixture
def manager(config: Config, accounts: StaticAccounts, clock: FakeClock) -> PermissionManager:
    """Manager wired to the tmp config, the static accounts and the fake clock."""
    return PermissionManager(config, accounts=accounts, clock=clock, actor="admin")
