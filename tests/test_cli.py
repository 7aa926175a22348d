"""
CLI tests via click's CliRunner.

The CLI resolves accounts from the system databases, so grants here target
`root`, which exists on every Linux host.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import pytest
from click.testing import CliRunner

from permctl import __version__
from permctl.cli import cli
from permctl.config import CONFIG_ENV_VAR, CommandPolicy, Config, save_config


TRUE = "/usr/bin/true"


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path: Path, config: Config) -> Path:
    path = tmp_path / "config.yaml"
    save_config(
        replace(config, allowed_commands={TRUE: CommandPolicy(description="No-op", max_duration=60)}),
        path,
    )
    return path


def _invoke(config_file: Path, *args: str):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args])


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_missing_config_exits_1(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "list"])

    assert result.exit_code == 1
    assert "configuration not found" in result.output


def test_grant_list_revoke(config_file: Path, config: Config) -> None:
    result = _invoke(config_file, "grant", "root", TRUE, "--duration", "5")
    assert result.exit_code == 0, result.output
    assert "Granted root /usr/bin/true" in result.output
    assert "root ALL=(ALL) NOPASSWD: /usr/bin/true" in config.sudoers_path.read_text(encoding="utf-8")

    result = _invoke(config_file, "list", "--json")
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert [(d["user"], d["command"]) for d in data] == [("root", TRUE)]

    result = _invoke(config_file, "revoke", "root", TRUE)
    assert result.exit_code == 0
    assert "root ALL=(ALL)" not in config.sudoers_path.read_text(encoding="utf-8")

    result = _invoke(config_file, "revoke", "root", TRUE)
    assert result.exit_code == 1
    assert "no active grant" in result.output


def test_grant_rejections(config_file: Path) -> None:
    result = _invoke(config_file, "grant", "root", TRUE, "-d", "1000")
    assert result.exit_code == 1
    assert "exceeds maximum" in result.output

    result = _invoke(config_file, "grant", "root", "/bin/sh")
    assert result.exit_code == 1
    assert "command not allowed" in result.output

    result = _invoke(config_file, "grant", "nosuchuser-permctl", TRUE)
    assert result.exit_code == 1
    assert "user not found" in result.output


def test_commands_from_environment(config_file: Path) -> None:
    result = CliRunner().invoke(cli, ["commands"], env={CONFIG_ENV_VAR: str(config_file)})

    assert result.exit_code == 0
    assert TRUE in result.output


def test_cleanup_then_verify(config_file: Path) -> None:
    result = _invoke(config_file, "cleanup")
    assert result.exit_code == 0
    assert "No expired permissions to clean up" in result.output

    result = _invoke(config_file, "verify")
    assert result.exit_code == 0
    assert "Consistent" in result.output


def test_verify_missing_file_exits_1(config_file: Path) -> None:
    result = _invoke(config_file, "verify")

    assert result.exit_code == 1
    assert "not found" in result.output


def test_audit_shows_recent_entries(config_file: Path) -> None:
    _invoke(config_file, "grant", "root", TRUE, "-d", "5")
    _invoke(config_file, "revoke", "root", TRUE)

    result = _invoke(config_file, "audit", "-n", "1")

    assert result.exit_code == 0
    assert "revoke success root /usr/bin/true" in result.output
    assert "grant success" not in result.output
