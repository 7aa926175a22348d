"""Tests for policy config loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from permctl.config import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATH,
    Config,
    default_config_path,
    load_config,
    parse_config,
    save_config,
)
from permctl.errors import ConfigError


def _write(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_save_then_load_returns_equal_config(tmp_path: Path, config: Config) -> None:
    path = tmp_path / "config.yaml"
    save_config(config, path)

    assert load_config(path) == config


def test_default_config_round_trips(tmp_path: Path) -> None:
    path = tmp_path / "etc" / "config.yaml"
    save_config(Config.default(), path)

    loaded = load_config(path)
    assert loaded == Config.default()
    assert loaded.policy_for("/usr/bin/docker").required_groups == ("docker",)
    assert loaded.policy_for("/usr/bin/apt").default_duration == 30


def test_minimal_document_uses_defaults() -> None:
    config = parse_config({"allowed_commands": {"/usr/bin/true": {}}})

    policy = config.policy_for("/usr/bin/true")
    assert policy.max_duration == 60
    assert policy.default_duration is None
    assert policy.required_groups == ()
    assert config.default_duration == 60
    assert config.lock_timeout == 10.0
    assert config.visudo_path is None


def test_effective_duration_falls_back(config: Config) -> None:
    assert config.effective_duration("/usr/bin/apt", None) == 30
    assert config.effective_duration("/usr/bin/docker", None) == 60
    assert config.effective_duration("/usr/bin/docker", 15) == 15
    assert config.effective_duration("/usr/bin/unlisted", None) == 60


def test_lock_file_sits_beside_sudoers_file_with_dotted_name(config: Config) -> None:
    assert config.lock_path.parent == config.sudoers_path.parent
    assert "." in config.lock_path.name


def test_missing_file_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="permctl init"):
        load_config(tmp_path / "absent.yaml")


def test_malformed_yaml_is_config_error(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("allowed_commands: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="invalid config format"):
        load_config(path)


def test_relative_path_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "config.yaml", {"sudoers_path": "sudoers.d/permctl"})

    with pytest.raises(ConfigError, match="absolute"):
        load_config(path)


def test_default_duration_above_max_rejected() -> None:
    data = {"allowed_commands": {"/usr/bin/apt": {"max_duration": 30, "default_duration": 60}}}

    with pytest.raises(ConfigError, match="exceeds max_duration"):
        parse_config(data)


@pytest.mark.parametrize(
    "command",
    ["usr/bin/docker", "/usr/bin/docker ALL", "/usr/bin/a,b", "/usr/bin/../bin/sh"],
)
def test_unsafe_command_paths_rejected(command: str) -> None:
    with pytest.raises(ConfigError):
        parse_config({"allowed_commands": {command: {}}})


@pytest.mark.parametrize("value", [0, -5, "ten", True])
def test_non_positive_durations_rejected(value) -> None:
    with pytest.raises(ConfigError):
        parse_config({"allowed_commands": {"/usr/bin/apt": {"max_duration": value}}})


def test_lock_timeout_must_be_positive() -> None:
    with pytest.raises(ConfigError, match="lock_timeout"):
        parse_config({"lock_timeout": 0})


def test_required_groups_must_be_list() -> None:
    with pytest.raises(ConfigError, match="required_groups"):
        parse_config({"allowed_commands": {"/usr/bin/docker": {"required_groups": "docker"}}})


def test_default_config_path_honours_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    assert default_config_path() == DEFAULT_CONFIG_PATH

    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "custom.yaml"))
    assert default_config_path() == tmp_path / "custom.yaml"
