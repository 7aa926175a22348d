"""
Policy configuration.

The config is a YAML document listing the commands that may be granted and
the paths permctl manages. It is read once per invocation and never mutated
afterwards; `init` is the only writer.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .accounts import is_safe_command
from .errors import ConfigError, IoFailure


DEFAULT_CONFIG_PATH = Path("/etc/permctl/config.yaml")
DEFAULT_SUDOERS_PATH = Path("/etc/sudoers.d/permctl")
DEFAULT_DB_PATH = Path("/var/lib/permctl/permissions.db")
DEFAULT_LOG_PATH = Path("/var/log/permctl/audit.log")
DEFAULT_VISUDO_PATH = Path("/usr/sbin/visudo")

CONFIG_ENV_VAR = "PERMCTL_CONFIG"

DEFAULT_DURATION = 60
DEFAULT_LOCK_TIMEOUT = 10.0
DEFAULT_MAX_USERS = 10


@dataclass(frozen=True)
class CommandPolicy:
    """Grant bounds for a single allowlisted command."""

    description: str = ""
    max_duration: int = DEFAULT_DURATION  # minutes
    default_duration: int | None = None  # minutes; falls back to Config.default_duration
    required_groups: tuple[str, ...] = ()
    max_concurrent_users: int = DEFAULT_MAX_USERS

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "description": self.description,
            "max_duration": self.max_duration,
            "required_groups": list(self.required_groups),
            "max_concurrent_users": self.max_concurrent_users,
        }
        if self.default_duration is not None:
            result["default_duration"] = self.default_duration
        return result


@dataclass(frozen=True)
class Config:
    allowed_commands: dict[str, CommandPolicy] = field(default_factory=dict)
    sudoers_path: Path = DEFAULT_SUDOERS_PATH
    db_path: Path = DEFAULT_DB_PATH
    log_path: Path = DEFAULT_LOG_PATH
    default_duration: int = DEFAULT_DURATION
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    visudo_path: Path | None = None
    debug: bool = False

    @property
    def lock_path(self) -> Path:
        # Dotted name: sudo's #includedir skips it
        return self.sudoers_path.with_name(self.sudoers_path.name + ".lock")

    def policy_for(self, command: str) -> CommandPolicy | None:
        return self.allowed_commands.get(command)

    def effective_duration(self, command: str, requested: int | None) -> int:
        """Requested duration, else the command default, else the global default."""
        if requested is not None:
            return requested
        policy = self.policy_for(command)
        if policy is not None and policy.default_duration is not None:
            return policy.default_duration
        return self.default_duration

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed_commands": {cmd: p.to_dict() for cmd, p in sorted(self.allowed_commands.items())},
            "sudoers_path": str(self.sudoers_path),
            "db_path": str(self.db_path),
            "log_path": str(self.log_path),
            "default_duration": self.default_duration,
            "lock_timeout": self.lock_timeout,
            "visudo_path": str(self.visudo_path) if self.visudo_path else None,
            "debug": self.debug,
        }

    @classmethod
    def default(cls) -> Config:
        """Scaffold written by `permctl init`."""
        return cls(
            allowed_commands={
                "/usr/bin/docker": CommandPolicy(
                    description="Docker command access",
                    max_duration=480,
                    required_groups=("docker",),
                    max_concurrent_users=5,
                ),
                "/usr/bin/apt": CommandPolicy(
                    description="Package management",
                    max_duration=120,
                    default_duration=30,
                    max_concurrent_users=3,
                ),
            },
            visudo_path=DEFAULT_VISUDO_PATH,
        )


def _coerce_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{what} must be an integer, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{what} must be positive, got {value}")
    return value


def _absolute_path(value: Any, what: str) -> Path:
    if not isinstance(value, (str, Path)) or not str(value).strip():
        raise ConfigError(f"{what} must be a path, got {value!r}")
    path = Path(str(value).strip())
    if not path.is_absolute():
        raise ConfigError(f"{what} must be absolute: {path}")
    return path


def _parse_command(cmd: str, raw: dict[str, Any]) -> CommandPolicy:
    max_duration = _positive_int(raw.get("max_duration", DEFAULT_DURATION), f"{cmd}: max_duration")

    default_duration = raw.get("default_duration")
    if default_duration is not None:
        default_duration = _positive_int(default_duration, f"{cmd}: default_duration")
        if default_duration > max_duration:
            raise ConfigError(
                f"{cmd}: default_duration ({default_duration}) exceeds max_duration ({max_duration})"
            )

    groups_raw = raw.get("required_groups") or []
    if not isinstance(groups_raw, list):
        raise ConfigError(f"{cmd}: required_groups must be a list")
    groups = tuple(str(g).strip() for g in groups_raw if str(g).strip())

    max_users = _positive_int(
        raw.get("max_concurrent_users", DEFAULT_MAX_USERS), f"{cmd}: max_concurrent_users"
    )

    description = raw.get("description")
    return CommandPolicy(
        description=str(description) if isinstance(description, str) else "",
        max_duration=max_duration,
        default_duration=default_duration,
        required_groups=groups,
        max_concurrent_users=max_users,
    )


def parse_config(data: dict[str, Any]) -> Config:
    """Validate a decoded config document and build a Config."""
    commands: dict[str, CommandPolicy] = {}
    for cmd, raw in _coerce_dict(data.get("allowed_commands")).items():
        cmd = str(cmd).strip()
        if not cmd.startswith("/"):
            raise ConfigError(f"command path must be absolute: {cmd}")
        if not is_safe_command(cmd):
            raise ConfigError(f"command path contains unsupported characters: {cmd!r}")
        commands[cmd] = _parse_command(cmd, _coerce_dict(raw))

    lock_timeout = data.get("lock_timeout", DEFAULT_LOCK_TIMEOUT)
    if isinstance(lock_timeout, bool) or not isinstance(lock_timeout, (int, float)) or lock_timeout <= 0:
        raise ConfigError(f"lock_timeout must be a positive number, got {lock_timeout!r}")

    visudo_raw = data.get("visudo_path")
    visudo_path = _absolute_path(visudo_raw, "visudo_path") if visudo_raw else None

    return Config(
        allowed_commands=commands,
        sudoers_path=_absolute_path(data.get("sudoers_path", DEFAULT_SUDOERS_PATH), "sudoers_path"),
        db_path=_absolute_path(data.get("db_path", DEFAULT_DB_PATH), "db_path"),
        log_path=_absolute_path(data.get("log_path", DEFAULT_LOG_PATH), "log_path"),
        default_duration=_positive_int(data.get("default_duration", DEFAULT_DURATION), "default_duration"),
        lock_timeout=float(lock_timeout),
        visudo_path=visudo_path,
        debug=bool(data.get("debug", False)),
    )


def default_config_path() -> Path:
    env = os.environ.get(CONFIG_ENV_VAR, "").strip()
    return Path(env) if env else DEFAULT_CONFIG_PATH


def load_config(path: Path | None = None) -> Config:
    """Load and validate the config from `path` (or the default location)."""
    path = path or default_config_path()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"configuration not found at {path} (run `permctl init`)") from None
    except OSError as e:
        raise IoFailure.from_os_error(e, path) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid config format in {path}: {e}") from e

    return parse_config(_coerce_dict(data))


def save_config(config: Config, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(config.to_dict(), sort_keys=False), encoding="utf-8")
    except OSError as e:
        raise IoFailure.from_os_error(e, path) from e
