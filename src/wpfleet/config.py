"""Configuration loader for wpfleet.

Values are resolved from, in increasing precedence:

1. Built-in defaults.
2. ``/etc/wpfleet/config.yml`` (or ``--config-file`` / ``WPFLEET_CONFIG_FILE``).
3. Environment variables prefixed with ``WPFLEET_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export WPFLEET_SSH__USER=deploy
    export WPFLEET_FLEET__CONCURRENCY=20
    export WPFLEET_HEALTH__METRICS_TOKEN=s3cret

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
dataclasses.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .health.models import PROBE_KIND_VALUES

ENV_PREFIX = "WPFLEET_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DEFAULT_PROBE_NAMES = ("http", "tls", "container", "wordpress")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SSHConfig:
    """SSH connection defaults."""

    user: str | None = None
    port: int = 22
    key_path: Path | None = None
    use_agent: bool = True
    connect_timeout: float = 30.0
    command_timeout: float = 120.0
    disable_default_keys: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "port": self.port,
            "key_path": str(self.key_path) if self.key_path else None,
            "use_agent": self.use_agent,
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "disable_default_keys": self.disable_default_keys,
        }


@dataclass(frozen=True)
class FleetConfig:
    """Fan-out defaults."""

    concurrency: int = 10
    container_prefix: str = "wp_"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"concurrency": self.concurrency, "container_prefix": self.container_prefix}


@dataclass(frozen=True)
class MutationDefaults:
    """Defaults for the safe-mutation pipeline."""

    settle_delay: float = 5.0
    health_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"settle_delay": self.settle_delay, "health_timeout": self.health_timeout}


@dataclass(frozen=True)
class HealthConfig:
    """Probe selection and verdict thresholds."""

    probes: tuple[str, ...] = DEFAULT_PROBE_NAMES
    tls_warn_days: int = 30
    memory_warn_percent: float = 90.0
    cpu_warn_percent: float = 80.0
    metrics_path: str = "metrics"
    metrics_token: str | None = None
    verify_tls: bool = True
    follow_redirects: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the token is masked)."""
        return {
            "probes": list(self.probes),
            "tls_warn_days": self.tls_warn_days,
            "memory_warn_percent": self.memory_warn_percent,
            "cpu_warn_percent": self.cpu_warn_percent,
            "metrics_path": self.metrics_path,
            "metrics_token": "***" if self.metrics_token else None,
            "verify_tls": self.verify_tls,
            "follow_redirects": self.follow_redirects,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for wpfleet."""

    config_file: Path
    logs_dir: Path
    ssh: SSHConfig
    fleet: FleetConfig
    mutation: MutationDefaults
    health: HealthConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "ssh": self.ssh.to_dict(),
            "fleet": self.fleet.to_dict(),
            "mutation": self.mutation.to_dict(),
            "health": self.health.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/wpfleet/config.yml",
    "logs_dir": "/var/log/wpfleet",
    "ssh": {
        "user": None,
        "port": 22,
        "key_path": None,
        "use_agent": True,
        "connect_timeout": 30.0,
        "command_timeout": 120.0,
        "disable_default_keys": False,
    },
    "fleet": {
        "concurrency": 10,
        "container_prefix": "wp_",
    },
    "mutation": {
        "settle_delay": 5.0,
        "health_timeout": 30.0,
    },
    "health": {
        "probes": list(DEFAULT_PROBE_NAMES),
        "tls_warn_days": 30,
        "memory_warn_percent": 90.0,
        "cpu_warn_percent": 80.0,
        "metrics_path": "metrics",
        "metrics_token": None,
        "verify_tls": True,
        "follow_redirects": True,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("ssh", "fleet", "mutation", "health")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    health = _as_dict(raw.get("health"), "health")
    probes = health.get("probes")
    if probes is not None:
        for probe in _as_probe_list(probes):
            if probe not in PROBE_KIND_VALUES:
                allowed_probes = ", ".join(PROBE_KIND_VALUES)
                raise ConfigError(
                    f"Unknown probe '{probe}' in health.probes. Allowed: {allowed_probes}."
                )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ssh_map = _as_dict(raw.get("ssh"), "ssh")
    fleet_map = _as_dict(raw.get("fleet"), "fleet")
    mutation_map = _as_dict(raw.get("mutation"), "mutation")
    health_map = _as_dict(raw.get("health"), "health")

    port = _expect_int(ssh_map.get("port"), "ssh.port", default=22)
    if not 0 < port < 65536:
        raise ConfigError(f"ssh.port must be between 1 and 65535. Got {port}.")
    key_value = ssh_map.get("key_path")
    user_value = ssh_map.get("user")
    ssh = SSHConfig(
        user=str(user_value) if user_value else None,
        port=port,
        key_path=_to_path(key_value) if key_value else None,
        use_agent=_expect_bool(ssh_map.get("use_agent"), "ssh.use_agent", default=True),
        connect_timeout=_expect_positive_float(
            ssh_map.get("connect_timeout"), "ssh.connect_timeout", default=30.0
        ),
        command_timeout=_expect_positive_float(
            ssh_map.get("command_timeout"), "ssh.command_timeout", default=120.0
        ),
        disable_default_keys=_expect_bool(
            ssh_map.get("disable_default_keys"), "ssh.disable_default_keys", default=False
        ),
    )

    concurrency = _expect_int(fleet_map.get("concurrency"), "fleet.concurrency", default=10)
    if concurrency < 1:
        raise ConfigError(f"fleet.concurrency must be at least 1. Got {concurrency}.")
    fleet = FleetConfig(
        concurrency=concurrency,
        container_prefix=str(fleet_map.get("container_prefix") or "wp_"),
    )

    mutation = MutationDefaults(
        settle_delay=_expect_non_negative_float(
            mutation_map.get("settle_delay"), "mutation.settle_delay", default=5.0
        ),
        health_timeout=_expect_positive_float(
            mutation_map.get("health_timeout"), "mutation.health_timeout", default=30.0
        ),
    )

    warn_days = _expect_int(health_map.get("tls_warn_days"), "health.tls_warn_days", default=30)
    if warn_days < 0:
        raise ConfigError("health.tls_warn_days must be non-negative.")
    token = health_map.get("metrics_token")
    probes_value = health_map.get("probes")
    probes = DEFAULT_PROBE_NAMES
    if probes_value is not None:
        probes = tuple(_as_probe_list(probes_value))
    health = HealthConfig(
        probes=probes,
        tls_warn_days=warn_days,
        memory_warn_percent=_expect_positive_float(
            health_map.get("memory_warn_percent"), "health.memory_warn_percent", default=90.0
        ),
        cpu_warn_percent=_expect_positive_float(
            health_map.get("cpu_warn_percent"), "health.cpu_warn_percent", default=80.0
        ),
        metrics_path=str(health_map.get("metrics_path") or "metrics"),
        metrics_token=str(token) if token else None,
        verify_tls=_expect_bool(health_map.get("verify_tls"), "health.verify_tls", default=True),
        follow_redirects=_expect_bool(
            health_map.get("follow_redirects"), "health.follow_redirects", default=True
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        ssh=ssh,
        fleet=fleet,
        mutation=mutation,
        health=health,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_probe_list(value: object) -> list[str]:
    if isinstance(value, str):
        items: Sequence[object] = value.split(",")
    elif isinstance(value, Sequence):
        items = value
    else:
        raise ConfigError(f"health.probes must be a list or comma separated string. Got {value!r}.")
    return [str(item).strip().lower() for item in items if str(item).strip()]


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "FleetConfig",
    "HealthConfig",
    "MutationDefaults",
    "SSHConfig",
    "load_config",
]
