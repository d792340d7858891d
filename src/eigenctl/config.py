"""Configuration loader for eigenctl.

Values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/eigenctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``EIGENCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export EIGENCTL_LOCK_TIMEOUT=5
    export EIGENCTL_MONITORING__SCRAPE_INTERVAL=30s
    export EIGENCTL_MONITORING__OPTIONS__PROM_PORT=9091

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

from .data.datadir import default_data_path

ENV_PREFIX = "EIGENCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

_DURATION_PATTERN = re.compile(r"^(\d+(ms|s|m|h|d|w|y))+$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class MonitoringConfig:
    """Monitoring stack settings."""

    scrape_interval: str = "15s"
    reload_timeout: float | None = None
    options: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "scrape_interval": self.scrape_interval,
            "reload_timeout": self.reload_timeout,
            "options": dict(self.options),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for eigenctl."""

    config_file: Path
    data_dir: Path
    logs_dir: Path
    lock_timeout: float
    monitoring: MonitoringConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "monitoring": self.monitoring.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/eigenctl/config.yml",
    "data_dir": None,  # XDG data home when absent
    "logs_dir": None,  # derived from data_dir when absent
    "lock_timeout": 30.0,
    "monitoring": {
        "scrape_interval": "15s",
        "reload_timeout": None,
        "options": {},
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_MONITORING_KEYS = {"scrape_interval", "reload_timeout", "options"}


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

    return _build_app_config(merged, resolved_env)


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
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    monitoring = raw.get("monitoring")
    if monitoring is not None:
        monitoring_map = _as_dict(monitoring, "monitoring")
        unknown = set(monitoring_map.keys()) - ALLOWED_MONITORING_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown monitoring configuration keys: {joined}.")
        interval = monitoring_map.get("scrape_interval")
        if interval is not None and not _DURATION_PATTERN.match(str(interval)):
            raise ConfigError(
                f"monitoring.scrape_interval must be a duration such as '15s'. Got {interval!r}."
            )
        _as_dict(monitoring_map.get("options"), "monitoring.options")


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    data_dir_value = raw.get("data_dir")
    data_dir = _to_path(data_dir_value) if data_dir_value else default_data_path(env)
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else data_dir / "logs"

    monitoring_mapping = _as_dict(raw.get("monitoring"), "monitoring")
    reload_timeout_raw = monitoring_mapping.get("reload_timeout")
    reload_timeout: float | None = None
    if reload_timeout_raw is not None:
        reload_timeout = _expect_positive_float(
            reload_timeout_raw, "monitoring.reload_timeout", default=5.0
        )
    options_mapping = _as_dict(monitoring_mapping.get("options"), "monitoring.options")
    options = {key: _option_value(value, key) for key, value in options_mapping.items()}

    monitoring = MonitoringConfig(
        scrape_interval=str(monitoring_mapping.get("scrape_interval", "15s")),
        reload_timeout=reload_timeout,
        options=options,
    )

    return AppConfig(
        config_file=config_file,
        data_dir=data_dir,
        logs_dir=logs_dir,
        lock_timeout=lock_timeout,
        monitoring=monitoring,
    )


def _option_value(value: object, key: str) -> str:
    if value is None or isinstance(value, (Mapping, list)):
        raise ConfigError(f"monitoring.options.{key} must be a scalar value.")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        raw_segments = [segment for segment in suffix.split("__") if segment]
        if not raw_segments:
            continue
        # Dotenv option names keep their case below monitoring.options.
        path_segments = [
            segment if index >= 2 and raw_segments[:2] == ["MONITORING", "OPTIONS"]
            else segment.lower()
            for index, segment in enumerate(raw_segments)
        ]
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
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
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
    "MonitoringConfig",
    "load_config",
]
