"""Configuration loader for n8nctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``n8nctl.yml`` in the working directory (or an override path).
3. Environment variables prefixed with ``N8NCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export N8NCTL_PORTS__BASE=6000
    export N8NCTL_HEALTH__INTERVAL=2

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ValidationError

ENV_PREFIX = "N8NCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(ValidationError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 5678
    max_attempts: int = 1000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "max_attempts": self.max_attempts}


@dataclass(frozen=True)
class CacheConfig:
    """Redis database index allocation defaults."""

    floor: int = 2

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"floor": self.floor}


@dataclass(frozen=True)
class HealthConfig:
    """Health gate retry budget."""

    max_attempts: int = 30
    interval: float = 5.0
    services: tuple[str, ...] = ("editor", "webhook", "worker")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_attempts": self.max_attempts,
            "interval": self.interval,
            "services": list(self.services),
        }


@dataclass(frozen=True)
class ComposeConfig:
    """Container executor settings."""

    instance_file: Path = Path("docker-compose.n8n.yml")
    shared_file: Path = Path("docker-compose.shared.yml")
    shared_project: str = "n8n_shared"
    compose_bin: str = "docker-compose"
    docker_bin: str = "docker"
    container_prefix: str = "editor_"
    container_port: int = 5678

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance_file": str(self.instance_file),
            "shared_file": str(self.shared_file),
            "shared_project": self.shared_project,
            "compose_bin": self.compose_bin,
            "docker_bin": self.docker_bin,
            "container_prefix": self.container_prefix,
            "container_port": self.container_port,
        }


@dataclass(frozen=True)
class PostgresConfig:
    """Administrative connection used for per-instance databases."""

    host: str = "localhost"
    user: str = "postgres"
    database: str = "postgres"
    psql_bin: str = "psql"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "user": self.user,
            "database": self.database,
            "psql_bin": self.psql_bin,
        }


@dataclass(frozen=True)
class VolumesConfig:
    """Naming convention for per-instance storage volumes."""

    suffixes: tuple[str, ...] = ("n8n_data", "repo_temp")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"suffixes": list(self.suffixes)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for n8nctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    ports: PortsConfig
    cache: CacheConfig
    health: HealthConfig
    compose: ComposeConfig
    postgres: PostgresConfig
    volumes: VolumesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "ports": self.ports.to_dict(),
            "cache": self.cache.to_dict(),
            "health": self.health.to_dict(),
            "compose": self.compose.to_dict(),
            "postgres": self.postgres.to_dict(),
            "volumes": self.volumes.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "n8nctl.yml",
    "state_dir": "n8n_local_data/.state",
    "logs_dir": "n8n_local_data/logs",
    "runtime_dir": "n8n_local_data/.run",
    "lock_timeout": 30.0,
    "ports": {
        "base": 5678,
        "max_attempts": 1000,
    },
    "cache": {
        "floor": 2,
    },
    "health": {
        "max_attempts": 30,
        "interval": 5.0,
        "services": ["editor", "webhook", "worker"],
    },
    "compose": {
        "instance_file": "docker-compose.n8n.yml",
        "shared_file": "docker-compose.shared.yml",
        "shared_project": "n8n_shared",
        "compose_bin": "docker-compose",
        "docker_bin": "docker",
        "container_prefix": "editor_",
        "container_port": 5678,
    },
    "postgres": {
        "host": "localhost",
        "user": "postgres",
        "database": "postgres",
        "psql_bin": "psql",
    },
    "volumes": {
        "suffixes": ["n8n_data", "repo_temp"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
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

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    base_port = _expect_int(ports_mapping.get("base"), "ports.base", default=5678)
    if not 1 <= base_port <= 65535:
        raise ConfigError(f"ports.base must be between 1 and 65535. Got {base_port}.")
    max_attempts = _expect_int(
        ports_mapping.get("max_attempts"), "ports.max_attempts", default=1000
    )
    if max_attempts < 1:
        raise ConfigError("ports.max_attempts must be at least 1.")
    ports = PortsConfig(base=base_port, max_attempts=max_attempts)

    cache_mapping = _as_dict(raw.get("cache"), "cache")
    floor = _expect_int(cache_mapping.get("floor"), "cache.floor", default=2)
    if floor < 0:
        raise ConfigError("cache.floor must be non-negative.")
    cache = CacheConfig(floor=floor)

    health_mapping = _as_dict(raw.get("health"), "health")
    health_attempts = _expect_int(
        health_mapping.get("max_attempts"), "health.max_attempts", default=30
    )
    if health_attempts < 1:
        raise ConfigError("health.max_attempts must be at least 1.")
    services = tuple(
        str(item).strip()
        for item in _as_sequence(health_mapping.get("services", []), "health.services")
        if str(item).strip()
    )
    if not services:
        raise ConfigError("health.services must list at least one service.")
    health = HealthConfig(
        max_attempts=health_attempts,
        interval=_expect_positive_float(
            health_mapping.get("interval"), "health.interval", default=5.0
        ),
        services=services,
    )

    compose_mapping = _as_dict(raw.get("compose"), "compose")
    compose = ComposeConfig(
        instance_file=_to_path(compose_mapping.get("instance_file", "docker-compose.n8n.yml")),
        shared_file=_to_path(compose_mapping.get("shared_file", "docker-compose.shared.yml")),
        shared_project=str(compose_mapping.get("shared_project", "n8n_shared")),
        compose_bin=str(compose_mapping.get("compose_bin", "docker-compose")),
        docker_bin=str(compose_mapping.get("docker_bin", "docker")),
        container_prefix=str(compose_mapping.get("container_prefix", "editor_")),
        container_port=_expect_int(
            compose_mapping.get("container_port"), "compose.container_port", default=5678
        ),
    )

    postgres_mapping = _as_dict(raw.get("postgres"), "postgres")
    postgres = PostgresConfig(
        host=str(postgres_mapping.get("host", "localhost")),
        user=str(postgres_mapping.get("user", "postgres")),
        database=str(postgres_mapping.get("database", "postgres")),
        psql_bin=str(postgres_mapping.get("psql_bin", "psql")),
    )

    volumes_mapping = _as_dict(raw.get("volumes"), "volumes")
    suffixes = tuple(
        str(item).strip()
        for item in _as_sequence(volumes_mapping.get("suffixes", []), "volumes.suffixes")
        if str(item).strip()
    )
    if not suffixes:
        raise ConfigError("volumes.suffixes must list at least one suffix.")

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        ports=ports,
        cache=cache,
        health=health,
        compose=compose,
        postgres=postgres,
        volumes=VolumesConfig(suffixes=suffixes),
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


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Comma-separated strings are accepted so env overrides stay practical.
        return [segment for segment in value.split(",")]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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
    "CacheConfig",
    "ComposeConfig",
    "ConfigError",
    "HealthConfig",
    "PortsConfig",
    "PostgresConfig",
    "VolumesConfig",
    "load_config",
]
