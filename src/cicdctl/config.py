"""Configuration loader for cicdctl.

Configuration values are read from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/cicdctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CICDCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CICDCTL_ARTIFACT_ROOT=/srv/cicd
    export CICDCTL_BACKUPS__RETENTION__VALUE=3

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` so components receive an explicit context object rather than
reading ambient globals.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load cicdctl configuration. Install with "
        "`pip install cicdctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CICDCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
OFFLINE_ENV_VAR = f"{ENV_PREFIX}OFFLINE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    OFFLINE_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RetentionConfig:
    """Default backup retention applied until an operator persists a policy."""

    mode: str = "count"
    value: int = 7

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"mode": self.mode, "value": self.value}


@dataclass(frozen=True)
class BackupConfig:
    """Backup compression and retention defaults."""

    compression: str = "auto"
    compression_level: int | None = None
    retention: RetentionConfig = RetentionConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
            "retention": self.retention.to_dict(),
        }


@dataclass(frozen=True)
class AuthorizationConfig:
    """Locations and tools used by the restart authorization boundary."""

    wrapper_path: Path = Path("/usr/local/sbin/cicd_restart_service")
    grant_path: Path = Path("/etc/sudoers.d/cicd_restart_service")
    principal: str | None = None
    visudo_bin: str = "visudo"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "wrapper_path": str(self.wrapper_path),
            "grant_path": str(self.grant_path),
            "principal": self.principal,
            "visudo_bin": self.visudo_bin,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "/usr/bin/systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class PortsConfig:
    """Port probing configuration."""

    ss_bin: str = "ss"
    search_limit: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ss_bin": self.ss_bin, "search_limit": self.search_limit}


@dataclass(frozen=True)
class VersionsConfig:
    """Version discovery behaviour."""

    timeout: float = 10.0
    offline: bool = False
    limit: int = 10
    apt_cache_bin: str = "apt-cache"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "offline": self.offline,
            "limit": self.limit,
            "apt_cache_bin": self.apt_cache_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cicdctl."""

    config_file: Path
    artifact_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    backups: BackupConfig
    authorization: AuthorizationConfig
    systemd: SystemdConfig
    ports: PortsConfig
    versions: VersionsConfig

    @property
    def credentials_dir(self) -> Path:
        """Directory holding one file per secret."""
        return self.artifact_root / "credentials"

    @property
    def whitelist_file(self) -> Path:
        """Newline-delimited list of services approved for restart."""
        return self.artifact_root / "whitelist" / "allowed_services"

    @property
    def backups_dir(self) -> Path:
        """Directory receiving snapshot archives."""
        return self.artifact_root / "backups"

    @property
    def state_dir(self) -> Path:
        """Directory for small persisted state files."""
        return self.artifact_root / "state"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "artifact_root": str(self.artifact_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "backups": self.backups.to_dict(),
            "authorization": self.authorization.to_dict(),
            "systemd": self.systemd.to_dict(),
            "ports": self.ports.to_dict(),
            "versions": self.versions.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/cicdctl/config.yml",
    "artifact_root": "/opt/cicd-artifacts",
    "logs_dir": None,  # derived from artifact_root when absent
    "runtime_dir": "/run/cicdctl",
    "templates_dir": "/etc/cicdctl/templates",
    "lock_timeout": 30.0,
    "backups": {
        "compression": {
            "algorithm": "auto",
            "level": None,
        },
        "retention": {
            "mode": "count",
            "value": 7,
        },
    },
    "authorization": {
        "wrapper_path": "/usr/local/sbin/cicd_restart_service",
        "grant_path": "/etc/sudoers.d/cicd_restart_service",
        "principal": None,
        "visudo_bin": "visudo",
    },
    "systemd": {
        "systemctl_bin": "/usr/bin/systemctl",
    },
    "ports": {
        "ss_bin": "ss",
        "search_limit": 100,
    },
    "versions": {
        "timeout": 10.0,
        "offline": False,
        "limit": 10,
        "apt_cache_bin": "apt-cache",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}
ALLOWED_RETENTION_MODES = {"count", "days"}
_SECTION_KEYS: dict[str, set[str]] = {
    "backups": {"compression", "retention"},
    "authorization": {"wrapper_path", "grant_path", "principal", "visudo_bin"},
    "systemd": {"systemctl_bin"},
    "ports": {"ss_bin", "search_limit"},
    "versions": {"timeout", "offline", "limit", "apt_cache_bin"},
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

    config = _build_app_config(merged)
    if _truthy(resolved_env.get(OFFLINE_ENV_VAR)):
        config = replace(config, versions=replace(config.versions, offline=True))
    return config


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

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")

    algorithm = str(compression_map.get("algorithm", "auto"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}.")

    retention_map = _as_dict(backups_map.get("retention"), "backups.retention")
    unknown_retention = set(retention_map.keys()) - {"mode", "value"}
    if unknown_retention:
        joined = ", ".join(sorted(unknown_retention))
        raise ConfigError(f"Unknown backups retention keys: {joined}.")
    mode = str(retention_map.get("mode", "count"))
    if mode not in ALLOWED_RETENTION_MODES:
        allowed = ", ".join(sorted(ALLOWED_RETENTION_MODES))
        raise ConfigError(f"Unsupported retention mode '{mode}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    artifact_root = _to_path(raw.get("artifact_root"))
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else artifact_root / "logs"
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    compression_mapping = _as_dict(backups_mapping.get("compression"), "backups.compression")
    compression_level_raw = compression_mapping.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        parsed_level = _expect_int(compression_level_raw, "backups.compression.level", default=1)
        if parsed_level <= 0:
            raise ConfigError("backups.compression.level must be greater than zero when specified.")
        compression_level = parsed_level

    retention_mapping = _as_dict(backups_mapping.get("retention"), "backups.retention")
    retention_value = _expect_int(
        retention_mapping.get("value"), "backups.retention.value", default=7
    )
    if retention_value < 0:
        raise ConfigError("backups.retention.value must be non-negative.")
    backups = BackupConfig(
        compression=str(compression_mapping.get("algorithm", "auto")),
        compression_level=compression_level,
        retention=RetentionConfig(
            mode=str(retention_mapping.get("mode", "count")),
            value=retention_value,
        ),
    )

    auth_mapping = _as_dict(raw.get("authorization"), "authorization")
    principal_value = auth_mapping.get("principal")
    if principal_value is not None and not isinstance(principal_value, str):
        raise ConfigError("authorization.principal must be a string or null.")
    authorization = AuthorizationConfig(
        wrapper_path=_to_path(
            auth_mapping.get("wrapper_path", "/usr/local/sbin/cicd_restart_service")
        ),
        grant_path=_to_path(auth_mapping.get("grant_path", "/etc/sudoers.d/cicd_restart_service")),
        principal=principal_value or None,
        visudo_bin=str(auth_mapping.get("visudo_bin", "visudo")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "/usr/bin/systemctl")),
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    search_limit = _expect_int(ports_mapping.get("search_limit"), "ports.search_limit", default=100)
    if search_limit <= 0:
        raise ConfigError("ports.search_limit must be greater than zero.")
    ports = PortsConfig(
        ss_bin=str(ports_mapping.get("ss_bin", "ss")),
        search_limit=search_limit,
    )

    versions_mapping = _as_dict(raw.get("versions"), "versions")
    limit = _expect_int(versions_mapping.get("limit"), "versions.limit", default=10)
    if limit <= 0:
        raise ConfigError("versions.limit must be greater than zero.")
    versions = VersionsConfig(
        timeout=_expect_positive_float(
            versions_mapping.get("timeout"), "versions.timeout", default=10.0
        ),
        offline=_expect_bool(versions_mapping.get("offline"), "versions.offline", default=False),
        limit=limit,
        apt_cache_bin=str(versions_mapping.get("apt_cache_bin", "apt-cache")),
    )

    return AppConfig(
        config_file=config_file,
        artifact_root=artifact_root,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        backups=backups,
        authorization=authorization,
        systemd=systemd,
        ports=ports,
        versions=versions,
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


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


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


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "yes", "no"}:
        return value.strip().lower() in {"true", "yes"}
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
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
    "AuthorizationConfig",
    "BackupConfig",
    "ConfigError",
    "PortsConfig",
    "RetentionConfig",
    "SystemdConfig",
    "VersionsConfig",
    "load_config",
]
