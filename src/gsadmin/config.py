"""Configuration loader for gsadmin.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/gsadmin/config.yml`` (or an override path).
3. Environment variables prefixed with ``GSADMIN_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GSADMIN_API__PORT=9000
    export GSADMIN_DISPATCH__SERIALIZE=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``; the instance mapping is a read-only mapping proxy so that no
request handler can mutate it after startup.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load gsadmin configuration. Install with "
        "`pip install gsadmin` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import Instance

ENV_PREFIX = "GSADMIN_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ApiConfig:
    """Network settings for the request gateway."""

    host: str = "0.0.0.0"  # noqa: S104 - gateway listens publicly by default
    port: int = 8085
    path: str = "/vhadminapi"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "port": self.port, "path": self.path}


@dataclass(frozen=True)
class ProbeConfig:
    """Settings for the live status query helper."""

    host: str
    script: Path
    python_bin: str = "python3"
    engine: str = "protocol-valve"
    port_offset: int = 1
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "script": str(self.script),
            "python_bin": self.python_bin,
            "engine": self.engine,
            "port_offset": self.port_offset,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class ToolchainConfig:
    """Settings for invoking the per-instance toolchain executables."""

    timeout: float = 1800.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout}


@dataclass(frozen=True)
class ReconcileConfig:
    """Tunables for reconciliation passes."""

    max_concurrency: int = 4
    cache_ttl: float = 0.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_concurrency": self.max_concurrency, "cache_ttl": self.cache_ttl}


@dataclass(frozen=True)
class DispatchConfig:
    """Tunables for background action dispatch."""

    serialize: bool = False
    history_size: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "serialize": self.serialize,
            "history_size": self.history_size,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for gsadmin."""

    config_file: Path
    toolchain_dir: Path
    lock_dir: Path
    logs_dir: Path
    instances: Mapping[str, str]
    api: ApiConfig
    probe: ProbeConfig
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)

    def instance_list(self) -> list[Instance]:
        """Return the configured instances in declaration order."""
        return [Instance(name=name, physical_id=phys) for name, phys in self.instances.items()]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "toolchain_dir": str(self.toolchain_dir),
            "lock_dir": str(self.lock_dir),
            "logs_dir": str(self.logs_dir),
            "instances": dict(self.instances),
            "api": self.api.to_dict(),
            "probe": self.probe.to_dict(),
            "toolchain": self.toolchain.to_dict(),
            "reconcile": self.reconcile.to_dict(),
            "dispatch": self.dispatch.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/gsadmin/config.yml",
    "toolchain_dir": "/home/steam/lgsm",
    "lock_dir": None,  # derived from toolchain_dir when absent
    "logs_dir": "/var/log/gsadmin",
    "instances": {
        "Default": "vhserver",
    },
    "api": {
        "host": "0.0.0.0",  # noqa: S104
        "port": 8085,
        "path": "/vhadminapi",
    },
    "probe": {
        "host": "127.0.0.1",
        "script": None,  # derived from toolchain_dir when absent
        "python_bin": "python3",
        "engine": "protocol-valve",
        "port_offset": 1,
        "timeout": 10.0,
    },
    "toolchain": {
        "timeout": 1800.0,
    },
    "reconcile": {
        "max_concurrency": 4,
        "cache_ttl": 0.0,
    },
    "dispatch": {
        "serialize": False,
        "history_size": 50,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    "api": {"host", "port", "path"},
    "probe": {"host", "script", "python_bin", "engine", "port_offset", "timeout"},
    "toolchain": {"timeout"},
    "reconcile": {"max_concurrency", "cache_ttl"},
    "dispatch": {"serialize", "history_size"},
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

    # The placeholder default instance is dropped by the first source that
    # declares instances; later sources merge into that table.
    default_instances = True
    sources = (
        _load_yaml_file(config_path),
        _build_env_overrides(resolved_env),
        dict(overrides or {}),
    )
    for values in sources:
        if not values:
            continue
        if default_instances and "instances" in values:
            merged["instances"] = {}
            default_instances = False
        _deep_merge(merged, values)

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

    for section, allowed in SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    instances = _as_dict(raw.get("instances"), "instances")
    if not instances:
        raise ConfigError("At least one instance must be configured under 'instances'.")
    seen: set[str] = set()
    for name, physical in instances.items():
        stripped = name.strip()
        if not stripped:
            raise ConfigError("Instance names must be non-empty strings.")
        if stripped in seen:
            raise ConfigError(f"Instance name '{stripped}' is configured more than once.")
        seen.add(stripped)
        if not isinstance(physical, str) or not physical.strip():
            raise ConfigError(
                f"Instance '{name}' must map to a non-empty toolchain identifier."
            )
        if "/" in physical or physical.strip() in {".", ".."}:
            raise ConfigError(
                f"Instance '{name}' identifier {physical!r} must not contain path separators."
            )

    api_path = _as_dict(raw.get("api"), "api").get("path")
    if api_path is not None and (not isinstance(api_path, str) or not api_path.startswith("/")):
        raise ConfigError("api.path must be a string starting with '/'.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    toolchain_dir = _to_path(raw.get("toolchain_dir"))
    lock_dir_value = raw.get("lock_dir")
    lock_dir = _to_path(lock_dir_value) if lock_dir_value else toolchain_dir / "lock"
    logs_dir = _to_path(raw.get("logs_dir"))

    instances_mapping = _as_dict(raw.get("instances"), "instances")
    instances = MappingProxyType(
        {name.strip(): str(physical).strip() for name, physical in instances_mapping.items()}
    )

    api_mapping = _as_dict(raw.get("api"), "api")
    port = _expect_int(api_mapping.get("port"), "api.port", default=8085)
    if not 0 < port < 65536:
        raise ConfigError(f"api.port must be between 1 and 65535. Got {port}.")
    api = ApiConfig(
        host=str(api_mapping.get("host", "0.0.0.0")),  # noqa: S104
        port=port,
        path=str(api_mapping.get("path", "/vhadminapi")).rstrip("/") or "/",
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    script_value = probe_mapping.get("script")
    probe_script = (
        _to_path(script_value)
        if script_value
        else toolchain_dir / "functions" / "query_gsquery.py"
    )
    port_offset = _expect_int(probe_mapping.get("port_offset"), "probe.port_offset", default=1)
    if port_offset < 0:
        raise ConfigError("probe.port_offset must be non-negative.")
    probe = ProbeConfig(
        host=str(probe_mapping.get("host", "127.0.0.1")),
        script=probe_script,
        python_bin=str(probe_mapping.get("python_bin", "python3")),
        engine=str(probe_mapping.get("engine", "protocol-valve")),
        port_offset=port_offset,
        timeout=_expect_positive_float(
            probe_mapping.get("timeout"), "probe.timeout", default=10.0
        ),
    )

    toolchain_mapping = _as_dict(raw.get("toolchain"), "toolchain")
    toolchain = ToolchainConfig(
        timeout=_expect_positive_float(
            toolchain_mapping.get("timeout"), "toolchain.timeout", default=1800.0
        ),
    )

    reconcile_mapping = _as_dict(raw.get("reconcile"), "reconcile")
    max_concurrency = _expect_int(
        reconcile_mapping.get("max_concurrency"), "reconcile.max_concurrency", default=4
    )
    if max_concurrency < 1:
        raise ConfigError("reconcile.max_concurrency must be at least 1.")
    cache_ttl = _expect_float(reconcile_mapping.get("cache_ttl"), "reconcile.cache_ttl", 0.0)
    if cache_ttl < 0:
        raise ConfigError("reconcile.cache_ttl must be non-negative.")
    reconcile = ReconcileConfig(max_concurrency=max_concurrency, cache_ttl=cache_ttl)

    dispatch_mapping = _as_dict(raw.get("dispatch"), "dispatch")
    history_size = _expect_int(
        dispatch_mapping.get("history_size"), "dispatch.history_size", default=50
    )
    if history_size < 0:
        raise ConfigError("dispatch.history_size must be non-negative.")
    dispatch = DispatchConfig(
        serialize=_expect_bool(dispatch_mapping.get("serialize"), "dispatch.serialize"),
        history_size=history_size,
    )

    return AppConfig(
        config_file=config_file,
        toolchain_dir=toolchain_dir,
        lock_dir=lock_dir,
        logs_dir=logs_dir,
        instances=instances,
        api=api,
        probe=probe,
        toolchain=toolchain,
        reconcile=reconcile,
        dispatch=dispatch,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        # Instance names are case-sensitive; everything else is lower-cased.
        if path_segments[0].lower() == "instances" and len(path_segments) > 1:
            path_segments = ["instances", *path_segments[1:]]
            _assign_nested(overrides, path_segments, value.strip())
            continue
        path_segments = [segment.lower() for segment in path_segments]
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


def _expect_bool(value: object | None, label: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object | None, label: str, default: float) -> float:
    if value is None:
        return float(default)
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


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default)
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
    "ApiConfig",
    "AppConfig",
    "ConfigError",
    "DispatchConfig",
    "ProbeConfig",
    "ReconcileConfig",
    "ToolchainConfig",
    "load_config",
]
