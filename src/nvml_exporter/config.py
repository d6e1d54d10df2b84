"""Configuration loading and validation for nvml_exporter."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

DEFAULT_LISTEN = "[::]:9144"


@dataclass
class OtelExporterConfig:
    """OpenTelemetry push exporter settings."""

    enabled: bool = False
    endpoint: str = "http://localhost:4318"
    service_name: str = "nvml-exporter"
    headers: dict[str, str] = field(default_factory=dict)
    export_interval_ms: int = 10000


@dataclass
class SchedulerConfig:
    """Collection loop settings."""

    initial_interval_seconds: float = 30.0
    max_interval_seconds: float = 3600.0
    fail_fast: bool = True


@dataclass
class ExporterConfig:
    """Top-level nvml_exporter configuration."""

    listen: str = DEFAULT_LISTEN
    namespace: str = "nvml"
    log_level: str = "INFO"
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    otel: OtelExporterConfig = field(default_factory=OtelExporterConfig)


def parse_listen_address(value: str) -> tuple[str, int]:
    """Split ``address:port`` into host and port.

    IPv6 hosts must be bracketed (``[::]:9144``); the brackets are stripped
    from the returned host.
    """
    host, sep, port_text = value.rpartition(":")
    if not sep or not port_text:
        raise ConfigError(f"listen address must be address:port, got {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"IPv6 listen address must be bracketed, got {value!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"invalid port in listen address {value!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in listen address {value!r}")
    return host, port


def _merge_dict(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *source* into *target*."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_dict(target[key], value)
        else:
            target[key] = value
    return target


def _coerce_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides using NVML_EXPORTER_ prefix."""
    env_map = {
        "NVML_EXPORTER_LISTEN": ("listen",),
        "NVML_EXPORTER_LOG_LEVEL": ("log_level",),
        "NVML_EXPORTER_INITIAL_INTERVAL": ("scheduler", "initial_interval_seconds"),
        "NVML_EXPORTER_MAX_INTERVAL": ("scheduler", "max_interval_seconds"),
        "NVML_EXPORTER_FAIL_FAST": ("scheduler", "fail_fast"),
        "NVML_EXPORTER_OTEL_ENABLED": ("otel", "enabled"),
        "NVML_EXPORTER_OTEL_ENDPOINT": ("otel", "endpoint"),
        "NVML_EXPORTER_OTEL_SERVICE_NAME": ("otel", "service_name"),
    }
    for env_key, path in env_map.items():
        value = os.environ.get(env_key)
        if value is not None:
            obj = data
            for part in path[:-1]:
                obj = obj.setdefault(part, {})
            final_key = path[-1]
            # coerce non-string values
            if final_key.endswith("_seconds"):
                try:
                    obj[final_key] = float(value)
                except ValueError:
                    raise ConfigError(f"{env_key} must be a number, got {value!r}") from None
            elif final_key in ("enabled", "fail_fast"):
                obj[final_key] = _coerce_bool(value)
            else:
                obj[final_key] = value
    return data


def _coerce_field(section: str, key: str, value: Any, kind: type) -> Any:
    """Convert a raw YAML/env value to the dataclass field's type."""
    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return _coerce_bool(value)
        raise ConfigError(f"{section}.{key} must be a boolean, got {value!r}")
    if kind is dict:
        if not isinstance(value, dict):
            raise ConfigError(f"{section}.{key} must be a mapping, got {value!r}")
        return {str(k): str(v) for k, v in value.items()}
    if kind in (int, float) and isinstance(value, bool):
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be {kind.__name__}, got {value!r}") from None


def _section(name: str, data: Any, cls: type) -> Any:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{name} must be a mapping, got {data!r}")
    defaults = cls()
    kwargs = {}
    for key, value in data.items():
        if key in cls.__dataclass_fields__:
            kind = type(getattr(defaults, key))
            kwargs[key] = _coerce_field(name, key, value, kind)
    return cls(**kwargs)


def _dict_to_config(data: dict[str, Any]) -> ExporterConfig:
    """Convert a raw dictionary to an ExporterConfig dataclass."""
    return ExporterConfig(
        listen=str(data.get("listen", DEFAULT_LISTEN)),
        namespace=str(data.get("namespace", "nvml")),
        log_level=str(data.get("log_level", "INFO")),
        scheduler=_section("scheduler", data.get("scheduler"), SchedulerConfig),
        otel=_section("otel", data.get("otel"), OtelExporterConfig),
    )


def validate_config(cfg: ExporterConfig) -> None:
    """Raise :class:`ConfigError` if *cfg* cannot be run."""
    parse_listen_address(cfg.listen)
    if cfg.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"unknown log_level {cfg.log_level!r}")
    sched = cfg.scheduler
    if sched.initial_interval_seconds <= 0:
        raise ConfigError("scheduler.initial_interval_seconds must be positive")
    if sched.max_interval_seconds < sched.initial_interval_seconds:
        raise ConfigError(
            "scheduler.max_interval_seconds must not be below initial_interval_seconds"
        )


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ExporterConfig:
    """Load configuration from a YAML file with environment overrides.

    Looks for ``nvml_exporter.yaml`` in the current directory if *path* is
    None. A missing default file yields the built-in defaults; an explicit
    *path* that does not exist is an error. *overrides* (typically from the
    command line) are merged last.
    """
    data: dict[str, Any] = {}
    if path is None:
        path = Path("nvml_exporter.yaml")
        required = False
    else:
        path = Path(path)
        required = True

    if path.exists():
        try:
            with open(path, encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc
        if isinstance(loaded, dict):
            data = loaded
        elif loaded is not None:
            raise ConfigError(f"{path} must contain a mapping at the top level")
    elif required:
        raise ConfigError(f"configuration file not found: {path}")

    data = _apply_env_overrides(data)
    if overrides:
        _merge_dict(data, overrides)
    cfg = _dict_to_config(data)
    validate_config(cfg)
    return cfg
