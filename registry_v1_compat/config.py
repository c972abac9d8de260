"""Frozen dataclasses for configuration and YAML loader with env-var interpolation."""

from __future__ import annotations

import os
import re
import types
import typing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError
from .registry.interest import Interest, InterestKind
from .v1.models import DEFAULT_LEASE_DURATION_SECS, DEFAULT_RENEWAL_INTERVAL_SECS, LeaseInfo

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _interpolate_env(value: str) -> str:
    """Replace ${ENV_VAR} placeholders with environment variable values."""

    def _replace(match: re.Match) -> str:
        env_key = match.group(1)
        env_val = os.environ.get(env_key)
        if env_val is None:
            raise ConfigError(f"Environment variable '{env_key}' is not set")
        return env_val

    return _ENV_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj: Any) -> Any:
    """Recursively interpolate env vars in strings throughout a nested structure."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(v) for v in obj]
    return obj


@dataclass(frozen=True)
class InterestConfig:
    kind: str = "full"  # "full", "applications", "vips", "secure_vips" or "instances"
    values: list[str] = field(default_factory=list)

    def build(self) -> Interest:
        return Interest.from_config(self.kind, self.values)


@dataclass(frozen=True)
class AggregatorConfig:
    digest_batch_size: int = 100  # 0 = digests computed only when read
    shutdown_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class LeaseConfig:
    renewal_interval_seconds: int = DEFAULT_RENEWAL_INTERVAL_SECS
    duration_seconds: int = DEFAULT_LEASE_DURATION_SECS

    def build(self) -> LeaseInfo:
        return LeaseInfo(
            renewal_interval_secs=self.renewal_interval_seconds,
            duration_secs=self.duration_seconds,
        )


@dataclass(frozen=True)
class ReplayConfig:
    path: str = ""  # events file replayed by the CLI; --events overrides


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"  # "json" or "text"


@dataclass(frozen=True)
class AppConfig:
    interest: InterestConfig = field(default_factory=InterestConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    lease: LeaseConfig = field(default_factory=LeaseConfig)
    replay: ReplayConfig | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_dataclass_type(ft: Any) -> type | None:
    """Return the underlying dataclass type from a type annotation (handles Optional/X|None)."""
    if isinstance(ft, type) and hasattr(ft, "__dataclass_fields__"):
        return ft
    # Handle X | None (Python 3.10+ types.UnionType: no __origin__, has __args__)
    if isinstance(ft, types.UnionType):
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    # Handle typing.Optional[X] → Union[X, None]
    origin = getattr(ft, "__origin__", None)
    if origin is typing.Union:
        args = [a for a in ft.__args__ if a is not type(None)]
        if len(args) == 1 and isinstance(args[0], type) and hasattr(args[0], "__dataclass_fields__"):
            return args[0]
    return None


def _build_nested(cls: type, data: dict[str, Any]) -> Any:
    """Construct a frozen dataclass, recursively building nested dataclass fields."""
    if not isinstance(data, dict):
        return data
    field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in field_types:
            continue
        ft = field_types[key]
        # Resolve string annotations to actual types in the module scope
        if isinstance(ft, str):
            ft = eval(ft, globals(), {cls.__name__: cls})  # noqa: S307
        dc_type = _get_dataclass_type(ft)
        if dc_type is not None and isinstance(value, dict):
            kwargs[key] = _build_nested(dc_type, value)
        else:
            kwargs[key] = value
    return cls(**kwargs)


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration file must be a YAML mapping")

    raw = _walk_and_interpolate(raw)
    config = _build_nested(AppConfig, raw)
    _validate(config)
    return config


def _validate(config: AppConfig) -> None:
    """Validate configuration values."""
    kinds = [k.value for k in InterestKind]
    if config.interest.kind not in kinds:
        raise ConfigError(f"interest.kind must be one of {', '.join(kinds)}")

    if not isinstance(config.interest.values, list):
        raise ConfigError("interest.values must be a list")

    if config.interest.kind != InterestKind.FULL.value and not config.interest.values:
        raise ConfigError(f"interest.values is required for interest kind '{config.interest.kind}'")

    if not isinstance(config.aggregator.digest_batch_size, int) or config.aggregator.digest_batch_size < 0:
        raise ConfigError("aggregator.digest_batch_size must be an integer >= 0")

    if config.aggregator.shutdown_timeout_seconds <= 0:
        raise ConfigError("aggregator.shutdown_timeout_seconds must be > 0")

    if config.lease.renewal_interval_seconds <= 0:
        raise ConfigError("lease.renewal_interval_seconds must be > 0")

    if config.lease.duration_seconds < config.lease.renewal_interval_seconds:
        raise ConfigError("lease.duration_seconds must be >= lease.renewal_interval_seconds")

    if config.logging.format not in ("json", "text"):
        raise ConfigError("logging.format must be 'json' or 'text'")
