"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from .enums import TransportKind
from .errors import ConfigError


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class EventBusConfig(BaseModel):
    bus_name: str = "default"
    transport: TransportKind = TransportKind.MEMORY
    redis_url: str = "redis://localhost:6379/0"
    consumer_group: str = "handlers"
    max_stream_length: int = 10_000
    block_ms: int = 1000
    batch_size: int = 10
    max_delivery_attempts: int = 3  # Transient failures before dead-letter
    redelivery_delay_ms: int = 100  # Wait before the first redelivery
    redelivery_backoff_factor: float = 2.0
    default_source: str = "default"


class BackoffConfig(BaseModel):
    max_attempts: int = 5
    initial_delay_ms: int = 100
    backoff_factor: float = 1.5

    @field_validator("max_attempts")
    @classmethod
    def _positive_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"
    metrics_port: int = 9090
    metrics_enabled: bool = False


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level runtime settings.

    Loaded from TOML config files, overridden by environment variables
    (``INVOICING_EVENT_BUS__BUS_NAME=...``).
    """

    service_name: str = "invoicing"

    event_bus: EventBusConfig = Field(default_factory=EventBusConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "INVOICING_", "env_nested_delimiter": "__"}


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            try:
                with open(path, "rb") as f:
                    data = tomli.load(f)
            except tomli.TOMLDecodeError as exc:
                raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    if overrides:
        data = _merge(data, overrides)

    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Nested dict merge; override values win, sub-tables merge key by key."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged
