"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from chainwatch.analytics.engine import TIMEFRAMES as ANALYTICS_TIMEFRAMES
from chainwatch.data.snapshots import MetricSource
from chainwatch.notifiers.local import SOUND_TYPES

FEED_PROVIDERS = ("simulated", "coinmarketcap")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class StorageConfig:
    """Local key-value store configuration."""

    path: str = "data/chainwatch.db"


@dataclass
class SourceConfig:
    """A configured metric source."""

    id: str
    name: str
    categories: list[str] = field(default_factory=lambda: ["price", "volume", "gas"])
    explorer_url: Optional[str] = None
    instruments: list[str] = field(default_factory=list)

    def to_source(self) -> MetricSource:
        return MetricSource(
            id=self.id,
            name=self.name,
            categories=tuple(self.categories),
            explorer_url=self.explorer_url,
            instruments=tuple(self.instruments),
        )


@dataclass
class FeedConfig:
    """Metric feed configuration."""

    provider: str = "simulated"
    api_key: str = ""
    volatility: float = 0.05


@dataclass
class ScheduleConfig:
    """Refresh intervals."""

    metrics_interval_seconds: float = 10
    analytics_interval_seconds: float = 30


@dataclass
class AlertsConfig:
    """Alert history and repeat policy."""

    history_size: int = 50
    cooldown_seconds: float = 0


@dataclass
class AnalyticsConfig:
    """Analytics defaults."""

    anomaly_k: float = 2.0
    timeframe: str = "7d"


@dataclass
class SoundConfig:
    """Audible cue settings."""

    enabled: bool = True
    volume: float = 0.7
    quiet_start: int = 22
    quiet_end: int = 8
    sounds: dict[str, bool] = field(
        default_factory=lambda: {sound: True for sound in SOUND_TYPES}
    )


@dataclass
class PushConfig:
    """Platform push settings."""

    permission_granted: bool = False


@dataclass
class NotificationsConfig:
    """Local notification channels."""

    sound: SoundConfig = field(default_factory=SoundConfig)
    push: PushConfig = field(default_factory=PushConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    sources: list[SourceConfig] = field(default_factory=list)
    feed: FeedConfig = field(default_factory=FeedConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    integrations: list[dict[str, Any]] = field(default_factory=list)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)

    @property
    def log_level(self) -> int:
        return getattr(logging, self.advanced.log_level.upper(), logging.INFO)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _section(config_dict: dict[str, Any], name: str) -> dict[str, Any]:
    value = config_dict.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"Section '{name}' must be a mapping")
    return value


def _build(cls, values: dict[str, Any], section: str):
    """Build a config dataclass, reporting unknown keys as validation errors."""
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigValidationError(f"Invalid '{section}' settings: {e}") from None


def _positive(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigValidationError(f"{name} must be a positive number")
    return value


def _validate_storage(storage: StorageConfig) -> None:
    # Check storage path is provided
    if not storage.path:
        raise ConfigValidationError("Storage path is required")
    if storage.path == ":memory:":
        return

    parent = Path(storage.path).parent
    if parent.exists() and not os.access(parent, os.W_OK):
        raise ConfigValidationError(f"Storage path not writable: {parent}")


def _parse_sources(raw: Any) -> list[SourceConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigValidationError("'sources' must be a list")

    sources = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigValidationError("Each source must be a mapping")
        source_id = str(entry.get("id") or "").strip()
        if not source_id:
            raise ConfigValidationError("Source id cannot be empty")
        if source_id in seen:
            raise ConfigValidationError(f"Duplicate source id: {source_id}")
        seen.add(source_id)

        source = _build(SourceConfig, {**entry, "id": source_id}, "sources")
        if not source.name:
            source.name = source_id
        sources.append(source)
    return sources


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values."""
    _validate_storage(config.storage)

    if config.feed.provider not in FEED_PROVIDERS:
        raise ConfigValidationError(
            f"Unknown feed provider: {config.feed.provider} "
            f"(expected one of {', '.join(FEED_PROVIDERS)})"
        )
    if config.feed.provider == "coinmarketcap" and not config.feed.api_key:
        raise ConfigValidationError("CoinMarketCap feed requires feed.api_key")
    _positive(config.feed.volatility, "feed.volatility")

    _positive(config.schedule.metrics_interval_seconds, "schedule.metrics_interval_seconds")
    _positive(config.schedule.analytics_interval_seconds, "schedule.analytics_interval_seconds")

    if not isinstance(config.alerts.history_size, int) or config.alerts.history_size <= 0:
        raise ConfigValidationError("alerts.history_size must be a positive integer")
    cooldown = config.alerts.cooldown_seconds
    if isinstance(cooldown, bool) or not isinstance(cooldown, (int, float)) or cooldown < 0:
        raise ConfigValidationError("alerts.cooldown_seconds must be a non-negative number")

    _positive(config.analytics.anomaly_k, "analytics.anomaly_k")
    if config.analytics.timeframe not in ANALYTICS_TIMEFRAMES:
        raise ConfigValidationError(f"Unknown analytics timeframe: {config.analytics.timeframe}")

    sound = config.notifications.sound
    if not isinstance(sound.volume, (int, float)) or not 0 <= sound.volume <= 1:
        raise ConfigValidationError("notifications.sound.volume must be between 0 and 1")
    for hour in (sound.quiet_start, sound.quiet_end):
        if not isinstance(hour, int) or not 0 <= hour <= 23:
            raise ConfigValidationError("Quiet hours must be whole hours between 0 and 23")

    if config.advanced.log_level.upper() not in LOG_LEVELS:
        raise ConfigValidationError(f"Unknown log level: {config.advanced.log_level}")


def parse_config(config_dict: dict[str, Any]) -> AppConfig:
    """
    Build and validate configuration from a plain dict.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    notif_dict = _section(config_dict, "notifications")
    integrations = config_dict.get("integrations") or []
    if not isinstance(integrations, list):
        raise ConfigValidationError("'integrations' must be a list")

    config = AppConfig(
        storage=_build(StorageConfig, _section(config_dict, "storage"), "storage"),
        sources=_parse_sources(config_dict.get("sources")),
        feed=_build(FeedConfig, _section(config_dict, "feed"), "feed"),
        schedule=_build(ScheduleConfig, _section(config_dict, "schedule"), "schedule"),
        alerts=_build(AlertsConfig, _section(config_dict, "alerts"), "alerts"),
        analytics=_build(AnalyticsConfig, _section(config_dict, "analytics"), "analytics"),
        notifications=NotificationsConfig(
            sound=_build(SoundConfig, _section(notif_dict, "sound"), "notifications.sound"),
            push=_build(PushConfig, _section(notif_dict, "push"), "notifications.push"),
        ),
        integrations=integrations,
        advanced=_build(AdvancedConfig, _section(config_dict, "advanced"), "advanced"),
    )

    _validate_config(config)
    return config


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigValidationError("Configuration root must be a mapping")

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    return parse_config(config_dict)
