"""
Configuration loader for the AutoPair messaging pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./autopair.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "message_sending_queue"
    consumer_group: str = "delivery-workers"
    consumer_instances: int = 1         # delivery consumers started in this process
    ttl_seconds: int = 86400            # messages older than this are dead-lettered
    max_deliveries: int = 5             # redeliveries before dead-lettering
    claim_idle_ms: int = 60000          # reclaim entries of crashed consumers after this idle time
    block_ms: int = 2000


@dataclass
class SchedulingConfig:
    planner_hour: int = 2               # daily, UTC
    planner_minute: int = 0
    scan_interval_seconds: int = 60
    scan_max_instances: int = 3         # concurrent scanner runs allowed
    max_retries: int = 3
    retention_days: int = 30
    retention_hour: int = 3
    retention_minute: int = 0
    stale_queued_seconds: int = 900
    stats_interval_seconds: int = 3600
    min_delay_hours: int = 1
    max_delay_hours: int = 24
    slow_delivery_seconds: float = 10.0


@dataclass
class PresenceConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"
    channel_prefix: str = "user"


@dataclass
class Settings:
    app_name: str = "AutoPair"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], current):
    """Build a config dataclass from a raw dict, keeping defaults for missing keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    values = {name: getattr(current, name) for name in cls.__dataclass_fields__}
    values.update(known)
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "AUTOPAIR_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)
        if "scheduling" in raw:
            settings.scheduling = _section(SchedulingConfig, raw["scheduling"], settings.scheduling)
        if "presence" in raw:
            settings.presence = _section(PresenceConfig, raw["presence"], settings.presence)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
