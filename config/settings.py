"""
Configuration loader for the notification pipeline.
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
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "notify"
    notification_queue: str = "email-notifications"
    dead_letter_queue: str = "email-dlq"
    event_queue: str = "email-events"
    max_attempts: int = 3
    backoff_delay: float = 2.0          # seconds, doubles per retry
    completed_max_age: int = 24 * 3600  # seconds
    completed_max_count: int = 1000
    lock_duration: float = 300.0        # seconds a claimed job may run before it counts as stalled
    event_max_attempts: int = 3
    event_backoff_delay: float = 1.0
    event_completed_max_age: int = 3600
    event_completed_max_count: int = 100


@dataclass
class WorkerConfig:
    concurrency: int = 1                # delivery is serialized by the throttle regardless
    min_delivery_interval: float = 3.0  # seconds between successful deliveries
    poll_timeout: float = 1.0           # blocking-pop timeout
    event_concurrency: int = 3
    promote_interval: float = 5.0       # seconds between delayed-queue scans
    dead_letter_review_interval: float = 60.0


@dataclass
class DeliveryConfig:
    provider: str = "log"               # "log" | "resend"
    api_key: str = ""
    from_email: str = "onboarding@resend.dev"
    from_name: str = "CoverGirl Contest"
    base_url: str = "https://api.resend.com"
    timeout: float = 30.0


DEFAULT_SLOTS: dict[str, list[str]] = {
    "monday": ["09:45", "15:00"],
    "tuesday": ["10:00", "16:00"],
    "wednesday": ["10:00", "15:30"],
    "thursday": ["09:30", "16:30"],
    "friday": ["09:15", "14:30"],
}


@dataclass
class ScheduleConfig:
    timezone: str = "UTC"
    slots: dict[str, list[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_SLOTS.items()})


@dataclass
class Settings:
    app_name: str = "contest-notify"
    debug: bool = False
    frontend_url: str = "https://covergirl.com"
    log_level: str = "INFO"
    log_json: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)


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
    """Overlay known keys from a raw YAML mapping onto a config dataclass."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    values = {name: getattr(current, name) for name in cls.__dataclass_fields__}
    values.update(known)
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "NOTIFY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.frontend_url = raw.get("frontend_url", settings.frontend_url)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.log_json = raw.get("log_json", settings.log_json)

        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)

        if "worker" in raw:
            settings.worker = _section(WorkerConfig, raw["worker"], settings.worker)

        if "delivery" in raw:
            settings.delivery = _section(DeliveryConfig, raw["delivery"], settings.delivery)

        if "schedule" in raw:
            sched = raw["schedule"] or {}
            settings.schedule = ScheduleConfig(
                timezone=sched.get("timezone", settings.schedule.timezone),
                slots=sched.get("slots", settings.schedule.slots) or {},
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
