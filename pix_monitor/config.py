"""Configuration management for the PIX monitor."""

from __future__ import annotations

import os
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger(__name__)

# Config field -> environment variable.
ENV_VARS: dict[str, str] = {
    "api_url": "PIX_API_URL",
    "secret_key": "PIX_API_SECRET_KEY",
    "telegram_bot_token": "TELEGRAM_BOT_TOKEN",
    "telegram_chat_id": "TELEGRAM_CHAT_ID",
    "notifications_enabled": "ENABLE_NOTIFICATIONS",
    "check_interval_minutes": "CHECK_INTERVAL_MINUTES",
    "request_timeout_ms": "REQUEST_TIMEOUT_MS",
    "notification_cooldown_minutes": "NOTIFICATION_COOLDOWN_MINUTES",
    "monitor_start_hour": "MONITOR_START_HOUR",
    "monitor_end_hour": "MONITOR_END_HOUR",
    "log_level": "LOG_LEVEL",
    "environment": "MONITORING_ENV",
    "timezone": "MONITOR_TIMEZONE",
    "data_dir": "DATA_DIR",
    "postback_url": "WEBHOOK_URL",
    "daily_report_time": "DAILY_REPORT_TIME",
}

REQUIRED_KEYS = ("secret_key", "telegram_bot_token", "telegram_chat_id")

_INT_FIELDS = {"check_interval_minutes", "request_timeout_ms", "notification_cooldown_minutes", "monitor_start_hour", "monitor_end_hour"}
_BOOL_FIELDS = {"notifications_enabled"}


class ConfigError(RuntimeError):
    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = list(missing or [])


class MonitorConfig(BaseModel):
    """Main configuration for the PIX monitor."""

    # Payment API
    api_url: str = Field(default="https://example.com.br/api/v1", description="Payment API base URL")
    secret_key: Optional[str] = Field(default=None, description="Payment API secret key")
    purchase_path: str = Field(default="/transaction.purchase", description="Purchase endpoint path")
    postback_url: Optional[str] = Field(default=None, description="Webhook URL sent with test transactions")
    test_amount_cents: int = Field(default=500, ge=1, description="Amount charged per test transaction")

    # Telegram
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram bot token")
    telegram_chat_id: Optional[str] = Field(default=None, description="Telegram chat to notify")
    notifications_enabled: bool = Field(default=True, description="Send Telegram notifications")

    # Scheduling
    check_interval_minutes: int = Field(default=15, ge=1, description="Minutes between checks")
    request_timeout_ms: int = Field(default=30000, ge=1, description="Probe request timeout")
    notification_cooldown_minutes: int = Field(default=30, ge=0, description="Minimum minutes between repeat alerts")
    monitor_start_hour: Optional[int] = Field(default=None, ge=0, le=23, description="Start of monitoring window")
    monitor_end_hour: Optional[int] = Field(default=None, ge=0, le=23, description="End of monitoring window")
    daily_report_time: str = Field(default="23:55", description="HH:MM for the daily report")
    status_summary_hours: int = Field(default=6, ge=1, le=24, description="Hours between status summaries")

    # Metrics
    max_samples: int = Field(default=1000, ge=1, description="Response-time ring buffer capacity")
    retention_days: int = Field(default=7, ge=1, description="Days of hourly/daily buckets to keep")

    # System
    environment: str = Field(default="development", description="Environment label")
    log_level: str = Field(default="INFO", description="Logging level")
    timezone: str = Field(default="America/Sao_Paulo", description="Timezone for buckets and reports")
    data_dir: str = Field(default="./data", description="Directory for JSON state files")

    @field_validator("daily_report_time")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    def missing_required_keys(self) -> list[str]:
        return [key for key in REQUIRED_KEYS if not (getattr(self, key) or "").strip()]

    @property
    def tz(self) -> tzinfo:
        return load_timezone(self.timezone)


def parse_hhmm(value: Any) -> tuple[int, int]:
    s = str(value or "").strip()
    parts = s.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time {value!r}; expected HH:MM")
    return hour, minute


def load_timezone(name: str) -> tzinfo:
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except ZoneInfoNotFoundError:
        logger.warning("Timezone not found; falling back to UTC", tz=cleaned)
        return timezone.utc


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key, env_name in ENV_VARS.items():
        value = environ.get(env_name)
        if value is None or not value.strip():
            continue
        value = value.strip()
        if key in _INT_FIELDS:
            try:
                overrides[key] = int(value)
            except ValueError as exc:
                raise ConfigError(f"{env_name} must be an integer, got {value!r}") from exc
        elif key in _BOOL_FIELDS:
            overrides[key] = value.lower() in ("true", "1", "yes")
        else:
            overrides[key] = value
    return overrides


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    *,
    require_credentials: bool = True,
) -> MonitorConfig:
    """Load configuration from an optional YAML file overlaid by environment variables."""
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = environ.get("MONITORING_CONFIG")

    config_data: dict[str, Any] = {}
    if config_path and os.path.exists(config_path):
        with open(Path(config_path), "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError("Config YAML must be a mapping")
        config_data.update(loaded)

    config_data.update(_env_overrides(environ))
    config = MonitorConfig(**config_data)

    if require_credentials:
        missing = config.missing_required_keys()
        if missing:
            env_names = [ENV_VARS[k] for k in missing]
            raise ConfigError(f"Missing required configuration: {', '.join(env_names)}", missing=env_names)
    return config
