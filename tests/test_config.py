from __future__ import annotations

from datetime import timezone

import pytest
from pydantic import ValidationError

from pix_monitor.config import ConfigError, MonitorConfig, load_config, load_timezone, parse_hhmm

_CREDENTIALS = {
    "PIX_API_SECRET_KEY": "sk_live_abc",
    "TELEGRAM_BOT_TOKEN": "123:abc",
    "TELEGRAM_CHAT_ID": "-1001",
}


def test_defaults() -> None:
    config = MonitorConfig()
    assert config.check_interval_minutes == 15
    assert config.request_timeout_ms == 30000
    assert config.notification_cooldown_minutes == 30
    assert config.notifications_enabled is True
    assert config.monitor_start_hour is None
    assert config.daily_report_time == "23:55"
    assert config.test_amount_cents == 500


def test_missing_credentials_are_listed() -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(environ={"PIX_API_SECRET_KEY": "sk"})
    assert excinfo.value.missing == ["TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID"]
    assert "TELEGRAM_BOT_TOKEN" in str(excinfo.value)


def test_blank_credentials_count_as_missing() -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(environ={**_CREDENTIALS, "TELEGRAM_CHAT_ID": "   "})
    assert excinfo.value.missing == ["TELEGRAM_CHAT_ID"]


def test_env_values_are_converted() -> None:
    config = load_config(
        environ={
            **_CREDENTIALS,
            "PIX_API_URL": "https://pay.example.test/api/v1",
            "ENABLE_NOTIFICATIONS": "false",
            "CHECK_INTERVAL_MINUTES": "5",
            "REQUEST_TIMEOUT_MS": "10000",
            "MONITOR_START_HOUR": "0",
            "MONITOR_END_HOUR": "6",
            "MONITORING_ENV": "production",
            "WEBHOOK_URL": "https://hooks.example.test/pix",
        }
    )
    assert config.api_url == "https://pay.example.test/api/v1"
    assert config.secret_key == "sk_live_abc"
    assert config.notifications_enabled is False
    assert config.check_interval_minutes == 5
    assert config.request_timeout_ms == 10000
    assert config.monitor_start_hour == 0
    assert config.monitor_end_hour == 6
    assert config.environment == "production"
    assert config.postback_url == "https://hooks.example.test/pix"


def test_yaml_file_is_overlaid_by_env(tmp_path) -> None:
    path = tmp_path / "monitor.yaml"
    path.write_text(
        "check_interval_minutes: 20\n"
        "test_amount_cents: 300\n"
        "environment: staging\n"
        "telegram_chat_id: '-999'\n",
        encoding="utf-8",
    )
    config = load_config(str(path), environ={**_CREDENTIALS, "CHECK_INTERVAL_MINUTES": "10"})
    assert config.check_interval_minutes == 10
    assert config.test_amount_cents == 300
    assert config.environment == "staging"
    assert config.telegram_chat_id == "-1001"


def test_config_path_from_environment(tmp_path) -> None:
    path = tmp_path / "monitor.yaml"
    path.write_text("status_summary_hours: 4\n", encoding="utf-8")
    config = load_config(environ={**_CREDENTIALS, "MONITORING_CONFIG": str(path)})
    assert config.status_summary_hours == 4


def test_non_mapping_yaml_is_rejected(tmp_path) -> None:
    path = tmp_path / "monitor.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path), environ=_CREDENTIALS)


def test_non_integer_env_value() -> None:
    with pytest.raises(ConfigError, match="CHECK_INTERVAL_MINUTES"):
        load_config(environ={**_CREDENTIALS, "CHECK_INTERVAL_MINUTES": "often"})


def test_out_of_range_hour() -> None:
    with pytest.raises(ValidationError):
        load_config(environ={**_CREDENTIALS, "MONITOR_START_HOUR": "24"})


def test_credentials_optional_when_not_required() -> None:
    config = load_config(environ={}, require_credentials=False)
    assert config.missing_required_keys() == ["secret_key", "telegram_bot_token", "telegram_chat_id"]


def test_parse_hhmm() -> None:
    assert parse_hhmm("23:55") == (23, 55)
    assert parse_hhmm("7:05") == (7, 5)
    for bad in ("24:00", "12:60", "noon", "12"):
        with pytest.raises(ValueError):
            parse_hhmm(bad)
    with pytest.raises(ValidationError):
        MonitorConfig(daily_report_time="25:00")


def test_load_timezone() -> None:
    assert load_timezone("UTC") is timezone.utc
    assert load_timezone("") is timezone.utc
    assert load_timezone("Not/AZone") is timezone.utc
    assert str(load_timezone("America/Sao_Paulo")) == "America/Sao_Paulo"
