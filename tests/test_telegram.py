from __future__ import annotations

import json

import httpx
import pytest

from pix_monitor.telegram import (
    STATUS_ACTIONS,
    TELEGRAM_MAX_MESSAGE_LEN,
    TelegramConfig,
    TelegramError,
    TelegramNotifier,
    format_daily_report,
    format_status_summary,
)

TOKEN = "123456:ABC-secret-token"
CONFIG = TelegramConfig(bot_token=TOKEN, chat_id="-100200300")


class _Recorder:
    def __init__(self, responses: list[dict] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        data = self.responses.pop(0) if self.responses else {"ok": True, "result": {"message_id": len(self.requests)}}
        return httpx.Response(200, json=data)

    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _notifier(handler, **kwargs) -> TelegramNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramNotifier(client, CONFIG, **kwargs)


def test_split_message_respects_max_len() -> None:
    text = ("line\n" * 2000).strip()
    parts = TelegramNotifier.split_message(text, max_len=500)
    assert len(parts) > 1
    assert all(0 < len(p) <= 500 for p in parts)


def test_split_message_default_limit() -> None:
    text = "a" * (TELEGRAM_MAX_MESSAGE_LEN + 10)
    parts = TelegramNotifier.split_message(text)
    assert len(parts) == 2
    assert len(parts[0]) <= TELEGRAM_MAX_MESSAGE_LEN
    assert len(parts[1]) <= TELEGRAM_MAX_MESSAGE_LEN


def test_split_message_prefers_paragraph_breaks() -> None:
    text = "a" * 300 + "\n\n" + "b " * 150
    assert TelegramNotifier.split_message(text, max_len=400) == ["a" * 300, ("b " * 150).strip()]
    assert TelegramNotifier.split_message("   ") == [""]


def test_redact_masks_token() -> None:
    notifier = TelegramNotifier(httpx.AsyncClient(), CONFIG)
    assert notifier.redact(f"GET /bot{TOKEN}/getMe") == "GET /bot<redacted>/getMe"


@pytest.mark.asyncio
async def test_send_posts_plain_text() -> None:
    recorder = _Recorder([{"ok": True, "result": {"message_id": 42}}])
    notifier = _notifier(recorder)

    result = await notifier.send("hello")
    assert result.success is True
    assert result.message_id == 42
    assert result.skipped is False

    request = recorder.requests[0]
    assert request.url.path.endswith("/sendMessage")
    assert TOKEN in str(request.url)
    payload = recorder.payloads()[0]
    assert payload["chat_id"] == "-100200300"
    assert payload["text"] == "hello"
    assert "parse_mode" not in payload


@pytest.mark.asyncio
async def test_long_message_is_split_and_buttons_go_last() -> None:
    recorder = _Recorder()
    notifier = _notifier(recorder)

    text = "\n".join(f"line {i:05d}" for i in range(800))
    result = await notifier.send_with_actions(text, STATUS_ACTIONS)
    assert result.success is True

    payloads = recorder.payloads()
    assert len(payloads) > 1
    assert all("reply_markup" not in p for p in payloads[:-1])
    keyboard = payloads[-1]["reply_markup"]["inline_keyboard"]
    callbacks = [button["callback_data"] for row in keyboard for button in row]
    assert callbacks == ["force_check", "full_report", "pause_monitor", "view_logs"]


@pytest.mark.asyncio
async def test_api_failure_is_reported_not_raised() -> None:
    recorder = _Recorder([{"ok": False, "description": "Bad Request: chat not found"}])
    notifier = _notifier(recorder)

    result = await notifier.send("hello")
    assert result.success is False
    assert result.error == "Bad Request: chat not found"


@pytest.mark.asyncio
async def test_transport_error_redacts_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach /bot{TOKEN}/sendMessage", request=request)

    notifier = _notifier(handler)
    result = await notifier.send("hello")
    assert result.success is False
    assert TOKEN not in (result.error or "")
    assert "<redacted>" in (result.error or "")


@pytest.mark.asyncio
async def test_disabled_notifier_skips_sending() -> None:
    recorder = _Recorder()
    notifier = _notifier(recorder, enabled=False)

    result = await notifier.send_error_alert("🚨 ALERT")
    assert result.success is True
    assert result.skipped is True
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_alerts_carry_environment_footer() -> None:
    recorder = _Recorder()
    notifier = _notifier(recorder, environment="production")

    await notifier.send_error_alert("🚨 ALERT - PIX payment monitor")
    text = recorder.payloads()[0]["text"]
    assert text.startswith("🚨 ALERT - PIX payment monitor")
    assert text.endswith("🌍 Environment: production")


@pytest.mark.asyncio
async def test_connection_check_announces_bot() -> None:
    recorder = _Recorder(
        [
            {"ok": True, "result": {"id": 99, "username": "pix_monitor_bot"}},
            {"ok": True, "result": {"message_id": 1}},
        ]
    )
    notifier = _notifier(recorder)

    bot = await notifier.test_connection()
    assert bot["username"] == "pix_monitor_bot"
    assert recorder.requests[0].url.path.endswith("/getMe")
    assert "@pix_monitor_bot" in json.loads(recorder.requests[1].content)["text"]


@pytest.mark.asyncio
async def test_connection_check_failure_raises() -> None:
    notifier = _notifier(_Recorder([{"ok": False, "description": "Unauthorized"}]))
    with pytest.raises(TelegramError, match="Unauthorized"):
        await notifier.test_connection()


def test_format_daily_report() -> None:
    text = format_daily_report(
        {
            "date": "10/03/2026",
            "checks": {"total": 2, "success": 1, "failed": 1},
            "errors": [{"time": "14:15:00", "type": "TIMEOUT_ERROR", "message": "ReadTimeout"}],
            "uptime": 50.0,
            "avg_response_time_ms": 150.4,
            "test_amount_cents": 500,
            "total_cost_cents": 1000,
            "performance": {
                "percentiles": {"p50": 100.0, "p95": 200.0, "p99": 200.0},
                "trend": "degrading",
                "trend_percent": -12.5,
            },
        }
    )
    assert text.startswith("📊 DAILY REPORT - PIX payment monitor")
    assert "• Total checks: 2" in text
    assert "• Uptime: 50.00%" in text
    assert "• Average response time: 150ms" in text
    assert "• P50/P95/P99: 100ms / 200ms / 200ms" in text
    assert "• Trend: degrading (12.5%)" in text
    assert "• 14:15:00 - TIMEOUT_ERROR: ReadTimeout" in text
    assert "• Total cost for the day: R$ 10,00" in text


def test_format_status_summary() -> None:
    text = format_status_summary(
        {
            "is_healthy": False,
            "is_paused": True,
            "last_check": "10/03/2026 09:30:00",
            "checks_today": 4,
            "cost_today_cents": 2000,
            "uptime": 75.0,
            "avg_response_time_ms": 300.0,
            "last_error": {"time": "10/03/2026 09:30:00", "type": "API_ERROR"},
        }
    )
    assert "❌ System has problems" in text
    assert "⏸️ Monitor is paused" in text
    assert "💰 Cost today: R$ 20,00" in text
    assert "Type: API_ERROR" in text
