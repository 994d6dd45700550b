from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from pix_monitor.formatting import format_currency, format_ms

logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 3900

# (label, callback_data) rows shown under the periodic status summary.
STATUS_ACTIONS: list[list[tuple[str, str]]] = [
    [("🔄 Force check", "force_check"), ("📊 Full report", "full_report")],
    [("⏸️ Pause monitor", "pause_monitor"), ("📈 View logs", "view_logs")],
]


class TelegramError(RuntimeError):
    pass


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: int | None = None
    error: str | None = None
    skipped: bool = False


def _message_id(data: dict) -> int | None:
    result = data.get("result")
    if isinstance(result, dict) and isinstance(result.get("message_id"), int):
        return int(result["message_id"])
    return None


def _error_text(data: dict) -> str:
    return str(data.get("description") or data.get("error") or "telegram request failed")


def build_inline_keyboard(actions: list[list[tuple[str, str]]]) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": callback} for label, callback in row] for row in actions
        ]
    }


def format_daily_report(report: dict[str, Any]) -> str:
    checks = report.get("checks") or {}
    errors = report.get("errors") or []
    lines = [
        "📊 DAILY REPORT - PIX payment monitor",
        "",
        f"📅 Date: {report.get('date', 'n/a')}",
        "",
        "📈 Statistics:",
        f"• Total checks: {checks.get('total', 0)}",
        f"• Successful checks: {checks.get('success', 0)} ✅",
        f"• Failed checks: {checks.get('failed', 0)} ❌",
        f"• Uptime: {float(report.get('uptime', 100.0)):.2f}%",
        f"• Average response time: {format_ms(report.get('avg_response_time_ms'))}",
    ]

    performance = report.get("performance") or {}
    percentiles = performance.get("percentiles") or {}
    if percentiles:
        lines.append(
            f"• P50/P95/P99: {format_ms(percentiles.get('p50'))} / "
            f"{format_ms(percentiles.get('p95'))} / {format_ms(percentiles.get('p99'))}"
        )
    if performance.get("trend"):
        lines.append(f"• Trend: {performance['trend']} ({abs(float(performance.get('trend_percent') or 0)):.1f}%)")

    if errors:
        lines.extend(["", "❌ Errors detected:"])
        for err in errors[:20]:
            lines.append(f"• {err.get('time', '?')} - {err.get('type', '?')}: {str(err.get('message', ''))[:200]}")
        if len(errors) > 20:
            lines.append(f"• ... and {len(errors) - 20} more")

    amount = int(report.get("test_amount_cents") or 0)
    lines.extend(
        [
            "",
            "💰 Monitoring cost:",
            f"• Transactions made: {checks.get('total', 0)}",
            f"• Amount per transaction: {format_currency(amount)}",
            f"• Total cost for the day: {format_currency(int(report.get('total_cost_cents') or 0))}",
        ]
    )
    return "\n".join(lines)


def format_status_summary(status: dict[str, Any]) -> str:
    lines = ["📊 PIX MONITOR STATUS", ""]
    if status.get("is_healthy", True):
        lines.append("✅ System operating normally")
    else:
        lines.append("❌ System has problems")
    if status.get("is_paused"):
        lines.append("⏸️ Monitor is paused")
    lines.extend(
        [
            "",
            f"⏰ Last check: {status.get('last_check') or 'never'}",
            f"📈 Checks today: {status.get('checks_today', 0)}",
            f"💰 Cost today: {format_currency(int(status.get('cost_today_cents') or 0))}",
            f"📊 Uptime: {float(status.get('uptime', 100.0)):.2f}%",
            f"⚡ Average response time: {format_ms(status.get('avg_response_time_ms'))}",
        ]
    )
    last_error = status.get("last_error")
    if isinstance(last_error, dict) and last_error:
        lines.extend(["", f"⚠️ Last error: {last_error.get('time', '?')}", f"Type: {last_error.get('type', '?')}"])
    return "\n".join(lines)




class TelegramNotifier:
    """Notification channel backed by the Telegram Bot API.

    Sending never raises: failures are logged and returned as
    ``SendResult(success=False)`` so a broken bot cannot interrupt a check.
    The bot token is part of every request URL and is scrubbed from
    anything this class logs or returns.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: TelegramConfig,
        *,
        enabled: bool = True,
        environment: str = "development",
        max_message_len: int = TELEGRAM_MAX_MESSAGE_LEN,
    ):
        self.http_client = http_client
        self.config = config
        self.enabled = bool(enabled)
        self.environment = environment
        self.max_message_len = max(1, int(max_message_len))
        if self.enabled:
            logger.info("Telegram notifications enabled")
        else:
            logger.warning("Telegram notifications disabled")

    @staticmethod
    def split_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
        """Chunks of at most `max_len` chars, cut at a paragraph, line or word break when one is close."""
        remaining = (text or "").strip()
        if not remaining:
            return [""]

        max_len = max(1, int(max_len))
        chunks: list[str] = []
        while len(remaining) > max_len:
            window = remaining[: max_len + 1]
            cut = 0
            for sep in ("\n\n", "\n", " "):
                idx = window.rfind(sep)
                if idx >= max_len // 2:
                    cut = idx
                    break
            if cut <= 0:
                cut = max_len
            chunks.append(remaining[:cut].rstrip())
            remaining = remaining[cut:].lstrip()
        chunks.append(remaining)
        return chunks

    def redact(self, text: str) -> str:
        if self.config.bot_token:
            return text.replace(self.config.bot_token, "<redacted>")
        return text

    def _api_url(self, method: str) -> str:
        return f"{TELEGRAM_API_BASE}/bot{self.config.bot_token}/{method}"

    async def _call(self, method: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """One Bot API call. Transport and decode errors come back as ``{"ok": False, "error": ...}``."""
        try:
            if payload is None:
                resp = await self.http_client.get(self._api_url(method), timeout=10.0)
            else:
                resp = await self.http_client.post(self._api_url(method), json=payload, timeout=10.0)
            data = resp.json()
        except Exception as exc:
            return {"ok": False, "error": self.redact(f"{type(exc).__name__}: {exc}")}
        if not isinstance(data, dict):
            return {"ok": False, "error": f"unexpected response ({resp.status_code})"}
        return data

    async def send(self, text: str) -> SendResult:
        return await self._send(text)

    async def send_with_actions(self, text: str, actions: list[list[tuple[str, str]]]) -> SendResult:
        return await self._send(text, reply_markup=build_inline_keyboard(actions))

    async def _send(self, text: str, *, reply_markup: dict[str, Any] | None = None) -> SendResult:
        if not self.enabled:
            logger.debug("Telegram notification skipped (disabled)")
            return SendResult(success=True, skipped=True)

        chunks = self.split_message(text, max_len=self.max_message_len)
        message_id = None
        for idx, chunk in enumerate(chunks, start=1):
            payload: dict[str, Any] = {"chat_id": self.config.chat_id, "text": chunk, "disable_web_page_preview": True}
            # Buttons go on the last chunk so they sit under the full text.
            if reply_markup and idx == len(chunks):
                payload["reply_markup"] = reply_markup
            data = await self._call("sendMessage", payload)
            if not data.get("ok"):
                error = _error_text(data)
                logger.error("Failed to send Telegram message", chunk=idx, chunks=len(chunks), error=error)
                return SendResult(success=False, message_id=message_id, error=error)
            message_id = _message_id(data)

        logger.info("Telegram message sent", message_id=message_id, chunks=len(chunks))
        return SendResult(success=True, message_id=message_id)

    def with_footer(self, text: str) -> str:
        return f"{text}\n\n---\n🖥️ PIX payment monitor\n🌍 Environment: {self.environment}"

    async def test_connection(self) -> dict[str, Any]:
        """Check the bot token with getMe and announce the bot in the chat."""
        data = await self._call("getMe")
        if not data.get("ok") or not isinstance(data.get("result"), dict):
            raise TelegramError(f"getMe failed: {_error_text(data)}")

        bot_info = data["result"]
        logger.info("Telegram connection established", bot_name=bot_info.get("username"), bot_id=bot_info.get("id"))
        await self.send(
            "🤖 PIX payment monitor - connection test\n\n"
            "✅ Bot connected successfully!\n"
            f"🤖 Bot name: @{bot_info.get('username')}\n"
            f"🆔 Bot ID: {bot_info.get('id')}\n\n"
            "Monitoring is ready to start."
        )
        return bot_info

    async def send_error_alert(self, message: str) -> SendResult:
        return await self.send(self.with_footer(message))

    async def send_recovery_alert(self, message: str) -> SendResult:
        return await self.send(self.with_footer(message))

    async def send_daily_report(self, report: dict[str, Any]) -> SendResult:
        return await self.send(format_daily_report(report))

    async def send_status_summary(self, status: dict[str, Any]) -> SendResult:
        return await self.send_with_actions(format_status_summary(status), STATUS_ACTIONS)
