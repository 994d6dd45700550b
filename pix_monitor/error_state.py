from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from pix_monitor.errors import (
    ErrorKind,
    HttpFailure,
    InvalidResponseFailure,
    NetworkFailure,
    ProbeFailure,
    TimeoutFailure,
    classify,
)
from pix_monitor.formatting import format_datetime, format_ms, parse_datetime
from pix_monitor.storage import StateStore

logger = structlog.get_logger(__name__)

ERROR_STATE_NAME = "error-state"

ERROR_LABELS: dict[ErrorKind, str] = {
    ErrorKind.NETWORK_ERROR: "Connection error",
    ErrorKind.TIMEOUT_ERROR: "Timeout - API did not respond",
    ErrorKind.AUTH_ERROR: "Authentication error",
    ErrorKind.API_ERROR: "API error",
    ErrorKind.INVALID_RESPONSE: "Invalid response",
    ErrorKind.NO_PIX_CODE: "PIX without code",
    ErrorKind.UNKNOWN_ERROR: "Unknown error",
}

RECOMMENDED_ACTIONS: dict[ErrorKind, str] = {
    ErrorKind.NETWORK_ERROR: "Check network connectivity and the payment provider's server status",
    ErrorKind.TIMEOUT_ERROR: "Check whether the API is overloaded or slow",
    ErrorKind.AUTH_ERROR: "Check that the API secret key is correct and still valid",
    ErrorKind.API_ERROR: "Check the API logs and contact the payment provider's support",
    ErrorKind.INVALID_RESPONSE: "Check whether the API response format has changed",
    ErrorKind.NO_PIX_CODE: "Check the PIX configuration on the payment platform",
    ErrorKind.UNKNOWN_ERROR: "Check the detailed logs and investigate the cause",
}


@dataclass
class ErrorOccurrence:
    count: int
    first_occurrence_at: datetime
    last_occurrence_at: datetime
    last_notified_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": int(self.count),
            "first_occurrence_at": self.first_occurrence_at.isoformat(),
            "last_occurrence_at": self.last_occurrence_at.isoformat(),
            "last_notified_at": self.last_notified_at.isoformat() if self.last_notified_at else None,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> ErrorOccurrence | None:
        if not isinstance(raw, dict):
            return None
        first = parse_datetime(raw.get("first_occurrence_at"))
        if first is None:
            return None
        last = parse_datetime(raw.get("last_occurrence_at")) or first
        try:
            count = max(1, int(raw.get("count") or 1))
        except (TypeError, ValueError):
            count = 1
        return cls(
            count=count,
            first_occurrence_at=first,
            last_occurrence_at=last,
            last_notified_at=parse_datetime(raw.get("last_notified_at")),
        )


@dataclass(frozen=True)
class ErrorReport:
    kind: ErrorKind
    message: str
    should_notify: bool
    consecutive_count: int


def coerce_error_state(raw: Any) -> dict[ErrorKind, ErrorOccurrence]:
    """Best-effort decode of error-state.json; unknown kinds and bad entries are dropped."""
    if not isinstance(raw, dict):
        return {}
    out: dict[ErrorKind, ErrorOccurrence] = {}
    for key, value in raw.items():
        try:
            kind = ErrorKind(key)
        except ValueError:
            continue
        entry = ErrorOccurrence.from_dict(value)
        if entry is not None:
            out[kind] = entry
    return out


class ErrorStateTracker:
    """Consecutive-failure bookkeeping per error kind with a notification cooldown."""

    def __init__(
        self,
        store: StateStore,
        *,
        cooldown_minutes: float = 30.0,
        request_timeout_ms: float = 30000.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.cooldown = timedelta(minutes=float(cooldown_minutes))
        self.request_timeout_ms = float(request_timeout_ms)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state: dict[ErrorKind, ErrorOccurrence] = coerce_error_state(store.load(ERROR_STATE_NAME))

    def _save(self) -> None:
        payload = {kind.value: entry.to_dict() for kind, entry in self.state.items()}
        self.store.save(ERROR_STATE_NAME, payload)

    def has_active_errors(self) -> bool:
        return bool(self.state)

    def should_notify(self, kind: ErrorKind, *, now: datetime | None = None) -> bool:
        entry = self.state.get(kind)
        if entry is None or entry.last_notified_at is None:
            return True
        now = now or self._clock()
        return (now - entry.last_notified_at) >= self.cooldown

    def handle(self, failure: ProbeFailure, *, tracking_id: str | None = None) -> ErrorReport:
        kind = classify(failure)
        now = self._clock()
        tracking_id = tracking_id or failure.tracking_id

        entry = self.state.get(kind)
        if entry is None:
            entry = ErrorOccurrence(count=1, first_occurrence_at=now, last_occurrence_at=now)
            self.state[kind] = entry
        else:
            entry.count += 1
            entry.last_occurrence_at = now

        notify = self.should_notify(kind, now=now)
        if notify:
            entry.last_notified_at = now

        self._save()

        logger.info(
            "Recorded probe failure",
            kind=kind.value,
            consecutive_count=entry.count,
            should_notify=notify,
            tracking_id=tracking_id,
        )
        return ErrorReport(
            kind=kind,
            message=self.format_error_message(failure, kind, tracking_id=tracking_id, now=now),
            should_notify=notify,
            consecutive_count=entry.count,
        )

    def clear(self, kind: ErrorKind | None = None) -> None:
        if kind is None:
            self.state = {}
        else:
            self.state.pop(kind, None)
        self._save()
        logger.info("Cleared error state", kind=kind.value if kind else "all")

    def _detail_lines(self, failure: ProbeFailure, kind: ErrorKind) -> list[str]:
        if kind is ErrorKind.TIMEOUT_ERROR:
            timeout_ms = self.request_timeout_ms
            if isinstance(failure, TimeoutFailure) and failure.timeout_ms:
                timeout_ms = float(failure.timeout_ms)
            return [f"⏱️ Details: the API did not respond within {timeout_ms / 1000:g} seconds"]

        if kind is ErrorKind.NETWORK_ERROR:
            code = failure.code if isinstance(failure, NetworkFailure) else None
            return ["🌐 Details: could not connect to the API", f"📡 Code: {code or 'n/a'}"]

        if kind is ErrorKind.AUTH_ERROR:
            status = failure.status_code if isinstance(failure, HttpFailure) else None
            return [
                "🔐 Details: authentication failed - check the secret key",
                f"📊 HTTP status: {status or 'n/a'}",
            ]

        if kind is ErrorKind.API_ERROR:
            lines = ["🖥️ Details: the API returned an error"]
            if isinstance(failure, HttpFailure):
                lines.append(f"📊 HTTP status: {failure.status_code or 'n/a'}")
                if failure.body_message:
                    lines.append(f"💬 Message: {failure.body_message.strip()[:500]}")
            return lines

        if kind is ErrorKind.NO_PIX_CODE:
            return ["📱 Details: transaction created but without a PIX code"]

        if kind is ErrorKind.INVALID_RESPONSE:
            lines = ["📄 Details: required fields missing from the response"]
            if isinstance(failure, InvalidResponseFailure) and failure.missing_fields:
                lines.append(f"🧩 Missing: {', '.join(failure.missing_fields)}")
            return lines

        return [f"❓ Details: {(failure.message or 'n/a').strip()[:500]}"]

    def format_error_message(
        self,
        failure: ProbeFailure,
        kind: ErrorKind | None = None,
        *,
        tracking_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        kind = kind or classify(failure)
        now = now or self._clock()
        lines = [
            "🚨 ALERT - PIX payment monitor",
            "",
            f"⏰ Time: {format_datetime(now)}",
            f"❌ Error type: {ERROR_LABELS.get(kind, 'Unclassified error')}",
            f"🔍 Tracking ID: {tracking_id or failure.tracking_id or 'n/a'}",
        ]
        if failure.response_time_ms is not None:
            lines.append(f"⚡ Elapsed: {format_ms(failure.response_time_ms)}")
        lines.append("")
        lines.extend(self._detail_lines(failure, kind))

        entry = self.state.get(kind)
        if entry is not None:
            lines.extend(
                [
                    "",
                    "📈 Statistics:",
                    f"• Consecutive occurrences: {entry.count}",
                    f"• First occurrence: {format_datetime(entry.first_occurrence_at)}",
                ]
            )

        lines.extend(["", f"🔧 Recommended action: {RECOMMENDED_ACTIONS.get(kind, 'Check the logs for details')}"])
        return "\n".join(lines)

    def format_recovery_message(
        self,
        *,
        tracking_id: str | None = None,
        pix_code: str | None = None,
        response_time_ms: float | None = None,
    ) -> str:
        lines = [
            "✅ RECOVERY - PIX payment monitor",
            "",
            f"⏰ Time: {format_datetime(self._clock())}",
            "🎉 Status: system operating normally",
            f"🔍 Tracking ID: {tracking_id or 'n/a'}",
        ]
        if pix_code:
            lines.append("📱 PIX code: generated successfully")
        if response_time_ms is not None:
            lines.append(f"⚡ Response time: {format_ms(response_time_ms)}")
        lines.extend(["", "✨ The system is back to normal operation!"])
        return "\n".join(lines)
