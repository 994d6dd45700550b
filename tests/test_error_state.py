from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from pix_monitor.error_state import ERROR_STATE_NAME, ErrorStateTracker
from pix_monitor.errors import (
    ErrorKind,
    HttpFailure,
    InvalidResponseFailure,
    NetworkFailure,
    ProbeError,
    TimeoutFailure,
    UnexpectedFailure,
    classify,
    failure_from_exception,
)
from pix_monitor.storage import JsonFileStore


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _timeout(tracking_id: str = "TRK-1") -> TimeoutFailure:
    return TimeoutFailure(message="ReadTimeout", tracking_id=tracking_id, response_time_ms=30000.0, timeout_ms=30000.0)


@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (_timeout(), ErrorKind.TIMEOUT_ERROR),
        (NetworkFailure(message="aborted", code="ECONNABORTED"), ErrorKind.TIMEOUT_ERROR),
        (NetworkFailure(message="refused", code="ECONNREFUSED"), ErrorKind.NETWORK_ERROR),
        (NetworkFailure(message="dns", code="ENOTFOUND"), ErrorKind.NETWORK_ERROR),
        (HttpFailure(message="HTTP 401", status_code=401), ErrorKind.AUTH_ERROR),
        (HttpFailure(message="HTTP 403", status_code=403), ErrorKind.AUTH_ERROR),
        (HttpFailure(message="HTTP 500", status_code=500), ErrorKind.API_ERROR),
        (HttpFailure(message="HTTP 422", status_code=422), ErrorKind.API_ERROR),
        (HttpFailure(message="HTTP 302", status_code=302), ErrorKind.UNKNOWN_ERROR),
        (InvalidResponseFailure(message="no pix", missing_fields=("pixCode",)), ErrorKind.NO_PIX_CODE),
        (InvalidResponseFailure(message="no qr", missing_fields=("pixQrCode",)), ErrorKind.NO_PIX_CODE),
        (InvalidResponseFailure(message="no id", missing_fields=("id",)), ErrorKind.INVALID_RESPONSE),
        (InvalidResponseFailure(message="not an object"), ErrorKind.INVALID_RESPONSE),
        (UnexpectedFailure(message="RuntimeError: boom"), ErrorKind.UNKNOWN_ERROR),
        (UnexpectedFailure(message="socket Timeout reached"), ErrorKind.TIMEOUT_ERROR),
    ],
)
def test_classify(failure, expected: ErrorKind) -> None:
    assert classify(failure) is expected


def test_classify_accepts_exceptions() -> None:
    assert classify(httpx.ReadTimeout("read timed out")) is ErrorKind.TIMEOUT_ERROR
    assert classify(httpx.ConnectError("[Errno 111] Connection refused")) is ErrorKind.NETWORK_ERROR
    assert classify(ValueError("bad")) is ErrorKind.UNKNOWN_ERROR
    assert classify(ProbeError(HttpFailure(message="HTTP 401", status_code=401))) is ErrorKind.AUTH_ERROR


def test_failure_from_exception_network_codes() -> None:
    refused = failure_from_exception(httpx.ConnectError("[Errno 111] Connection refused"), tracking_id="TRK-9")
    assert isinstance(refused, NetworkFailure)
    assert refused.code == "ECONNREFUSED"
    assert refused.tracking_id == "TRK-9"

    dns = failure_from_exception(httpx.ConnectError("[Errno -2] Name or service not known"))
    assert isinstance(dns, NetworkFailure)
    assert dns.code == "ENOTFOUND"

    unexpected = failure_from_exception(KeyError("x"))
    assert isinstance(unexpected, UnexpectedFailure)
    assert unexpected.error_type == "KeyError"


def test_three_timeouts_notify_only_once(tmp_path) -> None:
    clock = _Clock(datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc))
    tracker = ErrorStateTracker(JsonFileStore(tmp_path), cooldown_minutes=30, clock=clock)

    reports = []
    for i in range(3):
        reports.append(tracker.handle(_timeout(f"TRK-{i}")))
        clock.advance(minutes=1)

    assert [r.should_notify for r in reports] == [True, False, False]
    assert [r.consecutive_count for r in reports] == [1, 2, 3]
    assert all(r.kind is ErrorKind.TIMEOUT_ERROR for r in reports)
    entry = tracker.state[ErrorKind.TIMEOUT_ERROR]
    assert entry.count == 3
    assert entry.last_notified_at == datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)
    assert entry.last_occurrence_at == datetime(2026, 3, 10, 14, 2, tzinfo=timezone.utc)


def test_cooldown_expires(tmp_path) -> None:
    clock = _Clock(datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc))
    tracker = ErrorStateTracker(JsonFileStore(tmp_path), cooldown_minutes=30, clock=clock)

    assert tracker.handle(_timeout()).should_notify is True
    clock.advance(minutes=29)
    assert tracker.handle(_timeout()).should_notify is False
    clock.advance(minutes=1)
    assert tracker.handle(_timeout()).should_notify is True


def test_kinds_have_independent_cooldowns(tmp_path) -> None:
    clock = _Clock(datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc))
    tracker = ErrorStateTracker(JsonFileStore(tmp_path), clock=clock)

    assert tracker.handle(_timeout()).should_notify is True
    auth = tracker.handle(HttpFailure(message="HTTP 401", status_code=401))
    assert auth.kind is ErrorKind.AUTH_ERROR
    assert auth.should_notify is True
    assert set(tracker.state) == {ErrorKind.TIMEOUT_ERROR, ErrorKind.AUTH_ERROR}


def test_state_survives_restart(tmp_path) -> None:
    clock = _Clock(datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc))
    tracker = ErrorStateTracker(JsonFileStore(tmp_path), clock=clock)
    tracker.handle(_timeout())
    tracker.handle(_timeout())

    clock.advance(minutes=5)
    reloaded = ErrorStateTracker(JsonFileStore(tmp_path), clock=clock)
    assert reloaded.state[ErrorKind.TIMEOUT_ERROR].count == 2
    assert reloaded.should_notify(ErrorKind.TIMEOUT_ERROR) is False
    assert reloaded.handle(_timeout()).consecutive_count == 3


def test_unknown_kinds_in_file_are_dropped(tmp_path) -> None:
    store = JsonFileStore(tmp_path)
    store.path_for(ERROR_STATE_NAME).write_text(
        json.dumps(
            {
                "BOGUS_ERROR": {"count": 4, "first_occurrence_at": "2026-03-10T10:00:00+00:00"},
                "AUTH_ERROR": {
                    "count": 2,
                    "first_occurrence_at": "2026-03-10T10:00:00Z",
                    "last_occurrence_at": "2026-03-10T10:15:00Z",
                    "last_notified_at": None,
                },
                "API_ERROR": "garbage",
            }
        ),
        encoding="utf-8",
    )

    tracker = ErrorStateTracker(store)
    assert list(tracker.state) == [ErrorKind.AUTH_ERROR]
    assert tracker.state[ErrorKind.AUTH_ERROR].count == 2


def test_naive_timestamps_in_file_are_read_as_utc(tmp_path) -> None:
    store = JsonFileStore(tmp_path)
    store.path_for(ERROR_STATE_NAME).write_text(
        json.dumps(
            {
                "TIMEOUT_ERROR": {
                    "count": 3,
                    "first_occurrence_at": "2026-03-10T13:00:00",
                    "last_occurrence_at": "2026-03-10T13:50:00",
                    "last_notified_at": "2026-03-10T13:50:00",
                }
            }
        ),
        encoding="utf-8",
    )

    clock = _Clock(datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc))
    tracker = ErrorStateTracker(store, clock=clock)
    assert tracker.state[ErrorKind.TIMEOUT_ERROR].last_notified_at.tzinfo is not None

    report = tracker.handle(_timeout())
    assert report.consecutive_count == 4
    assert report.should_notify is False

    clock.advance(minutes=30)
    assert tracker.handle(_timeout()).should_notify is True


def test_clear_all_and_single_kind(tmp_path) -> None:
    store = JsonFileStore(tmp_path)
    tracker = ErrorStateTracker(store)
    tracker.handle(_timeout())
    tracker.handle(HttpFailure(message="HTTP 500", status_code=500))

    tracker.clear(ErrorKind.API_ERROR)
    assert set(tracker.state) == {ErrorKind.TIMEOUT_ERROR}

    tracker.clear()
    assert tracker.has_active_errors() is False
    assert store.load(ERROR_STATE_NAME) == {}


def test_error_message_content(tmp_path) -> None:
    clock = _Clock(datetime(2026, 3, 10, 14, 0, 5, tzinfo=timezone.utc))
    tracker = ErrorStateTracker(JsonFileStore(tmp_path), clock=clock)

    report = tracker.handle(
        HttpFailure(message="HTTP 500: Internal failure", status_code=500, body_message="Internal failure"),
        tracking_id="TRK-42",
    )
    assert report.message.startswith("🚨 ALERT - PIX payment monitor")
    assert "⏰ Time: 10/03/2026 14:00:05" in report.message
    assert "TRK-42" in report.message
    assert "📊 HTTP status: 500" in report.message
    assert "💬 Message: Internal failure" in report.message
    assert "• Consecutive occurrences: 1" in report.message
    assert "🔧 Recommended action: Check the API logs" in report.message


def test_timeout_message_uses_configured_timeout(tmp_path) -> None:
    tracker = ErrorStateTracker(JsonFileStore(tmp_path), request_timeout_ms=15000)
    message = tracker.format_error_message(UnexpectedFailure(message="operation timeout"))
    assert "within 15 seconds" in message


def test_recovery_message(tmp_path) -> None:
    tracker = ErrorStateTracker(JsonFileStore(tmp_path))
    message = tracker.format_recovery_message(tracking_id="TRK-7", pix_code="000201", response_time_ms=321.4)
    assert message.startswith("✅ RECOVERY - PIX payment monitor")
    assert "TRK-7" in message
    assert "⚡ Response time: 321ms" in message
