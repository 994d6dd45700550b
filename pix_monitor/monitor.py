from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import structlog

from pix_monitor.config import MonitorConfig
from pix_monitor.error_state import ErrorReport, ErrorStateTracker
from pix_monitor.errors import ProbeError, ProbeFailure, failure_from_exception
from pix_monitor.formatting import format_currency, format_datetime, format_duration, format_ms, parse_datetime
from pix_monitor.metrics import DAY_KEY_FORMAT, PerformanceTracker
from pix_monitor.probe import PaymentProbeClient, ProbeResult
from pix_monitor.storage import StateStore
from pix_monitor.telegram import TelegramNotifier
from pix_monitor.testdata import generate_tracking_id

logger = structlog.get_logger(__name__)

MONITOR_STATS_NAME = "monitor-stats"
MAX_RECENT_ERRORS = 100


class MonitorState(str, Enum):
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"


def is_within_monitoring_hours(start_hour: int | None, end_hour: int | None, hour: int) -> bool:
    """Whether `hour` falls in [start, end), wrapping past midnight when end < start.

    No window configured (either bound missing) or start == end means always active.
    """
    if start_hour is None or end_hour is None or start_hour == end_hour:
        return True
    if end_hour < start_hour:
        return hour >= start_hour or hour < end_hour
    return start_hour <= hour < end_hour


def _coerce_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class MonitorStats:
    started_at: datetime
    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    total_response_time_ms: float = 0.0
    last_check: datetime | None = None
    last_error: dict[str, Any] | None = None
    is_healthy: bool = True
    errors: list[dict[str, Any]] = field(default_factory=list)

    def uptime_percent(self) -> float:
        if self.total_checks == 0:
            return 100.0
        return (self.successful_checks / self.total_checks) * 100.0

    def average_response_time_ms(self) -> float:
        if self.successful_checks == 0:
            return 0.0
        return self.total_response_time_ms / self.successful_checks

    def record_error(self, entry: dict[str, Any]) -> None:
        self.errors.append(entry)
        if len(self.errors) > MAX_RECENT_ERRORS:
            self.errors = self.errors[-MAX_RECENT_ERRORS:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "total_checks": self.total_checks,
            "successful_checks": self.successful_checks,
            "failed_checks": self.failed_checks,
            "total_response_time_ms": self.total_response_time_ms,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_error": self.last_error,
            "is_healthy": self.is_healthy,
            "errors": self.errors,
        }

    @classmethod
    def from_dict(cls, raw: Any, *, started_at: datetime) -> MonitorStats:
        if not isinstance(raw, dict):
            return cls(started_at=started_at)
        raw_errors = raw.get("errors")
        if not isinstance(raw_errors, list):
            raw_errors = []
        errors = [e for e in raw_errors if isinstance(e, dict)][-MAX_RECENT_ERRORS:]
        try:
            total_rt = float(raw.get("total_response_time_ms") or 0.0)
        except (TypeError, ValueError):
            total_rt = 0.0
        last_error = raw.get("last_error")
        return cls(
            started_at=parse_datetime(raw.get("started_at")) or started_at,
            total_checks=_coerce_int(raw.get("total_checks")),
            successful_checks=_coerce_int(raw.get("successful_checks")),
            failed_checks=_coerce_int(raw.get("failed_checks")),
            total_response_time_ms=total_rt,
            last_check=parse_datetime(raw.get("last_check")),
            last_error=last_error if isinstance(last_error, dict) else None,
            is_healthy=bool(raw.get("is_healthy", True)),
            errors=errors,
        )


@dataclass(frozen=True)
class CheckOutcome:
    tracking_id: str
    success: bool
    previous_state: MonitorState
    state: MonitorState
    response_time_ms: float
    error: ErrorReport | None = None
    notified: bool = False


class PixMonitor:
    """Runs check cycles and decides alert / recovery transitions.

    The monitor owns MonitorStats; metrics and error state are delegated to
    the trackers passed in. An overlapping call to `run_health_check` while a
    cycle is in flight is skipped.
    """

    def __init__(
        self,
        config: MonitorConfig,
        *,
        probe: PaymentProbeClient,
        notifier: TelegramNotifier,
        metrics: PerformanceTracker,
        error_tracker: ErrorStateTracker,
        store: StateStore,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.probe = probe
        self.notifier = notifier
        self.metrics = metrics
        self.error_tracker = error_tracker
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._check_lock = asyncio.Lock()

        self.is_running = False
        self.is_paused = False
        self.stats = MonitorStats.from_dict(store.load(MONITOR_STATS_NAME), started_at=self._clock())
        logger.info(
            "Monitor stats loaded",
            total_checks=self.stats.total_checks,
            uptime=round(self.stats.uptime_percent(), 2),
            is_healthy=self.stats.is_healthy,
        )

    @property
    def state(self) -> MonitorState:
        return MonitorState.HEALTHY if self.stats.is_healthy else MonitorState.UNHEALTHY

    def save_stats(self) -> bool:
        return self.store.save(MONITOR_STATS_NAME, self.stats.to_dict())

    async def initialize(self) -> None:
        """Verify the notification channel and announce the start. Errors here are fatal."""
        Path(self.config.data_dir).mkdir(parents=True, exist_ok=True)
        if self.notifier.enabled:
            logger.info("Testing Telegram connection")
            await self.notifier.test_connection()

        self.is_running = True
        await self.notifier.send(
            "🚀 PIX payment monitor started\n\n"
            f"⏰ Interval: {self.config.check_interval_minutes} minutes\n"
            f"💰 Amount per test: {format_currency(self.config.test_amount_cents)}\n"
            f"🌍 Environment: {self.config.environment}\n"
            f"📅 Time: {format_datetime(self._clock())}"
        )
        logger.info("Monitor initialized")

    def pause(self) -> None:
        self.is_paused = True
        logger.info("Monitor paused")

    def resume(self) -> None:
        self.is_paused = False
        logger.info("Monitor resumed")

    async def run_once(self) -> CheckOutcome | None:
        logger.info("Running a single check")
        return await self.run_health_check()

    async def run_health_check(self) -> CheckOutcome | None:
        now = self._clock()
        if not is_within_monitoring_hours(self.config.monitor_start_hour, self.config.monitor_end_hour, now.hour):
            logger.info("Outside monitoring hours; skipping check", hour=now.hour)
            return None
        if self.is_paused:
            logger.info("Monitor paused; skipping check")
            return None
        if self._check_lock.locked():
            logger.warning("Previous check still running; skipping check")
            return None

        async with self._check_lock:
            return await self._run_check()

    async def _run_check(self) -> CheckOutcome:
        tracking_id = generate_tracking_id()
        previous = self.state
        started = time.perf_counter()
        logger.info("Starting health check", tracking_id=tracking_id, state=previous.value)

        try:
            result = await self.probe.create_test_transaction(tracking_id)
        except ProbeError as exc:
            outcome = await self._handle_failure(exc.failure, tracking_id, previous, started)
        except Exception as exc:
            logger.error("Unexpected probe exception", tracking_id=tracking_id, error=repr(exc))
            failure = failure_from_exception(exc, tracking_id=tracking_id)
            outcome = await self._handle_failure(failure, tracking_id, previous, started)
        else:
            outcome = await self._handle_success(result, tracking_id, previous)

        logger.info(
            "Health check finished",
            tracking_id=tracking_id,
            success=outcome.success,
            state=outcome.state.value,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 1),
        )
        return outcome

    async def _handle_success(self, result: ProbeResult, tracking_id: str, previous: MonitorState) -> CheckOutcome:
        now = self._clock()
        self.stats.total_checks += 1
        self.stats.successful_checks += 1
        self.stats.total_response_time_ms += result.response_time_ms
        self.stats.last_check = now

        self.metrics.record_sample(result.response_time_ms, success=True, has_pix_code=True)

        if previous is MonitorState.UNHEALTHY or self.error_tracker.has_active_errors():
            self.error_tracker.clear()

        notified = False
        if previous is MonitorState.UNHEALTHY:
            self.stats.is_healthy = True
            message = self.error_tracker.format_recovery_message(
                tracking_id=tracking_id,
                pix_code=result.data.pix_code,
                response_time_ms=result.response_time_ms,
            )
            sent = await self.notifier.send_recovery_alert(message)
            notified = sent.success
            logger.info("System recovered", tracking_id=tracking_id, notified=notified)

        logger.info(
            "PIX check succeeded",
            tracking_id=tracking_id,
            transaction_id=result.data.id,
            response_time_ms=result.response_time_ms,
        )
        self.save_stats()
        return CheckOutcome(
            tracking_id=tracking_id,
            success=True,
            previous_state=previous,
            state=self.state,
            response_time_ms=result.response_time_ms,
            notified=notified,
        )

    async def _handle_failure(
        self,
        failure: ProbeFailure,
        tracking_id: str,
        previous: MonitorState,
        started: float,
    ) -> CheckOutcome:
        now = self._clock()
        elapsed_ms = failure.response_time_ms
        if elapsed_ms is None:
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)

        self.stats.total_checks += 1
        self.stats.failed_checks += 1
        self.stats.last_check = now
        self.stats.is_healthy = False

        report = self.error_tracker.handle(failure, tracking_id=tracking_id)
        self.metrics.record_sample(elapsed_ms, success=False, has_pix_code=False)

        self.stats.record_error(
            {
                "time": now.isoformat(),
                "type": report.kind.value,
                "message": failure.message,
                "tracking_id": tracking_id,
            }
        )
        self.stats.last_error = {
            "time": format_datetime(now),
            "type": report.kind.value,
            "message": failure.message,
        }

        notified = False
        if report.should_notify:
            sent = await self.notifier.send_error_alert(report.message)
            notified = sent.success

        logger.error(
            "PIX check failed",
            tracking_id=tracking_id,
            kind=report.kind.value,
            consecutive_count=report.consecutive_count,
            error=failure.message,
            notified=notified,
        )
        self.save_stats()
        return CheckOutcome(
            tracking_id=tracking_id,
            success=False,
            previous_state=previous,
            state=self.state,
            response_time_ms=elapsed_ms,
            error=report,
            notified=notified,
        )

    def _today_bucket(self, now: datetime) -> dict[str, Any]:
        return self.metrics.daily.get(now.strftime(DAY_KEY_FORMAT)) or {}

    def _errors_on(self, now: datetime) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for err in self.stats.errors:
            ts = parse_datetime(err.get("time"))
            if ts is None:
                continue
            if ts.tzinfo is not None and now.tzinfo is not None:
                ts = ts.astimezone(now.tzinfo)
            if ts.date() == now.date():
                out.append({**err, "time": ts.strftime("%H:%M:%S")})
        return out

    async def generate_daily_report(self) -> dict[str, Any]:
        now = self._clock()
        bucket = self._today_bucket(now)
        total = int(bucket.get("count") or 0)
        failed = int(bucket.get("failures") or 0)
        success = total - failed
        amount = int(self.config.test_amount_cents)

        report = {
            "date": now.strftime("%d/%m/%Y"),
            "generated_at": now.isoformat(),
            "checks": {"total": total, "success": success, "failed": failed},
            "errors": self._errors_on(now),
            "uptime": round((success / total) * 100.0, 2) if total else 100.0,
            "avg_response_time_ms": round(float(bucket.get("total_time_ms") or 0.0) / total, 1) if total else 0.0,
            "test_amount_cents": amount,
            "total_cost_cents": total * amount,
            "performance": self.metrics.get_performance_analysis().to_dict(),
        }

        await self.notifier.send_daily_report(report)
        if total:
            await self.notifier.send(
                f"{self.metrics.format_performance_report()}\n\n{self.metrics.render_ascii_chart()}"
            )
        self.store.save(f"report-{now.strftime('%Y-%m-%d')}", report, overwrite=False)
        logger.info("Daily report generated", date=report["date"], checks=total, failed=failed)
        return report

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        checks_today = int(self._today_bucket(now).get("count") or 0)
        return {
            "is_healthy": self.stats.is_healthy,
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "last_check": format_datetime(self.stats.last_check, default="never"),
            "checks_today": checks_today,
            "cost_today_cents": checks_today * int(self.config.test_amount_cents),
            "uptime": round(self.stats.uptime_percent(), 2),
            "avg_response_time_ms": round(self.stats.average_response_time_ms(), 1),
            "last_error": self.stats.last_error,
        }

    async def send_status_summary(self) -> None:
        await self.notifier.send_status_summary(self.get_status())

    async def stop(self) -> None:
        self.is_running = False
        self.save_stats()
        uptime_for = format_duration(self._clock() - self.stats.started_at)
        await self.notifier.send(
            "🛑 PIX payment monitor stopped\n\n"
            f"📊 Total checks: {self.stats.total_checks}\n"
            f"✅ Successful: {self.stats.successful_checks}\n"
            f"❌ Failed: {self.stats.failed_checks}\n"
            f"📈 Uptime: {self.stats.uptime_percent():.2f}%\n"
            f"⚡ Average response time: {format_ms(self.stats.average_response_time_ms())}\n"
            f"⏱️ Monitoring for: {uptime_for}"
        )
        logger.info("Monitor stopped")
