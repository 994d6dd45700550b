from __future__ import annotations

import math
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import structlog

from pix_monitor.formatting import parse_datetime
from pix_monitor.storage import StateStore

logger = structlog.get_logger(__name__)

METRICS_STATE_NAME = "performance-metrics"
DEFAULT_MAX_SAMPLES = 1000
DEFAULT_RETENTION_DAYS = 7

HOUR_KEY_FORMAT = "%Y-%m-%d-%H"
DAY_KEY_FORMAT = "%Y-%m-%d"

TREND_IMPROVING = "improving"
TREND_DEGRADING = "degrading"
TREND_STABLE = "stable"
TREND_THRESHOLD = 0.10
RECENT_WINDOW_HOURS = 6
OLDER_WINDOW_END_HOURS = 24
CRITICAL_HOUR_FACTOR = 1.5
MAX_CRITICAL_HOURS = 3

TREND_EMOJI = {TREND_IMPROVING: "📉", TREND_DEGRADING: "📈", TREND_STABLE: "➡️"}


@dataclass(frozen=True)
class ResponseSample:
    timestamp: datetime
    response_time_ms: float
    success: bool
    has_pix_code: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.timestamp.isoformat(),
            "response_time_ms": self.response_time_ms,
            "success": self.success,
            "has_pix_code": self.has_pix_code,
        }


@dataclass(frozen=True)
class SampleView:
    time: str
    response_time_ms: float
    success: bool


@dataclass(frozen=True)
class CurrentStats:
    count: int
    average: float
    min: float
    max: float
    last10: list[SampleView] = field(default_factory=list)


@dataclass(frozen=True)
class HourSummary:
    key: str
    hour: str
    date: str
    count: int
    average: float
    min: float
    max: float
    failures: int


@dataclass(frozen=True)
class PerformanceAnalysis:
    trend: str
    trend_percent: float
    critical_hours: list[HourSummary]
    percentiles: dict[str, float]
    totals: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile over an ascending list; 0 for an empty list."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    k = math.ceil(float(p) * n / 100.0) - 1
    k = max(0, min(k, n - 1))
    return float(sorted_values[k])


def _new_bucket() -> dict[str, Any]:
    return {"count": 0, "total_time_ms": 0.0, "min_time_ms": None, "max_time_ms": 0.0, "failures": 0}


def _add_to_bucket(bucket: dict[str, Any], response_time_ms: float, success: bool) -> None:
    bucket["count"] += 1
    bucket["total_time_ms"] += response_time_ms
    current_min = bucket.get("min_time_ms")
    bucket["min_time_ms"] = response_time_ms if current_min is None else min(current_min, response_time_ms)
    bucket["max_time_ms"] = max(bucket.get("max_time_ms") or 0.0, response_time_ms)
    if not success:
        bucket["failures"] += 1


def _coerce_float(value: Any, *, default: float | None = 0.0) -> float | None:
    try:
        if value is None:
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_bucket(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    bucket = _new_bucket()
    try:
        bucket["count"] = max(0, int(raw.get("count") or 0))
        bucket["failures"] = max(0, int(raw.get("failures") or 0))
    except (TypeError, ValueError):
        return None
    bucket["total_time_ms"] = _coerce_float(raw.get("total_time_ms"))
    bucket["min_time_ms"] = _coerce_float(raw.get("min_time_ms"), default=None)
    bucket["max_time_ms"] = _coerce_float(raw.get("max_time_ms"))
    return bucket


def _coerce_breakdown(raw: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, dict[str, Any]] = {}
    for hour, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        try:
            count = max(0, int(entry.get("count") or 0))
        except (TypeError, ValueError):
            continue
        total = _coerce_float(entry.get("total_time_ms"))
        out[str(hour)] = {
            "count": count,
            "total_time_ms": total,
            "avg_time_ms": round(total / count, 1) if count else 0.0,
        }
    return out


def _coerce_samples(raw: Any) -> list[ResponseSample]:
    if not isinstance(raw, list):
        return []
    samples: list[ResponseSample] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        ts = parse_datetime(item.get("time"))
        rt = _coerce_float(item.get("response_time_ms"), default=None)
        if ts is None or rt is None:
            continue
        samples.append(
            ResponseSample(
                timestamp=ts,
                response_time_ms=rt,
                success=bool(item.get("success", True)),
                has_pix_code=bool(item.get("has_pix_code", True)),
            )
        )
    return samples


class PerformanceTracker:
    """Rolling response-time metrics: a sample ring buffer plus hourly and daily buckets.

    Buckets are keyed by local wall-clock time of the injected clock, so the
    clock should carry the monitor's timezone.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.max_samples = max(1, int(max_samples))
        self.retention = timedelta(days=max(1, int(retention_days)))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.count = 0
        self.total_time_ms = 0.0
        self.min_time_ms: float | None = None
        self.max_time_ms = 0.0
        self.samples: deque[ResponseSample] = deque(maxlen=self.max_samples)
        self.hourly: dict[str, dict[str, Any]] = {}
        self.daily: dict[str, dict[str, Any]] = {}
        self.last_update: datetime | None = None

        self._load()

    def _load(self) -> None:
        raw = self.store.load(METRICS_STATE_NAME)
        if not isinstance(raw, dict):
            return

        current = raw.get("current") if isinstance(raw.get("current"), dict) else {}
        try:
            self.count = max(0, int(current.get("count") or 0))
        except (TypeError, ValueError):
            self.count = 0
        self.total_time_ms = _coerce_float(current.get("total_time_ms"))
        self.min_time_ms = _coerce_float(current.get("min_time_ms"), default=None)
        self.max_time_ms = _coerce_float(current.get("max_time_ms"))
        self.samples.extend(_coerce_samples(current.get("samples")))

        for attr in ("hourly", "daily"):
            buckets = raw.get(attr)
            if not isinstance(buckets, dict):
                continue
            target: dict[str, dict[str, Any]] = getattr(self, attr)
            for key, value in buckets.items():
                bucket = _coerce_bucket(value)
                if bucket is None:
                    continue
                if attr == "daily":
                    bucket["hourly_breakdown"] = _coerce_breakdown(value.get("hourly_breakdown"))
                target[str(key)] = bucket

        self.last_update = parse_datetime(raw.get("last_update"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": {
                "count": self.count,
                "total_time_ms": self.total_time_ms,
                "min_time_ms": self.min_time_ms,
                "max_time_ms": self.max_time_ms,
                "samples": [s.to_dict() for s in self.samples],
            },
            "hourly": self.hourly,
            "daily": self.daily,
            "last_update": self.last_update.isoformat() if self.last_update else None,
        }

    def record_sample(self, response_time_ms: float, success: bool = True, has_pix_code: bool = True) -> None:
        now = self._clock()
        rt = float(response_time_ms)

        self.count += 1
        self.total_time_ms += rt
        self.min_time_ms = rt if self.min_time_ms is None else min(self.min_time_ms, rt)
        self.max_time_ms = max(self.max_time_ms, rt)
        self.samples.append(
            ResponseSample(timestamp=now, response_time_ms=rt, success=bool(success), has_pix_code=bool(has_pix_code))
        )

        hour_bucket = self.hourly.setdefault(now.strftime(HOUR_KEY_FORMAT), _new_bucket())
        _add_to_bucket(hour_bucket, rt, success)

        day_bucket = self.daily.get(now.strftime(DAY_KEY_FORMAT))
        if day_bucket is None:
            day_bucket = _new_bucket()
            day_bucket["hourly_breakdown"] = {}
            self.daily[now.strftime(DAY_KEY_FORMAT)] = day_bucket
        _add_to_bucket(day_bucket, rt, success)

        breakdown = day_bucket["hourly_breakdown"].setdefault(
            now.strftime("%H"), {"count": 0, "total_time_ms": 0.0, "avg_time_ms": 0.0}
        )
        breakdown["count"] += 1
        breakdown["total_time_ms"] += rt
        breakdown["avg_time_ms"] = round(breakdown["total_time_ms"] / breakdown["count"], 1)

        self.last_update = now
        self.purge_old_buckets(now=now)
        self.store.save(METRICS_STATE_NAME, self.to_dict())

    def purge_old_buckets(self, *, now: datetime | None = None) -> None:
        now = now or self._clock()
        cutoff = (now - self.retention).replace(tzinfo=None)
        for buckets, key_format in ((self.hourly, HOUR_KEY_FORMAT), (self.daily, DAY_KEY_FORMAT)):
            for key in list(buckets.keys()):
                try:
                    started = datetime.strptime(key, key_format)
                except ValueError:
                    del buckets[key]
                    continue
                if started < cutoff:
                    del buckets[key]

    def get_current_stats(self) -> CurrentStats:
        if self.count == 0:
            return CurrentStats(count=0, average=0.0, min=0.0, max=0.0, last10=[])
        last10 = [
            SampleView(time=s.timestamp.strftime("%H:%M:%S"), response_time_ms=s.response_time_ms, success=s.success)
            for s in list(self.samples)[-10:]
        ]
        return CurrentStats(
            count=self.count,
            average=self.total_time_ms / self.count,
            min=self.min_time_ms if self.min_time_ms is not None else 0.0,
            max=self.max_time_ms,
            last10=last10,
        )

    def get_hourly_stats(self, hours: int = 24) -> list[HourSummary]:
        now = self._clock()
        stats: list[HourSummary] = []
        for i in range(int(hours) - 1, -1, -1):
            moment = now - timedelta(hours=i)
            key = moment.strftime(HOUR_KEY_FORMAT)
            bucket = self.hourly.get(key)
            count = int(bucket["count"]) if bucket else 0
            if count > 0:
                stats.append(
                    HourSummary(
                        key=key,
                        hour=moment.strftime("%H:00"),
                        date=moment.strftime("%d/%m"),
                        count=count,
                        average=bucket["total_time_ms"] / count,
                        min=bucket["min_time_ms"] if bucket["min_time_ms"] is not None else 0.0,
                        max=bucket["max_time_ms"],
                        failures=int(bucket["failures"]),
                    )
                )
            else:
                stats.append(
                    HourSummary(
                        key=key,
                        hour=moment.strftime("%H:00"),
                        date=moment.strftime("%d/%m"),
                        count=0,
                        average=0.0,
                        min=0.0,
                        max=0.0,
                        failures=0,
                    )
                )
        return stats

    def _window_totals(self, hours: int, offset: int = 0) -> tuple[float, int]:
        now = self._clock()
        total_time = 0.0
        total_count = 0
        for i in range(offset, offset + hours):
            bucket = self.hourly.get((now - timedelta(hours=i)).strftime(HOUR_KEY_FORMAT))
            if bucket and bucket["count"] > 0:
                total_time += bucket["total_time_ms"]
                total_count += bucket["count"]
        return total_time, total_count

    def compute_trend(self) -> tuple[str, float]:
        recent_total, recent_count = self._window_totals(RECENT_WINDOW_HOURS)
        older_total, older_count = self._window_totals(
            OLDER_WINDOW_END_HOURS - RECENT_WINDOW_HOURS, offset=RECENT_WINDOW_HOURS
        )
        if recent_count == 0 or older_count == 0:
            return TREND_STABLE, 0.0

        recent_avg = recent_total / recent_count
        older_avg = older_total / older_count
        if older_avg <= 0:
            return TREND_STABLE, 0.0

        change = (recent_avg - older_avg) / older_avg
        if change > TREND_THRESHOLD:
            trend = TREND_DEGRADING
        elif change < -TREND_THRESHOLD:
            trend = TREND_IMPROVING
        else:
            trend = TREND_STABLE
        return trend, round(change * 100.0, 1)

    def sorted_response_times(self) -> list[float]:
        """Ascending response times of successful samples only."""
        return sorted(s.response_time_ms for s in self.samples if s.success)

    def get_performance_analysis(self) -> PerformanceAnalysis:
        current = self.get_current_stats()
        trend, trend_percent = self.compute_trend()

        critical = [
            h
            for h in self.get_hourly_stats(OLDER_WINDOW_END_HOURS)
            if h.count > 0 and h.average > current.average * CRITICAL_HOUR_FACTOR
        ][:MAX_CRITICAL_HOURS]

        values = self.sorted_response_times()
        return PerformanceAnalysis(
            trend=trend,
            trend_percent=trend_percent,
            critical_hours=critical,
            percentiles={
                "p50": percentile(values, 50),
                "p95": percentile(values, 95),
                "p99": percentile(values, 99),
            },
            totals={
                "requests": current.count,
                "average_ms": current.average,
                "best_ms": current.min,
                "worst_ms": current.max,
            },
        )

    def render_ascii_chart(self, hours: int = 12, *, height: int = 10) -> str:
        stats = self.get_hourly_stats(hours)
        max_value = max((s.average for s in stats), default=0.0)
        if max_value <= 0:
            return "Not enough data to draw a chart"

        step = max_value / height
        lines = [f"📊 Response time (ms) - last {hours} hours", ""]
        for level in range(height, 0, -1):
            threshold = step * level
            row = f"{int(round(threshold)):>5} |"
            for s in stats:
                if s.count == 0:
                    row += "  "
                elif s.average >= threshold:
                    row += "█ "
                elif s.average >= threshold - step / 2:
                    row += "▄ "
                else:
                    row += "  "
            lines.append(row.rstrip())

        lines.append("     +" + "─" * (len(stats) * 2))
        label_every = max(1, math.ceil(hours / 12))
        labels = "".join(s.hour[:2] if i % label_every == 0 else "  " for i, s in enumerate(stats))
        lines.append("      " + labels)
        return "\n".join(lines)

    def format_performance_report(self) -> str:
        analysis = self.get_performance_analysis()
        stats = self.get_current_stats()
        totals = analysis.totals

        lines = [
            "⚡ PIX PERFORMANCE REPORT",
            "",
            "📊 Overall",
            f"• Total requests: {totals['requests']}",
            f"• Average time: {round(totals['average_ms'])}ms",
            f"• Best time: {round(totals['best_ms'])}ms",
            f"• Worst time: {round(totals['worst_ms'])}ms",
            "",
            "📈 Trend",
            f"• {TREND_EMOJI[analysis.trend]} {analysis.trend} ({abs(analysis.trend_percent):.1f}%)",
            "",
            "🎯 Percentiles",
            f"• P50 (median): {round(analysis.percentiles['p50'])}ms",
            f"• P95: {round(analysis.percentiles['p95'])}ms",
            f"• P99: {round(analysis.percentiles['p99'])}ms",
        ]
        if analysis.critical_hours:
            lines.extend(["", "⚠️ Critical hours"])
            lines.extend(f"• {h.hour} ({round(h.average)}ms)" for h in analysis.critical_hours)

        lines.extend(["", "🕐 Last 10 checks"])
        lines.extend(_format_sample_lines(stats.last10))
        return "\n".join(lines)


def _format_sample_lines(samples: Iterable[SampleView]) -> list[str]:
    return [f"• {s.time}: {round(s.response_time_ms)}ms {'✅' if s.success else '❌'}" for s in samples]
