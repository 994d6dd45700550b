from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

DATETIME_FORMAT = "%d/%m/%Y %H:%M:%S"


def format_ms(value: Any) -> str:
    try:
        if value is None:
            return "n/a"
        return f"{int(round(float(value)))}ms"
    except Exception:
        return "n/a"


def format_datetime(value: datetime | None, *, default: str = "n/a") -> str:
    if value is None:
        return default
    return value.strftime(DATETIME_FORMAT)


def format_duration(delta: timedelta) -> str:
    seconds = max(0, int(delta.total_seconds()))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, rem = divmod(rem, 60)
    if days:
        return f"{days}d {hours:02}h {minutes:02}m"
    if hours:
        return f"{hours}h {minutes:02}m"
    return f"{minutes}m {rem:02}s"


def format_currency(cents: int | float) -> str:
    """Brazilian real, e.g. 500 -> 'R$ 5,00'."""
    return f"R$ {cents / 100:.2f}".replace(".", ",")


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO timestamp. Naive values are read as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
