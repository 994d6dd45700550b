"""Synthetic customer data for the health-check transactions."""

from __future__ import annotations

import random
import secrets
import string
import time
from datetime import datetime
from typing import Any

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


def _cpf_check_digit(digits: list[int]) -> int:
    weight = len(digits) + 1
    total = sum(d * (weight - i) for i, d in enumerate(digits))
    rem = total % 11
    return 0 if rem < 2 else 11 - rem


def generate_valid_cpf(rng: random.Random | None = None) -> str:
    """Random CPF whose two mod-11 check digits are valid."""
    rng = rng or random.Random()
    digits = [rng.randint(0, 8) for _ in range(9)]
    digits.append(_cpf_check_digit(digits))
    digits.append(_cpf_check_digit(digits))
    return "".join(str(d) for d in digits)


def is_valid_cpf(cpf: str) -> bool:
    s = "".join(ch for ch in str(cpf or "") if ch.isdigit())
    if len(s) != 11:
        return False
    digits = [int(ch) for ch in s]
    return _cpf_check_digit(digits[:9]) == digits[9] and _cpf_check_digit(digits[:10]) == digits[10]


def generate_tracking_id() -> str:
    suffix = "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(9))
    return f"TRK-{int(time.time() * 1000)}-{suffix}"


def generate_test_data(now: datetime | None = None, rng: random.Random | None = None) -> dict[str, Any]:
    rng = rng or random.Random()
    now = now or datetime.now()
    timestamp_ms = int(now.timestamp() * 1000)
    return {
        "customer": {
            "name": f"Monitor PIX {now.strftime('%Y%m%d-%H%M%S')}",
            "email": f"monitor-{timestamp_ms}@pixmonitor.test",
            "cpf": generate_valid_cpf(rng),
            "phone": f"169{rng.randint(10_000_000, 99_999_999)}",
        },
        "external_id": f"HEALTH-CHECK-{timestamp_ms}",
        "metadata": {
            "type": "health_check",
            "timestamp": timestamp_ms,
            "date": now.isoformat(),
        },
    }
