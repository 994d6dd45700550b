from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    API_ERROR = "API_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    NO_PIX_CODE = "NO_PIX_CODE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Response fields the payment API must return for a usable PIX charge.
REQUIRED_RESPONSE_FIELDS = ("id", "status", "pixCode", "pixQrCode")
PIX_CODE_FIELDS = frozenset({"pixCode", "pixQrCode"})

# Connection codes that mean the request was aborted, not refused.
TIMEOUT_CODES = frozenset({"ECONNABORTED", "ETIMEDOUT", "ESOCKETTIMEDOUT"})


@dataclass(frozen=True)
class ProbeFailure:
    message: str
    tracking_id: str | None = None
    response_time_ms: float | None = None


@dataclass(frozen=True)
class TimeoutFailure(ProbeFailure):
    timeout_ms: float | None = None


@dataclass(frozen=True)
class NetworkFailure(ProbeFailure):
    code: str | None = None


@dataclass(frozen=True)
class HttpFailure(ProbeFailure):
    status_code: int = 0
    body_message: str | None = None


@dataclass(frozen=True)
class InvalidResponseFailure(ProbeFailure):
    missing_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnexpectedFailure(ProbeFailure):
    error_type: str | None = None


class ProbeError(Exception):
    """Raised by the probe client; carries the structured failure."""

    def __init__(self, failure: ProbeFailure):
        super().__init__(failure.message)
        self.failure = failure


def _network_code(exc: httpx.TransportError) -> str:
    msg = str(exc or "").lower()
    if "name or service not known" in msg or "nodename nor servname" in msg or "getaddrinfo" in msg:
        return "ENOTFOUND"
    if "temporary failure in name resolution" in msg:
        return "EAI_AGAIN"
    if "refused" in msg:
        return "ECONNREFUSED"
    if "reset" in msg:
        return "ECONNRESET"
    return type(exc).__name__


def failure_from_exception(
    exc: BaseException,
    *,
    tracking_id: str | None = None,
    response_time_ms: float | None = None,
    timeout_ms: float | None = None,
) -> ProbeFailure:
    """Map any exception onto the failure union. Never raises."""
    if isinstance(exc, ProbeError):
        return exc.failure

    message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return TimeoutFailure(
            message=message,
            tracking_id=tracking_id,
            response_time_ms=response_time_ms,
            timeout_ms=timeout_ms,
        )
    if isinstance(exc, httpx.TransportError):
        return NetworkFailure(
            message=message,
            tracking_id=tracking_id,
            response_time_ms=response_time_ms,
            code=_network_code(exc),
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return HttpFailure(
            message=message,
            tracking_id=tracking_id,
            response_time_ms=response_time_ms,
            status_code=int(exc.response.status_code),
        )
    return UnexpectedFailure(
        message=message,
        tracking_id=tracking_id,
        response_time_ms=response_time_ms,
        error_type=type(exc).__name__,
    )


def classify(failure: ProbeFailure | BaseException) -> ErrorKind:
    if isinstance(failure, BaseException):
        failure = failure_from_exception(failure)

    if isinstance(failure, TimeoutFailure):
        return ErrorKind.TIMEOUT_ERROR
    if isinstance(failure, NetworkFailure) and (failure.code or "").upper() in TIMEOUT_CODES:
        return ErrorKind.TIMEOUT_ERROR
    if not isinstance(failure, (HttpFailure, InvalidResponseFailure)) and "timeout" in (failure.message or "").lower():
        return ErrorKind.TIMEOUT_ERROR

    if isinstance(failure, NetworkFailure):
        return ErrorKind.NETWORK_ERROR

    if isinstance(failure, HttpFailure):
        if failure.status_code in (401, 403):
            return ErrorKind.AUTH_ERROR
        if failure.status_code >= 400:
            return ErrorKind.API_ERROR
        return ErrorKind.UNKNOWN_ERROR

    if isinstance(failure, InvalidResponseFailure):
        if PIX_CODE_FIELDS.intersection(failure.missing_fields):
            return ErrorKind.NO_PIX_CODE
        return ErrorKind.INVALID_RESPONSE

    return ErrorKind.UNKNOWN_ERROR
