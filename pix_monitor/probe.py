from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import httpx
import structlog

from pix_monitor.errors import (
    REQUIRED_RESPONSE_FIELDS,
    HttpFailure,
    InvalidResponseFailure,
    ProbeError,
    failure_from_exception,
)
from pix_monitor.formatting import format_currency
from pix_monitor.testdata import generate_test_data

logger = structlog.get_logger(__name__)

EXPECTED_STATUS = "PENDING"


@dataclass(frozen=True)
class ProbeConfig:
    api_url: str
    secret_key: str
    purchase_path: str = "/transaction.purchase"
    timeout_ms: float = 30000.0
    amount_cents: int = 500
    item_title: str = "Health Check PIX - Monitor"
    postback_url: str | None = None


@dataclass(frozen=True)
class TransactionData:
    id: str
    status: str
    pix_code: str
    pix_qr_code: str
    amount: int | None


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    data: TransactionData
    response_time_ms: float
    test_data: dict[str, Any]


def _body_message(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        text = (resp.text or "").strip()
        return text[:300] or None
    if isinstance(data, dict):
        msg = data.get("message") or data.get("error")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return None


def validate_pix_response(data: Any, *, tracking_id: str | None = None, response_time_ms: float | None = None) -> None:
    """Raise ProbeError when the purchase response lacks the fields a PIX charge needs."""
    if not isinstance(data, dict):
        raise ProbeError(
            InvalidResponseFailure(
                message="Response body is not a JSON object",
                tracking_id=tracking_id,
                response_time_ms=response_time_ms,
            )
        )

    missing = tuple(f for f in REQUIRED_RESPONSE_FIELDS if not data.get(f))
    if missing:
        if not data.get("pixCode") or not data.get("pixQrCode"):
            message = "Transaction created but without a PIX code"
        else:
            message = f"Required fields missing from response: {', '.join(missing)}"
        raise ProbeError(
            InvalidResponseFailure(
                message=message,
                tracking_id=tracking_id,
                response_time_ms=response_time_ms,
                missing_fields=missing,
            )
        )

    if data.get("status") != EXPECTED_STATUS:
        logger.warning(
            "Unexpected status for PIX transaction",
            expected=EXPECTED_STATUS,
            received=data.get("status"),
            tracking_id=tracking_id,
        )


class PaymentProbeClient:
    """Creates a small real PIX charge against the payment API."""

    def __init__(self, http_client: httpx.AsyncClient, config: ProbeConfig):
        self.http_client = http_client
        self.config = config

    @property
    def purchase_url(self) -> str:
        return urljoin(self.config.api_url.rstrip("/") + "/", self.config.purchase_path.lstrip("/"))

    def build_payload(self, test_data: dict[str, Any]) -> dict[str, Any]:
        customer = test_data["customer"]
        return {
            "name": customer["name"],
            "email": customer["email"],
            "cpf": customer["cpf"],
            "phone": customer["phone"],
            "paymentMethod": "PIX",
            "amount": int(self.config.amount_cents),
            "traceable": True,
            "externalId": test_data["external_id"],
            "items": [
                {
                    "unitPrice": int(self.config.amount_cents),
                    "title": self.config.item_title,
                    "quantity": 1,
                    "tangible": False,
                }
            ],
            "postbackUrl": self.config.postback_url,
        }

    async def create_test_transaction(self, tracking_id: str) -> ProbeResult:
        test_data = generate_test_data()
        payload = self.build_payload(test_data)

        logger.info(
            "Creating PIX test transaction",
            tracking_id=tracking_id,
            amount=format_currency(payload["amount"]),
            customer=payload["email"],
        )

        started = time.perf_counter()
        try:
            resp = await self.http_client.post(
                self.purchase_url,
                json=payload,
                headers={"Authorization": self.config.secret_key, "Content-Type": "application/json"},
                timeout=float(self.config.timeout_ms) / 1000.0,
            )
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            failure = failure_from_exception(
                exc,
                tracking_id=tracking_id,
                response_time_ms=round(elapsed_ms, 3),
                timeout_ms=self.config.timeout_ms,
            )
            logger.error("PIX transaction request failed", tracking_id=tracking_id, error=failure.message)
            raise ProbeError(failure) from exc

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        logger.debug("PIX API response", status=resp.status_code, elapsed_ms=elapsed_ms, tracking_id=tracking_id)

        if resp.status_code >= 400:
            body_message = _body_message(resp)
            logger.error(
                "PIX API returned an error",
                tracking_id=tracking_id,
                status=resp.status_code,
                message=body_message,
            )
            raise ProbeError(
                HttpFailure(
                    message=f"HTTP {resp.status_code}" + (f": {body_message}" if body_message else ""),
                    tracking_id=tracking_id,
                    response_time_ms=elapsed_ms,
                    status_code=int(resp.status_code),
                    body_message=body_message,
                )
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProbeError(
                InvalidResponseFailure(
                    message=f"json_parse_error: {type(exc).__name__}: {exc}",
                    tracking_id=tracking_id,
                    response_time_ms=elapsed_ms,
                )
            ) from exc

        validate_pix_response(data, tracking_id=tracking_id, response_time_ms=elapsed_ms)

        amount = data.get("amount")
        return ProbeResult(
            success=True,
            data=TransactionData(
                id=str(data["id"]),
                status=str(data["status"]),
                pix_code=str(data["pixCode"]),
                pix_qr_code=str(data["pixQrCode"]),
                amount=int(amount) if isinstance(amount, (int, float)) else None,
            ),
            response_time_ms=elapsed_ms,
            test_data=test_data,
        )
