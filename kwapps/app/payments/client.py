"""UPayments gateway client."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from ..billing.exceptions import GatewayError, ValidationError
from ..billing.models import PaymentSessionStatus, SubscriptionTier, WebhookNotification
from .config import GatewayConfig

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("kwapps.security")

_SUCCESS_RESULTS = {"CAPTURED", "SUCCESS", "SUCCEEDED", "PAID"}
_FAILURE_RESULTS = {"NOT CAPTURED", "CANCELED", "CANCELLED", "FAILED", "DECLINED", "VOIDED"}
_EXPIRED_RESULTS = {"EXPIRED", "TIMEOUT"}


def map_provider_status(value: Optional[str]) -> PaymentSessionStatus:
    """Translate a UPayments ``result``/``status`` value into a session status."""

    normalized = (value or "").strip().upper()
    if normalized in _SUCCESS_RESULTS:
        return PaymentSessionStatus.SUCCEEDED
    if normalized in _FAILURE_RESULTS:
        return PaymentSessionStatus.FAILED
    if normalized in _EXPIRED_RESULTS:
        return PaymentSessionStatus.EXPIRED
    return PaymentSessionStatus.PENDING


@dataclass(frozen=True)
class GatewaySession:
    provider_session_id: str
    redirect_url: str


class UPaymentsClient:
    """Talks to the UPayments REST API over HTTPS."""

    name = "upayments"

    def __init__(
        self,
        config: GatewayConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not config.api_key:
            logger.warning("UPayments API key not configured")
        self.config = config
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=config.api_url,
            timeout=config.timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Accept": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        retry: bool,
    ) -> Dict[str, Any]:
        attempts = self.config.max_attempts if retry else 1
        last_error: Optional[GatewayError] = None
        for attempt in range(attempts):
            if attempt:
                self._sleep(self.config.backoff_seconds * (2 ** (attempt - 1)))
            try:
                response = self._client.request(method, path, json=json, headers=headers)
            except httpx.HTTPError as exc:
                logger.warning(
                    "UPayments request failed",
                    extra={"gateway_path": path, "gateway_attempt": attempt + 1},
                )
                last_error = GatewayError(f"UPayments request failed: {exc}", retryable=True)
                continue

            if response.status_code >= 500:
                logger.warning(
                    "UPayments server error",
                    extra={
                        "gateway_path": path,
                        "gateway_attempt": attempt + 1,
                        "gateway_status": response.status_code,
                    },
                )
                last_error = GatewayError(
                    f"UPayments returned {response.status_code}",
                    retryable=True,
                    provider_status=response.status_code,
                )
                continue

            if response.status_code >= 400:
                raise GatewayError(
                    f"UPayments rejected request: {_error_message(response)}",
                    provider_status=response.status_code,
                )

            try:
                body = response.json()
            except ValueError as exc:
                raise GatewayError("UPayments returned a non-JSON response") from exc
            if not isinstance(body, dict):
                raise GatewayError("UPayments returned an unexpected response shape")
            return body

        assert last_error is not None
        raise last_error

    def create_session(
        self,
        account_id: str,
        tier: SubscriptionTier,
        *,
        order_id: str,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySession:
        payload = {
            "order": {
                "id": order_id,
                "description": f"اشتراك {tier.display_name_ar} - KW APPS",
                "currency": tier.currency,
                "amount": str(amount),
            },
            "reference": {"id": order_id},
            "language": "ar",
            "returnUrl": f"{self.config.return_url}&order_id={order_id}",
            "cancelUrl": f"{self.config.cancel_url}&order_id={order_id}",
            "notificationUrl": self.config.webhook_url,
            "customer": {"uniqueId": account_id},
            "products": [
                {
                    "name": tier.display_name_en,
                    "description": "Monthly subscription",
                    "price": str(amount),
                    "quantity": 1,
                }
            ],
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        # Creation without an idempotency key could double-charge on retry.
        body = self._request(
            "POST",
            "/charge",
            json=payload,
            headers=headers,
            retry=idempotency_key is not None,
        )
        data = body.get("data") or {}
        link = data.get("link")
        track_id = data.get("trackId") or data.get("track_id")
        if not link or not track_id:
            raise GatewayError("UPayments response missing payment link")
        logger.info(
            "UPayments charge created",
            extra={"order_id": order_id, "track_id": track_id, "account_id": account_id},
        )
        return GatewaySession(provider_session_id=str(track_id), redirect_url=str(link))

    def get_session_status(self, provider_session_id: str) -> PaymentSessionStatus:
        body = self._request(
            "GET",
            f"/get-payment-status/{provider_session_id}",
            retry=True,
        )
        data = body.get("data") or {}
        transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else data
        return map_provider_status(transaction.get("result") or transaction.get("status"))

    def create_refund(self, order_id: str, *, amount: Decimal, reference: str) -> str:
        payload = {
            "orderId": order_id,
            "totalPrice": str(amount),
            "reference": reference,
            "notifyUrl": self.config.webhook_url,
        }
        # The reference is also the idempotency key.
        body = self._request(
            "POST",
            "/create-refund",
            json=payload,
            headers={"Idempotency-Key": reference},
            retry=True,
        )
        data = body.get("data") or {}
        refund_id = data.get("refundId") or data.get("refund_id")
        if not refund_id:
            raise GatewayError("UPayments response missing refund id")
        logger.info(
            "UPayments refund created",
            extra={"order_id": order_id, "refund_id": refund_id},
        )
        return str(refund_id)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not self.config.webhook_secret or not signature:
            security_logger.warning("Webhook signature check failed: missing secret or signature")
            return False
        expected = hmac.new(
            self.config.webhook_secret.encode("utf-8"),
            payload,
            hashlib.sha256,
        ).hexdigest()
        candidate = signature.strip().lower().encode("utf-8", "replace")
        return hmac.compare_digest(expected.encode("ascii"), candidate)

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookNotification:
        return parse_webhook_payload(payload)


def parse_webhook_payload(payload: Mapping[str, Any]) -> WebhookNotification:
    """Normalize the two notification shapes UPayments sends."""

    if not isinstance(payload, Mapping):
        raise ValidationError("Webhook payload must be a JSON object")

    order_id = payload.get("order_id") or payload.get("orderId") or payload.get("requested_order_id")
    track_id = payload.get("track_id") or payload.get("trackId") or payload.get("payment_id")
    raw_status = payload.get("result") or payload.get("status")
    if not raw_status or not (order_id or track_id):
        raise ValidationError("Webhook payload missing order reference or status")

    status = _normalize_status(str(raw_status))

    amount = payload.get("amount")
    parsed_amount: Optional[Decimal] = None
    if amount not in (None, ""):
        try:
            parsed_amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValidationError("Webhook amount is not numeric") from exc

    return WebhookNotification(
        order_id=str(order_id) if order_id else None,
        provider_session_id=str(track_id) if track_id else None,
        status=status,
        transaction_id=_optional_str(payload.get("transaction_id") or payload.get("tran_id")),
        amount=parsed_amount,
        currency=_optional_str(payload.get("currency")),
        payment_method=_optional_str(payload.get("payment_method") or payload.get("payment_type")),
    )


def _normalize_status(value: str) -> PaymentSessionStatus:
    lowered = value.strip().lower()
    if lowered == "success":
        return PaymentSessionStatus.SUCCEEDED
    if lowered in {"failed", "failure"}:
        return PaymentSessionStatus.FAILED
    if lowered == "expired":
        return PaymentSessionStatus.EXPIRED
    if lowered == "pending":
        return PaymentSessionStatus.PENDING
    return map_provider_status(value)


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or str(response.status_code)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase or str(response.status_code)


__all__ = [
    "GatewaySession",
    "UPaymentsClient",
    "map_provider_status",
    "parse_webhook_payload",
]
