"""In-process gateway for local development and tests."""
from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from ..billing.exceptions import GatewayError
from ..billing.models import PaymentSessionStatus, SubscriptionTier, WebhookNotification
from .client import GatewaySession, parse_webhook_payload


class LocalSandboxGateway:
    """Minimal gateway implementation that never leaves the process.

    Checkouts are kept in memory; ``settle`` moves one to a final status and
    returns a signed webhook body, mirroring what UPayments would post back.
    """

    name = "local"

    def __init__(self, *, webhook_secret: str = "local-sandbox-secret", fail_creates: bool = False) -> None:
        self.webhook_secret = webhook_secret
        self.fail_creates = fail_creates
        self.created: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self._statuses: Dict[str, PaymentSessionStatus] = {}
        self._orders: Dict[str, str] = {}
        self._lock = Lock()

    def create_session(
        self,
        account_id: str,
        tier: SubscriptionTier,
        *,
        order_id: str,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySession:
        with self._lock:
            self.created.append(
                {
                    "account_id": account_id,
                    "tier_id": tier.tier_id,
                    "order_id": order_id,
                    "amount": amount,
                    "idempotency_key": idempotency_key,
                }
            )
            if self.fail_creates:
                raise GatewayError("Sandbox gateway configured to fail")
            track_id = f"trk_{uuid4().hex}"
            self._statuses[track_id] = PaymentSessionStatus.PENDING
            self._orders[track_id] = order_id
        return GatewaySession(
            provider_session_id=track_id,
            redirect_url=f"https://billing.local/checkout/{track_id}",
        )

    def get_session_status(self, provider_session_id: str) -> PaymentSessionStatus:
        with self._lock:
            status = self._statuses.get(provider_session_id)
        if status is None:
            raise GatewayError(f"Unknown sandbox checkout: {provider_session_id}")
        return status

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def settle(self, provider_session_id: str, status: PaymentSessionStatus) -> Tuple[bytes, str]:
        """Record a final status and build the signed notification for it."""

        with self._lock:
            if provider_session_id not in self._statuses:
                raise GatewayError(f"Unknown sandbox checkout: {provider_session_id}")
            self._statuses[provider_session_id] = status
            order_id = self._orders[provider_session_id]
        result = "CAPTURED" if status == PaymentSessionStatus.SUCCEEDED else "NOT CAPTURED"
        if status == PaymentSessionStatus.EXPIRED:
            result = "EXPIRED"
        body = json.dumps(
            {
                "order_id": order_id,
                "track_id": provider_session_id,
                "result": result,
                "transaction_id": f"txn_{uuid4().hex[:12]}",
                "payment_method": "knet",
            }
        ).encode("utf-8")
        return body, self.sign(body)

    def create_refund(self, order_id: str, *, amount: Decimal, reference: str) -> str:
        with self._lock:
            if order_id not in self._orders.values():
                raise GatewayError(f"Unknown sandbox order: {order_id}")
            refund_id = f"rf_{uuid4().hex[:12]}"
            self.refunds.append(
                {"order_id": order_id, "amount": amount, "reference": reference, "refund_id": refund_id}
            )
        return refund_id

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not signature:
            return False
        candidate = signature.strip().lower().encode("utf-8", "replace")
        return hmac.compare_digest(self.sign(payload).encode("ascii"), candidate)

    def parse_webhook(self, payload: Mapping[str, Any]) -> WebhookNotification:
        return parse_webhook_payload(payload)


__all__ = ["LocalSandboxGateway"]
