"""Error taxonomy for billing operations surfaced to API callers."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import status


class BillingError(Exception):
    """Base class for actionable billing failures."""

    code = "billing_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        body.update(self.detail)
        return body


class ValidationError(BillingError):
    """Bad tier id or malformed request."""

    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(BillingError):
    """Invalid webhook signature or missing credentials."""

    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class InsufficientCreditsError(BillingError):
    """Debit larger than the balance available at the moment of debit."""

    code = "insufficient_credits"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, *, required, available) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}",
            detail={
                "required": str(required),
                "available": str(available),
                "upgrade_required": True,
            },
        )
        self.required = required
        self.available = available


class NotFoundError(BillingError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class AlreadyTrialedError(BillingError):
    """Trials are one-time per account."""

    code = "already_trialed"
    status_code = status.HTTP_409_CONFLICT


class ConflictError(BillingError):
    """State transition lost a race or targeted a terminal session."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class GatewayError(BillingError):
    """Network or provider failure talking to the payment gateway."""

    code = "gateway_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        provider_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.provider_status = provider_status

    @property
    def payload(self) -> Mapping[str, Any]:
        # Provider responses can carry internal detail; keep the body generic.
        return {"error": "Payment provider unavailable", "code": self.code}


__all__ = [
    "AlreadyTrialedError",
    "AuthError",
    "BillingError",
    "ConflictError",
    "GatewayError",
    "InsufficientCreditsError",
    "NotFoundError",
    "ValidationError",
]
