"""Collaborator protocols required by the billing services."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import ContextManager, Dict, Iterable, Mapping, Optional, Protocol, Sequence

from .models import (
    Account,
    BillingAuditEvent,
    CreditLedgerEntry,
    CreditReason,
    OperationType,
    PaymentSession,
    PaymentSessionStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TrialGrant,
    TrialStatus,
    WebhookNotification,
)


class GatewaySession(Protocol):
    provider_session_id: str
    redirect_url: str


class PaymentGateway(Protocol):
    """External payment processor integration."""

    def create_session(
        self,
        account_id: str,
        tier: SubscriptionTier,
        *,
        order_id: str,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySession:
        """Create a provider-side checkout and return its redirect URL."""

    def get_session_status(self, provider_session_id: str) -> PaymentSessionStatus:
        """Look up the provider's view of a checkout."""

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Return ``True`` only for payloads signed by the provider."""

    def parse_webhook(self, payload: Mapping[str, object]) -> WebhookNotification:
        """Normalize a verified webhook body."""

    def create_refund(self, order_id: str, *, amount: Decimal, reference: str) -> str:
        """Refund a captured charge and return the provider refund id."""


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_payment_failed(self, session: PaymentSession) -> None:
        ...

    def notify_trial_expiring(self, trial: TrialGrant) -> None:
        ...

    def notify_trial_expired(self, trial: TrialGrant) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the billing services.

    Every method is atomic on its own. ``transaction()`` groups several calls
    into one unit that commits or rolls back together and serializes access
    to the accounts it touches.
    """

    def transaction(self) -> ContextManager["BillingRepository"]:
        ...

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def ensure_account(self, account_id: str) -> Account:
        ...

    def lock_account(self, account_id: str) -> Optional[Account]:
        ...

    def update_account_tier(
        self,
        account_id: str,
        *,
        tier_id: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Optional[Account]:
        ...

    def advance_billing_period(
        self,
        account_id: str,
        *,
        expected_period_end: datetime,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[Account]:
        ...

    def update_subscription(
        self,
        account_id: str,
        *,
        status: Optional[SubscriptionStatus],
        cancel_at_period_end: bool,
        canceled_at: Optional[datetime],
        failed_payment_attempts: int,
    ) -> Optional[Account]:
        ...

    def mark_bonus_granted(self, account_id: str, bonus_date: date) -> bool:
        ...

    def list_accounts_due_for_rollover(self, now: datetime) -> Sequence[Account]:
        ...

    def list_bonus_candidates(self, now: datetime) -> Sequence[Account]:
        ...

    def apply_credit_delta(
        self,
        account_id: str,
        delta: Decimal,
        reason: CreditReason,
        *,
        operation_type: Optional[OperationType] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[CreditLedgerEntry]:
        ...

    def list_ledger_entries(self, account_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        ...

    def create_payment_session(self, session: PaymentSession) -> PaymentSession:
        ...

    def get_payment_session(self, session_id: str) -> Optional[PaymentSession]:
        ...

    def get_payment_session_by_provider_id(self, provider_session_id: str) -> Optional[PaymentSession]:
        ...

    def attach_provider_session(
        self,
        session_id: str,
        *,
        provider_session_id: str,
        redirect_url: str,
    ) -> Optional[PaymentSession]:
        ...

    def transition_payment_session(
        self,
        session_id: str,
        *,
        expected: Iterable[PaymentSessionStatus],
        new_status: PaymentSessionStatus,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentSession]:
        ...

    def list_open_payment_sessions(self, *, created_before: datetime) -> Sequence[PaymentSession]:
        ...

    def list_payment_sessions(self, account_id: str, *, limit: int = 50) -> Sequence[PaymentSession]:
        ...

    def mark_session_refunded(self, session_id: str, *, refund_id: str) -> Optional[PaymentSession]:
        ...

    def get_trial(self, account_id: str) -> Optional[TrialGrant]:
        ...

    def insert_trial(self, trial: TrialGrant) -> bool:
        ...

    def end_trial(
        self,
        account_id: str,
        *,
        new_status: TrialStatus,
        ended_at: datetime,
    ) -> Optional[TrialGrant]:
        ...

    def list_trials_due(self, now: datetime) -> Sequence[TrialGrant]:
        ...

    def list_trials_expiring_between(self, start: datetime, end: datetime) -> Sequence[TrialGrant]:
        ...

    def record_audit_event(self, event: BillingAuditEvent) -> BillingAuditEvent:
        ...

    def acquire_job_lease(
        self,
        job_name: str,
        account_id: str,
        *,
        holder: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        ...

    def release_job_lease(self, job_name: str, account_id: str, *, holder: str) -> None:
        ...

    def purge_expired_job_leases(self, now: datetime) -> int:
        ...


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "GatewaySession",
    "PaymentGateway",
]
