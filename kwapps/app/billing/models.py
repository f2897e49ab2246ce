"""Domain models for the billing system."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentSessionStatus(str, Enum):
    """Lifecycle status for a checkout attempt against the gateway."""

    CREATED = "created"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SESSION_STATUSES


TERMINAL_SESSION_STATUSES = frozenset(
    {
        PaymentSessionStatus.SUCCEEDED,
        PaymentSessionStatus.FAILED,
        PaymentSessionStatus.EXPIRED,
        PaymentSessionStatus.REFUNDED,
    }
)
OPEN_SESSION_STATUSES = frozenset({PaymentSessionStatus.CREATED, PaymentSessionStatus.PENDING})


class CreditReason(str, Enum):
    """Why a ledger entry changed the balance."""

    GENERATION_DEBIT = "generation-debit"
    BONUS_CREDIT = "bonus-credit"
    ROLLOVER_GRANT = "rollover-grant"
    ROLLOVER_FORFEIT = "rollover-forfeit"
    PURCHASE_GRANT = "purchase-grant"
    TRIAL_GRANT = "trial-grant"
    TRIAL_EXPIRY = "trial-expiry"
    REFUND = "refund"


class OperationType(str, Enum):
    """Generation actions that consume credits."""

    CHAT = "chat"
    SIMPLE_EDIT = "simple_edit"
    COMPONENT = "component"
    PAGE = "page"
    COMPLEX = "complex"
    BANANA_IMAGE = "banana_image"
    DEPLOY = "deploy"
    ORCHESTRATE = "orchestrate"


CREDIT_COSTS: Dict[OperationType, Decimal] = {
    OperationType.CHAT: Decimal("1.0"),
    OperationType.SIMPLE_EDIT: Decimal("0.5"),
    OperationType.COMPONENT: Decimal("2.0"),
    OperationType.PAGE: Decimal("3.0"),
    OperationType.COMPLEX: Decimal("4.0"),
    OperationType.BANANA_IMAGE: Decimal("2.5"),
    OperationType.DEPLOY: Decimal("1.0"),
    # Orchestration is billed through the generations it triggers.
    OperationType.ORCHESTRATE: Decimal("0"),
}


class SubscriptionStatus(str, Enum):
    """State of the paid plan on an account."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


MAX_FAILED_PAYMENT_ATTEMPTS = 3


class TrialStatus(str, Enum):
    """Lifecycle state of a one-time trial grant."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    CHECKOUT_STARTED = "checkout_started"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    TRIAL_STARTED = "trial_started"
    TRIAL_EXPIRED = "trial_expired"
    PERIOD_ROLLED_OVER = "period_rolled_over"
    PAYMENT_REFUNDED = "payment_refunded"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_ENDED = "subscription_ended"


class SubscriptionTier(BaseModel):
    """Purchasable plan definition. Catalog entries never change at runtime."""

    tier_id: str
    display_name_en: str
    display_name_ar: str
    price: Decimal = Field(ge=0)
    currency: str = Field(default="KWD", min_length=3, max_length=3)
    credits_per_period: Decimal = Field(ge=0)
    daily_bonus_credits: Decimal = Field(default=Decimal("0"), ge=0)
    features: Tuple[str, ...] = ()
    is_active: bool = True
    sort_order: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class Account(BaseModel):
    """Billing view of an account, mutated only through the repository."""

    account_id: str
    tier_id: Optional[str] = None
    credit_balance: Decimal = Field(default=Decimal("0"), ge=0)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    last_bonus_date: Optional[date] = None
    subscription_status: Optional[SubscriptionStatus] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    failed_payment_attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def has_paid_tier(self) -> bool:
        return self.tier_id is not None

    @property
    def renews_at_period_end(self) -> bool:
        return (
            self.tier_id is not None
            and self.subscription_status == SubscriptionStatus.ACTIVE
            and not self.cancel_at_period_end
        )


class PaymentSession(BaseModel):
    """A single checkout attempt and its reconciliation state."""

    session_id: str
    account_id: str
    tier_id: str
    amount: Decimal = Field(ge=0)
    currency: str = Field(default="KWD", min_length=3, max_length=3)
    status: PaymentSessionStatus = PaymentSessionStatus.CREATED
    provider_session_id: Optional[str] = None
    redirect_url: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class CreditLedgerEntry(BaseModel):
    """Append-only record of a balance change."""

    entry_id: str
    account_id: str
    delta: Decimal
    reason: CreditReason
    balance_after: Decimal = Field(ge=0)
    operation_type: Optional[OperationType] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TrialGrant(BaseModel):
    """Time-boxed trial access. At most one per account, ever."""

    account_id: str
    tier_id: str
    started_at: datetime
    expires_at: datetime
    status: TrialStatus = TrialStatus.ACTIVE
    ended_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_active_at(self, moment: datetime) -> bool:
        return self.status == TrialStatus.ACTIVE and moment < self.expires_at


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    account_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookNotification(BaseModel):
    """Normalized gateway notification, only built from a verified payload."""

    order_id: Optional[str] = None
    provider_session_id: Optional[str] = None
    status: PaymentSessionStatus
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookResult(BaseModel):
    """Outcome of handling a webhook delivery."""

    session: PaymentSession
    applied: bool

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditBalance(BaseModel):
    """Balance summary surfaced to the UI."""

    account_id: str
    credit_balance: Decimal
    tier_id: Optional[str] = None
    daily_bonus_credits: Decimal = Decimal("0")
    can_claim_bonus: bool = False
    trial_active: bool = False
    period_end: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BonusClaim(BaseModel):
    """Result of a user-initiated daily bonus claim."""

    granted: bool
    bonus_amount: Decimal = Decimal("0")
    entry: Optional[CreditLedgerEntry] = None
    message: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class JobRunResult(BaseModel):
    """Monitoring signal returned by each scheduled job run."""

    job: str
    success: bool = True
    processed: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)
