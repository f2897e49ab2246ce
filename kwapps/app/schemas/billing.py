"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..billing import (
    Account,
    BonusClaim,
    CreditBalance,
    CreditLedgerEntry,
    JobRunResult,
    OperationType,
    PaymentSession,
    PaymentSessionStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TrialGrant,
    TrialStatus,
    WebhookResult,
)


class TierResponse(BaseModel):
    tier_id: str = Field(alias="tierId")
    display_name_en: str = Field(alias="displayNameEn")
    display_name_ar: str = Field(alias="displayNameAr")
    price: Decimal
    currency: str
    credits_per_period: Decimal = Field(alias="creditsPerPeriod")
    daily_bonus_credits: Decimal = Field(alias="dailyBonusCredits")
    features: List[str] = Field(default_factory=list)
    sort_order: int = Field(alias="sortOrder")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_tier(cls, tier: SubscriptionTier) -> "TierResponse":
        return cls(
            tier_id=tier.tier_id,
            display_name_en=tier.display_name_en,
            display_name_ar=tier.display_name_ar,
            price=tier.price,
            currency=tier.currency,
            credits_per_period=tier.credits_per_period,
            daily_bonus_credits=tier.daily_bonus_credits,
            features=list(tier.features),
            sort_order=tier.sort_order,
        )


class TierListResponse(BaseModel):
    tiers: List[TierResponse]

    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(BaseModel):
    tier_id: str = Field(alias="tierId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PaymentSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    tier_id: str = Field(alias="tierId")
    amount: Decimal
    currency: str
    status: PaymentSessionStatus
    redirect_url: Optional[str] = Field(alias="redirectUrl", default=None)
    failure_reason: Optional[str] = Field(alias="failureReason", default=None)
    refund_id: Optional[str] = Field(alias="refundId", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: PaymentSession) -> "PaymentSessionResponse":
        return cls(
            session_id=session.session_id,
            tier_id=session.tier_id,
            amount=session.amount,
            currency=session.currency,
            status=session.status,
            redirect_url=session.redirect_url,
            failure_reason=session.failure_reason,
            refund_id=session.refund_id,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentSessionResponse]

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    tier_id: Optional[str] = Field(alias="tierId", default=None)
    status: SubscriptionStatus
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    failed_payment_attempts: int = Field(alias="failedPaymentAttempts")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_account(cls, account: Account) -> "SubscriptionResponse":
        return cls(
            tier_id=account.tier_id,
            status=account.subscription_status,
            cancel_at_period_end=account.cancel_at_period_end,
            canceled_at=account.canceled_at,
            current_period_start=account.current_period_start,
            current_period_end=account.current_period_end,
            failed_payment_attempts=account.failed_payment_attempts,
        )


class WebhookAckResponse(BaseModel):
    success: bool = True
    received: bool = True
    applied: bool
    session_id: str = Field(alias="sessionId")
    status: PaymentSessionStatus

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: WebhookResult) -> "WebhookAckResponse":
        return cls(
            applied=result.applied,
            session_id=result.session.session_id,
            status=result.session.status,
        )


class LedgerEntryResponse(BaseModel):
    entry_id: str = Field(alias="entryId")
    delta: Decimal
    reason: str
    balance_after: Decimal = Field(alias="balanceAfter")
    operation_type: Optional[OperationType] = Field(alias="operationType", default=None)
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: CreditLedgerEntry) -> "LedgerEntryResponse":
        return cls(
            entry_id=entry.entry_id,
            delta=entry.delta,
            reason=entry.reason.value,
            balance_after=entry.balance_after,
            operation_type=entry.operation_type,
            metadata=dict(entry.metadata),
            created_at=entry.created_at,
        )


class CreditHistoryResponse(BaseModel):
    entries: List[LedgerEntryResponse]

    model_config = ConfigDict(populate_by_name=True)


class CreditBalanceResponse(BaseModel):
    balance: Decimal
    tier_id: Optional[str] = Field(alias="tierId", default=None)
    daily_bonus: Decimal = Field(alias="dailyBonus")
    can_claim_bonus: bool = Field(alias="canClaimBonus")
    trial_active: bool = Field(alias="trialActive")
    period_end: Optional[datetime] = Field(alias="periodEnd", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, balance: CreditBalance) -> "CreditBalanceResponse":
        return cls(
            balance=balance.credit_balance,
            tier_id=balance.tier_id,
            daily_bonus=balance.daily_bonus_credits,
            can_claim_bonus=balance.can_claim_bonus,
            trial_active=balance.trial_active,
            period_end=balance.period_end,
        )


class DeductCreditsRequest(BaseModel):
    operation_type: Optional[OperationType] = Field(alias="operationType", default=None)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _one_of_operation_or_amount(self) -> "DeductCreditsRequest":
        if (self.operation_type is None) == (self.amount is None):
            raise ValueError("Provide exactly one of operationType or amount")
        return self


class DeductCreditsResponse(BaseModel):
    success: bool = True
    deducted: Decimal
    balance: Decimal
    entry: Optional[LedgerEntryResponse] = None

    model_config = ConfigDict(populate_by_name=True)


class BonusClaimResponse(BaseModel):
    granted: bool
    bonus_amount: Decimal = Field(alias="bonusAmount")
    balance: Optional[Decimal] = None
    message: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_claim(cls, claim: BonusClaim) -> "BonusClaimResponse":
        return cls(
            granted=claim.granted,
            bonus_amount=claim.bonus_amount,
            balance=claim.entry.balance_after if claim.entry is not None else None,
            message=claim.message,
        )


class TrialResponse(BaseModel):
    active: bool
    tier_id: Optional[str] = Field(alias="tierId", default=None)
    status: Optional[TrialStatus] = None
    started_at: Optional[datetime] = Field(alias="startedAt", default=None)
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_trial(cls, trial: Optional[TrialGrant], *, now: datetime) -> "TrialResponse":
        if trial is None:
            return cls(active=False)
        return cls(
            active=trial.is_active_at(now),
            tier_id=trial.tier_id,
            status=trial.status,
            started_at=trial.started_at,
            expires_at=trial.expires_at,
        )


class CronTriggerRequest(BaseModel):
    job: Optional[str] = None
    secret: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class JobRunResponse(BaseModel):
    job: str
    success: bool
    processed: int
    skipped: int
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(alias="startedAt")
    completed_at: Optional[datetime] = Field(alias="completedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: JobRunResult) -> "JobRunResponse":
        return cls(
            job=result.job,
            success=result.success,
            processed=result.processed,
            skipped=result.skipped,
            errors=list(result.errors),
            started_at=result.started_at,
            completed_at=result.completed_at,
        )
