"""Credit balance operations backed by the append-only ledger."""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from .catalog import TierCatalog
from .exceptions import InsufficientCreditsError, ValidationError
from .models import (
    Account,
    BonusClaim,
    CREDIT_COSTS,
    CreditBalance,
    CreditLedgerEntry,
    CreditReason,
    OperationType,
    SubscriptionTier,
)
from .protocols import BillingRepository

logger = logging.getLogger("billing")

MAX_HISTORY_LIMIT = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def billing_date(moment: datetime, timezone_name: str) -> date:
    """Calendar date of ``moment`` in the billing timezone."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(timezone_name)).date()


CREDIT_QUANTUM = Decimal("0.01")


def _as_amount(value: Union[Decimal, int, float, str]) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid credit amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Credit amount must be positive", detail={"amount": str(value)})
    # Balances are stored with two decimal places.
    if amount != amount.quantize(CREDIT_QUANTUM):
        raise ValidationError(
            "Credit amount supports at most two decimal places",
            detail={"amount": str(value)},
        )
    return amount



@dataclass
class CreditService:
    """Debits, grants and balance reads for an account."""

    repository: BillingRepository
    catalog: TierCatalog
    timezone_name: str = "Asia/Kuwait"
    clock: Callable[[], datetime] = field(default=_utcnow)

    def using(self, repository: BillingRepository) -> "CreditService":
        """Return a copy bound to ``repository``, typically an open transaction."""

        return dataclasses.replace(self, repository=repository)

    def get_balance(self, account_id: str) -> Decimal:
        account = self.repository.get_account(account_id)
        return account.credit_balance if account is not None else Decimal("0")

    def debit(
        self,
        account_id: str,
        amount: Union[Decimal, int, float, str],
        reason: CreditReason = CreditReason.GENERATION_DEBIT,
        *,
        operation_type: Optional[OperationType] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CreditLedgerEntry:
        required = _as_amount(amount)
        entry = self.repository.apply_credit_delta(
            account_id,
            -required,
            reason,
            operation_type=operation_type,
            metadata=metadata,
        )
        if entry is None:
            available = self.get_balance(account_id)
            logger.info(
                "Debit refused for %s: required %s, available %s",
                account_id,
                required,
                available,
            )
            raise InsufficientCreditsError(required=required, available=available)
        logger.debug("Debited %s credits from %s (%s)", required, account_id, reason.value)
        return entry

    def credit(
        self,
        account_id: str,
        amount: Union[Decimal, int, float, str],
        reason: CreditReason,
        *,
        operation_type: Optional[OperationType] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CreditLedgerEntry:
        granted = _as_amount(amount)
        self.repository.ensure_account(account_id)
        entry = self.repository.apply_credit_delta(
            account_id,
            granted,
            reason,
            operation_type=operation_type,
            metadata=metadata,
        )
        if entry is None:
            raise RuntimeError(f"Failed to credit account {account_id}")
        logger.debug("Credited %s credits to %s (%s)", granted, account_id, reason.value)
        return entry

    def debit_for_operation(
        self,
        account_id: str,
        operation_type: Union[OperationType, str],
        *,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[CreditLedgerEntry]:
        """Charge the fixed cost of a generation action. Free actions write nothing."""

        try:
            operation = OperationType(operation_type)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown operation type: {operation_type}",
                detail={"operation_type": str(operation_type)},
            ) from exc
        cost = CREDIT_COSTS[operation]
        if cost == 0:
            return None
        return self.debit(
            account_id,
            cost,
            CreditReason.GENERATION_DEBIT,
            operation_type=operation,
            metadata=metadata,
        )

    def history(self, account_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        bounded = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        return self.repository.list_ledger_entries(account_id, limit=bounded)

    def eligible_bonus_tier(self, account: Account, now: datetime) -> Optional[SubscriptionTier]:
        """Tier whose daily bonus applies: the paid tier, else an active trial's tier."""

        if account.tier_id:
            return self.catalog.get_tier(account.tier_id)
        trial = self.repository.get_trial(account.account_id)
        if trial is not None and trial.is_active_at(now):
            return self.catalog.get_tier(trial.tier_id)
        return None

    def grant_daily_bonus(
        self,
        account_id: str,
        tier: SubscriptionTier,
        bonus_date: date,
    ) -> Optional[CreditLedgerEntry]:
        """Grant ``tier``'s bonus once for ``bonus_date``; ``None`` if already granted."""

        with self.repository.transaction() as tx:
            if not tx.mark_bonus_granted(account_id, bonus_date):
                return None
            return tx.apply_credit_delta(
                account_id,
                tier.daily_bonus_credits,
                CreditReason.BONUS_CREDIT,
                metadata={"bonus_date": bonus_date.isoformat(), "tier_id": tier.tier_id},
            )

    def claim_daily_bonus(self, account_id: str, *, now: Optional[datetime] = None) -> BonusClaim:
        moment = now or self.clock()
        account = self.repository.get_account(account_id)
        if account is None:
            return BonusClaim(granted=False, message="No billing account")
        tier = self.eligible_bonus_tier(account, moment)
        if tier is None or tier.daily_bonus_credits <= 0:
            return BonusClaim(granted=False, message="No active subscription or trial")

        entry = self.grant_daily_bonus(account_id, tier, billing_date(moment, self.timezone_name))
        if entry is None:
            return BonusClaim(granted=False, message="Daily bonus already claimed today")
        logger.info("Daily bonus of %s granted to %s", tier.daily_bonus_credits, account_id)
        return BonusClaim(
            granted=True,
            bonus_amount=tier.daily_bonus_credits,
            entry=entry,
            message=f"Claimed {tier.daily_bonus_credits} bonus credits",
        )

    def balance_summary(self, account_id: str, *, now: Optional[datetime] = None) -> CreditBalance:
        moment = now or self.clock()
        account = self.repository.get_account(account_id)
        if account is None:
            return CreditBalance(account_id=account_id, credit_balance=Decimal("0"))

        trial = self.repository.get_trial(account_id)
        tier = self.eligible_bonus_tier(account, moment)
        today = billing_date(moment, self.timezone_name)
        bonus = tier.daily_bonus_credits if tier is not None else Decimal("0")
        can_claim = bonus > 0 and (account.last_bonus_date is None or account.last_bonus_date < today)
        return CreditBalance(
            account_id=account_id,
            credit_balance=account.credit_balance,
            tier_id=account.tier_id,
            daily_bonus_credits=bonus,
            can_claim_bonus=can_claim,
            trial_active=trial is not None and trial.is_active_at(moment),
            period_end=account.current_period_end,
        )


__all__ = ["CreditService", "MAX_HISTORY_LIMIT", "billing_date"]
