"""One-time trial grants."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .catalog import TierCatalog
from .credits import CreditService
from .exceptions import AlreadyTrialedError, ValidationError
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CreditReason,
    TrialGrant,
    TrialStatus,
)
from .protocols import BillingEventLogger, BillingNotifier, BillingRepository

logger = logging.getLogger("billing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrialService:
    """Starts, inspects and expires the single trial an account may have."""

    repository: BillingRepository
    catalog: TierCatalog
    credits: CreditService
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    trial_tier: str = "basic"
    duration_days: int = 7
    clock: Callable[[], datetime] = field(default=_utcnow)

    def get_trial(self, account_id: str) -> Optional[TrialGrant]:
        return self.repository.get_trial(account_id)

    def is_trial_active(self, account_id: str, now: Optional[datetime] = None) -> bool:
        trial = self.repository.get_trial(account_id)
        return trial is not None and trial.is_active_at(now or self.clock())

    def start_trial(self, account_id: str) -> TrialGrant:
        if self.repository.get_trial(account_id) is not None:
            raise AlreadyTrialedError("Trial already used for this account")

        tier = self.catalog.get_tier(self.trial_tier)
        if tier is None:
            raise ValidationError(f"Trial tier is not configured: {self.trial_tier}")

        now = self.clock()
        trial = TrialGrant(
            account_id=account_id,
            tier_id=tier.tier_id,
            started_at=now,
            expires_at=now + timedelta(days=self.duration_days),
        )
        event = BillingAuditEvent(
            event_type=BillingAuditEventType.TRIAL_STARTED,
            account_id=account_id,
            metadata={"tier_id": tier.tier_id, "expires_at": trial.expires_at.isoformat()},
            occurred_at=now,
        )
        with self.repository.transaction() as tx:
            tx.ensure_account(account_id)
            # Insert-if-absent settles concurrent starts; the loser raises and rolls back.
            if not tx.insert_trial(trial):
                raise AlreadyTrialedError("Trial already used for this account")
            if tier.credits_per_period > 0:
                self.credits.using(tx).credit(
                    account_id,
                    tier.credits_per_period,
                    CreditReason.TRIAL_GRANT,
                    metadata={"tier_id": tier.tier_id},
                )
            tx.record_audit_event(event)

        self.event_logger.log(event)
        logger.info("Trial started for %s on tier %s", account_id, tier.tier_id)
        return trial

    def expire_trial(self, account_id: str) -> Optional[TrialGrant]:
        """End an active trial. Returns ``None`` when there was nothing to expire."""

        now = self.clock()
        with self.repository.transaction() as tx:
            account = tx.lock_account(account_id)
            ended = tx.end_trial(account_id, new_status=TrialStatus.EXPIRED, ended_at=now)
            if ended is None:
                return None
            if account is not None and not account.has_paid_tier and account.credit_balance > 0:
                tx.apply_credit_delta(
                    account_id,
                    -account.credit_balance,
                    CreditReason.TRIAL_EXPIRY,
                    metadata={"tier_id": ended.tier_id},
                )
            event = BillingAuditEvent(
                event_type=BillingAuditEventType.TRIAL_EXPIRED,
                account_id=account_id,
                metadata={"tier_id": ended.tier_id},
                occurred_at=now,
            )
            tx.record_audit_event(event)

        self.event_logger.log(event)
        self.notifier.notify_trial_expired(ended)
        logger.info("Trial expired for %s", account_id)
        return ended


__all__ = ["TrialService"]
