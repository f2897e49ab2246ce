"""In-process billing repository suitable for tests and local development."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from threading import RLock
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from .catalog import DEFAULT_TIERS
from .models import (
    Account,
    BillingAuditEvent,
    CreditLedgerEntry,
    CreditReason,
    OPEN_SESSION_STATUSES,
    OperationType,
    PaymentSession,
    PaymentSessionStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TrialGrant,
    TrialStatus,
)


class InMemoryBillingRepository:
    """Dictionary backed repository.

    A single re-entrant lock serializes every operation, and ``transaction()``
    holds it for the whole unit and restores a snapshot if the unit fails.
    """

    def __init__(self, tiers: Optional[Iterable[SubscriptionTier]] = None) -> None:
        self._lock = RLock()
        self.tiers: Dict[str, SubscriptionTier] = {
            tier.tier_id: tier for tier in (tiers if tiers is not None else DEFAULT_TIERS.values())
        }
        self.accounts: Dict[str, Account] = {}
        self.ledger: List[CreditLedgerEntry] = []
        self.sessions: Dict[str, PaymentSession] = {}
        self.provider_index: Dict[str, str] = {}
        self.trials: Dict[str, TrialGrant] = {}
        self.audit_events: List[BillingAuditEvent] = []
        self.leases: Dict[Tuple[str, str], Tuple[str, datetime]] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _snapshot(self) -> dict:
        return {
            "accounts": dict(self.accounts),
            "ledger": list(self.ledger),
            "sessions": dict(self.sessions),
            "provider_index": dict(self.provider_index),
            "trials": dict(self.trials),
            "audit_events": list(self.audit_events),
            "leases": dict(self.leases),
        }

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryBillingRepository"]:
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        return list(self.tiers.values())

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self.accounts.get(account_id)

    def ensure_account(self, account_id: str) -> Account:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                account = Account(account_id=account_id)
                self.accounts[account_id] = account
            return account

    def lock_account(self, account_id: str) -> Optional[Account]:
        return self.get_account(account_id)

    def _save_account(self, account: Account, **changes) -> Account:
        updated = account.model_copy(update={**changes, "updated_at": self._now()})
        self.accounts[account.account_id] = updated
        return updated

    def update_account_tier(
        self,
        account_id: str,
        *,
        tier_id: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            return self._save_account(
                account,
                tier_id=tier_id,
                current_period_start=period_start,
                current_period_end=period_end,
            )

    def advance_billing_period(
        self,
        account_id: str,
        *,
        expected_period_end: datetime,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None or account.current_period_end != expected_period_end:
                return None
            return self._save_account(
                account,
                current_period_start=period_start,
                current_period_end=period_end,
            )

    def update_subscription(
        self,
        account_id: str,
        *,
        status: Optional[SubscriptionStatus],
        cancel_at_period_end: bool,
        canceled_at: Optional[datetime],
        failed_payment_attempts: int,
    ) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            return self._save_account(
                account,
                subscription_status=status,
                cancel_at_period_end=cancel_at_period_end,
                canceled_at=canceled_at,
                failed_payment_attempts=failed_payment_attempts,
            )

    def mark_bonus_granted(self, account_id: str, bonus_date: date) -> bool:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return False
            if account.last_bonus_date is not None and account.last_bonus_date >= bonus_date:
                return False
            self._save_account(account, last_bonus_date=bonus_date)
            return True

    def list_accounts_due_for_rollover(self, now: datetime) -> Sequence[Account]:
        with self._lock:
            return [
                account
                for account in self.accounts.values()
                if account.tier_id
                and account.current_period_end is not None
                and account.current_period_end <= now
            ]

    def list_bonus_candidates(self, now: datetime) -> Sequence[Account]:
        with self._lock:
            candidates = []
            for account in self.accounts.values():
                trial = self.trials.get(account.account_id)
                if account.tier_id or (trial is not None and trial.is_active_at(now)):
                    candidates.append(account)
            return candidates

    def apply_credit_delta(
        self,
        account_id: str,
        delta: Decimal,
        reason: CreditReason,
        *,
        operation_type: Optional[OperationType] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[CreditLedgerEntry]:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            new_balance = account.credit_balance + delta
            if new_balance < 0:
                return None
            self._save_account(account, credit_balance=new_balance)
            entry = CreditLedgerEntry(
                entry_id=f"cle_{uuid4().hex}",
                account_id=account_id,
                delta=delta,
                reason=reason,
                balance_after=new_balance,
                operation_type=operation_type,
                metadata=dict(metadata or {}),
                created_at=self._now(),
            )
            self.ledger.append(entry)
            return entry

    def list_ledger_entries(self, account_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        with self._lock:
            entries = [entry for entry in self.ledger if entry.account_id == account_id]
            return list(reversed(entries))[:limit]

    def create_payment_session(self, session: PaymentSession) -> PaymentSession:
        with self._lock:
            if session.session_id in self.sessions:
                raise ValueError(f"Payment session already exists: {session.session_id}")
            self.sessions[session.session_id] = session
            if session.provider_session_id:
                self.provider_index[session.provider_session_id] = session.session_id
            return session

    def get_payment_session(self, session_id: str) -> Optional[PaymentSession]:
        with self._lock:
            return self.sessions.get(session_id)

    def get_payment_session_by_provider_id(self, provider_session_id: str) -> Optional[PaymentSession]:
        with self._lock:
            session_id = self.provider_index.get(provider_session_id)
            return self.sessions.get(session_id) if session_id else None

    def attach_provider_session(
        self,
        session_id: str,
        *,
        provider_session_id: str,
        redirect_url: str,
    ) -> Optional[PaymentSession]:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or session.status != PaymentSessionStatus.CREATED:
                return None
            updated = session.model_copy(
                update={
                    "provider_session_id": provider_session_id,
                    "redirect_url": redirect_url,
                    "status": PaymentSessionStatus.PENDING,
                    "updated_at": self._now(),
                }
            )
            self.sessions[session_id] = updated
            self.provider_index[provider_session_id] = session_id
            return updated

    def transition_payment_session(
        self,
        session_id: str,
        *,
        expected: Iterable[PaymentSessionStatus],
        new_status: PaymentSessionStatus,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentSession]:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or session.status not in set(expected):
                return None
            updated = session.model_copy(
                update={
                    "status": new_status,
                    "failure_reason": failure_reason,
                    "updated_at": self._now(),
                }
            )
            self.sessions[session_id] = updated
            return updated

    def list_open_payment_sessions(self, *, created_before: datetime) -> Sequence[PaymentSession]:
        with self._lock:
            return [
                session
                for session in self.sessions.values()
                if session.status in OPEN_SESSION_STATUSES and session.created_at < created_before
            ]

    def list_payment_sessions(self, account_id: str, *, limit: int = 50) -> Sequence[PaymentSession]:
        with self._lock:
            sessions = [
                session for session in reversed(list(self.sessions.values())) if session.account_id == account_id
            ]
            sessions.sort(key=lambda session: session.created_at, reverse=True)
            return sessions[:limit]

    def mark_session_refunded(self, session_id: str, *, refund_id: str) -> Optional[PaymentSession]:
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None or session.status != PaymentSessionStatus.SUCCEEDED:
                return None
            updated = session.model_copy(
                update={
                    "status": PaymentSessionStatus.REFUNDED,
                    "refund_id": refund_id,
                    "updated_at": self._now(),
                }
            )
            self.sessions[session_id] = updated
            return updated

    def get_trial(self, account_id: str) -> Optional[TrialGrant]:
        with self._lock:
            return self.trials.get(account_id)

    def insert_trial(self, trial: TrialGrant) -> bool:
        with self._lock:
            if trial.account_id in self.trials:
                return False
            self.trials[trial.account_id] = trial
            return True

    def end_trial(
        self,
        account_id: str,
        *,
        new_status: TrialStatus,
        ended_at: datetime,
    ) -> Optional[TrialGrant]:
        with self._lock:
            trial = self.trials.get(account_id)
            if trial is None or trial.status != TrialStatus.ACTIVE:
                return None
            updated = trial.model_copy(update={"status": new_status, "ended_at": ended_at})
            self.trials[account_id] = updated
            return updated

    def list_trials_due(self, now: datetime) -> Sequence[TrialGrant]:
        with self._lock:
            return [
                trial
                for trial in self.trials.values()
                if trial.status == TrialStatus.ACTIVE and trial.expires_at <= now
            ]

    def list_trials_expiring_between(self, start: datetime, end: datetime) -> Sequence[TrialGrant]:
        with self._lock:
            return [
                trial
                for trial in self.trials.values()
                if trial.status == TrialStatus.ACTIVE and start < trial.expires_at <= end
            ]

    def record_audit_event(self, event: BillingAuditEvent) -> BillingAuditEvent:
        with self._lock:
            self.audit_events.append(event)
            return event

    def acquire_job_lease(
        self,
        job_name: str,
        account_id: str,
        *,
        holder: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        with self._lock:
            key = (job_name, account_id)
            current = self.leases.get(key)
            if current is not None and current[0] != holder and current[1] > now:
                return False
            self.leases[key] = (holder, expires_at)
            return True

    def release_job_lease(self, job_name: str, account_id: str, *, holder: str) -> None:
        with self._lock:
            key = (job_name, account_id)
            current = self.leases.get(key)
            if current is not None and current[0] == holder:
                self.leases.pop(key, None)

    def purge_expired_job_leases(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, (_, expires_at) in self.leases.items() if expires_at <= now]
            for key in expired:
                del self.leases[key]
            return len(expired)


__all__ = ["InMemoryBillingRepository"]
