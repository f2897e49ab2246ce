"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, Optional, Sequence
from uuid import uuid4

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

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
from ...app_context import get_conn


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_tier(row: dict) -> SubscriptionTier:
    return SubscriptionTier(
        tier_id=row["tier_id"],
        display_name_en=row["display_name_en"],
        display_name_ar=row["display_name_ar"],
        price=Decimal(row["price"]),
        currency=row["currency"],
        credits_per_period=Decimal(row["credits_per_period"]),
        daily_bonus_credits=Decimal(row["daily_bonus_credits"]),
        features=tuple(row.get("features") or ()),
        is_active=bool(row["is_active"]),
        sort_order=int(row["sort_order"]),
    )


def _row_to_account(row: dict) -> Account:
    status = row.get("subscription_status")
    return Account(
        account_id=row["account_id"],
        tier_id=row.get("tier_id"),
        credit_balance=Decimal(row["credit_balance"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        last_bonus_date=row.get("last_bonus_date"),
        subscription_status=SubscriptionStatus(status) if status else None,
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        failed_payment_attempts=int(row.get("failed_payment_attempts") or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_ledger_entry(row: dict) -> CreditLedgerEntry:
    operation_type = row.get("operation_type")
    return CreditLedgerEntry(
        entry_id=row["entry_id"],
        account_id=row["account_id"],
        delta=Decimal(row["delta"]),
        reason=CreditReason(row["reason"]),
        balance_after=Decimal(row["balance_after"]),
        operation_type=OperationType(operation_type) if operation_type else None,
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_session(row: dict) -> PaymentSession:
    return PaymentSession(
        session_id=row["session_id"],
        account_id=row["account_id"],
        tier_id=row["tier_id"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        status=PaymentSessionStatus(row["status"]),
        provider_session_id=row.get("provider_session_id"),
        redirect_url=row.get("redirect_url"),
        failure_reason=row.get("failure_reason"),
        refund_id=row.get("refund_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_trial(row: dict) -> TrialGrant:
    return TrialGrant(
        account_id=row["account_id"],
        tier_id=row["tier_id"],
        started_at=row["started_at"],
        expires_at=row["expires_at"],
        status=TrialStatus(row["status"]),
        ended_at=row.get("ended_at"),
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL.

    Without a connection every call runs in its own transaction. Inside
    ``transaction()`` a repository bound to a single connection is yielded and
    the caller's calls commit together.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresBillingRepository"]:
        if self._conn is not None:
            yield self
            return
        with managed_connection() as (connection, _):
            yield PostgresBillingRepository(conn=connection)

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        # managed_connection owns commit and rollback.
        with managed_connection(self._conn) as (connection, _):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscription_tiers
                ORDER BY sort_order, tier_id
                """
            )
            return [_row_to_tier(row) for row in cursor.fetchall() or []]

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_accounts WHERE account_id = %s LIMIT 1",
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def ensure_account(self, account_id: str) -> Account:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_accounts (account_id)
                VALUES (%s)
                ON CONFLICT (account_id) DO UPDATE SET account_id = EXCLUDED.account_id
                RETURNING *
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist billing account")
            return _row_to_account(row)

    def lock_account(self, account_id: str) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_accounts WHERE account_id = %s FOR UPDATE",
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def update_account_tier(
        self,
        account_id: str,
        *,
        tier_id: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_accounts
                SET tier_id = %s,
                    current_period_start = %s,
                    current_period_end = %s,
                    updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (tier_id, period_start, period_end, account_id),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def advance_billing_period(
        self,
        account_id: str,
        *,
        expected_period_end: datetime,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_accounts
                SET current_period_start = %s,
                    current_period_end = %s,
                    updated_at = NOW()
                WHERE account_id = %s AND current_period_end = %s
                RETURNING *
                """,
                (period_start, period_end, account_id, expected_period_end),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def update_subscription(
        self,
        account_id: str,
        *,
        status: Optional[SubscriptionStatus],
        cancel_at_period_end: bool,
        canceled_at: Optional[datetime],
        failed_payment_attempts: int,
    ) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_accounts
                SET subscription_status = %s,
                    cancel_at_period_end = %s,
                    canceled_at = %s,
                    failed_payment_attempts = %s,
                    updated_at = NOW()
                WHERE account_id = %s
                RETURNING *
                """,
                (
                    status.value if status else None,
                    cancel_at_period_end,
                    canceled_at,
                    failed_payment_attempts,
                    account_id,
                ),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def mark_bonus_granted(self, account_id: str, bonus_date: date) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_accounts
                SET last_bonus_date = %s, updated_at = NOW()
                WHERE account_id = %s
                  AND (last_bonus_date IS NULL OR last_bonus_date < %s)
                """,
                (bonus_date, account_id, bonus_date),
            )
            return cursor.rowcount > 0

    def list_accounts_due_for_rollover(self, now: datetime) -> Sequence[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_accounts
                WHERE tier_id IS NOT NULL
                  AND current_period_end IS NOT NULL
                  AND current_period_end <= %s
                ORDER BY current_period_end
                """,
                (now,),
            )
            return [_row_to_account(row) for row in cursor.fetchall() or []]

    def list_bonus_candidates(self, now: datetime) -> Sequence[Account]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT acc.*
                FROM billing_accounts AS acc
                LEFT JOIN billing_trials AS trial ON trial.account_id = acc.account_id
                WHERE acc.tier_id IS NOT NULL
                   OR (trial.status = %s AND trial.expires_at > %s)
                """,
                (TrialStatus.ACTIVE.value, now),
            )
            return [_row_to_account(row) for row in cursor.fetchall() or []]

    def apply_credit_delta(
        self,
        account_id: str,
        delta: Decimal,
        reason: CreditReason,
        *,
        operation_type: Optional[OperationType] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[CreditLedgerEntry]:
        with self._cursor() as cursor:
            # The floor check and the decrement are one statement, so concurrent
            # debits cannot both pass the check.
            cursor.execute(
                """
                UPDATE billing_accounts
                SET credit_balance = credit_balance + %(delta)s,
                    updated_at = NOW()
                WHERE account_id = %(account_id)s
                  AND credit_balance + %(delta)s >= 0
                RETURNING credit_balance
                """,
                {"delta": delta, "account_id": account_id},
            )
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute(
                """
                INSERT INTO billing_credit_ledger (
                    entry_id,
                    account_id,
                    delta,
                    reason,
                    balance_after,
                    operation_type,
                    metadata
                )
                VALUES (%(entry_id)s, %(account_id)s, %(delta)s, %(reason)s,
                        %(balance_after)s, %(operation_type)s, %(metadata)s)
                RETURNING *
                """,
                {
                    "entry_id": f"cle_{uuid4().hex}",
                    "account_id": account_id,
                    "delta": delta,
                    "reason": reason.value,
                    "balance_after": row["credit_balance"],
                    "operation_type": operation_type.value if operation_type else None,
                    "metadata": psycopg2.extras.Json(metadata or {}),
                },
            )
            entry_row = cursor.fetchone()
            if not entry_row:
                raise RuntimeError("Failed to persist credit ledger entry")
            return _row_to_ledger_entry(entry_row)

    def list_ledger_entries(self, account_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_credit_ledger
                WHERE account_id = %s
                ORDER BY created_at DESC, entry_id DESC
                LIMIT %s
                """,
                (account_id, limit),
            )
            return [_row_to_ledger_entry(row) for row in cursor.fetchall() or []]

    def create_payment_session(self, session: PaymentSession) -> PaymentSession:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payment_sessions (
                    session_id,
                    account_id,
                    tier_id,
                    amount,
                    currency,
                    status,
                    provider_session_id,
                    redirect_url
                )
                VALUES (%(session_id)s, %(account_id)s, %(tier_id)s, %(amount)s,
                        %(currency)s, %(status)s, %(provider_session_id)s, %(redirect_url)s)
                RETURNING *
                """,
                {
                    "session_id": session.session_id,
                    "account_id": session.account_id,
                    "tier_id": session.tier_id,
                    "amount": session.amount,
                    "currency": session.currency,
                    "status": session.status.value,
                    "provider_session_id": session.provider_session_id,
                    "redirect_url": session.redirect_url,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment session")
            return _row_to_session(row)

    def get_payment_session(self, session_id: str) -> Optional[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_payment_sessions WHERE session_id = %s LIMIT 1",
                (session_id,),
            )
            row = cursor.fetchone()
            return _row_to_session(row) if row else None

    def get_payment_session_by_provider_id(self, provider_session_id: str) -> Optional[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_payment_sessions WHERE provider_session_id = %s LIMIT 1",
                (provider_session_id,),
            )
            row = cursor.fetchone()
            return _row_to_session(row) if row else None

    def attach_provider_session(
        self,
        session_id: str,
        *,
        provider_session_id: str,
        redirect_url: str,
    ) -> Optional[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_sessions
                SET provider_session_id = %s,
                    redirect_url = %s,
                    status = %s,
                    updated_at = NOW()
                WHERE session_id = %s AND status = %s
                RETURNING *
                """,
                (
                    provider_session_id,
                    redirect_url,
                    PaymentSessionStatus.PENDING.value,
                    session_id,
                    PaymentSessionStatus.CREATED.value,
                ),
            )
            row = cursor.fetchone()
            return _row_to_session(row) if row else None

    def transition_payment_session(
        self,
        session_id: str,
        *,
        expected: Iterable[PaymentSessionStatus],
        new_status: PaymentSessionStatus,
        failure_reason: Optional[str] = None,
    ) -> Optional[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_sessions
                SET status = %s,
                    failure_reason = %s,
                    updated_at = NOW()
                WHERE session_id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (
                    new_status.value,
                    failure_reason,
                    session_id,
                    [status.value for status in expected],
                ),
            )
            row = cursor.fetchone()
            return _row_to_session(row) if row else None

    def list_open_payment_sessions(self, *, created_before: datetime) -> Sequence[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_sessions
                WHERE status = ANY(%s) AND created_at < %s
                ORDER BY created_at
                """,
                ([status.value for status in OPEN_SESSION_STATUSES], created_before),
            )
            return [_row_to_session(row) for row in cursor.fetchall() or []]

    def list_payment_sessions(self, account_id: str, *, limit: int = 50) -> Sequence[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_sessions
                WHERE account_id = %s
                ORDER BY created_at DESC, session_id DESC
                LIMIT %s
                """,
                (account_id, limit),
            )
            return [_row_to_session(row) for row in cursor.fetchall() or []]

    def mark_session_refunded(self, session_id: str, *, refund_id: str) -> Optional[PaymentSession]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_sessions
                SET status = %s,
                    refund_id = %s,
                    updated_at = NOW()
                WHERE session_id = %s AND status = %s
                RETURNING *
                """,
                (
                    PaymentSessionStatus.REFUNDED.value,
                    refund_id,
                    session_id,
                    PaymentSessionStatus.SUCCEEDED.value,
                ),
            )
            row = cursor.fetchone()
            return _row_to_session(row) if row else None

    def get_trial(self, account_id: str) -> Optional[TrialGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_trials WHERE account_id = %s LIMIT 1",
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_trial(row) if row else None

    def insert_trial(self, trial: TrialGrant) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_trials (account_id, tier_id, started_at, expires_at, status)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (account_id) DO NOTHING
                """,
                (
                    trial.account_id,
                    trial.tier_id,
                    trial.started_at,
                    trial.expires_at,
                    trial.status.value,
                ),
            )
            return cursor.rowcount > 0

    def end_trial(
        self,
        account_id: str,
        *,
        new_status: TrialStatus,
        ended_at: datetime,
    ) -> Optional[TrialGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_trials
                SET status = %s, ended_at = %s
                WHERE account_id = %s AND status = %s
                RETURNING *
                """,
                (new_status.value, ended_at, account_id, TrialStatus.ACTIVE.value),
            )
            row = cursor.fetchone()
            return _row_to_trial(row) if row else None

    def list_trials_due(self, now: datetime) -> Sequence[TrialGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_trials
                WHERE status = %s AND expires_at <= %s
                ORDER BY expires_at
                """,
                (TrialStatus.ACTIVE.value, now),
            )
            return [_row_to_trial(row) for row in cursor.fetchall() or []]

    def list_trials_expiring_between(self, start: datetime, end: datetime) -> Sequence[TrialGrant]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_trials
                WHERE status = %s AND expires_at > %s AND expires_at <= %s
                ORDER BY expires_at
                """,
                (TrialStatus.ACTIVE.value, start, end),
            )
            return [_row_to_trial(row) for row in cursor.fetchall() or []]

    def record_audit_event(self, event: BillingAuditEvent) -> BillingAuditEvent:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_audit_events (
                    event_type,
                    account_id,
                    session_id,
                    metadata,
                    occurred_at
                )
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    event.event_type.value,
                    event.account_id,
                    event.session_id,
                    psycopg2.extras.Json(event.metadata),
                    event.occurred_at,
                ),
            )
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
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_job_leases (job_name, account_id, holder, expires_at)
                VALUES (%(job_name)s, %(account_id)s, %(holder)s, %(expires_at)s)
                ON CONFLICT (job_name, account_id) DO UPDATE SET
                    holder = EXCLUDED.holder,
                    expires_at = EXCLUDED.expires_at
                WHERE billing_job_leases.expires_at <= %(now)s
                   OR billing_job_leases.holder = EXCLUDED.holder
                RETURNING holder
                """,
                {
                    "job_name": job_name,
                    "account_id": account_id,
                    "holder": holder,
                    "expires_at": expires_at,
                    "now": now,
                },
            )
            return cursor.fetchone() is not None

    def release_job_lease(self, job_name: str, account_id: str, *, holder: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM billing_job_leases
                WHERE job_name = %s AND account_id = %s AND holder = %s
                """,
                (job_name, account_id, holder),
            )

    def purge_expired_job_leases(self, now: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM billing_job_leases WHERE expires_at <= %s", (now,))
            return cursor.rowcount


__all__ = ["PostgresBillingRepository", "managed_connection"]
