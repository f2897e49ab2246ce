"""Checkout creation and gateway reconciliation."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence
from uuid import uuid4

from .catalog import TierCatalog
from .credits import MAX_HISTORY_LIMIT, CreditService
from .exceptions import AuthError, ConflictError, GatewayError, NotFoundError, ValidationError
from .models import (
    Account,
    BillingAuditEvent,
    BillingAuditEventType,
    CreditReason,
    MAX_FAILED_PAYMENT_ATTEMPTS,
    OPEN_SESSION_STATUSES,
    PaymentSession,
    PaymentSessionStatus,
    SubscriptionStatus,
    TrialStatus,
    WebhookNotification,
    WebhookResult,
)
from .protocols import BillingEventLogger, BillingNotifier, BillingRepository, PaymentGateway

logger = logging.getLogger("billing")
security_logger = logging.getLogger("kwapps.security")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentService:
    """Owns the payment session lifecycle from checkout to reconciliation."""

    repository: BillingRepository
    gateway: PaymentGateway
    catalog: TierCatalog
    credits: CreditService
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    billing_period_days: int = 30
    session_ttl_minutes: int = 60
    clock: Callable[[], datetime] = field(default=_utcnow)

    def start_checkout(self, account_id: str, tier_id: str) -> PaymentSession:
        tier = self.catalog.get_purchasable_tier(tier_id)
        self.repository.ensure_account(account_id)

        now = self.clock()
        session = self.repository.create_payment_session(
            PaymentSession(
                session_id=f"ps_{uuid4().hex}",
                account_id=account_id,
                tier_id=tier.tier_id,
                amount=tier.price,
                currency=tier.currency,
                created_at=now,
                updated_at=now,
            )
        )

        try:
            provider_session = self.gateway.create_session(
                account_id,
                tier,
                order_id=session.session_id,
                amount=tier.price,
                idempotency_key=session.session_id,
            )
        except GatewayError as exc:
            logger.warning(
                "Checkout %s failed at the gateway: %s",
                session.session_id,
                exc.message,
            )
            self.repository.transition_payment_session(
                session.session_id,
                expected=OPEN_SESSION_STATUSES,
                new_status=PaymentSessionStatus.FAILED,
                failure_reason=exc.message,
            )
            raise

        updated = self.repository.attach_provider_session(
            session.session_id,
            provider_session_id=provider_session.provider_session_id,
            redirect_url=provider_session.redirect_url,
        )
        if updated is None:
            # A webhook can beat us here; report whatever state it left.
            current = self.repository.get_payment_session(session.session_id)
            if current is None:
                raise ConflictError("Payment session disappeared during checkout")
            return current

        self._audit(
            BillingAuditEventType.CHECKOUT_STARTED,
            updated,
            {"tier_id": tier.tier_id, "amount": str(tier.price)},
        )
        return updated

    def get_session(self, session_id: str, *, account_id: Optional[str] = None) -> PaymentSession:
        session = self.repository.get_payment_session(session_id)
        if session is None or (account_id is not None and session.account_id != account_id):
            raise NotFoundError("Payment session not found", detail={"session_id": session_id})
        return session

    def handle_webhook(self, raw_payload: bytes, signature: Optional[str]) -> WebhookResult:
        if not self.gateway.verify_webhook_signature(raw_payload, signature or ""):
            security_logger.warning(
                "Rejected payment webhook with invalid signature",
                extra={"payload_bytes": len(raw_payload), "signature_present": bool(signature)},
            )
            raise AuthError("Invalid signature")

        try:
            body = json.loads(raw_payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        notification = self.gateway.parse_webhook(body)
        session = self._find_session(notification)
        logger.info(
            "Webhook for session %s reports %s",
            session.session_id,
            notification.status.value,
        )
        metadata = {"source": "webhook"}
        if notification.transaction_id:
            metadata["transaction_id"] = notification.transaction_id
        return self._reconcile(session, notification.status, metadata)

    def refresh_session_status(self, session_id: str, *, account_id: Optional[str] = None) -> PaymentSession:
        """Poll the gateway for an open session and reconcile what it reports."""

        session = self.get_session(session_id, account_id=account_id)
        if session.is_terminal or not session.provider_session_id:
            return session
        status = self.gateway.get_session_status(session.provider_session_id)
        return self._reconcile(session, status, {"source": "poll"}).session

    def expire_stale_sessions(self, now: Optional[datetime] = None) -> int:
        moment = now or self.clock()
        cutoff = moment - timedelta(minutes=self.session_ttl_minutes)
        expired = 0
        for session in self.repository.list_open_payment_sessions(created_before=cutoff):
            updated = self.repository.transition_payment_session(
                session.session_id,
                expected=OPEN_SESSION_STATUSES,
                new_status=PaymentSessionStatus.EXPIRED,
                failure_reason="Checkout session expired",
            )
            if updated is None:
                continue
            expired += 1
            self._audit(BillingAuditEventType.PAYMENT_EXPIRED, updated, {"source": "expiry"})
        return expired

    def payment_history(self, account_id: str, *, limit: int = 20) -> Sequence[PaymentSession]:
        bounded = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        return self.repository.list_payment_sessions(account_id, limit=bounded)

    def get_subscription(self, account_id: str) -> Account:
        account = self.repository.get_account(account_id)
        if account is None or account.subscription_status is None:
            raise NotFoundError("No subscription found")
        return account

    def cancel_subscription(self, account_id: str) -> Account:
        """Stop renewal; the plan stays usable until the current period ends."""

        now = self.clock()
        with self.repository.transaction() as tx:
            account = tx.lock_account(account_id)
            if (
                account is None
                or account.tier_id is None
                or account.subscription_status in (None, SubscriptionStatus.CANCELED)
            ):
                raise NotFoundError("No active subscription")
            if account.cancel_at_period_end:
                return account
            updated = tx.update_subscription(
                account_id,
                status=account.subscription_status,
                cancel_at_period_end=True,
                canceled_at=now,
                failed_payment_attempts=account.failed_payment_attempts,
            )
            period_end = account.current_period_end.isoformat() if account.current_period_end else ""
            event = BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                account_id=account_id,
                metadata={"tier_id": account.tier_id, "period_end": period_end},
                occurred_at=now,
            )
            tx.record_audit_event(event)

        self.event_logger.log(event)
        logger.info("Subscription for %s set to end at %s", account_id, period_end or "period end")
        return updated

    def refund_payment(
        self,
        session_id: str,
        *,
        reason: str,
        account_id: Optional[str] = None,
    ) -> PaymentSession:
        """Refund a captured payment and take back what it bought.

        Unused credits from the purchase grant are reversed with a ``refund``
        ledger entry and the subscription it paid for ends immediately.
        """

        session = self.get_session(session_id, account_id=account_id)
        if session.status == PaymentSessionStatus.REFUNDED:
            raise ConflictError("Payment already refunded", detail={"session_id": session_id})
        if session.status != PaymentSessionStatus.SUCCEEDED:
            raise ValidationError(
                "Only successful payments can be refunded",
                detail={"session_id": session_id, "status": session.status.value},
            )

        refund_id = self.gateway.create_refund(
            session.session_id,
            amount=session.amount,
            reference=f"refund_{session.session_id}",
        )

        tier = self.catalog.get_tier(session.tier_id)
        granted = tier.credits_per_period if tier is not None else Decimal("0")
        now = self.clock()
        with self.repository.transaction() as tx:
            updated = tx.mark_session_refunded(session.session_id, refund_id=refund_id)
            if updated is None:
                logger.error("Refund %s issued but session %s was no longer refundable", refund_id, session_id)
                raise ConflictError("Payment session changed during refund", detail={"session_id": session_id})
            account = tx.lock_account(session.account_id)
            reversed_credits = Decimal("0")
            if account is not None:
                reversed_credits = min(account.credit_balance, granted)
                if reversed_credits > 0:
                    self.credits.using(tx).debit(
                        session.account_id,
                        reversed_credits,
                        CreditReason.REFUND,
                        metadata={"session_id": session.session_id, "refund_id": refund_id},
                    )
                if account.tier_id == session.tier_id and account.subscription_status is not None:
                    tx.update_account_tier(
                        session.account_id,
                        tier_id=None,
                        period_start=account.current_period_start,
                        period_end=account.current_period_end,
                    )
                    tx.update_subscription(
                        session.account_id,
                        status=SubscriptionStatus.CANCELED,
                        cancel_at_period_end=False,
                        canceled_at=now,
                        failed_payment_attempts=0,
                    )
            event = BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_REFUNDED,
                account_id=session.account_id,
                session_id=session.session_id,
                metadata={
                    "refund_id": refund_id,
                    "reason": reason,
                    "amount": str(session.amount),
                    "credits_reversed": str(reversed_credits),
                },
                occurred_at=now,
            )
            tx.record_audit_event(event)

        self.event_logger.log(event)
        logger.info(
            "Payment %s refunded (%s); reversed %s credits",
            session.session_id,
            refund_id,
            reversed_credits,
        )
        return updated

    def _find_session(self, notification: WebhookNotification) -> PaymentSession:
        session = None
        if notification.provider_session_id:
            session = self.repository.get_payment_session_by_provider_id(notification.provider_session_id)
        if session is None and notification.order_id:
            session = self.repository.get_payment_session(notification.order_id)
        if session is None:
            logger.warning(
                "Webhook references unknown session (order %s, track %s)",
                notification.order_id,
                notification.provider_session_id,
            )
            raise NotFoundError("Transaction not found")
        return session

    def _reconcile(
        self,
        session: PaymentSession,
        status: PaymentSessionStatus,
        metadata: Dict[str, str],
    ) -> WebhookResult:
        if session.is_terminal:
            logger.info("Session %s already %s; ignoring", session.session_id, session.status.value)
            return WebhookResult(session=session, applied=False)
        if status == PaymentSessionStatus.PENDING:
            return WebhookResult(session=session, applied=False)
        if status == PaymentSessionStatus.SUCCEEDED:
            return self._apply_success(session, metadata)

        past_due: Optional[BillingAuditEvent] = None
        with self.repository.transaction() as tx:
            updated = tx.transition_payment_session(
                session.session_id,
                expected=OPEN_SESSION_STATUSES,
                new_status=status,
                failure_reason=f"Gateway reported {status.value}",
            )
            if updated is not None and status == PaymentSessionStatus.FAILED:
                past_due = self._count_failed_payment(tx, updated)
        if updated is None:
            return WebhookResult(session=self._current(session), applied=False)

        if status == PaymentSessionStatus.FAILED:
            self._audit(BillingAuditEventType.PAYMENT_FAILED, updated, metadata)
            self.notifier.notify_payment_failed(updated)
        else:
            self._audit(BillingAuditEventType.PAYMENT_EXPIRED, updated, metadata)
        if past_due is not None:
            self.event_logger.log(past_due)
        return WebhookResult(session=updated, applied=True)

    def _count_failed_payment(
        self,
        tx: BillingRepository,
        session: PaymentSession,
    ) -> Optional[BillingAuditEvent]:
        """Bump the failed-payment counter of a subscribed account.

        Returns the audit event when this failure moves the subscription to
        ``past_due``.
        """

        account = tx.lock_account(session.account_id)
        if account is None or account.tier_id is None or account.subscription_status is None:
            return None
        attempts = account.failed_payment_attempts + 1
        status = account.subscription_status
        if attempts >= MAX_FAILED_PAYMENT_ATTEMPTS and status == SubscriptionStatus.ACTIVE:
            status = SubscriptionStatus.PAST_DUE
        tx.update_subscription(
            account.account_id,
            status=status,
            cancel_at_period_end=account.cancel_at_period_end,
            canceled_at=account.canceled_at,
            failed_payment_attempts=attempts,
        )
        logger.info("Failed payment attempt %s for %s", attempts, account.account_id)
        if status == account.subscription_status:
            return None
        event = BillingAuditEvent(
            event_type=BillingAuditEventType.SUBSCRIPTION_PAST_DUE,
            account_id=account.account_id,
            session_id=session.session_id,
            metadata={"tier_id": account.tier_id, "failed_payment_attempts": str(attempts)},
            occurred_at=self.clock(),
        )
        tx.record_audit_event(event)
        logger.warning("Subscription for %s is past due after %s failed payments", account.account_id, attempts)
        return event

    def _apply_success(self, session: PaymentSession, metadata: Dict[str, str]) -> WebhookResult:
        tier = self.catalog.get_tier(session.tier_id)
        if tier is None:
            raise RuntimeError(f"Tier {session.tier_id} missing from catalog")

        now = self.clock()
        event: Optional[BillingAuditEvent] = None
        with self.repository.transaction() as tx:
            updated = tx.transition_payment_session(
                session.session_id,
                expected=OPEN_SESSION_STATUSES,
                new_status=PaymentSessionStatus.SUCCEEDED,
            )
            if updated is not None:
                tx.ensure_account(session.account_id)
                tx.lock_account(session.account_id)
                tx.update_account_tier(
                    session.account_id,
                    tier_id=tier.tier_id,
                    period_start=now,
                    period_end=now + timedelta(days=self.billing_period_days),
                )
                tx.update_subscription(
                    session.account_id,
                    status=SubscriptionStatus.ACTIVE,
                    cancel_at_period_end=False,
                    canceled_at=None,
                    failed_payment_attempts=0,
                )
                if tier.credits_per_period > 0:
                    self.credits.using(tx).credit(
                        session.account_id,
                        tier.credits_per_period,
                        CreditReason.PURCHASE_GRANT,
                        metadata={"session_id": session.session_id, "tier_id": tier.tier_id},
                    )
                tx.end_trial(session.account_id, new_status=TrialStatus.CONVERTED, ended_at=now)
                event = BillingAuditEvent(
                    event_type=BillingAuditEventType.PAYMENT_SUCCEEDED,
                    account_id=session.account_id,
                    session_id=session.session_id,
                    metadata={**metadata, "tier_id": tier.tier_id, "amount": str(session.amount)},
                    occurred_at=now,
                )
                tx.record_audit_event(event)

        if updated is None:
            logger.info("Session %s was reconciled concurrently", session.session_id)
            return WebhookResult(session=self._current(session), applied=False)

        self.event_logger.log(event)
        logger.info(
            "Payment %s succeeded; %s moved to tier %s",
            session.session_id,
            session.account_id,
            tier.tier_id,
        )
        return WebhookResult(session=updated, applied=True)

    def _current(self, session: PaymentSession) -> PaymentSession:
        return self.repository.get_payment_session(session.session_id) or session

    def _audit(
        self,
        event_type: BillingAuditEventType,
        session: PaymentSession,
        metadata: Dict[str, str],
    ) -> None:
        event = BillingAuditEvent(
            event_type=event_type,
            account_id=session.account_id,
            session_id=session.session_id,
            metadata=metadata,
            occurred_at=self.clock(),
        )
        self.repository.record_audit_event(event)
        self.event_logger.log(event)


__all__ = ["PaymentService"]
