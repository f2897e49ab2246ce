"""Checkout and webhook reconciliation tests."""
from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from kwapps.app.billing import (
    AuthError,
    BillingAuditEventType,
    ConflictError,
    CreditReason,
    GatewayError,
    NotFoundError,
    PaymentSessionStatus,
    SubscriptionStatus,
    TrialStatus,
    ValidationError,
)


def _grants(repository, account_id: str):
    return [
        entry
        for entry in repository.ledger
        if entry.account_id == account_id and entry.reason == CreditReason.PURCHASE_GRANT
    ]


def test_start_checkout_creates_pending_session(billing):
    repository, gateway, _, event_logger, services = billing

    session = services.payments.start_checkout("acct-1", "pro")

    assert session.status == PaymentSessionStatus.PENDING
    assert session.amount == Decimal("38.000")
    assert session.currency == "KWD"
    assert session.redirect_url.startswith("https://billing.local/checkout/")
    assert gateway.created[0]["order_id"] == session.session_id
    assert gateway.created[0]["idempotency_key"] == session.session_id
    assert repository.get_payment_session_by_provider_id(session.provider_session_id) == session
    assert event_logger.events[-1].event_type == BillingAuditEventType.CHECKOUT_STARTED


def test_unknown_tier_fails_before_any_gateway_call(billing):
    repository, gateway, _, _, services = billing

    with pytest.raises(ValidationError):
        services.payments.start_checkout("acct-1", "platinum")

    assert gateway.created == []
    assert repository.sessions == {}


def test_gateway_failure_marks_session_failed(billing):
    repository, gateway, _, _, services = billing
    gateway.fail_creates = True

    with pytest.raises(GatewayError):
        services.payments.start_checkout("acct-1", "basic")

    (session,) = repository.sessions.values()
    assert session.status == PaymentSessionStatus.FAILED
    assert session.failure_reason


def test_successful_webhook_upgrades_tier_and_grants_credits(billing, clock):
    repository, gateway, _, event_logger, services = billing
    session = services.payments.start_checkout("acct-1", "premium")
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)

    result = services.payments.handle_webhook(body, signature)

    assert result.applied is True
    assert result.session.status == PaymentSessionStatus.SUCCEEDED
    account = repository.get_account("acct-1")
    assert account.tier_id == "premium"
    assert account.current_period_start == clock.now
    assert account.credit_balance == Decimal("350")
    assert len(_grants(repository, "acct-1")) == 1
    assert repository.audit_events[-1].event_type == BillingAuditEventType.PAYMENT_SUCCEEDED
    assert event_logger.events[-1].event_type == BillingAuditEventType.PAYMENT_SUCCEEDED


def test_duplicate_success_webhooks_grant_once(billing):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)

    results = [services.payments.handle_webhook(body, signature) for _ in range(5)]

    assert [result.applied for result in results] == [True, False, False, False, False]
    assert all(result.session.status == PaymentSessionStatus.SUCCEEDED for result in results)
    assert len(_grants(repository, "acct-1")) == 1
    assert repository.get_account("acct-1").credit_balance == Decimal("100")


def test_concurrent_duplicate_webhooks_grant_once(billing):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "enterprise")
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: services.payments.handle_webhook(body, signature), range(20)))

    assert sum(result.applied for result in results) == 1
    assert len(_grants(repository, "acct-1")) == 1
    assert repository.get_account("acct-1").credit_balance == Decimal("500")


def test_invalid_signature_is_rejected_without_mutation(billing):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")
    body, _ = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)

    with pytest.raises(AuthError):
        services.payments.handle_webhook(body, "0" * 64)
    with pytest.raises(AuthError):
        services.payments.handle_webhook(body, None)

    assert repository.get_payment_session(session.session_id).status == PaymentSessionStatus.PENDING
    assert repository.get_account("acct-1").tier_id is None
    assert _grants(repository, "acct-1") == []


@pytest.mark.parametrize("signature", ["café", "é" * 64])
def test_non_ascii_signature_is_an_auth_error(billing, signature):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")
    body = json.dumps({"order_id": session.session_id, "result": "CAPTURED"}).encode()

    with pytest.raises(AuthError):
        services.payments.handle_webhook(body, signature)

    assert repository.get_payment_session(session.session_id).status == PaymentSessionStatus.PENDING
    assert gateway.verify_webhook_signature(body, signature) is False


def test_malformed_webhook_body_is_a_validation_error(billing):
    _, gateway, _, _, services = billing
    body = b"not json"

    with pytest.raises(ValidationError):
        services.payments.handle_webhook(body, gateway.sign(body))


def test_webhook_for_unknown_session_is_not_found(billing):
    _, gateway, _, _, services = billing
    body = json.dumps({"order_id": "ps_missing", "result": "CAPTURED"}).encode()

    with pytest.raises(NotFoundError):
        services.payments.handle_webhook(body, gateway.sign(body))


def test_webhook_falls_back_to_order_id(billing):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")
    body = json.dumps({"order_id": session.session_id, "status": "success"}).encode()

    result = services.payments.handle_webhook(body, gateway.sign(body))

    assert result.applied is True
    assert repository.get_account("acct-1").tier_id == "basic"


def test_failed_webhook_notifies_and_absorbs_later_success(billing):
    repository, gateway, notifier, _, services = billing
    session = services.payments.start_checkout("acct-1", "pro")
    failed_body, failed_sig = gateway.settle(session.provider_session_id, PaymentSessionStatus.FAILED)

    first = services.payments.handle_webhook(failed_body, failed_sig)
    success_body, success_sig = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)
    second = services.payments.handle_webhook(success_body, success_sig)

    assert first.applied is True
    assert first.session.status == PaymentSessionStatus.FAILED
    assert second.applied is False
    assert second.session.status == PaymentSessionStatus.FAILED
    assert len(notifier.payment_failures) == 1
    assert repository.get_account("acct-1").tier_id is None


def test_failure_during_success_rolls_back_everything(billing, monkeypatch):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)

    def boom(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(repository, "apply_credit_delta", boom)

    with pytest.raises(RuntimeError):
        services.payments.handle_webhook(body, signature)

    assert repository.get_payment_session(session.session_id).status == PaymentSessionStatus.PENDING
    account = repository.get_account("acct-1")
    assert account.tier_id is None
    assert account.current_period_end is None

    monkeypatch.undo()
    retried = services.payments.handle_webhook(body, signature)
    assert retried.applied is True
    assert repository.get_account("acct-1").credit_balance == Decimal("100")


def test_purchase_converts_active_trial(billing):
    repository, gateway, _, _, services = billing
    services.trials.start_trial("acct-1")
    session = services.payments.start_checkout("acct-1", "pro")
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)

    services.payments.handle_webhook(body, signature)

    assert repository.get_trial("acct-1").status == TrialStatus.CONVERTED
    assert repository.get_account("acct-1").credit_balance == Decimal("300")
    assert services.trials.expire_trial("acct-1") is None


def test_refresh_session_status_reconciles_from_gateway(billing):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")

    unchanged = services.payments.refresh_session_status(session.session_id, account_id="acct-1")
    gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)
    refreshed = services.payments.refresh_session_status(session.session_id, account_id="acct-1")

    assert unchanged.status == PaymentSessionStatus.PENDING
    assert refreshed.status == PaymentSessionStatus.SUCCEEDED
    assert repository.get_account("acct-1").tier_id == "basic"


def test_get_session_hides_other_accounts(billing):
    _, _, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")

    assert services.payments.get_session(session.session_id, account_id="acct-1") == session
    with pytest.raises(NotFoundError):
        services.payments.get_session(session.session_id, account_id="acct-2")


def test_stale_sessions_expire_and_stay_expired(billing, clock):
    repository, gateway, _, _, services = billing
    session = services.payments.start_checkout("acct-1", "basic")
    clock.advance(minutes=30)
    fresh = services.payments.start_checkout("acct-2", "basic")
    clock.advance(minutes=31)

    assert services.payments.expire_stale_sessions() == 1
    assert repository.get_payment_session(session.session_id).status == PaymentSessionStatus.EXPIRED
    assert repository.get_payment_session(fresh.session_id).status == PaymentSessionStatus.PENDING

    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)
    late = services.payments.handle_webhook(body, signature)
    assert late.applied is False
    assert repository.get_account("acct-1").tier_id is None


def _purchase(services, gateway, account_id: str = "acct-1", tier_id: str = "basic"):
    session = services.payments.start_checkout(account_id, tier_id)
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.SUCCEEDED)
    services.payments.handle_webhook(body, signature)
    return session


def _fail(services, gateway, account_id: str = "acct-1", tier_id: str = "basic"):
    session = services.payments.start_checkout(account_id, tier_id)
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.FAILED)
    services.payments.handle_webhook(body, signature)
    return session


def test_purchase_activates_subscription(billing, clock):
    _, gateway, _, _, services = billing
    with pytest.raises(NotFoundError):
        services.payments.get_subscription("acct-1")

    _purchase(services, gateway, tier_id="pro")
    subscription = services.payments.get_subscription("acct-1")

    assert subscription.tier_id == "pro"
    assert subscription.subscription_status == SubscriptionStatus.ACTIVE
    assert subscription.cancel_at_period_end is False
    assert subscription.current_period_end == clock.now + timedelta(days=30)


def test_cancel_subscription_stops_renewal_once(billing, clock):
    repository, gateway, _, event_logger, services = billing
    _purchase(services, gateway)
    clock.advance(days=3)

    canceled = services.payments.cancel_subscription("acct-1")
    again = services.payments.cancel_subscription("acct-1")

    assert canceled.cancel_at_period_end is True
    assert canceled.canceled_at == clock.now
    assert canceled.tier_id == "basic"
    assert canceled.subscription_status == SubscriptionStatus.ACTIVE
    assert again == canceled
    cancellations = [
        event for event in repository.audit_events
        if event.event_type == BillingAuditEventType.SUBSCRIPTION_CANCELED
    ]
    assert len(cancellations) == 1
    assert event_logger.events[-1].event_type == BillingAuditEventType.SUBSCRIPTION_CANCELED


def test_cancel_without_subscription_is_not_found(billing):
    repository, _, _, _, services = billing
    repository.ensure_account("acct-1")

    with pytest.raises(NotFoundError):
        services.payments.cancel_subscription("acct-1")
    with pytest.raises(NotFoundError):
        services.payments.cancel_subscription("ghost")


def test_repeated_failed_payments_mark_subscription_past_due(billing):
    repository, gateway, _, event_logger, services = billing
    _purchase(services, gateway)

    for _ in range(2):
        _fail(services, gateway)
    assert repository.get_account("acct-1").subscription_status == SubscriptionStatus.ACTIVE
    assert repository.get_account("acct-1").failed_payment_attempts == 2

    _fail(services, gateway)
    account = repository.get_account("acct-1")
    assert account.subscription_status == SubscriptionStatus.PAST_DUE
    assert account.failed_payment_attempts == 3
    assert BillingAuditEventType.SUBSCRIPTION_PAST_DUE in [event.event_type for event in event_logger.events]

    _purchase(services, gateway)
    renewed = repository.get_account("acct-1")
    assert renewed.subscription_status == SubscriptionStatus.ACTIVE
    assert renewed.failed_payment_attempts == 0


def test_failed_payment_without_subscription_leaves_counters(billing):
    repository, gateway, _, _, services = billing

    _fail(services, gateway)

    account = repository.get_account("acct-1")
    assert account.subscription_status is None
    assert account.failed_payment_attempts == 0


def test_duplicate_failure_webhooks_count_once(billing):
    repository, gateway, _, _, services = billing
    _purchase(services, gateway)
    session = services.payments.start_checkout("acct-1", "basic")
    body, signature = gateway.settle(session.provider_session_id, PaymentSessionStatus.FAILED)

    for _ in range(3):
        services.payments.handle_webhook(body, signature)

    assert repository.get_account("acct-1").failed_payment_attempts == 1


def test_refund_reverses_grant_and_ends_subscription(billing):
    repository, gateway, _, event_logger, services = billing
    session = _purchase(services, gateway, tier_id="pro")
    services.credits.debit("acct-1", Decimal("50"))

    refunded = services.payments.refund_payment(session.session_id, reason="requested_by_customer")

    assert refunded.status == PaymentSessionStatus.REFUNDED
    assert refunded.refund_id == gateway.refunds[0]["refund_id"]
    assert gateway.refunds[0]["order_id"] == session.session_id
    assert gateway.refunds[0]["amount"] == Decimal("38")
    account = repository.get_account("acct-1")
    assert account.tier_id is None
    assert account.subscription_status == SubscriptionStatus.CANCELED
    assert account.credit_balance == Decimal("0")
    refunds = [entry for entry in repository.ledger if entry.reason == CreditReason.REFUND]
    assert [entry.delta for entry in refunds] == [Decimal("-250")]
    assert event_logger.events[-1].event_type == BillingAuditEventType.PAYMENT_REFUNDED
    assert event_logger.events[-1].metadata["reason"] == "requested_by_customer"


def test_refund_caps_reversal_at_allotment(billing):
    repository, gateway, _, _, services = billing
    services.trials.start_trial("acct-1")
    session = _purchase(services, gateway, tier_id="basic")

    services.payments.refund_payment(session.session_id, reason="duplicate")

    # Trial credits stay; only the purchase grant is reversed.
    assert repository.get_account("acct-1").credit_balance == Decimal("100")


def test_refund_is_once_and_only_for_captured_payments(billing):
    repository, gateway, _, _, services = billing
    session = _purchase(services, gateway)
    pending = services.payments.start_checkout("acct-1", "pro")

    services.payments.refund_payment(session.session_id, reason="duplicate")
    with pytest.raises(ConflictError):
        services.payments.refund_payment(session.session_id, reason="duplicate")
    with pytest.raises(ValidationError):
        services.payments.refund_payment(pending.session_id, reason="duplicate")
    with pytest.raises(NotFoundError):
        services.payments.refund_payment(session.session_id, reason="duplicate", account_id="acct-2")

    assert len(gateway.refunds) == 1
    assert len([entry for entry in repository.ledger if entry.reason == CreditReason.REFUND]) == 1


def test_refund_gateway_failure_changes_nothing(billing, monkeypatch):
    repository, gateway, _, _, services = billing
    session = _purchase(services, gateway)

    def unavailable(*args, **kwargs):
        raise GatewayError("UPayments returned 503", retryable=True)

    monkeypatch.setattr(gateway, "create_refund", unavailable)

    with pytest.raises(GatewayError):
        services.payments.refund_payment(session.session_id, reason="duplicate")

    assert repository.get_payment_session(session.session_id).status == PaymentSessionStatus.SUCCEEDED
    assert repository.get_account("acct-1").tier_id == "basic"
    assert repository.get_account("acct-1").credit_balance == Decimal("100")


def test_payment_history_is_per_account_newest_first(billing, clock):
    _, gateway, _, _, services = billing
    first = _purchase(services, gateway)
    clock.advance(minutes=5)
    second = services.payments.start_checkout("acct-1", "pro")
    services.payments.start_checkout("acct-2", "basic")

    history = services.payments.payment_history("acct-1")

    assert [session.session_id for session in history] == [second.session_id, first.session_id]
    assert [session.session_id for session in services.payments.payment_history("acct-1", limit=1)] == [
        second.session_id
    ]
