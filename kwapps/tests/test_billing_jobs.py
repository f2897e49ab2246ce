"""Scheduled job tests: rollover, daily bonus, trial expiry, metrics."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from kwapps.app.billing import (
    BillingAuditEventType,
    CreditReason,
    SubscriptionStatus,
    TrialStatus,
    get_job_metrics,
    periods_elapsed,
    run_job,
)
from kwapps.app.billing import jobs as billing_jobs

PERIOD = timedelta(days=30)
END = datetime(2025, 1, 31, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("now", "expected"),
    [
        (END - timedelta(seconds=1), 0),
        (END, 1),
        (END + timedelta(days=29, hours=23), 1),
        (END + PERIOD, 2),
        (END + timedelta(days=95), 4),
    ],
)
def test_periods_elapsed(now, expected):
    assert periods_elapsed(END, now, PERIOD) == expected


def test_periods_elapsed_rejects_empty_period():
    with pytest.raises(ValueError):
        periods_elapsed(END, END, timedelta(0))


def _subscribed(
    repository,
    services,
    clock,
    *,
    tier_id="basic",
    ended_ago=timedelta(days=1),
    balance="0",
    status=SubscriptionStatus.ACTIVE,
    cancel_at_period_end=False,
):
    repository.ensure_account("acct-1")
    end = clock.now - ended_ago
    repository.update_account_tier("acct-1", tier_id=tier_id, period_start=end - PERIOD, period_end=end)
    repository.update_subscription(
        "acct-1",
        status=status,
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=None,
        failed_payment_attempts=0,
    )
    if Decimal(balance) > 0:
        services.credits.credit("acct-1", Decimal(balance), CreditReason.PURCHASE_GRANT)
    return end


def _entries(repository, reason):
    return [entry for entry in repository.ledger if entry.reason == reason]


def test_rollover_caps_balance_and_grants_allotment_once(billing, clock):
    repository, _, _, _, services = billing
    old_end = _subscribed(repository, services, clock, balance="80")

    first = services.jobs.run_period_rollover()
    second = services.jobs.run_period_rollover()

    assert first.processed == 1 and first.success
    assert second.processed == 0
    account = repository.get_account("acct-1")
    assert account.credit_balance == Decimal("150")
    assert account.current_period_start == old_end
    assert account.current_period_end == old_end + PERIOD
    assert [entry.delta for entry in _entries(repository, CreditReason.ROLLOVER_FORFEIT)] == [Decimal("-30")]
    assert len(_entries(repository, CreditReason.ROLLOVER_GRANT)) == 1


def test_rollover_handles_several_missed_periods(billing, clock):
    repository, _, _, _, services = billing
    old_end = _subscribed(repository, services, clock, ended_ago=timedelta(days=65))

    result = services.jobs.run_period_rollover()

    assert result.processed == 1
    account = repository.get_account("acct-1")
    assert account.credit_balance == Decimal("150")
    assert account.current_period_end == old_end + 3 * PERIOD
    assert account.current_period_start <= clock.now < account.current_period_end
    assert len(_entries(repository, CreditReason.ROLLOVER_GRANT)) == 3
    assert len(_entries(repository, CreditReason.ROLLOVER_FORFEIT)) == 2


def test_rollover_skips_account_with_foreign_lease(billing, clock):
    repository, _, _, _, services = billing
    _subscribed(repository, services, clock, balance="10")
    repository.acquire_job_lease(
        "period-rollover",
        "acct-1",
        holder="other-worker",
        now=clock.now,
        expires_at=clock.now + timedelta(minutes=5),
    )

    result = services.jobs.run_period_rollover()

    assert result.skipped == 1
    assert result.processed == 0
    assert repository.get_account("acct-1").credit_balance == Decimal("10")


def test_rollover_ends_subscription_canceled_at_period_end(billing, clock):
    repository, _, _, event_logger, services = billing
    old_end = _subscribed(repository, services, clock, balance="80", cancel_at_period_end=True)

    result = services.jobs.run_period_rollover()
    again = services.jobs.run_period_rollover()

    assert result.processed == 1
    assert again.processed == 0
    account = repository.get_account("acct-1")
    assert account.tier_id is None
    assert account.subscription_status == SubscriptionStatus.CANCELED
    assert account.cancel_at_period_end is False
    assert account.current_period_end == old_end
    assert account.credit_balance == Decimal("80")
    assert _entries(repository, CreditReason.ROLLOVER_GRANT) == []
    assert [event.event_type for event in event_logger.events] == [BillingAuditEventType.SUBSCRIPTION_ENDED]


def test_rollover_does_not_renew_past_due_subscription(billing, clock):
    repository, _, _, _, services = billing
    _subscribed(repository, services, clock, status=SubscriptionStatus.PAST_DUE, ended_ago=timedelta(days=40))

    result = services.jobs.run_period_rollover()

    assert result.processed == 1
    account = repository.get_account("acct-1")
    assert account.tier_id is None
    assert account.subscription_status == SubscriptionStatus.PAST_DUE
    assert account.credit_balance == Decimal("0")
    assert _entries(repository, CreditReason.ROLLOVER_GRANT) == []
    # Without a tier the account no longer earns the daily bonus.
    assert services.jobs.run_daily_bonus().processed == 0


def test_canceled_subscription_keeps_plan_until_period_end(billing, clock):
    repository, _, _, _, services = billing
    _subscribed(repository, services, clock, ended_ago=-timedelta(days=10), cancel_at_period_end=True)

    assert services.jobs.run_period_rollover().processed == 0
    assert repository.get_account("acct-1").tier_id == "basic"

    clock.advance(days=10)
    assert services.jobs.run_period_rollover().processed == 1
    assert repository.get_account("acct-1").tier_id is None


def test_daily_bonus_job_pays_each_eligible_account_once_per_day(billing, clock):
    repository, _, _, _, services = billing
    _subscribed(repository, services, clock, ended_ago=-PERIOD)
    services.trials.start_trial("acct-trial")
    repository.ensure_account("acct-free")

    first = services.jobs.run_daily_bonus()
    again = services.jobs.run_daily_bonus()

    assert first.processed == 2
    assert again.processed == 0
    assert again.skipped == 2
    assert services.credits.get_balance("acct-1") == Decimal("5")
    assert services.credits.get_balance("acct-trial") == Decimal("105")
    assert services.credits.get_balance("acct-free") == Decimal("0")

    clock.advance(days=1)
    next_day = services.jobs.run_daily_bonus()
    assert next_day.processed == 2


def test_trial_expiry_job_warns_once_then_expires(billing, clock):
    repository, _, notifier, _, services = billing
    started = clock.now
    services.trials.start_trial("acct-1")
    clock.advance(days=2)
    services.trials.start_trial("acct-2")

    clock.now = started + timedelta(days=6, hours=13)
    warn_run = services.jobs.run_trial_expiry()
    services.jobs.run_trial_expiry()

    assert warn_run.processed == 0
    assert [trial.account_id for trial in notifier.trials_expiring] == ["acct-1"]

    clock.now = started + timedelta(days=7, hours=1)
    expiry_run = services.jobs.run_trial_expiry()

    assert expiry_run.processed == 1
    assert repository.get_trial("acct-1").status == TrialStatus.EXPIRED
    assert repository.get_trial("acct-2").status == TrialStatus.ACTIVE
    assert services.credits.get_balance("acct-1") == Decimal("0")
    assert services.credits.get_balance("acct-2") == Decimal("100")


def test_trial_expiry_job_clears_warning_leases_of_ended_trials(billing, clock):
    repository, _, notifier, _, services = billing
    started = clock.now
    services.trials.start_trial("acct-1")

    clock.now = started + timedelta(days=6, hours=13)
    services.jobs.run_trial_expiry()
    assert ("trial-expiry-warning", "acct-1") in repository.leases

    clock.now = started + timedelta(days=7, hours=1)
    result = services.jobs.run_trial_expiry()

    assert result.success is True
    assert repository.leases == {}
    assert len(notifier.trials_expiring) == 1


def test_lease_cleanup_failure_is_reported(billing, monkeypatch):
    repository, _, _, _, services = billing

    def broken(now):
        raise RuntimeError("lock timeout")

    monkeypatch.setattr(repository, "purge_expired_job_leases", broken)
    result = services.jobs.run_trial_expiry()

    assert result.success is False
    assert "lock timeout" in result.errors[0]


def test_unit_failure_is_reported_not_raised(billing, clock, monkeypatch):
    repository, _, _, _, services = billing
    services.trials.start_trial("acct-1")
    clock.advance(days=8)

    def broken(account_id):
        raise RuntimeError("database went away")

    monkeypatch.setattr(services.trials, "expire_trial", broken)
    result = services.jobs.run_trial_expiry()

    assert result.success is False
    assert result.errors and "database went away" in result.errors[0]
    assert repository.leases == {}


def test_run_job_records_metrics(billing):
    _, _, _, _, services = billing
    billing_jobs._reset_metrics_for_testing()

    result = run_job(services.jobs, "daily-bonus")

    metrics = get_job_metrics()["daily-bonus"]
    assert result.success is True
    assert metrics["runs"] == 1
    assert metrics["last_success_at"] == result.completed_at
    assert metrics["last_error"] is None


def test_run_job_records_crashes(billing, monkeypatch):
    _, _, _, _, services = billing
    billing_jobs._reset_metrics_for_testing()

    def crash(*, now=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(services.jobs, "run_period_rollover", crash)
    result = run_job(services.jobs, "period-rollover")

    metrics = get_job_metrics()["period-rollover"]
    assert result.success is False
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: boom"


def test_run_job_rejects_unknown_names(billing):
    _, _, _, _, services = billing

    with pytest.raises(ValueError):
        run_job(services.jobs, "make-money")
