"""Shared fakes for the billing test-suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from kwapps.app.billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    InMemoryBillingRepository,
    PaymentSession,
    TrialGrant,
)
from kwapps.app.payments import BillingConfig, LocalSandboxGateway
from kwapps.app.services.billing import build_billing_services


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.payment_failures: List[PaymentSession] = []
        self.trials_expiring: List[TrialGrant] = []
        self.trials_expired: List[TrialGrant] = []

    def notify_payment_failed(self, session: PaymentSession) -> None:
        self.payment_failures.append(session)

    def notify_trial_expiring(self, trial: TrialGrant) -> None:
        self.trials_expiring.append(trial)

    def notify_trial_expired(self, trial: TrialGrant) -> None:
        self.trials_expired.append(trial)


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


def make_billing_config(**overrides) -> BillingConfig:
    values = dict(
        trial_duration_days=7,
        trial_tier="basic",
        billing_period_days=30,
        rollover_percentage=0.5,
        timezone="Asia/Kuwait",
        checkout_session_ttl_minutes=60,
        job_lease_seconds=300,
        cron_secret="cron-secret",
        scheduler_enabled=False,
    )
    values.update(overrides)
    return BillingConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


def wire_billing():
    """Fully wired services over the in-memory repository and sandbox gateway."""

    repository = InMemoryBillingRepository()
    gateway = LocalSandboxGateway(webhook_secret="whsec_test")
    notifier = FakeNotifier()
    event_logger = FakeEventLogger()
    services = build_billing_services(
        repository,
        gateway,
        make_billing_config(),
        notifier=notifier,
        event_logger=event_logger,
    )
    return repository, gateway, notifier, event_logger, services


@pytest.fixture
def billing(clock):
    repository, gateway, notifier, event_logger, services = wire_billing()
    for component in (services.credits, services.trials, services.payments, services.jobs):
        component.clock = clock
    return repository, gateway, notifier, event_logger, services


@pytest.fixture
def live_billing():
    """Same wiring on the wall clock, for HTTP tests."""

    return wire_billing()
