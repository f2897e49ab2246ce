"""Application wiring for the billing services."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingJobs,
    BillingNotifier,
    BillingRepository,
    CreditService,
    PaymentGateway,
    PaymentService,
    PaymentSession,
    TierCatalog,
    TrialGrant,
    TrialService,
)
from ..billing.repository import PostgresBillingRepository
from ..payments import (
    BillingConfig,
    GatewayConfig,
    LocalSandboxGateway,
    UPaymentsClient,
    load_billing_config,
    load_gateway_config,
)


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failed(self, session: PaymentSession) -> None:
        logger.warning(
            "Payment failed for account %s session=%s tier=%s reason=%s",
            session.account_id,
            session.session_id,
            session.tier_id,
            session.failure_reason,
        )

    def notify_trial_expiring(self, trial: TrialGrant) -> None:
        logger.info(
            "Trial for account %s expires at %s",
            trial.account_id,
            trial.expires_at.isoformat(),
        )

    def notify_trial_expired(self, trial: TrialGrant) -> None:
        logger.info("Trial expired for account %s tier=%s", trial.account_id, trial.tier_id)


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s account=%s session=%s metadata=%s",
            event.event_type.value,
            event.account_id,
            event.session_id,
            event.metadata,
        )


@dataclass
class BillingServices:
    """Everything the billing routes and scheduler need, built once per process."""

    catalog: TierCatalog
    credits: CreditService
    trials: TrialService
    payments: PaymentService
    jobs: BillingJobs
    config: BillingConfig


def create_gateway(config: GatewayConfig) -> PaymentGateway:
    if config.provider_name == "local":
        logger.info("Using local sandbox payment gateway")
        return LocalSandboxGateway(webhook_secret=config.webhook_secret or "local-sandbox-secret")
    if config.provider_name != "upayments":
        raise ValueError(f"Unsupported payment provider: {config.provider_name}")
    return UPaymentsClient(config)


def build_billing_services(
    repository: BillingRepository,
    gateway: PaymentGateway,
    config: BillingConfig,
    *,
    notifier: Optional[BillingNotifier] = None,
    event_logger: Optional[BillingEventLogger] = None,
) -> BillingServices:
    notifier = notifier or LoggingBillingNotifier()
    event_logger = event_logger or LoggingBillingEventLogger()
    catalog = TierCatalog(repository)
    credits = CreditService(repository=repository, catalog=catalog, timezone_name=config.timezone)
    trials = TrialService(
        repository=repository,
        catalog=catalog,
        credits=credits,
        notifier=notifier,
        event_logger=event_logger,
        trial_tier=config.trial_tier,
        duration_days=config.trial_duration_days,
    )
    payments = PaymentService(
        repository=repository,
        gateway=gateway,
        catalog=catalog,
        credits=credits,
        notifier=notifier,
        event_logger=event_logger,
        billing_period_days=config.billing_period_days,
        session_ttl_minutes=config.checkout_session_ttl_minutes,
    )
    jobs = BillingJobs(
        repository=repository,
        catalog=catalog,
        credits=credits,
        trials=trials,
        payments=payments,
        notifier=notifier,
        event_logger=event_logger,
        billing_period_days=config.billing_period_days,
        rollover_percentage=config.rollover_percentage,
        timezone_name=config.timezone,
        lease_seconds=config.job_lease_seconds,
    )
    return BillingServices(
        catalog=catalog,
        credits=credits,
        trials=trials,
        payments=payments,
        jobs=jobs,
        config=config,
    )


@lru_cache(maxsize=1)
def get_billing_services() -> BillingServices:
    return build_billing_services(
        PostgresBillingRepository(),
        create_gateway(load_gateway_config()),
        load_billing_config(),
    )


__all__ = [
    "BillingServices",
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "build_billing_services",
    "create_gateway",
    "get_billing_services",
]
