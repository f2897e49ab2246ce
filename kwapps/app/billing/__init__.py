"""Billing domain package: tiers, credits, trials, payments and periodic jobs."""

from .catalog import DEFAULT_TIERS, TierCatalog
from .credits import CreditService, billing_date
from .exceptions import (
    AlreadyTrialedError,
    AuthError,
    BillingError,
    ConflictError,
    GatewayError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from .jobs import BillingJobs, JOB_NAMES, get_job_metrics, periods_elapsed, run_job
from .memory import InMemoryBillingRepository
from .models import (
    Account,
    BillingAuditEvent,
    BillingAuditEventType,
    BonusClaim,
    CREDIT_COSTS,
    CreditBalance,
    CreditLedgerEntry,
    CreditReason,
    JobRunResult,
    MAX_FAILED_PAYMENT_ATTEMPTS,
    OperationType,
    PaymentSession,
    PaymentSessionStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TrialGrant,
    TrialStatus,
    WebhookNotification,
    WebhookResult,
)
from .payments import PaymentService
from .protocols import (
    BillingEventLogger,
    BillingNotifier,
    BillingRepository,
    GatewaySession,
    PaymentGateway,
)
from .trials import TrialService

__all__ = [
    "Account",
    "AlreadyTrialedError",
    "AuthError",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingJobs",
    "BillingNotifier",
    "BillingRepository",
    "BonusClaim",
    "CREDIT_COSTS",
    "ConflictError",
    "CreditBalance",
    "CreditLedgerEntry",
    "CreditReason",
    "CreditService",
    "DEFAULT_TIERS",
    "GatewayError",
    "GatewaySession",
    "InMemoryBillingRepository",
    "InsufficientCreditsError",
    "JOB_NAMES",
    "JobRunResult",
    "MAX_FAILED_PAYMENT_ATTEMPTS",
    "NotFoundError",
    "OperationType",
    "PaymentGateway",
    "PaymentService",
    "PaymentSession",
    "PaymentSessionStatus",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TierCatalog",
    "TrialGrant",
    "TrialService",
    "TrialStatus",
    "ValidationError",
    "WebhookNotification",
    "WebhookResult",
    "billing_date",
    "get_job_metrics",
    "periods_elapsed",
    "run_job",
]
