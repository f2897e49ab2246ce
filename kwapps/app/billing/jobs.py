"""Periodic billing jobs: trial expiry, daily bonus, period rollover."""
from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, Optional
from uuid import uuid4

from .catalog import TierCatalog
from .credits import CreditService, billing_date
from .models import (
    Account,
    BillingAuditEvent,
    BillingAuditEventType,
    CreditReason,
    JobRunResult,
    SubscriptionStatus,
)
from .payments import PaymentService
from .protocols import BillingEventLogger, BillingNotifier, BillingRepository
from .trials import TrialService

logger = logging.getLogger(__name__)

JOB_TRIAL_EXPIRY = "trial-expiry"
JOB_DAILY_BONUS = "daily-bonus"
JOB_PERIOD_ROLLOVER = "period-rollover"
JOB_SESSION_EXPIRY = "session-expiry"
JOB_NAMES = (JOB_TRIAL_EXPIRY, JOB_DAILY_BONUS, JOB_PERIOD_ROLLOVER, JOB_SESSION_EXPIRY)

TRIAL_WARNING_WINDOW = timedelta(hours=24)
_TRIAL_WARNING_LEASE = "trial-expiry-warning"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def periods_elapsed(period_end: datetime, now: datetime, period_length: timedelta) -> int:
    """Number of whole billing periods that have ended by ``now``.

    A period ending exactly at ``now`` counts as ended.
    """

    if period_length <= timedelta(0):
        raise ValueError("period_length must be positive")
    if now < period_end:
        return 0
    return (now - period_end) // period_length + 1


class _Skipped(Exception):
    """Raised inside a unit that had nothing to do."""


@dataclass
class BillingJobs:
    """Runs each job as independent per-account units guarded by leases."""

    repository: BillingRepository
    catalog: TierCatalog
    credits: CreditService
    trials: TrialService
    payments: PaymentService
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    billing_period_days: int = 30
    rollover_percentage: float = 0.5
    timezone_name: str = "Asia/Kuwait"
    lease_seconds: int = 300
    holder: str = field(default_factory=_default_holder)
    clock: Callable[[], datetime] = field(default=_utcnow)

    def run(self, job_name: str, *, now: Optional[datetime] = None) -> JobRunResult:
        runners = {
            JOB_TRIAL_EXPIRY: self.run_trial_expiry,
            JOB_DAILY_BONUS: self.run_daily_bonus,
            JOB_PERIOD_ROLLOVER: self.run_period_rollover,
            JOB_SESSION_EXPIRY: self.run_session_expiry,
        }
        try:
            runner = runners[job_name]
        except KeyError:
            raise ValueError(f"Unknown job: {job_name}") from None
        return runner(now=now)

    def _unit(
        self,
        result: JobRunResult,
        account_id: str,
        now: datetime,
        work: Callable[[], None],
    ) -> None:
        acquired = self.repository.acquire_job_lease(
            result.job,
            account_id,
            holder=self.holder,
            now=now,
            expires_at=now + timedelta(seconds=self.lease_seconds),
        )
        if not acquired:
            result.skipped += 1
            return
        try:
            work()
            result.processed += 1
        except _Skipped:
            result.skipped += 1
        except Exception as exc:
            logger.exception("%s failed for account %s", result.job, account_id)
            result.errors.append(f"{account_id}: {type(exc).__name__}: {exc}")
        finally:
            self.repository.release_job_lease(result.job, account_id, holder=self.holder)

    def _finish(self, result: JobRunResult) -> JobRunResult:
        result.success = not result.errors
        result.completed_at = self.clock()
        return result

    def run_trial_expiry(self, *, now: Optional[datetime] = None) -> JobRunResult:
        moment = now or self.clock()
        result = JobRunResult(job=JOB_TRIAL_EXPIRY, started_at=moment)

        for trial in self.repository.list_trials_expiring_between(moment, moment + TRIAL_WARNING_WINDOW):
            # The warning lease lives until the trial ends, so each trial is warned once.
            warned = self.repository.acquire_job_lease(
                _TRIAL_WARNING_LEASE,
                trial.account_id,
                holder=f"warning:{uuid4().hex}",
                now=moment,
                expires_at=trial.expires_at,
            )
            if not warned:
                continue
            try:
                self.notifier.notify_trial_expiring(trial)
            except Exception:
                logger.exception("Trial expiry warning failed for %s", trial.account_id)

        for trial in self.repository.list_trials_due(moment):
            def expire(account_id: str = trial.account_id) -> None:
                if self.trials.expire_trial(account_id) is None:
                    raise _Skipped()

            self._unit(result, trial.account_id, moment, expire)

        # Warning leases outlive their trials; clear them with any other stale lease.
        try:
            purged = self.repository.purge_expired_job_leases(moment)
        except Exception as exc:
            logger.exception("Expired job lease cleanup failed")
            result.errors.append(f"lease-cleanup: {type(exc).__name__}: {exc}")
        else:
            if purged:
                logger.debug("Purged %s expired job lease(s)", purged)

        return self._finish(result)

    def run_daily_bonus(self, *, now: Optional[datetime] = None) -> JobRunResult:
        moment = now or self.clock()
        today = billing_date(moment, self.timezone_name)
        result = JobRunResult(job=JOB_DAILY_BONUS, started_at=moment)

        for account in self.repository.list_bonus_candidates(moment):
            if account.last_bonus_date is not None and account.last_bonus_date >= today:
                result.skipped += 1
                continue

            def grant(account=account) -> None:
                tier = self.credits.eligible_bonus_tier(account, moment)
                if tier is None or tier.daily_bonus_credits <= 0:
                    raise _Skipped()
                if self.credits.grant_daily_bonus(account.account_id, tier, today) is None:
                    raise _Skipped()

            self._unit(result, account.account_id, moment, grant)

        return self._finish(result)

    def run_period_rollover(self, *, now: Optional[datetime] = None) -> JobRunResult:
        moment = now or self.clock()
        result = JobRunResult(job=JOB_PERIOD_ROLLOVER, started_at=moment)

        for account in self.repository.list_accounts_due_for_rollover(moment):
            def roll(account_id: str = account.account_id) -> None:
                if not self._rollover_account(account_id, moment):
                    raise _Skipped()

            self._unit(result, account.account_id, moment, roll)

        return self._finish(result)

    def run_session_expiry(self, *, now: Optional[datetime] = None) -> JobRunResult:
        moment = now or self.clock()
        result = JobRunResult(job=JOB_SESSION_EXPIRY, started_at=moment)
        try:
            result.processed = self.payments.expire_stale_sessions(moment)
        except Exception as exc:
            logger.exception("Stale checkout expiry failed")
            result.errors.append(f"{type(exc).__name__}: {exc}")
        return self._finish(result)

    def _rollover_account(self, account_id: str, now: datetime) -> bool:
        length = timedelta(days=self.billing_period_days)
        with self.repository.transaction() as tx:
            account = tx.lock_account(account_id)
            if account is None or not account.tier_id or account.current_period_end is None:
                return False
            periods = periods_elapsed(account.current_period_end, now, length)
            if periods == 0:
                return False
            if not account.renews_at_period_end:
                event = self._end_subscription(tx, account, now)
                ended = True
            else:
                event = self._renew_periods(tx, account, periods, now)
                if event is None:
                    return False
                ended = False

        self.event_logger.log(event)
        if ended:
            logger.info("Subscription for %s ended with its period", account_id)
        else:
            logger.info("Rolled over %s period(s) for %s", periods, account_id)
        return True

    def _end_subscription(self, tx: BillingRepository, account: Account, now: datetime) -> BillingAuditEvent:
        # Past-due accounts keep that status so the UI can ask for payment.
        status = (
            SubscriptionStatus.PAST_DUE
            if account.subscription_status == SubscriptionStatus.PAST_DUE
            else SubscriptionStatus.CANCELED
        )
        tx.update_account_tier(
            account.account_id,
            tier_id=None,
            period_start=account.current_period_start,
            period_end=account.current_period_end,
        )
        tx.update_subscription(
            account.account_id,
            status=status,
            cancel_at_period_end=False,
            canceled_at=account.canceled_at or now,
            failed_payment_attempts=account.failed_payment_attempts,
        )
        event = BillingAuditEvent(
            event_type=BillingAuditEventType.SUBSCRIPTION_ENDED,
            account_id=account.account_id,
            metadata={
                "tier_id": account.tier_id or "",
                "status": status.value,
                "period_end": account.current_period_end.isoformat() if account.current_period_end else "",
            },
            occurred_at=now,
        )
        tx.record_audit_event(event)
        return event

    def _renew_periods(
        self,
        tx: BillingRepository,
        account: Account,
        periods: int,
        now: datetime,
    ) -> Optional[BillingAuditEvent]:
        account_id = account.account_id
        length = timedelta(days=self.billing_period_days)
        tier = self.catalog.get_tier(account.tier_id)
        if tier is None:
            raise LookupError(f"Tier {account.tier_id} missing from catalog")

        new_start = account.current_period_end + length * (periods - 1)
        advanced = tx.advance_billing_period(
            account_id,
            expected_period_end=account.current_period_end,
            period_start=new_start,
            period_end=new_start + length,
        )
        if advanced is None:
            return None

        allotment = tier.credits_per_period
        cap = (allotment * Decimal(str(self.rollover_percentage))).quantize(Decimal("0.01"))
        balance = account.credit_balance
        for index in range(periods):
            period_meta = {
                "tier_id": tier.tier_id,
                "period_index": str(index + 1),
                "periods": str(periods),
            }
            if balance > cap:
                entry = tx.apply_credit_delta(
                    account_id,
                    cap - balance,
                    CreditReason.ROLLOVER_FORFEIT,
                    metadata=period_meta,
                )
                if entry is None:
                    raise RuntimeError(f"Rollover forfeit failed for {account_id}")
                balance = entry.balance_after
            if allotment > 0:
                entry = tx.apply_credit_delta(
                    account_id,
                    allotment,
                    CreditReason.ROLLOVER_GRANT,
                    metadata=period_meta,
                )
                if entry is None:
                    raise RuntimeError(f"Rollover grant failed for {account_id}")
                balance = entry.balance_after

        event = BillingAuditEvent(
            event_type=BillingAuditEventType.PERIOD_ROLLED_OVER,
            account_id=account_id,
            metadata={
                "tier_id": tier.tier_id,
                "periods": str(periods),
                "balance_after": str(balance),
                "period_end": advanced.current_period_end.isoformat(),
            },
            occurred_at=now,
        )
        tx.record_audit_event(event)
        return event


_metrics_lock = Lock()
_JOB_METRICS: Dict[str, Dict[str, object]] = {
    name: {
        "runs": 0,
        "processed": 0,
        "skipped": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }
    for name in JOB_NAMES
}


def _record_run(result: JobRunResult) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[result.job]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["processed"] = int(metrics.get("processed", 0)) + result.processed
        metrics["skipped"] = int(metrics.get("skipped", 0)) + result.skipped
        metrics["last_run_at"] = result.started_at
        if result.success:
            metrics["last_success_at"] = result.completed_at
            metrics["last_error"] = None
        else:
            metrics["failures"] = int(metrics.get("failures", 0)) + 1
            metrics["last_error"] = result.errors[-1] if result.errors else None


def _record_crash(job_name: str, started_at: datetime, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job_name]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_run_at"] = started_at
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def run_job(jobs: BillingJobs, job_name: str, *, now: Optional[datetime] = None) -> JobRunResult:
    """Run ``job_name`` and record its outcome in the process-wide metrics."""

    if job_name not in _JOB_METRICS:
        raise ValueError(f"Unknown job: {job_name}")

    started_at = now or jobs.clock()
    try:
        result = jobs.run(job_name, now=now)
    except Exception as exc:
        logger.exception("Billing job %s crashed", job_name)
        _record_crash(job_name, started_at, exc)
        return JobRunResult(
            job=job_name,
            success=False,
            errors=[f"{type(exc).__name__}: {exc}"],
            started_at=started_at,
            completed_at=jobs.clock(),
        )

    _record_run(result)
    log = logger.info if result.success else logger.warning
    log(
        "Billing job %s finished: processed=%s skipped=%s errors=%s",
        job_name,
        result.processed,
        result.skipped,
        len(result.errors),
    )
    return result


def get_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        return {name: dict(values) for name, values in _JOB_METRICS.items()}


def _reset_metrics_for_testing() -> None:
    with _metrics_lock:
        for metrics in _JOB_METRICS.values():
            metrics.update(
                {
                    "runs": 0,
                    "processed": 0,
                    "skipped": 0,
                    "failures": 0,
                    "last_run_at": None,
                    "last_success_at": None,
                    "last_error": None,
                }
            )


__all__ = [
    "BillingJobs",
    "JOB_DAILY_BONUS",
    "JOB_NAMES",
    "JOB_PERIOD_ROLLOVER",
    "JOB_SESSION_EXPIRY",
    "JOB_TRIAL_EXPIRY",
    "get_job_metrics",
    "periods_elapsed",
    "run_job",
]
