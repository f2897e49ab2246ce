"""In-process scheduler running the billing jobs on daemon threads."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from .app.billing import BillingJobs, run_job
from .app.billing.jobs import (
    JOB_DAILY_BONUS,
    JOB_PERIOD_ROLLOVER,
    JOB_SESSION_EXPIRY,
    JOB_TRIAL_EXPIRY,
)

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_workers: Dict[str, "_JobWorker"] = {}

HOUR = 60 * 60
DAY = 24 * HOUR


class _JobWorker(Thread):
    def __init__(self, jobs: BillingJobs, job_name: str, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name=f"billing-{job_name}")
        self.jobs = jobs
        self.job_name = job_name
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            # run_job logs and records its own failures.
            run_job(self.jobs, self.job_name)
            if self._stop.wait(self._interval):
                break


def seconds_until_local_midnight(timezone_name: str, *, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next midnight in ``timezone_name``."""

    current = (now or datetime.now(timezone.utc)).astimezone(ZoneInfo(timezone_name))
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    return max((midnight - current).total_seconds(), 0.0)


def start_billing_scheduler(jobs: BillingJobs) -> None:
    with _scheduler_lock:
        if _workers:
            return
        bonus_delay = seconds_until_local_midnight(jobs.timezone_name)
        schedule = {
            JOB_DAILY_BONUS: (bonus_delay, DAY),
            JOB_PERIOD_ROLLOVER: (60.0, HOUR),
            JOB_TRIAL_EXPIRY: (90.0, HOUR),
            JOB_SESSION_EXPIRY: (120.0, 15 * 60),
        }
        for job_name, (delay, interval) in schedule.items():
            _workers[job_name] = _JobWorker(jobs, job_name, initial_delay=delay, interval=interval)
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Billing scheduler started",
            extra={"daily_bonus_initial_delay_seconds": round(bonus_delay, 2)},
        )


def shutdown_billing_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Billing scheduler stopped")


def is_scheduler_running() -> bool:
    with _scheduler_lock:
        return bool(_workers)


__all__ = [
    "is_scheduler_running",
    "seconds_until_local_midnight",
    "shutdown_billing_scheduler",
    "start_billing_scheduler",
]
