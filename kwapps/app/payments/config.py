"""Payment gateway and billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


UPAYMENTS_SANDBOX_URL = "https://sandboxapi.upayments.com/api/v1"
UPAYMENTS_PRODUCTION_URL = "https://apiv2api.upayments.com/api/v1"


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration for the UPayments integration."""

    provider_name: str
    api_url: str
    api_key: str
    sandbox: bool
    webhook_secret: str
    timeout_seconds: float
    max_attempts: int
    backoff_seconds: float
    app_base_url: str

    @property
    def return_url(self) -> str:
        return f"{self.app_base_url}/dashboard/billing?payment=success"

    @property
    def cancel_url(self) -> str:
        return f"{self.app_base_url}/dashboard/billing?payment=cancelled"

    @property
    def webhook_url(self) -> str:
        return f"{self.app_base_url}/api/billing/webhook"


@dataclass(frozen=True)
class BillingConfig:
    """Tunables for trials, periods and scheduled jobs."""

    trial_duration_days: int
    trial_tier: str
    billing_period_days: int
    rollover_percentage: float
    timezone: str
    checkout_session_ttl_minutes: int
    job_lease_seconds: int
    cron_secret: Optional[str]
    scheduler_enabled: bool


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def sanitize_url(value: Optional[str]) -> str:
    """Drop whitespace (including pasted newlines) and trailing slashes."""

    if not value:
        return ""
    return "".join(value.split()).rstrip("/")


def load_gateway_config(env: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """Load :class:`GatewayConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    provider_name = (env_mapping.get("UPAYMENTS_PROVIDER") or "upayments").strip().lower() or "upayments"
    sandbox = _to_bool(env_mapping.get("UPAYMENTS_SANDBOX"), default=True)
    default_url = UPAYMENTS_SANDBOX_URL if sandbox else UPAYMENTS_PRODUCTION_URL
    api_url = sanitize_url(env_mapping.get("UPAYMENTS_API_URL")) or default_url

    return GatewayConfig(
        provider_name=provider_name,
        api_url=api_url,
        api_key=(env_mapping.get("UPAYMENTS_API_KEY") or "").strip(),
        sandbox=sandbox,
        webhook_secret=(env_mapping.get("UPAYMENTS_WEBHOOK_SECRET") or "").strip(),
        timeout_seconds=max(1.0, _to_float(env_mapping.get("UPAYMENTS_TIMEOUT_SECONDS"), default=15.0)),
        max_attempts=max(1, _to_int(env_mapping.get("UPAYMENTS_MAX_ATTEMPTS"), default=3)),
        backoff_seconds=max(0.0, _to_float(env_mapping.get("UPAYMENTS_BACKOFF_SECONDS"), default=0.5)),
        app_base_url=sanitize_url(env_mapping.get("APP_BASE_URL")) or "http://localhost:3000",
    )


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    rollover = _to_float(env_mapping.get("ROLLOVER_PERCENTAGE"), default=0.5)
    if not 0.0 <= rollover <= 1.0:
        raise ValueError(f"ROLLOVER_PERCENTAGE must be between 0 and 1, got {rollover!r}")

    return BillingConfig(
        trial_duration_days=max(1, _to_int(env_mapping.get("TRIAL_DURATION_DAYS"), default=7)),
        trial_tier=(env_mapping.get("TRIAL_TIER") or "basic").strip().lower(),
        billing_period_days=max(1, _to_int(env_mapping.get("BILLING_PERIOD_DAYS"), default=30)),
        rollover_percentage=rollover,
        timezone=(env_mapping.get("BILLING_TIMEZONE") or "Asia/Kuwait").strip(),
        checkout_session_ttl_minutes=max(
            1, _to_int(env_mapping.get("CHECKOUT_SESSION_TTL_MINUTES"), default=60)
        ),
        job_lease_seconds=max(1, _to_int(env_mapping.get("JOB_LEASE_SECONDS"), default=300)),
        cron_secret=env_mapping.get("CRON_SECRET") or None,
        scheduler_enabled=_to_bool(env_mapping.get("BILLING_SCHEDULER_ENABLED"), default=False),
    )


__all__ = [
    "BillingConfig",
    "GatewayConfig",
    "UPAYMENTS_PRODUCTION_URL",
    "UPAYMENTS_SANDBOX_URL",
    "load_billing_config",
    "load_gateway_config",
    "sanitize_url",
]
