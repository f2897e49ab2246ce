"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..billing import CREDIT_COSTS
from ..schemas.billing import (
    BonusClaimResponse,
    CheckoutRequest,
    CreditBalanceResponse,
    CreditHistoryResponse,
    DeductCreditsRequest,
    DeductCreditsResponse,
    LedgerEntryResponse,
    PaymentHistoryResponse,
    PaymentSessionResponse,
    SubscriptionResponse,
    TierListResponse,
    TierResponse,
    TrialResponse,
    WebhookAckResponse,
)
from ..services.billing import get_billing_services
from ... import app_context

logger = logging.getLogger("billing")


def _get_current_account(authorization: Optional[str] = Header(None)) -> str:
    return app_context.get_current_account(authorization=authorization)


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/subscription/tiers", response_model=TierListResponse)
def list_subscription_tiers():
    try:
        tiers = get_billing_services().catalog.list_tiers()
    except Exception:
        logger.exception("Failed to load subscription tiers")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )
    return TierListResponse(tiers=[TierResponse.from_tier(tier) for tier in tiers])


@router.get("/subscription", response_model=SubscriptionResponse)
def get_subscription(*, account_id: str = Depends(_get_current_account)) -> SubscriptionResponse:
    account = get_billing_services().payments.get_subscription(account_id)
    return SubscriptionResponse.from_account(account)


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
def cancel_subscription(*, account_id: str = Depends(_get_current_account)) -> SubscriptionResponse:
    account = get_billing_services().payments.cancel_subscription(account_id)
    return SubscriptionResponse.from_account(account)


@router.post("/checkout", response_model=PaymentSessionResponse, status_code=status.HTTP_201_CREATED)
def create_checkout(
    payload: CheckoutRequest,
    *,
    account_id: str = Depends(_get_current_account),
) -> PaymentSessionResponse:
    session = get_billing_services().payments.start_checkout(account_id, payload.tier_id)
    return PaymentSessionResponse.from_session(session)


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(
    request: Request,
    x_upayments_signature: Optional[str] = Header(None),
) -> WebhookAckResponse:
    raw_body = await request.body()
    payments = get_billing_services().payments
    result = await run_in_threadpool(payments.handle_webhook, raw_body, x_upayments_signature)
    return WebhookAckResponse.from_result(result)


@router.get("/payments", response_model=PaymentHistoryResponse)
def list_payments(
    limit: int = Query(20, ge=1, le=200),
    *,
    account_id: str = Depends(_get_current_account),
) -> PaymentHistoryResponse:
    sessions = get_billing_services().payments.payment_history(account_id, limit=limit)
    return PaymentHistoryResponse(payments=[PaymentSessionResponse.from_session(session) for session in sessions])


@router.get("/payments/{session_id}", response_model=PaymentSessionResponse)
def get_payment_session(
    session_id: str,
    refresh: bool = Query(False),
    *,
    account_id: str = Depends(_get_current_account),
) -> PaymentSessionResponse:
    payments = get_billing_services().payments
    if refresh:
        session = payments.refresh_session_status(session_id, account_id=account_id)
    else:
        session = payments.get_session(session_id, account_id=account_id)
    return PaymentSessionResponse.from_session(session)


@router.get("/credits/balance", response_model=CreditBalanceResponse)
def get_credit_balance(*, account_id: str = Depends(_get_current_account)) -> CreditBalanceResponse:
    summary = get_billing_services().credits.balance_summary(account_id)
    return CreditBalanceResponse.from_balance(summary)


@router.post("/credits/deduct", response_model=DeductCreditsResponse)
def deduct_credits(
    payload: DeductCreditsRequest,
    *,
    account_id: str = Depends(_get_current_account),
) -> DeductCreditsResponse:
    credits = get_billing_services().credits
    if payload.operation_type is not None:
        entry = credits.debit_for_operation(account_id, payload.operation_type, metadata=payload.metadata)
        deducted = CREDIT_COSTS[payload.operation_type]
    else:
        entry = credits.debit(account_id, payload.amount, metadata=payload.metadata)
        deducted = payload.amount

    balance = entry.balance_after if entry is not None else credits.get_balance(account_id)
    return DeductCreditsResponse(
        deducted=deducted,
        balance=balance,
        entry=LedgerEntryResponse.from_entry(entry) if entry is not None else None,
    )


@router.get("/credits/history", response_model=CreditHistoryResponse)
def get_credit_history(
    limit: int = Query(50, ge=1, le=200),
    *,
    account_id: str = Depends(_get_current_account),
) -> CreditHistoryResponse:
    entries = get_billing_services().credits.history(account_id, limit=limit)
    return CreditHistoryResponse(entries=[LedgerEntryResponse.from_entry(entry) for entry in entries])


@router.post("/credits/bonus", response_model=BonusClaimResponse)
def claim_daily_bonus(*, account_id: str = Depends(_get_current_account)) -> BonusClaimResponse:
    claim = get_billing_services().credits.claim_daily_bonus(account_id)
    return BonusClaimResponse.from_claim(claim)


@router.post("/trial", response_model=TrialResponse, status_code=status.HTTP_201_CREATED)
def start_trial(*, account_id: str = Depends(_get_current_account)) -> TrialResponse:
    trial = get_billing_services().trials.start_trial(account_id)
    return TrialResponse.from_trial(trial, now=datetime.now(timezone.utc))


@router.get("/trial", response_model=TrialResponse)
def get_trial(*, account_id: str = Depends(_get_current_account)) -> TrialResponse:
    trial = get_billing_services().trials.get_trial(account_id)
    return TrialResponse.from_trial(trial, now=datetime.now(timezone.utc))
