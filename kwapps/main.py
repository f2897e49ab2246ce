"""FastAPI application entry point for the KW Apps billing backend."""
from __future__ import annotations

import logging
import math
import os
from typing import Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt

from kwapps import app_context
from kwapps.app.billing import AuthError, BillingError, get_job_metrics
from kwapps.app.routes.billing import router as billing_router
from kwapps.app.routes.cron import router as cron_router
from kwapps.app.services.billing import get_billing_services
from kwapps.scheduler import shutdown_billing_scheduler, start_billing_scheduler

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "kwapps"),
    user=os.getenv("DB_USER", "kwapps"),
    password=os.getenv("DB_PASSWORD", "kwapps"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", os.getenv("APP_BASE_URL", "http://localhost:3000")).split(",")
    if origin.strip()
]

logger = logging.getLogger("kwapps")
security_logger = logging.getLogger("kwapps.security")


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_account_from_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


def get_current_account(authorization: Optional[str] = None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Not authenticated")

    account_id = resolve_account_from_token(token.strip())
    if account_id is None:
        security_logger.warning("Rejected bearer token")
        raise AuthError("Not authenticated")
    return account_id


app_context.configure(get_conn=get_conn, get_current_account=get_current_account)

app = FastAPI(title="KW Apps Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(cron_router)


@app.exception_handler(BillingError)
async def handle_billing_error(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Billing failure on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=dict(exc.payload))


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


@app.on_event("startup")
def start_scheduler() -> None:
    services = get_billing_services()
    if services.config.scheduler_enabled:
        start_billing_scheduler(services.jobs)


@app.on_event("shutdown")
def stop_scheduler() -> None:
    shutdown_billing_scheduler()


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok", "jobs": get_job_metrics()}
