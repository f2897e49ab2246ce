"""Manual trigger for the periodic billing jobs."""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from ..billing import JOB_NAMES, AuthError, ValidationError, run_job
from ..schemas.billing import CronTriggerRequest, JobRunResponse
from ..services.billing import get_billing_services

logger = logging.getLogger("billing")
security_logger = logging.getLogger("kwapps.security")

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.post("/trigger", response_model=JobRunResponse)
def trigger_job(payload: CronTriggerRequest):
    if payload.job not in JOB_NAMES:
        raise ValidationError("Invalid job type", detail={"validJobs": list(JOB_NAMES)})

    services = get_billing_services()
    expected = services.config.cron_secret
    supplied = (payload.secret or "").encode("utf-8")
    if not expected or not hmac.compare_digest(supplied, expected.encode("utf-8")):
        security_logger.warning("Rejected cron trigger for %s", payload.job)
        raise AuthError("Unauthorized")

    logger.info("Cron trigger for %s", payload.job)
    result = run_job(services.jobs, payload.job)
    response = JobRunResponse.from_result(result)
    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode="json", by_alias=True),
        )
    return response
