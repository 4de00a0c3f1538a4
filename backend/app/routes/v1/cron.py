# backend/app/routes/v1/cron.py
"""
Scheduler trigger routes - API v1

External schedulers (and the Celery beat fallback) call these with
``Authorization: Bearer <CRON_SECRET>``.

Endpoints:
    POST /process-payments - Create deferred authorizations and capture due payments
    POST /retry-failed-payments - Retry failed payment attempts whose backoff has elapsed
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from ...api.dependencies import get_payment_scheduler_service, verify_cron_secret
from ...services.payment_scheduler_service import PaymentSchedulerService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron-v1"])


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


async def _run_job(name: str, job: Callable[[], Dict[str, Any]]) -> JSONResponse:
    try:
        stats = await asyncio.to_thread(job)
    except Exception as exc:
        logger.error(f"Scheduler job {name} failed: {exc}", exc_info=True)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=500)

    return JSONResponse(
        {
            "success": True,
            **stats,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


@router.post("/process-payments")
async def process_payments(
    authorization: Optional[str] = Header(None),
    service: PaymentSchedulerService = Depends(get_payment_scheduler_service),
) -> JSONResponse:
    """Phase A (deferred authorizations) then phase B (captures)."""
    if not verify_cron_secret(authorization):
        return _unauthorized()
    return await _run_job("process_payments", service.process_scheduled_payments)


@router.post("/retry-failed-payments")
async def retry_failed_payments(
    authorization: Optional[str] = Header(None),
    service: PaymentSchedulerService = Depends(get_payment_scheduler_service),
) -> JSONResponse:
    if not verify_cron_secret(authorization):
        return _unauthorized()
    return await _run_job("retry_failed_payments", service.retry_failed_payments)
