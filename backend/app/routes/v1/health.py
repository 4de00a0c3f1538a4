# backend/app/routes/v1/health.py
"""Liveness endpoint for load balancers. Does not touch the database."""

from datetime import datetime, timezone

from fastapi import APIRouter

from ...core.config import settings
from ...core.constants import API_VERSION, BRAND_NAME
from ...schemas.main_responses import HealthResponse

router = APIRouter(tags=["health"])


@router.get("", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        service=f"{BRAND_NAME.lower()}-api",
        version=API_VERSION,
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
