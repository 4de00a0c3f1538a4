# backend/app/main.py
"""
ASGI entry point for the Tipu booking API.

    uvicorn app.main:app

Mounts the v1 routers under /api/v1, the scheduler triggers under
/api/v1/cron and the Prometheus scrape target at /metrics.
"""

import logging

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.constants import ALLOWED_ORIGINS, API_DESCRIPTION, API_TITLE, API_VERSION
from .errors import register_error_handlers
from .routes.v1 import bookings as bookings_v1
from .routes.v1 import cron as cron_v1
from .routes.v1 import health as health_v1
from .routes.v1 import prometheus as prometheus_v1
from .routes.v1 import tutors as tutors_v1

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    register_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "HEAD", "OPTIONS", "POST", "PATCH"],
        allow_headers=["*"],
    )

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(tutors_v1.router, prefix="/tutors")
    api_v1.include_router(cron_v1.router, prefix="/cron")
    api_v1.include_router(health_v1.router, prefix="/health")

    app.include_router(api_v1)
    app.include_router(prometheus_v1.router)

    logger.info(f"{API_TITLE} {API_VERSION} starting in {settings.environment} mode")
    return app


app = create_app()
