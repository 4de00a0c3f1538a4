# backend/app/services/dependencies.py
"""
Construction of the booking engine's services and adapters.

Routes reach these through ``app.api.dependencies``; Celery tasks call
them directly with a task-owned session. The gateway and the meeting
provider are process-wide singletons; services are built per session.
"""

from functools import lru_cache
import logging
import time
from typing import Callable

from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..integrations.graph_meetings_client import (
    FakeMeetingsClient,
    GraphMeetingsClient,
    MeetingProvider,
)
from ..integrations.stripe_gateway import FakePaymentGateway, PaymentGateway, StripePaymentGateway
from .booking_lifecycle_service import BookingLifecycleService
from .meeting_link_service import MeetingLinkService
from .payment_scheduler_service import PaymentSchedulerService

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    """Stripe when a key is configured; the in-memory gateway otherwise (never in production)."""
    if settings.stripe_secret_key.get_secret_value() or settings.is_production:
        return StripePaymentGateway(
            secret_key=settings.stripe_secret_key,
            timeout=float(settings.gateway_timeout_seconds),
        )
    logger.warning("STRIPE_SECRET_KEY not set - using the in-memory payment gateway")
    return FakePaymentGateway()


@lru_cache(maxsize=1)
def get_meeting_provider() -> MeetingProvider:
    if settings.meeting_provider == "graph":
        return GraphMeetingsClient(
            tenant_id=settings.graph_tenant_id,
            client_id=settings.graph_client_id,
            client_secret=settings.graph_client_secret,
            organizer_user_id=settings.graph_organizer_user_id,
            timeout=settings.meeting_timeout_seconds,
        )
    logger.info("Using the in-memory meeting provider")
    return FakeMeetingsClient()


def get_clock() -> Clock:
    return system_clock


def build_meeting_link_service(
    db: Session,
    *,
    provider: MeetingProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> MeetingLinkService:
    return MeetingLinkService(
        db,
        provider or get_meeting_provider(),
        max_retries=settings.meeting_max_retries,
        base_delay_seconds=settings.meeting_retry_base_delay_seconds,
        sleep=sleep,
    )


def build_booking_lifecycle_service(
    db: Session,
    *,
    gateway: PaymentGateway | None = None,
    meeting_service: MeetingLinkService | None = None,
    clock: Clock | None = None,
) -> BookingLifecycleService:
    return BookingLifecycleService(
        db,
        gateway or get_payment_gateway(),
        meeting_service or build_meeting_link_service(db),
        clock=clock or get_clock(),
    )


def build_payment_scheduler_service(
    db: Session,
    *,
    gateway: PaymentGateway | None = None,
    meeting_service: MeetingLinkService | None = None,
    clock: Clock | None = None,
) -> PaymentSchedulerService:
    return PaymentSchedulerService(
        db,
        gateway or get_payment_gateway(),
        meeting_service or build_meeting_link_service(db),
        clock=clock or get_clock(),
    )
