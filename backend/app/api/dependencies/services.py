# backend/app/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected.
"""

import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.clock import Clock
from ...core.config import settings
from ...database import get_db
from ...integrations.graph_meetings_client import MeetingProvider
from ...integrations.stripe_gateway import PaymentGateway
from ...services.booking_lifecycle_service import BookingLifecycleService
from ...services.dependencies import (
    get_clock,
    get_meeting_provider,
    get_payment_gateway,
)
from ...services.meeting_link_service import MeetingLinkService
from ...services.payment_scheduler_service import PaymentSchedulerService

logger = logging.getLogger(__name__)


def get_gateway_dep() -> PaymentGateway:
    return get_payment_gateway()


def get_meeting_provider_dep() -> MeetingProvider:
    return get_meeting_provider()


def get_clock_dep() -> Clock:
    return get_clock()


def get_meeting_link_service(
    db: Session = Depends(get_db),
    provider: MeetingProvider = Depends(get_meeting_provider_dep),
) -> MeetingLinkService:
    """Get MeetingLinkService instance with proper dependencies."""
    return MeetingLinkService(
        db,
        provider,
        max_retries=settings.meeting_max_retries,
        base_delay_seconds=settings.meeting_retry_base_delay_seconds,
    )


def get_booking_lifecycle_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway_dep),
    meeting_service: MeetingLinkService = Depends(get_meeting_link_service),
    clock: Clock = Depends(get_clock_dep),
) -> BookingLifecycleService:
    """
    Get booking lifecycle service instance.

    Usage in routes:
        service: BookingLifecycleService = Depends(get_booking_lifecycle_service)
    """
    return BookingLifecycleService(db, gateway, meeting_service, clock=clock)


def get_payment_scheduler_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway_dep),
    meeting_service: MeetingLinkService = Depends(get_meeting_link_service),
    clock: Clock = Depends(get_clock_dep),
) -> PaymentSchedulerService:
    return PaymentSchedulerService(db, gateway, meeting_service, clock=clock)
