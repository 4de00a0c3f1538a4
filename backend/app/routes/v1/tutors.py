# backend/app/routes/v1/tutors.py
"""
Tutor routes - API v1

Endpoints:
    POST /suggest-lesson - Tutor proposes a lesson to an existing student
"""

import asyncio
import logging

from fastapi import APIRouter, Body, Depends, status

from ...api.dependencies import get_booking_lifecycle_service, get_current_principal
from ...auth import Principal
from ...core.exceptions import DomainException
from ...schemas.booking import BookingResponse, SuggestLessonRequest
from ...services.booking_lifecycle_service import BookingLifecycleService
from .bookings import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tutors-v1"])


@router.post(
    "/suggest-lesson", response_model=BookingResponse, status_code=status.HTTP_201_CREATED
)
async def suggest_lesson(
    suggestion: SuggestLessonRequest = Body(...),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    """
    Suggest a lesson to a student the tutor has taught before.

    The booking is created as tutor-suggested and priced from the tutor's
    hourly rate; the student (or their parent) approves it to start the
    normal booking flow.
    """
    try:
        booking = await asyncio.to_thread(
            service.suggest_lesson,
            principal.user_id,
            student_id=suggestion.student_id,
            subject=suggestion.subject.value,
            level=suggestion.level.value,
            scheduled_at=suggestion.scheduled_at,
            duration_minutes=suggestion.duration_minutes,
            tutor_notes=suggestion.tutor_notes,
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)
