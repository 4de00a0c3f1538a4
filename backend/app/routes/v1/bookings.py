# backend/app/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingLifecycleService.

Endpoints:
    POST / - Create a booking
    GET / - List bookings visible to the caller
    GET /{booking_id} - Booking details
    POST /{booking_id}/accept - Tutor accepts
    POST /{booking_id}/decline - Tutor declines
    POST /{booking_id}/approve-suggestion - Approve a tutor suggestion
    POST /{booking_id}/decline-suggestion - Decline a tutor suggestion
    POST /{booking_id}/request-reschedule - Ask to move the lesson
    POST /{booking_id}/approve-reschedule - Other party approves the move
    POST /{booking_id}/decline-reschedule - Other party declines the move
    POST /{booking_id}/cancel - Cancel a booking
    POST /{booking_id}/lesson-report - Tutor completes the lesson
    PATCH /{booking_id}/confirm-payment - Record a client-side payment
    POST /{booking_id}/generate-meeting - Manual meeting-link (re)try
"""

import asyncio
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import get_booking_lifecycle_service, get_current_principal
from ...auth import Principal
from ...core.exceptions import DomainException
from ...core.ulid_helper import ULID_PATTERN
from ...models.booking import BookingStatus
from ...schemas.booking import (
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    CancellationResponse,
    CancelRequest,
    ConfirmPaymentRequest,
    LessonReportIn,
    MeetingLinkResponse,
    ReasonRequest,
    RescheduleRequestIn,
)
from ...services.booking_lifecycle_service import BookingLifecycleService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _booking_id_path() -> str:
    return Path(
        ...,
        description="Booking ULID",
        pattern=ULID_PATTERN,
        examples=["01HF4G12ABCDEF3456789XYZAB"],
    )


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate = Body(...),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    """Create a pending booking; the payment schedule is fixed from the lead time."""
    try:
        booking = await asyncio.to_thread(
            service.create_booking,
            principal.user_id,
            student_id=booking_data.student_id,
            tutor_id=booking_data.tutor_id,
            subject=booking_data.subject.value,
            level=booking_data.level.value,
            scheduled_at=booking_data.scheduled_at,
            price=booking_data.price,
            duration_minutes=booking_data.duration_minutes,
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingListResponse:
    try:
        bookings = await asyncio.to_thread(
            service.list_bookings,
            principal.user_id,
            status=status_filter.value if status_filter else None,
            limit=limit,
        )
        items = [BookingResponse.from_booking(b) for b in bookings]
        return BookingListResponse(items=items, total=len(items))
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str = _booking_id_path(),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(service.get_booking, booking_id, principal.user_id)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str = _booking_id_path(),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    """Tutor accepts a pending booking. Payment is collected by the scheduler."""
    try:
        booking = await asyncio.to_thread(service.accept_booking, booking_id, principal.user_id)
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(
    booking_id: str = _booking_id_path(),
    body: ReasonRequest = Body(default_factory=ReasonRequest),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.decline_booking, booking_id, principal.user_id, body.reason
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/approve-suggestion", response_model=BookingResponse)
async def approve_suggestion(
    booking_id: str = _booking_id_path(),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.approve_suggestion, booking_id, principal.user_id
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/decline-suggestion", response_model=BookingResponse)
async def decline_suggestion(
    booking_id: str = _booking_id_path(),
    body: ReasonRequest = Body(default_factory=ReasonRequest),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.decline_suggestion, booking_id, principal.user_id, body.reason
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/request-reschedule", response_model=BookingResponse)
async def request_reschedule(
    booking_id: str = _booking_id_path(),
    body: RescheduleRequestIn = Body(...),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.request_reschedule, booking_id, principal.user_id, body.new_scheduled_at
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/approve-reschedule", response_model=BookingResponse)
async def approve_reschedule(
    booking_id: str = _booking_id_path(),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.approve_reschedule, booking_id, principal.user_id
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/decline-reschedule", response_model=BookingResponse)
async def decline_reschedule(
    booking_id: str = _booking_id_path(),
    body: ReasonRequest = Body(default_factory=ReasonRequest),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.decline_reschedule, booking_id, principal.user_id, body.reason
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/cancel",
    response_model=CancellationResponse,
    responses={404: {"description": "Booking not found"}},
)
async def cancel_booking(
    booking_id: str = _booking_id_path(),
    cancel_data: CancelRequest = Body(default_factory=CancelRequest),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> CancellationResponse:
    """Cancel a booking, releasing or refunding any payment."""
    try:
        result = await asyncio.to_thread(
            service.cancel_booking, booking_id, principal.user_id, cancel_data.reason
        )
        return CancellationResponse(
            booking=BookingResponse.from_booking(result.booking),
            refunded=result.refunded,
            payment_cancellation_skipped=result.payment_cancellation_skipped,
            message=result.message,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/lesson-report", response_model=BookingResponse)
async def submit_lesson_report(
    booking_id: str = _booking_id_path(),
    report: LessonReportIn = Body(...),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(
            service.submit_lesson_report,
            booking_id,
            principal.user_id,
            topics_covered=report.topics_covered,
            homework=report.homework,
            notes=report.notes,
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.patch("/{booking_id}/confirm-payment", response_model=BookingResponse)
async def confirm_payment(
    booking_id: str = _booking_id_path(),
    body: ConfirmPaymentRequest = Body(...),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> BookingResponse:
    """Record a payment the client completed with the gateway directly."""
    try:
        booking = await asyncio.to_thread(
            service.confirm_payment, booking_id, principal.user_id, body.payment_intent_id
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/generate-meeting", response_model=MeetingLinkResponse)
async def generate_meeting(
    booking_id: str = _booking_id_path(),
    principal: Principal = Depends(get_current_principal),
    service: BookingLifecycleService = Depends(get_booking_lifecycle_service),
) -> MeetingLinkResponse:
    try:
        outcome = await asyncio.to_thread(
            service.generate_meeting, booking_id, principal.user_id
        )
        return MeetingLinkResponse(
            booking_id=booking_id, meeting_link=outcome.meeting_link, created=outcome.created
        )
    except DomainException as e:
        handle_domain_exception(e)
