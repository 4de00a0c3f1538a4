# backend/app/schemas/booking.py
"""
Booking schemas for the Tipu platform.

Request models check shape only (types, enums, lengths). Business rules
such as duration range, future times and reason length live in
BookingLifecycleService so they surface as 400s with a domain code.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from ..core.constants import DEFAULT_LESSON_DURATION, MAX_NOTES_LENGTH, MAX_REASON_LENGTH
from ..core.enums import Level, Subject
from ..domain.payment_state import describe_payment
from ..models.booking import Booking
from .base import StandardizedModel, StrictRequestModel


class BookingCreate(StrictRequestModel):
    """Book a lesson for a student (the student themself, their parent, or an admin)."""

    student_id: str = Field(..., description="Student the lesson is for")
    tutor_id: str = Field(..., description="Tutor to book")
    subject: Subject
    level: Level
    scheduled_at: datetime = Field(..., description="Lesson start (ISO 8601, UTC if naive)")
    price: int = Field(..., description="Lesson price in minor units (pence)")
    duration_minutes: int = Field(DEFAULT_LESSON_DURATION, description="Lesson length in minutes")


class SuggestLessonRequest(StrictRequestModel):
    student_id: str
    subject: Subject
    level: Level
    scheduled_at: datetime
    duration_minutes: int = DEFAULT_LESSON_DURATION
    tutor_notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)


class ReasonRequest(StrictRequestModel):
    """Body for decline / decline-suggestion / decline-reschedule."""

    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class CancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RescheduleRequestIn(StrictRequestModel):
    new_scheduled_at: datetime


class LessonReportIn(StrictRequestModel):
    topics_covered: str = Field(..., max_length=MAX_NOTES_LENGTH)
    homework: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_LENGTH)


class ConfirmPaymentRequest(StrictRequestModel):
    payment_intent_id: str = Field(..., description="Gateway reference obtained by the client")


class RescheduleRequestResponse(StandardizedModel):
    requested_by: str
    requested_at: datetime
    new_scheduled_at: datetime
    status: str
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None


class LessonReportResponse(StandardizedModel):
    topics_covered: str
    homework: Optional[str] = None
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None


class BookingResponse(StandardizedModel):
    id: str
    student_id: str
    tutor_id: str
    booked_by: Optional[str] = None
    subject: str
    level: str
    duration_minutes: int
    price: int
    currency: str
    scheduled_at: datetime
    status: str
    created_at: Optional[datetime] = None

    tutor_notes: Optional[str] = None
    suggested_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    payment_stage: str
    payment_auth_type: Optional[str] = None
    is_paid: bool = False
    payment_scheduled_for: Optional[datetime] = None
    requires_auth_creation: bool = False
    authorization_expires_at: Optional[datetime] = None
    payment_captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    payment_error: Optional[str] = None
    payment_retry_count: int = 0
    payment_cancellation_skipped: bool = False

    meeting_link: Optional[str] = None

    reschedule_request: Optional[RescheduleRequestResponse] = None
    lesson_report: Optional[LessonReportResponse] = None

    confirmed_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    declined_by: Optional[str] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        request = booking.reschedule_request
        report = booking.lesson_report
        return cls(
            id=booking.id,
            student_id=booking.student_id,
            tutor_id=booking.tutor_id,
            booked_by=booking.booked_by,
            subject=booking.subject,
            level=booking.level,
            duration_minutes=booking.duration_minutes,
            price=booking.price,
            currency=booking.currency,
            scheduled_at=booking.scheduled_at,
            status=booking.status,
            created_at=booking.created_at,
            tutor_notes=booking.tutor_notes,
            suggested_at=booking.suggested_at,
            approved_by=booking.approved_by,
            approved_at=booking.approved_at,
            payment_stage=describe_payment(booking).stage,
            payment_auth_type=booking.payment_auth_type,
            is_paid=bool(booking.is_paid),
            payment_scheduled_for=booking.payment_scheduled_for,
            requires_auth_creation=bool(booking.requires_auth_creation),
            authorization_expires_at=booking.authorization_expires_at,
            payment_captured_at=booking.payment_captured_at,
            refunded_at=booking.refunded_at,
            payment_error=booking.payment_error,
            payment_retry_count=booking.payment_retry_count or 0,
            payment_cancellation_skipped=bool(booking.payment_cancellation_skipped),
            meeting_link=booking.meeting_link,
            reschedule_request=(
                RescheduleRequestResponse(**request.__dict__) if request is not None else None
            ),
            lesson_report=LessonReportResponse(**report.__dict__) if report is not None else None,
            confirmed_at=booking.confirmed_at,
            cancelled_by=booking.cancelled_by,
            cancelled_at=booking.cancelled_at,
            cancellation_reason=booking.cancellation_reason,
            declined_by=booking.declined_by,
            declined_at=booking.declined_at,
            decline_reason=booking.decline_reason,
        )


class BookingListResponse(StandardizedModel):
    items: List[BookingResponse]
    total: int


class CancellationResponse(StandardizedModel):
    booking: BookingResponse
    refunded: bool
    payment_cancellation_skipped: bool
    message: str


class MeetingLinkResponse(StandardizedModel):
    booking_id: str
    meeting_link: str
    created: bool
