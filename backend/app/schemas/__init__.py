# backend/app/schemas/__init__.py
"""
Pydantic schemas for the Tipu API.

Request models validate shape only; business rules live in the services.
"""

from .booking import (
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
    SuggestLessonRequest,
)
from .main_responses import HealthResponse

__all__ = [
    "BookingCreate",
    "BookingListResponse",
    "BookingResponse",
    "CancellationResponse",
    "CancelRequest",
    "ConfirmPaymentRequest",
    "HealthResponse",
    "LessonReportIn",
    "MeetingLinkResponse",
    "ReasonRequest",
    "RescheduleRequestIn",
    "SuggestLessonRequest",
]
