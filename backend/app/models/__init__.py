"""
Database models for the Tipu platform.

- User: identity mirror (role, date of birth, parent link, payer refs)
- Booking: lesson bookings with embedded reschedule request and lesson report
"""

from .booking import (
    Booking,
    BookingStatus,
    LessonReport,
    PaymentAuthType,
    RescheduleRequest,
    RescheduleStatus,
)
from .user import User

__all__ = [
    "Booking",
    "BookingStatus",
    "LessonReport",
    "PaymentAuthType",
    "RescheduleRequest",
    "RescheduleStatus",
    "User",
]
