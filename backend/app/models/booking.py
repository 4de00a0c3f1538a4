# backend/app/models/booking.py
"""
Booking model for the Tipu platform.

A booking is one paid lesson between a student and a tutor. The row carries
the lifecycle status, the payment schedule chosen at creation, the meeting
link, and two embedded records: the (single) active reschedule request and
the lesson report written on completion.

Rows are never deleted; terminal bookings are kept for audit. Every
mutation goes through a conditional update guarded by ``status`` and
``version`` (see BookingRepository.update_if_current).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func
import ulid

from ..database import Base
from .types import UTCDateTime

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    TUTOR_SUGGESTED = "tutor-suggested"
    PENDING = "pending"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.DECLINED}
)


class PaymentAuthType(str, Enum):
    """How money is collected, fixed from the lead time at creation or approval."""

    IMMEDIATE_CHARGE = "immediate_charge"
    IMMEDIATE_AUTH = "immediate_auth"
    DEFERRED_AUTH = "deferred_auth"


class RescheduleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


@dataclass(frozen=True)
class RescheduleRequest:
    requested_by: str
    requested_at: datetime
    new_scheduled_at: datetime
    status: str
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RescheduleStatus.PENDING


@dataclass(frozen=True)
class LessonReport:
    topics_covered: str
    completed_at: datetime
    homework: Optional[str] = None
    notes: Optional[str] = None


class Booking(Base):
    """Self-contained lesson booking between a student and a tutor."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    version = Column(Integer, nullable=False, default=1)

    # Participants
    student_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    tutor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    booked_by = Column(String(26), ForeignKey("users.id"), nullable=True)

    # Lesson content
    subject = Column(String(50), nullable=False)
    level = Column(String(20), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    price = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="gbp")

    # Timing
    scheduled_at = Column(UTCDateTime(), nullable=False, index=True)
    created_at = Column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime(), nullable=True, onupdate=func.now())

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)

    # Tutor suggestion
    tutor_notes = Column(Text, nullable=True)
    suggested_at = Column(UTCDateTime(), nullable=True)
    approved_by = Column(String(26), nullable=True)
    approved_at = Column(UTCDateTime(), nullable=True)

    # Payment
    payment_auth_type = Column(String(20), nullable=True)
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_intent_ref = Column(String(255), nullable=True)
    payment_scheduled_for = Column(UTCDateTime(), nullable=True, index=True)
    requires_auth_creation = Column(Boolean, nullable=False, default=False)
    authorization_expires_at = Column(UTCDateTime(), nullable=True)
    payment_captured_at = Column(UTCDateTime(), nullable=True)
    # bumped whenever a new hold may be placed under a fresh idempotency key
    auth_generation = Column(Integer, nullable=False, default=0)
    refund_ref = Column(String(255), nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)
    payment_cancellation_skipped = Column(Boolean, nullable=False, default=False)
    payment_skip_reason = Column(String(255), nullable=True)

    # Payment attempt tracking
    payment_attempted = Column(Boolean, nullable=False, default=False)
    payment_claimed_at = Column(UTCDateTime(), nullable=True)
    payment_retry_count = Column(Integer, nullable=False, default=0)
    payment_error = Column(Text, nullable=True)
    last_payment_retry_at = Column(UTCDateTime(), nullable=True)
    next_payment_retry_at = Column(UTCDateTime(), nullable=True, index=True)

    # Meeting
    meeting_id = Column(String(255), nullable=True)
    meeting_link = Column(Text, nullable=True)

    # Embedded reschedule request
    reschedule_requested_by = Column(String(26), nullable=True)
    reschedule_requested_at = Column(UTCDateTime(), nullable=True)
    reschedule_new_scheduled_at = Column(UTCDateTime(), nullable=True)
    reschedule_status = Column(String(20), nullable=True)
    reschedule_responded_by = Column(String(26), nullable=True)
    reschedule_responded_at = Column(UTCDateTime(), nullable=True)
    reschedule_decline_reason = Column(Text, nullable=True)
    rescheduled_by = Column(String(26), nullable=True)
    rescheduled_at = Column(UTCDateTime(), nullable=True)

    # Embedded lesson report
    report_topics_covered = Column(Text, nullable=True)
    report_homework = Column(Text, nullable=True)
    report_notes = Column(Text, nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)

    # Audit
    accepted_at = Column(UTCDateTime(), nullable=True)
    confirmed_at = Column(UTCDateTime(), nullable=True)
    declined_by = Column(String(26), nullable=True)
    declined_at = Column(UTCDateTime(), nullable=True)
    decline_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(26), nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('tutor-suggested', 'pending', 'accepted', 'confirmed', "
            "'completed', 'cancelled', 'declined')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "payment_auth_type IS NULL OR payment_auth_type IN "
            "('immediate_charge', 'immediate_auth', 'deferred_auth')",
            name="ck_bookings_payment_auth_type",
        ),
        CheckConstraint("price > 0", name="check_price_positive"),
        CheckConstraint("duration_minutes > 0", name="check_duration_positive"),
        CheckConstraint(
            "meeting_link IS NULL OR status IN ('confirmed', 'completed')",
            name="ck_meeting_confirmed",
        ),
        Index("ix_bookings_payment_due", "status", "is_paid", "payment_scheduled_for"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: student={self.student_id}, tutor={self.tutor_id}, "
            f"at={self.scheduled_at}, status={self.status}, v={self.version}>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def reschedule_request(self) -> Optional[RescheduleRequest]:
        if not self.reschedule_status:
            return None
        return RescheduleRequest(
            requested_by=self.reschedule_requested_by,
            requested_at=self.reschedule_requested_at,
            new_scheduled_at=self.reschedule_new_scheduled_at,
            status=self.reschedule_status,
            responded_by=self.reschedule_responded_by,
            responded_at=self.reschedule_responded_at,
            decline_reason=self.reschedule_decline_reason,
        )

    @property
    def lesson_report(self) -> Optional[LessonReport]:
        if self.status != BookingStatus.COMPLETED or not self.report_topics_covered:
            return None
        return LessonReport(
            topics_covered=self.report_topics_covered,
            homework=self.report_homework,
            notes=self.report_notes,
            completed_at=self.completed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logs and task results."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "tutor_id": self.tutor_id,
            "status": self.status,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "payment_auth_type": self.payment_auth_type,
            "is_paid": bool(self.is_paid),
            "version": self.version,
        }
