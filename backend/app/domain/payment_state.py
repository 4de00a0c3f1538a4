"""
Payment stage of a booking as an explicit tagged variant.

The bookings table stores the payment columns flat. Reads go through
``describe_payment`` and writes through a variant's ``columns()``, which
always returns the full set of stage columns, so combinations such as
"refunded but never captured" cannot be written.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import re
from typing import Any, Dict, List, Optional, Union

from ..models.booking import Booking, BookingStatus, PaymentAuthType
from .payment_schedule import retry_backoff

PAYMENT_REFERENCE_PATTERN = re.compile(r"^pi_[A-Za-z0-9_]+$")


def is_valid_payment_reference(ref: Optional[str]) -> bool:
    """Gateway references look like ``pi_...``; anything else is legacy or corrupt."""
    return bool(ref) and PAYMENT_REFERENCE_PATTERN.match(ref) is not None


def _stage_columns(
    auth_type: Optional[str],
    *,
    is_paid: bool = False,
    ref: Optional[str] = None,
    scheduled_for: Optional[datetime] = None,
    requires_auth_creation: bool = False,
    expires_at: Optional[datetime] = None,
    captured_at: Optional[datetime] = None,
    refund_ref: Optional[str] = None,
    refunded_at: Optional[datetime] = None,
    skipped: bool = False,
    skip_reason: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "payment_auth_type": auth_type,
        "is_paid": is_paid,
        "payment_intent_ref": ref,
        "payment_scheduled_for": scheduled_for,
        "requires_auth_creation": requires_auth_creation,
        "authorization_expires_at": expires_at,
        "payment_captured_at": captured_at,
        "refund_ref": refund_ref,
        "refunded_at": refunded_at,
        "payment_cancellation_skipped": skipped,
        "payment_skip_reason": skip_reason,
    }


@dataclass(frozen=True)
class Unscheduled:
    """No payment plan yet (an unapproved tutor suggestion)."""

    stage = "unscheduled"

    def columns(self) -> Dict[str, Any]:
        return _stage_columns(None)


@dataclass(frozen=True)
class AwaitingAuthorization:
    auth_type: str
    scheduled_for: Optional[datetime]
    requires_auth_creation: bool

    stage = "awaiting_authorization"

    def columns(self) -> Dict[str, Any]:
        return _stage_columns(
            self.auth_type,
            scheduled_for=self.scheduled_for,
            requires_auth_creation=self.requires_auth_creation,
        )


@dataclass(frozen=True)
class Authorized:
    auth_type: str
    ref: str
    scheduled_for: Optional[datetime]
    expires_at: Optional[datetime]

    stage = "authorized"

    def columns(self) -> Dict[str, Any]:
        return _stage_columns(
            self.auth_type,
            ref=self.ref,
            scheduled_for=self.scheduled_for,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class Captured:
    auth_type: str
    ref: str
    captured_at: datetime

    stage = "captured"

    def columns(self) -> Dict[str, Any]:
        return _stage_columns(
            self.auth_type, is_paid=True, ref=self.ref, captured_at=self.captured_at
        )


@dataclass(frozen=True)
class Released:
    """Booking ended before capture; any authorization was cancelled or skipped."""

    auth_type: Optional[str]
    ref: Optional[str]
    skipped: bool = False
    skip_reason: Optional[str] = None

    stage = "released"

    def columns(self) -> Dict[str, Any]:
        return _stage_columns(
            self.auth_type, ref=self.ref, skipped=self.skipped, skip_reason=self.skip_reason
        )


@dataclass(frozen=True)
class Refunded:
    auth_type: str
    ref: str
    captured_at: datetime
    refund_ref: str
    refunded_at: datetime

    stage = "refunded"

    def columns(self) -> Dict[str, Any]:
        return _stage_columns(
            self.auth_type,
            is_paid=True,
            ref=self.ref,
            captured_at=self.captured_at,
            refund_ref=self.refund_ref,
            refunded_at=self.refunded_at,
        )


PaymentState = Union[Unscheduled, AwaitingAuthorization, Authorized, Captured, Released, Refunded]


def describe_payment(booking: Booking) -> PaymentState:
    """Read the stage variant back out of the flat columns."""
    auth_type = booking.payment_auth_type
    if booking.refund_ref and booking.payment_captured_at:
        return Refunded(
            auth_type=auth_type,
            ref=booking.payment_intent_ref,
            captured_at=booking.payment_captured_at,
            refund_ref=booking.refund_ref,
            refunded_at=booking.refunded_at,
        )
    if booking.is_paid or booking.payment_captured_at:
        return Captured(
            auth_type=auth_type,
            ref=booking.payment_intent_ref,
            captured_at=booking.payment_captured_at,
        )
    if booking.status in (BookingStatus.CANCELLED, BookingStatus.DECLINED):
        return Released(
            auth_type=auth_type,
            ref=booking.payment_intent_ref,
            skipped=bool(booking.payment_cancellation_skipped),
            skip_reason=booking.payment_skip_reason,
        )
    if auth_type is None:
        return Unscheduled()
    if booking.payment_intent_ref:
        return Authorized(
            auth_type=auth_type,
            ref=booking.payment_intent_ref,
            scheduled_for=booking.payment_scheduled_for,
            expires_at=booking.authorization_expires_at,
        )
    return AwaitingAuthorization(
        auth_type=auth_type,
        scheduled_for=booking.payment_scheduled_for,
        requires_auth_creation=bool(booking.requires_auth_creation),
    )


def reset_attempt_columns() -> Dict[str, Any]:
    return {
        "payment_attempted": False,
        "payment_claimed_at": None,
        "payment_error": None,
        "payment_retry_count": 0,
        "last_payment_retry_at": None,
        "next_payment_retry_at": None,
    }


def failed_attempt_columns(
    booking: Booking, error: str, now: datetime, retry_base: timedelta
) -> Dict[str, Any]:
    """Record one failed attempt and when the retry job may pick it up again."""
    retry_count = (booking.payment_retry_count or 0) + 1
    return {
        "payment_attempted": True,
        "payment_claimed_at": None,
        "payment_error": error[:1000],
        "payment_retry_count": retry_count,
        "last_payment_retry_at": now,
        "next_payment_retry_at": now + retry_backoff(retry_count, retry_base),
    }


def integrity_problems(booking: Booking) -> List[str]:
    """Invariant violations that are reported, never fatal."""
    problems: List[str] = []
    if booking.is_paid and not booking.payment_captured_at:
        problems.append("marked paid without a capture timestamp")
    if booking.is_paid and not is_valid_payment_reference(booking.payment_intent_ref):
        ref = booking.payment_intent_ref
        problems.append(f"marked paid with invalid payment reference {ref!r}")
    if booking.meeting_link and booking.status not in (
        BookingStatus.CONFIRMED,
        BookingStatus.COMPLETED,
    ):
        problems.append(f"meeting link present while status is {booking.status}")
    if booking.payment_auth_type and booking.payment_auth_type not in {
        t.value for t in PaymentAuthType
    }:
        problems.append(f"unknown payment auth type {booking.payment_auth_type!r}")
    return problems
