"""
Decide-then-execute plans for lifecycle operations with side effects.

A plan is computed from the booking as read, without touching the
store, the gateway or the meeting provider. The service writes
``plan.updates`` with a conditional update and only then runs the
effects the plan names.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from ..core.constants import DEFAULT_CANCELLATION_REASON
from ..core.exceptions import ConflictException
from ..models.booking import Booking, BookingStatus, RescheduleStatus
from .payment_schedule import recompute_capture_time
from .payment_state import is_valid_payment_reference, reset_attempt_columns


@dataclass(frozen=True)
class ReleaseAuthorization:
    ref: str


@dataclass(frozen=True)
class IssueRefund:
    ref: str


@dataclass(frozen=True)
class SkipSettlement:
    reason: str
    reconcile: bool = False


@dataclass(frozen=True)
class NoSettlement:
    pass


Settlement = Union[ReleaseAuthorization, IssueRefund, SkipSettlement, NoSettlement]


def plan_settlement(booking: Booking) -> Settlement:
    """What has to happen to the money when a booking ends early."""
    ref = booking.payment_intent_ref
    if not ref:
        if booking.is_paid:
            return SkipSettlement("Paid booking has no payment reference", reconcile=True)
        return NoSettlement()
    if not is_valid_payment_reference(ref):
        return SkipSettlement(f"Invalid payment reference: {ref}", reconcile=bool(booking.is_paid))
    if booking.payment_captured_at:
        if booking.refund_ref:
            return NoSettlement()
        return IssueRefund(ref)
    return ReleaseAuthorization(ref)


@dataclass(frozen=True)
class CancellationPlan:
    updates: Dict[str, Any]
    settlement: Settlement
    meeting_id: Optional[str] = None
    by_tutor: bool = False


def plan_cancellation(
    booking: Booking,
    *,
    actor_id: str,
    reason: Optional[str],
    by_tutor: bool,
    now: datetime,
) -> CancellationPlan:
    updates: Dict[str, Any] = {
        "status": BookingStatus.CANCELLED.value,
        "cancelled_by": actor_id,
        "cancelled_at": now,
        "cancellation_reason": (reason or "").strip() or DEFAULT_CANCELLATION_REASON,
        "meeting_id": None,
        "meeting_link": None,
    }
    request = booking.reschedule_request
    if request is not None and request.is_pending:
        updates.update(
            reschedule_status=RescheduleStatus.DECLINED.value,
            reschedule_responded_by=actor_id,
            reschedule_responded_at=now,
            reschedule_decline_reason="Booking cancelled",
        )
    return CancellationPlan(
        updates=updates,
        settlement=plan_settlement(booking),
        meeting_id=booking.meeting_id,
        by_tutor=by_tutor,
    )


@dataclass(frozen=True)
class RescheduleApprovalPlan:
    updates: Dict[str, Any] = field(default_factory=dict)
    release_ref: Optional[str] = None
    regenerate_meeting: bool = False


def plan_reschedule_approval(
    booking: Booking, *, actor_id: str, now: datetime, authorization_hold: timedelta
) -> RescheduleApprovalPlan:
    request = booking.reschedule_request
    if request is None or not request.is_pending:
        raise ConflictException("No pending reschedule request", code="NO_PENDING_RESCHEDULE")
    new_time = request.new_scheduled_at
    updates: Dict[str, Any] = {
        "scheduled_at": new_time,
        "reschedule_status": RescheduleStatus.APPROVED.value,
        "reschedule_responded_by": actor_id,
        "reschedule_responded_at": now,
        "rescheduled_by": actor_id,
        "rescheduled_at": now,
    }
    release_ref: Optional[str] = None

    if not booking.is_paid and booking.payment_auth_type:
        capture_at = recompute_capture_time(new_time, now)
        updates["payment_scheduled_for"] = capture_at
        updates.update(reset_attempt_columns())
        expires_at = booking.authorization_expires_at
        # a hold that lapses before the new capture time has to be placed again
        if (
            booking.payment_intent_ref
            and expires_at is not None
            and capture_at is not None
            and expires_at < capture_at
        ):
            release_ref = booking.payment_intent_ref
            updates.update(
                payment_intent_ref=None,
                authorization_expires_at=None,
                requires_auth_creation=True,
                auth_generation=(booking.auth_generation or 0) + 1,
            )

    return RescheduleApprovalPlan(
        updates=updates,
        release_ref=release_ref,
        regenerate_meeting=booking.status == BookingStatus.CONFIRMED and bool(booking.meeting_link),
    )
