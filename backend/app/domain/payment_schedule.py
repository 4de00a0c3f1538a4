"""
Lead-time payment schedule.

Lead time is measured from "now" (creation, suggestion approval or
reschedule approval) to the lesson start. Boundaries are half-open:

    L <  24h        immediate_charge, nothing scheduled (collect as soon as accepted)
    24h <= L < 7d   immediate_auth,   capture at scheduled_at - 24h
    L >= 7d         deferred_auth,    capture at scheduled_at - 24h,
                                      authorization created at scheduled_at - 7d

A lead time of exactly 24h is immediate_auth and exactly 7d is deferred_auth.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..core.constants import CAPTURE_LEAD, DEFERRED_AUTH_WINDOW, IMMEDIATE_CHARGE_WINDOW
from ..models.booking import PaymentAuthType


@dataclass(frozen=True)
class PaymentSchedule:
    auth_type: PaymentAuthType
    scheduled_for: Optional[datetime]
    requires_auth_creation: bool


def lead_time(scheduled_at: datetime, now: datetime) -> timedelta:
    return scheduled_at - now


def hours_until(scheduled_at: datetime, now: datetime) -> float:
    return lead_time(scheduled_at, now).total_seconds() / 3600


def plan_payment_schedule(scheduled_at: datetime, now: datetime) -> PaymentSchedule:
    """Pick the auth type and capture time for a lesson starting at ``scheduled_at``."""
    lead = lead_time(scheduled_at, now)
    if lead < IMMEDIATE_CHARGE_WINDOW:
        return PaymentSchedule(PaymentAuthType.IMMEDIATE_CHARGE, None, False)
    if lead < DEFERRED_AUTH_WINDOW:
        return PaymentSchedule(PaymentAuthType.IMMEDIATE_AUTH, scheduled_at - CAPTURE_LEAD, False)
    return PaymentSchedule(PaymentAuthType.DEFERRED_AUTH, scheduled_at - CAPTURE_LEAD, True)


def recompute_capture_time(scheduled_at: datetime, now: datetime) -> Optional[datetime]:
    """
    Capture time for a moved lesson. The auth type is kept; only the
    capture instant follows the new lead time.
    """
    return plan_payment_schedule(scheduled_at, now).scheduled_for


def authorization_due_at(scheduled_at: datetime) -> datetime:
    return scheduled_at - DEFERRED_AUTH_WINDOW


def retry_backoff(retry_count: int, base: timedelta) -> timedelta:
    """Delay before attempt ``retry_count + 1``: base, 2*base, 4*base, ..."""
    return base * (2 ** max(retry_count - 1, 0))
