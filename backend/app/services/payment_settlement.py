# backend/app/services/payment_settlement.py
"""
Gateway side of ending a booking early.

``settle`` runs the gateway call a Settlement names (release the hold or
refund the capture) and returns the payment columns to write afterwards.
It never writes to the store itself; cancellation and the refund retry
both apply the returned columns with a conditional update.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from ..core.config import settings
from ..core.exceptions import DataIntegrityWarning
from ..domain.booking_plans import (
    IssueRefund,
    NoSettlement,
    ReleaseAuthorization,
    Settlement,
    SkipSettlement,
)
from ..domain.payment_state import (
    Refunded,
    Released,
    failed_attempt_columns,
    integrity_problems,
)
from ..integrations.stripe_gateway import (
    PaymentGateway,
    PaymentGatewayError,
    PaymentReferenceMissing,
    idempotency_key,
)
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

REFUND_REASON = "requested_by_customer"


@dataclass(frozen=True)
class SettlementOutcome:
    columns: Dict[str, Any] = field(default_factory=dict)
    refunded: bool = False
    released: bool = False
    skipped: bool = False
    failed: bool = False
    error: Optional[str] = None


def warn_integrity(
    booking_id: str, problem: str, *, kind: str = "invariant", **context: Any
) -> DataIntegrityWarning:
    """Log and count a stored booking that contradicts its own invariants."""
    warning = DataIntegrityWarning(booking_id, problem, **context)
    logger.warning(
        "Data integrity warning: %s",
        warning,
        extra={"booking_id": booking_id, "problem": problem, **context},
    )
    prometheus_metrics.record_integrity_warning(kind)
    return warning


def report_integrity_problems(booking: Booking) -> int:
    problems = integrity_problems(booking)
    for problem in problems:
        warn_integrity(booking.id, problem, status=booking.status)
    return len(problems)


def _skip(booking: Booking, reason: str, *, reconcile: bool) -> SettlementOutcome:
    warn_integrity(booking.id, reason, kind="payment_reference", ref=booking.payment_intent_ref)
    if reconcile:
        logger.error(
            "MANUAL RECONCILIATION REQUIRED: booking %s was paid but cannot be refunded (%s)",
            booking.id,
            reason,
            extra={"booking_id": booking.id, "price": booking.price},
        )
    prometheus_metrics.record_payment_stage("settlement", "skipped")
    columns = Released(
        auth_type=booking.payment_auth_type,
        ref=booking.payment_intent_ref,
        skipped=True,
        skip_reason=reason[:255],
    ).columns()
    if booking.is_paid:
        # keep the capture on record; only the skip flags change
        columns = {
            "payment_cancellation_skipped": True,
            "payment_skip_reason": reason[:255],
        }
    return SettlementOutcome(columns=columns, skipped=True)


def settle(
    gateway: PaymentGateway,
    booking: Booking,
    settlement: Settlement,
    now: datetime,
    *,
    retry_base: Optional[timedelta] = None,
) -> SettlementOutcome:
    if retry_base is None:
        retry_base = timedelta(minutes=settings.payment_retry_base_minutes)
    if isinstance(settlement, NoSettlement):
        return SettlementOutcome()

    if isinstance(settlement, SkipSettlement):
        return _skip(booking, settlement.reason, reconcile=settlement.reconcile)

    if isinstance(settlement, ReleaseAuthorization):
        try:
            gateway.cancel_authorization(
                settlement.ref, idempotency_key=idempotency_key(booking.id, "release")
            )
        except PaymentReferenceMissing as exc:
            reason = f"Payment reference unknown to gateway: {exc.message}"
            return _skip(booking, reason, reconcile=False)
        except PaymentGatewayError as exc:
            # an unreleased hold lapses on its own at the gateway
            prometheus_metrics.record_payment_stage("release", "failed")
            logger.error(
                "Failed to release authorization %s for booking %s: %s",
                settlement.ref,
                booking.id,
                exc.message,
                extra={"booking_id": booking.id},
            )
            return SettlementOutcome(
                columns={"payment_error": f"Authorization release failed: {exc.message}"[:1000]},
                failed=True,
                error=exc.message,
            )
        prometheus_metrics.record_payment_stage("release", "success")
        return SettlementOutcome(
            columns=Released(auth_type=booking.payment_auth_type, ref=settlement.ref).columns(),
            released=True,
        )

    if isinstance(settlement, IssueRefund):
        try:
            refund_ref = gateway.refund(
                settlement.ref,
                reason=REFUND_REASON,
                idempotency_key=idempotency_key(booking.id, "refund"),
            )
        except PaymentReferenceMissing as exc:
            reason = f"Payment reference unknown to gateway: {exc.message}"
            return _skip(booking, reason, reconcile=True)
        except PaymentGatewayError as exc:
            prometheus_metrics.record_payment_stage("refund", "failed")
            logger.error(
                "Refund failed for booking %s (%s): %s",
                booking.id,
                settlement.ref,
                exc.message,
                extra={"booking_id": booking.id, "retry_count": booking.payment_retry_count},
            )
            error = f"Refund failed: {exc.message}"
            return SettlementOutcome(
                columns=failed_attempt_columns(booking, error, now, retry_base),
                failed=True,
                error=error,
            )
        prometheus_metrics.record_payment_stage("refund", "success")
        columns = Refunded(
            auth_type=booking.payment_auth_type,
            ref=settlement.ref,
            captured_at=booking.payment_captured_at,
            refund_ref=refund_ref,
            refunded_at=now,
        ).columns()
        columns.update(payment_error=None, payment_claimed_at=None)
        return SettlementOutcome(columns=columns, refunded=True)

    raise TypeError(f"Unknown settlement {settlement!r}")
