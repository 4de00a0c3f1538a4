# backend/app/services/payment_scheduler_service.py
"""
Payment Scheduler Service for the Tipu platform

Batch jobs that move money at the right time relative to the lesson:

- ``process_scheduled_payments`` (every 15 minutes)
    (a) places the authorization hold for deferred bookings once the
        lesson is within 7 days
    (b) captures accepted bookings whose capture time has arrived
        (authorizing first when no hold exists) and confirms them
- ``retry_failed_payments`` (hourly) re-attempts failed stages with
  exponential backoff and finishes refunds that failed on cancellation

Each booking is claimed with a conditional write before any gateway
call, and one failing booking never stops the batch.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional, TypedDict

from sqlalchemy.orm import Session

from ..core.clock import Clock, ensure_utc, system_clock
from ..core.config import settings
from ..core.constants import DEFERRED_AUTH_WINDOW, MISSING_PAYMENT_METHOD_ERROR
from ..core.exceptions import StaleBookingException
from ..domain.booking_plans import IssueRefund, ReleaseAuthorization, plan_settlement
from ..domain.payment_state import (
    Authorized,
    Captured,
    failed_attempt_columns,
    is_valid_payment_reference,
)
from ..integrations.stripe_gateway import (
    GatewayResult,
    PaymentGateway,
    PaymentGatewayError,
    idempotency_key,
)
from ..models.booking import Booking, BookingStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import OPEN_PAYMENT_STATUSES, BookingRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .meeting_link_service import MeetingLinkService
from .payment_settlement import report_integrity_problems, settle

logger = logging.getLogger(__name__)


class ProcessPaymentsResult(TypedDict):
    auths_created: int
    captured: int
    successful: int
    failed: int
    skipped: int
    errors: List[str]


class RetryPaymentsResult(TypedDict):
    retried: int
    successful: int
    failed: int
    exhausted: int


class PaymentSchedulerService(BaseService):
    """Authorization, capture and retry runs over the booking store."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        meeting_service: MeetingLinkService,
        *,
        clock: Clock = system_clock,
        booking_repository: Optional[BookingRepository] = None,
        user_repository: Optional[UserRepository] = None,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base: Optional[timedelta] = None,
        authorization_hold: Optional[timedelta] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.meeting_service = meeting_service
        self.clock = clock
        self.booking_repository = booking_repository or BookingRepository(db)
        self.user_repository = user_repository or UserRepository(db)
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.max_retries = max_retries if max_retries is not None else settings.payment_max_retries
        self.retry_base = retry_base or timedelta(minutes=settings.payment_retry_base_minutes)
        self.authorization_hold = authorization_hold or timedelta(
            days=settings.authorization_hold_days
        )

    def _now(self) -> datetime:
        return ensure_utc(self.clock.now())

    def _write(self, booking: Booking, expected_status: str, **values: Any) -> Booking:
        with self.transaction():
            return self.booking_repository.update_if_current(booking, expected_status, **values)

    # Claim / record

    def _claim(self, booking: Booking, now: datetime) -> Booking:
        """
        Mark the booking as in flight. Raises StaleBookingException when
        another writer touched it since it was read.
        """
        return self._write(
            booking, booking.status, payment_attempted=True, payment_claimed_at=now
        )

    def _record(self, booking: Booking, now: datetime, **values: Any) -> Optional[Booking]:
        """
        Store the result of a gateway call made under a claim.

        The booking may have moved on while the gateway call ran (a tutor
        accepting, or a cancellation after the claim went stale). Open
        bookings get the values re-applied on the fresh row; a booking
        that ended meanwhile has the new hold released or the new capture
        refunded instead.
        """
        try:
            return self._write(booking, booking.status, **values)
        except StaleBookingException:
            fresh = self.booking_repository.reload(booking.id)
            if fresh is None:
                return None

        if fresh.status in OPEN_PAYMENT_STATUSES:
            confirming = values.get("status") == BookingStatus.CONFIRMED
            if confirming and fresh.status != BookingStatus.ACCEPTED:
                values = {k: v for k, v in values.items() if k not in ("status", "confirmed_at")}
            return self._write(fresh, fresh.status, **values)

        ref = values.get("payment_intent_ref")
        if fresh.status in (BookingStatus.CANCELLED, BookingStatus.DECLINED) and ref:
            self.logger.warning(
                "Booking %s ended while its payment was in flight; settling %s",
                fresh.id,
                ref,
                extra={"booking_id": fresh.id, "status": fresh.status},
            )
            columns = {k: v for k, v in values.items() if k not in ("status", "confirmed_at")}
            fresh = self._write(fresh, fresh.status, **columns)
            settlement = (
                IssueRefund(ref) if values.get("is_paid") else ReleaseAuthorization(ref)
            )
            outcome = settle(self.gateway, fresh, settlement, now, retry_base=self.retry_base)
            if outcome.columns:
                fresh = self._write(fresh, fresh.status, **outcome.columns)
        return None

    def _fail(self, booking: Booking, error: str, now: datetime, **extra: Any) -> None:
        self.logger.error(
            "Payment stage failed for booking %s: %s",
            booking.id,
            error,
            extra={"booking_id": booking.id, "retry_count": booking.payment_retry_count},
        )
        self._record(
            booking, now, **failed_attempt_columns(booking, error, now, self.retry_base), **extra
        )

    # Gateway stages

    @staticmethod
    def _next_generation(booking: Booking, exc: PaymentGatewayError) -> Dict[str, Any]:
        """A definitive decline leaves no hold, so the next attempt needs a fresh key."""
        # an intent that was charged outright must never be followed by a second hold
        if exc.retryable or exc.code == "unexpected_status":
            return {}
        return {"auth_generation": (booking.auth_generation or 0) + 1}

    def _authorize(self, booking: Booking) -> GatewayResult:
        student = self.user_repository.get_by_id(booking.student_id)
        payer = self.user_repository.get_payer_for_student(student) if student else None
        if payer is None or not payer.payment_customer_ref:
            raise PaymentGatewayError(
                MISSING_PAYMENT_METHOD_ERROR, code="missing_payment_method", retryable=False
            )
        return self.gateway.create_authorization(
            amount=booking.price,
            currency=booking.currency or settings.payment_currency,
            customer_ref=payer.payment_customer_ref,
            payment_method_ref=payer.payment_method_ref,
            # retries of one generation replay the same hold
            idempotency_key=idempotency_key(
                booking.id, f"authorize:g{booking.auth_generation or 0}"
            ),
            metadata={"booking_id": booking.id, "payer_id": payer.id},
        )

    def authorize_booking(self, booking: Booking, now: datetime) -> bool:
        """Place the hold for one booking. Returns whether it succeeded."""
        booking = self._claim(booking, now)
        try:
            result = self._authorize(booking)
        except PaymentGatewayError as exc:
            prometheus_metrics.record_payment_stage("authorize", "failed")
            self._fail(booking, exc.message, now, **self._next_generation(booking, exc))
            return False

        prometheus_metrics.record_payment_stage("authorize", "success")
        self._record(
            booking,
            now,
            **Authorized(
                auth_type=booking.payment_auth_type,
                ref=result.ref,
                scheduled_for=booking.payment_scheduled_for,
                expires_at=now + self.authorization_hold,
            ).columns(),
            payment_attempted=False,
            payment_claimed_at=None,
            payment_error=None,
        )
        self.log_operation("payment_authorized", booking_id=booking.id, ref=result.ref)
        return True

    def capture_booking(self, booking: Booking, now: datetime) -> bool:
        """
        Capture one accepted booking, authorizing first when it holds no
        authorization, then confirm it and create the meeting best-effort.
        """
        booking = self._claim(booking, now)
        ref = booking.payment_intent_ref
        authorized_now: Dict[str, Any] = {}

        if ref and not is_valid_payment_reference(ref):
            report_integrity_problems(booking)
            self._fail(booking, f"Invalid payment reference: {ref}", now)
            return False

        if not ref:
            try:
                ref = self._authorize(booking).ref
            except PaymentGatewayError as exc:
                prometheus_metrics.record_payment_stage("authorize", "failed")
                self._fail(booking, exc.message, now, **self._next_generation(booking, exc))
                return False
            prometheus_metrics.record_payment_stage("authorize", "success")
            authorized_now = Authorized(
                auth_type=booking.payment_auth_type,
                ref=ref,
                scheduled_for=booking.payment_scheduled_for,
                expires_at=now + self.authorization_hold,
            ).columns()

        try:
            self.gateway.capture(ref, idempotency_key=idempotency_key(booking.id, "capture"))
        except PaymentGatewayError as exc:
            prometheus_metrics.record_payment_stage("capture", "failed")
            self._fail(booking, exc.message, now, **authorized_now)
            return False

        prometheus_metrics.record_payment_stage("capture", "success")
        recorded = self._record(
            booking,
            now,
            **Captured(auth_type=booking.payment_auth_type, ref=ref, captured_at=now).columns(),
            status=BookingStatus.CONFIRMED,
            confirmed_at=now,
            payment_claimed_at=None,
            payment_error=None,
        )
        self.log_operation("payment_captured", booking_id=booking.id, ref=ref)
        if recorded is not None and recorded.status == BookingStatus.CONFIRMED:
            self.meeting_service.try_generate_meeting(recorded.id)
        return True

    # Batch runs

    @BaseService.measure_operation("process_scheduled_payments")
    def process_scheduled_payments(self) -> ProcessPaymentsResult:
        """Run the authorization phase, then the capture phase."""
        now = self._now()
        result: ProcessPaymentsResult = {
            "auths_created": 0,
            "captured": 0,
            "successful": 0,
            "failed": 0,
            "skipped": 0,
            "errors": [],
        }

        # Phase A: deferred authorizations whose window has opened
        for booking in self.booking_repository.get_bookings_needing_authorization(
            now, DEFERRED_AUTH_WINDOW, self.batch_size
        ):
            self._run_one(booking, result, self.authorize_booking, now, "auths_created")

        # Phase B: captures that are due
        for booking in self.booking_repository.get_bookings_due_for_capture(now, self.batch_size):
            if booking.status != BookingStatus.ACCEPTED:
                # collected after the tutor accepts
                result["skipped"] += 1
                continue
            if booking.requires_auth_creation and not booking.payment_intent_ref:
                self.logger.info(
                    "Booking %s reached capture time without its deferred hold", booking.id
                )
            self._run_one(booking, result, self.capture_booking, now, "captured")

        self.logger.info(
            "Scheduled payments processed: %d authorizations, %d captures, %d failed, %d skipped",
            result["auths_created"],
            result["captured"],
            result["failed"],
            result["skipped"],
            extra={
                "job": "process_scheduled_payments",
                **{k: v for k, v in result.items() if k != "errors"},
            },
        )
        return result

    def _run_one(
        self,
        booking: Booking,
        result: ProcessPaymentsResult,
        stage: Any,
        now: datetime,
        counter: str,
    ) -> None:
        booking_id = booking.id
        try:
            succeeded = stage(booking, now)
        except StaleBookingException:
            self.logger.info("Booking %s changed before it could be claimed; skipping", booking_id)
            result["skipped"] += 1
            return
        except Exception as exc:
            self.db.rollback()
            self.logger.error(
                "Unexpected error processing payment for booking %s: %s",
                booking_id,
                exc,
                exc_info=True,
                extra={"booking_id": booking_id},
            )
            result["failed"] += 1
            result["errors"].append(f"{booking_id}: {exc}")
            return

        if succeeded:
            result[counter] += 1  # type: ignore[literal-required]
            result["successful"] += 1
        else:
            result["failed"] += 1
            result["errors"].append(f"{booking_id}: payment stage failed")

    def _retry_one(self, booking: Booking, now: datetime) -> bool:
        if booking.status == BookingStatus.CANCELLED:
            settlement = plan_settlement(booking)
            if not isinstance(settlement, IssueRefund):
                return False
            outcome = settle(self.gateway, booking, settlement, now, retry_base=self.retry_base)
            if outcome.columns:
                self._write(booking, BookingStatus.CANCELLED, **outcome.columns)
            if outcome.refunded:
                self.log_operation("refund_completed_on_retry", booking_id=booking.id)
            return outcome.refunded

        capture_due = booking.payment_scheduled_for is None or ensure_utc(
            booking.payment_scheduled_for
        ) <= now
        if capture_due and booking.status == BookingStatus.ACCEPTED:
            return self.capture_booking(booking, now)
        if not booking.payment_intent_ref:
            return self.authorize_booking(booking, now)
        # held and waiting for its capture time; the error is stale
        self._write(booking, booking.status, payment_attempted=False, payment_error=None)
        return True

    @BaseService.measure_operation("retry_failed_payments")
    def retry_failed_payments(self) -> RetryPaymentsResult:
        now = self._now()
        result: RetryPaymentsResult = {"retried": 0, "successful": 0, "failed": 0, "exhausted": 0}

        for booking in self.booking_repository.get_bookings_for_payment_retry(
            now, self.max_retries, self.batch_size
        ):
            booking_id = booking.id
            result["retried"] += 1
            try:
                succeeded = self._retry_one(booking, now)
            except StaleBookingException:
                self.logger.info(
                    "Booking %s changed during retry; leaving it for the next run", booking_id
                )
                result["failed"] += 1
                continue
            except Exception as exc:
                self.db.rollback()
                self.logger.error(
                    "Unexpected error retrying payment for booking %s: %s",
                    booking_id,
                    exc,
                    exc_info=True,
                    extra={"booking_id": booking_id},
                )
                result["failed"] += 1
                continue

            if succeeded:
                result["successful"] += 1
                continue
            result["failed"] += 1
            fresh = self.booking_repository.reload(booking_id)
            if fresh is not None and (fresh.payment_retry_count or 0) >= self.max_retries:
                result["exhausted"] += 1
                self.logger.error(
                    "Payment for booking %s failed %d times; manual intervention required: %s",
                    booking_id,
                    fresh.payment_retry_count,
                    fresh.payment_error,
                    extra={"booking_id": booking_id, "manual_intervention": True},
                )

        self.logger.info(
            "Payment retry run: %d retried, %d successful, %d failed, %d exhausted",
            result["retried"],
            result["successful"],
            result["failed"],
            result["exhausted"],
            extra={"job": "retry_failed_payments", **result},
        )
        return result
