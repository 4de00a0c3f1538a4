# backend/app/services/booking_lifecycle_service.py
"""
Booking Lifecycle Service for the Tipu platform

Executes every interactive state transition of a booking:

    tutor-suggested -> pending | declined
    pending         -> accepted | declined | cancelled
    accepted        -> confirmed (payment) | cancelled
    confirmed       -> completed | cancelled

Who may act is answered by ``domain.capabilities``; when money moves is
answered by ``domain.payment_schedule``. Every write is a conditional
update on (status, version). A lost race is re-read and re-evaluated
once before the conflict is reported to the caller.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.orm import Session

from ..core.clock import Clock, ensure_utc, system_clock
from ..core.config import settings
from ..core.constants import (
    DEFAULT_DECLINE_REASON,
    DEFAULT_LESSON_DURATION,
    MAX_LESSON_DURATION,
    MIN_LESSON_DURATION,
    MIN_REASON_LENGTH,
    MIN_TOPICS_COVERED_LENGTH,
    STUDENT_CANCELLATION_WINDOW,
    TUTOR_RESCHEDULE_WINDOW,
)
from ..core.enums import Level, RoleName, Subject
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    InsufficientNoticeException,
    InvalidTransitionException,
    NotFoundException,
    StaleBookingException,
    UnauthorizedException,
    ValidationException,
)
from ..core.ulid_helper import generate_ulid
from ..domain.booking_plans import plan_cancellation, plan_reschedule_approval, plan_settlement
from ..domain.capabilities import (
    BookingFacts,
    Capabilities,
    Party,
    RelatedParties,
    Relation,
    check_booking_creator,
    resolve_capabilities,
)
from ..domain.payment_schedule import hours_until, plan_payment_schedule
from ..domain.payment_state import (
    AwaitingAuthorization,
    Authorized,
    Captured,
    Unscheduled,
    is_valid_payment_reference,
    reset_attempt_columns,
)
from ..integrations.stripe_gateway import PaymentGateway, PaymentGatewayError, idempotency_key
from ..models.booking import Booking, BookingStatus
from ..models.user import User
from ..repositories.booking_repository import BookingRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService
from .meeting_link_service import MeetingLinkService, MeetingOutcome
from .payment_settlement import report_integrity_problems, settle

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPEN_STATUSES = (BookingStatus.PENDING, BookingStatus.ACCEPTED)
CANCELLABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.CONFIRMED)


@dataclass(frozen=True)
class CancellationResult:
    booking: Booking
    refunded: bool
    released: bool
    payment_cancellation_skipped: bool
    message: str


class BookingLifecycleService(BaseService):
    """
    Service layer for booking state transitions.

    Gateway and meeting calls never run inside a database transaction;
    state is written first and the external effect follows.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        meeting_service: MeetingLinkService,
        *,
        clock: Clock = system_clock,
        booking_repository: Optional[BookingRepository] = None,
        user_repository: Optional[UserRepository] = None,
        claim_timeout: Optional[timedelta] = None,
        authorization_hold: Optional[timedelta] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.meeting_service = meeting_service
        self.clock = clock
        self.booking_repository = booking_repository or BookingRepository(db)
        self.user_repository = user_repository or UserRepository(db)
        self.claim_timeout = claim_timeout or timedelta(
            minutes=settings.payment_claim_timeout_minutes
        )
        self.authorization_hold = authorization_hold or timedelta(
            days=settings.authorization_hold_days
        )

    # Shared helpers

    def _now(self) -> datetime:
        return ensure_utc(self.clock.now())

    def _actor(self, actor_id: str) -> User:
        actor = self.user_repository.get_by_id(actor_id)
        if actor is None:
            raise UnauthorizedException("Unknown user", code="UNKNOWN_USER")
        return actor

    def _load(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    def _capabilities(self, actor: User, booking: Booking) -> Capabilities:
        student = self.user_repository.get_by_id(booking.student_id)
        student_party = (
            Party.of(student)
            if student is not None
            else Party(id=booking.student_id, role=RoleName.STUDENT.value)
        )
        return resolve_capabilities(
            Party.of(actor),
            BookingFacts.of(booking),
            RelatedParties.for_student(student_party),
            self._now().date(),
        )

    @staticmethod
    def _require(allowed: bool, message: str, code: str = "FORBIDDEN") -> None:
        if not allowed:
            raise ForbiddenException(message, code=code)

    @staticmethod
    def _require_status(booking: Booking, operation: str, *allowed: BookingStatus) -> None:
        if booking.status not in allowed:
            raise InvalidTransitionException(
                operation, booking.status, [status.value for status in allowed]
            )

    def _write(self, booking: Booking, expected_status: str, **values: Any) -> Booking:
        with self.transaction():
            return self.booking_repository.update_if_current(booking, expected_status, **values)

    def _with_reread(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``operation``; on a lost race re-read and re-evaluate exactly once."""
        try:
            return operation(*args, **kwargs)
        except StaleBookingException as exc:
            self.logger.info(
                "Concurrent update on booking %s, re-evaluating",
                exc.details.get("booking_id"),
            )
            self.db.expire_all()
            return operation(*args, **kwargs)

    def _validate_future(self, when: datetime, message: str) -> datetime:
        when = ensure_utc(when)
        if when <= self._now():
            raise ValidationException(message, code="TIME_NOT_IN_FUTURE")
        return when

    @staticmethod
    def _validate_reason(reason: Optional[str], *, required: bool = False) -> Optional[str]:
        text = (reason or "").strip()
        if not text:
            if required:
                raise ValidationException(
                    f"A reason of at least {MIN_REASON_LENGTH} characters is required",
                    code="REASON_REQUIRED",
                )
            return None
        if len(text) < MIN_REASON_LENGTH:
            raise ValidationException(
                f"Reason must be at least {MIN_REASON_LENGTH} characters",
                code="REASON_TOO_SHORT",
            )
        return text

    def _claim_is_fresh(self, booking: Booking) -> bool:
        claimed_at = booking.payment_claimed_at
        if not booking.payment_attempted or claimed_at is None or booking.is_paid:
            return False
        return self._now() - ensure_utc(claimed_at) < self.claim_timeout

    def _confirm_paid(self, booking: Booking) -> Booking:
        """accepted -> confirmed for a booking whose money is already captured."""
        now = self._now()
        booking = self._write(
            booking, BookingStatus.ACCEPTED, status=BookingStatus.CONFIRMED, confirmed_at=now
        )
        self.log_operation("booking_confirmed", booking_id=booking.id)
        self.meeting_service.try_generate_meeting(booking.id)
        return self.booking_repository.reload(booking.id) or booking

    # Creation

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        actor_id: str,
        *,
        student_id: str,
        tutor_id: str,
        subject: str,
        level: str,
        scheduled_at: datetime,
        price: int,
        duration_minutes: int = DEFAULT_LESSON_DURATION,
    ) -> Booking:
        """
        Create a pending booking and fix its payment schedule.

        Raises:
            ValidationException: bad input or a lesson time not in the future
            ForbiddenException: the actor may not book for this student
            NotFoundException: unknown tutor
        """
        actor = self._actor(actor_id)
        now = self._now()

        if subject not in {s.value for s in Subject}:
            raise ValidationException(f"Unknown subject: {subject}", code="INVALID_SUBJECT")
        if level not in {lv.value for lv in Level}:
            raise ValidationException(f"Unknown level: {level}", code="INVALID_LEVEL")
        if not MIN_LESSON_DURATION <= duration_minutes <= MAX_LESSON_DURATION:
            raise ValidationException(
                f"Duration must be between {MIN_LESSON_DURATION} and "
                f"{MAX_LESSON_DURATION} minutes",
                code="INVALID_DURATION",
            )
        if price <= 0:
            raise ValidationException("Price must be a positive amount", code="INVALID_PRICE")
        scheduled_at = self._validate_future(scheduled_at, "Lesson time must be in the future")

        tutor = self.user_repository.get_by_id(tutor_id)
        if tutor is None or not tutor.is_tutor:
            raise NotFoundException("Tutor not found", code="TUTOR_NOT_FOUND")

        student = self.user_repository.get_by_id(student_id)
        student_party = Party.of(student) if student is not None else None
        denial = check_booking_creator(
            Party.of(actor),
            student_party,
            RelatedParties.for_student(student_party) if student_party else None,
            now.date(),
        )
        if denial is not None:
            raise ForbiddenException(denial.message, code=denial.code)

        schedule = plan_payment_schedule(scheduled_at, now)
        with self.transaction():
            booking = self.booking_repository.create(
                id=generate_ulid(),
                version=1,
                student_id=student_id,
                tutor_id=tutor_id,
                booked_by=actor.id,
                subject=subject,
                level=level,
                duration_minutes=duration_minutes,
                price=price,
                currency=settings.payment_currency,
                scheduled_at=scheduled_at,
                created_at=now,
                status=BookingStatus.PENDING.value,
                **AwaitingAuthorization(
                    auth_type=schedule.auth_type.value,
                    scheduled_for=schedule.scheduled_for,
                    requires_auth_creation=schedule.requires_auth_creation,
                ).columns(),
                **reset_attempt_columns(),
            )

        self.log_operation(
            "booking_created",
            booking_id=booking.id,
            actor_id=actor.id,
            payment_auth_type=schedule.auth_type.value,
        )
        return booking

    @BaseService.measure_operation("suggest_lesson")
    def suggest_lesson(
        self,
        tutor_id: str,
        *,
        student_id: str,
        subject: str,
        level: str,
        scheduled_at: datetime,
        duration_minutes: int = DEFAULT_LESSON_DURATION,
        tutor_notes: Optional[str] = None,
    ) -> Booking:
        """A tutor proposes a lesson to a student they already teach."""
        tutor = self._actor(tutor_id)
        self._require(tutor.is_tutor, "Only tutors can suggest lessons", code="TUTOR_ONLY")
        if level not in {lv.value for lv in Level}:
            raise ValidationException(f"Unknown level: {level}", code="INVALID_LEVEL")
        if subject not in {s.value for s in Subject}:
            raise ValidationException(f"Unknown subject: {subject}", code="INVALID_SUBJECT")
        if not MIN_LESSON_DURATION <= duration_minutes <= MAX_LESSON_DURATION:
            raise ValidationException(
                f"Duration must be between {MIN_LESSON_DURATION} and "
                f"{MAX_LESSON_DURATION} minutes",
                code="INVALID_DURATION",
            )
        scheduled_at = self._validate_future(scheduled_at, "Lesson time must be in the future")

        student = self.user_repository.get_by_id(student_id)
        if student is None or not student.is_student:
            raise NotFoundException("Student not found", code="STUDENT_NOT_FOUND")
        self._require(
            self.booking_repository.has_booking_between(tutor.id, student.id),
            "You can only suggest lessons to students you have taught before",
            code="NO_PRIOR_BOOKING",
        )

        hourly = tutor.rate_for(level) or settings.default_hourly_rates.get(level)
        if not hourly:
            raise ValidationException(f"No hourly rate set for {level}", code="NO_RATE")
        price = int(round(hourly * duration_minutes / 60))
        now = self._now()

        with self.transaction():
            booking = self.booking_repository.create(
                id=generate_ulid(),
                version=1,
                student_id=student.id,
                tutor_id=tutor.id,
                booked_by=tutor.id,
                subject=subject,
                level=level,
                duration_minutes=duration_minutes,
                price=price,
                currency=settings.payment_currency,
                scheduled_at=scheduled_at,
                created_at=now,
                status=BookingStatus.TUTOR_SUGGESTED.value,
                tutor_notes=(tutor_notes or "").strip() or None,
                suggested_at=now,
                **Unscheduled().columns(),
                **reset_attempt_columns(),
            )

        self.log_operation("lesson_suggested", booking_id=booking.id, tutor_id=tutor.id)
        return booking

    # Suggestions

    @BaseService.measure_operation("approve_suggestion")
    def approve_suggestion(self, booking_id: str, actor_id: str) -> Booking:
        return self._with_reread(self._approve_suggestion, booking_id, actor_id)

    def _approve_suggestion(self, booking_id: str, actor_id: str) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(caps.can_view, "You do not have access to this booking")
        self._require(
            caps.can_approve_suggestion,
            "Only the student (18+), their parent or an admin can approve this suggestion",
            code="NOT_SUGGESTION_APPROVER",
        )
        self._require_status(booking, "approve", BookingStatus.TUTOR_SUGGESTED)
        self._validate_future(booking.scheduled_at, "The suggested lesson time has passed")

        now = self._now()
        schedule = plan_payment_schedule(ensure_utc(booking.scheduled_at), now)
        booking = self._write(
            booking,
            BookingStatus.TUTOR_SUGGESTED,
            status=BookingStatus.PENDING,
            approved_by=actor.id,
            approved_at=now,
            **AwaitingAuthorization(
                auth_type=schedule.auth_type.value,
                scheduled_for=schedule.scheduled_for,
                requires_auth_creation=schedule.requires_auth_creation,
            ).columns(),
            **reset_attempt_columns(),
        )
        self.log_operation(
            "suggestion_approved",
            booking_id=booking.id,
            actor_id=actor.id,
            payment_auth_type=schedule.auth_type.value,
        )
        return booking

    @BaseService.measure_operation("decline_suggestion")
    def decline_suggestion(
        self, booking_id: str, actor_id: str, reason: Optional[str] = None
    ) -> Booking:
        return self._with_reread(self._decline_suggestion, booking_id, actor_id, reason)

    def _decline_suggestion(self, booking_id: str, actor_id: str, reason: Optional[str]) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_decline_suggestion,
            "Only the student's parent or an admin can decline this suggestion",
            code="NOT_SUGGESTION_DECLINER",
        )
        self._require_status(booking, "decline", BookingStatus.TUTOR_SUGGESTED)
        text = self._validate_reason(reason)

        now = self._now()
        booking = self._write(
            booking,
            BookingStatus.TUTOR_SUGGESTED,
            status=BookingStatus.DECLINED,
            declined_by=actor.id,
            declined_at=now,
            decline_reason=text or DEFAULT_DECLINE_REASON,
        )
        self.log_operation("suggestion_declined", booking_id=booking.id, actor_id=actor.id)
        return booking

    # Tutor response

    @BaseService.measure_operation("accept_booking")
    def accept_booking(self, booking_id: str, actor_id: str) -> Booking:
        return self._with_reread(self._accept_booking, booking_id, actor_id)

    def _accept_booking(self, booking_id: str, actor_id: str) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(caps.can_accept, "Only the booking's tutor can accept it", code="TUTOR_ONLY")
        self._require_status(booking, "accept", BookingStatus.PENDING)

        booking = self._write(
            booking,
            BookingStatus.PENDING,
            status=BookingStatus.ACCEPTED,
            accepted_at=self._now(),
        )
        self.log_operation("booking_accepted", booking_id=booking.id, tutor_id=actor.id)

        # paid up front through confirm-payment while still pending
        if booking.is_paid:
            booking = self._confirm_paid(booking)
        return booking

    @BaseService.measure_operation("decline_booking")
    def decline_booking(
        self, booking_id: str, actor_id: str, reason: Optional[str] = None
    ) -> Booking:
        return self._with_reread(self._decline_booking, booking_id, actor_id, reason)

    def _decline_booking(self, booking_id: str, actor_id: str, reason: Optional[str]) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_decline, "Only the booking's tutor can decline it", code="TUTOR_ONLY"
        )
        self._require_status(booking, "decline", BookingStatus.PENDING)
        text = self._validate_reason(reason)

        now = self._now()
        settlement = plan_settlement(booking)
        booking = self._write(
            booking,
            BookingStatus.PENDING,
            status=BookingStatus.DECLINED,
            declined_by=actor.id,
            declined_at=now,
            decline_reason=text or DEFAULT_DECLINE_REASON,
        )
        self.log_operation("booking_declined", booking_id=booking.id, tutor_id=actor.id)

        outcome = settle(self.gateway, booking, settlement, now)
        if outcome.columns:
            booking = self._write(booking, BookingStatus.DECLINED, **outcome.columns)
        return booking

    # Rescheduling

    @BaseService.measure_operation("request_reschedule")
    def request_reschedule(
        self, booking_id: str, actor_id: str, new_scheduled_at: datetime
    ) -> Booking:
        return self._with_reread(self._request_reschedule, booking_id, actor_id, new_scheduled_at)

    def _request_reschedule(
        self, booking_id: str, actor_id: str, new_scheduled_at: datetime
    ) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_request_reschedule,
            "You are not allowed to reschedule this booking",
            code="NOT_RESCHEDULER",
        )
        if booking.is_terminal:
            raise InvalidTransitionException("reschedule", booking.status)
        request = booking.reschedule_request
        if request is not None and request.is_pending:
            raise ConflictException(
                "A reschedule request is already pending for this booking",
                code="RESCHEDULE_PENDING",
            )

        now = self._now()
        if caps.reschedule_requires_notice:
            remaining = hours_until(ensure_utc(booking.scheduled_at), now)
            if remaining < TUTOR_RESCHEDULE_WINDOW.total_seconds() / 3600:
                raise InsufficientNoticeException(
                    "reschedule", int(TUTOR_RESCHEDULE_WINDOW.total_seconds() // 3600), remaining
                )
        new_time = self._validate_future(new_scheduled_at, "New lesson time must be in the future")
        if new_time == ensure_utc(booking.scheduled_at):
            raise ValidationException(
                "New lesson time is the same as the current one", code="SAME_TIME"
            )

        booking = self._write(
            booking,
            booking.status,
            reschedule_requested_by=actor.id,
            reschedule_requested_at=now,
            reschedule_new_scheduled_at=new_time,
            reschedule_status="pending",
            reschedule_responded_by=None,
            reschedule_responded_at=None,
            reschedule_decline_reason=None,
        )
        self.log_operation(
            "reschedule_requested",
            booking_id=booking.id,
            actor_id=actor.id,
            new_scheduled_at=new_time.isoformat(),
        )
        return booking

    def _pending_request_or_conflict(self, booking: Booking) -> None:
        request = booking.reschedule_request
        if request is None or not request.is_pending:
            raise ConflictException("No pending reschedule request", code="NO_PENDING_RESCHEDULE")

    @BaseService.measure_operation("approve_reschedule")
    def approve_reschedule(self, booking_id: str, actor_id: str) -> Booking:
        booking, plan = self._with_reread(self._approve_reschedule, booking_id, actor_id)

        # Effects run after the write and never undo it
        if plan.release_ref:
            try:
                self.gateway.cancel_authorization(
                    plan.release_ref,
                    idempotency_key=idempotency_key(booking.id, f"release:{plan.release_ref}"),
                )
            except PaymentGatewayError as exc:
                self.logger.warning(
                    "Could not release superseded authorization %s for booking %s: %s",
                    plan.release_ref,
                    booking.id,
                    exc,
                )
        if plan.regenerate_meeting:
            self.meeting_service.try_generate_meeting(booking.id, force=True)
            booking = self.booking_repository.reload(booking.id) or booking
        return booking

    def _approve_reschedule(self, booking_id: str, actor_id: str) -> Any:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        self._pending_request_or_conflict(booking)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_respond_reschedule,
            "Only the other party can respond to this reschedule request",
            code="NOT_RESCHEDULE_RESPONDER",
        )
        if booking.is_terminal:
            raise InvalidTransitionException("reschedule", booking.status)
        self._validate_future(
            booking.reschedule_new_scheduled_at, "The requested lesson time has already passed"
        )

        plan = plan_reschedule_approval(
            booking,
            actor_id=actor.id,
            now=self._now(),
            authorization_hold=self.authorization_hold,
        )
        booking = self._write(booking, booking.status, **plan.updates)
        self.log_operation(
            "reschedule_approved",
            booking_id=booking.id,
            actor_id=actor.id,
            scheduled_at=booking.scheduled_at.isoformat(),
        )
        return booking, plan

    @BaseService.measure_operation("decline_reschedule")
    def decline_reschedule(
        self, booking_id: str, actor_id: str, reason: Optional[str] = None
    ) -> Booking:
        return self._with_reread(self._decline_reschedule, booking_id, actor_id, reason)

    def _decline_reschedule(
        self, booking_id: str, actor_id: str, reason: Optional[str]
    ) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        self._pending_request_or_conflict(booking)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_respond_reschedule,
            "Only the other party can respond to this reschedule request",
            code="NOT_RESCHEDULE_RESPONDER",
        )
        text = self._validate_reason(reason)

        booking = self._write(
            booking,
            booking.status,
            reschedule_status="declined",
            reschedule_responded_by=actor.id,
            reschedule_responded_at=self._now(),
            reschedule_decline_reason=text or DEFAULT_DECLINE_REASON,
        )
        self.log_operation("reschedule_declined", booking_id=booking.id, actor_id=actor.id)
        return booking

    # Cancellation

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self, booking_id: str, actor_id: str, reason: Optional[str] = None
    ) -> CancellationResult:
        """
        Cancel a booking.

        Uses a 3-phase pattern so no database transaction is held across
        gateway calls:
        - Phase 1: validate and write ``cancelled`` (conditional, atomic with eligibility)
        - Phase 2: release the hold or refund the capture (no transaction)
        - Phase 3: write the settlement result and drop the meeting

        Raises:
            NotFoundException: unknown booking
            ForbiddenException: actor may not cancel, or inside the notice window
            ValidationException: tutor cancellation without a proper reason
            ConflictException: terminal booking, or a scheduler capture in flight
        """
        # ========== PHASE 1: Validate and claim the cancellation ==========
        booking, plan = self._with_reread(self._write_cancellation, booking_id, actor_id, reason)
        now = self._now()

        if plan.by_tutor:
            self.logger.warning(
                "TUTOR CANCELLATION: booking %s cancelled by tutor %s (reason: %s)",
                booking.id,
                actor_id,
                booking.cancellation_reason,
                extra={"booking_id": booking.id, "actor_id": actor_id, "admin_review": True},
            )

        # ========== PHASE 2: Gateway settlement (NO transaction) ==========
        outcome = settle(self.gateway, booking, plan.settlement, now)

        # ========== PHASE 3: Record settlement, drop the meeting ==========
        if outcome.columns:
            booking = self._write(booking, BookingStatus.CANCELLED, **outcome.columns)
        self.meeting_service.delete_meeting(plan.meeting_id)

        if outcome.refunded:
            message = "Booking cancelled and refund issued"
        elif outcome.skipped:
            message = "Booking cancelled; payment settlement was skipped and flagged for review"
        elif outcome.failed:
            message = "Booking cancelled; payment settlement failed and will be retried"
        else:
            message = "Booking cancelled"

        self.log_operation(
            "booking_cancelled",
            booking_id=booking.id,
            actor_id=actor_id,
            refunded=outcome.refunded,
            released=outcome.released,
            settlement_skipped=outcome.skipped,
        )
        return CancellationResult(
            booking=booking,
            refunded=outcome.refunded,
            released=outcome.released,
            payment_cancellation_skipped=outcome.skipped,
            message=message,
        )

    def _write_cancellation(self, booking_id: str, actor_id: str, reason: Optional[str]) -> Any:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(caps.can_cancel, "You are not allowed to cancel this booking")
        if booking.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionException(
                "cancel", booking.status, [s.value for s in CANCELLABLE_STATUSES]
            )

        now = self._now()
        if caps.cancel_requires_reason:
            reason = self._validate_reason(reason, required=True)
        if caps.cancel_requires_notice:
            remaining = hours_until(ensure_utc(booking.scheduled_at), now)
            if remaining < STUDENT_CANCELLATION_WINDOW.total_seconds() / 3600:
                raise InsufficientNoticeException(
                    "cancel", int(STUDENT_CANCELLATION_WINDOW.total_seconds() // 3600), remaining
                )
        if self._claim_is_fresh(booking):
            raise ConflictException(
                "A payment for this booking is being processed; try again shortly",
                code="PAYMENT_IN_FLIGHT",
            )
        report_integrity_problems(booking)

        plan = plan_cancellation(
            booking,
            actor_id=actor.id,
            reason=reason,
            by_tutor=caps.relation == Relation.TUTOR,
            now=now,
        )
        booking = self._write(booking, booking.status, **plan.updates)
        return booking, plan

    # Completion

    @BaseService.measure_operation("submit_lesson_report")
    def submit_lesson_report(
        self,
        booking_id: str,
        actor_id: str,
        *,
        topics_covered: str,
        homework: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        return self._with_reread(
            self._submit_lesson_report, booking_id, actor_id, topics_covered, homework, notes
        )

    def _submit_lesson_report(
        self,
        booking_id: str,
        actor_id: str,
        topics_covered: str,
        homework: Optional[str],
        notes: Optional[str],
    ) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_submit_report,
            "Only the booking's tutor can submit a report",
            code="TUTOR_ONLY",
        )
        self._require_status(booking, "complete", BookingStatus.CONFIRMED)
        topics = (topics_covered or "").strip()
        if len(topics) < MIN_TOPICS_COVERED_LENGTH:
            raise ValidationException(
                f"Topics covered must be at least {MIN_TOPICS_COVERED_LENGTH} characters",
                code="TOPICS_TOO_SHORT",
            )

        booking = self._write(
            booking,
            BookingStatus.CONFIRMED,
            status=BookingStatus.COMPLETED,
            report_topics_covered=topics,
            report_homework=(homework or "").strip() or None,
            report_notes=(notes or "").strip() or None,
            completed_at=self._now(),
        )
        self.log_operation("lesson_completed", booking_id=booking.id, tutor_id=actor.id)
        return booking

    # Client-side payment confirmation

    @BaseService.measure_operation("confirm_payment")
    def confirm_payment(self, booking_id: str, actor_id: str, payment_ref: str) -> Booking:
        booking, confirmed = self._with_reread(
            self._confirm_payment, booking_id, actor_id, payment_ref
        )
        if confirmed:
            self.meeting_service.try_generate_meeting(booking.id)
            booking = self.booking_repository.reload(booking.id) or booking
        return booking

    def _confirm_payment(self, booking_id: str, actor_id: str, payment_ref: str) -> Any:
        if not is_valid_payment_reference(payment_ref):
            raise ValidationException("Invalid payment reference", code="INVALID_PAYMENT_REF")
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(
            caps.can_confirm_payment,
            "Only the payer or an admin can confirm payment",
            code="NOT_PAYER",
        )
        self._require_status(booking, "confirm payment for", *OPEN_STATUSES)
        if booking.is_paid:
            raise ConflictException("Booking is already paid", code="ALREADY_PAID")
        if self._claim_is_fresh(booking):
            raise ConflictException(
                "A payment for this booking is being processed; try again shortly",
                code="PAYMENT_IN_FLIGHT",
            )

        intent = self.gateway.retrieve(payment_ref)
        if intent.amount != booking.price or intent.metadata.get("booking_id") != booking.id:
            self.logger.warning(
                "Payment %s does not match booking %s", payment_ref, booking.id,
                extra={"booking_id": booking.id, "actor_id": actor.id},
            )
            raise ConflictException(
                "Payment does not belong to this booking",
                code="PAYMENT_MISMATCH",
                details={
                    "amount": intent.amount,
                    "expected_amount": booking.price,
                    "booking_id": intent.metadata.get("booking_id"),
                },
            )
        gateway_status = intent.status
        now = self._now()
        auth_type = booking.payment_auth_type or plan_payment_schedule(
            ensure_utc(booking.scheduled_at), now
        ).auth_type.value

        if gateway_status == "requires_capture":
            booking = self._write(
                booking,
                booking.status,
                **Authorized(
                    auth_type=auth_type,
                    ref=payment_ref,
                    scheduled_for=booking.payment_scheduled_for,
                    expires_at=now + self.authorization_hold,
                ).columns(),
                **reset_attempt_columns(),
            )
            self.log_operation("payment_authorized", booking_id=booking.id, actor_id=actor.id)
            return booking, False

        if gateway_status == "succeeded":
            values: Dict[str, Any] = dict(
                Captured(auth_type=auth_type, ref=payment_ref, captured_at=now).columns(),
                **reset_attempt_columns(),
            )
            confirmed = booking.status == BookingStatus.ACCEPTED
            if confirmed:
                values.update(status=BookingStatus.CONFIRMED, confirmed_at=now)
            booking = self._write(booking, booking.status, **values)
            self.log_operation(
                "payment_captured", booking_id=booking.id, actor_id=actor.id, confirmed=confirmed
            )
            return booking, confirmed

        raise ConflictException(
            f"Payment is not in a confirmable state ({gateway_status})",
            code="PAYMENT_NOT_CONFIRMABLE",
            details={"gateway_status": gateway_status},
        )

    # Meetings

    @BaseService.measure_operation("generate_meeting")
    def generate_meeting(self, booking_id: str, actor_id: str) -> MeetingOutcome:
        """Manual (re)try of the meeting link. Returns the existing link when present."""
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        caps = self._capabilities(actor, booking)
        self._require(caps.can_generate_meeting, "You do not have access to this booking")
        return self.meeting_service.generate_meeting_for_booking(booking.id)

    # Reads

    def get_booking(self, booking_id: str, actor_id: str) -> Booking:
        actor = self._actor(actor_id)
        booking = self._load(booking_id)
        self._require(
            self._capabilities(actor, booking).can_view,
            "You do not have access to this booking",
        )
        return booking

    def list_bookings(
        self, actor_id: str, *, status: Optional[str] = None, limit: int = 100
    ) -> List[Booking]:
        actor = self._actor(actor_id)
        if actor.is_admin:
            return self.booking_repository.list_for_participant(status=status, limit=limit)
        if actor.is_tutor:
            return self.booking_repository.list_for_participant(
                tutor_id=actor.id, status=status, limit=limit
            )
        if actor.is_parent:
            children = self.user_repository.get_children_ids(actor.id)
            return self.booking_repository.list_for_participant(
                student_ids=children, status=status, limit=limit
            )
        return self.booking_repository.list_for_participant(
            student_ids=[actor.id], status=status, limit=limit
        )
