# backend/tests/services/test_booking_lifecycle_service.py
"""
BookingLifecycleService transitions against an in-memory database,
the fake payment gateway and the fake meeting provider.
"""

from datetime import datetime, timedelta, timezone
import logging

import pytest

from app.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InsufficientNoticeException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from app.integrations.stripe_gateway import PaymentGatewayError
from app.models.booking import BookingStatus, PaymentAuthType

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestCreateBooking:
    def test_adult_student_books_lesson_inside_24_hours(self, lifecycle, adult_student, tutor):
        booking = lifecycle.create_booking(
            adult_student.id,
            student_id=adult_student.id,
            tutor_id=tutor.id,
            subject="Maths",
            level="GCSE",
            scheduled_at=NOW + timedelta(hours=10),
            price=4500,
        )

        assert booking.status == BookingStatus.PENDING
        assert booking.payment_auth_type == PaymentAuthType.IMMEDIATE_CHARGE
        assert booking.payment_scheduled_for is None
        assert booking.version == 1

    def test_parent_books_far_future_lesson_for_child(
        self, lifecycle, parent, minor_student, tutor
    ):
        scheduled_at = NOW + timedelta(days=10)

        booking = lifecycle.create_booking(
            parent.id,
            student_id=minor_student.id,
            tutor_id=tutor.id,
            subject="Physics",
            level="A-Level",
            scheduled_at=scheduled_at,
            price=6000,
        )

        assert booking.payment_auth_type == PaymentAuthType.DEFERRED_AUTH
        assert booking.payment_scheduled_for == scheduled_at - timedelta(hours=24)
        assert booking.requires_auth_creation is True
        assert booking.booked_by == parent.id

    def test_minor_cannot_book_directly(self, lifecycle, minor_student, tutor):
        with pytest.raises(ForbiddenException) as exc_info:
            lifecycle.create_booking(
                minor_student.id,
                student_id=minor_student.id,
                tutor_id=tutor.id,
                subject="Maths",
                level="GCSE",
                scheduled_at=NOW + timedelta(days=2),
                price=4500,
            )

        assert exc_info.value.code == "PARENT_BOOKING_REQUIRED"

    def test_rejects_past_lesson_time(self, lifecycle, adult_student, tutor):
        with pytest.raises(ValidationException) as exc_info:
            lifecycle.create_booking(
                adult_student.id,
                student_id=adult_student.id,
                tutor_id=tutor.id,
                subject="Maths",
                level="GCSE",
                scheduled_at=NOW - timedelta(minutes=1),
                price=4500,
            )

        assert exc_info.value.code == "TIME_NOT_IN_FUTURE"

    def test_rejects_unknown_tutor(self, lifecycle, adult_student):
        with pytest.raises(NotFoundException):
            lifecycle.create_booking(
                adult_student.id,
                student_id=adult_student.id,
                tutor_id=adult_student.id,
                subject="Maths",
                level="GCSE",
                scheduled_at=NOW + timedelta(days=2),
                price=4500,
            )


class TestTutorResponse:
    def test_accept_moves_pending_to_accepted(self, lifecycle, make_booking, tutor):
        booking = make_booking()

        accepted = lifecycle.accept_booking(booking.id, tutor.id)

        assert accepted.status == BookingStatus.ACCEPTED
        assert accepted.accepted_at == NOW
        assert accepted.version == 2

    def test_only_the_booking_tutor_accepts(self, lifecycle, make_booking, other_tutor):
        booking = make_booking()

        with pytest.raises(ForbiddenException):
            lifecycle.accept_booking(booking.id, other_tutor.id)

    def test_decline_releases_an_existing_hold(self, lifecycle, make_booking, tutor, gateway):
        gateway.add_intent("pi_hold0003", amount=4500, status="requires_capture")
        booking = make_booking(payment_intent_ref="pi_hold0003")

        declined = lifecycle.decline_booking(booking.id, tutor.id)

        assert declined.status == BookingStatus.DECLINED
        assert declined.decline_reason == "No reason provided"
        assert gateway.intents["pi_hold0003"].status == "canceled"


class TestCancellation:
    def test_student_cancels_paid_booking_and_is_refunded(
        self, lifecycle, confirmed_paid_booking, adult_student, gateway, meetings
    ):
        result = lifecycle.cancel_booking(confirmed_paid_booking.id, adult_student.id)

        booking = result.booking
        assert result.refunded is True
        assert result.message == "Booking cancelled and refund issued"
        assert booking.status == BookingStatus.CANCELLED
        assert booking.refund_ref == "re_fake000001"
        assert booking.refunded_at == NOW
        assert booking.meeting_link is None
        assert booking.cancellation_reason == "No reason provided"
        refund = gateway.calls_for("refund")[0]
        assert refund["key"] == f"booking:{booking.id}:refund"
        assert {"method": "delete_meeting", "meeting_id": "meeting-old"} in meetings.calls

    def test_student_cannot_cancel_inside_24_hours(self, lifecycle, make_booking, adult_student):
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            scheduled_at=NOW + timedelta(hours=12),
            payment_auth_type=PaymentAuthType.IMMEDIATE_CHARGE.value,
            payment_scheduled_for=None,
        )

        with pytest.raises(InsufficientNoticeException) as exc_info:
            lifecycle.cancel_booking(booking.id, adult_student.id)

        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {"required_hours": 24, "hours_remaining": 12.0}
        assert "Only 12.0 hours remaining" in exc_info.value.message

    def test_tutor_cancels_inside_24_hours_with_reason(
        self, lifecycle, make_booking, tutor, caplog
    ):
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            scheduled_at=NOW + timedelta(hours=12),
            payment_auth_type=PaymentAuthType.IMMEDIATE_CHARGE.value,
            payment_scheduled_for=None,
        )
        caplog.set_level(logging.WARNING)

        result = lifecycle.cancel_booking(booking.id, tutor.id, "Tutor is unwell today")

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_reason == "Tutor is unwell today"
        assert result.message == "Booking cancelled"
        assert "TUTOR CANCELLATION" in caplog.text

    @pytest.mark.parametrize(
        "reason,code",
        [(None, "REASON_REQUIRED"), ("   ", "REASON_REQUIRED"), ("ill", "REASON_TOO_SHORT")],
    )
    def test_tutor_must_give_a_proper_reason(self, lifecycle, make_booking, tutor, reason, code):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)

        with pytest.raises(ValidationException) as exc_info:
            lifecycle.cancel_booking(booking.id, tutor.id, reason)

        assert exc_info.value.code == code

    def test_authorized_booking_is_released_not_refunded(
        self, lifecycle, make_booking, adult_student, gateway
    ):
        gateway.add_intent("pi_hold0001", amount=4500, status="requires_capture")
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_intent_ref="pi_hold0001",
            authorization_expires_at=NOW + timedelta(days=6),
        )

        result = lifecycle.cancel_booking(booking.id, adult_student.id)

        assert result.released is True
        assert result.refunded is False
        assert gateway.intents["pi_hold0001"].status == "canceled"
        assert gateway.calls_for("refund") == []
        release = gateway.calls_for("cancel_authorization")[0]
        assert release["key"] == f"booking:{booking.id}:release"

    def test_legacy_reference_is_skipped_and_flagged(
        self, lifecycle, make_booking, adult_student, gateway, caplog
    ):
        booking = make_booking(
            status=BookingStatus.CONFIRMED.value,
            scheduled_at=NOW + timedelta(days=4),
            payment_scheduled_for=None,
            is_paid=True,
            payment_intent_ref="ch_legacy123",
            payment_captured_at=NOW - timedelta(days=1),
        )
        caplog.set_level(logging.WARNING)

        result = lifecycle.cancel_booking(booking.id, adult_student.id)

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.payment_cancellation_skipped is True
        assert result.booking.payment_cancellation_skipped is True
        assert result.booking.is_paid is True
        assert gateway.calls == []
        assert "MANUAL RECONCILIATION REQUIRED" in caplog.text

    def test_fresh_scheduler_claim_blocks_cancellation(
        self, lifecycle, make_booking, adult_student
    ):
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_attempted=True,
            payment_claimed_at=NOW - timedelta(minutes=2),
        )

        with pytest.raises(ConflictException) as exc_info:
            lifecycle.cancel_booking(booking.id, adult_student.id)

        assert exc_info.value.code == "PAYMENT_IN_FLIGHT"

    def test_stale_claim_does_not_block_cancellation(self, lifecycle, make_booking, adult_student):
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_attempted=True,
            payment_claimed_at=NOW - timedelta(minutes=30),
        )

        result = lifecycle.cancel_booking(booking.id, adult_student.id)

        assert result.booking.status == BookingStatus.CANCELLED

    def test_cancelling_twice_conflicts(self, lifecycle, make_booking, adult_student):
        booking = make_booking()
        lifecycle.cancel_booking(booking.id, adult_student.id)

        with pytest.raises(InvalidTransitionException) as exc_info:
            lifecycle.cancel_booking(booking.id, adult_student.id)

        assert exc_info.value.status_code == 409

    def test_failed_refund_is_retried_by_scheduler(
        self, lifecycle, scheduler, confirmed_paid_booking, adult_student, gateway, clock
    ):
        gateway.fail_next("refund", PaymentGatewayError("card network down"))

        result = lifecycle.cancel_booking(confirmed_paid_booking.id, adult_student.id)

        assert result.refunded is False
        assert "will be retried" in result.message
        assert result.booking.payment_error == "Refund failed: card network down"
        assert result.booking.payment_retry_count == 1

        assert scheduler.retry_failed_payments()["retried"] == 0

        clock.advance(timedelta(hours=1))
        stats = scheduler.retry_failed_payments()

        assert stats == {"retried": 1, "successful": 1, "failed": 0, "exhausted": 0}
        assert confirmed_paid_booking.refund_ref is not None
        assert confirmed_paid_booking.payment_error is None
        keys = {call["key"] for call in gateway.calls_for("refund")}
        assert keys == {f"booking:{confirmed_paid_booking.id}:refund"}


class TestReschedule:
    def test_tutor_cannot_reschedule_inside_24_hours(self, lifecycle, make_booking, tutor):
        booking = make_booking(
            status=BookingStatus.CONFIRMED.value,
            scheduled_at=NOW + timedelta(hours=12),
            is_paid=True,
            payment_intent_ref="pi_paid0001",
            payment_captured_at=NOW - timedelta(hours=1),
            payment_scheduled_for=None,
        )

        with pytest.raises(InsufficientNoticeException) as exc_info:
            lifecycle.request_reschedule(booking.id, tutor.id, NOW + timedelta(days=3))

        assert exc_info.value.details["hours_remaining"] == 12.0

    def test_approved_reschedule_moves_lesson_and_capture(
        self, lifecycle, make_booking, adult_student, tutor
    ):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        new_time = NOW + timedelta(days=5)

        requested = lifecycle.request_reschedule(booking.id, adult_student.id, new_time)
        assert requested.reschedule_request.is_pending

        approved = lifecycle.approve_reschedule(booking.id, tutor.id)

        assert approved.scheduled_at == new_time
        assert approved.payment_scheduled_for == new_time - timedelta(hours=24)
        assert approved.reschedule_request.status == "approved"
        assert approved.rescheduled_by == tutor.id

    def test_requester_cannot_approve_own_request(self, lifecycle, make_booking, adult_student):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        lifecycle.request_reschedule(booking.id, adult_student.id, NOW + timedelta(days=5))

        with pytest.raises(ForbiddenException) as exc_info:
            lifecycle.approve_reschedule(booking.id, adult_student.id)

        assert exc_info.value.code == "NOT_RESCHEDULE_RESPONDER"

    def test_second_request_while_pending_conflicts(self, lifecycle, make_booking, adult_student):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        lifecycle.request_reschedule(booking.id, adult_student.id, NOW + timedelta(days=5))

        with pytest.raises(ConflictException) as exc_info:
            lifecycle.request_reschedule(booking.id, adult_student.id, NOW + timedelta(days=6))

        assert exc_info.value.code == "RESCHEDULE_PENDING"

    def test_approving_twice_conflicts(self, lifecycle, make_booking, adult_student, tutor):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        lifecycle.request_reschedule(booking.id, adult_student.id, NOW + timedelta(days=5))
        lifecycle.approve_reschedule(booking.id, tutor.id)

        with pytest.raises(ConflictException) as exc_info:
            lifecycle.approve_reschedule(booking.id, tutor.id)

        assert exc_info.value.code == "NO_PENDING_RESCHEDULE"

    def test_declined_reschedule_keeps_lesson_time(
        self, lifecycle, make_booking, adult_student, tutor
    ):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        original_time = booking.scheduled_at
        lifecycle.request_reschedule(booking.id, tutor.id, NOW + timedelta(days=5))

        declined = lifecycle.decline_reschedule(booking.id, adult_student.id)

        assert declined.scheduled_at == original_time
        assert declined.reschedule_request.status == "declined"
        assert declined.reschedule_request.decline_reason == "No reason provided"

    def test_hold_expiring_before_new_capture_is_released(
        self, lifecycle, make_booking, adult_student, tutor, gateway
    ):
        gateway.add_intent("pi_hold0002", amount=4500, status="requires_capture")
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_intent_ref="pi_hold0002",
            authorization_expires_at=NOW + timedelta(days=5),
        )
        new_time = NOW + timedelta(days=10)
        lifecycle.request_reschedule(booking.id, adult_student.id, new_time)

        approved = lifecycle.approve_reschedule(booking.id, tutor.id)

        assert approved.payment_intent_ref is None
        assert approved.requires_auth_creation is True
        assert approved.payment_scheduled_for == new_time - timedelta(hours=24)
        release = gateway.calls_for("cancel_authorization")[0]
        assert release["key"] == f"booking:{booking.id}:release:pi_hold0002"
        assert gateway.intents["pi_hold0002"].status == "canceled"

    def test_confirmed_booking_gets_a_new_meeting(
        self, lifecycle, confirmed_paid_booking, adult_student, tutor, meetings
    ):
        lifecycle.request_reschedule(
            confirmed_paid_booking.id, adult_student.id, NOW + timedelta(days=6)
        )

        approved = lifecycle.approve_reschedule(confirmed_paid_booking.id, tutor.id)

        assert approved.meeting_id != "meeting-old"
        assert approved.meeting_link.startswith("https://teams.example.test/")
        assert approved.is_paid is True
        assert approved.payment_intent_ref == "pi_captured0001"
        assert {"method": "delete_meeting", "meeting_id": "meeting-old"} in meetings.calls


class TestSuggestions:
    def test_requires_a_prior_booking(self, lifecycle, tutor, adult_student):
        with pytest.raises(ForbiddenException) as exc_info:
            lifecycle.suggest_lesson(
                tutor.id,
                student_id=adult_student.id,
                subject="Maths",
                level="GCSE",
                scheduled_at=NOW + timedelta(days=3),
            )

        assert exc_info.value.code == "NO_PRIOR_BOOKING"

    def test_price_comes_from_tutor_rate(self, lifecycle, make_booking, tutor, adult_student):
        make_booking(status=BookingStatus.COMPLETED.value)

        booking = lifecycle.suggest_lesson(
            tutor.id,
            student_id=adult_student.id,
            subject="Maths",
            level="A-Level",
            scheduled_at=NOW + timedelta(days=3),
            duration_minutes=90,
            tutor_notes="  Exam prep  ",
        )

        assert booking.status == BookingStatus.TUTOR_SUGGESTED
        assert booking.price == 9000
        assert booking.payment_auth_type is None
        assert booking.tutor_notes == "Exam prep"

    def test_minor_cannot_approve_but_parent_can(
        self, lifecycle, make_booking, tutor, minor_student, parent, clock
    ):
        make_booking(student_id=minor_student.id, booked_by=parent.id)
        scheduled_at = NOW + timedelta(days=8)
        suggestion = lifecycle.suggest_lesson(
            tutor.id,
            student_id=minor_student.id,
            subject="Maths",
            level="GCSE",
            scheduled_at=scheduled_at,
        )

        with pytest.raises(ForbiddenException) as exc_info:
            lifecycle.approve_suggestion(suggestion.id, minor_student.id)
        assert exc_info.value.code == "NOT_SUGGESTION_APPROVER"

        clock.advance(timedelta(days=2))
        approved = lifecycle.approve_suggestion(suggestion.id, parent.id)

        # six days of lead time at approval, not eight at suggestion
        assert approved.status == BookingStatus.PENDING
        assert approved.payment_auth_type == PaymentAuthType.IMMEDIATE_AUTH
        assert approved.payment_scheduled_for == scheduled_at - timedelta(hours=24)
        assert approved.requires_auth_creation is False
        assert approved.approved_by == parent.id

    def test_parent_declines_suggestion(
        self, lifecycle, make_booking, tutor, minor_student, parent
    ):
        make_booking(student_id=minor_student.id, booked_by=parent.id)
        suggestion = lifecycle.suggest_lesson(
            tutor.id,
            student_id=minor_student.id,
            subject="Maths",
            level="GCSE",
            scheduled_at=NOW + timedelta(days=4),
        )

        declined = lifecycle.decline_suggestion(suggestion.id, parent.id)

        assert declined.status == BookingStatus.DECLINED
        assert declined.declined_by == parent.id


class TestLessonReport:
    def test_tutor_completes_confirmed_booking(self, lifecycle, confirmed_paid_booking, tutor):
        completed = lifecycle.submit_lesson_report(
            confirmed_paid_booking.id,
            tutor.id,
            topics_covered="Quadratic equations and factorising",
            homework="Worksheet 4",
        )

        assert completed.status == BookingStatus.COMPLETED
        assert completed.lesson_report.topics_covered == "Quadratic equations and factorising"
        assert completed.lesson_report.homework == "Worksheet 4"
        assert completed.completed_at == NOW

        with pytest.raises(InvalidTransitionException):
            lifecycle.submit_lesson_report(
                confirmed_paid_booking.id, tutor.id, topics_covered="Quadratics again, revision"
            )

    def test_topics_must_be_described(self, lifecycle, confirmed_paid_booking, tutor):
        with pytest.raises(ValidationException) as exc_info:
            lifecycle.submit_lesson_report(
                confirmed_paid_booking.id, tutor.id, topics_covered="algebra"
            )

        assert exc_info.value.code == "TOPICS_TOO_SHORT"


class TestConfirmPayment:
    def test_prepaid_pending_booking_confirms_on_accept(
        self, lifecycle, make_booking, adult_student, tutor, gateway
    ):
        booking = make_booking()
        gateway.add_intent("pi_client0001", amount=4500, status="succeeded", booking_id=booking.id)

        paid = lifecycle.confirm_payment(booking.id, adult_student.id, "pi_client0001")

        assert paid.status == BookingStatus.PENDING
        assert paid.is_paid is True
        assert paid.payment_captured_at == NOW

        confirmed = lifecycle.accept_booking(booking.id, tutor.id)

        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.meeting_link is not None

    def test_authorized_payment_is_held(self, lifecycle, make_booking, adult_student, gateway):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        gateway.add_intent(
            "pi_client0002", amount=4500, status="requires_capture", booking_id=booking.id
        )

        held = lifecycle.confirm_payment(booking.id, adult_student.id, "pi_client0002")

        assert held.status == BookingStatus.ACCEPTED
        assert held.is_paid is False
        assert held.payment_intent_ref == "pi_client0002"
        assert held.authorization_expires_at == NOW + timedelta(days=7)

    def test_invalid_reference_is_rejected(self, lifecycle, make_booking, adult_student):
        booking = make_booking()

        with pytest.raises(ValidationException) as exc_info:
            lifecycle.confirm_payment(booking.id, adult_student.id, "ch_123")

        assert exc_info.value.status_code == 400

    def test_minor_cannot_confirm_payment(
        self, lifecycle, make_booking, minor_student, parent, gateway
    ):
        booking = make_booking(student_id=minor_student.id, booked_by=parent.id)
        gateway.add_intent("pi_client0003", amount=4500, status="succeeded", booking_id=booking.id)

        with pytest.raises(ForbiddenException):
            lifecycle.confirm_payment(booking.id, minor_student.id, "pi_client0003")

    def test_amount_mismatch_is_rejected(self, lifecycle, make_booking, adult_student, gateway):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        gateway.add_intent("pi_client0004", amount=100, status="succeeded", booking_id=booking.id)

        with pytest.raises(ConflictException) as exc_info:
            lifecycle.confirm_payment(booking.id, adult_student.id, "pi_client0004")

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "PAYMENT_MISMATCH"
        assert booking.is_paid is False
        assert booking.status == BookingStatus.ACCEPTED

    def test_payment_for_another_booking_is_rejected(
        self, lifecycle, make_booking, adult_student, gateway
    ):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        other = make_booking(status=BookingStatus.ACCEPTED.value)
        gateway.add_intent("pi_client0005", amount=4500, status="succeeded", booking_id=other.id)

        with pytest.raises(ConflictException) as exc_info:
            lifecycle.confirm_payment(booking.id, adult_student.id, "pi_client0005")

        assert exc_info.value.code == "PAYMENT_MISMATCH"
        assert booking.payment_intent_ref is None

    def test_meeting_failure_does_not_undo_the_confirmation(
        self, lifecycle, make_booking, adult_student, gateway, meetings
    ):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        gateway.add_intent("pi_client0006", amount=4500, status="succeeded", booking_id=booking.id)
        meetings.fail_next("create_meeting", ValueError("unexpected payload"))

        confirmed = lifecycle.confirm_payment(booking.id, adult_student.id, "pi_client0006")

        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.is_paid is True
        assert confirmed.meeting_link is None


class TestReads:
    def test_parent_lists_child_bookings(self, lifecycle, make_booking, minor_student, parent):
        booking = make_booking(student_id=minor_student.id, booked_by=parent.id)
        make_booking()

        assert [b.id for b in lifecycle.list_bookings(parent.id)] == [booking.id]

    def test_unrelated_tutor_cannot_view(self, lifecycle, make_booking, other_tutor):
        booking = make_booking()

        with pytest.raises(ForbiddenException):
            lifecycle.get_booking(booking.id, other_tutor.id)
