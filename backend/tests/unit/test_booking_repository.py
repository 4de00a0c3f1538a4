# backend/tests/unit/test_booking_repository.py
"""BookingRepository conditional writes and scheduler queries."""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import StaleBookingException
from app.models.booking import BookingStatus, PaymentAuthType
from app.repositories.booking_repository import BookingRepository

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo(db) -> BookingRepository:
    return BookingRepository(db)


class TestUpdateIfCurrent:
    def test_applies_values_and_bumps_version(self, db, repo, make_booking):
        booking = make_booking()

        repo.update_if_current(booking, BookingStatus.PENDING, status=BookingStatus.ACCEPTED)
        db.commit()

        assert booking.status == "accepted"
        assert booking.version == 2

    def test_wrong_status_raises_stale(self, db, repo, make_booking):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)

        with pytest.raises(StaleBookingException) as exc_info:
            repo.update_if_current(booking, BookingStatus.PENDING, status="declined")

        assert exc_info.value.code == "STALE_BOOKING"
        assert exc_info.value.status_code == 409
        db.rollback()
        assert repo.get_by_id(booking.id).status == "accepted"

    def test_lost_version_race_raises_stale(self, db, repo, make_booking):
        booking = make_booking()
        # another writer bumps the row behind this session's back
        db.query(type(booking)).filter_by(id=booking.id).update(
            {"version": 5}, synchronize_session=False
        )
        db.commit()

        with pytest.raises(StaleBookingException):
            repo.update_if_current(booking, BookingStatus.PENDING, status="accepted")


class TestSchedulerQueries:
    def test_authorization_window(self, repo, make_booking):
        due = make_booking(
            scheduled_at=NOW + timedelta(days=6),
            payment_auth_type=PaymentAuthType.DEFERRED_AUTH.value,
            requires_auth_creation=True,
        )
        make_booking(
            scheduled_at=NOW + timedelta(days=9),
            payment_auth_type=PaymentAuthType.DEFERRED_AUTH.value,
            requires_auth_creation=True,
        )

        found = repo.get_bookings_needing_authorization(NOW, timedelta(days=7), limit=20)

        assert [b.id for b in found] == [due.id]

    def test_capture_due_includes_unscheduled_immediate_charge(self, repo, make_booking):
        charge = make_booking(
            scheduled_at=NOW + timedelta(hours=10),
            status=BookingStatus.ACCEPTED.value,
            payment_auth_type=PaymentAuthType.IMMEDIATE_CHARGE.value,
            payment_scheduled_for=None,
        )
        due = make_booking(
            scheduled_at=NOW + timedelta(hours=20),
            status=BookingStatus.ACCEPTED.value,
            payment_scheduled_for=NOW - timedelta(hours=4),
        )
        make_booking(status=BookingStatus.ACCEPTED.value)  # capture in two days
        make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_scheduled_for=NOW - timedelta(hours=1),
            payment_attempted=True,
        )

        found = repo.get_bookings_due_for_capture(NOW, limit=20)

        assert [b.id for b in found] == [charge.id, due.id]

    def test_retry_candidates_include_failed_refunds(self, repo, make_booking):
        failed_capture = make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_attempted=True,
            payment_error="card declined",
            payment_retry_count=1,
            next_payment_retry_at=NOW - timedelta(hours=2),
        )
        failed_refund = make_booking(
            status=BookingStatus.CANCELLED.value,
            is_paid=True,
            payment_intent_ref="pi_1",
            payment_captured_at=NOW - timedelta(days=1),
            payment_attempted=True,
            payment_error="refund failed",
            payment_retry_count=1,
            next_payment_retry_at=NOW - timedelta(hours=1),
        )
        make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_attempted=True,
            payment_error="card declined",
            payment_retry_count=3,
        )

        found = repo.get_bookings_for_payment_retry(now=NOW, max_retries=3, limit=20)

        assert [b.id for b in found] == [failed_capture.id, failed_refund.id]

    def test_retry_candidates_wait_for_their_backoff(self, repo, make_booking):
        for _ in range(2):
            make_booking(
                status=BookingStatus.ACCEPTED.value,
                payment_attempted=True,
                payment_error="card declined",
                payment_retry_count=2,
                next_payment_retry_at=NOW + timedelta(minutes=30),
            )
        due = make_booking(
            status=BookingStatus.ACCEPTED.value,
            payment_attempted=True,
            payment_error="card declined",
            payment_retry_count=1,
            next_payment_retry_at=NOW - timedelta(minutes=10),
        )

        found = repo.get_bookings_for_payment_retry(now=NOW, max_retries=3, limit=2)

        assert [b.id for b in found] == [due.id]


class TestParticipantQueries:
    def test_list_for_participant_filters_by_student(self, repo, make_booking, adult_student):
        booking = make_booking()

        assert repo.list_for_participant(student_ids=[adult_student.id]) == [booking]
        assert repo.list_for_participant(student_ids=[]) == []

    def test_has_booking_between(self, repo, make_booking, tutor, adult_student, other_tutor):
        make_booking()

        assert repo.has_booking_between(tutor.id, adult_student.id)
        assert not repo.has_booking_between(other_tutor.id, adult_student.id)
