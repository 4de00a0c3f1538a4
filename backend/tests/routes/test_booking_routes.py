# backend/tests/routes/test_booking_routes.py
"""HTTP behaviour of the /api/v1/bookings and /api/v1/tutors routers."""

from datetime import datetime, timedelta, timezone

from app.models.booking import BookingStatus, PaymentAuthType

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
BASE = "/api/v1/bookings"


class TestAuthentication:
    def test_missing_token_is_rejected(self, client):
        response = client.get(f"{BASE}/")

        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"
        assert response.headers["content-type"] == "application/problem+json"

    def test_garbage_token_is_rejected(self, client):
        response = client.get(f"{BASE}/", headers={"Authorization": "Bearer nonsense"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Could not validate credentials"


class TestCreateAndRead:
    def test_student_creates_booking(self, client, auth_headers, adult_student, tutor):
        payload = {
            "student_id": adult_student.id,
            "tutor_id": tutor.id,
            "subject": "Maths",
            "level": "GCSE",
            "scheduled_at": (NOW + timedelta(days=3)).isoformat(),
            "price": 4500,
        }

        response = client.post(f"{BASE}/", json=payload, headers=auth_headers(adult_student))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["payment_auth_type"] == PaymentAuthType.IMMEDIATE_AUTH.value
        assert body["payment_stage"] == "awaiting_authorization"
        assert body["duration_minutes"] == 60

    def test_unknown_subject_fails_validation(self, client, auth_headers, adult_student, tutor):
        payload = {
            "student_id": adult_student.id,
            "tutor_id": tutor.id,
            "subject": "History",
            "level": "GCSE",
            "scheduled_at": (NOW + timedelta(days=3)).isoformat(),
            "price": 4500,
        }

        response = client.post(f"{BASE}/", json=payload, headers=auth_headers(adult_student))

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_malformed_booking_id_is_rejected(self, client, auth_headers, adult_student):
        response = client.get(f"{BASE}/not-a-ulid", headers=auth_headers(adult_student))

        assert response.status_code == 422

    def test_unrelated_tutor_cannot_view(self, client, auth_headers, make_booking, other_tutor):
        booking = make_booking()

        response = client.get(f"{BASE}/{booking.id}", headers=auth_headers(other_tutor))

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_list_filters_by_status(self, client, auth_headers, make_booking, tutor):
        accepted = make_booking(status=BookingStatus.ACCEPTED.value)
        make_booking()

        response = client.get(f"{BASE}/?status=accepted", headers=auth_headers(tutor))

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == accepted.id


class TestTransitions:
    def test_tutor_accepts(self, client, auth_headers, make_booking, tutor):
        booking = make_booking()

        response = client.post(f"{BASE}/{booking.id}/accept", headers=auth_headers(tutor))

        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

    def test_cancel_without_body_uses_default_reason(
        self, client, auth_headers, make_booking, adult_student
    ):
        booking = make_booking()

        response = client.post(f"{BASE}/{booking.id}/cancel", headers=auth_headers(adult_student))

        assert response.status_code == 200
        body = response.json()
        assert body["booking"]["status"] == "cancelled"
        assert body["booking"]["cancellation_reason"] == "No reason provided"
        assert body["refunded"] is False

    def test_late_student_cancellation_reports_hours(
        self, client, auth_headers, make_booking, adult_student
    ):
        booking = make_booking(
            status=BookingStatus.ACCEPTED.value,
            scheduled_at=NOW + timedelta(hours=6),
            payment_auth_type=PaymentAuthType.IMMEDIATE_CHARGE.value,
            payment_scheduled_for=None,
        )

        response = client.post(
            f"{BASE}/{booking.id}/cancel",
            json={"reason": "Something came up"},
            headers=auth_headers(adult_student),
        )

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "INSUFFICIENT_NOTICE"
        assert body["errors"] == {"required_hours": 24, "hours_remaining": 6.0}

    def test_reschedule_round_trip(self, client, auth_headers, make_booking, adult_student, tutor):
        booking = make_booking(status=BookingStatus.ACCEPTED.value)
        new_time = NOW + timedelta(days=5)

        requested = client.post(
            f"{BASE}/{booking.id}/request-reschedule",
            json={"new_scheduled_at": new_time.isoformat()},
            headers=auth_headers(adult_student),
        )
        approved = client.post(
            f"{BASE}/{booking.id}/approve-reschedule", headers=auth_headers(tutor)
        )

        assert requested.status_code == 200
        assert requested.json()["reschedule_request"]["status"] == "pending"
        assert approved.status_code == 200
        assert approved.json()["reschedule_request"]["status"] == "approved"

    def test_lesson_report_completes_booking(
        self, client, auth_headers, confirmed_paid_booking, tutor
    ):
        response = client.post(
            f"{BASE}/{confirmed_paid_booking.id}/lesson-report",
            json={"topics_covered": "Simultaneous equations", "homework": "Exercise 3B"},
            headers=auth_headers(tutor),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["lesson_report"]["homework"] == "Exercise 3B"

    def test_confirm_payment_rejects_bad_reference(
        self, client, auth_headers, make_booking, adult_student
    ):
        booking = make_booking()

        response = client.patch(
            f"{BASE}/{booking.id}/confirm-payment",
            json={"payment_intent_id": "ch_123"},
            headers=auth_headers(adult_student),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PAYMENT_REF"


class TestMeetings:
    def test_generate_meeting_requires_confirmed_booking(
        self, client, auth_headers, make_booking, adult_student
    ):
        booking = make_booking()

        response = client.post(
            f"{BASE}/{booking.id}/generate-meeting", headers=auth_headers(adult_student)
        )

        assert response.status_code == 400
        assert response.json()["code"] == "BOOKING_NOT_CONFIRMED"

    def test_generate_meeting_returns_existing_link(
        self, client, auth_headers, confirmed_paid_booking, adult_student
    ):
        response = client.post(
            f"{BASE}/{confirmed_paid_booking.id}/generate-meeting",
            headers=auth_headers(adult_student),
        )

        assert response.status_code == 200
        assert response.json() == {
            "booking_id": confirmed_paid_booking.id,
            "meeting_link": confirmed_paid_booking.meeting_link,
            "created": False,
        }


class TestSuggestLesson:
    def test_tutor_suggests_to_existing_student(
        self, client, auth_headers, make_booking, tutor, adult_student
    ):
        make_booking(status=BookingStatus.COMPLETED.value)

        response = client.post(
            "/api/v1/tutors/suggest-lesson",
            json={
                "student_id": adult_student.id,
                "subject": "Maths",
                "level": "GCSE",
                "scheduled_at": (NOW + timedelta(days=4)).isoformat(),
                "duration_minutes": 30,
            },
            headers=auth_headers(tutor),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "tutor-suggested"
        assert body["price"] == 2250
        assert body["payment_stage"] == "unscheduled"

    def test_students_cannot_suggest(self, client, auth_headers, adult_student):
        response = client.post(
            "/api/v1/tutors/suggest-lesson",
            json={
                "student_id": adult_student.id,
                "subject": "Maths",
                "level": "GCSE",
                "scheduled_at": (NOW + timedelta(days=4)).isoformat(),
            },
            headers=auth_headers(adult_student),
        )

        assert response.status_code == 403
        assert response.json()["code"] == "TUTOR_ONLY"
