# backend/tests/unit/test_meeting_link_service.py
"""MeetingLinkService retry, write-back and best-effort paths."""

import logging

import pytest

from app.core.exceptions import ValidationException
from app.integrations.graph_meetings_client import MeetingProviderError
from app.models.booking import BookingStatus


@pytest.fixture
def confirmed(make_booking):
    return make_booking(status=BookingStatus.CONFIRMED.value, is_paid=True)


class TestGenerateMeeting:
    def test_retry_delays_double(self, meeting_service):
        assert meeting_service.retry_delays() == [1.0, 2.0, 4.0]

    def test_writes_link_for_confirmed_booking(self, meeting_service, meetings, confirmed):
        outcome = meeting_service.generate_meeting_for_booking(confirmed.id)

        assert outcome.created is True
        assert confirmed.meeting_link == outcome.meeting_link
        assert confirmed.meeting_id in meetings.meetings
        call = meetings.calls[0]
        assert call["subject"] == "Tipu: Maths GCSE Lesson"
        assert len(call["attendees"]) == 2

    def test_existing_link_is_returned_without_provider_call(
        self, meeting_service, meetings, make_booking
    ):
        booking = make_booking(
            status=BookingStatus.CONFIRMED.value,
            is_paid=True,
            meeting_id="m-1",
            meeting_link="https://teams.example.test/l/meetup-join/m-1",
        )

        outcome = meeting_service.generate_meeting_for_booking(booking.id)

        assert outcome.created is False
        assert outcome.meeting_id == "m-1"
        assert meetings.calls == []

    def test_retries_transient_failures_with_backoff(
        self, meeting_service, meetings, sleeps, confirmed
    ):
        meetings.fail_next("create_meeting", MeetingProviderError("busy", 503), times=2)

        outcome = meeting_service.generate_meeting_for_booking(confirmed.id)

        assert outcome.created is True
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_all_retries(self, meeting_service, meetings, sleeps, confirmed):
        meetings.fail_next("create_meeting", MeetingProviderError("busy", 503), times=4)

        with pytest.raises(MeetingProviderError):
            meeting_service.generate_meeting_for_booking(confirmed.id)

        assert sleeps == [1.0, 2.0, 4.0]
        assert confirmed.meeting_link is None

    def test_non_retryable_failure_is_not_retried(
        self, meeting_service, meetings, sleeps, confirmed
    ):
        meetings.fail_next("create_meeting", MeetingProviderError("forbidden", 403))

        with pytest.raises(MeetingProviderError):
            meeting_service.generate_meeting_for_booking(confirmed.id)

        assert sleeps == []

    def test_rejects_unconfirmed_booking(self, meeting_service, make_booking):
        booking = make_booking()

        with pytest.raises(ValidationException) as exc_info:
            meeting_service.generate_meeting_for_booking(booking.id)

        assert exc_info.value.code == "BOOKING_NOT_CONFIRMED"

    def test_force_replaces_and_deletes_old_meeting(
        self, meeting_service, meetings, confirmed_paid_booking
    ):
        outcome = meeting_service.generate_meeting_for_booking(
            confirmed_paid_booking.id, force=True
        )

        assert outcome.meeting_id != "meeting-old"
        assert {"method": "delete_meeting", "meeting_id": "meeting-old"} in meetings.calls


class TestBestEffort:
    def test_try_generate_swallows_failures(self, meeting_service, meetings, confirmed):
        meetings.fail_next("create_meeting", MeetingProviderError("forbidden", 403))

        assert meeting_service.try_generate_meeting(confirmed.id) is None

    def test_delete_meeting_reports_failure(self, meeting_service, meetings):
        meetings.fail_next("delete_meeting", MeetingProviderError("gone", 404))

        assert meeting_service.delete_meeting("m-1") is False
        assert meeting_service.delete_meeting("m-2") is True
        assert meeting_service.delete_meeting(None) is False

    def test_try_generate_swallows_unexpected_errors(
        self, meeting_service, meetings, confirmed, caplog
    ):
        caplog.set_level(logging.WARNING)
        meetings.fail_next("create_meeting", ValueError("Expecting value: line 1 column 1"))

        assert meeting_service.try_generate_meeting(confirmed.id) is None
        assert confirmed.meeting_link is None
        assert "Meeting link not generated" in caplog.text

    def test_delete_meeting_reports_unexpected_errors(self, meeting_service, meetings):
        meetings.fail_next("delete_meeting", RuntimeError("connection reset"))

        assert meeting_service.delete_meeting("m-1") is False
