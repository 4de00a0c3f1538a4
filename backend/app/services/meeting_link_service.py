# backend/app/services/meeting_link_service.py
"""
Meeting-link coordination for confirmed bookings.

Wraps the meeting provider with bounded retry and exponential backoff
(1s, 2s, 4s by default) and writes the link back to the booking only
while it is still confirmed. Callers on the payment path use the
``try_*`` variants, which log and swallow every failure.
"""

from dataclasses import dataclass
from datetime import timedelta
import logging
import time
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import (
    DomainException,
    NotFoundException,
    StaleBookingException,
    ValidationException,
)
from ..integrations.graph_meetings_client import (
    MeetingDetails,
    MeetingProvider,
    MeetingProviderError,
)
from ..models.booking import Booking, BookingStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.user_repository import UserRepository
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeetingOutcome:
    meeting_id: str
    meeting_link: str
    created: bool


def meeting_subject(booking: Booking) -> str:
    return f"Tipu: {booking.subject} {booking.level} Lesson"


class MeetingLinkService(BaseService):
    """Creates, regenerates and deletes lesson meetings."""

    def __init__(
        self,
        db: Session,
        provider: MeetingProvider,
        *,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        booking_repository: Optional[BookingRepository] = None,
        user_repository: Optional[UserRepository] = None,
    ):
        super().__init__(db)
        self.provider = provider
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self._sleep = sleep
        self.booking_repository = booking_repository or BookingRepository(db)
        self.user_repository = user_repository or UserRepository(db)

    def retry_delays(self) -> List[float]:
        return [self.base_delay_seconds * (2**attempt) for attempt in range(self.max_retries)]

    def _create_with_retry(self, booking: Booking) -> MeetingDetails:
        student = self.user_repository.get_by_id(booking.student_id)
        tutor = self.user_repository.get_by_id(booking.tutor_id)
        attendees = [user.email for user in (student, tutor) if user is not None and user.email]
        start = booking.scheduled_at
        end = start + timedelta(minutes=booking.duration_minutes or 60)

        delays = self.retry_delays()
        attempt = 0
        while True:
            try:
                details = self.provider.create_meeting(
                    subject=meeting_subject(booking),
                    start=start,
                    end=end,
                    attendee_emails=attendees,
                )
                prometheus_metrics.record_meeting_call("create", "success")
                return details
            except MeetingProviderError as exc:
                if not exc.retryable or attempt >= len(delays):
                    prometheus_metrics.record_meeting_call("create", "failed")
                    self.logger.error(
                        "Meeting creation failed for booking %s after %d attempt(s): %s",
                        booking.id,
                        attempt + 1,
                        exc.message,
                        extra={"booking_id": booking.id},
                    )
                    raise
                delay = delays[attempt]
                attempt += 1
                self.logger.warning(
                    "Meeting creation attempt %d failed for booking %s, retrying in %.1fs: %s",
                    attempt,
                    booking.id,
                    delay,
                    exc.message,
                )
                self._sleep(delay)

    @BaseService.measure_operation("generate_meeting_for_booking")
    def generate_meeting_for_booking(
        self, booking_id: str, *, force: bool = False
    ) -> MeetingOutcome:
        """
        Ensure a confirmed booking has a meeting link.

        An existing link is returned untouched unless ``force`` is set, in
        which case a new meeting replaces it and the old one is deleted
        best-effort.

        Raises:
            NotFoundException: unknown booking
            ValidationException: booking is not confirmed
            MeetingProviderError: provider still failing after all retries
        """
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", code="BOOKING_NOT_FOUND")
        if booking.status != BookingStatus.CONFIRMED:
            raise ValidationException(
                "Meeting links can only be generated for confirmed bookings",
                code="BOOKING_NOT_CONFIRMED",
                details={"status": booking.status},
            )
        if booking.meeting_link and not force:
            return MeetingOutcome(booking.meeting_id, booking.meeting_link, created=False)

        previous_meeting_id = booking.meeting_id
        details = self._create_with_retry(booking)

        for _ in range(2):
            try:
                with self.transaction():
                    self.booking_repository.update_if_current(
                        booking,
                        BookingStatus.CONFIRMED,
                        meeting_id=details.meeting_id,
                        meeting_link=details.join_url,
                    )
                break
            except StaleBookingException:
                booking = self.booking_repository.reload(booking_id)
                if booking is None or booking.status != BookingStatus.CONFIRMED:
                    self.logger.warning(
                        "Booking %s left confirmed while its meeting was being created",
                        booking_id,
                    )
                    self.delete_meeting(details.meeting_id)
                    raise
        else:
            self.delete_meeting(details.meeting_id)
            raise StaleBookingException(booking_id, BookingStatus.CONFIRMED.value)

        if force and previous_meeting_id and previous_meeting_id != details.meeting_id:
            self.delete_meeting(previous_meeting_id)

        self.log_operation("meeting_link_created", booking_id=booking_id, regenerated=force)
        return MeetingOutcome(details.meeting_id, details.join_url, created=True)

    def try_generate_meeting(
        self, booking_id: str, *, force: bool = False
    ) -> Optional[MeetingOutcome]:
        """Best-effort variant: failures are logged, never raised."""
        try:
            return self.generate_meeting_for_booking(booking_id, force=force)
        except DomainException as exc:
            self.logger.warning(
                "Meeting link not generated for booking %s: %s",
                booking_id,
                exc.message,
                extra={"booking_id": booking_id, "error_code": exc.code},
            )
            return None
        except Exception as exc:
            prometheus_metrics.record_meeting_call("create", "failed")
            self.logger.warning(
                "Meeting link not generated for booking %s: %s",
                booking_id,
                exc,
                exc_info=True,
                extra={"booking_id": booking_id, "error_code": type(exc).__name__},
            )
            return None

    def delete_meeting(self, meeting_id: Optional[str]) -> bool:
        """Best-effort delete. Returns whether the provider confirmed it."""
        if not meeting_id:
            return False
        try:
            self.provider.delete_meeting(meeting_id)
        except MeetingProviderError as exc:
            prometheus_metrics.record_meeting_call("delete", "failed")
            self.logger.warning("Failed to delete meeting %s: %s", meeting_id, exc.message)
            return False
        except Exception as exc:
            prometheus_metrics.record_meeting_call("delete", "failed")
            self.logger.warning(
                "Failed to delete meeting %s: %s", meeting_id, exc, exc_info=True
            )
            return False
        prometheus_metrics.record_meeting_call("delete", "success")
        return True
