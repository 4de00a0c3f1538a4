# backend/app/repositories/booking_repository.py
"""
Booking Repository for the Tipu platform

Data access for bookings:
- get-by-id and participant/status listings for the API
- scheduler batch queries (authorization due, capture due, retry candidates)
- the conditional write every mutation goes through

``update_if_current`` only touches the row while it still carries the
status and version the caller read. A lost race raises
StaleBookingException and leaves the row untouched.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Iterable, List, Optional, cast

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException, StaleBookingException
from ..models.booking import Booking, BookingStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

OPEN_PAYMENT_STATUSES = (BookingStatus.PENDING.value, BookingStatus.ACCEPTED.value)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking data access."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    # Conditional write

    def update_if_current(self, booking: Booking, expected_status: str, **values: Any) -> Booking:
        """
        Apply ``values`` only if the row still has ``expected_status`` and the
        version held by ``booking``. Bumps the version on success.

        Raises:
            StaleBookingException: another writer got there first
        """
        expected = getattr(expected_status, "value", expected_status)
        current_version = booking.version
        values = {key: getattr(value, "value", value) for key, value in values.items()}
        values["version"] = current_version + 1
        try:
            updated = (
                self.db.query(Booking)
                .filter(
                    Booking.id == booking.id,
                    Booking.status == expected,
                    Booking.version == current_version,
                )
                .update(values, synchronize_session=False)
            )
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating booking {booking.id}: {str(e)}")
            raise RepositoryException(f"Failed to update booking: {str(e)}")

        if updated == 0:
            self.db.expire(booking)
            self.logger.info(
                "Conditional update lost for booking %s (expected %s v%s)",
                booking.id,
                expected,
                current_version,
            )
            raise StaleBookingException(booking.id, expected)

        self.db.refresh(booking)
        return booking

    def reload(self, booking_id: str) -> Optional[Booking]:
        """Drop any cached state for the booking and read it again."""
        self.db.expire_all()
        return self.get_by_id(booking_id)

    # API reads

    def list_for_participant(
        self,
        *,
        tutor_id: Optional[str] = None,
        student_ids: Optional[Iterable[str]] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Booking]:
        """
        Bookings where the caller is the tutor, or one of ``student_ids``
        is the student. Passing neither lists everything (admin view).
        """
        try:
            query = self.db.query(Booking)
            if tutor_id is not None:
                query = query.filter(Booking.tutor_id == tutor_id)
            if student_ids is not None:
                ids = list(student_ids)
                if not ids:
                    return []
                query = query.filter(Booking.student_id.in_(ids))
            if status:
                query = query.filter(Booking.status == status)
            return cast(
                List[Booking],
                query.order_by(Booking.scheduled_at.desc()).limit(limit).all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing bookings: {str(e)}")
            raise RepositoryException(f"Failed to list bookings: {str(e)}")

    def list_by_status(self, statuses: Iterable[str], limit: int = 100) -> List[Booking]:
        try:
            return cast(
                List[Booking],
                self.db.query(Booking)
                .filter(Booking.status.in_([getattr(s, "value", s) for s in statuses]))
                .order_by(Booking.scheduled_at.asc())
                .limit(limit)
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing bookings by status: {str(e)}")
            raise RepositoryException(f"Failed to list bookings by status: {str(e)}")

    def has_booking_between(self, tutor_id: str, student_id: str) -> bool:
        try:
            return (
                self.db.query(Booking.id)
                .filter(Booking.tutor_id == tutor_id, Booking.student_id == student_id)
                .first()
                is not None
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error checking booking history: {str(e)}")
            raise RepositoryException(f"Failed to check booking history: {str(e)}")

    # Scheduler queries

    def get_bookings_needing_authorization(
        self, now: datetime, horizon: timedelta, limit: int
    ) -> List[Booking]:
        """
        Deferred bookings whose authorization window has opened:
        requires_auth_creation, lesson within ``horizon`` and still ahead.
        """
        try:
            return cast(
                List[Booking],
                self.db.query(Booking)
                .filter(
                    and_(
                        Booking.requires_auth_creation.is_(True),
                        Booking.status.in_(OPEN_PAYMENT_STATUSES),
                        Booking.is_paid.is_(False),
                        Booking.payment_attempted.is_(False),
                        Booking.scheduled_at <= now + horizon,
                        Booking.scheduled_at > now,
                    )
                )
                .order_by(Booking.scheduled_at.asc())
                .limit(limit)
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting bookings for payment authorization: {str(e)}")
            raise RepositoryException(f"Failed to get bookings for payment authorization: {str(e)}")

    def get_bookings_due_for_capture(self, now: datetime, limit: int) -> List[Booking]:
        """
        Unpaid bookings whose capture time has arrived. A null
        ``payment_scheduled_for`` on a planned booking means "due now".
        """
        try:
            return cast(
                List[Booking],
                self.db.query(Booking)
                .filter(
                    and_(
                        Booking.is_paid.is_(False),
                        Booking.status.in_(OPEN_PAYMENT_STATUSES),
                        Booking.payment_attempted.is_(False),
                        Booking.payment_auth_type.isnot(None),
                        or_(
                            Booking.payment_scheduled_for.is_(None),
                            Booking.payment_scheduled_for <= now,
                        ),
                    )
                )
                .order_by(Booking.scheduled_at.asc())
                .limit(limit)
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting bookings due for capture: {str(e)}")
            raise RepositoryException(f"Failed to get bookings due for capture: {str(e)}")

    def get_bookings_for_payment_retry(
        self, now: datetime, max_retries: int, limit: int
    ) -> List[Booking]:
        """
        Failed payment stages below the retry ceiling whose backoff has elapsed:
        unpaid open bookings, and cancelled captured bookings whose refund did
        not go through. Oldest due first.
        """
        try:
            unpaid = and_(
                Booking.status.in_(OPEN_PAYMENT_STATUSES),
                Booking.is_paid.is_(False),
            )
            refund_pending = and_(
                Booking.status == BookingStatus.CANCELLED.value,
                Booking.payment_captured_at.isnot(None),
                Booking.refund_ref.is_(None),
            )
            return cast(
                List[Booking],
                self.db.query(Booking)
                .filter(
                    and_(
                        Booking.payment_attempted.is_(True),
                        Booking.payment_error.isnot(None),
                        Booking.payment_retry_count < max_retries,
                        or_(
                            Booking.next_payment_retry_at.is_(None),
                            Booking.next_payment_retry_at <= now,
                        ),
                        or_(unpaid, refund_pending),
                    )
                )
                .order_by(Booking.next_payment_retry_at.asc().nullsfirst(), Booking.id.asc())
                .limit(limit)
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting bookings for payment retry: {str(e)}")
            raise RepositoryException(f"Failed to get bookings for payment retry: {str(e)}")
