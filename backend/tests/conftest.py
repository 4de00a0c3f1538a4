# backend/tests/conftest.py
"""
Pytest configuration for the Tipu booking engine.

Every test gets a fresh in-memory SQLite database, a FrozenClock pinned
to NOW, and in-memory payment gateway / meeting provider doubles. Meeting
retries record their delays instead of sleeping.
"""

import os

# Set before any app import so Settings picks them up
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CI", "1")

from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterator, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.clock import FrozenClock
from app.core.enums import RoleName
from app.core.ulid_helper import generate_ulid
from app.database import Base
from app.integrations.graph_meetings_client import FakeMeetingsClient
from app.integrations.stripe_gateway import FakePaymentGateway
from app.models.booking import Booking, BookingStatus, PaymentAuthType
from app.models.user import User
from app.services.booking_lifecycle_service import BookingLifecycleService
from app.services.meeting_link_service import MeetingLinkService
from app.services.payment_scheduler_service import PaymentSchedulerService

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def db() -> Iterator[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(
        autocommit=False, autoflush=False, bind=engine, expire_on_commit=False
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def meetings() -> FakeMeetingsClient:
    return FakeMeetingsClient()


@pytest.fixture
def sleeps() -> List[float]:
    """Delays the meeting service would have slept for."""
    return []


@pytest.fixture
def meeting_service(db: Session, meetings: FakeMeetingsClient, sleeps: List[float]):
    return MeetingLinkService(
        db, meetings, max_retries=3, base_delay_seconds=1.0, sleep=sleeps.append
    )


@pytest.fixture
def lifecycle(db, gateway, meeting_service, clock) -> BookingLifecycleService:
    return BookingLifecycleService(db, gateway, meeting_service, clock=clock)


@pytest.fixture
def scheduler(db, gateway, meeting_service, clock) -> PaymentSchedulerService:
    return PaymentSchedulerService(
        db,
        gateway,
        meeting_service,
        clock=clock,
        batch_size=20,
        max_retries=3,
        retry_base=timedelta(hours=1),
    )


# ============================================================================
# Users
# ============================================================================


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    def _make(role: str, **overrides: Any) -> User:
        user_id = overrides.pop("id", None) or generate_ulid()
        user = User(
            id=user_id,
            email=overrides.pop("email", f"{role}-{user_id.lower()}@example.com"),
            full_name=overrides.pop("full_name", role.title()),
            role=role,
            **overrides,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def tutor(make_user) -> User:
    return make_user(RoleName.TUTOR.value, hourly_rates={"GCSE": 4500, "A-Level": 6000})


@pytest.fixture
def other_tutor(make_user) -> User:
    return make_user(RoleName.TUTOR.value, hourly_rates={"GCSE": 4000})


@pytest.fixture
def admin(make_user) -> User:
    return make_user(RoleName.ADMIN.value)


@pytest.fixture
def adult_student(make_user) -> User:
    return make_user(
        RoleName.STUDENT.value,
        date_of_birth=date(2000, 1, 15),
        payment_customer_ref="cus_adult",
        payment_method_ref="pm_adult",
    )


@pytest.fixture
def parent(make_user) -> User:
    return make_user(
        RoleName.PARENT.value,
        payment_customer_ref="cus_parent",
        payment_method_ref="pm_parent",
    )


@pytest.fixture
def minor_student(make_user, parent) -> User:
    return make_user(
        RoleName.STUDENT.value, date_of_birth=date(2012, 6, 1), parent_id=parent.id
    )


# ============================================================================
# Bookings
# ============================================================================


@pytest.fixture
def make_booking(db: Session, tutor: User, adult_student: User) -> Callable[..., Booking]:
    """
    Insert a booking row directly. Defaults: pending, three days out,
    immediate_auth with capture at T-24h, nothing paid.
    """

    def _make(**overrides: Any) -> Booking:
        scheduled_at = overrides.pop("scheduled_at", NOW + timedelta(days=3))
        values: dict[str, Any] = {
            "id": generate_ulid(),
            "version": 1,
            "student_id": adult_student.id,
            "tutor_id": tutor.id,
            "booked_by": adult_student.id,
            "subject": "Maths",
            "level": "GCSE",
            "duration_minutes": 60,
            "price": 4500,
            "currency": "gbp",
            "scheduled_at": scheduled_at,
            "created_at": NOW - timedelta(days=1),
            "status": BookingStatus.PENDING.value,
            "payment_auth_type": PaymentAuthType.IMMEDIATE_AUTH.value,
            "payment_scheduled_for": scheduled_at - timedelta(hours=24),
            "is_paid": False,
            "requires_auth_creation": False,
            "payment_attempted": False,
            "payment_retry_count": 0,
            "payment_cancellation_skipped": False,
            "auth_generation": 0,
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def confirmed_paid_booking(make_booking, gateway) -> Booking:
    """Confirmed, captured, with a meeting link; four days out."""
    gateway.add_intent("pi_captured0001", amount=4500, status="succeeded")
    return make_booking(
        status=BookingStatus.CONFIRMED.value,
        scheduled_at=NOW + timedelta(days=4),
        payment_scheduled_for=None,
        is_paid=True,
        payment_intent_ref="pi_captured0001",
        payment_captured_at=NOW - timedelta(hours=1),
        confirmed_at=NOW - timedelta(hours=1),
        meeting_id="meeting-old",
        meeting_link="https://teams.example.test/l/meetup-join/meeting-old",
    )


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def client(db, lifecycle, scheduler) -> Iterator[Any]:
    """TestClient wired to the per-test session, clock and doubles."""
    from fastapi.testclient import TestClient

    from app.api.dependencies import (
        get_booking_lifecycle_service,
        get_db,
        get_payment_scheduler_service,
    )
    from app.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_booking_lifecycle_service] = lambda: lifecycle
    app.dependency_overrides[get_payment_scheduler_service] = lambda: scheduler
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[[User], dict]:
    from app.auth import create_access_token

    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}

    return _headers
