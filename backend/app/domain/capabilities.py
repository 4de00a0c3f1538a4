"""
Capability resolution for booking actions.

``resolve_capabilities`` is a pure function of the acting party, the
booking and the booking's related parties. It answers *who* may act;
status checks and notice windows stay with the lifecycle service, which
reads ``cancel_requires_notice`` / ``reschedule_requires_notice`` to know
when a window applies.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, FrozenSet, Optional

from ..core.constants import ADULT_AGE
from ..core.enums import RoleName


class Relation(str, Enum):
    """How the actor stands to a booking."""

    TUTOR = "tutor"
    STUDENT = "student"
    PARENT = "parent"
    ADMIN = "admin"
    NONE = "none"


TUTOR_SIDE = frozenset({Relation.TUTOR})
STUDENT_SIDE = frozenset({Relation.STUDENT, Relation.PARENT})


@dataclass(frozen=True)
class Party:
    id: str
    role: str
    date_of_birth: Optional[date] = None
    parent_id: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def of(cls, user: Any) -> "Party":
        return cls(
            id=user.id,
            role=user.role,
            date_of_birth=getattr(user, "date_of_birth", None),
            parent_id=getattr(user, "parent_id", None),
            email=getattr(user, "email", None),
        )


@dataclass(frozen=True)
class BookingFacts:
    """The slice of a booking the resolver needs."""

    id: str
    student_id: str
    tutor_id: str
    reschedule_requested_by: Optional[str] = None
    reschedule_pending: bool = False

    @classmethod
    def of(cls, booking: Any) -> "BookingFacts":
        request = booking.reschedule_request
        return cls(
            id=booking.id,
            student_id=booking.student_id,
            tutor_id=booking.tutor_id,
            reschedule_requested_by=request.requested_by if request else None,
            reschedule_pending=bool(request and request.is_pending),
        )


@dataclass(frozen=True)
class RelatedParties:
    student: Party
    parent_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def for_student(cls, student: Party, *extra_parent_ids: str) -> "RelatedParties":
        parents = {pid for pid in (student.parent_id, *extra_parent_ids) if pid}
        return cls(student=student, parent_ids=frozenset(parents))


@dataclass(frozen=True)
class Capabilities:
    relation: Relation
    can_view: bool = False
    can_accept: bool = False
    can_decline: bool = False
    can_approve_suggestion: bool = False
    can_decline_suggestion: bool = False
    can_request_reschedule: bool = False
    can_respond_reschedule: bool = False
    can_cancel: bool = False
    cancel_requires_notice: bool = False
    cancel_requires_reason: bool = False
    reschedule_requires_notice: bool = False
    can_submit_report: bool = False
    can_confirm_payment: bool = False
    can_generate_meeting: bool = False


@dataclass(frozen=True)
class Denial:
    code: str
    message: str


def age_on(date_of_birth: date, today: date) -> int:
    """Whole years between ``date_of_birth`` and ``today``."""
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def is_adult(party: Party, today: date) -> bool:
    if party.date_of_birth is None:
        return False
    return age_on(party.date_of_birth, today) >= ADULT_AGE


def relation_to(actor: Party, booking: BookingFacts, related: RelatedParties) -> Relation:
    if actor.role == RoleName.ADMIN:
        return Relation.ADMIN
    if actor.role == RoleName.TUTOR and actor.id == booking.tutor_id:
        return Relation.TUTOR
    if actor.role == RoleName.STUDENT and actor.id == booking.student_id:
        return Relation.STUDENT
    if actor.role == RoleName.PARENT and actor.id in related.parent_ids:
        return Relation.PARENT
    return Relation.NONE


def _requester_relation(booking: BookingFacts, related: RelatedParties) -> Relation:
    requester = booking.reschedule_requested_by
    if requester == booking.tutor_id:
        return Relation.TUTOR
    if requester == booking.student_id:
        return Relation.STUDENT
    if requester in related.parent_ids:
        return Relation.PARENT
    return Relation.ADMIN


def _is_other_party(
    actor: Party, relation: Relation, booking: BookingFacts, related: RelatedParties
) -> bool:
    if not booking.reschedule_pending or actor.id == booking.reschedule_requested_by:
        return False
    if relation == Relation.ADMIN:
        return True
    requester = _requester_relation(booking, related)
    if requester == Relation.ADMIN:
        return relation != Relation.NONE
    if requester in TUTOR_SIDE:
        return relation in STUDENT_SIDE
    return relation in TUTOR_SIDE


def resolve_capabilities(
    actor: Party, booking: BookingFacts, related: RelatedParties, today: date
) -> Capabilities:
    relation = relation_to(actor, booking, related)
    if relation == Relation.NONE:
        return Capabilities(relation=relation)

    student_adult = is_adult(related.student, today)
    is_admin = relation == Relation.ADMIN
    is_tutor = relation == Relation.TUTOR
    # a minor student can see the booking and join, but never decides on it
    student_may_decide = relation == Relation.STUDENT and student_adult
    payer_side = relation == Relation.PARENT or student_may_decide
    suggestion_approver = (
        is_admin
        or (student_adult and relation == Relation.STUDENT)
        or (not student_adult and relation == Relation.PARENT)
    )
    other_party = _is_other_party(actor, relation, booking, related)

    return Capabilities(
        relation=relation,
        can_view=True,
        can_accept=is_tutor,
        can_decline=is_tutor,
        can_approve_suggestion=suggestion_approver,
        can_decline_suggestion=is_admin or relation == Relation.PARENT,
        can_request_reschedule=is_admin or is_tutor or payer_side,
        can_respond_reschedule=other_party and (is_admin or is_tutor or payer_side),
        can_cancel=is_admin or is_tutor or relation in STUDENT_SIDE,
        cancel_requires_notice=relation in STUDENT_SIDE,
        cancel_requires_reason=is_tutor,
        reschedule_requires_notice=is_tutor,
        can_submit_report=is_tutor,
        can_confirm_payment=is_admin or payer_side,
        can_generate_meeting=True,
    )


def check_booking_creator(
    actor: Party, student: Optional[Party], related: Optional[RelatedParties], today: date
) -> Optional[Denial]:
    """Who may create a booking for ``student``. Returns the reason when not allowed."""
    if student is None or student.role != RoleName.STUDENT:
        return Denial("STUDENT_NOT_FOUND", "Bookings must be made for a student account")
    if actor.role == RoleName.ADMIN:
        return None
    if actor.role == RoleName.STUDENT:
        if actor.id != student.id:
            return Denial("NOT_YOUR_BOOKING", "Students can only book lessons for themselves")
        if not is_adult(student, today):
            return Denial(
                "PARENT_BOOKING_REQUIRED",
                "Students under 18 cannot book directly. Please ask your parent to book for you.",
            )
        return None
    if actor.role == RoleName.PARENT:
        if related is None or actor.id not in related.parent_ids:
            return Denial("NOT_YOUR_CHILD", "Parents can only book lessons for their own children")
        return None
    return Denial("ROLE_NOT_ALLOWED", "Only students, parents and admins can create bookings")
