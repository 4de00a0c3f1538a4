# backend/app/models/user.py
"""
User model for the Tipu platform.

Identity is owned by the auth service; this table mirrors the fields the
booking engine needs: role, date of birth, the parent link of a student,
the payer's gateway customer and the tutor's rate table.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import JSON, Column, Date, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import RoleName
from ..database import Base
from .types import UTCDateTime

logger = logging.getLogger(__name__)


class User(Base):
    """
    A platform account.

    Attributes:
        role: one of student, tutor, parent, admin
        date_of_birth: students only; a missing value is treated as a minor
        parent_id: students only; the parent account that pays and approves
        payment_customer_ref: gateway customer used when this user is the payer
        payment_method_ref: saved payment method charged off-session
        hourly_rates: tutors only; minor units per hour keyed by level
    """

    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False, default="")
    role = Column(String(20), nullable=False, index=True)
    date_of_birth = Column(Date, nullable=True)
    parent_id = Column(String(26), ForeignKey("users.id"), nullable=True, index=True)
    payment_customer_ref = Column(String(255), nullable=True)
    payment_method_ref = Column(String(255), nullable=True)
    hourly_rates = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime(), server_default=func.now())

    parent = relationship("User", remote_side=[id], backref="children")

    def __repr__(self) -> str:
        return f"<User {self.id}: role={self.role}>"

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.ADMIN

    @property
    def is_tutor(self) -> bool:
        return self.role == RoleName.TUTOR

    @property
    def is_student(self) -> bool:
        return self.role == RoleName.STUDENT

    @property
    def is_parent(self) -> bool:
        return self.role == RoleName.PARENT

    @property
    def children_ids(self) -> List[str]:
        return [child.id for child in self.children]

    def rate_for(self, level: str) -> Optional[int]:
        rates: Dict[str, int] = self.hourly_rates or {}
        rate = rates.get(level)
        return int(rate) if rate else None
