# backend/app/repositories/user_repository.py
"""
User Repository for the Tipu platform

Identity/role lookups the booking engine depends on: a user by id, the
children of a parent, and the payer of a student's lessons.
"""

import logging
from typing import List, Optional, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import RoleName
from ..core.exceptions import RepositoryException
from ..models.user import User
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class UserRepository(BaseRepository[User]):
    """Repository for User data access."""

    def __init__(self, db: Session):
        super().__init__(db, User)
        self.logger = logging.getLogger(__name__)

    def get_by_id(self, id: Optional[str]) -> Optional[User]:
        if id is None:
            return None
        return super().get_by_id(str(id))

    def get_children_ids(self, parent_id: str) -> List[str]:
        try:
            rows = (
                self.db.query(User.id)
                .filter(User.parent_id == parent_id, User.role == RoleName.STUDENT.value)
                .all()
            )
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting children for parent {parent_id}: {str(e)}")
            raise RepositoryException(f"Failed to get children: {str(e)}")

    def get_payer_for_student(self, student: User) -> User:
        """The parent pays for a student who has one; otherwise the student does."""
        if student.parent_id:
            parent = self.get_by_id(student.parent_id)
            if parent is not None:
                return cast(User, parent)
        return student
