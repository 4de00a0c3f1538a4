# backend/app/core/enums.py
"""
Core enums for the Tipu platform.

These are the fixed vocabularies used by models, schemas and the
capability checks. Stored as plain strings in the database.
"""

from enum import Enum


class RoleName(str, Enum):
    """Roles carried by an authenticated principal."""

    ADMIN = "admin"
    TUTOR = "tutor"
    STUDENT = "student"
    PARENT = "parent"


class Subject(str, Enum):
    MATHS = "Maths"
    PHYSICS = "Physics"
    COMPUTER_SCIENCE = "Computer Science"
    PYTHON = "Python"


class Level(str, Enum):
    GCSE = "GCSE"
    A_LEVEL = "A-Level"
