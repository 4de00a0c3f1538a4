# backend/app/repositories/__init__.py
"""
Repository Pattern Implementation for the Tipu platform

- BaseRepository: generic read/create helpers and transaction support
- BookingRepository: booking reads, scheduler batch queries and the
  status/version guarded conditional write
- UserRepository: identity and parent/child lookups
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .user_repository import UserRepository

__all__ = ["BaseRepository", "BookingRepository", "UserRepository"]
