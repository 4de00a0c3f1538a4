# backend/app/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from ...database import get_db
from .auth import get_current_principal, verify_cron_secret
from .services import (
    get_booking_lifecycle_service,
    get_meeting_link_service,
    get_payment_scheduler_service,
)

__all__ = [
    # Auth
    "get_current_principal",
    "verify_cron_secret",
    # Database
    "get_db",
    # Services
    "get_booking_lifecycle_service",
    "get_meeting_link_service",
    "get_payment_scheduler_service",
]
