# backend/app/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import bookings, cron, health, prometheus, tutors

__all__ = ["bookings", "cron", "health", "prometheus", "tutors"]
