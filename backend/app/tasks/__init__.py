# backend/app/tasks/__init__.py
"""Celery tasks for the Tipu booking engine."""

from .celery_app import celery_app

__all__ = ["celery_app"]
