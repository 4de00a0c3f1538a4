# backend/app/tasks/beat_schedule.py
"""
Celery Beat schedule for Tipu.

The payment run must fire often enough that a T-24h capture is not
missed by more than one interval; retries run hourly, matching the
backoff base.
"""

from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    "process-scheduled-payments": {
        "task": "app.tasks.payment_tasks.process_scheduled_payments",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "payments", "expires": 600},
    },
    "retry-failed-payments": {
        "task": "app.tasks.payment_tasks.retry_failed_payments",
        "schedule": crontab(minute=5),
        "options": {"queue": "payments", "expires": 1800},
    },
}


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return dict(CELERYBEAT_SCHEDULE)
