"""
Celery tasks for payment processing.

Thin wrappers that give the payment scheduler a task-owned session.
The HTTP cron endpoints and these tasks run the same service methods,
and both are safe to run concurrently thanks to the per-booking claim.
"""

import logging
from typing import Any, Callable, ParamSpec, Protocol, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from app.services.dependencies import build_payment_scheduler_service
from app.services.payment_scheduler_service import ProcessPaymentsResult, RetryPaymentsResult
from app.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)

logger = logging.getLogger(__name__)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


@typed_task(bind=True, max_retries=3, name="app.tasks.payment_tasks.process_scheduled_payments")
def process_scheduled_payments(self: Any) -> ProcessPaymentsResult:
    """
    Create deferred authorizations and capture payments that are due.

    Per-booking failures are recorded on the booking and counted; only a
    failure of the whole run (database down, etc.) retries the task.
    """
    from app.database import SessionLocal

    db: Session = SessionLocal()
    try:
        results = build_payment_scheduler_service(db).process_scheduled_payments()
        if results["failed"] > 0:
            logger.warning(f"Payment run completed with {results['failed']} failures")
        return results
    except Exception as exc:
        logger.error(f"Payment run failed: {exc}")
        raise self.retry(exc=exc, countdown=120)
    finally:
        db.close()


@typed_task(bind=True, max_retries=3, name="app.tasks.payment_tasks.retry_failed_payments")
def retry_failed_payments(self: Any) -> RetryPaymentsResult:
    """Retry failed payment attempts whose backoff has elapsed."""
    from app.database import SessionLocal

    db: Session = SessionLocal()
    try:
        results = build_payment_scheduler_service(db).retry_failed_payments()
        if results["exhausted"] > 0:
            logger.warning(
                f"{results['exhausted']} bookings exhausted payment retries; "
                "manual intervention required"
            )
        return results
    except Exception as exc:
        logger.error(f"Payment retry run failed: {exc}")
        raise self.retry(exc=exc, countdown=300)
    finally:
        db.close()
