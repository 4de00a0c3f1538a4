# backend/app/api/dependencies/auth.py
"""
Authentication dependencies.

User endpoints take a bearer JWT (see ``app.auth``). The scheduler
trigger endpoints take the shared cron secret instead; an unset secret
rejects every call.
"""

import hmac
import logging
from typing import Optional

from ...auth import Principal, get_current_principal
from ...core.config import settings

logger = logging.getLogger(__name__)

__all__ = ["Principal", "get_current_principal", "verify_cron_secret"]


def verify_cron_secret(authorization: Optional[str]) -> bool:
    """Check ``Authorization: Bearer <cron secret>`` in constant time."""
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        logger.error("CRON_SECRET is not configured; rejecting scheduler trigger")
        return False

    scheme, _, provided = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        provided.strip().encode(), expected.encode()
    ):
        logger.warning("Scheduler trigger rejected: bad or missing bearer secret")
        return False
    return True
