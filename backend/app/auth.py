"""
Bearer token handling.

Tokens are issued by the identity service; this API only verifies them
and reads the principal (``sub`` user id and ``role``) out of the claims.
``create_access_token`` exists for local tooling and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Optional, cast

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt import PyJWTError

from .core.config import settings
from .core.enums import RoleName

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.ADMIN


def _secret_value(secret_obj: Any) -> str:
    getter = getattr(secret_obj, "get_secret_value", None)
    if callable(getter):
        return cast(str, getter())
    return cast(str, secret_obj)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry and return the claims."""
    payload_raw = jwt.decode(
        token,
        _secret_value(settings.secret_key),
        algorithms=[settings.jwt_algorithm],
        options={"verify_aud": False, "require": ["sub"]},
    )
    return cast(Dict[str, Any], payload_raw)


def create_access_token(
    user_id: str, role: str, expires_delta: Optional[timedelta] = None
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    return cast(
        str,
        jwt.encode(
            {"sub": user_id, "role": role, "exp": expire},
            _secret_value(settings.secret_key),
            algorithm=settings.jwt_algorithm,
        ),
    )


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """
    Dependency returning the authenticated principal.

    Raises:
        HTTPException: 401 when the token is missing, invalid or expired
    """
    not_authenticated = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
    invalid_credentials = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None or not credentials.credentials:
        raise not_authenticated
    try:
        payload = decode_access_token(credentials.credentials)
    except PyJWTError as e:
        logger.warning(f"JWT validation error: {str(e)}")
        raise invalid_credentials

    user_id = payload.get("sub")
    role = payload.get("role")
    if not isinstance(user_id, str) or role not in {r.value for r in RoleName}:
        logger.warning("Token payload missing 'sub' or carrying an unknown role")
        raise invalid_credentials
    return Principal(user_id=user_id, role=str(role))
