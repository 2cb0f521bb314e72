from datetime import timedelta
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from libs.auth.models import CLIENT_ROLE, SERVICE_ROLE, AuthUser
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now

security = HTTPBearer()


def service_role_jwt(calling_service: str) -> str:
    """Mint a short-lived service-role token for internal calls."""
    settings = get_settings()
    now = utc_now()
    payload = {
        "sub": f"service:{calling_service}",
        "role": SERVICE_ROLE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=5)).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


async def get_current_user(
    token: Annotated[HTTPAuthorizationCredentials, Depends(security)]
) -> AuthUser:
    """
    Validate the bearer JWT and return the authenticated user.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token.credentials,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        return AuthUser(**payload)
    except (JWTError, ValidationError):
        raise credentials_exception


async def require_client(
    current_user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    if current_user.role != CLIENT_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Client access required",
        )
    return current_user


async def require_coach(
    current_user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    """Coaches and admins."""
    if not current_user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Coach privileges required",
        )
    return current_user


async def require_admin(
    current_user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user


async def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    x_cron_secret: Optional[str] = Header(default=None),
) -> None:
    """Guard for scheduler-triggered endpoints.

    With no CRON_SECRET configured the guard is open outside production.
    """
    settings = get_settings()
    secret = settings.CRON_SECRET
    if not secret:
        if settings.ENVIRONMENT != "production":
            return
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    if authorization and authorization.startswith("Bearer "):
        if authorization[len("Bearer "):] == secret:
            return
    if x_cron_secret == secret:
        return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
