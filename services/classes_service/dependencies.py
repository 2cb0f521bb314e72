"""FastAPI dependencies shared by the classes routers."""

from fastapi import HTTPException, status
from libs.common.config import get_settings
from services.classes_service.services.policy import PolicyDefaults


def get_policy_defaults() -> PolicyDefaults:
    """Facility-wide booking defaults, handed to the engine explicitly."""
    return PolicyDefaults.from_settings(get_settings())


def require_booking_enabled() -> None:
    if not get_settings().CLASS_BOOKING_ENABLED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Class booking is currently disabled",
        )
