"""Classes service routers."""

from services.classes_service.routers.client import router as client_router
from services.classes_service.routers.internal import router as internal_router
from services.classes_service.routers.staff import router as staff_router

__all__ = [
    "client_router",
    "internal_router",
    "staff_router",
]
