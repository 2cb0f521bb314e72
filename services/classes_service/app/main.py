"""FastAPI application for the Classes Service."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from services.classes_service.errors import ClassBookingError
from services.classes_service.routers import client_router, internal_router, staff_router


def create_app() -> FastAPI:
    """Create and configure the Classes Service FastAPI app."""
    app = FastAPI(
        title="Classes Service",
        version="0.1.0",
        description="Class booking, waitlists and class-credit ledger.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    add_observability_middleware(app)
    add_exception_handlers(app, ClassBookingError)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "classes"}

    # Client self-service routes
    app.include_router(client_router)

    # Coach and admin routes
    app.include_router(staff_router)

    # Scheduler-triggered routes
    app.include_router(internal_router)

    return app


app = create_app()
