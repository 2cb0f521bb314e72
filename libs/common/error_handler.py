"""Consistent JSON error responses across services.

Domain exceptions opt in by exposing ``status_code``, ``code`` and
``message``; anything else unhandled becomes a logged 500.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)


def domain_error_response(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=getattr(exc, "status_code", 400),
        content={
            "detail": getattr(exc, "message", str(exc)),
            "code": getattr(exc, "code", "error"),
        },
    )


def add_exception_handlers(app: FastAPI, *domain_errors: type[Exception]) -> None:
    """Register handlers for ``domain_errors`` plus a catch-all 500 handler."""

    async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
        logger.info(
            "%s %s rejected: %s (%s)",
            request.method,
            request.url.path,
            getattr(exc, "code", type(exc).__name__),
            getattr(exc, "message", exc),
        )
        return domain_error_response(exc)

    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": get_request_id()},
        )

    for error_class in domain_errors:
        app.add_exception_handler(error_class, handle_domain_error)
    app.add_exception_handler(Exception, handle_unexpected)
