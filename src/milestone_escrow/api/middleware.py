"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware - injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware - last-resort catch of unexpected exceptions -> 500
    3. CORSMiddleware - handles browser clients

Domain exceptions and request validation errors are translated by exception
handlers into the error envelope:
    {"success": false, "error": {"message", "statusCode", "code", "errors"?}}
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from milestone_escrow.config import get_settings
from milestone_escrow.domain.exceptions import MarketplaceError

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)


def error_response(
    status_code: int,
    message: str,
    code: str,
    errors: list[dict] | None = None,
) -> JSONResponse:
    error: dict = {"message": message, "statusCode": status_code, "code": code}
    if errors:
        error["errors"] = errors
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch anything the exception handlers did not and return a 500 envelope."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            message = (
                str(exc) if get_settings().is_development else "An unexpected error occurred"
            )
            return error_response(500, message, "INTERNAL_ERROR")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------
async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    errors = getattr(exc, "errors", None)
    if exc.is_operational:
        logger.warning(
            "request.rejected",
            code=exc.code,
            status_code=exc.status_code,
            error=exc.message,
        )
        return error_response(exc.status_code, exc.message, exc.code, errors)

    logger.error("request.failed", code=exc.code, error=exc.message)
    message = exc.message if get_settings().is_development else "An unexpected error occurred"
    return error_response(exc.status_code, message, exc.code)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "invalid value"),
        }
        for err in exc.errors()
    ]
    logger.warning("request.invalid", errors=errors)
    return error_response(400, "Validation failed", "VALIDATION_ERROR", errors)


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register exception handlers and middleware on the FastAPI application.

    Order matters - middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
