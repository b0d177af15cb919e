"""Error handlers for API endpoints.

Converts abuse guard exceptions to HTTP responses.
"""

from typing import Any

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..exceptions import (
    AbuseGuardError,
    AppealAlreadyReviewedError,
    AppealLimitExceededError,
    AppealNotAllowedError,
    AppealNotFoundError,
    ConfigurationError,
    CounterStoreError,
    CounterStoreTimeoutError,
    DuplicateAppealError,
    PenaltyNotFoundError,
    WhitelistedUserError,
)

logger = structlog.get_logger(__name__)

STATUS_MAP: dict[type[AbuseGuardError], int] = {
    PenaltyNotFoundError: status.HTTP_404_NOT_FOUND,
    AppealNotFoundError: status.HTTP_404_NOT_FOUND,
    DuplicateAppealError: status.HTTP_409_CONFLICT,
    AppealAlreadyReviewedError: status.HTTP_409_CONFLICT,
    AppealNotAllowedError: status.HTTP_400_BAD_REQUEST,
    AppealLimitExceededError: status.HTTP_400_BAD_REQUEST,
    WhitelistedUserError: status.HTTP_400_BAD_REQUEST,
    ConfigurationError: status.HTTP_400_BAD_REQUEST,
    CounterStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    CounterStoreTimeoutError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def abuse_guard_exception_handler(request: Request, exc: AbuseGuardError) -> JSONResponse:
    """Handle AbuseGuardError exceptions.

    Args:
        request: Request object.
        exc: Exception instance.

    Returns:
        JSON response with error details.
    """
    status_code = STATUS_MAP.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": exc.error_code,
                "message": exc.message,
                "details": exc.details,
            }
        },
    )


def register_exception_handlers(app: Any) -> None:
    """Register exception handlers with the FastAPI app.

    Args:
        app: FastAPI application instance.
    """
    app.add_exception_handler(AbuseGuardError, abuse_guard_exception_handler)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": f"HTTP_{exc.status_code}",
                    "message": exc.detail,
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "An unexpected error occurred",
                }
            },
        )
