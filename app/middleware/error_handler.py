"""Exception handlers producing the service's JSON error bodies."""

from typing import Any

import structlog
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.core.exceptions import (
    AppException,
    CodedFailure,
    ConsistencyError,
    IdentityProviderError,
    ProfileStoreError,
)
from app.schemas.auth import AuthErrorResponse

logger = structlog.get_logger(__name__)

INFRASTRUCTURE_ERRORS = (IdentityProviderError, ProfileStoreError, ConsistencyError)


def _business_body(error: str, details: Any, code: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error, "details": details}
    if code:
        body["code"] = code
    return body


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle application exceptions.

    Coded auth, lookup, policy and token failures use the
    ``{success, error, message, code, ...}`` body. Other application errors
    use ``{error, details}``; infrastructure details are hidden in production.

    Args:
        request: Request object
        exc: Application exception

    Returns:
        JSON error response
    """
    if isinstance(exc, CodedFailure):
        body = AuthErrorResponse(
            error=exc.error or "Error",
            message=exc.message,
            code=exc.code or "",
            **exc.extra,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(exclude_none=True),
        )

    if isinstance(exc, INFRASTRUCTURE_ERRORS):
        logger.error(
            "infrastructure_error",
            path=request.url.path,
            error_type=exc.__class__.__name__,
            error=exc.message,
        )
        details = "An internal error occurred" if settings.is_production else exc.message
        return JSONResponse(
            status_code=exc.status_code,
            content=_business_body("Internal server error", details, exc.code),
        )

    headers = None
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        headers = {"Retry-After": "60"}
    return JSONResponse(
        status_code=exc.status_code,
        content=_business_body(exc.error or exc.__class__.__name__, exc.message, exc.code),
        headers=headers,
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle HTTP exceptions.

    Args:
        request: Request object
        exc: HTTP exception

    Returns:
        JSON error response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=_business_body("HTTPException", exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation errors as 400 with per-field details.

    Args:
        request: Request object
        exc: Validation exception

    Returns:
        JSON error response with validation details
    """
    details = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_business_body("Validation error", details),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions.

    Args:
        request: Request object
        exc: Exception

    Returns:
        JSON error response
    """
    logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
    details = "An unexpected error occurred" if settings.is_production else str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_business_body("Internal server error", details),
    )
