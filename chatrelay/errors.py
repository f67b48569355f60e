import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging_config import logger
from .relay.exceptions import RelayError, UpstreamRateLimited
from .settings import settings


class ErrorResponse(BaseModel):
    """
    Standard error payload returned by every endpoint:
    {
        "success": false,
        "error": "Conversation 'abc' already has a request in flight",
        "code": "SESSION_BUSY",
        "details": {...}
    }
    """

    success: bool = Field(default=False)
    error: str = Field(..., description="Human-readable error message")
    code: str = Field(..., description="Machine-readable error code")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


def error_response(
    status_code: int,
    *,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    payload = ErrorResponse(error=message, code=code, details=details)
    return JSONResponse(
        status_code=status_code,
        content=payload.model_dump(exclude_none=True),
        headers=headers,
    )


def http_error(
    status_code: int,
    *,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    Helper to create an HTTPException with a standardised error body.
    """
    payload = ErrorResponse(error=message, code=code, details=details)
    return HTTPException(status_code=status_code, detail=payload.model_dump(exclude_none=True))


def not_found(message: str, *, details: Optional[Dict[str, Any]] = None) -> HTTPException:
    return http_error(
        status.HTTP_404_NOT_FOUND, code="NOT_FOUND", message=message, details=details
    )


def unauthorized(message: str, *, code: str = "INVALID_API_KEY") -> HTTPException:
    return http_error(status.HTTP_401_UNAUTHORIZED, code=code, message=message)


def relay_error_to_response(exc: RelayError) -> JSONResponse:
    headers = None
    if isinstance(exc, UpstreamRateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return error_response(
        exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def handle_relay_error(request: Request, exc: RelayError) -> JSONResponse:
    logger.warning(
        "Relay error on %s %s: %s (%s)",
        request.method,
        request.url.path,
        exc.message,
        exc.code,
    )
    return relay_error_to_response(exc)


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.detail,
            headers=getattr(exc, "headers", None),
        )
    return error_response(
        exc.status_code,
        code=f"HTTP_{exc.status_code}",
        message=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()
    ]
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        code="VALIDATION_ERROR",
        message="Validation failed",
        details={"errors": errors},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    error_id = uuid.uuid4().hex
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    details: Dict[str, Any] = {"errorId": error_id}
    if settings.is_development:
        details["message"] = str(exc)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        message="Internal server error",
        details=details,
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RelayError, handle_relay_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)


__all__ = [
    "ErrorResponse",
    "error_response",
    "http_error",
    "install_exception_handlers",
    "not_found",
    "relay_error_to_response",
    "unauthorized",
]
