"""Application exceptions and the handlers that render them.

Every error leaves the API in one envelope so the wizard client can show an
inline message without knowing which layer failed:

    {"error": {"code": "STEP_SAVE_FAILED", "message": "...", "details": {...}}}

``details`` is omitted when empty.
"""

import logging
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AkshayapatraException(Exception):
    """Base exception for Akshayapatra application errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class BusinessLogicError(AkshayapatraException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "BUSINESS_LOGIC_ERROR"


class ResourceNotFoundError(AkshayapatraException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")


class UpstreamServiceError(AkshayapatraException):
    """A remote collaborator (Supabase, PhonePe) failed or refused the call.

    ``upstream_code`` carries the collaborator's own error code when it sent
    one (PostgREST uses codes like ``PGRST202``).
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "UPSTREAM_ERROR"

    def __init__(self, service: str, message: str, upstream_code: str | None = None):
        self.service = service
        self.upstream_code = upstream_code
        details = {"service": service}
        if upstream_code:
            details["upstream_code"] = upstream_code
        super().__init__(f"{service}: {message}", details)


class WizardStateError(AkshayapatraException):
    """The requested wizard transition is not valid in the current state."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "WIZARD_STATE_CONFLICT"


class StepSaveError(AkshayapatraException):
    """A step form could not be saved; the user stays on the same step."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "STEP_SAVE_FAILED"


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    content: dict[str, Any] = {"error": {"code": error_code, "message": message}}
    if details:
        content["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


async def akshayapatra_exception_handler(
    request: Request, exc: AkshayapatraException
) -> JSONResponse:
    logger.warning(
        f"{exc.error_code} on {request.url.path}: {exc.message}",
        extra={**_request_context(request), "error_code": exc.error_code},
    )
    return create_error_response(exc.status_code, exc.message, exc.error_code, exc.details)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}", extra=_request_context(request))
    # Keeps WWW-Authenticate on 401s
    return create_error_response(
        exc.status_code,
        str(exc.detail),
        f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError | ValidationError
) -> JSONResponse:
    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={**_request_context(request), "errors": errors},
    )
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "VALIDATION_ERROR",
        {"errors": errors},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception on {request.url.path}", extra=_request_context(request))
    # Internal details stay in the log
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    app.add_exception_handler(AkshayapatraException, akshayapatra_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
