import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException

from app.api.utils.response_payloads import error_response

logger = logging.getLogger("app")


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigError(ApplicationException):
    """Settings are missing or malformed. Fatal at startup."""


class DatabaseConnectionError(ApplicationException):
    """The store is unreachable, or creating/migrating a database failed."""


class BindError(ApplicationException):
    """The listener handed to the HTTP bootstrap cannot be served on."""


class PersistenceError(ApplicationException):
    """A validated subscription could not be written."""


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle malformed or incomplete submissions and return a standardized 400 response.

    Args:
        request (Request): The incoming HTTP request.
        exc (RequestValidationError): The validation error raised by FastAPI/Pydantic.

    Returns:
        JSONResponse: Standardized error response containing field-level validation messages.
    """
    errors = {}
    for err in exc.errors():
        loc = str(err["loc"][-1]) if err["loc"] else "body"
        msg = err["msg"]
        if msg.startswith("Value error,"):
            msg = msg.replace("Value error,", "").strip()
        errors.setdefault(loc, []).append(msg)

    logger.info(f"Rejected request to {request.url.path}: {sorted(errors)}")

    return error_response(
        status_code=status.HTTP_400_BAD_REQUEST,
        message="Validation failed",
        error="VALIDATION_ERROR",
        errors=errors,
    )


async def persistence_exception_handler(request: Request, exc: PersistenceError):
    """
    Handle failed writes and return a standardized 500 response.

    The failure itself is logged where it happens; the response carries no
    database detail.
    """
    return error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="PERSISTENCE_ERROR",
        message=exc.message,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTP exceptions (4xx/5xx) and return a standardized JSON response.

    Args:
        request (Request): The incoming HTTP request.
        exc (HTTPException): The HTTP exception raised by FastAPI or Starlette.

    Returns:
        JSONResponse: Standardized error response with HTTP status code and message.
    """
    logger.warning(f"HTTP exception: {exc.detail} ({exc.status_code})")

    response = error_response(
        status_code=exc.status_code,
        error="HTTP_ERROR",
        message=str(exc.detail),
    )
    if exc.headers:
        response.headers.update(exc.headers)

    return response


async def general_exception_handler(request: Request, exc: Exception):
    """
    Handle uncaught exceptions and return a standardized JSON response.

    Args:
        request (Request): The incoming HTTP request.
        exc (Exception): The unhandled exception.

    Returns:
        JSONResponse: Standardized 500 error response.
    """
    logger.exception(f"Unhandled exception: {exc}")

    return error_response(
        status_code=500,
        error="INTERNAL_SERVER_ERROR",
        message="Internal server error",
    )
