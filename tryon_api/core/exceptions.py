from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientCreditsError(AppError):
    def __init__(self, message: str = "Insufficient credits", required: int | None = None, balance: int | None = None):
        details = {}
        if required is not None:
            details["required"] = required
        if balance is not None:
            details["balance"] = balance
        super().__init__(
            message,
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details,
        )


class PersistenceError(AppError):
    def __init__(self, message: str = "Storage write failed", details: dict[str, Any] | None = None):
        super().__init__(message, code="PERSISTENCE_ERROR", details=details)


# Generation service errors


class GenerationServiceError(AppError):
    """Raised by the remote generation client. Carries the remote status code and body when known."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int,
        remote_status: int | None = None,
        remote_body: Any = None,
    ):
        self.remote_status = remote_status
        self.remote_body = remote_body
        details: dict[str, Any] = {}
        if remote_status is not None:
            details["remote_status"] = remote_status
        super().__init__(message, code=code, status_code=status_code, details=details)


class ServiceUnavailableError(GenerationServiceError):
    """Transport failure, timeout, throttling or 5xx from the remote service. Transient."""

    def __init__(self, message: str = "Generation service unavailable", remote_status: int | None = None, remote_body: Any = None):
        super().__init__(
            message,
            code="REMOTE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            remote_status=remote_status,
            remote_body=remote_body,
        )


class InvalidRequestError(GenerationServiceError):
    """Remote service rejected the request (4xx)."""

    def __init__(self, message: str = "Generation service rejected the request", remote_status: int | None = None, remote_body: Any = None):
        super().__init__(
            message,
            code="REMOTE_INVALID_REQUEST",
            status_code=status.HTTP_502_BAD_GATEWAY,
            remote_status=remote_status,
            remote_body=remote_body,
        )


class ProtocolError(GenerationServiceError):
    """Remote response could not be understood (unknown status, missing fields)."""

    def __init__(self, message: str = "Unexpected response from generation service", remote_body: Any = None):
        super().__init__(
            message,
            code="REMOTE_PROTOCOL_ERROR",
            status_code=status.HTTP_502_BAD_GATEWAY,
            remote_body=remote_body,
        )


class PollTimeoutError(GenerationServiceError):
    def __init__(self, message: str = "Polling attempts exhausted", attempts: int | None = None):
        super().__init__(message, code="POLL_TIMEOUT", status_code=status.HTTP_504_GATEWAY_TIMEOUT)
        self.attempts = attempts
        if attempts is not None:
            self.details["attempts"] = attempts


class RemoteJobFailed(GenerationServiceError):
    def __init__(self, message: str = "Remote generation job failed", detail: Any = None):
        super().__init__(
            message,
            code="REMOTE_JOB_FAILED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            remote_body=detail,
        )
        self.detail = detail


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from tryon_api.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
