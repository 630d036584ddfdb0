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


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# User-reported outcomes: returned to the caller, never retried.


class InsufficientBalanceError(AppError):
    def __init__(self, balance: int, required: int):
        super().__init__(
            "Insufficient credits",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class NotAvailableError(AppError):
    def __init__(self, message: str = "Slot is not available", details: dict[str, Any] | None = None):
        super().__init__(message, code="NOT_AVAILABLE", status_code=status.HTTP_409_CONFLICT, details=details)


class OverlapError(AppError):
    def __init__(self, message: str = "Slot overlaps existing availability", details: dict[str, Any] | None = None):
        super().__init__(message, code="OVERLAP", status_code=status.HTTP_409_CONFLICT, details=details)


class TooLateError(AppError):
    def __init__(self, message: str = "Cancellation deadline has passed", details: dict[str, Any] | None = None):
        super().__init__(message, code="TOO_LATE", status_code=status.HTTP_409_CONFLICT, details=details)


class ReauthorizationRequiredError(AppError):
    def __init__(self, message: str = "Calendar access must be re-authorized"):
        super().__init__(message, code="REAUTHORIZATION_REQUIRED", status_code=status.HTTP_409_CONFLICT)


class PaymentFailedError(AppError):
    def __init__(self, message: str = "Payment failed", details: dict[str, Any] | None = None):
        super().__init__(message, code="PAYMENT_FAILED", status_code=status.HTTP_402_PAYMENT_REQUIRED, details=details)


# Infrastructure and invariant faults.


class TransientError(AppError):
    def __init__(self, message: str = "Temporarily unavailable, try again"):
        super().__init__(message, code="TRANSIENT", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class InvariantViolationError(AppError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="INVARIANT_VIOLATION",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


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
    if exc.status_code >= 500:
        from app.core.logging import get_logger
        get_logger(__name__).error("app_error", code=exc.code, message=exc.message, details=exc.details)
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
    from app.core.logging import get_logger
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
