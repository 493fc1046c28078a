from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
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
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None, code: str = "CONFLICT"):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class InvalidStateError(ConflictError):
    """Payout state-machine transition not allowed from the current status."""

    def __init__(self, message: str = "Invalid state transition", details: dict[str, Any] | None = None):
        super().__init__(message, details=details, code="INVALID_STATE")


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None, code: str = "BAD_REQUEST"):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(BadRequestError):
    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None, code: str = "VALIDATION_ERROR"):
        super().__init__(message, details=details, code=code)


class InvalidAddressError(ValidationError):
    def __init__(self, message: str = "Invalid payout destination address"):
        super().__init__(message, code="INVALID_ADDRESS")


class InsufficientBalanceError(BadRequestError):
    def __init__(self, required: int, current: int):
        super().__init__(
            f"Insufficient coins. You need {required} coins",
            details={"required": required, "current": current, "shortfall": required - current},
            code="INSUFFICIENT_BALANCE",
        )
        self.required = required
        self.current = current


class OutOfRangeError(BadRequestError):
    def __init__(self, message: str, minimum: Any, maximum: Any):
        super().__init__(message, details={"min": str(minimum), "max": str(maximum)}, code="OUT_OF_RANGE")


class AmountTooSmallError(BadRequestError):
    def __init__(self, message: str = "Payout amount too small after fees", details: dict[str, Any] | None = None):
        super().__init__(message, details=details, code="AMOUNT_TOO_SMALL")


class GatewayError(AppError):
    """The payout gateway rejected or failed a call; `reason` is human readable."""

    def __init__(
        self,
        reason: str,
        code: str = "GATEWAY_ERROR",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(reason, code=code, status_code=status_code, details={"reason": reason, **(details or {})})
        self.reason = reason


class GatewayTimeoutError(GatewayError):
    """Outcome unknown: the gateway may have moved the money."""

    def __init__(self, reason: str = "Payout gateway timed out", details: dict[str, Any] | None = None):
        super().__init__(reason, code="GATEWAY_TIMEOUT", status_code=status.HTTP_504_GATEWAY_TIMEOUT, details=details)


class IntegrityError(AppError):
    """Ledger and balance disagree; the account is frozen for debits."""

    def __init__(self, message: str = "Account is frozen pending reconciliation", details: dict[str, Any] | None = None):
        super().__init__(message, code="INTEGRITY_ERROR", status_code=status.HTTP_423_LOCKED, details=details)


class StaleWriteError(Exception):
    """Optimistic concurrency check failed; safe to re-plan and retry."""


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
            "details": {"errors": jsonable_encoder(exc.errors())},
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
