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


class ValidationError(AppError):
    def __init__(self, message: str = "Invalid request", code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class SignatureInvalid(AppError):
    """Webhook authenticity failure. Fatal for the request; never retried here."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, code="INVALID_SIGNATURE", status_code=status.HTTP_401_UNAUTHORIZED)


class AccessDenied(AppError):
    def __init__(self, message: str = "Access denied"):
        super().__init__(message, code="ACCESS_DENIED", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND"):
        super().__init__(message, code=code, status_code=status.HTTP_404_NOT_FOUND)


class AlreadyProcessed(AppError):
    """Duplicate external reference. A successful no-op for the issuance path."""

    def __init__(self, source: str, external_reference: str, entry: Any = None):
        self.source = source
        self.external_reference = external_reference
        self.entry = entry
        super().__init__(
            f"{source} reference {external_reference} already credited",
            code="ALREADY_PROCESSED",
            status_code=status.HTTP_409_CONFLICT,
            details={"source": source, "external_reference": external_reference},
        )


class StorageError(AppError):
    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message, code="STORAGE_ERROR", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class TransientStorageError(StorageError):
    """Write conflict or similar; safe to retry the whole transaction."""


class ServiceMisconfigured(AppError):
    def __init__(self, message: str = "Service misconfigured"):
        super().__init__(message, code="MISCONFIGURED", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


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
        status_code=422,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from tenant_credits.core.logging import get_logger
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
