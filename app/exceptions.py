"""
Custom exceptions and error handlers.
"""
import logging
from typing import List, Optional, Union

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.utils.logging import get_request_id

logger = logging.getLogger(__name__)


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            code="NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
        )


class ValidationException(AppException):
    """Validation error."""

    def __init__(self, message: str, details: Optional[dict] = None, code: str = "VALIDATION_ERROR"):
        super().__init__(
            status_code=400,
            code=code,
            message=message,
            details=details,
        )


class ConflictException(AppException):
    """Request conflicts with the current state of the resource."""

    def __init__(self, message: str, code: str = "CONFLICT", details: Optional[dict] = None):
        super().__init__(
            status_code=409,
            code=code,
            message=message,
            details=details,
        )


# Token errors
class TokenError(AppException):
    """Base for signing token failures."""


class TokenNotFoundError(TokenError):
    def __init__(self, message: str = "Invalid or unknown signing token"):
        super().__init__(status_code=404, code="TOKEN_NOT_FOUND", message=message)


class TokenExpiredError(TokenError):
    def __init__(self, message: str = "This signing link has expired"):
        super().__init__(status_code=400, code="TOKEN_EXPIRED", message=message)


class AlreadySignedError(TokenError):
    def __init__(self, message: str = "This document has already been signed with this link"):
        super().__init__(status_code=409, code="ALREADY_SIGNED", message=message)


class InvalidExpirationError(ValidationException):
    def __init__(self, days: Union[int, float, None]):
        super().__init__(
            f"Expiration must be between 1 and 30 days, got {days}",
            details={"expires_in_days": days},
            code="INVALID_EXPIRATION",
        )


# Signature submission errors
class EmptySignatureError(ValidationException):
    def __init__(self, message: str = "Signature image is empty or too small"):
        super().__init__(message, code="EMPTY_SIGNATURE")


class SignatureTooLargeError(ValidationException):
    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Signature image is too large ({size} bytes, limit {limit})",
            details={"size": size, "limit": limit},
            code="SIGNATURE_TOO_LARGE",
        )


class InvalidSignatureImageError(ValidationException):
    def __init__(self, message: str = "Signature must be a PNG, JPEG or WEBP image"):
        super().__init__(message, code="INVALID_SIGNATURE_IMAGE")


class InvalidSignerInfoError(ValidationException):
    def __init__(self, message: str):
        super().__init__(message, code="INVALID_SIGNER_INFO")


class InvalidFieldError(ValidationException):
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, details=details, code="INVALID_FIELD")


class FinalizationValidationError(ValidationException):
    """Signature set is not fit for embedding; carries every violation found."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(
            f"Signature validation failed: {'; '.join(errors)}",
            details={"errors": errors},
            code="FINALIZATION_VALIDATION_FAILED",
        )


# Document state errors
class DocumentLockedError(ConflictException):
    def __init__(self, document_id: str, status: str):
        super().__init__(
            f"Document {document_id} is {status}; signature fields can only change in draft",
            code="DOCUMENT_LOCKED",
            details={"status": status},
        )


class InvalidTransitionError(ConflictException):
    def __init__(self, current: str, event: str):
        super().__init__(
            f"Cannot apply {event} to a document in status {current}",
            code="INVALID_TRANSITION",
            details={"status": current, "event": event},
        )


class DocumentNotSignableError(ConflictException):
    def __init__(self, status: str):
        super().__init__(
            f"Document is not accepting signatures (status {status})",
            code="DOCUMENT_NOT_SIGNABLE",
            details={"status": status},
        )


class DocumentNotCompleteError(ConflictException):
    def __init__(self, status: str):
        super().__init__(
            f"Document is not completed (status {status})",
            code="DOCUMENT_NOT_COMPLETE",
            details={"status": status},
        )


class InvitationLockedError(ConflictException):
    def __init__(self, invitation_id: str):
        super().__init__(
            f"Invitation {invitation_id} is already completed and cannot be removed",
            code="INVITATION_LOCKED",
        )


class ExternalServiceError(AppException):
    """Blob store, database or mail provider failed in a way we cannot recover from."""

    def __init__(self, service: str, message: str):
        super().__init__(
            status_code=500,
            code="EXTERNAL_SERVICE_ERROR",
            message=f"{service}: {message}",
            details={"service": service},
        )


class RateLimitException(AppException):
    """Rate limit exceeded."""

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(
            status_code=429,
            code="RATE_LIMIT_EXCEEDED",
            message=message or f"Too many requests. Please try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
        )


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Build standardized error response."""
    response = {
        "error": True,
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        response["details"] = details
    return response


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handle application exceptions."""
    if exc.status_code >= 500:
        logger.error(f"AppException: {exc.code} - {exc.message}")
    else:
        logger.warning(f"AppException: {exc.code} - {exc.message}")
    headers = None
    if isinstance(exc, RateLimitException):
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(
            exc.status_code,
            exc.code,
            exc.message,
            exc.details,
        ),
        headers=headers,
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTPException: {exc.status_code} - {exc.detail}")

    # Extract code and message from detail if structured
    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", "HTTP_ERROR")
        message = exc.detail.get("message", str(exc.detail))
    else:
        code = "HTTP_ERROR"
        message = str(exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(exc.status_code, code, message),
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[ValidationError, RequestValidationError],
) -> JSONResponse:
    """Handle request body and Pydantic validation errors."""
    logger.warning(f"ValidationError: {exc.errors()}")

    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=400,
        content=build_error_response(
            400,
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": errors},
        ),
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    return JSONResponse(
        status_code=500,
        content=build_error_response(
            500,
            "INTERNAL_ERROR",
            "An unexpected error occurred",
        ),
    )
