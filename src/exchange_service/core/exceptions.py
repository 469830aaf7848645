"""Service error taxonomy and handlers for consistent error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from exchange_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """
    Base error carrying a machine-readable code and an HTTP status.

    Rendered as ``{"error": ..., "message": ..., "details": ...}``.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details = details if details is not None else {}


class ValidationError(ServiceError):
    """Malformed or out-of-bounds input."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("VALIDATION_ERROR", message, 400, details)


class UnauthorizedError(ServiceError):
    """Missing or unverifiable bearer credentials."""

    def __init__(self, message: str) -> None:
        super().__init__("UNAUTHORIZED", message, 401, {})


class ForbiddenActorError(ServiceError):
    """Authenticated caller lacks the role or ownership the operation requires."""

    def __init__(self, message: str) -> None:
        super().__init__("FORBIDDEN_ACTOR", message, 403, {})


class NotFoundError(ServiceError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity.upper()}_NOT_FOUND",
            f"{entity.capitalize()} not found",
            404,
            {f"{entity}_id": entity_id},
        )


class InvalidStateError(ServiceError):
    """Operation is not valid for the entity's current status."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_STATE", message, 409, details)


class ForbiddenTransitionError(ServiceError):
    """Owner attempted a change the current workflow stage no longer allows."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("FORBIDDEN_TRANSITION", message, 409, details)


class DuplicateOfferError(ServiceError):
    """Expert already holds a live offer on the request."""

    def __init__(self, message: str = "You already submitted an offer for this request") -> None:
        super().__init__("DUPLICATE_OFFER", message, 409, {})


class SelfDealingError(ServiceError):
    """Expert attempted to bid on their own request."""

    def __init__(self, message: str = "You cannot submit an offer on your own request") -> None:
        super().__init__("SELF_DEALING", message, 400, {})


class ConcurrentModificationError(ServiceError):
    """A conditional update lost a race. Safe to retry after re-reading state."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("CONCURRENT_MODIFICATION", message, 409, details)


class ConversationLockedError(ServiceError):
    """Messaging attempted before the request was assigned."""

    def __init__(self, message: str = "This request has not been assigned yet") -> None:
        super().__init__("CONVERSATION_LOCKED", message, 409, {})


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 405 from router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={"error": "NOT_FOUND", "message": "Resource not found", "details": {}},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, cast("ExceptionHandler", unhandled_exception_handler))
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
