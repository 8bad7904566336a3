"""Service error taxonomy and FastAPI exception handlers."""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class AuthenticationError(ServiceError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Not authenticated"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "access_denied"
    default_message = "Access denied"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class ProviderError(ServiceError):
    """The payment provider failed or answered with an error code."""

    status_code = 500
    code = "provider_error"
    default_message = "Payment provider request failed"


class OrderCodeConflictError(ProviderError):
    """The provider rejected an order code that already exists on its side."""

    code = "order_code_conflict"
    default_message = "Order code already exists at the payment provider"


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"Service error on {request.method} {request.url.path}: {exc.message}",
                exc_info=exc,
            )
        else:
            logger.warning(
                f"Client error on {request.method} {request.url.path}: "
                f"{exc.status_code} {exc.code} - {exc.message}"
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}",
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content=ServiceError().to_dict())
