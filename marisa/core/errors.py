"""
Service-level errors and their HTTP rendering.

Services raise these instead of HTTPException so the same code paths can be
exercised without a request. `register_exception_handlers` maps them, along
with framework and database errors, onto one JSON error envelope.
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from marisa.core.config import settings

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "service_error"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

class ValidationFailed(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "validation_error"

class AccessDenied(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "forbidden"

class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"

class Conflict(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    error_type = "conflict"


def _envelope(status_code: int, message: str, error_type: str, **extra) -> JSONResponse:
    body = {"message": message, "type": error_type}
    body.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content={"error": body})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return _envelope(exc.status_code, exc.message, exc.error_type, code=exc.code, details=exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict):
            detail = dict(exc.detail)
            message = detail.pop("message", "Request failed")
            return _envelope(exc.status_code, message, "http_error", **detail)
        return _envelope(exc.status_code, str(exc.detail), "http_error")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return _envelope(status.HTTP_400_BAD_REQUEST, "Validation error", "validation_error", details=details)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning(f"Integrity error on {request.url.path}: {exc.orig}")
        return _envelope(status.HTTP_409_CONFLICT, "Resource already exists", "conflict")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        if settings.is_production():
            return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "An internal error occurred", "internal_error")
        return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), "internal_error", debug=True)
