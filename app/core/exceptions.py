"""
Error taxonomy and the JSON envelope every failure is rendered with:

    {"success": false, "error": "...", "details": ...}
"""

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base exception for all application errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authorized to access this route"


class PermissionDeniedError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to access this resource"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Duplicate entry. This record already exists."


class StorageError(AppError):
    """Persistence or file-system failure; the caller only sees a generic message."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Could not save changes"


def field_errors(errors) -> list:
    """Flatten pydantic error dicts into ``[{field, message}]``."""
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "form")]
        details.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return details


def error_response(status_code: int, message: str, details: Any = None, stack: Optional[str] = None) -> JSONResponse:
    body = {"success": False, "error": message}
    if details:
        body["details"] = details
    if stack:
        body["stack"] = stack
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    def _show_stack() -> bool:
        settings = getattr(app.state, "settings", None)
        return settings is not None and not settings.is_production

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if isinstance(exc, StorageError):
            logger.error("storage_error", exc_info=exc.__cause__ or exc)
        return error_response(exc.status_code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return error_response(400, "Validation failed", field_errors(exc.errors()))

    @app.exception_handler(PydanticValidationError)
    async def handle_model_validation(request: Request, exc: PydanticValidationError):
        return error_response(400, "Validation failed", field_errors(exc.errors()))

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(request: Request, exc: IntegrityError):
        logger.warning("integrity_error: %s", exc.orig)
        return error_response(ConflictError.status_code, ConflictError.default_message)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_exception")
        stack = "".join(traceback.format_exception(exc)) if _show_stack() else None
        return error_response(500, "Internal server error", stack=stack)
