"""Domain error taxonomy and the handlers that render it as ``{"error": ...}``."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class HousingError(Exception):
    """Base class for errors recovered at the request boundary."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)


class NotFound(HousingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ValidationError(HousingError):
    status_code = 422
    default_message = "Validation failed"


class Conflict(HousingError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting state"


class CapacityExceeded(Conflict):
    default_message = "Room is full"


class AlreadyAssigned(Conflict):
    default_message = "Student is already assigned to a room"


class NotAssigned(Conflict):
    default_message = "Student is not assigned to this room"


class RoomOccupied(Conflict):
    default_message = "Room still has occupants"


class InvalidTransition(Conflict):
    default_message = "Status change not allowed"


class PersistenceError(HousingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Could not save changes"


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra}, headers=headers)


def housing_error_handler(_: Request, exc: HousingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message)
    extra = {"details": jsonable_encoder(exc.details)} if exc.details else {}
    return error_response(exc.status_code, exc.message, **extra)


def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        422,
        "Validation failed",
        details=jsonable_encoder(exc.errors()),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Render every recoverable error with the same ``{"error": ...}`` body."""

    app.add_exception_handler(HousingError, housing_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
