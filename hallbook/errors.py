"""Domain error taxonomy and the JSON error envelope used by every service.

Domain code raises subclasses of :class:`DomainError`; the FastAPI handlers
installed by :func:`install_error_handlers` render them as::

    {"errorKind": "Conflict", "message": "...", "details": {...}, "correlationId": "..."}

``errorKind`` is the stable, machine-readable field; ``message`` is for humans.
"""
from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    UNAUTHENTICATED = "Unauthenticated"
    ACCOUNT_DEACTIVATED = "AccountDeactivated"
    INSUFFICIENT_ROLE = "InsufficientRole"
    ACCOUNT_NOT_APPROVED = "AccountNotApproved"
    FORBIDDEN = "Forbidden"
    NOT_FOUND = "NotFound"
    HALL_UNAVAILABLE = "HallUnavailable"
    CONFLICT = "Conflict"
    INVALID_TRANSITION = "InvalidTransition"
    ALREADY_ELAPSED = "AlreadyElapsed"
    PROFILE_NOT_READY = "ProfileNotReady"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class DomainError(Exception):
    """Base exception for all domain-specific errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_payload(self, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "errorKind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }
        if correlation_id:
            payload["correlationId"] = correlation_id
        return payload


class ValidationError(DomainError):
    """Malformed or out-of-range input; the caller can fix it and retry."""

    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthenticated(DomainError):
    kind = ErrorKind.UNAUTHENTICATED
    status_code = status.HTTP_401_UNAUTHORIZED


class AccountDeactivated(DomainError):
    kind = ErrorKind.ACCOUNT_DEACTIVATED
    status_code = status.HTTP_401_UNAUTHORIZED


class InsufficientRole(DomainError):
    kind = ErrorKind.INSUFFICIENT_ROLE
    status_code = status.HTTP_403_FORBIDDEN


class AccountNotApproved(InsufficientRole):
    """Faculty account still waiting on the admin approval gate."""

    kind = ErrorKind.ACCOUNT_NOT_APPROVED


class Forbidden(DomainError):
    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class HallUnavailable(DomainError):
    kind = ErrorKind.HALL_UNAVAILABLE
    status_code = status.HTTP_409_CONFLICT


class Conflict(DomainError):
    """Booking window overlaps an already-approved booking."""

    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_409_CONFLICT


class InvalidTransition(DomainError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = status.HTTP_409_CONFLICT


class AlreadyElapsed(DomainError):
    kind = ErrorKind.ALREADY_ELAPSED
    status_code = HTTP_422_UNPROCESSABLE


class ProfileNotReady(DomainError):
    kind = ErrorKind.PROFILE_NOT_READY
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class Timeout(DomainError):
    """Transient store/network timeout. Safe to retry for reads only."""

    kind = ErrorKind.TIMEOUT
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class Unknown(DomainError):
    kind = ErrorKind.UNKNOWN
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Something went wrong, please try again", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.correlation_id = str(uuid.uuid4())


def is_transient_store_error(exc: BaseException) -> bool:
    """Pool exhaustion, statement timeouts and lock waits count as timeouts."""

    if isinstance(exc, PoolTimeoutError):
        return True
    if isinstance(exc, OperationalError):
        text = str(exc.orig if exc.orig is not None else exc).lower()
        return "timeout" in text or "timed out" in text or "locked" in text
    return False


def translate_store_error(exc: BaseException) -> DomainError:
    if is_transient_store_error(exc):
        return Timeout("The data store did not respond in time")
    return Unknown()


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or str(uuid.uuid4())


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    correlation_id = getattr(exc, "correlation_id", None) or _correlation_id(request)
    if isinstance(exc, Unknown):
        logger.error("Unknown failure on %s %s (correlation_id=%s)", request.method, request.url.path, correlation_id)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_payload(correlation_id)),
        headers={"X-Correlation-ID": correlation_id},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    error = ValidationError("Request validation failed", {"errors": errors})
    return await domain_error_handler(request, error)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kinds = {
        status.HTTP_401_UNAUTHORIZED: ErrorKind.UNAUTHENTICATED,
        status.HTTP_403_FORBIDDEN: ErrorKind.FORBIDDEN,
        status.HTTP_404_NOT_FOUND: ErrorKind.NOT_FOUND,
    }
    kind = kinds.get(exc.status_code, ErrorKind.VALIDATION if exc.status_code < 500 else ErrorKind.UNKNOWN)
    correlation_id = _correlation_id(request)
    return JSONResponse(
        status_code=exc.status_code,
        content={"errorKind": kind.value, "message": str(exc.detail), "details": {}, "correlationId": correlation_id},
        headers=getattr(exc, "headers", None),
    )


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    return await domain_error_handler(request, translate_store_error(exc))


async def lookup_error_handler(request: Request, exc: LookupError) -> JSONResponse:
    # SQLAlchemy raises LookupError for enum values it does not recognise
    logger.error("Unrecognised stored value on %s %s: %s", request.method, request.url.path, exc)
    return await domain_error_handler(request, Unknown())


def install_error_handlers(app: FastAPI) -> None:
    """Attach the error envelope handlers to an app."""

    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)
    app.add_exception_handler(LookupError, lookup_error_handler)
