# covercart/core/exceptions.py
"""
Exceptions and FastAPI error handlers for CoverCart.

Every domain exception carries its HTTP status and a title; handlers render
an RFC 7807 style body (application/problem+json) with a stable `code` the
storefront can switch on:

    {"type": ..., "title": ..., "status": 409, "detail": ..., "code": "ORDER_ALREADY_PAID"}

Provider failures split by family: gateway errors are 502, carrier
rejections (bad data) 422 and carrier outages 503.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from covercart.core.logging import get_logger, redact_secrets

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Domain exceptions
# -----------------------------------------------------------------------------
class CoverCartException(Exception):
    """Base domain exception."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    title: str = "Bad request"
    default_code: str = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.extra = extra or {}
        self.headers = headers or {}
        super().__init__(message)


class AuthenticationError(CoverCartException):
    status_code = status.HTTP_401_UNAUTHORIZED
    title = "Authentication error"
    default_code = "AUTH_REQUIRED"


class AuthorizationError(CoverCartException):
    status_code = status.HTTP_403_FORBIDDEN
    title = "Forbidden"
    default_code = "FORBIDDEN"


class CoverCartValidationError(CoverCartException):
    """Input that passed schema validation but breaks a business rule."""

    title = "Validation error"
    default_code = "VALIDATION_ERROR"


class InvalidAmount(CoverCartValidationError):
    default_code = "INVALID_AMOUNT"


class NotFoundError(CoverCartException):
    status_code = status.HTTP_404_NOT_FOUND
    title = "Resource not found"
    default_code = "NOT_FOUND"


class ConflictError(CoverCartException):
    status_code = status.HTTP_409_CONFLICT
    title = "Conflict"
    default_code = "CONFLICT"


class SignatureError(CoverCartException):
    """Checkout or webhook signature did not verify."""

    title = "Invalid signature"
    default_code = "INVALID_SIGNATURE"


class ExternalServiceError(CoverCartException):
    status_code = status.HTTP_502_BAD_GATEWAY
    title = "Upstream service error"
    default_code = "UPSTREAM_ERROR"


# ---- payment gateway
class GatewayError(ExternalServiceError):
    title = "Payment provider error"
    default_code = "GATEWAY_ERROR"


class GatewayUnavailable(GatewayError):
    """Network error, timeout or 5xx from the gateway."""

    default_code = "GATEWAY_UNAVAILABLE"


class GatewayRejected(GatewayError):
    """The gateway refused the request (4xx)."""

    default_code = "GATEWAY_REJECTED"


class RefundFailed(GatewayError):
    default_code = "REFUND_FAILED"


# ---- shipping carrier
class CarrierError(ExternalServiceError):
    title = "Carrier error"
    default_code = "CARRIER_ERROR"


class CarrierUnavailable(CarrierError):
    """Network error, timeout or 5xx from the carrier. Retryable."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    title = "Carrier unavailable"
    default_code = "CARRIER_UNAVAILABLE"


class CarrierRejected(CarrierError):
    """The carrier refused the request (4xx). Needs a data fix, not a retry."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    title = "Carrier rejected the request"
    default_code = "CARRIER_REJECTED"


class AuthExpired(CarrierError):
    """Carrier token refused even after a fresh login."""

    default_code = "CARRIER_AUTH_EXPIRED"


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------
def _problem(
    request: Request,
    status_code: int,
    title: str,
    detail: str,
    code: str,
    *,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {
        "type": f"https://httpstatuses.com/{status_code}",
        "title": title,
        "status": status_code,
        "detail": detail,
        "code": code,
        "instance": request.url.path,
    }
    if extra:
        body["extra"] = redact_secrets(extra)
    return JSONResponse(body, status_code=status_code, headers=headers, media_type="application/problem+json")


# unique / foreign key / not null / check, PG and SQLite wording
_INTEGRITY_PATTERNS = (
    (re.compile(r"duplicate key|unique constraint|unique violation", re.I), "DUPLICATE_VALUE", "A record with this value already exists"),
    (re.compile(r"foreign key", re.I), "FOREIGN_KEY_ERROR", "Referenced record does not exist"),
    (re.compile(r"not null", re.I), "REQUIRED_FIELD", "Required field is missing"),
    (re.compile(r"check constraint", re.I), "INVALID_VALUE", "Invalid value provided"),
)


def _classify_integrity_error(exc: IntegrityError) -> tuple[str, str]:
    text = str(getattr(exc, "orig", exc))
    for pattern, code, message in _INTEGRITY_PATTERNS:
        if pattern.search(text):
            return code, message
    return "INTEGRITY_ERROR", "A database constraint was violated"


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------
async def covercart_exception_handler(request: Request, exc: CoverCartException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        exception_type=type(exc).__name__,
        code=exc.code,
        message=exc.message,
        path=request.url.path,
        extra=exc.extra,
    )
    return _problem(request, exc.status_code, exc.title, exc.message, exc.code, extra=exc.extra, headers=exc.headers)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema errors are 400 in this API."""
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    logger.warning("request_invalid", path=request.url.path, errors=errors)
    return _problem(
        request,
        status.HTTP_400_BAD_REQUEST,
        "Validation error",
        "Request validation failed",
        "REQUEST_VALIDATION_ERROR",
        extra={"errors": errors},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _problem(
        request,
        exc.status_code,
        f"HTTP {exc.status_code}",
        str(exc.detail),
        f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    code, message = _classify_integrity_error(exc)
    logger.warning("db_integrity_error", code=code, error=str(getattr(exc, "orig", exc)), path=request.url.path)
    return _problem(request, status.HTTP_409_CONFLICT, "Conflict", message, code)


async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Locked database, lost connection, timeouts."""
    logger.error("db_unavailable", exc_info=exc, path=request.url.path)
    return _problem(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Database unavailable",
        "Database is temporarily unavailable. Please retry later.",
        "DB_UNAVAILABLE",
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("db_error", exc_info=exc, path=request.url.path)
    return _problem(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error", "Database operation failed", "DB_ERROR")


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path, method=request.method)
    return _problem(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_ERROR",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CoverCartException, covercart_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)  # 409
    app.add_exception_handler(OperationalError, operational_error_handler)  # 503
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)  # 500
    app.add_exception_handler(Exception, global_exception_handler)


__all__ = [
    "CoverCartException",
    "AuthenticationError",
    "AuthorizationError",
    "CoverCartValidationError",
    "InvalidAmount",
    "NotFoundError",
    "ConflictError",
    "SignatureError",
    "ExternalServiceError",
    "GatewayError",
    "GatewayUnavailable",
    "GatewayRejected",
    "RefundFailed",
    "CarrierError",
    "CarrierUnavailable",
    "CarrierRejected",
    "AuthExpired",
    "register_exception_handlers",
]
