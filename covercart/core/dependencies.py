# covercart/core/dependencies.py
from __future__ import annotations

"""
FastAPI dependencies:
- Auth (bearer JWT -> Principal), admin role check
- Client context (ip, ua, request id)
- Pagination
- Service accessors (objects built by create_app() and kept on app.state)
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from covercart.core.exceptions import AuthenticationError, AuthorizationError
from covercart.core.logging import audit_logger, bind_context
from covercart.core.security import Principal, principal_from_token

if TYPE_CHECKING:  # pragma: no cover
    from covercart.core.config import Settings
    from covercart.services.fulfillment import FulfillmentOrchestrator
    from covercart.services.order_store import OrderStore
    from covercart.services.razorpay_service import RazorpayService
    from covercart.services.reconciliation import ReconciliationEngine


# ------------------------------------------------------------------------------
# Utility: correlation ids and client info
# ------------------------------------------------------------------------------
def get_client_info(request: Request) -> dict:
    rid = request.headers.get("x-request-id") or request.headers.get("x-correlation-id") or ""
    return {
        "ip_address": (
            request.headers.get("x-real-ip")
            or request.headers.get("x-forwarded-for")
            or (request.client.host if request.client else "")
        ),
        "user_agent": request.headers.get("user-agent", "unknown"),
        "request_id": rid,
    }


# ------------------------------------------------------------------------------
# Authentication
# ------------------------------------------------------------------------------
security = HTTPBearer(auto_error=False)


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    token: Optional[str] = credentials.credentials if credentials else None
    if not token:
        raise AuthenticationError(
            "Authentication required", "AUTH_REQUIRED", headers={"WWW-Authenticate": "Bearer"}
        )
    try:
        principal = principal_from_token(token)
    except ValueError as e:
        info = get_client_info(request)
        audit_logger.log_security_event("auth_failure", {"reason": str(e), **info})
        raise AuthenticationError(
            "Invalid or expired token", "INVALID_TOKEN", headers={"WWW-Authenticate": "Bearer"}
        ) from e

    bind_context(user_id=principal.id)
    return principal


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        audit_logger.log_permission_denied(principal.id, "admin role required", "admin")
        raise AuthorizationError("Insufficient permissions", "INSUFFICIENT_PERMISSIONS")
    return principal


# ------------------------------------------------------------------------------
# Pagination
# ------------------------------------------------------------------------------
@dataclass
class Pagination:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


def get_pagination(
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(20, ge=1, le=100, description="Items per page"),
) -> Pagination:
    return Pagination(page=page, per_page=per_page)


# ------------------------------------------------------------------------------
# Service accessors
# ------------------------------------------------------------------------------
def get_app_settings(request: Request) -> "Settings":
    return request.app.state.settings


def get_order_store(request: Request) -> "OrderStore":
    return request.app.state.order_store


def get_reconciliation_engine(request: Request) -> "ReconciliationEngine":
    return request.app.state.reconciliation


def get_fulfillment(request: Request) -> "FulfillmentOrchestrator":
    return request.app.state.fulfillment


def get_gateway(request: Request) -> "RazorpayService":
    return request.app.state.gateway


__all__ = [
    "get_client_info",
    "get_current_principal",
    "require_admin",
    "Pagination",
    "get_pagination",
    "get_app_settings",
    "get_order_store",
    "get_reconciliation_engine",
    "get_fulfillment",
    "get_gateway",
]
