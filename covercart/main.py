from __future__ import annotations

"""
CoverCart API application factory.

create_app() wires the shared services once and keeps them on app.state:
    settings, db_engine, order_store, gateway, carrier, reconciliation, fulfillment

Tests pass their own settings, a temporary engine and provider clients
backed by httpx.MockTransport.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.middleware.base import BaseHTTPMiddleware

from covercart.core.config import Settings, get_settings
from covercart.core.db import create_engine_for_url, get_alembic_engine_url, health_check_db_async, init_db_async, make_sessionmaker
from covercart.core.exceptions import register_exception_handlers
from covercart.core.logging import LoggingContextMiddleware, get_logger, setup_logging
from covercart.routers import mount_v1
from covercart.services.fulfillment import FulfillmentOrchestrator
from covercart.services.order_store import OrderStore
from covercart.services.razorpay_service import RazorpayService
from covercart.services.reconciliation import ReconciliationEngine
from covercart.services.shiprocket_service import ShiprocketService

logger = get_logger(__name__)


# ------------------------------------------------------------------------------
# Provider clients
# ------------------------------------------------------------------------------
def build_gateway(app_settings: Settings) -> RazorpayService:
    return RazorpayService(
        key_id=app_settings.RAZORPAY_KEY_ID or "",
        key_secret=app_settings.RAZORPAY_KEY_SECRET or "",
        webhook_secret=app_settings.RAZORPAY_WEBHOOK_SECRET or "",
        base_url=app_settings.RAZORPAY_API_URL,
        timeout=app_settings.RAZORPAY_TIMEOUT_SECONDS,
    )


def build_carrier(app_settings: Settings) -> ShiprocketService:
    return ShiprocketService(
        email=app_settings.SHIPROCKET_EMAIL or "",
        password=app_settings.SHIPROCKET_PASSWORD or "",
        base_url=app_settings.SHIPROCKET_API_URL,
        token_ttl=app_settings.SHIPROCKET_TOKEN_TTL_SECONDS,
        timeout=app_settings.SHIPROCKET_TIMEOUT_SECONDS,
        get_retries=app_settings.SHIPROCKET_GET_RETRIES,
        backoff=app_settings.SHIPROCKET_RETRY_BACKOFF_SECONDS,
        pickup_location=app_settings.SHIPROCKET_PICKUP_LOCATION,
    )


# ------------------------------------------------------------------------------
# Middleware
# ------------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer-when-downgrade")
        return response


def _add_middleware(app: FastAPI, app_settings: Settings) -> None:
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS or ["*"],
        allow_credentials="*" not in (app_settings.CORS_ORIGINS or ["*"]),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )
    # outermost: request id and access log for everything below
    app.add_middleware(LoggingContextMiddleware)


# ------------------------------------------------------------------------------
# Health endpoints (/livez, /readyz)
# ------------------------------------------------------------------------------
def _register_health_endpoints(app: FastAPI) -> None:
    @app.get("/livez", include_in_schema=False)
    async def livez() -> Response:
        """Liveness probe: no I/O."""
        return PlainTextResponse("ok", status_code=200)

    @app.get("/readyz", include_in_schema=False)
    async def readyz(request: Request) -> Response:
        db = await health_check_db_async(request.app.state.db_engine)
        body = {"ok": db["ok"], "version": request.app.state.settings.VERSION, "db_error": db["error"]}
        return JSONResponse(body, status_code=200 if db["ok"] else 503)


# ------------------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------------------
def create_app(
    app_settings: Optional[Settings] = None,
    *,
    gateway: Optional[RazorpayService] = None,
    carrier: Optional[ShiprocketService] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    app_settings = app_settings or get_settings()
    db_engine = engine or create_engine_for_url((app_settings.DATABASE_URL or "").strip() or get_alembic_engine_url())
    owns_engine = engine is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(to_files=not app_settings.is_testing)
        if app_settings.DB_AUTO_CREATE:
            await init_db_async(db_engine)
        logger.info("startup_complete", environment=app_settings.ENVIRONMENT, version=app_settings.VERSION)
        try:
            yield
        finally:
            if owns_engine:
                await db_engine.dispose()
            logger.info("shutdown_complete")

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        version=app_settings.VERSION,
        debug=app_settings.DEBUG,
        openapi_url=f"{app_settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )

    store = OrderStore(make_sessionmaker(db_engine))
    gateway = gateway or build_gateway(app_settings)
    carrier = carrier or build_carrier(app_settings)

    app.state.settings = app_settings
    app.state.db_engine = db_engine
    app.state.order_store = store
    app.state.gateway = gateway
    app.state.carrier = carrier
    app.state.reconciliation = ReconciliationEngine(store, gateway, app_settings)
    app.state.fulfillment = FulfillmentOrchestrator(store, carrier, app_settings)

    _add_middleware(app, app_settings)
    register_exception_handlers(app)
    _register_health_endpoints(app)
    mount_v1(app, base_prefix=app_settings.API_V1_STR)
    return app


app = create_app()

__all__ = ["app", "create_app", "build_gateway", "build_carrier"]
