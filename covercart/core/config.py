# covercart/core/config.py
"""
Settings for CoverCart (pydantic-settings).

Values come from the environment, then .env.test / .env. Provider sections:
Razorpay (payments) and Shiprocket (shipping); fulfillment automation flags
control what happens after a payment is confirmed.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from typing import Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SECRET_FIELD_MARKERS = ("SECRET", "PASSWORD", "TOKEN")


def _under_pytest() -> bool:
    return "PYTEST_CURRENT_TEST" in os.environ


def _is_secret_field(name: str) -> bool:
    return any(m in name for m in _SECRET_FIELD_MARKERS) and "TTL" not in name


def _masked(value: Any) -> Any:
    if value in (None, ""):
        return value
    s = str(value)
    return "***" if len(s) <= 6 else f"{s[:3]}***{s[-3:]}"


def _split_origins(v):
    """CORS_ORIGINS as a JSON list or a comma separated string."""
    if not isinstance(v, str):
        return v
    v = v.strip()
    if v.startswith("["):
        try:
            return [str(i).strip() for i in json.loads(v) if str(i).strip()]
        except ValueError:
            pass
    return [i.strip() for i in v.split(",") if i.strip()]


class Settings(BaseSettings):
    """
    CoverCart configuration layer.

    - PostgreSQL (asyncpg) in production, SQLite (aiosqlite) fallback for local runs and tests.
    - Provider sections: Razorpay (payments) and Shiprocket (shipping).
    - Secrets are masked in every dump.
    """

    model_config = SettingsConfigDict(
        env_file=(".env.test", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    # ---- base
    PROJECT_NAME: str = Field(default="CoverCart", description="Project name")
    VERSION: str = Field(default="0.1.0", description="Application version")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment")
    TESTING: bool = Field(default=False, description="Testing mode")
    API_V1_STR: str = Field(default="/api/v1", description="API v1 prefix")
    CORS_ORIGINS: List[str] = Field(default=["*"], description="CORS origins")

    # ---- security/JWT (tokens are issued by the identity service)
    SECRET_KEY: str = Field(default="changeme", description="JWT verification secret")
    ALGORITHM: str = Field(default="HS256", description="JWT algorithm")

    # ---- database
    DATABASE_URL: Optional[str] = Field(default=None, description="Database URL")
    DB_ECHO: bool = Field(default=False, description="Echo SQL statements")
    DB_AUTO_CREATE: bool = Field(default=False, description="Create tables on startup (dev only)")
    SQLALCHEMY_POOL_SIZE: int = Field(default=10, description="Pool size")
    SQLALCHEMY_MAX_OVERFLOW: int = Field(default=20, description="Max overflow")
    SQLALCHEMY_POOL_RECYCLE: int = Field(default=1800, description="Pool recycle (s)")

    # ---- logs
    LOG_PATH: str = Field(default="logs/app.log", description="Log file path")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Logging format (json|text)")

    # ---- store
    STORE_CURRENCY: str = Field(default="INR", description="Currency for all orders")
    DEFAULT_COUNTRY: str = Field(default="India", description="Default shipping country")
    CUSTOMER_FALLBACK_EMAIL: str = Field(default="customer@example.com", description="Email sent to the carrier when none is known")

    # ---- Razorpay
    RAZORPAY_KEY_ID: Optional[str] = Field(default=None, description="Razorpay key id (public)")
    RAZORPAY_KEY_SECRET: Optional[str] = Field(default=None, description="Razorpay key secret")
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = Field(default=None, description="Razorpay webhook secret")
    RAZORPAY_API_URL: str = Field(default="https://api.razorpay.com", description="Razorpay API URL")
    RAZORPAY_TIMEOUT_SECONDS: float = Field(default=15.0, description="Razorpay request timeout")

    # ---- Shiprocket
    SHIPROCKET_EMAIL: Optional[str] = Field(default=None, description="Shiprocket API user email")
    SHIPROCKET_PASSWORD: Optional[str] = Field(default=None, description="Shiprocket API user password")
    SHIPROCKET_API_URL: str = Field(default="https://apiv2.shiprocket.in/v1/external", description="Shiprocket API URL")
    SHIPROCKET_TOKEN_TTL_SECONDS: int = Field(default=9 * 24 * 3600, description="Token cache TTL (provider expiry is 10 days)")
    SHIPROCKET_TIMEOUT_SECONDS: float = Field(default=20.0, description="Shiprocket request timeout")
    SHIPROCKET_GET_RETRIES: int = Field(default=2, description="Retries for idempotent (GET) calls")
    SHIPROCKET_RETRY_BACKOFF_SECONDS: float = Field(default=0.5, description="Retry backoff base")
    SHIPROCKET_PICKUP_LOCATION: str = Field(default="Primary", description="Pickup location nickname")
    SHIPROCKET_PICKUP_POSTCODE: Optional[str] = Field(default=None, description="Warehouse pincode for serviceability")
    SHIPROCKET_WEBHOOK_MODE: str = Field(default="token", description="Webhook auth mode (token|hmac)")
    SHIPROCKET_WEBHOOK_TOKEN: Optional[str] = Field(default=None, description="Expected x-api-key value")
    SHIPROCKET_WEBHOOK_SECRET: Optional[str] = Field(default=None, description="HMAC secret for webhook bodies")

    # ---- fulfillment
    SHIPMENT_AUTO_ASSIGN_COURIER: bool = Field(default=True, description="Assign cheapest courier after shipment creation")
    SHIPMENT_AUTO_REQUEST_PICKUP: bool = Field(default=False, description="Request pickup after courier assignment")
    SHIPMENT_AUTO_CREATE_ON_PAYMENT: bool = Field(default=False, description="Create shipment right after payment verification")
    SHIPMENT_RESERVATION_TTL_SECONDS: int = Field(default=300, description="Age after which an unfinished shipment reservation may be reclaimed")
    SHIPMENT_DEFAULT_LENGTH_CM: float = Field(default=15.0, description="Default package length")
    SHIPMENT_DEFAULT_BREADTH_CM: float = Field(default=10.0, description="Default package breadth")
    SHIPMENT_DEFAULT_HEIGHT_CM: float = Field(default=2.0, description="Minimum package height")
    SHIPMENT_DEFAULT_WEIGHT_KG: float = Field(default=0.15, description="Weight per unit")

    # --------- validators ---------
    @field_validator("CORS_ORIGINS", mode="before")
    def _cors(cls, v):
        return _split_origins(v)

    @field_validator("ALGORITHM")
    def check_alg(cls, v):
        allowed = {"HS256", "HS384", "HS512"}
        if v not in allowed:
            raise ValueError(f"Unsupported JWT algorithm: {v}")
        return v

    @field_validator("SHIPROCKET_WEBHOOK_MODE")
    def check_webhook_mode(cls, v):
        v = (v or "").strip().lower()
        if v not in {"token", "hmac"}:
            raise ValueError(f"Unsupported SHIPROCKET_WEBHOOK_MODE: {v}")
        return v

    # --------- properties ---------
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_testing(self) -> bool:
        return bool(self.TESTING or _under_pytest())

    @property
    def razorpay_settings(self) -> dict:
        return {
            "key_id": self.RAZORPAY_KEY_ID,
            "key_secret": self.RAZORPAY_KEY_SECRET,
            "webhook_secret": self.RAZORPAY_WEBHOOK_SECRET,
            "api_url": self.RAZORPAY_API_URL,
            "timeout": self.RAZORPAY_TIMEOUT_SECONDS,
        }

    @property
    def shiprocket_settings(self) -> dict:
        return {
            "email": self.SHIPROCKET_EMAIL,
            "password": self.SHIPROCKET_PASSWORD,
            "api_url": self.SHIPROCKET_API_URL,
            "token_ttl": self.SHIPROCKET_TOKEN_TTL_SECONDS,
            "timeout": self.SHIPROCKET_TIMEOUT_SECONDS,
            "get_retries": self.SHIPROCKET_GET_RETRIES,
            "backoff": self.SHIPROCKET_RETRY_BACKOFF_SECONDS,
        }

    @property
    def default_package(self) -> dict:
        return {
            "length": self.SHIPMENT_DEFAULT_LENGTH_CM,
            "breadth": self.SHIPMENT_DEFAULT_BREADTH_CM,
            "height": self.SHIPMENT_DEFAULT_HEIGHT_CM,
            "weight": self.SHIPMENT_DEFAULT_WEIGHT_KG,
        }

    def check_secret_key(self) -> None:
        if self.is_production:
            if not self.SECRET_KEY or self.SECRET_KEY.strip().lower() in {"changeme", "secret", "password"}:
                raise ValueError("Set a secure SECRET_KEY in .env for production!")

    def dump_settings_safe(self) -> dict:
        return {k: _masked(v) if _is_secret_field(k) else v for k, v in self.model_dump().items()}


@lru_cache
def get_settings() -> Settings:
    s = Settings()
    if not _under_pytest() and os.getenv("DISABLE_APP_STARTUP_HOOKS") != "1":
        s.check_secret_key()
    return s


settings = get_settings()

__all__ = ["Settings", "get_settings", "settings"]
