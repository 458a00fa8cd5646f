# covercart/services/razorpay_service.py
"""
Razorpay payment gateway integration.

- Orders API (POST /v1/orders) with auto-capture.
- Refunds (POST /v1/payments/{id}/refund).
- Client checkout signature: HMAC-SHA256(key_secret, "order_id|payment_id"), hex.
- Webhook signature: HMAC-SHA256(webhook_secret, raw body), hex.

Amounts are integer minor units (paise). Nothing here touches the database.

Failures:
  InvalidAmount       amount <= 0
  GatewayUnavailable  network error, timeout, 5xx, missing credentials
  GatewayRejected     4xx (provider description kept)
  RefundFailed        any failure while refunding
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from covercart.core.config import settings
from covercart.core.exceptions import (
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidAmount,
    RefundFailed,
)
from covercart.core.logging import get_logger
from covercart.core.security import constant_time_compare

logger = get_logger(__name__)


@dataclass
class GatewayOrder:
    gateway_order_id: str
    amount: int
    currency: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayRefund:
    refund_id: str
    amount: Optional[int]
    status: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _provider_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return str(err.get("description") or err.get("code") or data)
    return str(data)


class RazorpayService:
    """Thin async client for the Razorpay REST API."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = settings.razorpay_settings
        self.key_id = key_id if key_id is not None else (cfg["key_id"] or "")
        self.key_secret = key_secret if key_secret is not None else (cfg["key_secret"] or "")
        self.webhook_secret = webhook_secret if webhook_secret is not None else (cfg["webhook_secret"] or "")
        self.base_url = (base_url or cfg["api_url"]).rstrip("/")
        self.timeout = timeout or cfg["timeout"]
        self._transport = transport

        if not (self.key_id and self.key_secret):
            logger.warning("razorpay_credentials_missing")

    @property
    def public_key(self) -> str:
        return self.key_id

    # ---------------------- helpers ---------------------- #

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            auth=httpx.BasicAuth(self.key_id, self.key_secret),
            transport=self._transport,
        )

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not (self.key_id and self.key_secret):
            raise GatewayUnavailable("Payment gateway is not configured", "GATEWAY_NOT_CONFIGURED")
        try:
            async with self._client() as client:
                resp = await client.post(self._url(path), json=payload)
        except httpx.TimeoutException as e:
            logger.error("razorpay_timeout", path=path, error=str(e))
            raise GatewayUnavailable("Payment gateway timed out", "GATEWAY_TIMEOUT") from e
        except httpx.TransportError as e:
            logger.error("razorpay_network_error", path=path, error=str(e))
            raise GatewayUnavailable("Payment gateway unreachable", "GATEWAY_UNREACHABLE") from e

        if resp.status_code >= 500:
            logger.error("razorpay_server_error", path=path, status=resp.status_code)
            raise GatewayUnavailable(
                f"Payment gateway error (HTTP {resp.status_code})", "GATEWAY_SERVER_ERROR"
            )
        if resp.status_code >= 400:
            message = _provider_message(resp)
            logger.warning("razorpay_rejected", path=path, status=resp.status_code, message=message)
            raise GatewayRejected(message, "GATEWAY_REJECTED", extra={"status": resp.status_code})
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayUnavailable("Payment gateway returned a malformed response", "GATEWAY_BAD_RESPONSE") from e

    # ---------------------- Orders API ---------------------- #

    async def create_payment_order(
        self,
        amount_minor: int,
        currency: str = "INR",
        receipt: Optional[str] = None,
        notes: Optional[dict[str, Any]] = None,
    ) -> GatewayOrder:
        """Create a gateway order the client checkout pays against."""
        if amount_minor is None or int(amount_minor) <= 0:
            raise InvalidAmount("Payment amount must be positive", "INVALID_AMOUNT")

        payload = {
            "amount": int(amount_minor),
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes or {},
        }
        data = await self._post("/v1/orders", payload)
        gateway_order_id = data.get("id")
        if not gateway_order_id:
            raise GatewayUnavailable("Payment gateway returned no order id", "GATEWAY_BAD_RESPONSE")

        logger.info("razorpay_order_created", gateway_order_id=gateway_order_id, amount=data.get("amount", amount_minor))
        return GatewayOrder(
            gateway_order_id=str(gateway_order_id),
            amount=int(data.get("amount", amount_minor)),
            currency=str(data.get("currency", currency)),
            raw=data,
        )

    # ---------------------- Refunds ---------------------- #

    async def refund(
        self,
        gateway_payment_id: str,
        amount_minor: Optional[int] = None,
        notes: Optional[dict[str, Any]] = None,
    ) -> GatewayRefund:
        """Refund a captured payment (full refund when amount is omitted)."""
        if not gateway_payment_id:
            raise RefundFailed("No payment to refund", "REFUND_NO_PAYMENT")
        if amount_minor is not None and int(amount_minor) <= 0:
            raise RefundFailed("Refund amount must be positive", "REFUND_INVALID_AMOUNT")

        payload: dict[str, Any] = {"notes": notes or {}}
        if amount_minor is not None:
            payload["amount"] = int(amount_minor)
        try:
            data = await self._post(f"/v1/payments/{gateway_payment_id}/refund", payload)
        except GatewayError as e:
            logger.error("razorpay_refund_failed", gateway_payment_id=gateway_payment_id, error=e.message)
            raise RefundFailed(e.message, "REFUND_FAILED") from e

        refund_id = data.get("id")
        if not refund_id:
            raise RefundFailed("Payment gateway returned no refund id", "REFUND_FAILED")
        logger.info("razorpay_refund_created", gateway_payment_id=gateway_payment_id, refund_id=refund_id)
        amount = data.get("amount")
        return GatewayRefund(
            refund_id=str(refund_id),
            amount=int(amount) if amount is not None else amount_minor,
            status=data.get("status"),
            raw=data,
        )

    # ---------------------- Signatures ---------------------- #

    def verify_client_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        """Checkout callback signature; pure computation, no network."""
        if not (self.key_secret and gateway_order_id and gateway_payment_id and signature):
            return False
        expected = _hmac_hex(self.key_secret, f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8"))
        return constant_time_compare(expected, signature.strip())

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Webhook signature over the raw bytes exactly as received."""
        if not signature or not self.webhook_secret:
            return False
        expected = _hmac_hex(self.webhook_secret, raw_body)
        return constant_time_compare(expected, signature.strip())


__all__ = ["RazorpayService", "GatewayOrder", "GatewayRefund"]
