# covercart/routers/webhooks.py
from __future__ import annotations

"""
Provider webhooks.

- Razorpay: HMAC-SHA256 of the raw body in X-Razorpay-Signature. 400 on a bad
  signature (logged as a security event with the source IP).
- Shiprocket: x-api-key token, or HMAC of the raw body in
  x-shiprocket-signature / x-signature, per SHIPROCKET_WEBHOOK_MODE. 401 on
  auth failure.

Once authenticated, a webhook is always acknowledged with 200: processing
errors are logged with the event type and order reference, and the provider
is not asked to retry.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from covercart.core.config import Settings
from covercart.core.dependencies import get_app_settings, get_client_info, get_gateway, get_reconciliation_engine
from covercart.core.exceptions import AuthenticationError, SignatureError
from covercart.core.logging import audit_logger, get_logger
from covercart.core.security import constant_time_compare, verify_body_signature
from covercart.schemas import WebhookAck
from covercart.services.razorpay_service import RazorpayService
from covercart.services.reconciliation import ReconciliationEngine

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _parse_json(raw: bytes) -> Optional[dict[str, Any]]:
    try:
        body = json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def carrier_request_authentic(request: Request, raw: bytes, app_settings: Settings) -> bool:
    if app_settings.SHIPROCKET_WEBHOOK_MODE == "hmac":
        header = request.headers.get("x-shiprocket-signature") or request.headers.get("x-signature")
        return verify_body_signature(raw, header, app_settings.SHIPROCKET_WEBHOOK_SECRET)
    expected = app_settings.SHIPROCKET_WEBHOOK_TOKEN
    token = request.headers.get("x-api-key")
    return bool(expected and token and constant_time_compare(token, expected))


# -------------------------------------------------------------------
# POST /webhooks/razorpay
# -------------------------------------------------------------------


@router.post("/razorpay", response_model=WebhookAck, summary="Razorpay events")
async def razorpay_webhook(
    request: Request,
    gateway: RazorpayService = Depends(get_gateway),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    raw = await request.body()
    if not gateway.verify_webhook_signature(raw, request.headers.get("x-razorpay-signature")):
        audit_logger.log_security_event(
            "webhook_signature_invalid", {"provider": "razorpay", **get_client_info(request)}
        )
        raise SignatureError("Invalid webhook signature", "INVALID_SIGNATURE")

    body = _parse_json(raw)
    if body is None:
        logger.warning("razorpay_webhook_malformed", size=len(raw))
        return WebhookAck(detail="malformed body")

    event = str(body.get("event") or "")
    try:
        outcome = await engine.handle_gateway_event(body)
    except Exception:
        logger.exception("razorpay_webhook_processing_failed", webhook_event=event)
        return WebhookAck(event=event, detail="processing failed")
    return WebhookAck.from_outcome(outcome)


# -------------------------------------------------------------------
# POST /webhooks/shiprocket
# -------------------------------------------------------------------


@router.post("/shiprocket", response_model=WebhookAck, summary="Shiprocket tracking updates")
async def shiprocket_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    app_settings: Settings = Depends(get_app_settings),
):
    raw = await request.body()
    if not carrier_request_authentic(request, raw, app_settings):
        audit_logger.log_security_event(
            "webhook_auth_failed",
            {"provider": "shiprocket", "mode": app_settings.SHIPROCKET_WEBHOOK_MODE, **get_client_info(request)},
        )
        raise AuthenticationError("Unauthorized", "WEBHOOK_UNAUTHORIZED")

    body = _parse_json(raw)
    if body is None:
        logger.warning("shiprocket_webhook_malformed", size=len(raw))
        return WebhookAck(detail="malformed body")

    try:
        outcome = await engine.handle_carrier_event(body)
    except Exception:
        logger.exception(
            "shiprocket_webhook_processing_failed",
            order_id=body.get("order_id"),
            current_status=body.get("current_status"),
        )
        return WebhookAck(event=str(body.get("current_status") or ""), detail="processing failed")
    return WebhookAck.from_outcome(outcome)
