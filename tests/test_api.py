import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from conftest import SHIPROCKET_WEBHOOK_TOKEN, shipping_address, sign_body, sign_checkout
from covercart.main import create_app


def _address_json() -> dict:
    a = shipping_address()
    a["postalCode"] = a.pop("postal_code")
    return a


def _checkout_body(method: str = "razorpay", quantity: int = 1) -> dict:
    return {
        "items": [{"productId": 1, "variantId": 10, "quantity": quantity}],
        "shippingAddress": _address_json(),
        "paymentMethod": method,
    }


def _verify_body(order_id: str, gateway_order_id: str = "order_abc", payment_id: str = "pay_001") -> dict:
    return {
        "razorpay_order_id": gateway_order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": sign_checkout(gateway_order_id, payment_id),
        "orderId": order_id,
    }


# ======================================================================================
# Health / middleware
# ======================================================================================
@pytest.mark.asyncio
async def test_livez_and_readyz(client):
    r = await client.get("/livez")
    assert r.status_code == 200
    assert r.text == "ok"

    r = await client.get("/readyz")
    assert r.status_code == 200
    assert r.json()["ok"] is True


@pytest.mark.asyncio
async def test_security_headers_and_request_id(client):
    r = await client.get("/livez", headers={"X-Request-ID": "req-42"})
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert "Referrer-Policy" in r.headers
    assert r.headers["X-Request-ID"] == "req-42"


# ======================================================================================
# Auth
# ======================================================================================
@pytest.mark.asyncio
async def test_orders_require_authentication(client, api):
    r = await client.post(api("/orders"), json=_checkout_body())
    assert r.status_code == 401
    assert r.headers["content-type"].startswith("application/problem+json")
    assert r.json()["code"] == "AUTH_REQUIRED"

    r = await client.get(api("/orders/my"), headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_admin_routes_need_admin_role(client, api, user_headers, admin_headers):
    r = await client.get(api("/admin/orders"), headers=user_headers)
    assert r.status_code == 403

    r = await client.get(api("/admin/orders"), headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["total"] == 0


# ======================================================================================
# Checkout and payment
# ======================================================================================
@pytest.mark.asyncio
async def test_cod_checkout(client, api, catalog, user_headers, razorpay_stub):
    r = await client.post(api("/orders"), json=_checkout_body("COD"), headers=user_headers)
    assert r.status_code == 201, r.text
    body = r.json()
    order = body["order"]
    assert order["status"] == "pending"
    assert order["paymentStatus"] == "pending"
    assert order["paymentMethod"] == "cod"
    assert Decimal(str(order["total"])) == Decimal("499")
    assert order["orderNumber"].startswith("ORD-")
    assert order["shippingAddress"]["postal_code"] == "560001"
    assert body["gatewayOrderId"] is None
    assert razorpay_stub.requests == []


@pytest.mark.asyncio
async def test_razorpay_checkout_and_verify(client, api, catalog, user_headers, razorpay_stub):
    razorpay_stub.next_order_id = "order_abc"
    r = await client.post(api("/orders"), json=_checkout_body(quantity=2), headers=user_headers)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["gatewayOrderId"] == "order_abc"
    assert body["gatewayPublicKey"] == "rzp_test_key"
    assert body["amount"] == 99800
    order_id = body["order"]["id"]

    r = await client.post(api("/orders/pay/verify"), json=_verify_body(order_id), headers=user_headers)
    assert r.status_code == 200, r.text
    paid = r.json()
    assert paid["paymentStatus"] == "paid"
    assert paid["status"] == "confirmed"
    assert paid["gatewayPaymentId"] == "pay_001"

    r = await client.get(api("/orders/my"), headers=user_headers)
    assert r.json()["total"] == 1
    assert r.json()["items"][0]["id"] == order_id


@pytest.mark.asyncio
async def test_verify_with_bad_signature(client, api, catalog, user_headers, place_order):
    order = await place_order()
    payload = _verify_body(order.id)
    payload["razorpay_signature"] = "0" * 64
    r = await client.post(api("/orders/pay/verify"), json=payload, headers=user_headers)
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_verify_with_non_ascii_signature_is_rejected(client, api, catalog, user_headers, place_order):
    order = await place_order()
    payload = _verify_body(order.id)
    payload["razorpay_signature"] = "\u00e9" * 64
    r = await client.post(api("/orders/pay/verify"), json=payload, headers=user_headers)
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_SIGNATURE"

    r = await client.get(api(f"/orders/{order.id}"), headers=user_headers)
    assert r.json()["paymentStatus"] == "pending"


@pytest.mark.asyncio
async def test_gateway_outage_is_bad_gateway(client, api, catalog, user_headers, razorpay_stub):
    razorpay_stub.fail_with = 500
    r = await client.post(api("/orders"), json=_checkout_body(), headers=user_headers)
    assert r.status_code == 502
    assert r.json()["code"] == "PAYMENT_PROVIDER_UNAVAILABLE"


@pytest.mark.asyncio
async def test_invalid_payload_is_400(client, api, catalog, user_headers):
    r = await client.post(api("/orders"), json={"items": [], "shippingAddress": _address_json()}, headers=user_headers)
    assert r.status_code == 400
    assert r.json()["code"] == "REQUEST_VALIDATION_ERROR"

    bad_item = _checkout_body()
    bad_item["items"][0].pop("variantId")
    r = await client.post(api("/orders"), json=bad_item, headers=user_headers)
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_orders_are_private(client, api, catalog, place_order, other_headers, admin_headers):
    order = await place_order()
    r = await client.get(api(f"/orders/{order.id}"), headers=other_headers)
    assert r.status_code == 404

    r = await client.get(api(f"/admin/orders/ORD-{order.id}"), headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["id"] == order.id


@pytest.mark.asyncio
async def test_cancel_endpoint(client, api, catalog, place_order, user_headers):
    order = await place_order()
    r = await client.put(api(f"/orders/{order.id}/cancel"), json={"reason": "ordered twice"}, headers=user_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert r.json()["cancellationReason"] == "ordered twice"

    r = await client.put(api(f"/orders/{order.id}/cancel"), headers=user_headers)
    assert r.status_code == 400
    assert r.json()["code"] == "ORDER_NOT_CANCELLABLE"


# ======================================================================================
# Custom orders
# ======================================================================================
@pytest.mark.asyncio
async def test_custom_order_review_flow(client, api, catalog, user_headers, admin_headers):
    r = await client.post(
        api("/custom/orders"),
        json={
            "productId": 1,
            "mockupUrl": "https://cdn.example/mockups/1.png",
            "instructions": "Name on the back",
            "designData": {"layers": 2},
            "shippingAddress": _address_json(),
        },
        headers=user_headers,
    )
    assert r.status_code == 201, r.text
    custom = r.json()
    assert custom["status"] == "pending"
    assert Decimal(str(custom["unitPrice"])) == Decimal("499")
    assert custom["orderNumber"].startswith("CUST-")

    r = await client.put(api(f"/admin/custom/{custom['id']}/reject"), json={"reason": "no"}, headers=admin_headers)
    assert r.status_code == 400

    r = await client.put(
        api(f"/admin/custom/{custom['id']}/approve"), json={"adminNotes": "print ready"}, headers=admin_headers
    )
    assert r.status_code == 200
    assert r.json()["status"] == "approved"
    assert r.json()["adminNotes"] == "print ready"

    r = await client.get(api("/custom/orders"), headers=user_headers)
    assert r.json()["items"][0]["status"] == "approved"

    r = await client.get(api(f"/admin/orders/CUST-{custom['id']}"), headers=admin_headers)
    assert r.json()["status"] == "approved"


@pytest.mark.asyncio
async def test_custom_payment_endpoints(client, api, catalog, user_headers, razorpay_stub):
    r = await client.post(
        api("/custom/orders"),
        json={"price": "250", "mockupUrl": "https://cdn.example/m.png", "shippingAddress": _address_json()},
        headers=user_headers,
    )
    custom_id = r.json()["id"]
    razorpay_stub.next_order_id = "order_custom"

    r = await client.post(api("/custom/pay"), json={"customOrderId": custom_id}, headers=user_headers)
    assert r.status_code == 200, r.text
    assert r.json()["gatewayOrderId"] == "order_custom"
    assert r.json()["amount"] == 25000

    r = await client.post(
        api("/custom/pay/verify"), json=_verify_body(custom_id, "order_custom", "pay_c1"), headers=user_headers
    )
    assert r.status_code == 200
    assert r.json()["paymentStatus"] == "paid"
    assert r.json()["status"] == "approved"


# ======================================================================================
# Webhooks
# ======================================================================================
@pytest.mark.asyncio
async def test_razorpay_webhook(client, api, catalog, place_order):
    order = await place_order()
    raw = json.dumps(
        {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_wh", "order_id": "order_abc", "amount": 49900}}},
        }
    ).encode()

    r = await client.post(
        api("/webhooks/razorpay"), content=raw, headers={"X-Razorpay-Signature": "bad", "Content-Type": "application/json"}
    )
    assert r.status_code == 400

    r = await client.post(
        api("/webhooks/razorpay"),
        content=raw,
        headers={"X-Razorpay-Signature": sign_body(raw), "Content-Type": "application/json"},
    )
    assert r.status_code == 200
    ack = r.json()
    assert ack["success"] and ack["matched"] and ack["applied"]
    assert ack["order"] == f"ORD-{order.id}"

    # replay: acknowledged, nothing applied
    r = await client.post(api("/webhooks/razorpay"), content=raw, headers={"X-Razorpay-Signature": sign_body(raw)})
    assert r.status_code == 200
    assert r.json()["applied"] is False


@pytest.mark.asyncio
async def test_razorpay_webhook_non_ascii_signature_is_rejected(client, api, catalog, place_order):
    await place_order()
    raw = json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_wh"}}}}).encode()
    r = await client.post(api("/webhooks/razorpay"), content=raw, headers={"X-Razorpay-Signature": b"\xe9\xe9"})
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_razorpay_webhook_malformed_body_is_acknowledged(client, api):
    raw = b"not json"
    r = await client.post(api("/webhooks/razorpay"), content=raw, headers={"X-Razorpay-Signature": sign_body(raw)})
    assert r.status_code == 200
    assert r.json()["detail"] == "malformed body"


@pytest.mark.asyncio
async def test_razorpay_webhook_processing_error_is_acknowledged(client, api, app, monkeypatch):
    async def boom(body):
        raise RuntimeError("store offline")

    monkeypatch.setattr(app.state.reconciliation, "handle_gateway_event", boom)
    raw = json.dumps({"event": "payment.captured", "payload": {}}).encode()
    r = await client.post(api("/webhooks/razorpay"), content=raw, headers={"X-Razorpay-Signature": sign_body(raw)})
    assert r.status_code == 200
    assert r.json()["event"] == "payment.captured"
    assert r.json()["detail"] == "processing failed"


@pytest.mark.asyncio
async def test_shiprocket_webhook_token(client, api, catalog, paid_order):
    r = await client.post(api("/webhooks/shiprocket"), json={"order_id": "test-123"})
    assert r.status_code == 401
    assert r.json()["code"] == "WEBHOOK_UNAUTHORIZED"

    r = await client.post(api("/webhooks/shiprocket"), json={"order_id": "test-123"}, headers={"x-api-key": "wrong"})
    assert r.status_code == 401

    headers = {"x-api-key": SHIPROCKET_WEBHOOK_TOKEN}
    r = await client.post(api("/webhooks/shiprocket"), json={"order_id": "test-123"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["isTest"] is True

    order = await paid_order()
    r = await client.post(
        api("/webhooks/shiprocket"),
        json={"order_id": f"ORD-{order.id}", "current_status": "SHIPPED", "awb": "AWB1"},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json()["applied"] is True

    r = await client.post(
        api("/webhooks/shiprocket"), json={"order_id": "ORD-unknown", "current_status": "SHIPPED"}, headers=headers
    )
    assert r.status_code == 200
    assert r.json()["matched"] is False


@pytest.mark.asyncio
async def test_shiprocket_webhook_hmac_mode(app_settings, gateway, carrier, db_engine, api):
    hmac_settings = app_settings.model_copy(update={"SHIPROCKET_WEBHOOK_MODE": "hmac"})
    app = create_app(hmac_settings, gateway=gateway, carrier=carrier, engine=db_engine)
    raw = json.dumps({"order_id": "test-1"}).encode()
    signature = hmac.new(b"sr-hmac-secret", raw, hashlib.sha256).hexdigest()

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://covercart.test") as c:
        r = await c.post(api("/webhooks/shiprocket"), content=raw, headers={"x-shiprocket-signature": "sha256=00"})
        assert r.status_code == 401
        r = await c.post(api("/webhooks/shiprocket"), content=raw, headers={"x-shiprocket-signature": f"sha256={signature}"})
        assert r.status_code == 200
        assert r.json()["isTest"] is True


# ======================================================================================
# Shipping
# ======================================================================================
@pytest.mark.asyncio
async def test_admin_shipping_and_customer_tracking(
    client, api, catalog, paid_order, admin_headers, user_headers, other_headers
):
    order = await paid_order()

    r = await client.post(api(f"/admin/shipping/ORD-{order.id}/shipment"), headers=admin_headers)
    assert r.status_code == 200, r.text
    result = r.json()
    assert result["courierAssigned"] is True
    assert result["alreadyExists"] is False
    assert result["shipment"]["awbCode"] == "AWB200555"
    assert result["shipment"]["state"] == "awb_assigned"

    r = await client.post(api(f"/admin/shipping/ORD-{order.id}/shipment"), headers=admin_headers)
    assert r.json()["alreadyExists"] is True

    r = await client.get(api(f"/shipments/{order.id}/track"), headers=user_headers)
    assert r.status_code == 200
    assert r.json()["awbCode"] == "AWB200555"

    r = await client.get(api(f"/shipments/{order.id}/track"), headers=other_headers)
    assert r.status_code == 404

    r = await client.post(api("/admin/shipping/labels"), json={"orders": [f"ORD-{order.id}"]}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["url"] == "https://labels.example/555.pdf"


@pytest.mark.asyncio
async def test_carrier_rejection_is_422(client, api, catalog, paid_order, admin_headers, shiprocket_stub):
    order = await paid_order()
    shiprocket_stub.create_status = 422
    r = await client.post(api(f"/admin/shipping/ORD-{order.id}/shipment"), headers=admin_headers)
    assert r.status_code == 422
    assert r.json()["detail"] == "Wrong Pickup location entered."
    assert r.json()["code"] == "CARRIER_REJECTED"


@pytest.mark.asyncio
async def test_serviceability_endpoint(client, api, admin_headers):
    r = await client.get(api("/admin/shipping/serviceability"), params={"deliveryPostcode": "110001"}, headers=admin_headers)
    assert r.status_code == 200
    assert [c["courierId"] for c in r.json()] == ["1", "2"]
    assert r.json()[1]["freightCharge"] == 60


@pytest.mark.asyncio
async def test_auto_shipment_after_payment(app_settings, gateway, carrier, db_engine, store, catalog, place_order, user_headers, api):
    auto = app_settings.model_copy(update={"SHIPMENT_AUTO_CREATE_ON_PAYMENT": True})
    app = create_app(auto, gateway=gateway, carrier=carrier, engine=db_engine)
    order = await place_order()

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://covercart.test") as c:
        r = await c.post(api("/orders/pay/verify"), json=_verify_body(order.id), headers=user_headers)
        assert r.status_code == 200

    shipment = await store.get_shipment(order.ref)
    assert shipment is not None
    assert shipment.awb_code == "AWB200555"


@pytest.mark.asyncio
async def test_admin_delete(client, api, catalog, place_order, admin_headers):
    order = await place_order()
    r = await client.delete(api(f"/admin/orders/ORD-{order.id}"), headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["data"]["order"] == f"ORD-{order.id}"

    r = await client.get(api(f"/admin/orders/ORD-{order.id}"), headers=admin_headers)
    assert r.status_code == 404
