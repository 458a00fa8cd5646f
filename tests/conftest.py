# tests/conftest.py
"""
Pytest configuration and fixtures.

- One temporary SQLite database (aiosqlite) per test, created with create_all.
- Provider clients are the real RazorpayService / ShiprocketService running
  against httpx.MockTransport stubs that keep a request log.
- The app is built through create_app() with those clients; the HTTP client is
  httpx.AsyncClient over ASGITransport.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DISABLE_APP_STARTUP_HOOKS", "1")

import httpx
import pytest
import pytest_asyncio

from covercart.core.config import Settings
from covercart.core.db import create_engine_for_url, init_db_async, make_sessionmaker
from covercart.core.security import ROLE_ADMIN, Principal, create_access_token
from covercart.main import create_app
from covercart.models import Product, ProductVariant
from covercart.services.fulfillment import FulfillmentOrchestrator
from covercart.services.order_store import OrderStore
from covercart.services.razorpay_service import RazorpayService
from covercart.services.reconciliation import ReconciliationEngine
from covercart.services.shiprocket_service import ShiprocketService

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
SHIPROCKET_WEBHOOK_TOKEN = "sr-webhook-token"

PRODUCT_ID = 1
VARIANT_ID = 10
VARIANT_PRICE = Decimal("499.00")
VARIANT_STOCK = 5


# ======================================================================================
# Helpers
# ======================================================================================
def sign_checkout(gateway_order_id: str, gateway_payment_id: str, secret: str = RAZORPAY_KEY_SECRET) -> str:
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_body(raw: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def shipping_address(**overrides: Any) -> Dict[str, Any]:
    address = {
        "name": "Asha Rao",
        "phone": "9876543210",
        "address1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "postal_code": "560001",
        "country": "India",
    }
    address.update(overrides)
    return address


def _json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content or b"{}")


# ======================================================================================
# Provider stubs
# ======================================================================================
class RazorpayStub:
    """Minimal Razorpay: orders and refunds. `fail_with` forces an HTTP status."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.order_ids: List[str] = []
        self.fail_with: Optional[int] = None
        self.refund_fail_with: Optional[int] = None
        self.next_order_id: Optional[str] = None

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/orders":
            if self.fail_with:
                return httpx.Response(self.fail_with, json={"error": {"description": "gateway down"}})
            body = _json(request)
            order_id = self.next_order_id or f"order_{len(self.order_ids) + 1:03d}"
            self.next_order_id = None
            self.order_ids.append(order_id)
            return httpx.Response(
                200, json={"id": order_id, "amount": body["amount"], "currency": body["currency"], "status": "created"}
            )
        if path.startswith("/v1/payments/") and path.endswith("/refund"):
            if self.refund_fail_with:
                return httpx.Response(
                    self.refund_fail_with, json={"error": {"description": "The payment has been fully refunded"}}
                )
            body = _json(request)
            return httpx.Response(200, json={"id": "rfnd_001", "amount": body.get("amount"), "status": "processed"})
        return httpx.Response(404, json={"error": {"description": f"unknown path {path}"}})


class ShiprocketStub:
    """Minimal Shiprocket external API with a request log and tunable answers."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token = "sr-token-1"
        self.logins = 0
        self.shipment_id = 555
        self.couriers: List[Dict[str, Any]] = [
            {"courier_company_id": 1, "courier_name": "Delhivery", "freight_charge": 80, "estimated_delivery_days": "4"},
            {"courier_company_id": 2, "courier_name": "Xpressbees", "freight_charge": 60, "estimated_delivery_days": "5"},
        ]
        self.create_status: Optional[int] = None
        self.create_message = "Wrong Pickup location entered."
        self.tracking: Dict[str, Any] = {}
        self.reject_token_once = False
        self.handlers: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def calls(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/v1/external", "", 1)
        if path in self.handlers:
            return self.handlers[path](request)

        if path == "/auth/login":
            self.logins += 1
            return httpx.Response(200, json={"token": self.token})

        if request.headers.get("Authorization") != f"Bearer {self.token}" or self.reject_token_once:
            self.reject_token_once = False
            return httpx.Response(401, json={"message": "Token has expired"})

        if path == "/orders/create/adhoc":
            if self.create_status:
                return httpx.Response(self.create_status, json={"message": self.create_message})
            return httpx.Response(
                200,
                json={"order_id": 9001, "shipment_id": self.shipment_id, "status": "NEW", "status_code": 1},
            )
        if path == "/courier/serviceability/":
            return httpx.Response(200, json={"data": {"available_courier_companies": self.couriers}})
        if path == "/courier/assign/awb":
            body = _json(request)
            chosen = next(
                (c for c in self.couriers if c["courier_company_id"] == body["courier_id"]), {"courier_name": "Any"}
            )
            return httpx.Response(
                200,
                json={
                    "awb_assign_status": 1,
                    "response": {
                        "data": {
                            "awb_code": f"AWB{body['courier_id']}00{body['shipment_id']}",
                            "courier_company_id": body["courier_id"],
                            "courier_name": chosen.get("courier_name"),
                        }
                    },
                },
            )
        if path == "/courier/generate/pickup":
            return httpx.Response(
                200, json={"pickup_status": 1, "response": {"pickup_scheduled_date": "2026-10-20 10:00:00"}}
            )
        if path.startswith("/courier/track/awb/"):
            return httpx.Response(200, json={"tracking_data": self.tracking})
        if path == "/orders/cancel":
            return httpx.Response(200, json={"message": "Order cancelled successfully"})
        if path == "/courier/generate/label":
            return httpx.Response(200, json={"label_created": 1, "label_url": "https://labels.example/555.pdf"})
        if path == "/manifests/generate":
            return httpx.Response(200, json={"status": 1, "manifest_url": "https://labels.example/manifest.pdf"})
        if path == "/settings/company/pickup":
            return httpx.Response(
                200, json={"data": {"shipping_address": [{"pickup_location": "Primary", "pin_code": "560001"}]}}
            )
        return httpx.Response(404, json={"message": f"unknown path {path}"})


# ======================================================================================
# Settings / database
# ======================================================================================
@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        TESTING=True,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'covercart.db'}",
        RAZORPAY_KEY_ID=RAZORPAY_KEY_ID,
        RAZORPAY_KEY_SECRET=RAZORPAY_KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=RAZORPAY_WEBHOOK_SECRET,
        SHIPROCKET_EMAIL="ops@covercart.test",
        SHIPROCKET_PASSWORD="sr-password",
        SHIPROCKET_PICKUP_POSTCODE="560001",
        SHIPROCKET_WEBHOOK_MODE="token",
        SHIPROCKET_WEBHOOK_TOKEN=SHIPROCKET_WEBHOOK_TOKEN,
        SHIPROCKET_WEBHOOK_SECRET="sr-hmac-secret",
        SHIPMENT_AUTO_ASSIGN_COURIER=True,
        SHIPMENT_AUTO_REQUEST_PICKUP=False,
        SHIPMENT_AUTO_CREATE_ON_PAYMENT=False,
    )


@pytest_asyncio.fixture
async def db_engine(app_settings):
    engine = create_engine_for_url(app_settings.DATABASE_URL)
    await init_db_async(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def store(db_engine) -> OrderStore:
    return OrderStore(make_sessionmaker(db_engine))


@pytest_asyncio.fixture
async def catalog(store):
    """One active product with one variant (price 499.00, stock 5)."""
    product = Product(
        id=PRODUCT_ID,
        title="Aurora Matte Case",
        brand="Apple",
        model_name="iPhone 15",
        image_url="https://cdn.example/aurora.png",
        is_active=True,
        variants=[
            ProductVariant(
                id=VARIANT_ID,
                sku="AUR-IP15-BLK",
                color="Black",
                price=VARIANT_PRICE,
                stock=VARIANT_STOCK,
                is_active=True,
            )
        ],
    )
    await store.add(product)
    return product


async def variant_stock(store: OrderStore, variant_id: int = VARIANT_ID) -> int:
    variant = await store.get_variant(PRODUCT_ID, variant_id)
    assert variant is not None
    return variant.stock


# ======================================================================================
# Providers and services
# ======================================================================================
@pytest.fixture
def razorpay_stub() -> RazorpayStub:
    return RazorpayStub()


@pytest.fixture
def shiprocket_stub() -> ShiprocketStub:
    return ShiprocketStub()


@pytest.fixture
def gateway(razorpay_stub) -> RazorpayService:
    return RazorpayService(
        key_id=RAZORPAY_KEY_ID,
        key_secret=RAZORPAY_KEY_SECRET,
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        base_url="https://api.razorpay.test",
        timeout=5,
        transport=httpx.MockTransport(razorpay_stub),
    )


@pytest.fixture
def carrier(shiprocket_stub) -> ShiprocketService:
    return ShiprocketService(
        email="ops@covercart.test",
        password="sr-password",
        base_url="https://apiv2.shiprocket.test/v1/external",
        token_ttl=3600,
        timeout=5,
        get_retries=2,
        backoff=0,
        pickup_location="Primary",
        transport=httpx.MockTransport(shiprocket_stub),
    )


@pytest.fixture
def engine(store, gateway, app_settings) -> ReconciliationEngine:
    return ReconciliationEngine(store, gateway, app_settings)


@pytest.fixture
def fulfillment(store, carrier, app_settings) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(store, carrier, app_settings)


# ======================================================================================
# Principals
# ======================================================================================
@pytest.fixture
def customer() -> Principal:
    return Principal(id="user-1")


@pytest.fixture
def other_customer() -> Principal:
    return Principal(id="user-2")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="admin-1", role=ROLE_ADMIN)


def bearer(principal: Principal) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(principal.id, role=principal.role)}"}


@pytest.fixture
def user_headers(customer) -> Dict[str, str]:
    return bearer(customer)


@pytest.fixture
def other_headers(other_customer) -> Dict[str, str]:
    return bearer(other_customer)


@pytest.fixture
def admin_headers(admin) -> Dict[str, str]:
    return bearer(admin)


# ======================================================================================
# App / HTTP client
# ======================================================================================
@pytest.fixture
def app(app_settings, gateway, carrier, db_engine):
    return create_app(app_settings, gateway=gateway, carrier=carrier, engine=db_engine)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://covercart.test") as c:
        yield c


@pytest.fixture
def api(app_settings) -> Callable[[str], str]:
    prefix = app_settings.API_V1_STR

    def _url(path: str) -> str:
        return f"{prefix}{path}"

    return _url


# ======================================================================================
# Order factories
# ======================================================================================
@pytest.fixture
def place_order(engine, customer, razorpay_stub):
    """Checkout one catalog line; razorpay orders get gateway order `gateway_order_id`."""
    from covercart.models import PaymentMethod
    from covercart.services.reconciliation import CheckoutLine
    from covercart.services.refs import CatalogRef

    async def _place(
        quantity: int = 1,
        method: PaymentMethod = PaymentMethod.RAZORPAY,
        gateway_order_id: str = "order_abc",
        principal: Optional[Principal] = None,
    ):
        razorpay_stub.next_order_id = gateway_order_id
        result = await engine.checkout(
            principal or customer,
            [CheckoutLine(ref=CatalogRef(PRODUCT_ID, VARIANT_ID), quantity=quantity)],
            shipping_address(),
            method,
        )
        return result.order

    return _place


@pytest.fixture
def paid_order(place_order, engine, customer):
    """Razorpay order verified through the client signature path."""

    async def _paid(quantity: int = 1, gateway_order_id: str = "order_abc", payment_id: str = "pay_001"):
        order = await place_order(quantity=quantity, gateway_order_id=gateway_order_id)
        return await engine.verify_client_payment(
            order.ref,
            gateway_order_id,
            payment_id,
            sign_checkout(gateway_order_id, payment_id),
            customer,
        )

    return _paid
