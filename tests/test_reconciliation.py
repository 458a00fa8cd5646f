import asyncio
import json
from decimal import Decimal

import pytest

from conftest import PRODUCT_ID, VARIANT_ID, shipping_address, sign_checkout, variant_stock
from covercart.core.exceptions import (
    CoverCartValidationError,
    GatewayUnavailable,
    NotFoundError,
    SignatureError,
)
from covercart.models import (
    CustomOrderStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from covercart.services.reconciliation import CheckoutLine, CustomOrderDraft
from covercart.services.refs import CatalogRef, CustomItemRef, OrderKind


def captured_event(gateway_order_id: str, payment_id: str, event: str = "payment.captured") -> dict:
    return {
        "event": event,
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": gateway_order_id, "amount": 49900}}},
    }


def failed_event(gateway_order_id: str, payment_id: str = "pay_failed") -> dict:
    return {
        "event": "payment.failed",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "error_description": "Card declined by bank",
                }
            }
        },
    }


def refund_event(event: str, payment_id: str = "pay_001", amount: int = 49900) -> dict:
    return {
        "event": event,
        "payload": {"refund": {"entity": {"id": "rfnd_wh_1", "payment_id": payment_id, "amount": amount}}},
    }


# ======================================================================================
# Checkout
# ======================================================================================
@pytest.mark.asyncio
async def test_cod_checkout_is_pending_without_gateway(catalog, place_order, store, razorpay_stub):
    order = await place_order(method=PaymentMethod.COD)

    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.total == Decimal("499.00")
    assert order.gateway_order_id is None
    assert order.items[0].title == "Aurora Matte Case"
    assert razorpay_stub.requests == []
    # COD never touches stock
    assert await variant_stock(store) == 5


@pytest.mark.asyncio
async def test_razorpay_checkout_opens_gateway_order(catalog, engine, customer, razorpay_stub):
    razorpay_stub.next_order_id = "order_abc"
    result = await engine.checkout(
        customer,
        [CheckoutLine(ref=CatalogRef(PRODUCT_ID, VARIANT_ID), quantity=2)],
        shipping_address(),
        PaymentMethod.RAZORPAY,
        notes="gift wrap",
    )

    assert result.gateway_order.gateway_order_id == "order_abc"
    assert result.gateway_order.amount == 99800
    assert result.gateway_key_id == "rzp_test_key"
    assert result.order.gateway_order_id == "order_abc"
    assert result.order.total == Decimal("998.00")

    sent = json.loads(razorpay_stub.requests[0].content)
    assert sent["receipt"] == f"ORD-{result.order.id}"
    assert sent["notes"]["order_id"] == result.order.id


@pytest.mark.asyncio
async def test_custom_lines_use_their_own_price(catalog, engine, customer):
    result = await engine.checkout(
        customer,
        [
            CheckoutLine(ref=CatalogRef(PRODUCT_ID, VARIANT_ID), quantity=1),
            CheckoutLine(ref=CustomItemRef("custom_1700000000"), quantity=2, price=Decimal("299")),
        ],
        shipping_address(),
        PaymentMethod.COD,
    )
    assert result.order.total == Decimal("1097.00")
    custom = result.order.items[1]
    assert custom.custom_tag == "custom_1700000000"
    assert custom.title == "Custom Cover"


@pytest.mark.asyncio
async def test_checkout_rejects_insufficient_stock(catalog, place_order, razorpay_stub):
    with pytest.raises(CoverCartValidationError) as exc:
        await place_order(quantity=6)
    assert exc.value.code == "INSUFFICIENT_STOCK"
    assert razorpay_stub.requests == []


@pytest.mark.asyncio
async def test_checkout_requires_items_and_address(catalog, engine, customer):
    with pytest.raises(CoverCartValidationError):
        await engine.checkout(customer, [], shipping_address(), PaymentMethod.COD)
    with pytest.raises(CoverCartValidationError) as exc:
        await engine.checkout(
            customer,
            [CheckoutLine(ref=CatalogRef(PRODUCT_ID, VARIANT_ID), quantity=1)],
            shipping_address(postal_code=""),
            PaymentMethod.COD,
        )
    assert exc.value.code == "INVALID_ADDRESS"


@pytest.mark.asyncio
async def test_unknown_variant(catalog, engine, customer):
    with pytest.raises(NotFoundError):
        await engine.checkout(
            customer, [CheckoutLine(ref=CatalogRef(PRODUCT_ID, 999), quantity=1)], shipping_address(), PaymentMethod.COD
        )


@pytest.mark.asyncio
async def test_gateway_outage_creates_no_order(catalog, place_order, store, customer, razorpay_stub):
    razorpay_stub.fail_with = 503
    with pytest.raises(GatewayUnavailable) as exc:
        await place_order()
    assert exc.value.code == "PAYMENT_PROVIDER_UNAVAILABLE"
    rows, total = await store.list_for_user(OrderKind.STANDARD, customer.id)
    assert total == 0 and rows == []


# ======================================================================================
# Client verification
# ======================================================================================
@pytest.mark.asyncio
async def test_verified_payment_confirms_and_decrements(catalog, paid_order, store):
    order = await paid_order(quantity=2)

    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.CONFIRMED
    assert order.gateway_payment_id == "pay_001"
    assert order.paid_at is not None
    assert await variant_stock(store) == 3


@pytest.mark.asyncio
async def test_bad_signature_changes_nothing(catalog, place_order, engine, customer, store):
    order = await place_order()
    with pytest.raises(SignatureError):
        await engine.verify_client_payment(order.ref, "order_abc", "pay_001", "deadbeef", customer)

    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.PENDING
    assert await variant_stock(store) == 5


@pytest.mark.asyncio
async def test_signature_for_another_gateway_order_is_not_found(catalog, place_order, engine, customer):
    order = await place_order(gateway_order_id="order_abc")
    with pytest.raises(NotFoundError):
        await engine.verify_client_payment(
            order.ref, "order_zzz", "pay_001", sign_checkout("order_zzz", "pay_001"), customer
        )


@pytest.mark.asyncio
async def test_other_user_cannot_verify(catalog, place_order, engine, other_customer):
    order = await place_order()
    with pytest.raises(NotFoundError):
        await engine.verify_client_payment(
            order.ref, "order_abc", "pay_001", sign_checkout("order_abc", "pay_001"), other_customer
        )


@pytest.mark.asyncio
async def test_replayed_verification_decrements_once(catalog, paid_order, engine, customer, store):
    order = await paid_order()
    again = await engine.verify_client_payment(
        order.ref, "order_abc", "pay_001", sign_checkout("order_abc", "pay_001"), customer
    )
    assert again.payment_status == PaymentStatus.PAID
    assert await variant_stock(store) == 4


# ======================================================================================
# Gateway webhooks
# ======================================================================================
@pytest.mark.asyncio
async def test_webhook_capture_marks_paid(catalog, place_order, engine, store):
    order = await place_order()
    outcome = await engine.handle_gateway_event(captured_event("order_abc", "pay_wh"))

    assert outcome.matched and outcome.applied
    assert outcome.order == f"ORD-{order.id}"
    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.PAID
    assert fresh.status == OrderStatus.CONFIRMED
    assert fresh.gateway_payment_id == "pay_wh"
    assert await variant_stock(store) == 4


@pytest.mark.asyncio
async def test_order_paid_event_uses_order_entity(catalog, place_order, engine, store):
    order = await place_order()
    body = {
        "event": "order.paid",
        "payload": {
            "order": {"entity": {"id": "order_abc"}},
            "payment": {"entity": {"id": "pay_op"}},
        },
    }
    outcome = await engine.handle_gateway_event(body)
    assert outcome.applied
    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.PAID
    assert fresh.gateway_payment_id == "pay_op"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"event": "order.paid", "payload": {"order": {"entity": {"id": "order_abc"}}}},
        {"event": "payment.captured", "payload": {"payment": {"entity": {"order_id": "order_abc"}}}},
    ],
)
async def test_paid_events_without_payment_id_change_nothing(catalog, place_order, engine, store, body):
    order = await place_order()
    outcome = await engine.handle_gateway_event(body)

    assert outcome.matched and not outcome.applied
    assert outcome.detail == "payment id missing"
    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.PENDING
    assert fresh.status == OrderStatus.PENDING
    assert fresh.gateway_payment_id is None
    assert await variant_stock(store) == 5


@pytest.mark.asyncio
async def test_webhook_after_client_verification_is_duplicate(catalog, paid_order, engine, store):
    await paid_order()
    outcome = await engine.handle_gateway_event(captured_event("order_abc", "pay_001"))
    assert outcome.matched
    assert not outcome.applied
    assert outcome.detail == "duplicate"
    assert await variant_stock(store) == 4


@pytest.mark.asyncio
async def test_client_and_webhook_race_decrements_once(catalog, place_order, engine, customer, store):
    order = await place_order(quantity=2)
    await asyncio.gather(
        engine.verify_client_payment(
            order.ref, "order_abc", "pay_001", sign_checkout("order_abc", "pay_001"), customer
        ),
        engine.handle_gateway_event(captured_event("order_abc", "pay_001")),
        engine.handle_gateway_event(captured_event("order_abc", "pay_001")),
    )
    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.PAID
    assert await variant_stock(store) == 3


@pytest.mark.asyncio
async def test_payment_failed_cancels_pending_order(catalog, place_order, engine, store):
    order = await place_order()
    outcome = await engine.handle_gateway_event(failed_event("order_abc"))

    assert outcome.applied
    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.FAILED
    assert fresh.status == OrderStatus.CANCELLED
    assert "Card declined" in fresh.cancellation_reason


@pytest.mark.asyncio
async def test_paid_is_sticky_against_failure(catalog, paid_order, engine, store):
    order = await paid_order()
    outcome = await engine.handle_gateway_event(failed_event("order_abc"))

    assert outcome.matched and not outcome.applied
    fresh = await store.require(order.ref)
    assert fresh.payment_status == PaymentStatus.PAID
    assert fresh.status == OrderStatus.CONFIRMED
    assert fresh.gateway_payment_id == "pay_001"


@pytest.mark.asyncio
async def test_capture_after_cancellation_flags_refund(catalog, place_order, engine, store):
    order = await place_order()
    await engine.handle_gateway_event(failed_event("order_abc"))
    outcome = await engine.handle_gateway_event(captured_event("order_abc", "pay_late"))

    assert outcome.detail == "paid_after_close"
    fresh = await store.require(order.ref)
    assert fresh.status == OrderStatus.CANCELLED
    assert fresh.payment_status == PaymentStatus.PAID
    assert fresh.refund_status == RefundStatus.REQUESTED
    assert await variant_stock(store) == 5


@pytest.mark.asyncio
async def test_unmatched_and_unknown_events_are_acknowledged(catalog, engine):
    outcome = await engine.handle_gateway_event(captured_event("order_missing", "pay_x"))
    assert not outcome.matched
    outcome = await engine.handle_gateway_event({"event": "payment.authorized", "payload": {}})
    assert outcome.detail == "ignored"


@pytest.mark.asyncio
async def test_refund_lifecycle_events(catalog, paid_order, engine, store):
    order = await paid_order()

    created = await engine.handle_gateway_event(refund_event("refund.created"))
    assert created.applied
    assert (await store.require(order.ref)).refund_status == RefundStatus.PROCESSING

    await engine.handle_gateway_event(refund_event("refund.processed"))
    fresh = await store.require(order.ref)
    assert fresh.refund_status == RefundStatus.COMPLETED
    assert fresh.payment_status == PaymentStatus.REFUNDED
    assert fresh.refund_amount == Decimal("499.00")
    assert fresh.refund_id == "rfnd_wh_1"

    # a late failure notice never reopens a completed refund
    failed = await engine.handle_gateway_event(refund_event("refund.failed"))
    assert not failed.applied
    assert (await store.require(order.ref)).refund_status == RefundStatus.COMPLETED


# ======================================================================================
# Cancellation and refunds
# ======================================================================================
@pytest.mark.asyncio
async def test_cancel_unpaid_order(catalog, place_order, engine, customer, razorpay_stub):
    order = await place_order()
    cancelled = await engine.cancel_order(order.ref, customer, reason="changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancellation_reason == "changed my mind"
    assert cancelled.refund_status == RefundStatus.NONE
    assert not any(p.endswith("/refund") for p in razorpay_stub.paths())


@pytest.mark.asyncio
async def test_cancel_paid_order_restocks_and_refunds(catalog, paid_order, engine, customer, store, razorpay_stub):
    order = await paid_order(quantity=2)
    assert await variant_stock(store) == 3

    cancelled = await engine.cancel_order(order.ref, customer)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.refund_status == RefundStatus.PROCESSING
    assert cancelled.refund_id == "rfnd_001"
    assert cancelled.refund_amount == Decimal("998.00")
    assert await variant_stock(store) == 5
    refund_call = razorpay_stub.requests[-1]
    assert refund_call.url.path == "/v1/payments/pay_001/refund"
    assert json.loads(refund_call.content)["amount"] == 99800


@pytest.mark.asyncio
async def test_failed_refund_is_recorded_not_raised(catalog, paid_order, engine, customer, razorpay_stub):
    order = await paid_order()
    razorpay_stub.refund_fail_with = 400

    cancelled = await engine.cancel_order(order.ref, customer)
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.refund_status == RefundStatus.FAILED


@pytest.mark.asyncio
async def test_shipped_order_cannot_be_cancelled(catalog, paid_order, engine, customer, store):
    order = await paid_order()
    async with store.transaction() as s:
        await store.update_where(s, order.ref, status=OrderStatus.SHIPPED)

    with pytest.raises(CoverCartValidationError) as exc:
        await engine.cancel_order(order.ref, customer)
    assert exc.value.code == "ORDER_NOT_CANCELLABLE"


@pytest.mark.asyncio
async def test_cancel_is_owner_only(catalog, place_order, engine, other_customer):
    order = await place_order()
    with pytest.raises(NotFoundError):
        await engine.cancel_order(order.ref, other_customer)


# ======================================================================================
# Custom orders
# ======================================================================================
def _draft(**overrides) -> CustomOrderDraft:
    values = dict(mockup_url="https://cdn.example/mockups/1.png", quantity=1, instructions="Name on the back")
    values.update(overrides)
    return CustomOrderDraft(**values)


@pytest.mark.asyncio
async def test_custom_price_resolution(catalog, engine, customer):
    explicit = await engine.create_custom_order(
        customer, _draft(product_id=PRODUCT_ID, variant_price=Decimal("349"), quantity=2), shipping_address()
    )
    assert explicit.unit_price == Decimal("349.00")
    assert explicit.total == Decimal("698.00")

    from_product = await engine.create_custom_order(customer, _draft(product_id=PRODUCT_ID), shipping_address())
    assert from_product.unit_price == Decimal("499.00")
    assert from_product.model_name == "iPhone 15"

    fallback = await engine.create_custom_order(customer, _draft(price=Decimal("250")), shipping_address())
    assert fallback.unit_price == Decimal("250.00")
    assert fallback.status == CustomOrderStatus.PENDING

    with pytest.raises(CoverCartValidationError) as exc:
        await engine.create_custom_order(customer, _draft(), shipping_address())
    assert exc.value.code == "CUSTOM_PRICE_REQUIRED"


@pytest.mark.asyncio
async def test_custom_payment_flow(catalog, engine, customer, store, razorpay_stub):
    order = await engine.create_custom_order(customer, _draft(product_id=PRODUCT_ID), shipping_address())
    razorpay_stub.next_order_id = "order_custom"

    intent = await engine.create_payment(order.ref, customer)
    assert intent.gateway_order.gateway_order_id == "order_custom"
    assert json.loads(razorpay_stub.requests[0].content)["receipt"] == f"CUST-{order.id}"

    paid = await engine.verify_client_payment(
        order.ref, "order_custom", "pay_c1", sign_checkout("order_custom", "pay_c1"), customer
    )
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.status == CustomOrderStatus.APPROVED
    # custom orders carry no catalog stock
    assert await variant_stock(store) == 5

    with pytest.raises(CoverCartValidationError) as exc:
        await engine.create_payment(order.ref, customer)
    assert exc.value.code == "ORDER_ALREADY_PAID"


@pytest.mark.asyncio
async def test_custom_webhook_resolves_across_stores(catalog, engine, customer, store, razorpay_stub):
    order = await engine.create_custom_order(customer, _draft(price=Decimal("250")), shipping_address())
    razorpay_stub.next_order_id = "order_custom"
    await engine.create_payment(order.ref, customer)

    outcome = await engine.handle_gateway_event(captured_event("order_custom", "pay_c1"))
    assert outcome.order == f"CUST-{order.id}"
    assert (await store.require(order.ref)).status == CustomOrderStatus.APPROVED


@pytest.mark.asyncio
async def test_admin_review_transitions(catalog, engine, customer, admin):
    order = await engine.create_custom_order(customer, _draft(price=Decimal("250")), shipping_address())

    approved = await engine.approve_custom(order.ref, admin, admin_notes="looks good")
    assert approved.status == CustomOrderStatus.APPROVED
    assert approved.admin_notes == "looks good"

    with pytest.raises(CoverCartValidationError):
        await engine.approve_custom(order.ref, admin)

    producing = await engine.start_production(order.ref, admin)
    assert producing.status == CustomOrderStatus.IN_PRODUCTION


@pytest.mark.asyncio
async def test_rejecting_paid_custom_order_refunds(catalog, engine, customer, admin, razorpay_stub):
    order = await engine.create_custom_order(customer, _draft(price=Decimal("250")), shipping_address())
    razorpay_stub.next_order_id = "order_custom"
    await engine.create_payment(order.ref, customer)
    await engine.verify_client_payment(
        order.ref, "order_custom", "pay_c1", sign_checkout("order_custom", "pay_c1"), customer
    )

    rejected = await engine.reject_custom(order.ref, admin, "Artwork resolution too low")
    assert rejected.status == CustomOrderStatus.REJECTED
    assert rejected.rejection_reason == "Artwork resolution too low"
    assert rejected.refund_status == RefundStatus.PROCESSING
    assert razorpay_stub.paths()[-1] == "/v1/payments/pay_c1/refund"

    with pytest.raises(CoverCartValidationError):
        await engine.reject_custom(order.ref, admin, "again")


@pytest.mark.asyncio
async def test_admin_delete_only_clean_orders(catalog, place_order, paid_order, engine, admin, store):
    unpaid = await place_order(gateway_order_id="order_unpaid")
    await engine.admin_delete(unpaid.ref, admin)
    assert await store.get(unpaid.ref) is None

    paid = await paid_order()
    with pytest.raises(CoverCartValidationError) as exc:
        await engine.admin_delete(paid.ref, admin)
    assert exc.value.code == "ORDER_NOT_DELETABLE"
    assert await store.get(paid.ref) is not None
