# covercart/services/reconciliation.py
"""
Order reconciliation: the single owner of order and payment state transitions.

Three sources of truth meet here:
- the customer (checkout, client-side payment verification, cancellation),
- the payment gateway (Razorpay webhooks),
- the shipping carrier (Shiprocket webhooks).

Rules:
- Paid is sticky. The paid transition is one conditional UPDATE
  (payment_status NOT IN (paid, refunded)); the caller that changes the row
  is the only one that decrements stock, in the same transaction.
- Terminal order states are absorbing; every status UPDATE is guarded by the
  set of states it may move from.
- External events are resolved by gateway ids or by the carrier order id,
  never by a client-supplied order id alone.
- Refunds are issued after the transaction commits; a failed refund is
  recorded on the order and never fails the surrounding flow.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from sqlalchemy import case

from covercart.core.config import Settings, settings as default_settings
from covercart.core.exceptions import (
    CoverCartValidationError,
    GatewayError,
    GatewayUnavailable,
    InvalidAmount,
    NotFoundError,
    RefundFailed,
    SignatureError,
)
from covercart.core.logging import audit_logger, bound_context, get_logger
from covercart.core.security import Principal
from covercart.models import (
    CustomOrder,
    CustomOrderStatus,
    ItemRefKind,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    Shipment,
    new_id,
    utc_now,
)
from covercart.models.order import CUSTOM_TERMINAL, STANDARD_TERMINAL, AnyOrder, to_minor_units
from covercart.services.order_store import OrderStore
from covercart.services.razorpay_service import GatewayOrder, RazorpayService
from covercart.services.refs import CatalogRef, CustomItemRef, LineItemRef, OrderKind, OrderRef
from covercart.services.shiprocket_service import normalize_tracking_events

logger = get_logger(__name__)

_SETTLED = (PaymentStatus.PAID, PaymentStatus.REFUNDED)

# order statuses that carrier events may move from, per kind
_SHIPPED_FROM = {
    OrderKind.STANDARD: (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
    OrderKind.CUSTOM: (CustomOrderStatus.APPROVED, CustomOrderStatus.IN_PRODUCTION),
}
_DELIVERED_FROM = {
    OrderKind.STANDARD: _SHIPPED_FROM[OrderKind.STANDARD] + (OrderStatus.SHIPPED,),
    OrderKind.CUSTOM: _SHIPPED_FROM[OrderKind.CUSTOM] + (CustomOrderStatus.SHIPPED,),
}
_TERMINAL = {OrderKind.STANDARD: STANDARD_TERMINAL, OrderKind.CUSTOM: CUSTOM_TERMINAL}
_CLOSED = {OrderKind.STANDARD: (OrderStatus.CANCELLED,), OrderKind.CUSTOM: (CustomOrderStatus.REJECTED,)}
_USER_CANCELLABLE = (OrderStatus.PENDING, OrderStatus.CONFIRMED)

# carrier status vocabulary (lowercased current_status)
CARRIER_SHIPPED = "shipped"
CARRIER_DELIVERED = "delivered"
CARRIER_CANCELLED = "cancelled"
CARRIER_ON_HOLD = "on_hold"

_SHIPPED_WORDS = ("shipped", "in transit", "out for delivery", "picked up")


def classify_carrier_status(status: Optional[str]) -> Optional[str]:
    """Map a carrier status label onto the order-level event it implies (or None)."""
    s = (status or "").strip().lower()
    if not s:
        return None
    if s == "delivered":
        return CARRIER_DELIVERED
    if s in ("cancelled", "canceled") or s.startswith("rto"):
        return CARRIER_CANCELLED
    if s == "on hold":
        return CARRIER_ON_HOLD
    if any(w in s for w in _SHIPPED_WORDS):
        return CARRIER_SHIPPED
    return None


_CARRIER_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%d-%m-%Y %H:%M:%S", "%Y-%m-%d", "%d %b %Y")


def parse_carrier_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    v = value.strip()
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        dt = None
        for fmt in _CARRIER_DATETIME_FORMATS:
            try:
                dt = datetime.strptime(v, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _entity(payload: Mapping[str, Any], name: str) -> dict[str, Any]:
    """Razorpay wraps entities as {"payment": {"entity": {...}}}; accept the flat shape too."""
    node = payload.get(name) if isinstance(payload, Mapping) else None
    if not isinstance(node, Mapping):
        return {}
    inner = node.get("entity")
    return dict(inner) if isinstance(inner, Mapping) else dict(node)


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError) as e:
        raise CoverCartValidationError(f"Invalid amount: {value!r}", "INVALID_PRICE") from e


# ---------------------------------------------------------------------------
# Inputs / outcomes
# ---------------------------------------------------------------------------
@dataclass
class CheckoutLine:
    ref: LineItemRef
    quantity: int
    price: Optional[Decimal] = None  # custom items only; catalog prices come from the variant
    title: Optional[str] = None
    brand: Optional[str] = None
    model_name: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class CheckoutResult:
    order: AnyOrder
    gateway_order: Optional[GatewayOrder] = None
    gateway_key_id: Optional[str] = None


@dataclass
class CustomOrderDraft:
    mockup_url: str
    quantity: int = 1
    product_id: Optional[int] = None
    variant_sku: Optional[str] = None
    variant_color: Optional[str] = None
    variant_price: Optional[Decimal] = None
    price: Optional[Decimal] = None
    instructions: Optional[str] = None
    design_data: Optional[dict[str, Any]] = None
    model_name: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY


@dataclass
class WebhookOutcome:
    event: str
    matched: bool = False
    applied: bool = False
    order: Optional[str] = None
    detail: Optional[str] = None
    is_test: bool = False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class ReconciliationEngine:
    def __init__(
        self,
        store: OrderStore,
        gateway: RazorpayService,
        app_settings: Optional[Settings] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = app_settings or default_settings

    # ------------------------------------------------------------------ #
    # Checkout
    # ------------------------------------------------------------------ #
    async def checkout(
        self,
        principal: Principal,
        lines: list[CheckoutLine],
        shipping_address: dict[str, Any],
        payment_method: PaymentMethod,
        notes: Optional[str] = None,
    ) -> CheckoutResult:
        if not lines:
            raise CoverCartValidationError("Order must contain at least one item", "EMPTY_ORDER")
        self._check_address(shipping_address)

        items: list[OrderItem] = []
        total = Decimal("0.00")
        async with self.store.session() as s:
            for pos, line in enumerate(lines):
                item = await self._price_line(s, pos, line)
                items.append(item)
                total += item.line_total

        order_id = new_id()
        ref = OrderRef.standard(order_id)
        gateway_order: Optional[GatewayOrder] = None
        if payment_method.uses_gateway:
            gateway_order = await self._open_gateway_order(ref, principal.id, total)

        order = Order(
            id=order_id,
            user_id=principal.id,
            status=OrderStatus.PENDING,
            total=total,
            currency=self.settings.STORE_CURRENCY,
            shipping_address=dict(shipping_address),
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            gateway_order_id=gateway_order.gateway_order_id if gateway_order else None,
            notes=notes,
            items=items,
        )
        await self.store.add(order)
        logger.info(
            "order_created",
            order=str(ref),
            user_id=principal.id,
            total=str(total),
            payment_method=payment_method.value,
            gateway_order_id=order.gateway_order_id,
        )
        audit_logger.log_data_change(principal.id, "create", "order", order_id, {"total": str(total)})
        return CheckoutResult(
            order=await self.store.require(ref),
            gateway_order=gateway_order,
            gateway_key_id=self.gateway.public_key if gateway_order else None,
        )

    @staticmethod
    def _check_address(address: Mapping[str, Any]) -> None:
        postal = address.get("postal_code") or address.get("postalCode") or address.get("zipCode")
        if not (address.get("city") and postal):
            raise CoverCartValidationError("Shipping address needs a city and a postal code", "INVALID_ADDRESS")

    async def _price_line(self, session, position: int, line: CheckoutLine) -> OrderItem:
        if line.quantity is None or int(line.quantity) < 1:
            raise CoverCartValidationError("Quantity must be at least 1", "INVALID_QUANTITY")
        qty = int(line.quantity)

        if isinstance(line.ref, CustomItemRef):
            if line.price is None:
                raise CoverCartValidationError("Custom items need a price", "CUSTOM_PRICE_REQUIRED")
            price = _money(line.price)
            if price < 0:
                raise CoverCartValidationError("Price cannot be negative", "INVALID_PRICE")
            return OrderItem(
                position=position,
                ref_kind=ItemRefKind.CUSTOM,
                custom_tag=line.ref.tag,
                title=line.title or "Custom Cover",
                brand=line.brand,
                model_name=line.model_name,
                color=line.color,
                sku=line.sku or line.ref.tag,
                image_url=line.image_url,
                unit_price=price,
                quantity=qty,
            )

        assert isinstance(line.ref, CatalogRef)
        product = await self.store.get_product(line.ref.product_id, session)
        if product is None:
            raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": line.ref.product_id})
        variant = await self.store.get_variant(line.ref.product_id, line.ref.variant_id, session)
        if variant is None:
            raise NotFoundError("Variant not found", "VARIANT_NOT_FOUND", extra={"variant_id": line.ref.variant_id})
        if not (product.is_active and variant.is_active):
            raise CoverCartValidationError(f"{product.title} is not available", "VARIANT_UNAVAILABLE")
        if variant.stock < qty:
            raise CoverCartValidationError(
                f"Insufficient stock for {product.title}",
                "INSUFFICIENT_STOCK",
                extra={"variant_id": variant.id, "available": variant.stock},
            )
        return OrderItem(
            position=position,
            ref_kind=ItemRefKind.CATALOG,
            product_id=product.id,
            variant_id=variant.id,
            title=product.title,
            brand=product.brand,
            model_name=product.model_name,
            color=variant.color,
            sku=variant.sku,
            image_url=product.image_url,
            unit_price=Decimal(variant.price),
            quantity=qty,
        )

    async def _open_gateway_order(self, ref: OrderRef, user_id: str, total: Decimal) -> GatewayOrder:
        try:
            return await self.gateway.create_payment_order(
                to_minor_units(total),
                currency=self.settings.STORE_CURRENCY,
                receipt=ref.carrier_order_id,
                notes={"order_id": ref.id, "kind": ref.kind.value, "user_id": user_id},
            )
        except InvalidAmount:
            raise
        except GatewayError as e:
            logger.error("checkout_gateway_failed", order=str(ref), error=e.message)
            raise GatewayUnavailable(
                "Payment provider unavailable, please retry", "PAYMENT_PROVIDER_UNAVAILABLE"
            ) from e

    # ------------------------------------------------------------------ #
    # Custom orders
    # ------------------------------------------------------------------ #
    async def create_custom_order(
        self, principal: Principal, draft: CustomOrderDraft, shipping_address: dict[str, Any]
    ) -> CustomOrder:
        """Unit price: variant price, else the product's first variant, else the explicit price."""
        qty = int(draft.quantity or 1)
        if qty < 1:
            raise CoverCartValidationError("Quantity must be at least 1", "INVALID_QUANTITY")
        self._check_address(shipping_address)

        product = None
        if draft.product_id is not None:
            product = await self.store.get_product(draft.product_id)
            if product is None:
                raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": draft.product_id})

        if draft.variant_price is not None:
            unit_price = _money(draft.variant_price)
        elif product is not None and product.variants:
            unit_price = _money(product.variants[0].price)
        elif draft.price is not None:
            unit_price = _money(draft.price)
        else:
            raise CoverCartValidationError(
                "Unable to determine base price: provide a product, a variant price or a price",
                "CUSTOM_PRICE_REQUIRED",
            )
        if unit_price < 0:
            raise CoverCartValidationError("Price cannot be negative", "INVALID_PRICE")

        order = CustomOrder(
            id=new_id(),
            user_id=principal.id,
            status=CustomOrderStatus.PENDING,
            product_id=product.id if product is not None else None,
            variant_sku=draft.variant_sku,
            variant_color=draft.variant_color,
            unit_price=unit_price,
            quantity=qty,
            total=unit_price * qty,
            currency=self.settings.STORE_CURRENCY,
            mockup_url=draft.mockup_url,
            instructions=draft.instructions,
            design_data=draft.design_data,
            model_name=draft.model_name or (product.model_name if product is not None else None),
            shipping_address=dict(shipping_address),
            payment_method=draft.payment_method,
            payment_status=PaymentStatus.PENDING,
        )
        await self.store.add(order)
        logger.info("custom_order_created", order=str(order.ref), user_id=principal.id, total=str(order.total))
        audit_logger.log_data_change(principal.id, "create", "custom_order", order.id, {"total": str(order.total)})
        return order

    # ------------------------------------------------------------------ #
    # Payment (re)issue and client verification
    # ------------------------------------------------------------------ #
    async def create_payment(self, ref: OrderRef, principal: Principal) -> CheckoutResult:
        """Open a fresh gateway order for an unpaid order (retry after an abandoned checkout)."""
        order = await self.store.require_owned(ref, principal)
        if order.payment_status in _SETTLED:
            raise CoverCartValidationError("Order already paid", "ORDER_ALREADY_PAID")
        if order.is_terminal:
            raise CoverCartValidationError("Order can no longer be paid", "ORDER_NOT_PAYABLE")

        gateway_order = await self._open_gateway_order(ref, order.user_id, Decimal(order.total))
        model = self.store.model_for(ref.kind)
        async with self.store.transaction() as s:
            changed = await self.store.update_where(
                s,
                ref,
                model.payment_status.notin_(_SETTLED),
                gateway_order_id=gateway_order.gateway_order_id,
            )
        if not changed:
            raise CoverCartValidationError("Order already paid", "ORDER_ALREADY_PAID")
        logger.info("payment_reissued", order=str(ref), gateway_order_id=gateway_order.gateway_order_id)
        return CheckoutResult(
            order=await self.store.require(ref),
            gateway_order=gateway_order,
            gateway_key_id=self.gateway.public_key,
        )

    async def verify_client_payment(
        self,
        ref: OrderRef,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        principal: Principal,
        client_ip: Optional[str] = None,
    ) -> AnyOrder:
        if not self.gateway.verify_client_signature(gateway_order_id, gateway_payment_id, signature):
            audit_logger.log_security_event(
                "payment_signature_invalid",
                {"order": str(ref), "gateway_order_id": gateway_order_id, "ip_address": client_ip},
            )
            raise SignatureError("Invalid payment signature", "INVALID_SIGNATURE")

        order = await self.store.find_for_verification(ref, gateway_order_id)
        if order is None or (not principal.is_admin and order.user_id != principal.id):
            raise NotFoundError("Order not found", "ORDER_NOT_FOUND", extra={"order": str(ref)})

        result = await self._apply_paid(ref, gateway_order_id, gateway_payment_id, signature=signature, source="client")
        logger.info("payment_verified", order=str(ref), gateway_payment_id=gateway_payment_id, result=result)
        return await self.store.require(ref)

    async def _apply_paid(
        self,
        ref: OrderRef,
        gateway_order_id: str,
        gateway_payment_id: str,
        *,
        signature: Optional[str] = None,
        source: str,
    ) -> str:
        """
        Returns "paid" for the single winner of the transition, "paid_after_close"
        when money arrived for a cancelled/rejected order, "duplicate" otherwise.
        """
        model = self.store.model_for(ref.kind)
        if ref.kind is OrderKind.STANDARD:
            next_status = case(
                (model.status == OrderStatus.PENDING, OrderStatus.CONFIRMED.value), else_=model.status
            )
        else:
            next_status = case(
                (model.status == CustomOrderStatus.PENDING, CustomOrderStatus.APPROVED.value), else_=model.status
            )
        values: dict[str, Any] = {
            "payment_status": PaymentStatus.PAID,
            "paid_at": utc_now(),
            "gateway_payment_id": gateway_payment_id,
        }
        if signature:
            values["gateway_signature"] = signature
        match = (model.gateway_order_id == gateway_order_id, model.payment_status.notin_(_SETTLED))
        closed = _CLOSED[ref.kind]

        with bound_context(order=str(ref)):
            async with self.store.transaction() as s:
                won = await self.store.update_where(
                    s, ref, *match, model.status.notin_(closed), status=next_status, **values
                )
                if won:
                    order = await self.store.require(ref, s)
                    if ref.kind is OrderKind.STANDARD:
                        await self._decrement_items(s, order)
                    logger.info("order_paid", source=source, gateway_payment_id=gateway_payment_id)
                    audit_logger.log_money_movement(
                        "payment", str(ref), order.amount_minor, source=source, gateway_payment_id=gateway_payment_id
                    )
                    return "paid"

                late = await self.store.update_where(
                    s, ref, *match, model.status.in_(closed), refund_status=RefundStatus.REQUESTED, **values
                )
                if late:
                    logger.warning("payment_after_close", source=source, gateway_payment_id=gateway_payment_id)
                    return "paid_after_close"

            logger.info("payment_already_applied", source=source, gateway_payment_id=gateway_payment_id)
            return "duplicate"

    async def _decrement_items(self, session, order: Order) -> None:
        for item in order.items:
            if item.ref_kind != ItemRefKind.CATALOG:
                continue
            await self.store.decrement_stock(session, int(item.product_id), int(item.variant_id), item.quantity)

    # ------------------------------------------------------------------ #
    # Gateway webhooks
    # ------------------------------------------------------------------ #
    async def handle_gateway_event(self, body: Mapping[str, Any]) -> WebhookOutcome:
        event = str(body.get("event") or "")
        entities = body.get("payload") if isinstance(body.get("payload"), Mapping) else {}
        payment = _entity(entities, "payment")
        order_entity = _entity(entities, "order")
        refund = _entity(entities, "refund")

        with bound_context(webhook="razorpay", webhook_event=event):
            if event in ("payment.captured", "order.paid"):
                gateway_order_id = payment.get("order_id") or order_entity.get("id")
                return await self._on_payment_captured(event, gateway_order_id, payment.get("id"))
            if event == "payment.failed":
                return await self._on_payment_failed(event, payment)
            if event in ("refund.created", "refund.processed", "refund.failed"):
                return await self._on_refund(event, refund, payment)

            logger.info("gateway_event_ignored")
            return WebhookOutcome(event=event, detail="ignored")

    async def _on_payment_captured(
        self, event: str, gateway_order_id: Optional[str], gateway_payment_id: Optional[str]
    ) -> WebhookOutcome:
        order = await self.store.find_by_gateway_order(gateway_order_id or "")
        if order is None:
            logger.warning("gateway_event_unmatched", gateway_order_id=gateway_order_id)
            return WebhookOutcome(event=event, detail="order not found")
        if not gateway_payment_id:
            # paid requires a payment id; refunds resolve by it
            logger.warning("gateway_event_missing_payment_id", gateway_order_id=gateway_order_id)
            return WebhookOutcome(event=event, matched=True, order=str(order.ref), detail="payment id missing")
        result = await self._apply_paid(order.ref, gateway_order_id, gateway_payment_id, source="webhook")
        return WebhookOutcome(
            event=event, matched=True, applied=result != "duplicate", order=str(order.ref), detail=result
        )

    async def _on_payment_failed(self, event: str, payment: Mapping[str, Any]) -> WebhookOutcome:
        gateway_order_id = payment.get("order_id")
        order = await self.store.find_by_gateway_order(gateway_order_id or "")
        if order is None:
            logger.warning("gateway_event_unmatched", gateway_order_id=gateway_order_id)
            return WebhookOutcome(event=event, detail="order not found")

        ref = order.ref
        model = self.store.model_for(ref.kind)
        description = payment.get("error_description") or payment.get("error_reason") or "unknown error"
        values: dict[str, Any] = {"payment_status": PaymentStatus.FAILED}
        if payment.get("id"):
            values["gateway_payment_id"] = payment.get("id")
        if ref.kind is OrderKind.STANDARD:
            still_pending = model.status == OrderStatus.PENDING
            values["status"] = case((still_pending, OrderStatus.CANCELLED.value), else_=model.status)
            values["cancellation_reason"] = case(
                (still_pending, f"Payment failed: {description}"), else_=model.cancellation_reason
            )

        async with self.store.transaction() as s:
            changed = await self.store.update_where(
                s,
                ref,
                model.gateway_order_id == gateway_order_id,
                model.payment_status.notin_(_SETTLED),
                **values,
            )
        if changed:
            logger.info("payment_failed_recorded", order=str(ref), reason=description)
        else:
            logger.info("payment_failed_ignored_paid", order=str(ref))
        return WebhookOutcome(event=event, matched=True, applied=bool(changed), order=str(ref))

    async def _on_refund(
        self, event: str, refund: Mapping[str, Any], payment: Mapping[str, Any]
    ) -> WebhookOutcome:
        gateway_payment_id = refund.get("payment_id") or payment.get("id")
        order = await self.store.find_by_gateway_payment(gateway_payment_id or "")
        if order is None:
            logger.warning("gateway_event_unmatched", gateway_payment_id=gateway_payment_id)
            return WebhookOutcome(event=event, detail="order not found")

        ref = order.ref
        model = self.store.model_for(ref.kind)
        values: dict[str, Any] = {}
        if refund.get("id"):
            values["refund_id"] = str(refund["id"])
        if refund.get("amount") is not None:
            values["refund_amount"] = (Decimal(str(refund["amount"])) / 100).quantize(Decimal("0.01"))

        criteria = [model.gateway_payment_id == gateway_payment_id]
        if event == "refund.created":
            values["refund_status"] = RefundStatus.PROCESSING
            criteria.append(model.refund_status != RefundStatus.COMPLETED)
        elif event == "refund.processed":
            values["refund_status"] = RefundStatus.COMPLETED
            values["payment_status"] = PaymentStatus.REFUNDED
        else:
            values["refund_status"] = RefundStatus.FAILED
            criteria.append(model.refund_status != RefundStatus.COMPLETED)

        async with self.store.transaction() as s:
            changed = await self.store.update_where(s, ref, *criteria, **values)
        logger.info("refund_event_applied", order=str(ref), refund_id=refund.get("id"), changed=bool(changed))
        return WebhookOutcome(event=event, matched=True, applied=bool(changed), order=str(ref))

    # ------------------------------------------------------------------ #
    # Carrier webhooks
    # ------------------------------------------------------------------ #
    async def handle_carrier_event(self, body: Mapping[str, Any]) -> WebhookOutcome:
        raw_order_id = body.get("order_id")
        current_status = body.get("current_status") or body.get("shipment_status") or ""
        event = str(current_status) or "carrier"

        if not raw_order_id or "test" in str(raw_order_id).lower():
            logger.info("carrier_test_event", order_id=raw_order_id)
            return WebhookOutcome(event=event, is_test=True, detail="test payload acknowledged")

        try:
            ref = OrderRef.parse(str(raw_order_id))
        except CoverCartValidationError:
            logger.warning("carrier_event_unparseable", order_id=raw_order_id)
            return WebhookOutcome(event=event, detail="unrecognized order id")

        order = await self.store.get(ref)
        if order is None:
            logger.warning("carrier_event_unmatched", order=str(ref))
            return WebhookOutcome(event=event, detail="order not found")

        with bound_context(webhook="shiprocket", order=str(ref)):
            applied = await self._apply_carrier_status(ref, body, str(current_status))
        return WebhookOutcome(event=event, matched=True, applied=applied, order=str(ref))

    async def _apply_carrier_status(self, ref: OrderRef, body: Mapping[str, Any], current_status: str) -> bool:
        model = self.store.model_for(ref.kind)
        kind_event = classify_carrier_status(current_status)
        awb = body.get("awb") or body.get("awb_code")
        awb = str(awb) if awb else None
        etd = parse_carrier_datetime(body.get("etd"))
        now = utc_now()

        status_code = body.get("status_code") or body.get("current_status_id") or body.get("shipment_status_id")
        try:
            status_code = int(status_code) if status_code is not None else None
        except (TypeError, ValueError):
            status_code = None

        shipment_values: dict[str, Any] = {
            "status": current_status.strip().lower() or None,
            "current_status": current_status or None,
            "status_code": status_code,
            "last_synced_at": now,
        }
        if awb:
            shipment_values["awb_code"] = case((Shipment.shipment_id.isnot(None), awb), else_=Shipment.awb_code)
        if isinstance(body.get("activities"), list):
            shipment_values["tracking_events"] = normalize_tracking_events(body["activities"])
        if etd is not None:
            shipment_values["expected_delivery"] = etd

        reason = body.get("reason") or body.get("rto_reason")
        applied = False
        async with self.store.transaction() as s:
            order_values: dict[str, Any] = {}
            if awb:
                order_values["tracking_number"] = awb
            if etd is not None:
                order_values["estimated_delivery"] = etd
            if order_values:
                await self.store.update_where(s, ref, **order_values)

            if kind_event == CARRIER_SHIPPED:
                target = OrderStatus.SHIPPED if ref.kind is OrderKind.STANDARD else CustomOrderStatus.SHIPPED
                applied = bool(
                    await self.store.update_where(s, ref, model.status.in_(_SHIPPED_FROM[ref.kind]), status=target)
                )
            elif kind_event == CARRIER_DELIVERED:
                target = OrderStatus.DELIVERED if ref.kind is OrderKind.STANDARD else CustomOrderStatus.DELIVERED
                applied = bool(
                    await self.store.update_where(s, ref, model.status.in_(_DELIVERED_FROM[ref.kind]), status=target)
                )
            elif kind_event == CARRIER_CANCELLED:
                reason = str(reason or f"Carrier status: {current_status}")
                live = model.status.notin_(_TERMINAL[ref.kind])
                if ref.kind is OrderKind.STANDARD:
                    changed = await self.store.update_where(
                        s, ref, live, status=OrderStatus.CANCELLED, cancellation_reason=reason
                    )
                else:
                    changed = await self.store.update_where(
                        s, ref, live, status=CustomOrderStatus.REJECTED, rejection_reason=reason
                    )
                applied = bool(changed)
                shipment_values["rto_reason"] = reason
            elif kind_event == CARRIER_ON_HOLD:
                shipment_values["on_hold_reason"] = str(reason or body.get("remarks") or "On hold")

            await self.store.update_shipment_for(s, ref, **shipment_values)

        logger.info(
            "carrier_status_applied",
            current_status=current_status,
            mapped=kind_event,
            applied=applied,
            awb=awb,
        )
        return applied

    # ------------------------------------------------------------------ #
    # Customer / admin transitions
    # ------------------------------------------------------------------ #
    async def cancel_order(self, ref: OrderRef, principal: Principal, reason: Optional[str] = None) -> AnyOrder:
        """Customer cancellation of a standard order (pending or confirmed only)."""
        if ref.kind is not OrderKind.STANDARD:
            raise CoverCartValidationError("Custom orders cannot be cancelled here", "ORDER_NOT_CANCELLABLE")
        await self.store.require_owned(ref, principal)
        reason = (reason or "").strip() or "Cancelled by customer"

        refund_due = False
        async with self.store.transaction() as s:
            changed = await self.store.update_where(
                s, ref, Order.status.in_(_USER_CANCELLABLE), status=OrderStatus.CANCELLED, cancellation_reason=reason
            )
            if not changed:
                raise CoverCartValidationError("Order cannot be cancelled at this stage", "ORDER_NOT_CANCELLABLE")
            order = await self.store.require(ref, s)
            if order.payment_status == PaymentStatus.PAID:
                for item in order.items:
                    if item.ref_kind == ItemRefKind.CATALOG:
                        await self.store.restore_stock(s, int(item.product_id), int(item.variant_id), item.quantity)
                await self.store.update_where(s, ref, refund_status=RefundStatus.REQUESTED)
                refund_due = True

        logger.info("order_cancelled", order=str(ref), user_id=principal.id, refund_due=refund_due)
        audit_logger.log_data_change(principal.id, "cancel", "order", ref.id, {"reason": reason})
        if refund_due:
            await self._refund(ref, order.gateway_payment_id, order.amount_minor, reason)
        return await self.store.require(ref)

    async def approve_custom(
        self,
        ref: OrderRef,
        principal: Principal,
        admin_notes: Optional[str] = None,
        mockup_url: Optional[str] = None,
    ) -> CustomOrder:
        values: dict[str, Any] = {"status": CustomOrderStatus.APPROVED}
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        if mockup_url:
            values["mockup_url"] = mockup_url
        await self.store.require(ref)
        async with self.store.transaction() as s:
            changed = await self.store.update_where(
                s, ref, CustomOrder.status == CustomOrderStatus.PENDING, **values
            )
        if not changed:
            raise CoverCartValidationError("Only pending custom orders can be approved", "ORDER_NOT_APPROVABLE")
        logger.info("custom_order_approved", order=str(ref), admin_id=principal.id)
        audit_logger.log_data_change(principal.id, "approve", "custom_order", ref.id, {"admin_notes": admin_notes})
        return await self.store.require(ref)

    async def reject_custom(
        self,
        ref: OrderRef,
        principal: Principal,
        reason: str,
        admin_notes: Optional[str] = None,
    ) -> CustomOrder:
        reason = (reason or "").strip()
        if not reason:
            raise CoverCartValidationError("Rejection reason is required", "REASON_REQUIRED")
        await self.store.require(ref)

        values: dict[str, Any] = {"status": CustomOrderStatus.REJECTED, "rejection_reason": reason}
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        refund_due = False
        async with self.store.transaction() as s:
            changed = await self.store.update_where(
                s, ref, CustomOrder.status.notin_(CUSTOM_TERMINAL), **values
            )
            if not changed:
                raise CoverCartValidationError("Custom order is already closed", "ORDER_NOT_REJECTABLE")
            order = await self.store.require(ref, s)
            if order.payment_status == PaymentStatus.PAID:
                await self.store.update_where(s, ref, refund_status=RefundStatus.REQUESTED)
                refund_due = True

        logger.info("custom_order_rejected", order=str(ref), admin_id=principal.id, refund_due=refund_due)
        audit_logger.log_data_change(principal.id, "reject", "custom_order", ref.id, {"reason": reason})
        if refund_due:
            await self._refund(ref, order.gateway_payment_id, order.amount_minor, reason)
        return await self.store.require(ref)

    async def start_production(self, ref: OrderRef, principal: Principal) -> CustomOrder:
        await self.store.require(ref)
        async with self.store.transaction() as s:
            changed = await self.store.update_where(
                s, ref, CustomOrder.status == CustomOrderStatus.APPROVED, status=CustomOrderStatus.IN_PRODUCTION
            )
        if not changed:
            raise CoverCartValidationError("Only approved custom orders can go into production", "ORDER_NOT_APPROVED")
        logger.info("custom_order_in_production", order=str(ref), admin_id=principal.id)
        audit_logger.log_data_change(principal.id, "start_production", "custom_order", ref.id, {})
        return await self.store.require(ref)

    async def admin_delete(self, ref: OrderRef, principal: Principal) -> None:
        await self.store.require(ref)
        if not await self.store.delete_if_clean(ref):
            raise CoverCartValidationError(
                "Only unpaid pending or closed orders without a shipment can be deleted", "ORDER_NOT_DELETABLE"
            )
        audit_logger.log_data_change(principal.id, "delete", f"{ref.kind.value}_order", ref.id, {})

    # ------------------------------------------------------------------ #
    # Refunds
    # ------------------------------------------------------------------ #
    async def _refund(
        self, ref: OrderRef, gateway_payment_id: Optional[str], amount_minor: int, reason: str
    ) -> None:
        model = self.store.model_for(ref.kind)
        try:
            refund = await self.gateway.refund(
                gateway_payment_id or "", amount_minor, notes={"order": str(ref), "reason": reason[:200]}
            )
        except RefundFailed as e:
            logger.error("refund_failed", order=str(ref), gateway_payment_id=gateway_payment_id, error=e.message)
            async with self.store.transaction() as s:
                await self.store.update_where(
                    s, ref, model.refund_status != RefundStatus.COMPLETED, refund_status=RefundStatus.FAILED
                )
            return

        amount = refund.amount if refund.amount is not None else amount_minor
        async with self.store.transaction() as s:
            await self.store.update_where(
                s,
                ref,
                model.refund_status != RefundStatus.COMPLETED,
                refund_status=RefundStatus.PROCESSING,
                refund_id=refund.refund_id,
                refund_amount=(Decimal(amount) / 100).quantize(Decimal("0.01")),
            )
        logger.info("refund_requested", order=str(ref), refund_id=refund.refund_id)
        audit_logger.log_money_movement("refund", str(ref), amount, refund_id=refund.refund_id, reason=reason)


__all__ = [
    "ReconciliationEngine",
    "CheckoutLine",
    "CheckoutResult",
    "CustomOrderDraft",
    "WebhookOutcome",
    "classify_carrier_status",
    "parse_carrier_datetime",
]
