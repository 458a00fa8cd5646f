# covercart/models/order.py
"""
Order / OrderItem / CustomOrder.

Both order kinds share the payment, refund and bookkeeping columns
(OrderRecordMixin); they differ in their status vocabulary and in how line
items are stored:

- Order: catalog and "custom_*" line items as OrderItem rows (ordered by position).
- CustomOrder: one design-driven line (mockup + variant), exposed through .items
  with the same shape as OrderItem so fulfillment treats both kinds alike.

Time columns are naive UTC (utc_now()).

Status transitions are not done by assigning attributes on loaded rows: the
reconciliation engine and the order store issue conditional UPDATEs so that
concurrent writers cannot move an order backwards.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, ClassVar, Optional

from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from covercart.models.base import Base, TimestampMixin, new_id
from covercart.services.refs import (
    CatalogRef,
    CustomItemRef,
    LineItemRef,
    OrderKind,
    OrderRef,
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CustomOrderStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PRODUCTION = "in_production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class PaymentMethod(str, enum.Enum):
    RAZORPAY = "razorpay"
    COD = "cod"
    UPI = "upi"

    @property
    def uses_gateway(self) -> bool:
        return self in (PaymentMethod.RAZORPAY, PaymentMethod.UPI)


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, enum.Enum):
    NONE = "none"
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemRefKind(str, enum.Enum):
    CATALOG = "catalog"
    CUSTOM = "custom"


def _enum(cls: type[enum.Enum], name: str) -> SQLEnum:
    return SQLEnum(
        cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


# Terminal (absorbing) states per kind
STANDARD_TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
CUSTOM_TERMINAL = frozenset({CustomOrderStatus.DELIVERED, CustomOrderStatus.REJECTED})


# ---------------------------------------------------------------------------
# Shared columns
# ---------------------------------------------------------------------------
class OrderRecordMixin(TimestampMixin):
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="INR", nullable=False)
    shipping_address: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum(PaymentMethod, "payment_method"), default=PaymentMethod.RAZORPAY, nullable=False
    )
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # refund bookkeeping
    refund_status: Mapped[RefundStatus] = mapped_column(
        _enum(RefundStatus, "refund_status"), default=RefundStatus.NONE, nullable=False
    )
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    kind: ClassVar[OrderKind]

    @property
    def ref(self) -> OrderRef:
        return OrderRef(self.kind, self.id)

    @property
    def order_number(self) -> str:
        return self.ref.display_number

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.total)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID


def to_minor_units(amount: Decimal | int | float | str) -> int:
    """Rupees -> paise, rounded half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Order (standard)
# ---------------------------------------------------------------------------
class Order(OrderRecordMixin, Base):
    __tablename__ = "orders"

    kind = OrderKind.STANDARD

    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, "order_status"), default=OrderStatus.PENDING, nullable=False, index=True
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.position",
    )

    __table_args__ = (
        CheckConstraint("total >= 0", name="order_total_non_negative"),
        Index("ix__orders__user_id_created_at", "user_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in STANDARD_TERMINAL


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    ref_kind: Mapped[ItemRefKind] = mapped_column(_enum(ItemRefKind, "item_ref_kind"), nullable=False)
    product_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    variant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    custom_tag: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    model_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="item_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="item_price_non_negative"),
        CheckConstraint(
            "(ref_kind = 'catalog' AND product_id IS NOT NULL AND variant_id IS NOT NULL)"
            " OR (ref_kind = 'custom' AND custom_tag IS NOT NULL)",
            name="item_ref_consistent",
        ),
    )

    @property
    def ref(self) -> LineItemRef:
        if self.ref_kind == ItemRefKind.CATALOG:
            return CatalogRef(int(self.product_id), int(self.variant_id))  # type: ignore[arg-type]
        return CustomItemRef(str(self.custom_tag))

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.unit_price) * self.quantity


# ---------------------------------------------------------------------------
# CustomOrder
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CustomLineItem:
    """Read-only line view of a custom order (same attributes fulfillment reads from OrderItem)."""

    ref: CustomItemRef
    title: str
    sku: Optional[str]
    unit_price: Decimal
    quantity: int


class CustomOrder(OrderRecordMixin, Base):
    __tablename__ = "custom_orders"

    kind = OrderKind.CUSTOM

    status: Mapped[CustomOrderStatus] = mapped_column(
        _enum(CustomOrderStatus, "custom_order_status"),
        default=CustomOrderStatus.PENDING,
        nullable=False,
        index=True,
    )

    product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    variant_sku: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    variant_color: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    mockup_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    instructions: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    design_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    model_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    admin_notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("total >= 0", name="custom_total_non_negative"),
        CheckConstraint("unit_price >= 0", name="custom_price_non_negative"),
        CheckConstraint("quantity >= 1", name="custom_quantity_positive"),
        Index("ix__custom_orders__user_id_created_at", "user_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in CUSTOM_TERMINAL

    @property
    def items(self) -> list[CustomLineItem]:
        title = "Custom Cover"
        if self.model_name:
            title = f"Custom Cover - {self.model_name}"
        return [
            CustomLineItem(
                ref=CustomItemRef(f"custom_{self.id}"),
                title=title,
                sku=self.variant_sku,
                unit_price=Decimal(self.unit_price),
                quantity=int(self.quantity),
            )
        ]


AnyOrder = Order | CustomOrder

__all__ = [
    "OrderStatus",
    "CustomOrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "RefundStatus",
    "ItemRefKind",
    "STANDARD_TERMINAL",
    "CUSTOM_TERMINAL",
    "OrderRecordMixin",
    "Order",
    "OrderItem",
    "CustomOrder",
    "CustomLineItem",
    "AnyOrder",
    "to_minor_units",
]
