# covercart/models/__init__.py
"""
Model registry: importing this package registers every table on Base.metadata
(alembic autogenerate and create_all rely on it).
"""

from covercart.models.base import Base, TimestampMixin, new_id, utc_now
from covercart.models.catalog import Product, ProductVariant
from covercart.models.order import (
    CustomOrder,
    CustomOrderStatus,
    ItemRefKind,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from covercart.models.shipment import Shipment, ShipmentState

__all__ = [
    "Base",
    "TimestampMixin",
    "new_id",
    "utc_now",
    "Product",
    "ProductVariant",
    "Order",
    "OrderItem",
    "CustomOrder",
    "OrderStatus",
    "CustomOrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "RefundStatus",
    "ItemRefKind",
    "Shipment",
    "ShipmentState",
]
