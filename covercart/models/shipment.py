# covercart/models/shipment.py
"""
Shipment: one carrier shipment per order (standard or custom).

Uniqueness:
- (order_kind, order_id) unique: a second orchestration for the same order
  fails at insert time, so a row in state "creating" doubles as a reservation.
- shipment_id unique: a carrier shipment is never attached to two orders.
- awb_code set implies shipment_id set (check constraint).
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from covercart.models.base import Base, TimestampMixin
from covercart.services.refs import OrderKind, OrderRef


class ShipmentState(str, enum.Enum):
    CREATING = "creating"
    CREATED = "created"
    AWB_ASSIGNED = "awb_assigned"
    PICKUP_REQUESTED = "pickup_requested"
    CANCELLED = "cancelled"


def _enum(cls: type[enum.Enum], name: str) -> SQLEnum:
    return SQLEnum(
        cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class Shipment(TimestampMixin, Base):
    __tablename__ = "shipments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_kind: Mapped[OrderKind] = mapped_column(_enum(OrderKind, "order_kind"), nullable=False)
    order_id: Mapped[str] = mapped_column(String(32), nullable=False)

    state: Mapped[ShipmentState] = mapped_column(
        _enum(ShipmentState, "shipment_state"), default=ShipmentState.CREATING, nullable=False
    )

    # carrier identifiers
    shipment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    carrier_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    awb_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    courier_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    courier_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # carrier-side status vocabulary (free text as reported)
    status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    pickup_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pickup_scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    label_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    manifest_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    on_hold_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rto_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expected_delivery: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    tracking_events: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_kind", "order_id"),
        CheckConstraint("awb_code IS NULL OR shipment_id IS NOT NULL", name="awb_requires_shipment"),
    )

    @property
    def order_ref(self) -> OrderRef:
        return OrderRef(OrderKind(self.order_kind), self.order_id)

    @property
    def awaiting_courier(self) -> bool:
        return self.shipment_id is not None and self.awb_code is None and self.state != ShipmentState.CANCELLED


__all__ = ["Shipment", "ShipmentState"]
