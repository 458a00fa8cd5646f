"""
Shipment / courier Pydantic schemas.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from covercart.models import ShipmentState
from covercart.schemas.base import BaseSchema
from covercart.services.fulfillment import FulfillmentResult
from covercart.services.refs import OrderKind


class TrackingEventOut(BaseSchema):
    status: Optional[str] = None
    date: Optional[str] = None
    location: Optional[str] = None
    activity: str = ""


class ShipmentOut(BaseSchema):
    order_kind: OrderKind
    order_id: str
    state: ShipmentState
    shipment_id: Optional[str] = None
    carrier_order_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_id: Optional[str] = None
    courier_name: Optional[str] = None
    status: Optional[str] = None
    status_code: Optional[int] = None
    current_status: Optional[str] = None
    pickup_status: Optional[str] = None
    pickup_scheduled_at: Optional[datetime] = None
    label_url: Optional[str] = None
    manifest_url: Optional[str] = None
    on_hold_reason: Optional[str] = None
    rto_reason: Optional[str] = None
    expected_delivery: Optional[datetime] = None
    tracking_events: list[TrackingEventOut] = []
    last_synced_at: Optional[datetime] = None
    awaiting_courier: bool = False


class FulfillmentOut(BaseSchema):
    shipment: ShipmentOut
    already_exists: bool
    courier_assigned: bool
    pickup_requested: bool
    warnings: list[str] = []

    @classmethod
    def from_result(cls, result: FulfillmentResult) -> "FulfillmentOut":
        return cls(
            shipment=ShipmentOut.model_validate(result.shipment),
            already_exists=result.already_exists,
            courier_assigned=result.courier_assigned,
            pickup_requested=result.pickup_requested,
            warnings=list(result.warnings),
        )


class CourierOptionOut(BaseSchema):
    courier_id: str
    name: Optional[str] = None
    freight_charge: Optional[float] = None
    eta_days: Optional[float] = None


class CreateShipmentRequest(BaseSchema):
    auto_assign: Optional[bool] = None
    request_pickup: Optional[bool] = None


class AssignCourierRequest(BaseSchema):
    courier_id: Optional[str] = Field(None, max_length=32)


class OrderSelection(BaseSchema):
    """Prefixed order references, e.g. ["ORD-…", "CUST-…"]."""

    orders: list[str] = Field(..., min_length=1, max_length=100)


class DocumentOut(BaseSchema):
    url: Optional[str] = None
    orders: list[str] = []


class PickupLocationsOut(BaseSchema):
    locations: list[dict[str, Any]] = []


__all__ = [
    "TrackingEventOut",
    "ShipmentOut",
    "FulfillmentOut",
    "CourierOptionOut",
    "CreateShipmentRequest",
    "AssignCourierRequest",
    "OrderSelection",
    "DocumentOut",
    "PickupLocationsOut",
]
