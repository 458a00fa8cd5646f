# covercart/routers/shipping_admin.py
from __future__ import annotations

"""
Admin fulfillment tooling. Every orchestration step can be run on its own.

Orders are addressed by their prefixed reference ("ORD-<id>" / "CUST-<id>");
a bare id means a standard order. Carrier failures surface the provider
message verbatim (CarrierRejected -> 422, CarrierUnavailable -> 503).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from covercart.core.dependencies import get_fulfillment, require_admin
from covercart.core.security import Principal
from covercart.schemas import (
    AssignCourierRequest,
    CourierOptionOut,
    CreateShipmentRequest,
    DocumentOut,
    FulfillmentOut,
    OrderSelection,
    PickupLocationsOut,
    ShipmentOut,
)
from covercart.services.fulfillment import FulfillmentOrchestrator
from covercart.services.refs import OrderRef

router = APIRouter(prefix="/admin/shipping", tags=["admin-shipping"], dependencies=[Depends(require_admin)])


def _courier_out(options) -> list[CourierOptionOut]:
    return [
        CourierOptionOut(
            courier_id=o.courier_id, name=o.name, freight_charge=o.freight_charge, eta_days=o.eta_days
        )
        for o in options
    ]


# -------------------------------------------------------------------
# Carrier account
# -------------------------------------------------------------------


@router.get("/serviceability", response_model=list[CourierOptionOut], summary="Couriers serving a pincode")
async def serviceability(
    delivery_postcode: str = Query(..., alias="deliveryPostcode", min_length=3, max_length=12),
    pickup_postcode: Optional[str] = Query(None, alias="pickupPostcode", max_length=12),
    cod: bool = Query(False),
    weight: float = Query(0.5, gt=0, le=50),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
):
    options = await fulfillment.serviceability(
        delivery_postcode, cod=cod, weight=weight, pickup_postcode=pickup_postcode
    )
    return _courier_out(options)


@router.get("/pickup-locations", response_model=PickupLocationsOut, summary="Configured pickup locations")
async def pickup_locations(fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    return PickupLocationsOut(locations=await fulfillment.pickup_locations())


# -------------------------------------------------------------------
# Documents (bulk)
# -------------------------------------------------------------------


@router.post("/labels", response_model=DocumentOut, summary="Generate shipping labels")
async def generate_labels(payload: OrderSelection, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    refs = [OrderRef.coerce(o) for o in payload.orders]
    url = await fulfillment.generate_label(refs)
    return DocumentOut(url=url, orders=[str(r) for r in refs])


@router.post("/manifests", response_model=DocumentOut, summary="Generate pickup manifest")
async def generate_manifest(payload: OrderSelection, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    refs = [OrderRef.coerce(o) for o in payload.orders]
    url = await fulfillment.generate_manifest(refs)
    return DocumentOut(url=url, orders=[str(r) for r in refs])


# -------------------------------------------------------------------
# Per-order steps
# -------------------------------------------------------------------


@router.post("/{order_ref}/shipment", response_model=FulfillmentOut, summary="Create carrier shipment")
async def create_shipment(
    order_ref: str,
    payload: CreateShipmentRequest | None = None,
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
):
    options = payload or CreateShipmentRequest()
    result = await fulfillment.create_shipment(
        OrderRef.coerce(order_ref), auto_assign=options.auto_assign, request_pickup=options.request_pickup
    )
    return FulfillmentOut.from_result(result)


@router.get("/{order_ref}/couriers", response_model=list[CourierOptionOut], summary="Recommended couriers")
async def recommended_couriers(order_ref: str, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    return _courier_out(await fulfillment.recommended_couriers(OrderRef.coerce(order_ref)))


@router.post("/{order_ref}/assign-courier", response_model=ShipmentOut, summary="Assign courier (cheapest by default)")
async def assign_courier(
    order_ref: str,
    payload: AssignCourierRequest | None = None,
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
):
    shipment = await fulfillment.assign_courier(
        OrderRef.coerce(order_ref), courier_id=payload.courier_id if payload else None
    )
    return ShipmentOut.model_validate(shipment)


@router.post("/{order_ref}/pickup", response_model=ShipmentOut, summary="Request pickup")
async def request_pickup(order_ref: str, fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment)):
    return ShipmentOut.model_validate(await fulfillment.request_pickup(OrderRef.coerce(order_ref)))


@router.post("/{order_ref}/cancel", response_model=ShipmentOut, summary="Cancel shipment with the carrier")
async def cancel_shipment(
    order_ref: str,
    principal: Principal = Depends(require_admin),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
):
    shipment = await fulfillment.cancel_shipment(OrderRef.coerce(order_ref), admin_id=principal.id)
    return ShipmentOut.model_validate(shipment)


@router.get("/{order_ref}/track", response_model=ShipmentOut, summary="Tracking snapshot (any order)")
async def track(
    order_ref: str,
    refresh: bool = Query(False),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
):
    return ShipmentOut.model_validate(await fulfillment.track(OrderRef.coerce(order_ref), refresh=refresh))
