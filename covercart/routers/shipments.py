# covercart/routers/shipments.py
from __future__ import annotations

"""
Customer-facing shipment tracking (owner only).
"""

from fastapi import APIRouter, Depends, Query

from covercart.core.dependencies import get_current_principal, get_fulfillment, get_order_store
from covercart.core.security import Principal
from covercart.schemas import ShipmentOut
from covercart.services.fulfillment import FulfillmentOrchestrator
from covercart.services.order_store import OrderStore
from covercart.services.refs import OrderRef

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.get("/{order_id}/track", response_model=ShipmentOut, summary="Track my shipment")
async def track_shipment(
    order_id: str,
    refresh: bool = Query(False, description="Poll the carrier before answering"),
    principal: Principal = Depends(get_current_principal),
    store: OrderStore = Depends(get_order_store),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
):
    ref = OrderRef.coerce(order_id)
    await store.require_owned(ref, principal)
    shipment = await fulfillment.track(ref, refresh=refresh)
    return ShipmentOut.model_validate(shipment)
