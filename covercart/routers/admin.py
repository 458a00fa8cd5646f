# covercart/routers/admin.py
from __future__ import annotations

"""
Admin order management: listings, custom order review, cleanup.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from covercart.core.dependencies import (
    Pagination,
    get_order_store,
    get_pagination,
    get_reconciliation_engine,
    require_admin,
)
from covercart.core.security import Principal
from covercart.schemas import (
    ApproveCustomRequest,
    CustomOrderOut,
    MessageResponse,
    OrderOut,
    PaginatedResponse,
    RejectCustomRequest,
)
from covercart.services.order_store import OrderStore
from covercart.services.reconciliation import ReconciliationEngine
from covercart.services.refs import OrderKind, OrderRef

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _out(order):
    if order.kind is OrderKind.CUSTOM:
        return CustomOrderOut.model_validate(order)
    return OrderOut.model_validate(order)


# -------------------------------------------------------------------
# Listings
# -------------------------------------------------------------------


@router.get("/orders", response_model=PaginatedResponse[OrderOut], summary="All standard orders")
async def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    pagination: Pagination = Depends(get_pagination),
    store: OrderStore = Depends(get_order_store),
):
    rows, total = await store.list_orders(
        OrderKind.STANDARD,
        status=status_filter,
        payment_status=payment_status,
        offset=pagination.offset,
        limit=pagination.per_page,
    )
    return PaginatedResponse[OrderOut].create(
        [OrderOut.model_validate(o) for o in rows], total, pagination.page, pagination.per_page
    )


@router.get("/custom-orders", response_model=PaginatedResponse[CustomOrderOut], summary="All custom orders")
async def list_custom_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    pagination: Pagination = Depends(get_pagination),
    store: OrderStore = Depends(get_order_store),
):
    rows, total = await store.list_orders(
        OrderKind.CUSTOM,
        status=status_filter,
        payment_status=payment_status,
        offset=pagination.offset,
        limit=pagination.per_page,
    )
    return PaginatedResponse[CustomOrderOut].create(
        [CustomOrderOut.model_validate(o) for o in rows], total, pagination.page, pagination.per_page
    )


@router.get("/orders/{order_ref}", summary="Any order by reference (ORD-… / CUST-… / bare id)")
async def get_any_order(order_ref: str, store: OrderStore = Depends(get_order_store)):
    order = await store.require(OrderRef.coerce(order_ref))
    return _out(order)


# -------------------------------------------------------------------
# Custom order review
# -------------------------------------------------------------------


@router.put("/custom/{order_id}/approve", response_model=CustomOrderOut, summary="Approve custom order")
async def approve_custom_order(
    order_id: str,
    payload: ApproveCustomRequest,
    principal: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = await engine.approve_custom(
        OrderRef.custom(order_id), principal, admin_notes=payload.admin_notes, mockup_url=payload.mockup_url
    )
    return CustomOrderOut.model_validate(order)


@router.put("/custom/{order_id}/production", response_model=CustomOrderOut, summary="Start production")
async def start_custom_production(
    order_id: str,
    principal: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = await engine.start_production(OrderRef.custom(order_id), principal)
    return CustomOrderOut.model_validate(order)


@router.put("/custom/{order_id}/reject", response_model=CustomOrderOut, summary="Reject custom order")
async def reject_custom_order(
    order_id: str,
    payload: RejectCustomRequest,
    principal: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = await engine.reject_custom(
        OrderRef.custom(order_id), principal, payload.reason, admin_notes=payload.admin_notes
    )
    return CustomOrderOut.model_validate(order)


# -------------------------------------------------------------------
# Cleanup
# -------------------------------------------------------------------


@router.delete(
    "/orders/{order_ref}",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
    summary="Delete an unpaid order without shipment",
)
async def delete_order(
    order_ref: str,
    principal: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    ref = OrderRef.coerce(order_ref)
    await engine.admin_delete(ref, principal)
    return MessageResponse(message="Order deleted", data={"order": str(ref)})
