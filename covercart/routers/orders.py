# covercart/routers/orders.py
from __future__ import annotations

"""
Orders router: checkout, payment (re)issue and verification, own orders, cancel.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status

from covercart.core.config import Settings
from covercart.core.dependencies import (
    Pagination,
    get_app_settings,
    get_client_info,
    get_current_principal,
    get_fulfillment,
    get_order_store,
    get_pagination,
    get_reconciliation_engine,
)
from covercart.core.security import Principal
from covercart.schemas import (
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    OrderOut,
    PaginatedResponse,
    PaymentCreateRequest,
    PaymentIntentOut,
    VerifyPaymentRequest,
)
from covercart.services.fulfillment import FulfillmentOrchestrator
from covercart.services.order_store import OrderStore
from covercart.services.reconciliation import ReconciliationEngine
from covercart.services.refs import OrderKind, OrderRef

router = APIRouter(prefix="/orders", tags=["orders"])


def schedule_auto_shipment(
    background_tasks: BackgroundTasks,
    app_settings: Settings,
    fulfillment: FulfillmentOrchestrator,
    order,
) -> None:
    if app_settings.SHIPMENT_AUTO_CREATE_ON_PAYMENT and order.is_paid and not order.is_terminal:
        background_tasks.add_task(fulfillment.create_shipment_quietly, order.ref)


# -------------------------------------------------------------------
# POST /orders (checkout)
# -------------------------------------------------------------------


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Checkout",
)
async def create_order(
    payload: CheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    result = await engine.checkout(
        principal,
        [item.to_line() for item in payload.items],
        payload.shipping_address.to_mapping(),
        payload.method,
        notes=payload.notes,
    )
    return CheckoutResponse.from_result(result)


# -------------------------------------------------------------------
# Payments
# -------------------------------------------------------------------


@router.post("/pay/create", response_model=PaymentIntentOut, summary="Open a new payment for an unpaid order")
async def create_payment(
    payload: PaymentCreateRequest,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    result = await engine.create_payment(OrderRef.standard(payload.order_id), principal)
    return PaymentIntentOut.from_result(result)


@router.post("/pay/verify", response_model=OrderOut, summary="Verify checkout payment signature")
async def verify_payment(
    payload: VerifyPaymentRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
    app_settings: Settings = Depends(get_app_settings),
):
    order = await engine.verify_client_payment(
        OrderRef.standard(payload.order_id),
        payload.gateway_order_id,
        payload.gateway_payment_id,
        payload.signature,
        principal,
        client_ip=get_client_info(request)["ip_address"],
    )
    schedule_auto_shipment(background_tasks, app_settings, fulfillment, order)
    return OrderOut.model_validate(order)


# -------------------------------------------------------------------
# GET /orders/my, GET /orders/{id}
# -------------------------------------------------------------------


@router.get("/my", response_model=PaginatedResponse[OrderOut], summary="My orders")
async def my_orders(
    pagination: Pagination = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    store: OrderStore = Depends(get_order_store),
):
    rows, total = await store.list_for_user(
        OrderKind.STANDARD, principal.id, offset=pagination.offset, limit=pagination.per_page
    )
    return PaginatedResponse[OrderOut].create(
        [OrderOut.model_validate(o) for o in rows], total, pagination.page, pagination.per_page
    )


@router.get("/{order_id}", response_model=OrderOut, summary="Get order")
async def get_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    store: OrderStore = Depends(get_order_store),
):
    order = await store.require_owned(OrderRef.standard(order_id), principal)
    return OrderOut.model_validate(order)


# -------------------------------------------------------------------
# PUT /orders/{id}/cancel
# -------------------------------------------------------------------


@router.put("/{order_id}/cancel", response_model=OrderOut, summary="Cancel order")
async def cancel_order(
    order_id: str,
    payload: CancelRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = await engine.cancel_order(
        OrderRef.standard(order_id), principal, reason=payload.reason if payload else None
    )
    return OrderOut.model_validate(order)
