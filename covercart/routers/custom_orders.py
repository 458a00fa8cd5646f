# covercart/routers/custom_orders.py
from __future__ import annotations

"""
Custom (design-your-own) cover orders: create, pay, verify, list own orders.
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
from covercart.routers.orders import schedule_auto_shipment
from covercart.schemas import (
    CustomOrderCreate,
    CustomOrderOut,
    PaginatedResponse,
    PaymentCreateRequest,
    PaymentIntentOut,
    VerifyPaymentRequest,
)
from covercart.services.fulfillment import FulfillmentOrchestrator
from covercart.services.order_store import OrderStore
from covercart.services.reconciliation import ReconciliationEngine
from covercart.services.refs import OrderKind, OrderRef

router = APIRouter(prefix="/custom", tags=["custom-orders"])


@router.post(
    "/orders",
    response_model=CustomOrderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create custom order",
)
async def create_custom_order(
    payload: CustomOrderCreate,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    order = await engine.create_custom_order(principal, payload.to_draft(), payload.shipping_address.to_mapping())
    return CustomOrderOut.model_validate(order)


@router.post("/pay", response_model=PaymentIntentOut, summary="Create payment for custom order")
async def create_custom_payment(
    payload: PaymentCreateRequest,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    result = await engine.create_payment(OrderRef.custom(payload.order_id), principal)
    return PaymentIntentOut.from_result(result)


@router.post("/pay/verify", response_model=CustomOrderOut, summary="Verify custom order payment")
async def verify_custom_payment(
    payload: VerifyPaymentRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    fulfillment: FulfillmentOrchestrator = Depends(get_fulfillment),
    app_settings: Settings = Depends(get_app_settings),
):
    order = await engine.verify_client_payment(
        OrderRef.custom(payload.order_id),
        payload.gateway_order_id,
        payload.gateway_payment_id,
        payload.signature,
        principal,
        client_ip=get_client_info(request)["ip_address"],
    )
    schedule_auto_shipment(background_tasks, app_settings, fulfillment, order)
    return CustomOrderOut.model_validate(order)


@router.get("/orders", response_model=PaginatedResponse[CustomOrderOut], summary="My custom orders")
async def my_custom_orders(
    pagination: Pagination = Depends(get_pagination),
    principal: Principal = Depends(get_current_principal),
    store: OrderStore = Depends(get_order_store),
):
    rows, total = await store.list_for_user(
        OrderKind.CUSTOM, principal.id, offset=pagination.offset, limit=pagination.per_page
    )
    return PaginatedResponse[CustomOrderOut].create(
        [CustomOrderOut.model_validate(o) for o in rows], total, pagination.page, pagination.per_page
    )


@router.get("/orders/{order_id}", response_model=CustomOrderOut, summary="Get custom order")
async def get_custom_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    store: OrderStore = Depends(get_order_store),
):
    order = await store.require_owned(OrderRef.custom(order_id), principal)
    return CustomOrderOut.model_validate(order)
