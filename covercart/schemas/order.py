"""
Order Pydantic schemas (standard and custom orders, payments).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import AliasChoices, Field, field_validator, model_validator

from covercart.models import (
    CustomOrderStatus,
    ItemRefKind,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from covercart.schemas.base import BaseSchema
from covercart.services.reconciliation import CheckoutLine, CheckoutResult, CustomOrderDraft
from covercart.services.refs import CatalogRef, CustomItemRef, is_custom_tag


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
class AddressIn(BaseSchema):
    name: str = Field(..., min_length=1, max_length=128)
    phone: str = Field(..., min_length=7, max_length=20)
    address1: str = Field(
        ..., min_length=1, max_length=255, validation_alias=AliasChoices("address1", "street", "address")
    )
    address2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=128)
    state: str = Field(..., min_length=1, max_length=128)
    postal_code: str = Field(
        ...,
        min_length=3,
        max_length=12,
        validation_alias=AliasChoices("postalCode", "postal_code", "zipCode", "zip_code", "pincode"),
    )
    country: str = Field("India", max_length=64)
    email: Optional[str] = Field(None, max_length=255)

    def to_mapping(self) -> dict[str, Any]:
        return self.model_dump(by_alias=False, exclude_none=True)


class OrderItemIn(BaseSchema):
    """
    One checkout line. Catalog items name a product and a variant; custom
    items carry a "custom_*" tag (in customTag, or in productId as the
    storefront sends it) and their own price.
    """

    product_id: Optional[Union[int, str]] = None
    variant_id: Optional[int] = None
    custom_tag: Optional[str] = Field(None, max_length=128)
    quantity: int = Field(..., ge=1, le=100)
    price: Optional[Decimal] = Field(None, ge=0)
    title: Optional[str] = Field(None, max_length=255)
    brand: Optional[str] = Field(None, max_length=128)
    model_name: Optional[str] = Field(None, max_length=128)
    color: Optional[str] = Field(None, max_length=64)
    sku: Optional[str] = Field(None, max_length=255)
    image_url: Optional[str] = Field(None, max_length=1024)

    @model_validator(mode="after")
    def _check_ref(self):
        if self.custom_tag is None and is_custom_tag(self.product_id):
            self.custom_tag = str(self.product_id)
            self.product_id = None
        if self.custom_tag is not None:
            if not is_custom_tag(self.custom_tag):
                raise ValueError("custom item tags must start with 'custom_'")
            return self
        if self.product_id is None or self.variant_id is None:
            raise ValueError("catalog items need productId and variantId")
        try:
            self.product_id = int(self.product_id)
        except (TypeError, ValueError):
            raise ValueError("productId must be a number or a custom_* tag") from None
        return self

    def to_line(self) -> CheckoutLine:
        if self.custom_tag is not None:
            ref = CustomItemRef(self.custom_tag)
        else:
            ref = CatalogRef(int(self.product_id), int(self.variant_id))
        return CheckoutLine(
            ref=ref,
            quantity=self.quantity,
            price=self.price,
            title=self.title,
            brand=self.brand,
            model_name=self.model_name,
            color=self.color,
            sku=self.sku,
            image_url=self.image_url,
        )


class CheckoutRequest(BaseSchema):
    items: list[OrderItemIn] = Field(..., min_length=1, max_length=50)
    shipping_address: AddressIn
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("payment_method", mode="before")
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod(self.payment_method)


class PaymentCreateRequest(BaseSchema):
    order_id: str = Field(
        ..., min_length=1, max_length=64, validation_alias=AliasChoices("orderId", "order_id", "customOrderId")
    )


class VerifyPaymentRequest(BaseSchema):
    gateway_order_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("razorpay_order_id", "gatewayOrderId", "gateway_order_id")
    )
    gateway_payment_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("razorpay_payment_id", "gatewayPaymentId", "gateway_payment_id"),
    )
    signature: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("razorpay_signature", "signature")
    )
    order_id: str = Field(
        ..., min_length=1, max_length=64, validation_alias=AliasChoices("orderId", "order_id", "customOrderId")
    )


class CancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class CustomVariantIn(BaseSchema):
    sku: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, max_length=64)
    price: Optional[Decimal] = Field(None, ge=0)


class CustomOrderCreate(BaseSchema):
    product_id: Optional[int] = None
    variant: Optional[CustomVariantIn] = None
    quantity: int = Field(1, ge=1, le=20)
    price: Optional[Decimal] = Field(None, ge=0)
    mockup_url: str = Field(..., min_length=1, max_length=1024)
    instructions: Optional[str] = Field(None, max_length=500)
    design_data: Optional[dict[str, Any]] = None
    model_name: Optional[str] = Field(None, max_length=128)
    shipping_address: AddressIn
    payment_method: PaymentMethod = PaymentMethod.RAZORPAY

    def to_draft(self) -> CustomOrderDraft:
        v = self.variant
        return CustomOrderDraft(
            mockup_url=self.mockup_url,
            quantity=self.quantity,
            product_id=self.product_id,
            variant_sku=v.sku if v else None,
            variant_color=v.color if v else None,
            variant_price=v.price if v else None,
            price=self.price,
            instructions=self.instructions,
            design_data=self.design_data,
            model_name=self.model_name,
            payment_method=PaymentMethod(self.payment_method),
        )


class ApproveCustomRequest(BaseSchema):
    admin_notes: Optional[str] = Field(None, max_length=500)
    mockup_url: Optional[str] = Field(None, max_length=1024)


class RejectCustomRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)
    admin_notes: Optional[str] = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
class OrderItemOut(BaseSchema):
    ref_kind: ItemRefKind
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    custom_tag: Optional[str] = None
    title: Optional[str] = None
    brand: Optional[str] = None
    model_name: Optional[str] = None
    color: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None
    unit_price: Decimal
    quantity: int


class _OrderRecordOut(BaseSchema):
    id: str
    order_number: str
    user_id: str
    total: Decimal
    currency: str
    shipping_address: dict[str, Any]
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_status: RefundStatus
    refund_amount: Optional[Decimal] = None
    refund_id: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrderOut(_OrderRecordOut):
    status: OrderStatus
    items: list[OrderItemOut] = []


class CustomOrderOut(_OrderRecordOut):
    status: CustomOrderStatus
    product_id: Optional[int] = None
    variant_sku: Optional[str] = None
    variant_color: Optional[str] = None
    unit_price: Decimal
    quantity: int
    mockup_url: str
    instructions: Optional[str] = None
    design_data: Optional[dict[str, Any]] = None
    model_name: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class CheckoutResponse(BaseSchema):
    order: OrderOut
    gateway_order_id: Optional[str] = None
    gateway_public_key: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    @classmethod
    def from_result(cls, result: CheckoutResult) -> "CheckoutResponse":
        gw = result.gateway_order
        return cls(
            order=OrderOut.model_validate(result.order),
            gateway_order_id=gw.gateway_order_id if gw else None,
            gateway_public_key=result.gateway_key_id,
            amount=gw.amount if gw else None,
            currency=gw.currency if gw else None,
        )


class PaymentIntentOut(BaseSchema):
    order_id: str
    order_number: str
    gateway_order_id: str
    gateway_public_key: Optional[str] = None
    amount: int
    currency: str

    @classmethod
    def from_result(cls, result: CheckoutResult) -> "PaymentIntentOut":
        gw = result.gateway_order
        return cls(
            order_id=result.order.id,
            order_number=result.order.order_number,
            gateway_order_id=gw.gateway_order_id,
            gateway_public_key=result.gateway_key_id,
            amount=gw.amount,
            currency=gw.currency,
        )


__all__ = [
    "AddressIn",
    "OrderItemIn",
    "CheckoutRequest",
    "PaymentCreateRequest",
    "VerifyPaymentRequest",
    "CancelRequest",
    "CustomVariantIn",
    "CustomOrderCreate",
    "ApproveCustomRequest",
    "RejectCustomRequest",
    "OrderItemOut",
    "OrderOut",
    "CustomOrderOut",
    "CheckoutResponse",
    "PaymentIntentOut",
]
