from covercart.schemas.base import BaseSchema, MessageResponse, PaginatedResponse
from covercart.schemas.order import (
    AddressIn,
    ApproveCustomRequest,
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    CustomOrderCreate,
    CustomOrderOut,
    OrderItemIn,
    OrderItemOut,
    OrderOut,
    PaymentCreateRequest,
    PaymentIntentOut,
    RejectCustomRequest,
    VerifyPaymentRequest,
)
from covercart.schemas.shipment import (
    AssignCourierRequest,
    CourierOptionOut,
    CreateShipmentRequest,
    DocumentOut,
    FulfillmentOut,
    OrderSelection,
    PickupLocationsOut,
    ShipmentOut,
    TrackingEventOut,
)
from covercart.schemas.webhook import WebhookAck

__all__ = [
    "BaseSchema",
    "MessageResponse",
    "PaginatedResponse",
    "AddressIn",
    "ApproveCustomRequest",
    "CancelRequest",
    "CheckoutRequest",
    "CheckoutResponse",
    "CustomOrderCreate",
    "CustomOrderOut",
    "OrderItemIn",
    "OrderItemOut",
    "OrderOut",
    "PaymentCreateRequest",
    "PaymentIntentOut",
    "RejectCustomRequest",
    "VerifyPaymentRequest",
    "AssignCourierRequest",
    "CourierOptionOut",
    "CreateShipmentRequest",
    "DocumentOut",
    "FulfillmentOut",
    "OrderSelection",
    "PickupLocationsOut",
    "ShipmentOut",
    "TrackingEventOut",
    "WebhookAck",
]
