# covercart/services/fulfillment.py
"""
Fulfillment orchestration: carrier shipment, courier, pickup, documents, tracking.

create_shipment() is single-winner per order:
  1. an existing live shipment row -> "already exists" (not an error);
  2. a reservation row (state=creating) is inserted; the unique
     (order_kind, order_id) constraint rejects a concurrent second insert;
  3. the carrier call happens outside any transaction; on failure the
     reservation is released so the order can be retried;
  4. shipment_id is persisted right away (unique: never on two orders).

Reservations left behind by a crashed worker (state=creating, older than
SHIPMENT_RESERVATION_TTL_SECONDS) and cancelled shipments are reclaimed by a
conditional UPDATE, so reclaiming is single-winner as well.

Courier assignment and pickup are best effort after creation; every step can
also be invoked on its own from the admin API.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, or_
from sqlalchemy.exc import IntegrityError

from covercart.core.config import Settings, settings as default_settings
from covercart.core.exceptions import (
    CarrierError,
    ConflictError,
    CoverCartException,
    CoverCartValidationError,
    NotFoundError,
)
from covercart.core.logging import audit_logger, bound_context, get_logger
from covercart.models import Order, OrderStatus, PaymentMethod, Shipment, ShipmentState, utc_now
from covercart.models.order import AnyOrder
from covercart.services.order_store import OrderStore
from covercart.services.reconciliation import parse_carrier_datetime
from covercart.services.refs import CatalogRef, LineItemRef, OrderKind, OrderRef
from covercart.services.shiprocket_service import (
    CarrierAddress,
    CarrierOrderItem,
    CourierOption,
    ShipmentRequest,
    ShiprocketService,
)

logger = get_logger(__name__)

# couriers quoting no freight charge sort after every priced option
MISSING_FREIGHT = 999.0


def _fallback_sku(ref: LineItemRef) -> str:
    if isinstance(ref, CatalogRef):
        return f"{ref.product_id}-{ref.variant_id}"
    return ref.tag


def pick_cheapest(options: List[CourierOption]) -> Optional[CourierOption]:
    """Lowest freight charge; ties keep the provider's order."""
    best: Optional[CourierOption] = None
    best_price = 0.0
    for opt in options:
        price = opt.freight_charge if opt.freight_charge is not None else MISSING_FREIGHT
        if best is None or price < best_price:
            best, best_price = opt, price
    return best


@dataclass
class FulfillmentResult:
    shipment: Shipment
    already_exists: bool = False
    courier_assigned: bool = False
    pickup_requested: bool = False
    warnings: List[str] = field(default_factory=list)


class FulfillmentOrchestrator:
    def __init__(
        self,
        store: OrderStore,
        carrier: ShiprocketService,
        app_settings: Optional[Settings] = None,
    ):
        self.store = store
        self.carrier = carrier
        self.settings = app_settings or default_settings

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #
    async def _require_shipment(self, ref: OrderRef) -> Shipment:
        shipment = await self.store.get_shipment(ref)
        if shipment is None:
            raise NotFoundError("Shipment not found", "SHIPMENT_NOT_FOUND", extra={"order": str(ref)})
        return shipment

    @staticmethod
    def _check_eligible(order: AnyOrder) -> None:
        if not (order.is_paid or order.payment_method == PaymentMethod.COD):
            raise CoverCartValidationError("Order is not paid", "ORDER_NOT_PAID")
        if order.is_terminal:
            raise CoverCartValidationError(f"Order is {order.status.value}", "ORDER_CLOSED")
        address = order.shipping_address or {}
        postal = address.get("postal_code") or address.get("postalCode") or address.get("zipCode")
        if not (address.get("city") and postal):
            raise CoverCartValidationError("Shipping address needs a city and a postal code", "INVALID_ADDRESS")

    def build_request(self, order: AnyOrder) -> ShipmentRequest:
        address = CarrierAddress.from_mapping(
            order.shipping_address or {}, default_country=self.settings.DEFAULT_COUNTRY
        )
        items: List[CarrierOrderItem] = []
        for item in order.items:
            items.append(
                CarrierOrderItem(
                    name=item.title or "Phone Cover",
                    sku=item.sku or _fallback_sku(item.ref),
                    units=int(item.quantity),
                    selling_price=float(item.unit_price),
                )
            )
        return ShipmentRequest(
            order_id=order.ref.carrier_order_id,
            order_date=order.created_at or utc_now(),
            address=address,
            items=items,
            payment_method="COD" if order.payment_method == PaymentMethod.COD else "Prepaid",
            sub_total=float(order.total),
            email=address.email,
            pickup_location=self.settings.SHIPROCKET_PICKUP_LOCATION,
        )

    async def _reserve(self, ref: OrderRef, existing: Optional[Shipment]) -> Optional[Shipment]:
        """Take the per-order reservation; None when another worker holds it."""
        if existing is not None:
            cutoff = utc_now() - timedelta(seconds=self.settings.SHIPMENT_RESERVATION_TTL_SECONDS)
            async with self.store.transaction() as s:
                reclaimed = await self.store.update_shipment(
                    s,
                    existing.id,
                    or_(
                        Shipment.state == ShipmentState.CANCELLED,
                        and_(Shipment.state == ShipmentState.CREATING, Shipment.updated_at < cutoff),
                    ),
                    state=ShipmentState.CREATING,
                    shipment_id=None,
                    carrier_order_id=None,
                    awb_code=None,
                    courier_id=None,
                    courier_name=None,
                    status=None,
                    status_code=None,
                    pickup_status=None,
                    label_url=None,
                    manifest_url=None,
                )
            if not reclaimed:
                return None
            logger.info("shipment_reservation_reclaimed", order=str(ref), previous_state=existing.state.value)
            return await self.store.get_shipment(ref)

        try:
            return await self.store.add(Shipment(order_kind=ref.kind, order_id=ref.id, state=ShipmentState.CREATING))
        except IntegrityError:
            return None

    async def _release(self, shipment: Shipment) -> None:
        async with self.store.transaction() as s:
            await s.execute(
                delete(Shipment)
                .where(Shipment.id == shipment.id, Shipment.state == ShipmentState.CREATING)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------ #
    # orchestration
    # ------------------------------------------------------------------ #
    async def create_shipment(
        self,
        ref: OrderRef,
        *,
        auto_assign: Optional[bool] = None,
        request_pickup: Optional[bool] = None,
    ) -> FulfillmentResult:
        auto_assign = self.settings.SHIPMENT_AUTO_ASSIGN_COURIER if auto_assign is None else auto_assign
        request_pickup = self.settings.SHIPMENT_AUTO_REQUEST_PICKUP if request_pickup is None else request_pickup

        with bound_context(order=str(ref)):
            existing = await self.store.get_shipment(ref)
            order = await self.store.require(ref)
            if existing is not None and existing.state not in (ShipmentState.CANCELLED, ShipmentState.CREATING):
                return FulfillmentResult(shipment=existing, already_exists=True)
            self._check_eligible(order)

            reservation = await self._reserve(ref, existing)
            if reservation is None:
                logger.info("shipment_already_exists", order=str(ref))
                current = await self._require_shipment(ref)
                return FulfillmentResult(shipment=current, already_exists=True)

            try:
                created = await self.carrier.create_shipment(self.build_request(order))
            except CarrierError as e:
                logger.error("shipment_create_failed", error=e.message, code=e.code)
                await self._release(reservation)
                raise

            try:
                async with self.store.transaction() as s:
                    await self.store.update_shipment(
                        s,
                        reservation.id,
                        state=ShipmentState.CREATED,
                        shipment_id=created.shipment_id,
                        carrier_order_id=created.carrier_order_id,
                        status=(created.status or "").lower() or None,
                        status_code=created.status_code,
                    )
                    if ref.kind is OrderKind.STANDARD:
                        await self.store.update_where(
                            s,
                            ref,
                            Order.status.in_((OrderStatus.PENDING, OrderStatus.CONFIRMED)),
                            status=OrderStatus.PROCESSING,
                        )
            except IntegrityError as e:
                logger.error("shipment_id_conflict", shipment_id=created.shipment_id)
                await self._release(reservation)
                raise ConflictError(
                    "Carrier shipment is already attached to another order",
                    "SHIPMENT_CONFLICT",
                    extra={"shipment_id": created.shipment_id},
                ) from e

            logger.info("shipment_created", shipment_id=created.shipment_id, carrier_order_id=created.carrier_order_id)
            result = FulfillmentResult(shipment=await self._require_shipment(ref))

            if auto_assign:
                try:
                    result.shipment = await self.assign_courier(ref)
                    result.courier_assigned = True
                except (CarrierError, CoverCartValidationError) as e:
                    logger.warning("courier_assignment_deferred", error=e.message)
                    result.warnings.append(f"Courier not assigned: {e.message}")

            if request_pickup and result.courier_assigned:
                try:
                    result.shipment = await self.request_pickup(ref)
                    result.pickup_requested = True
                except (CarrierError, CoverCartValidationError) as e:
                    logger.warning("pickup_request_failed", error=e.message)
                    result.warnings.append(f"Pickup not requested: {e.message}")

            return result

    async def create_shipment_quietly(self, ref: OrderRef) -> None:
        """Background-task entry point (after payment); failures are logged for admin follow-up."""
        try:
            result = await self.create_shipment(ref)
        except CoverCartException as e:
            logger.error("auto_shipment_failed", order=str(ref), error=e.message, code=e.code)
            return
        logger.info(
            "auto_shipment_done",
            order=str(ref),
            already_exists=result.already_exists,
            courier_assigned=result.courier_assigned,
        )

    async def recommended_couriers(self, ref: OrderRef) -> List[CourierOption]:
        shipment = await self._require_shipment(ref)
        if not shipment.shipment_id:
            raise CoverCartValidationError("Shipment has not been created with the carrier yet", "SHIPMENT_NOT_CREATED")
        return await self.carrier.get_recommended_couriers(shipment.shipment_id)

    async def assign_courier(self, ref: OrderRef, courier_id: Optional[str] = None) -> Shipment:
        shipment = await self._require_shipment(ref)
        if shipment.awb_code:
            return shipment
        if not shipment.shipment_id or shipment.state == ShipmentState.CANCELLED:
            raise CoverCartValidationError("Shipment has not been created with the carrier yet", "SHIPMENT_NOT_CREATED")

        if courier_id is None:
            best = pick_cheapest(await self.carrier.get_recommended_couriers(shipment.shipment_id))
            if best is None:
                raise CoverCartValidationError("No courier available for this shipment", "NO_COURIER_AVAILABLE")
            courier_id = best.courier_id
            logger.info("courier_selected", courier_id=best.courier_id, freight_charge=best.freight_charge)

        assignment = await self.carrier.assign_courier(shipment.shipment_id, str(courier_id))
        async with self.store.transaction() as s:
            await self.store.update_shipment(
                s,
                shipment.id,
                Shipment.awb_code.is_(None),
                awb_code=assignment.awb_code,
                courier_id=assignment.courier_id or str(courier_id),
                courier_name=assignment.courier_name,
                state=ShipmentState.AWB_ASSIGNED,
            )
            await self.store.update_where(s, ref, tracking_number=assignment.awb_code)
        logger.info("courier_assigned", order=str(ref), awb_code=assignment.awb_code, courier=assignment.courier_name)
        return await self._require_shipment(ref)

    async def request_pickup(self, ref: OrderRef) -> Shipment:
        shipment = await self._require_shipment(ref)
        if not shipment.awb_code:
            raise CoverCartValidationError("Assign a courier before requesting pickup", "AWB_REQUIRED")
        result = await self.carrier.request_pickup(shipment.shipment_id)
        async with self.store.transaction() as s:
            await self.store.update_shipment(
                s,
                shipment.id,
                Shipment.state != ShipmentState.CANCELLED,
                state=ShipmentState.PICKUP_REQUESTED,
                pickup_status=result.pickup_status,
                pickup_scheduled_at=parse_carrier_datetime(result.scheduled_at),
            )
        return await self._require_shipment(ref)

    async def cancel_shipment(self, ref: OrderRef, admin_id: Optional[str] = None) -> Shipment:
        shipment = await self._require_shipment(ref)
        if not shipment.awb_code:
            raise CoverCartValidationError("Shipment has no waybill to cancel", "AWB_REQUIRED")
        await self.carrier.cancel_shipment([shipment.awb_code])
        async with self.store.transaction() as s:
            await self.store.update_shipment(
                s, shipment.id, state=ShipmentState.CANCELLED, status="cancelled", last_synced_at=utc_now()
            )
        audit_logger.log_data_change(admin_id, "cancel", "shipment", shipment.id, {"awb_code": shipment.awb_code})
        return await self._require_shipment(ref)

    async def _shipments_for(self, refs: List[OrderRef]) -> List[Shipment]:
        shipments = []
        for ref in refs:
            shipment = await self._require_shipment(ref)
            if not shipment.shipment_id:
                raise CoverCartValidationError(
                    f"Shipment for {ref} has not been created with the carrier yet", "SHIPMENT_NOT_CREATED"
                )
            shipments.append(shipment)
        if not shipments:
            raise CoverCartValidationError("No orders given", "EMPTY_SELECTION")
        return shipments

    async def generate_label(self, refs: List[OrderRef]) -> Optional[str]:
        shipments = await self._shipments_for(refs)
        url = await self.carrier.generate_label([s.shipment_id for s in shipments])
        await self._store_document(shipments, label_url=url)
        return url

    async def generate_manifest(self, refs: List[OrderRef]) -> Optional[str]:
        shipments = await self._shipments_for(refs)
        url = await self.carrier.generate_manifest([s.shipment_id for s in shipments])
        await self._store_document(shipments, manifest_url=url)
        return url

    async def _store_document(self, shipments: List[Shipment], **values: Any) -> None:
        if not any(values.values()):
            return
        async with self.store.transaction() as s:
            for shipment in shipments:
                await self.store.update_shipment(s, shipment.id, **values)

    async def track(self, ref: OrderRef, *, refresh: bool = False) -> Shipment:
        """Stored tracking snapshot; refresh=True polls the carrier first (order status is left to webhooks)."""
        shipment = await self._require_shipment(ref)
        if not refresh or not shipment.awb_code:
            return shipment

        snapshot = await self.carrier.track_shipment(shipment.awb_code)
        values: Dict[str, Any] = {"last_synced_at": utc_now()}
        if snapshot.status:
            values["current_status"] = snapshot.status
            values["status"] = snapshot.status.lower()
        if snapshot.events:
            values["tracking_events"] = snapshot.events
        etd = parse_carrier_datetime(snapshot.etd)
        if etd is not None:
            values["expected_delivery"] = etd
        async with self.store.transaction() as s:
            await self.store.update_shipment(s, shipment.id, **values)
        return await self._require_shipment(ref)

    async def serviceability(
        self,
        delivery_postcode: str,
        *,
        cod: bool = False,
        weight: float = 0.5,
        pickup_postcode: Optional[str] = None,
    ) -> List[CourierOption]:
        pickup = pickup_postcode or self.settings.SHIPROCKET_PICKUP_POSTCODE
        if not pickup:
            raise CoverCartValidationError("Pickup postcode is not configured", "PICKUP_POSTCODE_REQUIRED")
        return await self.carrier.check_serviceability(pickup, delivery_postcode, cod=cod, weight=weight)

    async def pickup_locations(self) -> List[Dict[str, Any]]:
        return await self.carrier.get_pickup_locations()


__all__ = ["FulfillmentOrchestrator", "FulfillmentResult", "pick_cheapest", "MISSING_FREIGHT"]
