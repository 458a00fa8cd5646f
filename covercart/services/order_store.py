# covercart/services/order_store.py
"""
Persistence for both order kinds, their shipments and catalog stock.

Reads open a short session each; writes go through transaction(), which yields
a session inside session.begin(). Status changes are conditional UPDATEs
(update_where returns the rowcount) so a caller learns whether it won the
transition instead of overwriting a concurrent writer.

Write transactions issue their first UPDATE before any SELECT: on SQLite this
takes the write lock up front and keeps concurrent writers serialized.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from covercart.core.exceptions import NotFoundError
from covercart.core.logging import get_logger
from covercart.core.security import Principal
from covercart.models import (
    CustomOrder,
    CustomOrderStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductVariant,
    Shipment,
)
from covercart.models.order import AnyOrder
from covercart.services.refs import OrderKind, OrderRef

logger = get_logger(__name__)

_MODELS: dict[OrderKind, type] = {
    OrderKind.STANDARD: Order,
    OrderKind.CUSTOM: CustomOrder,
}

# statuses an admin may clean up (never paid, never shipped)
_DELETABLE = {
    OrderKind.STANDARD: (OrderStatus.PENDING, OrderStatus.CANCELLED),
    OrderKind.CUSTOM: (CustomOrderStatus.PENDING, CustomOrderStatus.REJECTED),
}


class OrderStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ---------------------- sessions ---------------------- #

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One unit of atomicity: commits on exit, rolls back on error."""
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def _use(self, session: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.session() as s:
            yield s

    @staticmethod
    def model_for(kind: OrderKind) -> type:
        return _MODELS[OrderKind(kind)]

    # ---------------------- order lookups ---------------------- #

    async def get(self, ref: OrderRef, session: Optional[AsyncSession] = None) -> Optional[AnyOrder]:
        model = self.model_for(ref.kind)
        async with self._use(session) as s:
            return await s.get(model, ref.id, populate_existing=True)

    async def require(self, ref: OrderRef, session: Optional[AsyncSession] = None) -> AnyOrder:
        order = await self.get(ref, session)
        if order is None:
            raise NotFoundError("Order not found", "ORDER_NOT_FOUND", extra={"order": str(ref)})
        return order

    async def require_owned(self, ref: OrderRef, principal: Principal) -> AnyOrder:
        """Owner (or admin) view of an order; other users get a plain 404."""
        order = await self.require(ref)
        if not principal.is_admin and order.user_id != principal.id:
            logger.warning("order_access_denied", order=str(ref), user_id=principal.id)
            raise NotFoundError("Order not found", "ORDER_NOT_FOUND", extra={"order": str(ref)})
        return order

    async def _find_by(self, column: str, value: str) -> Optional[AnyOrder]:
        if not value:
            return None
        async with self.session() as s:
            for model in (Order, CustomOrder):
                stmt = select(model).where(getattr(model, column) == value).limit(1)
                found = (await s.execute(stmt)).scalars().first()
                if found is not None:
                    return found
        return None

    async def find_by_gateway_order(self, gateway_order_id: str) -> Optional[AnyOrder]:
        """Resolve a gateway order id across both stores."""
        return await self._find_by("gateway_order_id", gateway_order_id)

    async def find_by_gateway_payment(self, gateway_payment_id: str) -> Optional[AnyOrder]:
        return await self._find_by("gateway_payment_id", gateway_payment_id)

    async def find_for_verification(self, ref: OrderRef, gateway_order_id: str) -> Optional[AnyOrder]:
        """Compound match: the order id alone never identifies a payment."""
        model = self.model_for(ref.kind)
        async with self.session() as s:
            stmt = select(model).where(model.id == ref.id, model.gateway_order_id == gateway_order_id)
            return (await s.execute(stmt)).scalars().first()

    async def _page(
        self, model: type, criteria: Sequence[Any], offset: int, limit: int
    ) -> tuple[list[AnyOrder], int]:
        async with self.session() as s:
            total = (await s.execute(select(func.count()).select_from(model).where(*criteria))).scalar_one()
            stmt = select(model).where(*criteria).order_by(model.created_at.desc()).offset(offset).limit(limit)
            rows = (await s.execute(stmt)).scalars().all()
        return list(rows), int(total)

    async def list_for_user(
        self, kind: OrderKind, user_id: str, *, offset: int = 0, limit: int = 20
    ) -> tuple[list[AnyOrder], int]:
        model = self.model_for(kind)
        return await self._page(model, [model.user_id == user_id], offset, limit)

    async def list_orders(
        self,
        kind: OrderKind,
        *,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[AnyOrder], int]:
        model = self.model_for(kind)
        criteria: list[Any] = []
        if status:
            criteria.append(model.status == status)
        if payment_status:
            criteria.append(model.payment_status == payment_status)
        return await self._page(model, criteria, offset, limit)

    # ---------------------- catalog ---------------------- #

    async def get_product(self, product_id: int, session: Optional[AsyncSession] = None) -> Optional[Product]:
        async with self._use(session) as s:
            return await s.get(Product, product_id)

    async def get_variant(
        self, product_id: int, variant_id: int, session: Optional[AsyncSession] = None
    ) -> Optional[ProductVariant]:
        async with self._use(session) as s:
            stmt = select(ProductVariant).where(
                ProductVariant.id == variant_id, ProductVariant.product_id == product_id
            )
            return (await s.execute(stmt)).scalars().first()

    async def decrement_stock(self, session: AsyncSession, product_id: int, variant_id: int, quantity: int) -> bool:
        """
        stock -= quantity, never below zero. Returns False when the variant did
        not have enough stock (the row is then clamped to 0 and logged).
        """
        stmt = (
            update(ProductVariant)
            .where(
                ProductVariant.id == variant_id,
                ProductVariant.product_id == product_id,
                ProductVariant.stock >= quantity,
            )
            .values(stock=ProductVariant.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if (await session.execute(stmt)).rowcount == 1:
            return True

        clamp = (
            update(ProductVariant)
            .where(ProductVariant.id == variant_id, ProductVariant.product_id == product_id)
            .values(stock=0)
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(clamp)
        logger.warning(
            "stock_oversold",
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            variant_found=bool(res.rowcount),
        )
        return False

    async def restore_stock(self, session: AsyncSession, product_id: int, variant_id: int, quantity: int) -> None:
        stmt = (
            update(ProductVariant)
            .where(ProductVariant.id == variant_id, ProductVariant.product_id == product_id)
            .values(stock=ProductVariant.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)

    # ---------------------- writes ---------------------- #

    async def add(self, obj: Any) -> Any:
        async with self.transaction() as s:
            s.add(obj)
        return obj

    async def update_where(self, session: AsyncSession, ref: OrderRef, *criteria: Any, **values: Any) -> int:
        """
        Conditional UPDATE of one order; returns the number of rows changed
        (0 means the guard did not hold and nothing was written).
        """
        model = self.model_for(ref.kind)
        stmt = (
            update(model)
            .where(model.id == ref.id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int((await session.execute(stmt)).rowcount or 0)

    async def delete_if_clean(self, ref: OrderRef) -> bool:
        """
        Delete an order that never took money and never reached the carrier.
        Returns False when the order exists but does not qualify.
        """
        model = self.model_for(ref.kind)
        has_shipment = (
            select(Shipment.id)
            .where(Shipment.order_kind == ref.kind, Shipment.order_id == ref.id)
            .exists()
        )
        async with self.transaction() as s:
            res = await s.execute(
                delete(model)
                .where(
                    model.id == ref.id,
                    model.status.in_(_DELETABLE[ref.kind]),
                    model.payment_status.in_((PaymentStatus.PENDING, PaymentStatus.FAILED)),
                    model.gateway_payment_id.is_(None),
                    ~has_shipment,
                )
                .execution_options(synchronize_session=False)
            )
            deleted = bool(res.rowcount)
        if deleted:
            logger.info("order_deleted", order=str(ref))
        return deleted

    # ---------------------- shipments ---------------------- #

    async def get_shipment(self, ref: OrderRef, session: Optional[AsyncSession] = None) -> Optional[Shipment]:
        async with self._use(session) as s:
            stmt = select(Shipment).where(Shipment.order_kind == ref.kind, Shipment.order_id == ref.id)
            return (await s.execute(stmt.execution_options(populate_existing=True))).scalars().first()

    async def update_shipment(self, session: AsyncSession, shipment_pk: int, *criteria: Any, **values: Any) -> int:
        stmt = (
            update(Shipment)
            .where(Shipment.id == shipment_pk, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int((await session.execute(stmt)).rowcount or 0)

    async def update_shipment_for(self, session: AsyncSession, ref: OrderRef, *criteria: Any, **values: Any) -> int:
        stmt = (
            update(Shipment)
            .where(Shipment.order_kind == ref.kind, Shipment.order_id == ref.id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int((await session.execute(stmt)).rowcount or 0)


__all__ = ["OrderStore"]
