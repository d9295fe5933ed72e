"""Inventory reservation holds.

A hold takes stock out of the catalog the moment it is created, with a
single conditional UPDATE, so stock can never go negative no matter how
many holds race. Unconfirmed holds lapse after ``hold_days``; lapsed holds
are released lazily whenever the product is touched.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concierge.core.clock import Clock, utcnow
from concierge.core.exceptions import (
    DatabaseConnectionError,
    InsufficientStockError,
    ProductNotFoundError,
    ReservationNotFoundError,
)
from concierge.models.product import Product
from concierge.models.reservation import Reservation, ReservationStatus

logger = structlog.get_logger(__name__)


class ReservationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hold_days: int = 7,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._hold = timedelta(days=hold_days)
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Catalog lookups
    # ------------------------------------------------------------------ #

    async def find_products(self, tenant_id: uuid.UUID, name: str) -> list[Product]:
        """Active products whose name contains ``name`` (case-insensitive)."""
        needle = name.strip().lower()
        if not needle:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product)
                .where(
                    Product.tenant_id == tenant_id,
                    Product.active.is_(True),
                    func.lower(Product.name).contains(needle),
                )
                .order_by(Product.name.asc())
            )
            return list(result.scalars().all())

    async def active_product_names(self, tenant_id: uuid.UUID) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product.name)
                .where(Product.tenant_id == tenant_id, Product.active.is_(True))
                .order_by(Product.name.asc())
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------ #
    # Holds
    # ------------------------------------------------------------------ #

    async def reserve(
        self,
        tenant_id: uuid.UUID,
        customer_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity: int,
        notes: str | None = None,
    ) -> Reservation:
        """Hold ``quantity`` units of a product for a customer.

        Raises:
            ProductNotFoundError: unknown, inactive, or another tenant's product.
            InsufficientStockError: fewer than ``quantity`` units left.
        """
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        async with self._session_factory() as session:
            try:
                product = await session.get(Product, product_id)
                if product is None or product.tenant_id != tenant_id or not product.active:
                    raise ProductNotFoundError()

                await self._release_lapsed(session, product_id)

                result = await session.execute(
                    update(Product)
                    .where(Product.id == product_id, Product.stock >= quantity)
                    .values(stock=Product.stock - quantity)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    logger.info(
                        "reservation_insufficient_stock",
                        product_id=str(product_id),
                        quantity=quantity,
                    )
                    raise InsufficientStockError()

                unit_price = Decimal(
                    product.sale_price if product.sale_price is not None else product.price
                )
                reservation = Reservation(
                    product_id=product_id,
                    customer_id=customer_id,
                    quantity=quantity,
                    status=ReservationStatus.PENDING,
                    unit_price=unit_price,
                    total_price=unit_price * quantity,
                    notes=notes,
                    expires_at=self._clock() + self._hold,
                )
                session.add(reservation)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("reservation_failed", error=str(e))
                raise DatabaseConnectionError(f"Reservation failed: {e}") from e

        logger.info(
            "reservation_created",
            reservation_id=str(reservation.id),
            product_id=str(product_id),
            quantity=quantity,
        )
        return reservation

    async def confirm(
        self,
        reservation_ids: list[uuid.UUID],
        customer_id: uuid.UUID,
        booking_id: uuid.UUID | None = None,
    ) -> list[Reservation]:
        """Confirm the customer's unexpired pending holds among ``reservation_ids``."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Reservation).where(
                    Reservation.id.in_(reservation_ids),
                    Reservation.customer_id == customer_id,
                    Reservation.status == ReservationStatus.PENDING,
                    Reservation.expires_at > now,
                )
            )
            reservations = list(result.scalars().all())
            if not reservations:
                raise ReservationNotFoundError()
            for reservation in reservations:
                reservation.status = ReservationStatus.CONFIRMED
                reservation.booking_id = booking_id
            await session.commit()
        logger.info(
            "reservations_confirmed",
            count=len(reservations),
            booking_id=str(booking_id) if booking_id else None,
        )
        return reservations

    async def pending_for_customer(self, customer_id: uuid.UUID) -> list[Reservation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Reservation)
                .where(
                    Reservation.customer_id == customer_id,
                    Reservation.status == ReservationStatus.PENDING,
                    Reservation.expires_at > self._clock(),
                )
                .order_by(Reservation.created_at.desc())
            )
            return list(result.scalars().all())

    async def release_lapsed_holds(self, product_id: uuid.UUID | None = None) -> int:
        """Expire lapsed holds and return their stock. Returns units released."""
        async with self._session_factory() as session:
            released = await self._release_lapsed(session, product_id)
            await session.commit()
        return released

    async def _release_lapsed(
        self, session: AsyncSession, product_id: uuid.UUID | None
    ) -> int:
        stmt = select(Reservation).where(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.expires_at <= self._clock(),
        )
        if product_id is not None:
            stmt = stmt.where(Reservation.product_id == product_id)
        lapsed = (await session.execute(stmt)).scalars().all()

        released = 0
        for hold in lapsed:
            # Conditional so a hold released concurrently is not restocked twice.
            result = await session.execute(
                update(Reservation)
                .where(
                    Reservation.id == hold.id,
                    Reservation.status == ReservationStatus.PENDING,
                )
                .values(status=ReservationStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                continue
            await session.execute(
                update(Product)
                .where(Product.id == hold.product_id)
                .values(stock=Product.stock + hold.quantity)
                .execution_options(synchronize_session=False)
            )
            released += hold.quantity
        if released:
            logger.info(
                "reservation_holds_released",
                product_id=str(product_id) if product_id else None,
                units=released,
            )
        return released
