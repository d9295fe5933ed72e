"""Integration tests for inventory holds."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from concierge.core.exceptions import (
    InsufficientStockError,
    ProductNotFoundError,
    ReservationNotFoundError,
)
from concierge.models.product import Product
from concierge.models.reservation import Reservation, ReservationStatus


async def _stock(harness) -> int:
    async with harness.session_factory() as session:
        product = await session.get(Product, harness.product.id)
        return product.stock


async def _status(harness, reservation_id: uuid.UUID) -> ReservationStatus:
    async with harness.session_factory() as session:
        return (await session.get(Reservation, reservation_id)).status


class TestReserve:
    @pytest.mark.asyncio
    async def test_snapshots_sale_price_and_takes_stock(self, harness) -> None:
        reservation = await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 2, notes="gift"
        )

        assert reservation.status == ReservationStatus.PENDING
        assert reservation.unit_price == Decimal("30.00")
        assert reservation.total_price == Decimal("60.00")
        assert reservation.expires_at == harness.clock() + timedelta(days=7)
        assert await _stock(harness) == 3

    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_stock_alone(self, harness) -> None:
        with pytest.raises(InsufficientStockError):
            await harness.reservations.reserve(
                harness.tenant.id, harness.customer.id, harness.product.id, 6
            )
        assert await _stock(harness) == 5

    @pytest.mark.asyncio
    async def test_concurrent_holds_never_oversell(self, harness) -> None:
        results = await asyncio.gather(
            *(
                harness.reservations.reserve(
                    harness.tenant.id, harness.customer.id, harness.product.id, 1
                )
                for _ in range(8)
            ),
            return_exceptions=True,
        )

        held = [r for r in results if isinstance(r, Reservation)]
        refused = [r for r in results if isinstance(r, InsufficientStockError)]
        assert len(held) == 5
        assert len(refused) == 3
        assert await _stock(harness) == 0

    @pytest.mark.asyncio
    async def test_zero_quantity_rejected(self, harness) -> None:
        with pytest.raises(ValueError):
            await harness.reservations.reserve(
                harness.tenant.id, harness.customer.id, harness.product.id, 0
            )

    @pytest.mark.asyncio
    async def test_other_tenants_product_not_found(self, harness) -> None:
        with pytest.raises(ProductNotFoundError):
            await harness.reservations.reserve(
                harness.seed.other_tenant.id, harness.customer.id, harness.product.id, 1
            )


class TestHoldLifecycle:
    @pytest.mark.asyncio
    async def test_lapsed_hold_returns_stock(self, harness) -> None:
        reservation = await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 5
        )
        assert await _stock(harness) == 0

        harness.clock.advance(days=8)
        released = await harness.reservations.release_lapsed_holds(harness.product.id)

        assert released == 5
        assert await _stock(harness) == 5
        assert await _status(harness, reservation.id) == ReservationStatus.EXPIRED
        assert await harness.reservations.release_lapsed_holds() == 0

    @pytest.mark.asyncio
    async def test_reserve_releases_lapsed_holds_first(self, harness) -> None:
        await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 5
        )
        harness.clock.advance(days=8)

        fresh = await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 4
        )
        assert fresh.status == ReservationStatus.PENDING
        assert await _stock(harness) == 1

    @pytest.mark.asyncio
    async def test_confirm_pending_hold(self, harness) -> None:
        reservation = await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 1
        )
        assert [r.id for r in await harness.reservations.pending_for_customer(
            harness.customer.id
        )] == [reservation.id]

        confirmed = await harness.reservations.confirm([reservation.id], harness.customer.id)

        assert [r.status for r in confirmed] == [ReservationStatus.CONFIRMED]
        assert await harness.reservations.pending_for_customer(harness.customer.id) == []

    @pytest.mark.asyncio
    async def test_confirm_lapsed_hold_fails(self, harness) -> None:
        reservation = await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 1
        )
        harness.clock.advance(days=8)
        with pytest.raises(ReservationNotFoundError):
            await harness.reservations.confirm([reservation.id], harness.customer.id)

    @pytest.mark.asyncio
    async def test_confirm_other_customers_hold_fails(self, harness) -> None:
        reservation = await harness.reservations.reserve(
            harness.tenant.id, harness.customer.id, harness.product.id, 1
        )
        with pytest.raises(ReservationNotFoundError):
            await harness.reservations.confirm([reservation.id], uuid.uuid4())


class TestCatalog:
    @pytest.mark.asyncio
    async def test_find_products_case_insensitive(self, harness) -> None:
        found = await harness.reservations.find_products(harness.tenant.id, "whitening")
        assert [p.name for p in found] == ["Whitening Kit"]
        assert await harness.reservations.find_products(harness.tenant.id, "floss") == []
        assert await harness.reservations.find_products(harness.seed.other_tenant.id, "kit") == []

    @pytest.mark.asyncio
    async def test_active_product_names(self, harness) -> None:
        assert await harness.reservations.active_product_names(harness.tenant.id) == [
            "Whitening Kit"
        ]
