"""Slot availability and the booking coordinator.

Availability is the tenant's weekday schedule minus the slots already
committed for that exact date. Booking is a single INSERT guarded by the
(tenant_id, date, slot) unique constraint: under any number of concurrent
attempts for the same slot exactly one commits and the rest receive
SlotConflictError. There is no read-then-write check and no internal retry.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from concierge.core.exceptions import (
    BookingTimeoutError,
    CustomerNotFoundError,
    DatabaseConnectionError,
    SlotConflictError,
    SlotNotOfferedError,
)
from concierge.models.availability import WEEKDAYS, AvailabilitySchedule
from concierge.models.booking import Booking
from concierge.models.customer import Customer
from concierge.models.tenant import Tenant
from concierge.services.mailer import Notifier, TemplateKind

logger = structlog.get_logger(__name__)


async def _offered_slots(
    session: AsyncSession, tenant_id: uuid.UUID, day: date
) -> list[str]:
    """Slots the tenant's schedule offers on ``day``, in schedule order."""
    result = await session.execute(
        select(AvailabilitySchedule).where(
            AvailabilitySchedule.tenant_id == tenant_id,
            AvailabilitySchedule.day_of_week == WEEKDAYS[day.weekday()],
        )
    )
    schedule = result.scalar_one_or_none()
    if schedule is None or not schedule.is_active:
        return []
    return list(schedule.time_slots or [])


class BookingCoordinator:
    """Lists free slots and commits bookings atomically."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._timeout_seconds = timeout_seconds

    async def list_available_slots(self, tenant_id: uuid.UUID, day: date) -> list[str]:
        """Return the free slots for ``day``.

        A tenant with no schedule (or an inactive one) for that weekday has
        no slots; this is not an error.
        """
        async with self._session_factory() as session:
            offered = await _offered_slots(session, tenant_id, day)
            if not offered:
                return []
            result = await session.execute(
                select(Booking.slot).where(
                    Booking.tenant_id == tenant_id,
                    Booking.date == day,
                )
            )
            taken = set(result.scalars().all())
        return [slot for slot in offered if slot not in taken]

    async def book(
        self,
        tenant_id: uuid.UUID,
        customer_id: uuid.UUID,
        day: date,
        slot: str,
        contact_email: str,
    ) -> Booking:
        """Commit a booking for ``slot`` on ``day`` or raise.

        The deadline covers the checks and the INSERT. The COMMIT runs
        outside it, so a booking that reached the database is never
        reported as timed out and always gets its notices.

        Raises:
            CustomerNotFoundError: customer missing or owned by another tenant.
            SlotNotOfferedError: the schedule does not offer that slot.
            SlotConflictError: another booking for the slot committed first.
            BookingTimeoutError: the checks or INSERT outlived the deadline.
            DatabaseConnectionError: any other storage failure.
        """
        async with self._session_factory() as session:
            try:
                booking, owner_email = await asyncio.wait_for(
                    self._stage_booking(session, tenant_id, customer_id, day, slot, contact_email),
                    timeout=self._timeout_seconds,
                )
                await session.commit()
            except asyncio.TimeoutError as e:
                logger.error(
                    "booking_timeout",
                    tenant_id=str(tenant_id),
                    date=day.isoformat(),
                    slot=slot,
                    timeout_seconds=self._timeout_seconds,
                )
                raise BookingTimeoutError(
                    f"Booking did not complete within {self._timeout_seconds}s"
                ) from e
            except IntegrityError as e:
                await session.rollback()
                logger.info(
                    "booking_slot_conflict",
                    tenant_id=str(tenant_id),
                    date=day.isoformat(),
                    slot=slot,
                )
                raise SlotConflictError(
                    f"Slot '{slot}' on {day.isoformat()} is already booked"
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("booking_commit_failed", error=str(e))
                raise DatabaseConnectionError(f"Booking failed: {e}") from e

        logger.info(
            "booking_committed",
            booking_id=str(booking.id),
            tenant_id=str(tenant_id),
            date=day.isoformat(),
            slot=slot,
        )

        template_data = {
            "date": day.isoformat(),
            "slot": slot,
            "email": contact_email,
            "booking_id": str(booking.id),
        }
        self._notifier.notify(
            contact_email, TemplateKind.BOOKING_CONFIRMATION, template_data
        )
        self._notifier.notify(
            owner_email, TemplateKind.BOOKING_OWNER_NOTICE, template_data
        )
        return booking

    async def _stage_booking(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        customer_id: uuid.UUID,
        day: date,
        slot: str,
        contact_email: str,
    ) -> tuple[Booking, str | None]:
        """Run the checks and flush the INSERT; the caller commits."""
        customer = await session.get(Customer, customer_id)
        if customer is None or customer.tenant_id != tenant_id:
            raise CustomerNotFoundError()
        if slot not in await _offered_slots(session, tenant_id, day):
            raise SlotNotOfferedError(f"Slot '{slot}' is not offered on {day.isoformat()}")
        tenant = await session.get(Tenant, tenant_id)
        owner_email = tenant.owner_email if tenant else None

        booking = Booking(
            tenant_id=tenant_id,
            customer_id=customer_id,
            date=day,
            slot=slot,
            email=contact_email,
        )
        session.add(booking)
        await session.flush()
        return booking, owner_email

    async def list_bookings(
        self, tenant_id: uuid.UUID, day: date | None = None
    ) -> list[Booking]:
        """Bookings for the operator dashboard, by date then creation time."""
        stmt = select(Booking).where(Booking.tenant_id == tenant_id)
        if day is not None:
            stmt = stmt.where(Booking.date == day)
        stmt = stmt.order_by(Booking.date.asc(), Booking.created_at.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
