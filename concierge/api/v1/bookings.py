"""Appointment slots, bookings and product reservation endpoints."""

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.api.deps import (
    get_booking_coordinator,
    get_current_tenant,
    get_db,
    get_reservation_service,
    load_public_tenant,
)
from concierge.models.tenant import Tenant
from concierge.schemas.booking import (
    BookingCreateRequest,
    BookingResponse,
    ReservationCreateRequest,
    ReservationResponse,
    SlotsResponse,
)
from concierge.services.booking import BookingCoordinator
from concierge.services.reservations import ReservationService

router = APIRouter(tags=["bookings"])


@router.get("/bookings/slots", response_model=SlotsResponse)
async def available_slots(
    tenant_id: uuid.UUID = Query(...),
    day: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
) -> SlotsResponse:
    """Free slots for a tenant on a date (empty when nothing is scheduled)."""
    tenant = await load_public_tenant(db, tenant_id)
    slots = await coordinator.list_available_slots(tenant.id, day)
    return SlotsResponse(tenant_id=tenant.id, date=day, slots=slots)


@router.post("/bookings", response_model=BookingResponse)
async def create_booking(
    body: BookingCreateRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
) -> BookingResponse:
    """Book a slot. 409 when someone else got it first."""
    tenant = await load_public_tenant(db, body.tenant_id)
    booking = await coordinator.book(
        tenant.id, body.customer_id, body.date, body.slot, body.email
    )
    return BookingResponse.model_validate(booking)


@router.get("/bookings", response_model=list[BookingResponse])
async def list_bookings(
    day: date | None = Query(None, alias="date"),
    tenant: Tenant = Depends(get_current_tenant),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
) -> list[BookingResponse]:
    """Operator view of the tenant's bookings."""
    bookings = await coordinator.list_bookings(tenant.id, day)
    return [BookingResponse.model_validate(b) for b in bookings]


@router.post("/reservations", response_model=ReservationResponse)
async def create_reservation(
    body: ReservationCreateRequest,
    db: AsyncSession = Depends(get_db),
    reservations: ReservationService = Depends(get_reservation_service),
) -> ReservationResponse:
    """Hold product stock for a customer."""
    tenant = await load_public_tenant(db, body.tenant_id)
    reservation = await reservations.reserve(
        tenant.id, body.customer_id, body.product_id, body.quantity, notes=body.notes
    )
    return ReservationResponse.model_validate(reservation)
