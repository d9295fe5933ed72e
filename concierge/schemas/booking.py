"""Booking and reservation schemas."""

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from concierge.models.reservation import ReservationStatus


class SlotsResponse(BaseModel):
    tenant_id: uuid.UUID
    date: date
    slots: list[str]


class BookingCreateRequest(BaseModel):
    """POST /v1/bookings request body."""

    tenant_id: uuid.UUID
    customer_id: uuid.UUID
    date: date
    slot: str = Field(..., min_length=1)
    email: EmailStr


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    customer_id: uuid.UUID
    date: date
    slot: str
    email: str
    created_at: datetime


class ReservationCreateRequest(BaseModel):
    """POST /v1/reservations request body."""

    tenant_id: uuid.UUID
    customer_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int = Field(1, ge=1)
    notes: str | None = None


class ReservationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    customer_id: uuid.UUID
    quantity: int
    status: ReservationStatus
    unit_price: Decimal
    total_price: Decimal
    expires_at: datetime
