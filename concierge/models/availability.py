"""Availability schedule ORM model (one row per tenant and weekday)."""

import enum
import uuid

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from concierge.db.postgres import Base


class DayOfWeek(str, enum.Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"


# date.weekday(): Monday == 0
WEEKDAYS: tuple[DayOfWeek, ...] = tuple(DayOfWeek)


class AvailabilitySchedule(Base):
    __tablename__ = "availability_schedules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "day_of_week", name="uq_availability_tenant_day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id"), nullable=False
    )
    day_of_week: Mapped[DayOfWeek] = mapped_column(
        Enum(DayOfWeek, native_enum=False, length=16), nullable=False
    )
    time_slots: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
