"""
Models cho đội xe: phương tiện và tài xế.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date

from sqlalchemy import String, Date, Numeric, Boolean, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, uuid_pk


class VehicleStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ON_TRIP = "ON_TRIP"
    MAINTENANCE = "MAINTENANCE"


class DriverStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ON_TRIP = "ON_TRIP"


VEHICLE_TYPES = ("TRUCK", "VAN", "TEMPO", "PICKUP", "TRAILER", "CONTAINER")


class Vehicle(TimestampMixin, Base):
    """Bảng phương tiện vận tải."""

    __tablename__ = "vehicle"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_number: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    vehicle_type: Mapped[str] = mapped_column(String(20))
    capacity_value: Mapped[float | None] = mapped_column(Numeric(10, 2), nullable=True)
    capacity_unit: Mapped[str] = mapped_column(String(5), default="TON")  # TON, KG
    engine_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    chassis_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    insurance_policy_no: Mapped[str | None] = mapped_column(String(50), nullable=True)
    insurance_validity: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[VehicleStatus] = mapped_column(
        SAEnum(VehicleStatus, native_enum=False, length=20),
        default=VehicleStatus.AVAILABLE,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Driver(TimestampMixin, Base):
    """Bảng tài xế."""

    __tablename__ = "driver"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100))
    mobile: Mapped[str] = mapped_column(String(10), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    license_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_vehicle_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    status: Mapped[DriverStatus] = mapped_column(
        SAEnum(DriverStatus, native_enum=False, length=20),
        default=DriverStatus.AVAILABLE,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
