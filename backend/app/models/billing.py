"""
Models cho hóa đơn cước (freight bill) gộp nhiều vận đơn của một khách hàng.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Text,
    Date,
    DateTime,
    Integer,
    Numeric,
    ForeignKey,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, VersionedMixin, uuid_pk


class BillStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    GENERATED = "GENERATED"
    SENT = "SENT"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class AdjustmentType(str, enum.Enum):
    DISCOUNT = "DISCOUNT"
    EXTRA_CHARGE = "EXTRA_CHARGE"
    FUEL_SURCHARGE = "FUEL_SURCHARGE"
    OTHER = "OTHER"


class FreightBill(TimestampMixin, VersionedMixin, Base):
    """Bảng hóa đơn cước."""

    __tablename__ = "freight_bill"

    id: Mapped[uuid.UUID] = uuid_pk()
    bill_number: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    bill_date: Mapped[date] = mapped_column(Date, index=True)
    billing_branch: Mapped[str] = mapped_column(String(50))

    # Bên thanh toán (snapshot)
    customer_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("customer.id"), index=True)
    party_name: Mapped[str] = mapped_column(String(100))
    party_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    party_gst_number: Mapped[str | None] = mapped_column(String(15), nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    final_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))

    status: Mapped[BillStatus] = mapped_column(
        SAEnum(BillStatus, native_enum=False, length=20),
        default=BillStatus.DRAFT,
        index=True,
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(
        String(100), unique=True, nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    lines: Mapped[list["FreightBillLine"]] = relationship(
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="FreightBillLine.position",
    )
    adjustments: Mapped[list["BillAdjustment"]] = relationship(
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillAdjustment.position",
    )

    @property
    def consignment_ids(self) -> list[uuid.UUID]:
        return [line.consignment_id for line in self.lines]


class FreightBillLine(Base):
    """Dòng hóa đơn: bản chụp một vận đơn tại thời điểm lập hóa đơn."""

    __tablename__ = "freight_bill_line"

    id: Mapped[uuid.UUID] = uuid_pk()
    bill_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("freight_bill.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    consignment_id: Mapped[uuid.UUID] = mapped_column(index=True)
    consignment_number: Mapped[str] = mapped_column(String(30))
    consignment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    destination: Mapped[str] = mapped_column(String(50))
    charged_weight: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    freight: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    grand_total: Mapped[Decimal] = mapped_column(Numeric(14, 2))

    bill: Mapped[FreightBill] = relationship(back_populates="lines")


class BillAdjustment(Base):
    """Điều chỉnh trên hóa đơn; amount luôn không âm, dấu suy ra từ type."""

    __tablename__ = "bill_adjustment"

    id: Mapped[uuid.UUID] = uuid_pk()
    bill_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("freight_bill.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    type: Mapped[AdjustmentType] = mapped_column(
        SAEnum(AdjustmentType, native_enum=False, length=20)
    )
    description: Mapped[str] = mapped_column(String(200))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))

    bill: Mapped[FreightBill] = relationship(back_populates="adjustments")

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.type == AdjustmentType.DISCOUNT else self.amount
