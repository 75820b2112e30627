"""
Model vận đơn (consignment) - một lần đặt vận chuyển từ lúc nhận hàng đến khi giao.

Lưu ý:
- Thông tin người gửi/người nhận và xe/tài xế là bản chụp (snapshot) tại thời điểm
  đặt/gán, không tham chiếu sống tới bảng customer/vehicle/driver.
- grand_total luôn bằng tổng các khoản cước, được tính lại mỗi lần ghi.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Text,
    Date,
    DateTime,
    Boolean,
    Integer,
    Numeric,
    ForeignKey,
    Enum as SAEnum,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, VersionedMixin, uuid_pk


class ConsignmentStatus(str, enum.Enum):
    BOOKED = "BOOKED"
    ASSIGNED = "ASSIGNED"
    SCHEDULED = "SCHEDULED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED_UNCONFIRMED = "DELIVERED_UNCONFIRMED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({ConsignmentStatus.DELIVERED, ConsignmentStatus.CANCELLED})

# Trạng thái đang giữ xe/tài xế
ACTIVE_STATUSES = frozenset({
    ConsignmentStatus.ASSIGNED,
    ConsignmentStatus.SCHEDULED,
    ConsignmentStatus.IN_TRANSIT,
    ConsignmentStatus.DELIVERED_UNCONFIRMED,
})


class PaymentStatus(str, enum.Enum):
    UNBILLED = "UNBILLED"
    BILLED = "BILLED"
    PAID = "PAID"


CHARGE_FIELDS = (
    "freight",
    "handling_charges",
    "service_tax",
    "door_delivery",
    "other_charges",
    "risk_charges",
    "additional_service_tax",
)


@dataclass(frozen=True)
class PartySnapshot:
    """Bản chụp thông tin một bên (người gửi/người nhận) tại thời điểm đặt."""

    name: str
    address: str
    mobile: str
    email: str | None = None
    gst_number: str | None = None
    customer_id: uuid.UUID | None = None


def _money() -> Mapped[Decimal]:
    return mapped_column(Numeric(14, 2), default=Decimal("0.00"))


class Consignment(TimestampMixin, VersionedMixin, Base):
    """Bảng vận đơn."""

    __tablename__ = "consignment"

    id: Mapped[uuid.UUID] = uuid_pk()
    consignment_number: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    booking_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, index=True
    )
    booking_branch: Mapped[str] = mapped_column(String(50))

    # Người gửi
    consignor_customer_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("customer.id"), nullable=True, index=True
    )
    consignor_name: Mapped[str] = mapped_column(String(100))
    consignor_address: Mapped[str] = mapped_column(Text)
    consignor_mobile: Mapped[str] = mapped_column(String(15))
    consignor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    consignor_gst_number: Mapped[str | None] = mapped_column(String(15), nullable=True)

    # Người nhận
    consignee_customer_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("customer.id"), nullable=True, index=True
    )
    consignee_name: Mapped[str] = mapped_column(String(100))
    consignee_address: Mapped[str] = mapped_column(Text)
    consignee_mobile: Mapped[str] = mapped_column(String(15))
    consignee_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    consignee_gst_number: Mapped[str | None] = mapped_column(String(15), nullable=True)

    # Tuyến đường & hàng hóa
    from_city: Mapped[str] = mapped_column(String(50))
    to_city: Mapped[str] = mapped_column(String(50))
    description: Mapped[str] = mapped_column(Text)
    packages: Mapped[int] = mapped_column(Integer, default=1)
    actual_weight: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    charged_weight: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    declared_value: Mapped[Decimal] = _money()

    # Cước phí
    freight: Mapped[Decimal] = _money()
    handling_charges: Mapped[Decimal] = _money()  # hamali
    service_tax: Mapped[Decimal] = _money()
    door_delivery: Mapped[Decimal] = _money()
    other_charges: Mapped[Decimal] = _money()
    risk_charges: Mapped[Decimal] = _money()
    additional_service_tax: Mapped[Decimal] = _money()
    grand_total: Mapped[Decimal] = _money()

    # Gán xe / tài xế (snapshot)
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    vehicle_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    driver_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    driver_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    driver_mobile: Mapped[str | None] = mapped_column(String(15), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Lấy hàng
    pickup_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    pickup_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    pickup_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    actual_pickup_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_pickup_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    transit_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Giao hàng
    delivery_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    proof_of_delivery: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delivered_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[ConsignmentStatus] = mapped_column(
        SAEnum(ConsignmentStatus, native_enum=False, length=30),
        default=ConsignmentStatus.BOOKED,
        index=True,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Liên kết hóa đơn cước
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, native_enum=False, length=20),
        default=PaymentStatus.UNBILLED,
        index=True,
    )
    freight_bill_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("freight_bill.id"), nullable=True, index=True
    )
    billed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def consignor(self) -> PartySnapshot:
        return PartySnapshot(
            name=self.consignor_name,
            address=self.consignor_address,
            mobile=self.consignor_mobile,
            email=self.consignor_email,
            gst_number=self.consignor_gst_number,
            customer_id=self.consignor_customer_id,
        )

    @property
    def consignee(self) -> PartySnapshot:
        return PartySnapshot(
            name=self.consignee_name,
            address=self.consignee_address,
            mobile=self.consignee_mobile,
            email=self.consignee_email,
            gst_number=self.consignee_gst_number,
            customer_id=self.consignee_customer_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def belongs_to(self, customer_id: uuid.UUID) -> bool:
        return customer_id in (self.consignor_customer_id, self.consignee_customer_id)


def sum_charges(values: dict) -> Decimal:
    """Tổng các khoản cước; khoản thiếu coi như 0."""
    return sum(
        (Decimal(str(values.get(name) or 0)) for name in CHARGE_FIELDS),
        Decimal("0"),
    ).quantize(Decimal("0.01"))


@event.listens_for(Consignment, "before_insert")
@event.listens_for(Consignment, "before_update")
def _recompute_grand_total(mapper, connection, target: Consignment) -> None:
    """grand_total không bao giờ được ghi độc lập với các khoản cước."""
    target.grand_total = sum_charges({name: getattr(target, name) for name in CHARGE_FIELDS})
