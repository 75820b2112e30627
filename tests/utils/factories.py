"""
Factory functions để tạo test data nhanh chóng.

Các factory này giúp tạo test data với default values hợp lý,
giảm boilerplate code trong tests.
"""

from __future__ import annotations

import itertools
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from backend.app.models.consignment import Consignment, ConsignmentStatus, PaymentStatus
from backend.app.models.customer import Customer
from backend.app.models.fleet import Driver, DriverStatus, Vehicle, VehicleStatus

_sequence = itertools.count(1)


# ============================================================================
# Customer Factory
# ============================================================================

def create_test_customer(
    db: Session,
    code: str | None = None,
    name: str | None = None,
    email: str | None = None,
    **kwargs
) -> Customer:
    """Tạo test customer."""
    n = next(_sequence)
    customer = Customer(
        code=code or f"KH{uuid.uuid4().hex[:6].upper()}",
        name=name or f"Khách hàng Test {n}",
        address=kwargs.pop("address", f"{n} MG Road, Bengaluru"),
        city=kwargs.pop("city", "Bengaluru"),
        mobile=kwargs.pop("mobile", f"98{n:08d}"),
        email=email,
        **kwargs
    )
    db.add(customer)
    db.flush()
    return customer


# ============================================================================
# Fleet Factories
# ============================================================================

def create_test_vehicle(
    db: Session,
    vehicle_number: str | None = None,
    status: VehicleStatus = VehicleStatus.AVAILABLE,
    **kwargs
) -> Vehicle:
    """Tạo test vehicle (mặc định AVAILABLE)."""
    vehicle = Vehicle(
        vehicle_number=vehicle_number or f"KA01AB{next(_sequence) % 10000:04d}",
        vehicle_type=kwargs.pop("vehicle_type", "TRUCK"),
        capacity_value=kwargs.pop("capacity_value", Decimal("10.00")),
        capacity_unit=kwargs.pop("capacity_unit", "TON"),
        status=status,
        **kwargs
    )
    db.add(vehicle)
    db.flush()
    return vehicle


def create_test_driver(
    db: Session,
    name: str | None = None,
    status: DriverStatus = DriverStatus.AVAILABLE,
    **kwargs
) -> Driver:
    """Tạo test driver (mặc định AVAILABLE)."""
    n = next(_sequence)
    driver = Driver(
        name=name or f"Tài xế Test {n}",
        mobile=kwargs.pop("mobile", f"9{n:09d}"),
        status=status,
        **kwargs
    )
    db.add(driver)
    db.flush()
    return driver


# ============================================================================
# Consignment Factory
# ============================================================================

def create_test_consignment(
    db: Session,
    consignor: Customer | None = None,
    consignee: Customer | None = None,
    status: ConsignmentStatus = ConsignmentStatus.BOOKED,
    freight: Decimal | int | str = Decimal("1000.00"),
    actual_weight: Decimal | int | str = Decimal("100.00"),
    charged_weight: Decimal | int | str | None = None,
    booking_date: datetime | None = None,
    payment_status: PaymentStatus = PaymentStatus.UNBILLED,
    **kwargs
) -> Consignment:
    """Tạo test consignment ở trạng thái bất kỳ, ghi thẳng vào DB (không qua service)."""
    n = next(_sequence)
    actual = Decimal(str(actual_weight))
    charged = Decimal(str(charged_weight)) if charged_weight is not None else actual

    consignment = Consignment(
        consignment_number=kwargs.pop("consignment_number", f"TST-{n:05d}"),
        booking_date=booking_date or datetime.utcnow(),
        booking_branch=kwargs.pop("booking_branch", "Bengaluru"),
        consignor_customer_id=consignor.id if consignor else None,
        consignor_name=consignor.name if consignor else f"Người gửi {n}",
        consignor_address=consignor.address if consignor else "1 Residency Road, Bengaluru",
        consignor_mobile=consignor.mobile if consignor else "9876500001",
        consignor_email=kwargs.pop("consignor_email", consignor.email if consignor else None),
        consignee_customer_id=consignee.id if consignee else None,
        consignee_name=consignee.name if consignee else f"Người nhận {n}",
        consignee_address=consignee.address if consignee else "5 Anna Salai, Chennai",
        consignee_mobile=consignee.mobile if consignee else "9876500002",
        from_city=kwargs.pop("from_city", "Bengaluru"),
        to_city=kwargs.pop("to_city", "Chennai"),
        description=kwargs.pop("description", "Hàng tổng hợp"),
        packages=kwargs.pop("packages", 1),
        actual_weight=actual,
        charged_weight=charged,
        freight=Decimal(str(freight)),
        status=status,
        status_changed_at=datetime.utcnow(),
        payment_status=payment_status,
        **kwargs
    )
    db.add(consignment)
    db.flush()
    return consignment
