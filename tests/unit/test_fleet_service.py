"""
Unit tests cho quản lý đội xe (fleet_service) và thống kê vận đơn.

Bao gồm bảo dưỡng xe, trả xe bị kẹt ON_TRIP, ngừng sử dụng xe / tài xế
và tháo xe khỏi tài xế.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from backend.app.core.error_handler import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from backend.app.models.audit import AuditLog
from backend.app.models.consignment import ConsignmentStatus, PaymentStatus
from backend.app.models.fleet import DriverStatus, Vehicle, VehicleStatus
from backend.app.services import consignment_service, fleet_service
from tests.utils.factories import (
    create_test_consignment,
    create_test_driver,
    create_test_vehicle,
)


def _assign(db, vehicle, driver):
    consignment = create_test_consignment(db)
    consignment_service.assign_vehicle(db, consignment.id, vehicle.id, driver.id)
    return consignment


# ============================================================================
# Trạng thái xe
# ============================================================================

@pytest.mark.p0
def test_maintenance_blocks_assignment_until_vehicle_returns(test_db):
    vehicle = create_test_vehicle(test_db)
    driver = create_test_driver(test_db)
    consignment = create_test_consignment(test_db)

    fleet_service.change_vehicle_status(test_db, vehicle.id, "maintenance", reason="Thay lốp")
    assert vehicle.status == VehicleStatus.MAINTENANCE

    with pytest.raises(ConflictError) as exc_info:
        consignment_service.assign_vehicle(test_db, consignment.id, vehicle.id, driver.id)
    assert exc_info.value.error_code == "VEHICLE_NOT_AVAILABLE"

    fleet_service.change_vehicle_status(test_db, vehicle.id, "AVAILABLE")
    consignment_service.assign_vehicle(test_db, consignment.id, vehicle.id, driver.id)

    assert vehicle.status == VehicleStatus.ON_TRIP
    audit = (
        test_db.query(AuditLog)
        .filter(AuditLog.entity_type == "vehicle", AuditLog.action == "CHANGE_STATUS")
        .all()
    )
    assert [log.new_values["status"] for log in audit] == ["MAINTENANCE", "AVAILABLE"]


@pytest.mark.p0
def test_on_trip_cannot_be_set_by_hand(test_db):
    vehicle = create_test_vehicle(test_db)

    with pytest.raises(InvalidTransitionError) as exc_info:
        fleet_service.change_vehicle_status(test_db, vehicle.id, "ON_TRIP")

    assert exc_info.value.details["current_status"] == "AVAILABLE"
    assert vehicle.status == VehicleStatus.AVAILABLE


@pytest.mark.p0
def test_stuck_on_trip_vehicle_can_be_returned(test_db):
    stuck = create_test_vehicle(test_db, status=VehicleStatus.ON_TRIP)

    fleet_service.change_vehicle_status(test_db, stuck.id, "AVAILABLE")

    assert stuck.status == VehicleStatus.AVAILABLE


@pytest.mark.p0
def test_vehicle_on_active_consignment_keeps_on_trip(test_db):
    vehicle = create_test_vehicle(test_db)
    driver = create_test_driver(test_db)
    consignment = _assign(test_db, vehicle, driver)

    for target in ("AVAILABLE", "MAINTENANCE"):
        with pytest.raises(ConflictError) as exc_info:
            fleet_service.change_vehicle_status(test_db, vehicle.id, target)
        assert exc_info.value.error_code == "VEHICLE_IN_USE"
        assert consignment.consignment_number in exc_info.value.message

    assert vehicle.status == VehicleStatus.ON_TRIP


@pytest.mark.p1
def test_status_change_loses_to_concurrent_assignment(test_db):
    vehicle = create_test_vehicle(test_db)
    # Một request khác vừa gán xe, object trong session vẫn AVAILABLE
    test_db.execute(
        update(Vehicle)
        .where(Vehicle.id == vehicle.id)
        .values(status=VehicleStatus.ON_TRIP)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConflictError) as exc_info:
        fleet_service.change_vehicle_status(test_db, vehicle.id, "MAINTENANCE")

    assert exc_info.value.error_code == "VEHICLE_STATUS_CHANGED"
    assert vehicle.status == VehicleStatus.ON_TRIP


@pytest.mark.p2
def test_vehicle_status_input_errors(test_db):
    vehicle = create_test_vehicle(test_db)

    with pytest.raises(ValidationError):
        fleet_service.change_vehicle_status(test_db, vehicle.id, "BROKEN")
    with pytest.raises(NotFoundError):
        fleet_service.change_vehicle_status(
            test_db, "00000000-0000-0000-0000-000000000000", "MAINTENANCE"
        )


# ============================================================================
# Sửa thông tin xe / tài xế
# ============================================================================

@pytest.mark.p1
def test_update_vehicle_fields(test_db):
    vehicle = create_test_vehicle(test_db)
    create_test_vehicle(test_db, vehicle_number="KA05MN4321")

    fleet_service.update_vehicle(
        test_db,
        vehicle.id,
        {"vehicle_number": "ka 02 cd 7788", "capacity_value": "12.5", "insurance_validity": "2027-01-31"},
    )

    assert vehicle.vehicle_number == "KA02CD7788"
    assert vehicle.capacity_value == Decimal("12.50")
    assert vehicle.insurance_validity.isoformat() == "2027-01-31"

    with pytest.raises(ConflictError) as exc_info:
        fleet_service.update_vehicle(test_db, vehicle.id, {"vehicle_number": "KA05MN4321"})
    assert exc_info.value.error_code == "DUPLICATE_NUMBER"

    with pytest.raises(ValidationError):
        fleet_service.update_vehicle(test_db, vehicle.id, {"status": "AVAILABLE"})
    with pytest.raises(ValidationError):
        fleet_service.update_vehicle(test_db, vehicle.id, {"vehicle_type": "BICYCLE"})


@pytest.mark.p1
def test_deactivate_vehicle(test_db):
    idle = create_test_vehicle(test_db)
    busy = create_test_vehicle(test_db)
    _assign(test_db, busy, create_test_driver(test_db))

    fleet_service.update_vehicle(test_db, idle.id, {"is_active": False})
    assert idle.id not in [v.id for v in fleet_service.list_vehicles(test_db)]

    with pytest.raises(ConflictError) as exc_info:
        fleet_service.update_vehicle(test_db, busy.id, {"is_active": False})
    assert exc_info.value.error_code == "VEHICLE_IN_USE"
    assert busy.is_active is True


@pytest.mark.p1
def test_update_driver(test_db):
    driver = create_test_driver(test_db)
    other = create_test_driver(test_db)

    fleet_service.update_driver(
        test_db, driver.id, {"name": "Ravi Kumar", "mobile": "9123456780", "license_number": "KA-2019-01"}
    )
    assert driver.name == "Ravi Kumar"
    assert driver.mobile == "9123456780"

    with pytest.raises(ConflictError):
        fleet_service.update_driver(test_db, driver.id, {"mobile": other.mobile})
    with pytest.raises(ValidationError):
        fleet_service.update_driver(test_db, driver.id, {"mobile": "12345"})
    with pytest.raises(ValidationError):
        fleet_service.update_driver(test_db, driver.id, {"is_active": "no"})


@pytest.mark.p1
def test_driver_on_active_consignment_cannot_be_deactivated(test_db):
    driver = create_test_driver(test_db)
    _assign(test_db, create_test_vehicle(test_db), driver)

    with pytest.raises(ConflictError) as exc_info:
        fleet_service.update_driver(test_db, driver.id, {"is_active": False})

    assert exc_info.value.error_code == "DRIVER_ON_TRIP"


# ============================================================================
# Tháo xe khỏi tài xế
# ============================================================================

@pytest.mark.p0
def test_release_stuck_driver_and_vehicle(test_db):
    vehicle = create_test_vehicle(test_db, status=VehicleStatus.ON_TRIP)
    driver = create_test_driver(test_db, status=DriverStatus.ON_TRIP, current_vehicle_id=vehicle.id)

    fleet_service.release_driver_vehicle(test_db, driver.id, username="dispatcher01")

    assert driver.status == DriverStatus.AVAILABLE
    assert driver.current_vehicle_id is None
    assert vehicle.status == VehicleStatus.AVAILABLE


@pytest.mark.p0
def test_release_refused_while_consignment_active(test_db):
    vehicle = create_test_vehicle(test_db)
    driver = create_test_driver(test_db)
    _assign(test_db, vehicle, driver)

    with pytest.raises(ConflictError) as exc_info:
        fleet_service.release_driver_vehicle(test_db, driver.id)

    assert exc_info.value.error_code == "DRIVER_ON_TRIP"
    assert driver.status == DriverStatus.ON_TRIP
    assert vehicle.status == VehicleStatus.ON_TRIP


@pytest.mark.p2
def test_release_driver_without_vehicle(test_db):
    driver = create_test_driver(test_db)

    with pytest.raises(ValidationError) as exc_info:
        fleet_service.release_driver_vehicle(test_db, driver.id)

    assert exc_info.value.error_code == "DRIVER_HAS_NO_VEHICLE"


# ============================================================================
# Thống kê vận đơn
# ============================================================================

@pytest.mark.p1
def test_consignment_statistics(test_db):
    S = ConsignmentStatus
    create_test_consignment(test_db, freight=1000)
    create_test_consignment(test_db, freight=1000)
    create_test_consignment(test_db, status=S.DELIVERED, freight=1500)
    create_test_consignment(
        test_db, status=S.DELIVERED, freight=500, payment_status=PaymentStatus.PAID
    )
    create_test_consignment(test_db, freight=9999, is_deleted=True)

    stats = consignment_service.get_consignment_statistics(test_db)

    assert stats["total_consignments"] == 4
    assert stats["total_amount"] == Decimal("4000.00")
    assert stats["by_status"] == {
        "BOOKED": {"count": 2, "amount": Decimal("2000.00")},
        "DELIVERED": {"count": 2, "amount": Decimal("2000.00")},
    }
    assert stats["by_payment_status"] == {
        "UNBILLED": {"count": 1, "amount": Decimal("1500.00")},
        "PAID": {"count": 1, "amount": Decimal("500.00")},
    }

    later = (datetime.utcnow() + timedelta(days=2)).date().isoformat()
    empty = consignment_service.get_consignment_statistics(test_db, from_date=later)
    assert empty["total_consignments"] == 0
    assert empty["by_status"] == {}
