"""
Service quản lý đội xe: phương tiện và tài xế.

Bao gồm:
- Thêm / sửa thông tin xe và tài xế, ngừng sử dụng (is_active)
- Đổi trạng thái xe (AVAILABLE <-> MAINTENANCE, trả xe ON_TRIP bị kẹt)
- Tháo xe khỏi tài xế khi không còn vận đơn nào đang chạy

ON_TRIP chỉ được đặt bởi thao tác gán xe của vận đơn. Mọi thay đổi trạng thái là
UPDATE có điều kiện trên trạng thái hiện tại để không đè lên một lần gán xe đồng thời.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.audit_service import create_audit_log
from ..core.error_handler import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models.consignment import ACTIVE_STATUSES, Consignment
from ..models.fleet import Driver, DriverStatus, Vehicle, VehicleStatus, VEHICLE_TYPES
from .validation import (
    DRIVER_MOBILE_RE,
    VEHICLE_NUMBER_RE,
    optional_text,
    parse_date,
    parse_decimal,
    parse_email,
    parse_uuid,
    require_text,
)

logger = logging.getLogger(__name__)

CAPACITY_UNITS = ("TON", "KG")

VEHICLE_EDITABLE_FIELDS = frozenset({
    "vehicle_number",
    "vehicle_type",
    "capacity_value",
    "capacity_unit",
    "engine_number",
    "chassis_number",
    "insurance_policy_no",
    "insurance_validity",
    "is_active",
})

DRIVER_EDITABLE_FIELDS = frozenset({"name", "mobile", "email", "license_number", "is_active"})


# ---------------------------------------------------------------------------
# Parse dữ liệu đầu vào
# ---------------------------------------------------------------------------


def parse_vehicle_number(value: Any) -> str:
    """Chuẩn hóa biển số (bỏ khoảng trắng, viết hoa) và kiểm tra định dạng."""
    number = require_text(value, "vehicle_number").upper().replace(" ", "")
    if not VEHICLE_NUMBER_RE.match(number):
        raise ValidationError("Biển số không hợp lệ (ví dụ: KA01AB1234)", field="vehicle_number")
    return number


def parse_vehicle_type(value: Any) -> str:
    vehicle_type = require_text(value, "vehicle_type").upper()
    if vehicle_type not in VEHICLE_TYPES:
        raise ValidationError(
            f"vehicle_type phải là một trong {', '.join(VEHICLE_TYPES)}", field="vehicle_type"
        )
    return vehicle_type


def parse_capacity_unit(value: Any) -> str:
    unit = str(value or "TON").upper()
    if unit not in CAPACITY_UNITS:
        raise ValidationError("capacity_unit phải là TON hoặc KG", field="capacity_unit")
    return unit


def parse_driver_mobile(value: Any) -> str:
    mobile = require_text(value, "mobile")
    if not DRIVER_MOBILE_RE.match(mobile):
        raise ValidationError("Số điện thoại tài xế phải gồm 10 chữ số, bắt đầu 6-9", field="mobile")
    return mobile


def _parse_flag(value: Any, field: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field} phải là true hoặc false", field=field)
    return value


def _plain(value: Any) -> Any:
    """Giá trị ghi được vào audit log (JSON)."""
    if isinstance(value, (date, Decimal)):
        return str(value)
    if isinstance(value, (VehicleStatus, DriverStatus)):
        return value.value
    if value is not None and not isinstance(value, (str, int, float, bool)):
        return str(value)
    return value


def _vehicle_values(changes: dict[str, Any]) -> dict[str, Any]:
    parsers = {
        "vehicle_number": parse_vehicle_number,
        "vehicle_type": parse_vehicle_type,
        "capacity_value": lambda v: parse_decimal(v, "capacity_value", allow_none=True),
        "capacity_unit": parse_capacity_unit,
        "engine_number": optional_text,
        "chassis_number": optional_text,
        "insurance_policy_no": optional_text,
        "insurance_validity": lambda v: parse_date(v, "insurance_validity") if v else None,
        "is_active": lambda v: _parse_flag(v, "is_active"),
    }
    return {name: parsers[name](value) for name, value in changes.items()}


def _driver_values(changes: dict[str, Any]) -> dict[str, Any]:
    parsers = {
        "name": lambda v: require_text(v, "name", max_length=100),
        "mobile": parse_driver_mobile,
        "email": lambda v: parse_email(v, "email"),
        "license_number": optional_text,
        "is_active": lambda v: _parse_flag(v, "is_active"),
    }
    return {name: parsers[name](value) for name, value in changes.items()}


def _reject_unknown(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValidationError(
            f"Không được sửa các trường: {', '.join(unknown)}", field=unknown[0]
        )


# ---------------------------------------------------------------------------
# Tra cứu
# ---------------------------------------------------------------------------


def get_vehicle(db: Session, vehicle_id: Any) -> Vehicle:
    vehicle = db.get(Vehicle, parse_uuid(vehicle_id, "vehicle_id"))
    if not vehicle:
        raise NotFoundError(f"Xe không tồn tại: {vehicle_id}", error_code="VEHICLE_NOT_FOUND")
    return vehicle


def get_driver(db: Session, driver_id: Any) -> Driver:
    driver = db.get(Driver, parse_uuid(driver_id, "driver_id"))
    if not driver:
        raise NotFoundError(f"Tài xế không tồn tại: {driver_id}", error_code="DRIVER_NOT_FOUND")
    return driver


def list_vehicles(db: Session, status: str | None = None) -> list[Vehicle]:
    """Xe đang sử dụng, lọc theo trạng thái (AVAILABLE / ON_TRIP / MAINTENANCE)."""
    query = db.query(Vehicle).filter(Vehicle.is_active.is_(True))
    if status:
        try:
            query = query.filter(Vehicle.status == VehicleStatus(status.upper()))
        except ValueError:
            raise ValidationError(f"Trạng thái không hợp lệ: {status}", field="status")
    return query.order_by(Vehicle.vehicle_number).all()


def list_drivers(db: Session, status: str | None = None) -> list[Driver]:
    query = db.query(Driver).filter(Driver.is_active.is_(True))
    if status:
        try:
            query = query.filter(Driver.status == DriverStatus(status.upper()))
        except ValueError:
            raise ValidationError(f"Trạng thái không hợp lệ: {status}", field="status")
    return query.order_by(Driver.name).all()


def _active_consignment(db: Session, column: Any, entity_id: Any) -> Consignment | None:
    """Vận đơn đang chạy (ASSIGNED..DELIVERED_UNCONFIRMED) còn dùng xe / tài xế này."""
    return (
        db.query(Consignment)
        .filter(
            column == entity_id,
            Consignment.status.in_(ACTIVE_STATUSES),
            Consignment.is_deleted.is_(False),
        )
        .order_by(Consignment.booking_date)
        .first()
    )


def _audit(db, entity_type, entity_id, action, old_values, new_values, username, description):
    create_audit_log(
        db,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        username=username,
        old_values=old_values,
        new_values=new_values,
        description=description,
    )


# ---------------------------------------------------------------------------
# Xe
# ---------------------------------------------------------------------------


def create_vehicle(db: Session, data: dict[str, Any], username: str | None = None) -> Vehicle:
    """Thêm xe mới ở trạng thái AVAILABLE."""
    number = parse_vehicle_number(data.get("vehicle_number"))
    values = _vehicle_values({
        "vehicle_type": data.get("vehicle_type"),
        "capacity_value": data.get("capacity_value"),
        "capacity_unit": data.get("capacity_unit"),
        **{
            name: data.get(name)
            for name in ("engine_number", "chassis_number", "insurance_policy_no", "insurance_validity")
        },
    })

    if db.query(Vehicle.id).filter(Vehicle.vehicle_number == number).first():
        raise ConflictError(f"Biển số đã tồn tại: {number}", error_code="DUPLICATE_NUMBER")

    vehicle = Vehicle(vehicle_number=number, status=VehicleStatus.AVAILABLE, **values)
    db.add(vehicle)
    db.flush()
    _audit(db, "vehicle", vehicle.id, "CREATE", None, {"vehicle_number": number}, username,
           f"Thêm xe {number}")
    return vehicle


def update_vehicle(
    db: Session, vehicle_id: Any, changes: dict[str, Any], username: str | None = None
) -> Vehicle:
    """
    Sửa thông tin xe.

    Raises:
        ValidationError: trường không được sửa hoặc dữ liệu sai
        ConflictError: trùng biển số, hoặc ngừng sử dụng xe đang chạy vận đơn
    """
    _reject_unknown(changes, VEHICLE_EDITABLE_FIELDS)
    vehicle = get_vehicle(db, vehicle_id)
    values = _vehicle_values(changes)

    number = values.get("vehicle_number")
    if number and number != vehicle.vehicle_number:
        if db.query(Vehicle.id).filter(Vehicle.vehicle_number == number).first():
            raise ConflictError(f"Biển số đã tồn tại: {number}", error_code="DUPLICATE_NUMBER")

    if values.get("is_active") is False:
        busy = _active_consignment(db, Consignment.vehicle_id, vehicle.id)
        if busy:
            raise ConflictError(
                f"Xe {vehicle.vehicle_number} đang chạy vận đơn {busy.consignment_number}",
                error_code="VEHICLE_IN_USE",
            )

    old_values = {name: _plain(getattr(vehicle, name)) for name in values}
    for name, value in values.items():
        setattr(vehicle, name, value)
    try:
        db.flush()
    except IntegrityError as e:
        raise ConflictError(f"Biển số đã tồn tại: {number}", error_code="DUPLICATE_NUMBER") from e

    _audit(
        db, "vehicle", vehicle.id, "UPDATE", old_values,
        {name: _plain(value) for name, value in values.items()}, username,
        f"Sửa thông tin xe {vehicle.vehicle_number}",
    )
    return vehicle


def change_vehicle_status(
    db: Session,
    vehicle_id: Any,
    status: Any,
    reason: str | None = None,
    username: str | None = None,
) -> Vehicle:
    """
    Đổi trạng thái xe bằng tay.

    - AVAILABLE <-> MAINTENANCE
    - ON_TRIP -> AVAILABLE / MAINTENANCE chỉ khi không còn vận đơn đang chạy dùng xe
      (xe bị kẹt ON_TRIP do lần trả xe trước không thành)
    - Không đặt ON_TRIP bằng tay, trạng thái này chỉ do thao tác gán xe đặt
    """
    try:
        target = VehicleStatus(str(status).upper())
    except ValueError:
        raise ValidationError(f"Trạng thái xe không hợp lệ: {status}", field="status")

    vehicle = get_vehicle(db, vehicle_id)
    current = vehicle.status
    if target == current:
        return vehicle
    if target == VehicleStatus.ON_TRIP:
        raise InvalidTransitionError(
            "Chỉ thao tác gán xe cho vận đơn mới được đặt ON_TRIP",
            current_status=current.value,
        )
    if current == VehicleStatus.ON_TRIP:
        busy = _active_consignment(db, Consignment.vehicle_id, vehicle.id)
        if busy:
            raise ConflictError(
                f"Xe {vehicle.vehicle_number} đang chạy vận đơn {busy.consignment_number}",
                error_code="VEHICLE_IN_USE",
            )

    result = db.execute(
        update(Vehicle)
        .where(Vehicle.id == vehicle.id, Vehicle.status == current)
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(vehicle)
        raise ConflictError(
            f"Xe {vehicle.vehicle_number} vừa đổi trạng thái ({vehicle.status.value}), vui lòng tải lại",
            error_code="VEHICLE_STATUS_CHANGED",
        )
    db.refresh(vehicle)

    _audit(
        db, "vehicle", vehicle.id, "CHANGE_STATUS", {"status": current.value},
        {"status": target.value, "reason": optional_text(reason)}, username,
        f"Xe {vehicle.vehicle_number}: {current.value} -> {target.value}",
    )
    logger.info("Xe %s: %s -> %s", vehicle.vehicle_number, current.value, target.value)
    return vehicle


# ---------------------------------------------------------------------------
# Tài xế
# ---------------------------------------------------------------------------


def create_driver(db: Session, data: dict[str, Any], username: str | None = None) -> Driver:
    """Thêm tài xế mới ở trạng thái AVAILABLE."""
    values = _driver_values({
        "name": data.get("name"),
        "mobile": data.get("mobile"),
        "email": data.get("email"),
        "license_number": data.get("license_number"),
    })
    if db.query(Driver.id).filter(Driver.mobile == values["mobile"]).first():
        raise ConflictError(
            f"Số điện thoại đã tồn tại: {values['mobile']}", error_code="DUPLICATE_NUMBER"
        )

    driver = Driver(status=DriverStatus.AVAILABLE, **values)
    db.add(driver)
    db.flush()
    _audit(db, "driver", driver.id, "CREATE", None, {"name": driver.name}, username,
           f"Thêm tài xế {driver.name}")
    return driver


def update_driver(
    db: Session, driver_id: Any, changes: dict[str, Any], username: str | None = None
) -> Driver:
    """Sửa thông tin tài xế; không ngừng sử dụng tài xế đang chạy vận đơn."""
    _reject_unknown(changes, DRIVER_EDITABLE_FIELDS)
    driver = get_driver(db, driver_id)
    values = _driver_values(changes)

    mobile = values.get("mobile")
    if mobile and mobile != driver.mobile:
        if db.query(Driver.id).filter(Driver.mobile == mobile).first():
            raise ConflictError(f"Số điện thoại đã tồn tại: {mobile}", error_code="DUPLICATE_NUMBER")

    if values.get("is_active") is False:
        busy = _active_consignment(db, Consignment.driver_id, driver.id)
        if busy:
            raise ConflictError(
                f"Tài xế {driver.name} đang chạy vận đơn {busy.consignment_number}",
                error_code="DRIVER_ON_TRIP",
            )

    old_values = {name: _plain(getattr(driver, name)) for name in values}
    for name, value in values.items():
        setattr(driver, name, value)
    try:
        db.flush()
    except IntegrityError as e:
        raise ConflictError(f"Số điện thoại đã tồn tại: {mobile}", error_code="DUPLICATE_NUMBER") from e

    _audit(
        db, "driver", driver.id, "UPDATE", old_values,
        {name: _plain(value) for name, value in values.items()}, username,
        f"Sửa thông tin tài xế {driver.name}",
    )
    return driver


def release_driver_vehicle(db: Session, driver_id: Any, username: str | None = None) -> Driver:
    """
    Tháo xe khỏi tài xế: tài xế về AVAILABLE, xe ON_TRIP về AVAILABLE.

    Raises:
        ValidationError: tài xế không giữ xe nào và đang AVAILABLE
        ConflictError: tài xế còn vận đơn đang chạy, hoặc vừa bị người khác cập nhật
    """
    driver = get_driver(db, driver_id)
    if driver.current_vehicle_id is None and driver.status == DriverStatus.AVAILABLE:
        raise ValidationError(
            f"Tài xế {driver.name} không giữ xe nào", error_code="DRIVER_HAS_NO_VEHICLE"
        )

    busy = _active_consignment(db, Consignment.driver_id, driver.id)
    if busy:
        raise ConflictError(
            f"Tài xế {driver.name} đang chạy vận đơn {busy.consignment_number}",
            error_code="DRIVER_ON_TRIP",
        )

    vehicle_id = driver.current_vehicle_id
    old_status = driver.status
    vehicle_released = False

    with db.begin_nested():
        result = db.execute(
            update(Driver)
            .where(Driver.id == driver.id, Driver.status == old_status)
            .values(status=DriverStatus.AVAILABLE, current_vehicle_id=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Tài xế {driver.name} vừa bị người khác cập nhật, vui lòng tải lại",
                error_code="DRIVER_STATUS_CHANGED",
            )

        if vehicle_id and not _active_consignment(db, Consignment.vehicle_id, vehicle_id):
            result = db.execute(
                update(Vehicle)
                .where(Vehicle.id == vehicle_id, Vehicle.status == VehicleStatus.ON_TRIP)
                .values(status=VehicleStatus.AVAILABLE)
                .execution_options(synchronize_session=False)
            )
            vehicle_released = result.rowcount == 1

    db.refresh(driver)
    vehicle = db.get(Vehicle, vehicle_id) if vehicle_id else None
    if vehicle is not None:
        db.refresh(vehicle)

    _audit(
        db, "driver", driver.id, "RELEASE_VEHICLE",
        {"status": old_status.value, "current_vehicle_id": _plain(vehicle_id)},
        {"status": driver.status.value, "vehicle_released": vehicle_released}, username,
        f"Tháo xe khỏi tài xế {driver.name}",
    )
    logger.info("Tháo xe khỏi tài xế %s (trả xe: %s)", driver.name, vehicle_released)
    return driver
