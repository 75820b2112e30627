"""
Service xử lý vòng đời vận đơn (consignment lifecycle).

Bao gồm:
- Đặt vận đơn, sửa thông tin, xóa mềm
- 6 thao tác chuyển trạng thái: gán xe, hẹn lấy hàng, đang vận chuyển,
  đã giao (chờ xác nhận), xác nhận giao, hủy
- Tra cứu hành trình (tracking), danh sách và thống kê vận đơn

Quy tắc chung:
- Mọi thao tác chuyển trạng thái tra bảng CONSIGNMENT_TRANSITIONS; cặp (trạng thái, thao tác)
  không có trong bảng ném InvalidTransitionError.
- Mọi câu UPDATE là compare-and-set trên (id, status, version); ghi đè bằng dữ liệu cũ
  ném ConflictError(STALE_VERSION).
- DELIVERED và CANCELLED là trạng thái cuối: không sửa, không xóa, không chuyển tiếp.
"""

from __future__ import annotations

import enum
import logging
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.audit_service import create_audit_log
from ..core.error_handler import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models.consignment import (
    ACTIVE_STATUSES,
    CHARGE_FIELDS,
    Consignment,
    ConsignmentStatus,
    PartySnapshot,
    sum_charges,
)
from ..models.customer import Customer
from ..models.fleet import Driver, DriverStatus, Vehicle, VehicleStatus
from .notification_service import notify_consignor
from .numbering import next_consignment_number
from .validation import (
    optional_text,
    parse_date,
    parse_decimal,
    parse_email,
    parse_time,
    parse_uuid,
    require_text,
    to_money,
    validate_weights,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "consignment"


class ConsignmentAction(str, enum.Enum):
    ASSIGN_VEHICLE = "ASSIGN_VEHICLE"
    SCHEDULE_PICKUP = "SCHEDULE_PICKUP"
    MARK_IN_TRANSIT = "MARK_IN_TRANSIT"
    MARK_DELIVERED_UNCONFIRMED = "MARK_DELIVERED_UNCONFIRMED"
    CONFIRM_DELIVERY = "CONFIRM_DELIVERY"
    CANCEL = "CANCEL"


# trạng thái -> thao tác hợp lệ -> trạng thái mới
CONSIGNMENT_TRANSITIONS: dict[ConsignmentStatus, dict[ConsignmentAction, ConsignmentStatus]] = {
    ConsignmentStatus.BOOKED: {
        ConsignmentAction.ASSIGN_VEHICLE: ConsignmentStatus.ASSIGNED,
        ConsignmentAction.CANCEL: ConsignmentStatus.CANCELLED,
    },
    ConsignmentStatus.ASSIGNED: {
        ConsignmentAction.SCHEDULE_PICKUP: ConsignmentStatus.SCHEDULED,
        ConsignmentAction.CANCEL: ConsignmentStatus.CANCELLED,
    },
    ConsignmentStatus.SCHEDULED: {
        ConsignmentAction.MARK_IN_TRANSIT: ConsignmentStatus.IN_TRANSIT,
        ConsignmentAction.CANCEL: ConsignmentStatus.CANCELLED,
    },
    ConsignmentStatus.IN_TRANSIT: {
        ConsignmentAction.MARK_DELIVERED_UNCONFIRMED: ConsignmentStatus.DELIVERED_UNCONFIRMED,
        ConsignmentAction.CANCEL: ConsignmentStatus.CANCELLED,
    },
    ConsignmentStatus.DELIVERED_UNCONFIRMED: {
        ConsignmentAction.CONFIRM_DELIVERY: ConsignmentStatus.DELIVERED,
        ConsignmentAction.CANCEL: ConsignmentStatus.CANCELLED,
    },
    ConsignmentStatus.DELIVERED: {},
    ConsignmentStatus.CANCELLED: {},
}

# Các trường được phép sửa qua update_consignment
EDITABLE_FIELDS = frozenset({
    "booking_branch",
    "consignor_name",
    "consignor_address",
    "consignor_mobile",
    "consignor_email",
    "consignor_gst_number",
    "consignee_name",
    "consignee_address",
    "consignee_mobile",
    "consignee_email",
    "consignee_gst_number",
    "from_city",
    "to_city",
    "description",
    "packages",
    "actual_weight",
    "charged_weight",
    "declared_value",
    "pickup_instructions",
    "transit_notes",
    *CHARGE_FIELDS,
})

_REQUIRED_TEXT_FIELDS = frozenset({
    "booking_branch",
    "consignor_name",
    "consignor_address",
    "consignor_mobile",
    "consignee_name",
    "consignee_address",
    "consignee_mobile",
    "from_city",
    "to_city",
    "description",
})

_MONEY_FIELDS = frozenset({"actual_weight", "charged_weight", "declared_value", *CHARGE_FIELDS})


def next_status(current: ConsignmentStatus, action: ConsignmentAction) -> ConsignmentStatus:
    """Tra bảng chuyển trạng thái; ném InvalidTransitionError nếu không hợp lệ."""
    allowed = CONSIGNMENT_TRANSITIONS.get(current, {})
    if action not in allowed:
        raise InvalidTransitionError(
            f"Không thể thực hiện {action.value} khi vận đơn đang ở trạng thái {current.value}",
            current_status=current.value,
        )
    return allowed[action]


def get_consignment(db: Session, consignment_id: Any) -> Consignment:
    """Lấy vận đơn theo id (bỏ qua vận đơn đã xóa mềm)."""
    cid = parse_uuid(consignment_id, "consignment_id")
    consignment = (
        db.query(Consignment)
        .filter(Consignment.id == cid, Consignment.is_deleted.is_(False))
        .first()
    )
    if not consignment:
        raise NotFoundError(
            f"Vận đơn không tồn tại: {consignment_id}", error_code="CONSIGNMENT_NOT_FOUND"
        )
    return consignment


def get_consignment_by_number(db: Session, consignment_number: str) -> Consignment:
    consignment = (
        db.query(Consignment)
        .filter(
            Consignment.consignment_number == consignment_number.strip().upper(),
            Consignment.is_deleted.is_(False),
        )
        .first()
    )
    if not consignment:
        raise NotFoundError(
            f"Vận đơn không tồn tại: {consignment_number}", error_code="CONSIGNMENT_NOT_FOUND"
        )
    return consignment


def _check_version(consignment: Consignment, expected_version: int | None) -> int:
    if expected_version is not None and expected_version != consignment.version:
        raise ConflictError(
            f"Vận đơn {consignment.consignment_number} đã bị thay đổi "
            f"(version {consignment.version}, client gửi {expected_version}), vui lòng tải lại",
            error_code="STALE_VERSION",
        )
    return consignment.version


def _compare_and_set(
    db: Session,
    consignment: Consignment,
    expected_status: ConsignmentStatus,
    expected_version: int,
    values: dict[str, Any],
) -> None:
    """UPDATE có điều kiện trên (id, status, version); tăng version khi thành công."""
    result = db.execute(
        update(Consignment)
        .where(
            Consignment.id == consignment.id,
            Consignment.status == expected_status,
            Consignment.version == expected_version,
            Consignment.is_deleted.is_(False),
        )
        .values(**values, version=Consignment.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Vận đơn {consignment.consignment_number} đã bị người khác cập nhật, vui lòng tải lại",
            error_code="STALE_VERSION",
        )
    db.refresh(consignment)


def _audit(
    db: Session,
    consignment: Consignment,
    action: str,
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
    username: str | None,
    description: str,
) -> None:
    create_audit_log(
        db,
        action=action,
        entity_type=ENTITY_TYPE,
        entity_id=str(consignment.id),
        username=username,
        old_values=old_values,
        new_values=new_values,
        description=description,
    )


def _transition(
    db: Session,
    consignment: Consignment,
    action: ConsignmentAction,
    values: dict[str, Any],
    expected_version: int | None,
    username: str | None,
) -> Consignment:
    """Chuyển trạng thái theo bảng, ghi CAS và audit log."""
    old_status = consignment.status
    new_status = next_status(old_status, action)
    version = _check_version(consignment, expected_version)

    _compare_and_set(
        db,
        consignment,
        old_status,
        version,
        {**values, "status": new_status, "status_changed_at": datetime.utcnow()},
    )
    _audit(
        db,
        consignment,
        action.value,
        {"status": old_status.value, "version": version},
        {"status": new_status.value, "version": consignment.version},
        username,
        f"Vận đơn {consignment.consignment_number}: {old_status.value} -> {new_status.value}",
    )
    logger.info(
        "Vận đơn %s: %s -> %s", consignment.consignment_number, old_status.value, new_status.value
    )
    return consignment


def _release_fleet(db: Session, consignment: Consignment) -> None:
    """Trả xe/tài xế về AVAILABLE nếu không còn vận đơn đang hoạt động nào khác dùng tới."""
    if consignment.vehicle_id:
        busy = (
            db.query(Consignment.id)
            .filter(
                Consignment.vehicle_id == consignment.vehicle_id,
                Consignment.id != consignment.id,
                Consignment.status.in_(ACTIVE_STATUSES),
                Consignment.is_deleted.is_(False),
            )
            .first()
        )
        if busy:
            logger.info("Xe %s vẫn đang chạy vận đơn khác", consignment.vehicle_number)
        else:
            db.execute(
                update(Vehicle)
                .where(Vehicle.id == consignment.vehicle_id, Vehicle.status == VehicleStatus.ON_TRIP)
                .values(status=VehicleStatus.AVAILABLE)
                .execution_options(synchronize_session=False)
            )

    if consignment.driver_id:
        busy = (
            db.query(Consignment.id)
            .filter(
                Consignment.driver_id == consignment.driver_id,
                Consignment.id != consignment.id,
                Consignment.status.in_(ACTIVE_STATUSES),
                Consignment.is_deleted.is_(False),
            )
            .first()
        )
        if busy:
            logger.info("Tài xế %s vẫn đang chạy vận đơn khác", consignment.driver_name)
        else:
            db.execute(
                update(Driver)
                .where(Driver.id == consignment.driver_id, Driver.status == DriverStatus.ON_TRIP)
                .values(status=DriverStatus.AVAILABLE, current_vehicle_id=None)
                .execution_options(synchronize_session=False)
            )

    # Đồng bộ lại các object xe/tài xế đang nằm trong session
    for entity in (
        db.get(Vehicle, consignment.vehicle_id) if consignment.vehicle_id else None,
        db.get(Driver, consignment.driver_id) if consignment.driver_id else None,
    ):
        if entity is not None:
            db.refresh(entity)


# ---------------------------------------------------------------------------
# Đặt / sửa / xóa vận đơn
# ---------------------------------------------------------------------------


def _build_party(db: Session, data: Any, role: str) -> PartySnapshot:
    """Tạo snapshot người gửi/người nhận; trường thiếu lấy từ hồ sơ khách hàng (nếu có)."""
    if not isinstance(data, dict):
        raise ValidationError(f"Thiếu thông tin {role}", field=role)

    customer = None
    if data.get("customer_id"):
        customer_id = parse_uuid(data["customer_id"], f"{role}.customer_id")
        customer = db.get(Customer, customer_id)
        if not customer:
            raise NotFoundError(
                f"Khách hàng không tồn tại: {customer_id}", error_code="CUSTOMER_NOT_FOUND"
            )

    def pick(key: str) -> Any:
        value = data.get(key)
        if value in (None, "") and customer is not None:
            value = getattr(customer, key)
        return value

    return PartySnapshot(
        name=require_text(pick("name"), f"{role}.name", max_length=100),
        address=require_text(pick("address"), f"{role}.address"),
        mobile=require_text(pick("mobile"), f"{role}.mobile", max_length=15),
        email=parse_email(pick("email"), f"{role}.email"),
        gst_number=optional_text(pick("gst_number")),
        customer_id=customer.id if customer else None,
    )


def _parse_packages(value: Any) -> int:
    try:
        packages = int(value)
    except (TypeError, ValueError):
        raise ValidationError("packages phải là số nguyên", field="packages")
    if packages < 1:
        raise ValidationError("packages phải lớn hơn 0", field="packages")
    return packages


def create_consignment(
    db: Session, data: dict[str, Any], username: str | None = None
) -> Consignment:
    """
    Đặt vận đơn mới ở trạng thái BOOKED.

    Nếu payload có cả vehicle_id và driver_id thì gán xe luôn trong cùng transaction.
    Gửi email xác nhận đặt hàng cho người gửi (không chặn nếu lỗi).

    Raises:
        ValidationError: dữ liệu thiếu/sai, trọng lượng không hợp lệ, gửi kèm grand_total
        NotFoundError: customer/xe/tài xế không tồn tại
        ConflictError: trùng số vận đơn, xe/tài xế không sẵn sàng
    """
    if "grand_total" in data:
        raise ValidationError(
            "grand_total được tính tự động từ các khoản cước", field="grand_total"
        )

    vehicle_id = data.get("vehicle_id")
    driver_id = data.get("driver_id")
    if bool(vehicle_id) != bool(driver_id):
        raise ValidationError(
            "Phải chọn đồng thời cả xe và tài xế",
            field="driver_id" if vehicle_id else "vehicle_id",
        )

    consignor = _build_party(db, data.get("consignor"), "consignor")
    consignee = _build_party(db, data.get("consignee"), "consignee")

    actual_weight = parse_decimal(data.get("actual_weight"), "actual_weight")
    charged_weight = parse_decimal(
        data.get("charged_weight", data.get("actual_weight")), "charged_weight"
    )
    validate_weights(actual_weight, charged_weight)

    charges = {
        name: parse_decimal(data.get(name), name, allow_none=True) or Decimal("0.00")
        for name in CHARGE_FIELDS
    }

    number = optional_text(data.get("consignment_number"))
    number = number.upper() if number else next_consignment_number(db)
    if db.query(Consignment.id).filter(Consignment.consignment_number == number).first():
        raise ConflictError(f"Số vận đơn đã tồn tại: {number}", error_code="DUPLICATE_NUMBER")

    booking_date = (
        datetime.combine(parse_date(data["booking_date"], "booking_date"), datetime.utcnow().time())
        if data.get("booking_date")
        else datetime.utcnow()
    )

    consignment = Consignment(
        consignment_number=number,
        booking_date=booking_date,
        booking_branch=require_text(data.get("booking_branch"), "booking_branch", max_length=50),
        consignor_customer_id=consignor.customer_id,
        consignor_name=consignor.name,
        consignor_address=consignor.address,
        consignor_mobile=consignor.mobile,
        consignor_email=consignor.email,
        consignor_gst_number=consignor.gst_number,
        consignee_customer_id=consignee.customer_id,
        consignee_name=consignee.name,
        consignee_address=consignee.address,
        consignee_mobile=consignee.mobile,
        consignee_email=consignee.email,
        consignee_gst_number=consignee.gst_number,
        from_city=require_text(data.get("from_city"), "from_city", max_length=50),
        to_city=require_text(data.get("to_city"), "to_city", max_length=50),
        description=require_text(data.get("description"), "description"),
        packages=_parse_packages(data.get("packages", 1)),
        actual_weight=actual_weight,
        charged_weight=charged_weight,
        declared_value=parse_decimal(data.get("declared_value"), "declared_value", allow_none=True)
        or Decimal("0.00"),
        status=ConsignmentStatus.BOOKED,
        status_changed_at=datetime.utcnow(),
        **charges,
    )
    db.add(consignment)
    try:
        db.flush()
    except IntegrityError as e:
        raise ConflictError(
            f"Số vận đơn đã tồn tại: {number}", error_code="DUPLICATE_NUMBER"
        ) from e

    _audit(
        db,
        consignment,
        "CREATE",
        None,
        {"status": consignment.status.value, "grand_total": str(consignment.grand_total)},
        username,
        f"Đặt vận đơn {consignment.consignment_number}",
    )
    logger.info(
        "Đặt vận đơn %s: %s -> %s, tổng cước %s",
        consignment.consignment_number,
        consignment.from_city,
        consignment.to_city,
        consignment.grand_total,
    )

    if vehicle_id:
        assign_vehicle(db, consignment.id, vehicle_id, driver_id, username=username)

    notify_consignor(
        db,
        consignment,
        "booking_confirmed.txt",
        f"Booking Confirmed - {consignment.consignment_number}",
    )
    return consignment


def update_consignment(
    db: Session,
    consignment_id: Any,
    changes: dict[str, Any],
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """
    Sửa thông tin vận đơn (chỉ các trường trong EDITABLE_FIELDS).

    Trọng lượng được kiểm tra lại trên giá trị sau khi gộp; grand_total tính lại.
    """
    consignment = get_consignment(db, consignment_id)
    if consignment.is_terminal:
        raise InvalidTransitionError(
            f"Vận đơn {consignment.consignment_number} đã {consignment.status.value}, không thể sửa",
            error_code="CONSIGNMENT_LOCKED",
            current_status=consignment.status.value,
        )

    if "grand_total" in changes:
        raise ValidationError(
            "grand_total được tính tự động từ các khoản cước", field="grand_total"
        )
    unknown = sorted(set(changes) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Không được sửa trường: {', '.join(unknown)}", field=unknown[0]
        )
    if not changes:
        raise ValidationError("Không có thay đổi nào")

    values: dict[str, Any] = {}
    for field, raw in changes.items():
        if field in _MONEY_FIELDS:
            values[field] = parse_decimal(raw, field)
        elif field == "packages":
            values[field] = _parse_packages(raw)
        elif field.endswith("_email"):
            values[field] = parse_email(raw, field)
        elif field in _REQUIRED_TEXT_FIELDS:
            values[field] = require_text(raw, field)
        else:
            values[field] = optional_text(raw)

    merged = {
        name: values.get(name, getattr(consignment, name))
        for name in ("actual_weight", "charged_weight", *CHARGE_FIELDS)
    }
    validate_weights(merged["actual_weight"], merged["charged_weight"])
    values["grand_total"] = sum_charges(merged)

    old_values = {
        field: str(getattr(consignment, field)) if getattr(consignment, field) is not None else None
        for field in values
    }
    version = _check_version(consignment, expected_version)
    _compare_and_set(db, consignment, consignment.status, version, values)

    _audit(
        db,
        consignment,
        "UPDATE",
        old_values,
        {field: str(value) if value is not None else None for field, value in values.items()},
        username,
        f"Sửa vận đơn {consignment.consignment_number}",
    )
    return consignment


def delete_consignment(
    db: Session,
    consignment_id: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """Xóa mềm vận đơn chưa kết thúc; trả xe/tài xế nếu đã gán."""
    consignment = get_consignment(db, consignment_id)
    if consignment.is_terminal:
        raise InvalidTransitionError(
            f"Vận đơn {consignment.consignment_number} đã {consignment.status.value}, không thể xóa",
            error_code="CONSIGNMENT_LOCKED",
            current_status=consignment.status.value,
        )

    version = _check_version(consignment, expected_version)
    _compare_and_set(
        db,
        consignment,
        consignment.status,
        version,
        {"is_deleted": True, "deleted_at": datetime.utcnow()},
    )
    if consignment.status in ACTIVE_STATUSES:
        _release_fleet(db, consignment)

    _audit(
        db,
        consignment,
        "DELETE",
        {"is_deleted": False},
        {"is_deleted": True},
        username,
        f"Xóa vận đơn {consignment.consignment_number}",
    )
    logger.info("Xóa mềm vận đơn %s", consignment.consignment_number)
    return consignment


# ---------------------------------------------------------------------------
# Chuyển trạng thái
# ---------------------------------------------------------------------------


def assign_vehicle(
    db: Session,
    consignment_id: Any,
    vehicle_id: Any,
    driver_id: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """
    Gán xe và tài xế cho vận đơn (BOOKED -> ASSIGNED).

    Xe, tài xế và vận đơn được cập nhật có điều kiện trong cùng một SAVEPOINT:
    nếu bất kỳ bản ghi nào đã bị người khác chiếm trước thì toàn bộ bị hoàn tác.

    Raises:
        NotFoundError: vận đơn/xe/tài xế không tồn tại
        InvalidTransitionError: vận đơn không ở BOOKED
        ConflictError: xe/tài xế không AVAILABLE, hoặc version cũ
    """
    consignment = get_consignment(db, consignment_id)
    new_status = next_status(consignment.status, ConsignmentAction.ASSIGN_VEHICLE)

    vehicle = db.get(Vehicle, parse_uuid(vehicle_id, "vehicle_id"))
    if not vehicle:
        raise NotFoundError(f"Xe không tồn tại: {vehicle_id}", error_code="VEHICLE_NOT_FOUND")
    driver = db.get(Driver, parse_uuid(driver_id, "driver_id"))
    if not driver:
        raise NotFoundError(f"Tài xế không tồn tại: {driver_id}", error_code="DRIVER_NOT_FOUND")

    if not vehicle.is_active or vehicle.status != VehicleStatus.AVAILABLE:
        raise ConflictError(
            f"Xe {vehicle.vehicle_number} không sẵn sàng ({vehicle.status.value})",
            error_code="VEHICLE_NOT_AVAILABLE",
        )
    if not driver.is_active or driver.status != DriverStatus.AVAILABLE:
        raise ConflictError(
            f"Tài xế {driver.name} không sẵn sàng ({driver.status.value})",
            error_code="DRIVER_NOT_AVAILABLE",
        )
    version = _check_version(consignment, expected_version)
    old_status = consignment.status

    try:
        with db.begin_nested():
            result = db.execute(
                update(Vehicle)
                .where(
                    Vehicle.id == vehicle.id,
                    Vehicle.status == VehicleStatus.AVAILABLE,
                    Vehicle.is_active.is_(True),
                )
                .values(status=VehicleStatus.ON_TRIP)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(
                    f"Xe {vehicle.vehicle_number} vừa được gán cho vận đơn khác",
                    error_code="VEHICLE_NOT_AVAILABLE",
                )

            result = db.execute(
                update(Driver)
                .where(
                    Driver.id == driver.id,
                    Driver.status == DriverStatus.AVAILABLE,
                    Driver.is_active.is_(True),
                )
                .values(status=DriverStatus.ON_TRIP, current_vehicle_id=vehicle.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(
                    f"Tài xế {driver.name} vừa được gán cho vận đơn khác",
                    error_code="DRIVER_NOT_AVAILABLE",
                )

            now = datetime.utcnow()
            _compare_and_set(
                db,
                consignment,
                old_status,
                version,
                {
                    "status": new_status,
                    "status_changed_at": now,
                    "vehicle_id": vehicle.id,
                    "vehicle_number": vehicle.vehicle_number,
                    "driver_id": driver.id,
                    "driver_name": driver.name,
                    "driver_mobile": driver.mobile,
                    "assigned_at": now,
                },
            )
            _audit(
                db,
                consignment,
                ConsignmentAction.ASSIGN_VEHICLE.value,
                {"status": old_status.value, "version": version},
                {
                    "status": new_status.value,
                    "version": consignment.version,
                    "vehicle_number": vehicle.vehicle_number,
                    "driver_name": driver.name,
                },
                username,
                f"Gán xe {vehicle.vehicle_number} / tài xế {driver.name} "
                f"cho vận đơn {consignment.consignment_number}",
            )
    except IntegrityError as e:
        raise ConflictError(
            f"Không thể gán xe cho vận đơn {consignment.consignment_number}"
        ) from e
    except ConflictError:
        # SAVEPOINT đã rollback; nạp lại trạng thái thật của xe/tài xế
        db.refresh(vehicle)
        db.refresh(driver)
        raise

    db.refresh(vehicle)
    db.refresh(driver)
    logger.info(
        "Vận đơn %s: gán xe %s, tài xế %s",
        consignment.consignment_number,
        vehicle.vehicle_number,
        driver.name,
    )
    return consignment


def schedule_pickup(
    db: Session,
    consignment_id: Any,
    pickup_date: Any,
    pickup_time: Any,
    instructions: str | None = None,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """Hẹn lịch lấy hàng (ASSIGNED -> SCHEDULED), báo cho người gửi."""
    values = {
        "pickup_date": parse_date(pickup_date, "pickup_date"),
        "pickup_time": parse_time(pickup_time, "pickup_time"),
        "pickup_instructions": optional_text(instructions),
    }
    consignment = get_consignment(db, consignment_id)
    _transition(
        db, consignment, ConsignmentAction.SCHEDULE_PICKUP, values, expected_version, username
    )
    notify_consignor(
        db,
        consignment,
        "pickup_scheduled.txt",
        f"Pickup Scheduled - {consignment.consignment_number}",
    )
    return consignment


def mark_in_transit(
    db: Session,
    consignment_id: Any,
    actual_pickup_date: Any,
    actual_pickup_time: Any,
    notes: str | None = None,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """Ghi nhận đã lấy hàng, xe bắt đầu chạy (SCHEDULED -> IN_TRANSIT)."""
    values = {
        "actual_pickup_date": parse_date(actual_pickup_date, "actual_pickup_date"),
        "actual_pickup_time": parse_time(actual_pickup_time, "actual_pickup_time"),
        "transit_notes": optional_text(notes),
    }
    consignment = get_consignment(db, consignment_id)
    return _transition(
        db, consignment, ConsignmentAction.MARK_IN_TRANSIT, values, expected_version, username
    )


def mark_delivered_unconfirmed(
    db: Session,
    consignment_id: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    consignment = get_consignment(db, consignment_id)
    return _transition(
        db,
        consignment,
        ConsignmentAction.MARK_DELIVERED_UNCONFIRMED,
        {},
        expected_version,
        username,
    )


def confirm_delivery(
    db: Session,
    consignment_id: Any,
    proof_of_delivery: Any,
    delivered_by: str | None = None,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """
    Xác nhận giao hàng (DELIVERED_UNCONFIRMED -> DELIVERED).

    Bắt buộc có proof_of_delivery; ghi delivery_date = thời điểm hiện tại,
    trả xe/tài xế và gửi email cho người gửi.
    """
    if proof_of_delivery is None or not str(proof_of_delivery).strip():
        raise ValidationError(
            "Thiếu chứng từ giao hàng (proof of delivery)",
            error_code="POD_REQUIRED",
            field="proof_of_delivery",
        )
    values = {
        "delivery_date": datetime.utcnow(),
        "proof_of_delivery": str(proof_of_delivery).strip(),
        "delivered_by": optional_text(delivered_by),
    }
    consignment = get_consignment(db, consignment_id)
    _transition(
        db, consignment, ConsignmentAction.CONFIRM_DELIVERY, values, expected_version, username
    )
    _release_fleet(db, consignment)
    notify_consignor(
        db,
        consignment,
        "delivered.txt",
        f"Consignment Delivered - {consignment.consignment_number}",
    )
    return consignment


def cancel_consignment(
    db: Session,
    consignment_id: Any,
    reason: str | None = None,
    expected_version: int | None = None,
    username: str | None = None,
) -> Consignment:
    """Hủy vận đơn chưa kết thúc; trả xe/tài xế nếu đã gán."""
    consignment = get_consignment(db, consignment_id)
    values: dict[str, Any] = {}
    if reason:
        values["transit_notes"] = optional_text(reason)
    _transition(db, consignment, ConsignmentAction.CANCEL, values, expected_version, username)
    _release_fleet(db, consignment)
    return consignment


# ---------------------------------------------------------------------------
# Tra cứu
# ---------------------------------------------------------------------------


def _timeline_step(status: ConsignmentStatus, label: str, at: date | datetime | None, done: bool):
    return {
        "status": status.value,
        "label": label,
        "completed": done,
        "timestamp": at.isoformat() if at else None,
    }


_PROGRESS = [
    ConsignmentStatus.BOOKED,
    ConsignmentStatus.ASSIGNED,
    ConsignmentStatus.SCHEDULED,
    ConsignmentStatus.IN_TRANSIT,
    ConsignmentStatus.DELIVERED_UNCONFIRMED,
    ConsignmentStatus.DELIVERED,
]


def get_tracking(db: Session, id_or_number: Any) -> dict[str, Any]:
    """
    Hành trình vận đơn theo id hoặc số vận đơn.

    Trả về trạng thái hiện tại và timeline các mốc: đặt hàng, gán xe, hẹn lấy hàng,
    đang vận chuyển, đã giao.
    """
    try:
        consignment = get_consignment(db, uuid.UUID(str(id_or_number)))
    except ValueError:
        consignment = get_consignment_by_number(db, str(id_or_number))

    reached = (
        _PROGRESS.index(consignment.status)
        if consignment.status in _PROGRESS
        else -1
    )

    def done(status: ConsignmentStatus) -> bool:
        return reached >= _PROGRESS.index(status)

    timeline = [
        _timeline_step(
            ConsignmentStatus.BOOKED, "Booked", consignment.booking_date, True
        ),
        _timeline_step(
            ConsignmentStatus.ASSIGNED,
            "Vehicle assigned",
            consignment.assigned_at,
            consignment.assigned_at is not None,
        ),
        _timeline_step(
            ConsignmentStatus.SCHEDULED,
            "Pickup scheduled",
            consignment.pickup_date,
            done(ConsignmentStatus.SCHEDULED) or consignment.pickup_date is not None,
        ),
        _timeline_step(
            ConsignmentStatus.IN_TRANSIT,
            "In transit",
            consignment.actual_pickup_date,
            done(ConsignmentStatus.IN_TRANSIT) or consignment.actual_pickup_date is not None,
        ),
        _timeline_step(
            ConsignmentStatus.DELIVERED,
            "Delivered",
            consignment.delivery_date,
            consignment.status == ConsignmentStatus.DELIVERED,
        ),
    ]
    if consignment.status == ConsignmentStatus.CANCELLED:
        timeline.append(
            _timeline_step(
                ConsignmentStatus.CANCELLED, "Cancelled", consignment.status_changed_at, True
            )
        )

    return {
        "consignment_id": str(consignment.id),
        "consignment_number": consignment.consignment_number,
        "status": consignment.status.value,
        "from_city": consignment.from_city,
        "to_city": consignment.to_city,
        "booking_date": consignment.booking_date.isoformat(),
        "consignor_name": consignment.consignor_name,
        "consignee_name": consignment.consignee_name,
        "vehicle_number": consignment.vehicle_number,
        "driver_name": consignment.driver_name,
        "driver_mobile": consignment.driver_mobile,
        "delivery_date": consignment.delivery_date.isoformat()
        if consignment.delivery_date
        else None,
        "timeline": timeline,
    }


def list_consignments(
    db: Session,
    status: str | None = None,
    customer_id: Any = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Consignment], int]:
    """Danh sách vận đơn (mới nhất trước) có phân trang; trả về (items, total)."""
    query = db.query(Consignment).filter(Consignment.is_deleted.is_(False))

    if status:
        try:
            query = query.filter(Consignment.status == ConsignmentStatus(status))
        except ValueError:
            raise ValidationError(f"Trạng thái không hợp lệ: {status}", field="status")
    if customer_id:
        cid = parse_uuid(customer_id, "customer_id")
        query = query.filter(
            or_(Consignment.consignor_customer_id == cid, Consignment.consignee_customer_id == cid)
        )
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Consignment.consignment_number.ilike(pattern),
                Consignment.consignor_name.ilike(pattern),
                Consignment.consignee_name.ilike(pattern),
            )
        )

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = query.count()
    items = (
        query.order_by(Consignment.booking_date.desc(), Consignment.consignment_number.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def get_consignment_statistics(
    db: Session, from_date: Any = None, to_date: Any = None
) -> dict[str, Any]:
    """
    Thống kê vận đơn (bỏ qua vận đơn đã xóa mềm) theo ngày đặt.

    - by_status: số lượng và tổng cước theo trạng thái
    - by_payment_status: vận đơn DELIVERED theo tình trạng thanh toán
    """
    filters = [Consignment.is_deleted.is_(False)]
    if from_date:
        start = parse_date(from_date, "from_date")
        filters.append(Consignment.booking_date >= datetime.combine(start, time.min))
    if to_date:
        end = parse_date(to_date, "to_date")
        filters.append(Consignment.booking_date < datetime.combine(end + timedelta(days=1), time.min))

    def grouped(column, *extra) -> dict[str, dict[str, Any]]:
        rows = (
            db.query(column, func.count(Consignment.id), func.coalesce(func.sum(Consignment.grand_total), 0))
            .filter(*filters, *extra)
            .group_by(column)
            .all()
        )
        return {key.value: {"count": count, "amount": to_money(amount)} for key, count, amount in rows}

    by_status = grouped(Consignment.status)
    by_payment_status = grouped(
        Consignment.payment_status, Consignment.status == ConsignmentStatus.DELIVERED
    )
    return {
        "total_consignments": sum(item["count"] for item in by_status.values()),
        "total_amount": sum((item["amount"] for item in by_status.values()), Decimal("0.00")),
        "by_status": by_status,
        "by_payment_status": by_payment_status,
    }
