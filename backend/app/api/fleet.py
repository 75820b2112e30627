"""
API danh mục: khách hàng, phương tiện, tài xế.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Header, Response

from ..core.db import get_session
from ..core.error_handler import json_response as _json_response, ConflictError, ValidationError
from ..models.customer import Customer
from ..models.fleet import Driver, DriverStatus, Vehicle, VehicleStatus
from ..services import fleet_service
from ..services.validation import optional_text, parse_email, require_text
from .common import money

router = APIRouter()

CUSTOMER_TYPES = ("CONSIGNOR", "CONSIGNEE", "BOTH")


def customer_to_dict(c: Customer) -> dict:
    return {
        "id": str(c.id),
        "code": c.code,
        "name": c.name,
        "address": c.address,
        "city": c.city,
        "state": c.state,
        "pincode": c.pincode,
        "mobile": c.mobile,
        "email": c.email,
        "gst_number": c.gst_number,
        "pan_number": c.pan_number,
        "customer_type": c.customer_type,
        "is_active": c.is_active,
    }


def vehicle_to_dict(v: Vehicle) -> dict:
    return {
        "id": str(v.id),
        "vehicle_number": v.vehicle_number,
        "vehicle_type": v.vehicle_type,
        "capacity_value": money(v.capacity_value),
        "capacity_unit": v.capacity_unit,
        "engine_number": v.engine_number,
        "chassis_number": v.chassis_number,
        "insurance_policy_no": v.insurance_policy_no,
        "insurance_validity": v.insurance_validity.isoformat() if v.insurance_validity else None,
        "status": v.status.value,
        "is_active": v.is_active,
    }


def driver_to_dict(d: Driver) -> dict:
    return {
        "id": str(d.id),
        "name": d.name,
        "mobile": d.mobile,
        "email": d.email,
        "license_number": d.license_number,
        "current_vehicle_id": str(d.current_vehicle_id) if d.current_vehicle_id else None,
        "status": d.status.value,
        "is_active": d.is_active,
    }


# Customer APIs
@router.get("/customers")
def list_customers(search: str | None = None) -> Response:
    """GET /api/customers - Danh sách khách hàng."""

    with get_session() as db:
        query = db.query(Customer).filter(Customer.is_active.is_(True))
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                Customer.name.ilike(pattern)
                | Customer.code.ilike(pattern)
                | Customer.mobile.ilike(pattern)
            )
        customers = query.order_by(Customer.name).limit(200).all()
        return _json_response([customer_to_dict(c) for c in customers])


@router.post("/customers")
def create_customer(data: dict[str, Any] | None = Body(default=None)) -> Response:
    """POST /api/customers - Tạo khách hàng."""
    data = data or {}

    name = require_text(data.get("name"), "name", max_length=100)
    mobile = require_text(data.get("mobile"), "mobile", max_length=15)
    customer_type = str(data.get("customer_type") or "BOTH").upper()
    if customer_type not in CUSTOMER_TYPES:
        raise ValidationError(
            f"customer_type phải là một trong {', '.join(CUSTOMER_TYPES)}", field="customer_type"
        )

    with get_session() as db:
        code = optional_text(data.get("code"))
        if not code:
            code = f"CUST{db.query(Customer).count() + 1:04d}"
        code = code.upper()

        if db.query(Customer.id).filter(Customer.code == code).first():
            raise ConflictError(f"Mã khách hàng đã tồn tại: {code}", error_code="DUPLICATE_NUMBER")
        if db.query(Customer.id).filter(Customer.mobile == mobile).first():
            raise ConflictError(f"Số điện thoại đã tồn tại: {mobile}", error_code="DUPLICATE_NUMBER")

        customer = Customer(
            code=code,
            name=name,
            address=optional_text(data.get("address")),
            city=optional_text(data.get("city")),
            state=optional_text(data.get("state")),
            pincode=optional_text(data.get("pincode")),
            mobile=mobile,
            email=parse_email(data.get("email"), "email"),
            gst_number=optional_text(data.get("gst_number")),
            pan_number=optional_text(data.get("pan_number")),
            customer_type=customer_type,
        )
        db.add(customer)
        db.flush()

        return _json_response(customer_to_dict(customer), 201)


# Vehicle APIs
@router.get("/vehicles")
def list_vehicles(status: str | None = None) -> Response:
    """GET /api/vehicles - Danh sách phương tiện, lọc theo status."""

    with get_session() as db:
        vehicles = fleet_service.list_vehicles(db, status=status)
        return _json_response([vehicle_to_dict(v) for v in vehicles])


@router.get("/vehicles/available")
def list_available_vehicles() -> Response:
    """GET /api/vehicles/available - Xe sẵn sàng để gán cho vận đơn."""

    with get_session() as db:
        vehicles = fleet_service.list_vehicles(db, status=VehicleStatus.AVAILABLE.value)
        return _json_response([vehicle_to_dict(v) for v in vehicles])


@router.post("/vehicles")
def create_vehicle(
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/vehicles - Thêm phương tiện."""

    with get_session() as db:
        vehicle = fleet_service.create_vehicle(db, data or {}, username=x_username)
        return _json_response(vehicle_to_dict(vehicle), 201)


@router.get("/vehicles/{vehicle_id}")
def get_vehicle(vehicle_id: str) -> Response:
    with get_session() as db:
        return _json_response(vehicle_to_dict(fleet_service.get_vehicle(db, vehicle_id)))


@router.put("/vehicles/{vehicle_id}")
def update_vehicle(
    vehicle_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/vehicles/:id - Sửa thông tin xe (kể cả ngừng sử dụng)."""

    with get_session() as db:
        vehicle = fleet_service.update_vehicle(db, vehicle_id, data or {}, username=x_username)
        return _json_response(vehicle_to_dict(vehicle))


@router.put("/vehicles/{vehicle_id}/status")
def change_vehicle_status(
    vehicle_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/vehicles/:id/status - Đưa xe vào / ra bảo dưỡng, trả xe bị kẹt ON_TRIP."""
    data = data or {}

    with get_session() as db:
        vehicle = fleet_service.change_vehicle_status(
            db, vehicle_id, data.get("status"), reason=data.get("reason"), username=x_username
        )
        return _json_response(vehicle_to_dict(vehicle))


# Driver APIs
@router.get("/drivers")
def list_drivers(status: str | None = None) -> Response:
    """GET /api/drivers - Danh sách tài xế, lọc theo status."""

    with get_session() as db:
        drivers = fleet_service.list_drivers(db, status=status)
        return _json_response([driver_to_dict(d) for d in drivers])


@router.get("/drivers/available")
def list_available_drivers() -> Response:
    with get_session() as db:
        drivers = fleet_service.list_drivers(db, status=DriverStatus.AVAILABLE.value)
        return _json_response([driver_to_dict(d) for d in drivers])


@router.post("/drivers")
def create_driver(
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/drivers - Thêm tài xế."""

    with get_session() as db:
        driver = fleet_service.create_driver(db, data or {}, username=x_username)
        return _json_response(driver_to_dict(driver), 201)


@router.get("/drivers/{driver_id}")
def get_driver(driver_id: str) -> Response:
    with get_session() as db:
        return _json_response(driver_to_dict(fleet_service.get_driver(db, driver_id)))


@router.put("/drivers/{driver_id}")
def update_driver(
    driver_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/drivers/:id - Sửa thông tin tài xế."""

    with get_session() as db:
        driver = fleet_service.update_driver(db, driver_id, data or {}, username=x_username)
        return _json_response(driver_to_dict(driver))


@router.post("/drivers/{driver_id}/release-vehicle")
def release_driver_vehicle(
    driver_id: str,
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/drivers/:id/release-vehicle - Tháo xe khỏi tài xế."""

    with get_session() as db:
        driver = fleet_service.release_driver_vehicle(db, driver_id, username=x_username)
        return _json_response(driver_to_dict(driver))
