"""
API cho vận đơn (consignment): đặt, sửa, xóa, chuyển trạng thái, tra cứu hành trình.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Header, Response

from ..core.audit_service import get_audit_logs
from ..core.db import get_session
from ..core.error_handler import json_response as _json_response
from ..models.consignment import Consignment
from ..services import consignment_service
from .common import DEFAULT_LIMIT, DEFAULT_PAGE, iso, money, split_version

router = APIRouter()


def consignment_to_dict(c: Consignment) -> dict:
    return {
        "id": str(c.id),
        "consignment_number": c.consignment_number,
        "booking_date": iso(c.booking_date),
        "booking_branch": c.booking_branch,
        "consignor": {
            "customer_id": str(c.consignor_customer_id) if c.consignor_customer_id else None,
            "name": c.consignor_name,
            "address": c.consignor_address,
            "mobile": c.consignor_mobile,
            "email": c.consignor_email,
            "gst_number": c.consignor_gst_number,
        },
        "consignee": {
            "customer_id": str(c.consignee_customer_id) if c.consignee_customer_id else None,
            "name": c.consignee_name,
            "address": c.consignee_address,
            "mobile": c.consignee_mobile,
            "email": c.consignee_email,
            "gst_number": c.consignee_gst_number,
        },
        "from_city": c.from_city,
        "to_city": c.to_city,
        "description": c.description,
        "packages": c.packages,
        "actual_weight": money(c.actual_weight),
        "charged_weight": money(c.charged_weight),
        "declared_value": money(c.declared_value),
        "freight": money(c.freight),
        "handling_charges": money(c.handling_charges),
        "service_tax": money(c.service_tax),
        "door_delivery": money(c.door_delivery),
        "other_charges": money(c.other_charges),
        "risk_charges": money(c.risk_charges),
        "additional_service_tax": money(c.additional_service_tax),
        "grand_total": money(c.grand_total),
        "vehicle_id": str(c.vehicle_id) if c.vehicle_id else None,
        "vehicle_number": c.vehicle_number,
        "driver_id": str(c.driver_id) if c.driver_id else None,
        "driver_name": c.driver_name,
        "driver_mobile": c.driver_mobile,
        "assigned_at": iso(c.assigned_at),
        "pickup_date": iso(c.pickup_date),
        "pickup_time": c.pickup_time,
        "pickup_instructions": c.pickup_instructions,
        "actual_pickup_date": iso(c.actual_pickup_date),
        "actual_pickup_time": c.actual_pickup_time,
        "transit_notes": c.transit_notes,
        "delivery_date": iso(c.delivery_date),
        "proof_of_delivery": c.proof_of_delivery,
        "delivered_by": c.delivered_by,
        "status": c.status.value,
        "status_changed_at": iso(c.status_changed_at),
        "payment_status": c.payment_status.value,
        "freight_bill_id": str(c.freight_bill_id) if c.freight_bill_id else None,
        "billed_date": iso(c.billed_date),
        "version": c.version,
    }


def consignment_summary(c: Consignment) -> dict:
    """Dạng rút gọn cho danh sách."""
    return {
        "id": str(c.id),
        "consignment_number": c.consignment_number,
        "booking_date": iso(c.booking_date),
        "consignor_name": c.consignor_name,
        "consignee_name": c.consignee_name,
        "from_city": c.from_city,
        "to_city": c.to_city,
        "charged_weight": money(c.charged_weight),
        "freight": money(c.freight),
        "grand_total": money(c.grand_total),
        "status": c.status.value,
        "payment_status": c.payment_status.value,
        "version": c.version,
    }


@router.get("/consignments")
def list_consignments(
    status: str | None = None,
    customer_id: str | None = None,
    search: str | None = None,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
) -> Response:
    """GET /api/consignments - Danh sách vận đơn có phân trang."""
    with get_session() as db:
        items, total = consignment_service.list_consignments(
            db, status=status, customer_id=customer_id, search=search, page=page, limit=limit
        )
        return _json_response({
            "items": [consignment_summary(c) for c in items],
            "total": total,
            "page": page,
            "limit": limit,
        })


@router.post("/consignments")
def create_consignment(
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments - Đặt vận đơn mới."""
    with get_session() as db:
        consignment = consignment_service.create_consignment(db, data or {}, username=x_username)
        return _json_response(consignment_to_dict(consignment), 201)


@router.get("/consignments/statistics")
def get_consignment_statistics(from_date: str | None = None, to_date: str | None = None) -> Response:
    """GET /api/consignments/statistics - Thống kê vận đơn theo trạng thái và thanh toán."""
    with get_session() as db:
        stats = consignment_service.get_consignment_statistics(
            db, from_date=from_date, to_date=to_date
        )

    def groups(items: dict) -> dict:
        return {key: {"count": v["count"], "amount": money(v["amount"])} for key, v in items.items()}

    return _json_response({
        "total_consignments": stats["total_consignments"],
        "total_amount": money(stats["total_amount"]),
        "by_status": groups(stats["by_status"]),
        "by_payment_status": groups(stats["by_payment_status"]),
    })


@router.get("/consignments/{consignment_id}")
def get_consignment(consignment_id: str) -> Response:
    """GET /api/consignments/:id - Chi tiết vận đơn."""
    with get_session() as db:
        consignment = consignment_service.get_consignment(db, consignment_id)
        return _json_response(consignment_to_dict(consignment))


@router.put("/consignments/{consignment_id}")
def update_consignment(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/consignments/:id - Sửa thông tin vận đơn."""
    changes, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.update_consignment(
            db, consignment_id, changes, expected_version=expected_version, username=x_username
        )
        return _json_response(consignment_to_dict(consignment))


@router.delete("/consignments/{consignment_id}")
def delete_consignment(
    consignment_id: str,
    version: int | None = None,
    x_username: str | None = Header(default=None),
) -> Response:
    """DELETE /api/consignments/:id?version=N - Xóa mềm vận đơn."""
    with get_session() as db:
        consignment = consignment_service.delete_consignment(
            db, consignment_id, expected_version=version, username=x_username
        )
        return _json_response({"id": str(consignment.id), "deleted": True})


@router.post("/consignments/{consignment_id}/assign")
def assign_vehicle(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments/:id/assign - Gán xe và tài xế."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.assign_vehicle(
            db,
            consignment_id,
            payload.get("vehicle_id"),
            payload.get("driver_id"),
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(consignment_to_dict(consignment))


@router.post("/consignments/{consignment_id}/schedule")
def schedule_pickup(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments/:id/schedule - Hẹn lịch lấy hàng."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.schedule_pickup(
            db,
            consignment_id,
            payload.get("pickup_date"),
            payload.get("pickup_time"),
            instructions=payload.get("pickup_instructions"),
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(consignment_to_dict(consignment))


@router.post("/consignments/{consignment_id}/in-transit")
def mark_in_transit(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments/:id/in-transit - Ghi nhận đã lấy hàng."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.mark_in_transit(
            db,
            consignment_id,
            payload.get("actual_pickup_date"),
            payload.get("actual_pickup_time"),
            notes=payload.get("transit_notes"),
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(consignment_to_dict(consignment))


@router.post("/consignments/{consignment_id}/delivered")
def mark_delivered_unconfirmed(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments/:id/delivered - Đã giao, chờ xác nhận."""
    _, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.mark_delivered_unconfirmed(
            db, consignment_id, expected_version=expected_version, username=x_username
        )
        return _json_response(consignment_to_dict(consignment))


@router.post("/consignments/{consignment_id}/confirm-delivery")
def confirm_delivery(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments/:id/confirm-delivery - Xác nhận giao hàng."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.confirm_delivery(
            db,
            consignment_id,
            payload.get("proof_of_delivery"),
            delivered_by=payload.get("delivered_by"),
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(consignment_to_dict(consignment))


@router.post("/consignments/{consignment_id}/cancel")
def cancel_consignment(
    consignment_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/consignments/:id/cancel - Hủy vận đơn."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        consignment = consignment_service.cancel_consignment(
            db,
            consignment_id,
            reason=payload.get("reason"),
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(consignment_to_dict(consignment))


@router.get("/consignments/{consignment_id}/tracking")
def get_tracking(consignment_id: str) -> Response:
    """GET /api/consignments/:id/tracking - Hành trình vận đơn (nội bộ)."""
    with get_session() as db:
        return _json_response(consignment_service.get_tracking(db, consignment_id))


@router.get("/consignments/{consignment_id}/history")
def get_history(consignment_id: str) -> Response:
    """GET /api/consignments/:id/history - Nhật ký thao tác."""
    with get_session() as db:
        consignment = consignment_service.get_consignment(db, consignment_id)
        logs = get_audit_logs(db, entity_type="consignment", entity_id=str(consignment.id))
        return _json_response([
            {
                "timestamp": iso(log.timestamp),
                "action": log.action,
                "username": log.username,
                "old_values": log.old_values,
                "new_values": log.new_values,
                "description": log.description,
            }
            for log in logs
        ])


PUBLIC_TRACKING_FIELDS = (
    "consignment_number",
    "status",
    "from_city",
    "to_city",
    "booking_date",
    "vehicle_number",
    "delivery_date",
    "timeline",
)


@router.get("/public/track/{consignment_number}")
def public_tracking(consignment_number: str) -> Response:
    """GET /api/public/track/:number - Tra cứu công khai, ẩn thông tin liên hệ."""
    with get_session() as db:
        tracking = consignment_service.get_tracking(db, consignment_number)

    return _json_response({key: tracking[key] for key in PUBLIC_TRACKING_FIELDS})
