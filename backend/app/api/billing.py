"""
API cho hóa đơn cước (freight bill).
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Header, Response

from ..core.db import get_session
from ..core.error_handler import (
    json_response as _json_response,
    error_response,
    ExternalServiceError,
)
from ..models.billing import FreightBill
from ..services import billing_service
from .common import DEFAULT_LIMIT, DEFAULT_PAGE, iso, money, split_version
from .consignments import consignment_summary

router = APIRouter()


def bill_to_dict(bill: FreightBill) -> dict:
    return {
        "id": str(bill.id),
        "bill_number": bill.bill_number,
        "bill_date": iso(bill.bill_date),
        "billing_branch": bill.billing_branch,
        "customer": {
            "id": str(bill.customer_id),
            "name": bill.party_name,
            "address": bill.party_address,
            "gst_number": bill.party_gst_number,
        },
        "lines": [
            {
                "position": line.position,
                "consignment_id": str(line.consignment_id),
                "consignment_number": line.consignment_number,
                "consignment_date": iso(line.consignment_date),
                "destination": line.destination,
                "charged_weight": money(line.charged_weight),
                "rate": money(line.rate),
                "freight": money(line.freight),
                "grand_total": money(line.grand_total),
            }
            for line in bill.lines
        ],
        "adjustments": [
            {
                "type": adj.type.value,
                "description": adj.description,
                "amount": money(adj.amount),
            }
            for adj in bill.adjustments
        ],
        "total_amount": money(bill.total_amount),
        "final_amount": money(bill.final_amount),
        "status": bill.status.value,
        "sent_at": iso(bill.sent_at),
        "paid_at": iso(bill.paid_at),
        "cancelled_at": iso(bill.cancelled_at),
        "created_by": bill.created_by,
        "version": bill.version,
    }


def bill_summary(bill: FreightBill) -> dict:
    return {
        "id": str(bill.id),
        "bill_number": bill.bill_number,
        "bill_date": iso(bill.bill_date),
        "customer_name": bill.party_name,
        "total_amount": money(bill.total_amount),
        "final_amount": money(bill.final_amount),
        "status": bill.status.value,
        "version": bill.version,
    }


@router.get("/freight-bills")
def list_bills(
    status: str | None = None,
    customer_id: str | None = None,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
) -> Response:
    """GET /api/freight-bills - Danh sách hóa đơn cước."""
    with get_session() as db:
        items, total = billing_service.list_bills(
            db, status=status, customer_id=customer_id, page=page, limit=limit
        )
        return _json_response({
            "items": [bill_summary(b) for b in items],
            "total": total,
            "page": page,
            "limit": limit,
        })


@router.post("/freight-bills")
def create_bill(
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/freight-bills - Lập hóa đơn từ các vận đơn đã giao."""
    data = data or {}

    with get_session() as db:
        bill = billing_service.create_bill(
            db,
            data.get("customer_id"),
            data.get("billing_branch"),
            data.get("consignment_ids"),
            adjustments=data.get("adjustments"),
            status=data.get("status") or "DRAFT",
            bill_date=data.get("bill_date"),
            idempotency_key=data.get("idempotency_key"),
            username=x_username,
        )
        return _json_response(bill_to_dict(bill), 201)


@router.get("/freight-bills/statistics")
def get_bill_statistics(from_date: str | None = None, to_date: str | None = None) -> Response:
    """GET /api/freight-bills/statistics - Thống kê hóa đơn (bỏ qua hóa đơn đã hủy)."""
    with get_session() as db:
        stats = billing_service.get_bill_statistics(db, from_date=from_date, to_date=to_date)

    by_status = {
        status: {"count": item["count"], "amount": money(item["amount"])}
        for status, item in stats.pop("by_status").items()
    }
    return _json_response({
        **{key: money(value) if key.endswith("_amount") else value for key, value in stats.items()},
        "by_status": by_status,
    })


@router.get("/freight-bills/{bill_id}")
def get_bill(bill_id: str) -> Response:
    """GET /api/freight-bills/:id - Chi tiết hóa đơn."""
    with get_session() as db:
        return _json_response(bill_to_dict(billing_service.get_bill(db, bill_id)))


@router.put("/freight-bills/{bill_id}")
def update_bill_header(
    bill_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/freight-bills/:id - Sửa số / ngày / chi nhánh hóa đơn."""
    changes, expected_version = split_version(data)

    with get_session() as db:
        bill = billing_service.update_bill_header(
            db, bill_id, changes, expected_version=expected_version, username=x_username
        )
        return _json_response(bill_to_dict(bill))


@router.put("/freight-bills/{bill_id}/adjustments")
def update_bill_adjustments(
    bill_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/freight-bills/:id/adjustments - Thay danh sách điều chỉnh."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        bill = billing_service.update_bill_adjustments(
            db,
            bill_id,
            payload.get("adjustments") or [],
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(bill_to_dict(bill))


@router.put("/freight-bills/{bill_id}/status")
def change_bill_status(
    bill_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """PUT /api/freight-bills/:id/status - Chuyển trạng thái hóa đơn."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        bill = billing_service.change_bill_status(
            db, bill_id, payload.get("status"), expected_version=expected_version, username=x_username
        )
        return _json_response(bill_to_dict(bill))


@router.post("/freight-bills/{bill_id}/send")
def send_bill(
    bill_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/freight-bills/:id/send - Gửi hóa đơn qua email.

    Trạng thái SENT được lưu kể cả khi gửi mail lỗi; khi đó trả 502 kèm hóa đơn.
    """
    payload, expected_version = split_version(data)

    with get_session() as db:
        dispatch = billing_service.send_bill(
            db,
            bill_id,
            recipient=payload.get("recipient"),
            expected_version=expected_version,
            username=x_username,
        )
        bill_data = bill_to_dict(dispatch.bill)

    if dispatch.error is not None:
        return error_response(
            ExternalServiceError(
                f"Hóa đơn đã chuyển SENT nhưng không gửi được email: {dispatch.error.message}",
                error_code=dispatch.error.error_code or "NOTIFICATION_FAILED",
                details={"bill": bill_data, "recipient": dispatch.recipient},
            )
        )
    return _json_response({**bill_data, "recipient": dispatch.recipient})


@router.post("/freight-bills/{bill_id}/mark-paid")
def mark_paid(
    bill_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/freight-bills/:id/mark-paid - Ghi nhận đã thanh toán."""
    _, expected_version = split_version(data)

    with get_session() as db:
        bill = billing_service.mark_paid(
            db, bill_id, expected_version=expected_version, username=x_username
        )
        return _json_response(bill_to_dict(bill))


@router.post("/freight-bills/{bill_id}/cancel")
def cancel_bill(
    bill_id: str,
    data: dict[str, Any] | None = Body(default=None),
    x_username: str | None = Header(default=None),
) -> Response:
    """POST /api/freight-bills/:id/cancel - Hủy hóa đơn."""
    payload, expected_version = split_version(data)

    with get_session() as db:
        bill = billing_service.cancel_bill(
            db,
            bill_id,
            reason=payload.get("reason"),
            expected_version=expected_version,
            username=x_username,
        )
        return _json_response(bill_to_dict(bill))


@router.delete("/freight-bills/{bill_id}")
def delete_bill(
    bill_id: str,
    version: int | None = None,
    x_username: str | None = Header(default=None),
) -> Response:
    """DELETE /api/freight-bills/:id?version=N - Xóa hóa đơn chưa thanh toán."""
    with get_session() as db:
        billing_service.delete_bill(db, bill_id, expected_version=version, username=x_username)
    return _json_response({"id": bill_id, "deleted": True})


@router.get("/customers/{customer_id}/unbilled-consignments")
def get_unbilled_consignments(customer_id: str) -> Response:
    """GET /api/customers/:id/unbilled-consignments - Vận đơn chưa lập hóa đơn."""
    with get_session() as db:
        consignments, total = billing_service.get_unbilled_consignments(db, customer_id)
        return _json_response({
            "items": [consignment_summary(c) for c in consignments],
            "count": len(consignments),
            "total_amount": money(total),
        })
