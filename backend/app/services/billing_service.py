"""
Service lập và quản lý hóa đơn cước (freight bill).

Bao gồm:
- Gộp các vận đơn đã giao, chưa lập hóa đơn của một khách hàng thành một hóa đơn
- Chuyển trạng thái hóa đơn: DRAFT -> GENERATED -> SENT -> PARTIALLY_PAID -> PAID, hủy
- Gửi hóa đơn qua email, sửa header / điều chỉnh, xóa hóa đơn
- Truy vấn vận đơn chưa lập hóa đơn và thống kê

Bất biến: một vận đơn chỉ nằm trong tối đa một hóa đơn chưa hủy. Việc ghi hóa đơn và
đánh dấu BILLED cho các vận đơn luôn nằm trong cùng một SAVEPOINT.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.audit_service import create_audit_log
from ..core.config import settings
from ..core.db import call_after_commit
from ..core.error_handler import (
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models.billing import AdjustmentType, BillAdjustment, BillStatus, FreightBill, FreightBillLine
from ..models.consignment import Consignment, ConsignmentStatus, PaymentStatus
from ..models.customer import Customer
from . import notification_service
from .numbering import next_bill_number
from .validation import CENT, optional_text, parse_date, parse_email, parse_uuid, require_text, to_money

logger = logging.getLogger(__name__)

ENTITY_TYPE = "freight_bill"

# Chuyển trạng thái cơ bản; chính sách thanh toán được áp thêm trong allowed_bill_transitions()
BILL_TRANSITIONS: dict[BillStatus, frozenset[BillStatus]] = {
    BillStatus.DRAFT: frozenset({BillStatus.GENERATED, BillStatus.CANCELLED}),
    BillStatus.GENERATED: frozenset({
        BillStatus.SENT,
        BillStatus.PARTIALLY_PAID,
        BillStatus.PAID,
        BillStatus.CANCELLED,
    }),
    BillStatus.SENT: frozenset({
        BillStatus.SENT,
        BillStatus.PARTIALLY_PAID,
        BillStatus.PAID,
        BillStatus.CANCELLED,
    }),
    BillStatus.PARTIALLY_PAID: frozenset({BillStatus.PAID, BillStatus.CANCELLED}),
    BillStatus.PAID: frozenset(),
    BillStatus.CANCELLED: frozenset(),
}

PAYMENT_STATUSES = frozenset({BillStatus.PARTIALLY_PAID, BillStatus.PAID})

# Trạng thái còn được sửa điều chỉnh
ADJUSTABLE_STATUSES = frozenset({BillStatus.DRAFT, BillStatus.GENERATED, BillStatus.SENT})

HEADER_FIELDS = frozenset({"bill_number", "bill_date", "billing_branch"})


@dataclass
class BillDispatch:
    """Kết quả gửi hóa đơn: hóa đơn đã SENT, email chờ gửi sau commit và lỗi mail nếu có."""

    bill: FreightBill
    bill_number: str
    recipient: str
    subject: str
    body: str
    sent: bool = False
    error: ExternalServiceError | None = None

    @property
    def delivered(self) -> bool:
        return self.sent and self.error is None


def allowed_bill_transitions(status: BillStatus) -> frozenset[BillStatus]:
    """Các trạng thái đích hợp lệ, đã áp chính sách BILL_REQUIRE_SENT_BEFORE_PAID / BILL_ALLOW_PAID_FROM_DRAFT."""
    allowed = set(BILL_TRANSITIONS.get(status, frozenset()))
    if status == BillStatus.GENERATED and settings.bill_require_sent_before_paid:
        allowed -= PAYMENT_STATUSES
    if status == BillStatus.DRAFT and settings.bill_allow_paid_from_draft:
        allowed |= PAYMENT_STATUSES
    return frozenset(allowed)


def _ensure_transition(bill: FreightBill, target: BillStatus) -> None:
    if target not in allowed_bill_transitions(bill.status):
        raise InvalidTransitionError(
            f"Hóa đơn {bill.bill_number} đang {bill.status.value}, không thể chuyển sang {target.value}",
            current_status=bill.status.value,
        )


def _parse_status(value: Any) -> BillStatus:
    try:
        return value if isinstance(value, BillStatus) else BillStatus(str(value).upper())
    except ValueError:
        raise ValidationError(f"Trạng thái hóa đơn không hợp lệ: {value}", field="status")


def get_bill(db: Session, bill_id: Any) -> FreightBill:
    bid = parse_uuid(bill_id, "bill_id")
    bill = db.get(FreightBill, bid)
    if not bill:
        raise NotFoundError(f"Hóa đơn không tồn tại: {bill_id}", error_code="BILL_NOT_FOUND")
    return bill


def _check_version(bill: FreightBill, expected_version: int | None) -> int:
    if expected_version is not None and expected_version != bill.version:
        raise ConflictError(
            f"Hóa đơn {bill.bill_number} đã bị thay đổi "
            f"(version {bill.version}, client gửi {expected_version}), vui lòng tải lại",
            error_code="STALE_VERSION",
        )
    return bill.version


def _compare_and_set(
    db: Session,
    bill: FreightBill,
    expected_status: BillStatus,
    expected_version: int,
    values: dict[str, Any],
) -> None:
    result = db.execute(
        update(FreightBill)
        .where(
            FreightBill.id == bill.id,
            FreightBill.status == expected_status,
            FreightBill.version == expected_version,
        )
        .values(**values, version=FreightBill.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Hóa đơn {bill.bill_number} đã bị người khác cập nhật, vui lòng tải lại",
            error_code="STALE_VERSION",
        )
    db.refresh(bill)


def _sync_consignments(db: Session, consignment_ids: list[uuid.UUID]) -> None:
    """Nạp lại các vận đơn đang có trong session sau UPDATE hàng loạt."""
    if consignment_ids:
        db.query(Consignment).filter(Consignment.id.in_(consignment_ids)).populate_existing().all()


def _audit(
    db: Session,
    bill: FreightBill,
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
        entity_id=str(bill.id),
        username=username,
        old_values=old_values,
        new_values=new_values,
        description=description,
    )


# ---------------------------------------------------------------------------
# Điều chỉnh & số tiền
# ---------------------------------------------------------------------------


def parse_adjustments(raw: Any) -> list[BillAdjustment]:
    """
    Chuẩn hóa danh sách điều chỉnh.

    - amount lưu dưới dạng độ lớn không âm; dấu suy ra từ type (DISCOUNT là trừ)
    - khoản có amount = 0 bị bỏ qua
    - khoản có amount khác 0 bắt buộc có description
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("adjustments phải là danh sách", field="adjustments")

    adjustments: list[BillAdjustment] = []
    for index, item in enumerate(raw):
        field = f"adjustments[{index}]"
        if not isinstance(item, dict):
            raise ValidationError(f"{field} không hợp lệ", field=field)

        try:
            adj_type = AdjustmentType(str(item.get("type", "")).upper())
        except ValueError:
            raise ValidationError(
                f"{field}.type không hợp lệ: {item.get('type')}", field=f"{field}.type"
            )

        try:
            amount = abs(to_money(item.get("amount", 0)))
        except (ArithmeticError, ValueError):
            raise ValidationError(f"{field}.amount phải là số", field=f"{field}.amount")
        if not amount.is_finite():
            raise ValidationError(f"{field}.amount phải là số hữu hạn", field=f"{field}.amount")
        if amount == 0:
            continue

        description = optional_text(item.get("description"))
        if not description:
            raise ValidationError(
                f"{field}: điều chỉnh khác 0 phải có mô tả",
                error_code="ADJUSTMENT_DESCRIPTION_REQUIRED",
                field=f"{field}.description",
            )

        adjustments.append(
            BillAdjustment(
                position=len(adjustments) + 1,
                type=adj_type,
                description=description[:200],
                amount=amount,
            )
        )
    return adjustments


def compute_final_amount(total: Decimal, adjustments: list[BillAdjustment]) -> tuple[Decimal, Decimal]:
    """Trả về (giá trị thô, final_amount đã chặn dưới tại 0)."""
    raw = (total + sum((adj.signed_amount for adj in adjustments), Decimal("0"))).quantize(CENT)
    return raw, max(Decimal("0.00"), raw)


def _final_amount_or_raise(total: Decimal, adjustments: list[BillAdjustment]) -> Decimal:
    raw, final = compute_final_amount(total, adjustments)
    if raw < 0:
        raise ValidationError(
            f"Tổng giảm trừ vượt quá giá trị hóa đơn (thành tiền {raw})",
            error_code="FINAL_AMOUNT_NEGATIVE",
            field="adjustments",
        )
    return final


def _line_rate(freight: Decimal, charged_weight: Decimal) -> Decimal:
    if not charged_weight:
        return Decimal("0.00")
    return to_money(freight / charged_weight)


# ---------------------------------------------------------------------------
# Lập hóa đơn
# ---------------------------------------------------------------------------


def create_bill(
    db: Session,
    customer_id: Any,
    billing_branch: Any,
    consignment_ids: Any,
    adjustments: Any = None,
    status: Any = BillStatus.DRAFT,
    bill_date: Any = None,
    idempotency_key: str | None = None,
    username: str | None = None,
) -> FreightBill:
    """
    Lập hóa đơn cước cho một khách hàng từ các vận đơn đã chọn.

    Logic:
    - Khách hàng phải tồn tại
    - Mỗi vận đơn phải thuộc khách hàng (người gửi hoặc người nhận), đã DELIVERED và UNBILLED;
      chỉ cần một vận đơn không đạt là cả hóa đơn bị từ chối
    - Dòng hóa đơn là bản chụp vận đơn; total_amount = tổng grand_total
    - final_amount = total - giảm trừ + phụ phí, không được âm
    - Ghi hóa đơn và chuyển các vận đơn sang BILLED trong cùng SAVEPOINT

    Nếu idempotency_key đã được dùng cho cùng khách hàng thì trả lại hóa đơn cũ.

    Raises:
        ValidationError: dữ liệu sai, vận đơn không thuộc khách hàng / chưa giao, thành tiền âm
        NotFoundError: khách hàng hoặc vận đơn không tồn tại
        ConflictError: vận đơn đã nằm trong hóa đơn khác, trùng số hóa đơn
    """
    bill_status = _parse_status(status)
    if bill_status not in (BillStatus.DRAFT, BillStatus.GENERATED):
        raise ValidationError(
            "Hóa đơn mới chỉ được tạo ở trạng thái DRAFT hoặc GENERATED", field="status"
        )

    cust_id = parse_uuid(customer_id, "customer_id")
    key = optional_text(idempotency_key)
    if key:
        existing = db.query(FreightBill).filter(FreightBill.idempotency_key == key).first()
        if existing:
            if existing.customer_id != cust_id:
                raise ConflictError(
                    "Idempotency key đã được dùng cho khách hàng khác",
                    error_code="IDEMPOTENCY_KEY_REUSED",
                )
            logger.info("Idempotency key %s: trả lại hóa đơn %s", key, existing.bill_number)
            return existing

    customer = db.get(Customer, cust_id)
    if not customer:
        raise NotFoundError(f"Khách hàng không tồn tại: {customer_id}", error_code="CUSTOMER_NOT_FOUND")

    branch = require_text(billing_branch, "billing_branch", max_length=50)

    if not isinstance(consignment_ids, list) or not consignment_ids:
        raise ValidationError("Phải chọn ít nhất một vận đơn", field="consignment_ids")
    ids = [parse_uuid(value, "consignment_ids") for value in consignment_ids]
    if len(set(ids)) != len(ids):
        raise ValidationError("Danh sách vận đơn bị trùng", field="consignment_ids")

    found = {
        c.id: c
        for c in db.query(Consignment)
        .filter(Consignment.id.in_(ids), Consignment.is_deleted.is_(False))
        .all()
    }
    missing = [str(cid) for cid in ids if cid not in found]
    if missing:
        raise NotFoundError(
            f"Vận đơn không tồn tại: {', '.join(missing)}", error_code="CONSIGNMENT_NOT_FOUND"
        )

    consignments = [found[cid] for cid in ids]
    for c in consignments:
        if not c.belongs_to(customer.id):
            raise ValidationError(
                f"Vận đơn {c.consignment_number} không thuộc khách hàng {customer.name}",
                error_code="CONSIGNMENT_NOT_OWNED",
                field="consignment_ids",
            )
        if c.status != ConsignmentStatus.DELIVERED:
            raise ValidationError(
                f"Vận đơn {c.consignment_number} chưa giao xong ({c.status.value})",
                error_code="CONSIGNMENT_NOT_DELIVERED",
                field="consignment_ids",
            )
        if c.payment_status != PaymentStatus.UNBILLED or c.freight_bill_id is not None:
            raise ConflictError(
                f"Vận đơn {c.consignment_number} đã được lập hóa đơn ({c.payment_status.value})",
                error_code="ALREADY_BILLED",
            )

    lines = [
        FreightBillLine(
            position=position,
            consignment_id=c.id,
            consignment_number=c.consignment_number,
            consignment_date=c.booking_date,
            destination=c.to_city,
            charged_weight=c.charged_weight,
            rate=_line_rate(c.freight, c.charged_weight),
            freight=c.freight,
            grand_total=c.grand_total,
        )
        for position, c in enumerate(consignments, start=1)
    ]
    total = sum((line.grand_total for line in lines), Decimal("0")).quantize(CENT)

    parsed_adjustments = parse_adjustments(adjustments)
    final = _final_amount_or_raise(total, parsed_adjustments)

    on_date = parse_date(bill_date, "bill_date") if bill_date else date.today()
    now = datetime.utcnow()
    bill = FreightBill(
        id=uuid.uuid4(),
        bill_number=next_bill_number(db, on_date),
        bill_date=on_date,
        billing_branch=branch,
        customer_id=customer.id,
        party_name=customer.name,
        party_address=customer.address,
        party_gst_number=customer.gst_number,
        total_amount=total,
        final_amount=final,
        status=bill_status,
        idempotency_key=key,
        created_by=username,
        lines=lines,
        adjustments=parsed_adjustments,
    )

    try:
        with db.begin_nested():
            db.add(bill)
            db.flush()

            result = db.execute(
                update(Consignment)
                .where(
                    Consignment.id.in_(ids),
                    Consignment.status == ConsignmentStatus.DELIVERED,
                    Consignment.payment_status == PaymentStatus.UNBILLED,
                    Consignment.freight_bill_id.is_(None),
                    Consignment.is_deleted.is_(False),
                )
                .values(
                    payment_status=PaymentStatus.BILLED,
                    freight_bill_id=bill.id,
                    billed_date=now,
                    version=Consignment.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(ids):
                raise ConflictError(
                    "Một số vận đơn vừa được lập hóa đơn bởi người khác, vui lòng tải lại",
                    error_code="ALREADY_BILLED",
                )

            _audit(
                db,
                bill,
                "CREATE",
                None,
                {
                    "status": bill.status.value,
                    "total_amount": str(total),
                    "final_amount": str(final),
                    "consignment_ids": [str(cid) for cid in ids],
                },
                username,
                f"Lập hóa đơn {bill.bill_number} cho {customer.name} ({len(ids)} vận đơn)",
            )
    except IntegrityError as e:
        logger.warning("Lập hóa đơn thất bại do trùng dữ liệu: %s", str(e))
        raise ConflictError(
            "Số hóa đơn hoặc idempotency key đã tồn tại, vui lòng thử lại",
            error_code="DUPLICATE_NUMBER",
        ) from e
    finally:
        _sync_consignments(db, ids)

    logger.info(
        "Lập hóa đơn %s: %s vận đơn, tổng %s, thành tiền %s",
        bill.bill_number,
        len(ids),
        total,
        final,
    )
    return bill


# ---------------------------------------------------------------------------
# Chuyển trạng thái
# ---------------------------------------------------------------------------


def change_bill_status(
    db: Session,
    bill_id: Any,
    status: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> FreightBill:
    """Chuyển trạng thái tổng quát; PAID và CANCELLED đi qua mark_paid / cancel_bill."""
    target = _parse_status(status)
    if target == BillStatus.PAID:
        return mark_paid(db, bill_id, expected_version=expected_version, username=username)
    if target == BillStatus.CANCELLED:
        return cancel_bill(db, bill_id, expected_version=expected_version, username=username)

    bill = get_bill(db, bill_id)
    _ensure_transition(bill, target)
    version = _check_version(bill, expected_version)
    old_status = bill.status

    values: dict[str, Any] = {"status": target}
    if target == BillStatus.SENT:
        values["sent_at"] = datetime.utcnow()
    _compare_and_set(db, bill, old_status, version, values)

    _audit(
        db,
        bill,
        "STATUS_CHANGE",
        {"status": old_status.value, "version": version},
        {"status": target.value, "version": bill.version},
        username,
        f"Hóa đơn {bill.bill_number}: {old_status.value} -> {target.value}",
    )
    logger.info("Hóa đơn %s: %s -> %s", bill.bill_number, old_status.value, target.value)
    return bill


def send_bill(
    db: Session,
    bill_id: Any,
    recipient: Any = None,
    expected_version: int | None = None,
    username: str | None = None,
    mailer: Callable[[str, str, str], None] | None = None,
) -> BillDispatch:
    """
    Gửi hóa đơn cho khách (GENERATED / SENT -> SENT), email đi sau khi commit.

    Email được render ngay nhưng chỉ gửi khi trạng thái SENT đã commit; lỗi gửi mail
    không hoàn tác SENT mà được ghi vào BillDispatch.error để tầng API trả 502.
    """
    bill = get_bill(db, bill_id)
    if bill.status not in (BillStatus.GENERATED, BillStatus.SENT):
        raise InvalidTransitionError(
            f"Hóa đơn {bill.bill_number} đang {bill.status.value}, chỉ gửi được khi GENERATED hoặc SENT",
            current_status=bill.status.value,
        )

    to_email = parse_email(recipient, "recipient")
    if not to_email:
        customer = db.get(Customer, bill.customer_id)
        to_email = parse_email(customer.email if customer else None, "recipient")
    if not to_email:
        raise ValidationError("Khách hàng chưa có email, cần nhập người nhận", field="recipient")

    version = _check_version(bill, expected_version)
    old_status = bill.status
    _compare_and_set(
        db, bill, old_status, version, {"status": BillStatus.SENT, "sent_at": datetime.utcnow()}
    )
    _audit(
        db,
        bill,
        "SEND",
        {"status": old_status.value, "version": version},
        {"status": bill.status.value, "version": bill.version, "recipient": to_email},
        username,
        f"Gửi hóa đơn {bill.bill_number} tới {to_email}",
    )
    db.flush()

    dispatch = BillDispatch(
        bill=bill,
        bill_number=bill.bill_number,
        recipient=to_email,
        subject=f"Freight Bill {bill.bill_number}",
        body=notification_service.render_template("freight_bill.txt", bill=bill),
    )
    call_after_commit(db, lambda: _deliver_bill(dispatch, mailer))
    return dispatch


def _deliver_bill(dispatch: BillDispatch, mailer: Callable[[str, str, str], None] | None) -> None:
    send = mailer or notification_service.send_email
    try:
        send(dispatch.recipient, dispatch.subject, dispatch.body)
    except ExternalServiceError as e:
        logger.error("Hóa đơn %s đã SENT nhưng gửi email lỗi: %s", dispatch.bill_number, e.message)
        dispatch.error = e
    else:
        dispatch.sent = True


def mark_paid(
    db: Session,
    bill_id: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> FreightBill:
    """Đánh dấu hóa đơn đã thanh toán; các vận đơn BILLED của hóa đơn chuyển sang PAID."""
    bill = get_bill(db, bill_id)
    _ensure_transition(bill, BillStatus.PAID)
    version = _check_version(bill, expected_version)
    old_status = bill.status
    ids = bill.consignment_ids

    try:
        with db.begin_nested():
            _compare_and_set(
                db,
                bill,
                old_status,
                version,
                {"status": BillStatus.PAID, "paid_at": datetime.utcnow()},
            )
            result = db.execute(
                update(Consignment)
                .where(
                    Consignment.freight_bill_id == bill.id,
                    Consignment.payment_status == PaymentStatus.BILLED,
                )
                .values(payment_status=PaymentStatus.PAID, version=Consignment.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(ids):
                logger.warning(
                    "Hóa đơn %s: %s/%s vận đơn chuyển sang PAID",
                    bill.bill_number,
                    result.rowcount,
                    len(ids),
                )
            _audit(
                db,
                bill,
                "MARK_PAID",
                {"status": old_status.value, "version": version},
                {"status": BillStatus.PAID.value, "version": bill.version},
                username,
                f"Hóa đơn {bill.bill_number} đã thanh toán",
            )
    except IntegrityError as e:
        raise ConflictError(f"Không thể thanh toán hóa đơn {bill.bill_number}") from e
    finally:
        _sync_consignments(db, ids)

    logger.info("Hóa đơn %s: %s -> PAID", bill.bill_number, old_status.value)
    return bill


def cancel_bill(
    db: Session,
    bill_id: Any,
    reason: str | None = None,
    expected_version: int | None = None,
    username: str | None = None,
) -> FreightBill:
    """Hủy hóa đơn; các vận đơn BILLED trở lại UNBILLED và được gỡ khỏi hóa đơn."""
    bill = get_bill(db, bill_id)
    _ensure_transition(bill, BillStatus.CANCELLED)
    version = _check_version(bill, expected_version)
    old_status = bill.status
    ids = bill.consignment_ids

    try:
        with db.begin_nested():
            _compare_and_set(
                db,
                bill,
                old_status,
                version,
                {"status": BillStatus.CANCELLED, "cancelled_at": datetime.utcnow()},
            )
            released = _unlink_consignments(db, bill)
            _audit(
                db,
                bill,
                "CANCEL",
                {"status": old_status.value, "version": version},
                {
                    "status": BillStatus.CANCELLED.value,
                    "version": bill.version,
                    "released_consignments": released,
                },
                username,
                f"Hủy hóa đơn {bill.bill_number}" + (f": {reason}" if reason else ""),
            )
    except IntegrityError as e:
        raise ConflictError(f"Không thể hủy hóa đơn {bill.bill_number}") from e
    finally:
        _sync_consignments(db, ids)

    logger.info("Hủy hóa đơn %s, trả %s vận đơn về UNBILLED", bill.bill_number, released)
    return bill


def _unlink_consignments(db: Session, bill: FreightBill) -> int:
    """BILLED -> UNBILLED cho vận đơn thuộc hóa đơn; vận đơn đã PAID giữ nguyên trạng thái."""
    paid = (
        db.query(Consignment.consignment_number)
        .filter(
            Consignment.freight_bill_id == bill.id,
            Consignment.payment_status == PaymentStatus.PAID,
        )
        .all()
    )
    if paid:
        logger.warning(
            "Hóa đơn %s: bỏ qua vận đơn đã PAID %s",
            bill.bill_number,
            ", ".join(number for (number,) in paid),
        )

    result = db.execute(
        update(Consignment)
        .where(
            Consignment.freight_bill_id == bill.id,
            Consignment.payment_status == PaymentStatus.BILLED,
        )
        .values(
            payment_status=PaymentStatus.UNBILLED,
            freight_bill_id=None,
            billed_date=None,
            version=Consignment.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ---------------------------------------------------------------------------
# Sửa / xóa hóa đơn
# ---------------------------------------------------------------------------


def update_bill_header(
    db: Session,
    bill_id: Any,
    changes: dict[str, Any],
    expected_version: int | None = None,
    username: str | None = None,
) -> FreightBill:
    """Sửa số hóa đơn, ngày hóa đơn, chi nhánh; không cho sửa khi PAID / CANCELLED."""
    bill = get_bill(db, bill_id)
    if bill.status in (BillStatus.PAID, BillStatus.CANCELLED):
        raise InvalidTransitionError(
            f"Hóa đơn {bill.bill_number} đã {bill.status.value}, không thể sửa",
            error_code="BILL_LOCKED",
            current_status=bill.status.value,
        )

    unknown = sorted(set(changes) - HEADER_FIELDS)
    if unknown:
        raise ValidationError(f"Không được sửa trường: {', '.join(unknown)}", field=unknown[0])
    if not changes:
        raise ValidationError("Không có thay đổi nào")

    values: dict[str, Any] = {}
    if "bill_number" in changes:
        number = require_text(changes["bill_number"], "bill_number", max_length=30).upper()
        duplicate = (
            db.query(FreightBill.id)
            .filter(FreightBill.bill_number == number, FreightBill.id != bill.id)
            .first()
        )
        if duplicate:
            raise ConflictError(f"Số hóa đơn đã tồn tại: {number}", error_code="DUPLICATE_NUMBER")
        values["bill_number"] = number
    if "bill_date" in changes:
        values["bill_date"] = parse_date(changes["bill_date"], "bill_date")
    if "billing_branch" in changes:
        values["billing_branch"] = require_text(
            changes["billing_branch"], "billing_branch", max_length=50
        )

    old_values = {field: str(getattr(bill, field)) for field in values}
    version = _check_version(bill, expected_version)
    try:
        with db.begin_nested():
            _compare_and_set(db, bill, bill.status, version, values)
    except IntegrityError as e:
        raise ConflictError(
            f"Số hóa đơn đã tồn tại: {values.get('bill_number')}", error_code="DUPLICATE_NUMBER"
        ) from e

    _audit(
        db,
        bill,
        "UPDATE",
        old_values,
        {field: str(value) for field, value in values.items()},
        username,
        f"Sửa thông tin hóa đơn {bill.bill_number}",
    )
    return bill


def update_bill_adjustments(
    db: Session,
    bill_id: Any,
    adjustments: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> FreightBill:
    """Thay toàn bộ điều chỉnh và tính lại final_amount; total_amount giữ nguyên."""
    bill = get_bill(db, bill_id)
    if bill.status not in ADJUSTABLE_STATUSES:
        raise InvalidTransitionError(
            f"Hóa đơn {bill.bill_number} đang {bill.status.value}, không thể sửa điều chỉnh",
            error_code="BILL_LOCKED",
            current_status=bill.status.value,
        )

    parsed = parse_adjustments(adjustments)
    final = _final_amount_or_raise(bill.total_amount, parsed)
    old_final = bill.final_amount
    version = _check_version(bill, expected_version)

    with db.begin_nested():
        _compare_and_set(db, bill, bill.status, version, {"final_amount": final})
        bill.adjustments = parsed
        db.flush()
        _audit(
            db,
            bill,
            "UPDATE_ADJUSTMENTS",
            {"final_amount": str(old_final)},
            {
                "final_amount": str(final),
                "adjustments": [
                    {"type": adj.type.value, "description": adj.description, "amount": str(adj.amount)}
                    for adj in parsed
                ],
            },
            username,
            f"Sửa điều chỉnh hóa đơn {bill.bill_number}",
        )
    return bill


def delete_bill(
    db: Session,
    bill_id: Any,
    expected_version: int | None = None,
    username: str | None = None,
) -> None:
    """Xóa hóa đơn chưa ghi nhận thanh toán; vận đơn BILLED trở lại UNBILLED."""
    bill = get_bill(db, bill_id)
    if bill.status in PAYMENT_STATUSES:
        raise InvalidTransitionError(
            f"Hóa đơn {bill.bill_number} đã ghi nhận thanh toán, không thể xóa",
            error_code="BILL_LOCKED",
            current_status=bill.status.value,
        )
    version = _check_version(bill, expected_version)
    ids = bill.consignment_ids
    bill_number = bill.bill_number
    entity_id = str(bill.id)

    try:
        with db.begin_nested():
            _compare_and_set(db, bill, bill.status, version, {})
            released = _unlink_consignments(db, bill)
            # Vận đơn PAID (nếu có) vẫn phải gỡ liên kết để xóa được hóa đơn
            db.execute(
                update(Consignment)
                .where(Consignment.freight_bill_id == bill.id)
                .values(freight_bill_id=None)
                .execution_options(synchronize_session=False)
            )
            db.delete(bill)
            db.flush()
            create_audit_log(
                db,
                action="DELETE",
                entity_type=ENTITY_TYPE,
                entity_id=entity_id,
                username=username,
                old_values={"bill_number": bill_number, "consignment_ids": [str(cid) for cid in ids]},
                new_values={"released_consignments": released},
                description=f"Xóa hóa đơn {bill_number}",
            )
    except IntegrityError as e:
        raise ConflictError(f"Không thể xóa hóa đơn {bill_number}") from e
    finally:
        _sync_consignments(db, ids)

    logger.info("Xóa hóa đơn %s", bill_number)


# ---------------------------------------------------------------------------
# Truy vấn
# ---------------------------------------------------------------------------


def get_unbilled_consignments(db: Session, customer_id: Any) -> tuple[list[Consignment], Decimal]:
    """
    Vận đơn DELIVERED + UNBILLED của khách hàng (người gửi hoặc người nhận).

    Sắp xếp theo ngày đặt tăng dần, cùng ngày thì theo số vận đơn. Trả về (danh sách, tổng tiền).
    """
    cust_id = parse_uuid(customer_id, "customer_id")
    if not db.get(Customer, cust_id):
        raise NotFoundError(f"Khách hàng không tồn tại: {customer_id}", error_code="CUSTOMER_NOT_FOUND")

    consignments = (
        db.query(Consignment)
        .filter(
            or_(
                Consignment.consignor_customer_id == cust_id,
                Consignment.consignee_customer_id == cust_id,
            ),
            Consignment.status == ConsignmentStatus.DELIVERED,
            Consignment.payment_status == PaymentStatus.UNBILLED,
            Consignment.freight_bill_id.is_(None),
            Consignment.is_deleted.is_(False),
        )
        .order_by(Consignment.booking_date.asc(), Consignment.consignment_number.asc())
        .all()
    )
    total = sum((c.grand_total for c in consignments), Decimal("0")).quantize(CENT)
    return consignments, total


def get_bill_statistics(
    db: Session, from_date: Any = None, to_date: Any = None
) -> dict[str, Any]:
    """Thống kê số lượng / số tiền hóa đơn đã thu và còn phải thu (bỏ qua hóa đơn đã hủy)."""
    query = db.query(
        FreightBill.status,
        func.count(FreightBill.id),
        func.coalesce(func.sum(FreightBill.final_amount), 0),
    ).filter(FreightBill.status != BillStatus.CANCELLED)

    if from_date:
        query = query.filter(FreightBill.bill_date >= parse_date(from_date, "from_date"))
    if to_date:
        query = query.filter(FreightBill.bill_date <= parse_date(to_date, "to_date"))

    by_status: dict[str, dict[str, Any]] = {}
    for status, count, amount in query.group_by(FreightBill.status).all():
        by_status[BillStatus(status).value] = {"count": count, "amount": to_money(amount)}

    def total_of(key: str, statuses: list[BillStatus]) -> Any:
        values = [by_status[s.value][key] for s in statuses if s.value in by_status]
        return sum(values, Decimal("0.00") if key == "amount" else 0)

    pending = [s for s in BillStatus if s not in (BillStatus.PAID, BillStatus.CANCELLED)]
    return {
        "total_bills": total_of("count", list(BillStatus)),
        "total_amount": total_of("amount", list(BillStatus)),
        "paid_bills": total_of("count", [BillStatus.PAID]),
        "paid_amount": total_of("amount", [BillStatus.PAID]),
        "pending_bills": total_of("count", pending),
        "pending_amount": total_of("amount", pending),
        "by_status": by_status,
    }


def list_bills(
    db: Session,
    status: str | None = None,
    customer_id: Any = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[FreightBill], int]:
    query = db.query(FreightBill)
    if status:
        query = query.filter(FreightBill.status == _parse_status(status))
    if customer_id:
        query = query.filter(FreightBill.customer_id == parse_uuid(customer_id, "customer_id"))

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = query.count()
    items = (
        query.order_by(FreightBill.bill_date.desc(), FreightBill.bill_number.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total
