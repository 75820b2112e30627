"""
Các hàm kiểm tra / chuẩn hóa dữ liệu dùng chung cho vận đơn và hóa đơn cước.

Mọi lỗi đều ném ValidationError kèm tên trường để client hiển thị đúng chỗ.
"""

from __future__ import annotations

import re
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from ..core.error_handler import ValidationError

CENT = Decimal("0.01")

TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
VEHICLE_NUMBER_RE = re.compile(r"^[A-Z]{2}[0-9]{1,2}[A-Z]{1,2}[0-9]{4}$")
DRIVER_MOBILE_RE = re.compile(r"^[6-9]\d{9}$")


def to_money(value: Any) -> Decimal:
    """Quy đổi về Decimal 2 chữ số thập phân, làm tròn half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_decimal(value: Any, field: str, *, allow_none: bool = False) -> Decimal | None:
    """Parse số thập phân không âm."""
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(f"Thiếu trường bắt buộc: {field}", field=field)
    if isinstance(value, bool):
        raise ValidationError(f"{field} phải là số", field=field)
    try:
        number = to_money(value)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} phải là số", field=field)
    if not number.is_finite():
        raise ValidationError(f"{field} phải là số hữu hạn", field=field)
    if number < 0:
        raise ValidationError(f"{field} không được âm", field=field)
    return number


def require_text(value: Any, field: str, *, max_length: int | None = None) -> str:
    """Chuỗi bắt buộc, đã strip, không rỗng."""
    if value is None or not str(value).strip():
        raise ValidationError(f"Thiếu trường bắt buộc: {field}", field=field)
    text = str(value).strip()
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} vượt quá {max_length} ký tự", field=field)
    return text


def optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_date(value: Any, field: str) -> date:
    """Parse date từ string ISO (YYYY-MM-DD) hoặc date."""
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError(f"Thiếu trường bắt buộc: {field}", field=field)
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"{field} không đúng định dạng YYYY-MM-DD", field=field)


def parse_time(value: Any, field: str) -> str:
    """Giờ dạng HH:MM (24h)."""
    text = require_text(value, field)
    if not TIME_RE.match(text):
        raise ValidationError(f"{field} phải có dạng HH:MM", field=field)
    return text


def parse_uuid(value: Any, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise ValidationError(f"{field} không hợp lệ", field=field)


def parse_email(value: Any, field: str) -> str | None:
    email = optional_text(value)
    if email is None:
        return None
    email = email.lower()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"{field} không đúng định dạng email", field=field)
    return email


def validate_weights(actual_weight: Decimal, charged_weight: Decimal) -> None:
    """Trọng lượng tính cước phải > 0 và không được nhỏ hơn trọng lượng thực."""
    if charged_weight <= 0:
        raise ValidationError(
            "Trọng lượng tính cước phải lớn hơn 0",
            error_code="WEIGHT_INVALID",
            field="charged_weight",
        )
    if charged_weight < actual_weight:
        raise ValidationError(
            "Trọng lượng tính cước không được nhỏ hơn trọng lượng thực",
            error_code="WEIGHT_INVALID",
            field="charged_weight",
        )


def parse_expected_version(data: dict) -> int | None:
    """Đọc `version` client gửi kèm để kiểm tra optimistic concurrency."""
    value = data.get("version")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("version phải là số nguyên", field="version")
