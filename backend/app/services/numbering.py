"""
Sinh số vận đơn và số hóa đơn cước.

- Vận đơn: `KVL-<n>`, nối tiếp số lớn nhất hiện có (bắt đầu từ 796).
- Hóa đơn: `KVL<năm><5 chữ số>`, đánh lại từ 00001 mỗi năm.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import Integer, cast, func
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.consignment import Consignment
from ..models.billing import FreightBill


def next_consignment_number(db: Session) -> str:
    prefix = f"{settings.number_prefix}-"
    last = (
        db.query(
            func.max(cast(func.substr(Consignment.consignment_number, len(prefix) + 1), Integer))
        )
        .filter(Consignment.consignment_number.like(f"{prefix}%"))
        .scalar()
    )
    next_number = settings.consignment_number_start if last is None else int(last) + 1
    return f"{prefix}{next_number}"


def next_bill_number(db: Session, on_date: date | None = None) -> str:
    year = (on_date or date.today()).year
    prefix = f"{settings.number_prefix}{year}"
    last = (
        db.query(func.max(cast(func.substr(FreightBill.bill_number, len(prefix) + 1), Integer)))
        .filter(FreightBill.bill_number.like(f"{prefix}%"))
        .scalar()
    )
    next_number = 1 if last is None else int(last) + 1
    return f"{prefix}{next_number:05d}"
