"""
Model khách hàng (người gửi / người nhận / bên thanh toán hóa đơn cước).
"""

from __future__ import annotations

import uuid

from sqlalchemy import String, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, uuid_pk


class Customer(TimestampMixin, Base):
    """Bảng khách hàng."""

    __tablename__ = "customer"

    id: Mapped[uuid.UUID] = uuid_pk()
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(50), nullable=True)
    state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pincode: Mapped[str | None] = mapped_column(String(6), nullable=True)
    mobile: Mapped[str] = mapped_column(String(15), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gst_number: Mapped[str | None] = mapped_column(String(15), nullable=True)
    pan_number: Mapped[str | None] = mapped_column(String(10), nullable=True)
    customer_type: Mapped[str] = mapped_column(String(20), default="BOTH")  # CONSIGNOR, CONSIGNEE, BOTH
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
