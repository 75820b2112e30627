"""
Bảng audit trail ghi lại các chuyển trạng thái của vận đơn và hóa đơn cước.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, uuid_pk


class AuditLog(Base):
    """Bảng audit log - mỗi thao tác nghiệp vụ là một dòng có timestamp."""

    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = uuid_pk()
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, index=True
    )
    user_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action: Mapped[str] = mapped_column(String(50), index=True)  # CONSIGNMENT_ASSIGN, BILL_CREATE...
    entity_type: Mapped[str] = mapped_column(String(100), index=True)  # Consignment, FreightBill
    entity_id: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
