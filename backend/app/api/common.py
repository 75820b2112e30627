"""
Helper dùng chung cho các module API.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from ..services.validation import parse_expected_version

# Tham số phân trang mặc định
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20


def split_version(data: dict[str, Any] | None) -> tuple[dict[str, Any], int | None]:
    """Tách `version` (token optimistic concurrency) khỏi phần dữ liệu cần sửa."""
    data = data or {}
    changes = {key: value for key, value in data.items() if key != "version"}
    return changes, parse_expected_version(data)


def money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None
