"""
Cấu hình logging cho backend.
"""

from __future__ import annotations

import logging

from .config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Cấu hình root logger theo LOG_LEVEL (mặc định INFO)."""

    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )
    # SQL echo đã do APP_DEBUG điều khiển, tránh log trùng
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
