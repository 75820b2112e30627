"""
Config chung cho backend quản trị vận tải (FastAPI).

- Đọc cấu hình từ biến môi trường (.env) cho DB, mail API, chính sách hóa đơn...
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Cấu hình ứng dụng backend.

    Sử dụng biến môi trường để dễ triển khai nhiều môi trường.
    """

    app_name: str = "KVL Logistics Admin"
    company_name: str = os.getenv("COMPANY_NAME", "KVL Logistics")
    debug: bool = _env_flag("APP_DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    db_path: str = os.getenv("DB_PATH", "data/kvl_logistics.db")

    # Đánh số vận đơn / hóa đơn cước
    number_prefix: str = os.getenv("NUMBER_PREFIX", "KVL")
    consignment_number_start: int = int(os.getenv("CONSIGNMENT_NUMBER_START", "796"))

    # Mail API (tương thích SendGrid v3)
    mail_api_url: str = os.getenv("MAIL_API_URL", "https://api.sendgrid.com/v3/mail/send")
    mail_api_key: str | None = os.getenv("MAIL_API_KEY", None)
    mail_from: str | None = os.getenv("MAIL_FROM", None)
    mail_timeout: float = float(os.getenv("MAIL_TIMEOUT", "10"))

    # Chính sách trạng thái hóa đơn cước
    bill_require_sent_before_paid: bool = _env_flag("BILL_REQUIRE_SENT_BEFORE_PAID")
    bill_allow_paid_from_draft: bool = _env_flag("BILL_ALLOW_PAID_FROM_DRAFT")

    @property
    def sqlalchemy_database_uri(self) -> str:
        """Trả về connection string cho SQLite.

        SQLite URI format: sqlite:///path/to/database.db
        Hoặc sqlite:///:memory: cho in-memory database
        """
        return f"sqlite:///{self.db_path}"


settings = Settings()
