"""
Service xử lý thông báo qua email.

Bao gồm:
- Gửi email qua HTTP mail API (tương thích SendGrid v3)
- Render nội dung email từ template Jinja2
- Gửi thông báo cho người gửi hàng theo kiểu fire-and-forget, sau khi commit
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.db import call_after_commit
from ..core.error_handler import ExternalServiceError
from ..models.consignment import Consignment

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=False,  # email dạng text/plain
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_template(template_name: str, **context: object) -> str:
    """Render template email, tự thêm tên công ty vào context."""
    context.setdefault("company_name", settings.company_name)
    return env.get_template(template_name).render(**context)


def send_email(recipient: str, subject: str, body: str) -> None:
    """
    Gửi email qua mail API.

    Args:
        recipient: Địa chỉ người nhận
        subject: Tiêu đề
        body: Nội dung text/plain

    Raises:
        ExternalServiceError: chưa cấu hình mail API hoặc API trả lỗi
    """
    if not settings.mail_api_key or not settings.mail_from:
        raise ExternalServiceError(
            "Mail API chưa được cấu hình (MAIL_API_KEY / MAIL_FROM)",
            error_code="MAIL_NOT_CONFIGURED",
        )

    payload = {
        "personalizations": [{"to": [{"email": recipient}]}],
        "from": {"email": settings.mail_from, "name": settings.company_name},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    headers = {"Authorization": f"Bearer {settings.mail_api_key}"}

    try:
        with httpx.Client(timeout=settings.mail_timeout) as client:
            response = client.post(settings.mail_api_url, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Lỗi khi gửi email tới %s: %s", recipient, str(e))
        raise ExternalServiceError(
            f"Không gửi được email tới {recipient}",
            error_code="NOTIFICATION_FAILED",
        ) from e

    logger.info("Đã gửi email '%s' tới %s", subject, recipient)


def _send_quietly(recipient: str, subject: str, body: str, reference: str) -> None:
    try:
        send_email(recipient, subject, body)
    except ExternalServiceError as e:
        logger.warning("Bỏ qua lỗi gửi thông báo %s: %s", reference, e.message)


def notify_consignor(
    db: Session, consignment: Consignment, template_name: str, subject: str
) -> bool:
    """
    Xếp email cho người gửi hàng, chỉ gửi sau khi transaction của `db` commit.

    Không bao giờ ném lỗi: lỗi render template hoặc lỗi mail API chỉ được ghi log.

    Returns:
        True nếu email đã được xếp hàng chờ gửi
    """
    number = consignment.consignment_number
    if not consignment.consignor_email:
        logger.debug("Vận đơn %s: người gửi không có email", number)
        return False

    try:
        body = render_template(template_name, consignment=consignment)
    except TemplateError as e:
        logger.error("Không render được template %s cho vận đơn %s: %s", template_name, number, e)
        return False

    recipient = consignment.consignor_email
    call_after_commit(db, lambda: _send_quietly(recipient, subject, body, number))
    return True
