"""
Unit tests cho notification_service: render template và gọi mail API qua httpx.
"""

import json

import httpx
import pytest

from backend.app.core.config import settings
from backend.app.core.db import commit_and_dispatch
from backend.app.core.error_handler import ExternalServiceError
from backend.app.services import notification_service

# Hàm gửi thật, lấy trước khi fixture mailbox thay thế
real_send_email = notification_service.send_email
RealClient = httpx.Client


@pytest.fixture
def mail_api(monkeypatch):
    """Cấu hình mail API và chặn request bằng httpx.MockTransport."""
    requests: list[httpx.Request] = []
    state = {"status_code": 202}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(state["status_code"])

    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(settings, "mail_api_key", "test-key")
    monkeypatch.setattr(settings, "mail_from", "noreply@kvl.example.com")
    monkeypatch.setattr(
        notification_service.httpx,
        "Client",
        lambda **kwargs: RealClient(transport=transport, **kwargs),
    )
    return requests, state


@pytest.mark.p1
def test_send_email_posts_to_mail_api(mail_api):
    requests, _ = mail_api

    real_send_email("khach@example.com", "Xin chào", "Nội dung")

    assert len(requests) == 1
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == settings.mail_api_url
    assert request.headers["Authorization"] == "Bearer test-key"
    payload = json.loads(request.content)
    assert payload["personalizations"][0]["to"][0]["email"] == "khach@example.com"
    assert payload["from"]["email"] == "noreply@kvl.example.com"
    assert payload["subject"] == "Xin chào"
    assert payload["content"][0] == {"type": "text/plain", "value": "Nội dung"}


@pytest.mark.p1
def test_send_email_raises_on_api_error(mail_api):
    _, state = mail_api
    state["status_code"] = 500

    with pytest.raises(ExternalServiceError) as exc_info:
        real_send_email("khach@example.com", "Xin chào", "Nội dung")

    assert exc_info.value.error_code == "NOTIFICATION_FAILED"
    assert exc_info.value.status_code == 502


@pytest.mark.p1
def test_send_email_without_configuration(monkeypatch):
    monkeypatch.setattr(settings, "mail_api_key", None)

    with pytest.raises(ExternalServiceError) as exc_info:
        real_send_email("khach@example.com", "Xin chào", "Nội dung")

    assert exc_info.value.error_code == "MAIL_NOT_CONFIGURED"


@pytest.mark.p2
def test_render_template_adds_company_name(test_db):
    from tests.utils.factories import create_test_consignment

    consignment = create_test_consignment(test_db, consignment_number="KVL-1001")

    body = notification_service.render_template("booking_confirmed.txt", consignment=consignment)

    assert "KVL-1001" in body
    assert settings.company_name in body
    assert "Bengaluru -> To: Chennai" in body


@pytest.mark.p2
def test_notify_consignor_skips_missing_email(test_db, mailbox):
    from tests.utils.factories import create_test_consignment

    consignment = create_test_consignment(test_db)

    sent = notification_service.notify_consignor(
        test_db, consignment, "booking_confirmed.txt", "Booked"
    )
    commit_and_dispatch(test_db)

    assert sent is False
    assert mailbox.sent == []


@pytest.mark.p1
def test_notify_consignor_swallows_template_errors(test_db, mailbox):
    from tests.utils.factories import create_test_consignment

    consignment = create_test_consignment(test_db, consignor_email="ganesh@example.com")

    sent = notification_service.notify_consignor(
        test_db, consignment, "khong_ton_tai.txt", "Booked"
    )
    commit_and_dispatch(test_db)

    assert sent is False
    assert mailbox.sent == []


@pytest.mark.p1
def test_notify_consignor_drops_email_on_rollback(test_db, mailbox):
    from backend.app.core import db
    from tests.utils.factories import create_test_consignment

    consignment = create_test_consignment(test_db, consignor_email="ganesh@example.com")

    with pytest.raises(RuntimeError):
        with db.get_session() as session:
            notification_service.notify_consignor(
                session, consignment, "booking_confirmed.txt", "Booked"
            )
            raise RuntimeError("lỗi sau khi xếp email")

    commit_and_dispatch(test_db)
    assert mailbox.sent == []
