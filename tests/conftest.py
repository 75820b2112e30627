"""
Pytest configuration và fixtures cho tests.

Fixtures:
- test_db: Test database session (mỗi test một transaction, rollback khi xong)
- mailbox: Thay hàm gửi email bằng bộ ghi, không gọi mail API thật
- test_client: Test HTTP client cho FastAPI app
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

# Override database path cho tests - sử dụng in-memory SQLite
os.environ["DB_PATH"] = ":memory:"

# Import sau khi set environment variable
import backend.app.models  # noqa: E402,F401
from backend.app.core.db import configure_sqlite_engine  # noqa: E402
from backend.app.models.base import Base  # noqa: E402


@pytest.fixture(scope="session")
def test_db_engine():
    """Tạo SQLite in-memory engine cho tests (một connection dùng chung)."""
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    # Bật foreign keys và SAVEPOINT giống engine thật
    configure_sqlite_engine(engine)

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db(test_db_engine) -> Generator[Session, None, None]:
    """Tạo database session cho mỗi test.

    Mỗi test chạy trong transaction riêng; commit của code ứng dụng chỉ giải phóng
    SAVEPOINT nên toàn bộ dữ liệu bị rollback sau khi test xong.
    """
    connection = test_db_engine.connect()
    transaction = connection.begin()

    session = Session(
        bind=connection,
        join_transaction_mode="create_savepoint",
        autoflush=False,
    )

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def override_get_session(test_db, monkeypatch):
    """Override get_session ở core.db và các module API để dùng test_db."""
    from backend.app.core import db
    from backend.app.api import billing, consignments, fleet

    @contextmanager
    def get_test_session():
        try:
            yield test_db
            test_db.commit()
        except Exception:
            db.discard_after_commit(test_db)
            test_db.rollback()
            raise
        else:
            db.run_after_commit(test_db)

    monkeypatch.setattr(db, "get_session", get_test_session)
    for module in (fleet, consignments, billing):
        monkeypatch.setattr(module, "get_session", get_test_session)


class Mailbox:
    """Ghi lại các email đã "gửi"; đặt `fail_with` để giả lập mail API lỗi.

    `on_send` (nếu có) được gọi trước khi ghi, dùng để quan sát DB lúc email đi.
    """

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_with: Exception | None = None
        self.on_send = None

    def send(self, recipient: str, subject: str, body: str) -> None:
        if self.on_send is not None:
            self.on_send(recipient, subject, body)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})

    def subjects(self) -> list[str]:
        return [mail["subject"] for mail in self.sent]


@pytest.fixture(autouse=True)
def mailbox(monkeypatch) -> Mailbox:
    from backend.app.services import notification_service

    box = Mailbox()
    monkeypatch.setattr(notification_service, "send_email", box.send)
    return box


@pytest.fixture
def test_client(override_get_session):
    """Tạo test client để gọi API endpoints."""
    from fastapi.testclient import TestClient

    # Import sau khi override database
    from backend.app.main import app

    with TestClient(app) as client:
        yield client
