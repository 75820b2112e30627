"""
Khởi tạo kết nối SQLAlchemy cho backend quản trị vận tải (FastAPI).

Dùng sync engine + sessionmaker với SQLite. Các nghiệp vụ đụng nhiều bản ghi
(gán xe, lập hóa đơn cước, thanh toán) chạy trong SAVEPOINT nên engine phải
để SQLAlchemy tự phát lệnh BEGIN thay cho pysqlite.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .config import settings
from ..models.base import Base

# Đảm bảo thư mục chứa database tồn tại
db_path = Path(settings.db_path)
if db_path.parent != Path("."):
    db_path.parent.mkdir(parents=True, exist_ok=True)

# Tạo engine SQLite với các cấu hình phù hợp
engine = create_engine(
    settings.sqlalchemy_database_uri,
    echo=settings.debug,
    connect_args={"check_same_thread": False},  # Cho phép multi-threading
    pool_pre_ping=False,  # Không cần cho SQLite
)


def configure_sqlite_engine(target: Engine) -> None:
    """Bật foreign keys và cho phép SAVEPOINT hoạt động đúng với pysqlite."""

    @event.listens_for(target, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        # Tắt cơ chế BEGIN ngầm của pysqlite, SQLAlchemy sẽ tự BEGIN
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(target, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


configure_sqlite_engine(engine)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db() -> None:
    """Khởi tạo database (tạo bảng nếu chưa có).

    Trong môi trường production nên dùng migration (Alembic) thay vì auto-create.
    """
    # Import để đăng ký toàn bộ model vào metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# Callback chạy sau khi commit thành công (gửi email...), giữ trong Session.info
AFTER_COMMIT_KEY = "after_commit_callbacks"


def call_after_commit(db: Session, callback: Callable[[], None]) -> None:
    """Đăng ký callback chạy sau khi transaction của session đã commit.

    Callback không được đụng tới DB; nếu transaction rollback thì callback bị bỏ.
    """
    db.info.setdefault(AFTER_COMMIT_KEY, []).append(callback)


def discard_after_commit(db: Session) -> None:
    db.info.pop(AFTER_COMMIT_KEY, None)


def run_after_commit(db: Session) -> None:
    for callback in db.info.pop(AFTER_COMMIT_KEY, []):
        callback()


def commit_and_dispatch(db: Session) -> None:
    """Commit rồi chạy các callback đã đăng ký (dùng khi tự quản lý session)."""
    db.commit()
    run_after_commit(db)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context manager cung cấp SQLAlchemy Session an toàn.

    Email / thông báo chỉ được gửi sau khi commit, khi SQLite đã nhả khóa ghi.
    """

    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        discard_after_commit(db)
        db.rollback()
        raise
    else:
        run_after_commit(db)
    finally:
        db.close()
