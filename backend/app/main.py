"""
Điểm vào chính của backend.

- Khởi tạo FastAPI app
- Cấu hình logging, DB
- Đăng ký routes cho danh mục, vận đơn, hóa đơn cước
"""

from __future__ import annotations

from fastapi import FastAPI, Response

from .core.config import settings
from .core.db import init_db
from .core.error_handler import json_response, register_error_handlers
from .core.logging_config import setup_logging
from .api import fleet as fleet_api
from .api import consignments as consignments_api
from .api import billing as billing_api

app = FastAPI(title=settings.app_name, debug=settings.debug)
register_error_handlers(app)

app.include_router(fleet_api.router, prefix="/api", tags=["fleet"])
app.include_router(consignments_api.router, prefix="/api", tags=["consignments"])
app.include_router(billing_api.router, prefix="/api", tags=["freight-bills"])


@app.get("/health")
def health() -> Response:
    """Health check."""

    return json_response({"status": "ok", "app": settings.app_name})


def setup() -> None:
    """Chạy các bước khởi tạo khi start app."""

    setup_logging()
    init_db()


if __name__ == "__main__":
    import uvicorn

    setup()
    uvicorn.run(app, host="0.0.0.0", port=8000)
