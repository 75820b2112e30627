"""
Error handling và logging cho backend.

Phân loại lỗi nghiệp vụ:
- ValidationError: dữ liệu đầu vào sai/thiếu
- NotFoundError: không tìm thấy bản ghi được tham chiếu
- InvalidTransitionError: thao tác không hợp lệ với trạng thái hiện tại
- ConflictError: dữ liệu đã bị thay đổi đồng thời (version cũ, xe đã được gán...)
- ExternalServiceError: lỗi dịch vụ ngoài (mail); không hoàn tác thay đổi trạng thái trước đó
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, Request, Response

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base exception cho ứng dụng."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    """Lỗi validation dữ liệu."""

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        field: str | None = None,
    ):
        details = {"field": field} if field else None
        super().__init__(message, status_code=400, error_code=error_code, details=details)
        self.field = field


class NotFoundError(AppError):
    """Lỗi không tìm thấy resource."""

    def __init__(self, message: str = "Resource not found", error_code: str = "NOT_FOUND"):
        super().__init__(message, status_code=404, error_code=error_code)


class InvalidTransitionError(AppError):
    """Thao tác không được phép từ trạng thái hiện tại của bản ghi."""

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_TRANSITION",
        current_status: str | None = None,
    ):
        details = {"current_status": current_status} if current_status else None
        super().__init__(message, status_code=422, error_code=error_code, details=details)
        self.current_status = current_status


class ConflictError(AppError):
    """Phát hiện sửa đổi đồng thời; client cần tải lại dữ liệu rồi thử lại."""

    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(message, status_code=409, error_code=error_code)


class ExternalServiceError(AppError):
    """Lỗi dịch vụ bên ngoài (gửi mail...)."""

    def __init__(
        self,
        message: str,
        error_code: str = "EXTERNAL_SERVICE_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, status_code=502, error_code=error_code, details=details)


def error_response(error: AppError | Exception) -> Response:
    """Tạo response từ exception."""
    if isinstance(error, AppError):
        status_code = error.status_code
        error_data: dict[str, Any] = {
            "error": error.message,
            "error_code": error.error_code or "UNKNOWN_ERROR",
        }
        if error.details:
            error_data["details"] = error.details
    else:
        status_code = 500
        error_data = {
            "error": "Internal server error",
            "error_code": "INTERNAL_ERROR",
        }

    return json_response(error_data, status_code)


def register_error_handlers(app: FastAPI) -> None:
    """Đăng ký handler chuyển AppError / lỗi không lường trước thành JSON response."""

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError) -> Response:
        logger.warning("AppError [%s] %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> Response:
        logger.error(
            "Unhandled error in %s %s: %s", request.method, request.url.path, str(exc), exc_info=exc
        )
        return error_response(exc)


def json_response(data: object, status_code: int = 200) -> Response:
    """Helper function để tạo JSON response."""
    return Response(
        status_code=status_code,
        media_type="application/json",
        content=json.dumps(data, default=str, ensure_ascii=False),
    )
