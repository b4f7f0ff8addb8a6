"""
Application error kinds.

Handlers and records raise these; main.py turns them into the JSON envelope
``{"success": false, "message": ..., "errors": ...}`` with the matching status.
"""
from typing import Any, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str = "Internal server error", errors: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationError(AppError):
    status_code = 400


class ConflictError(AppError):
    status_code = 400


class InsufficientStockError(ConflictError):
    def __init__(self, message: str, product_id: Optional[str] = None, available: Optional[int] = None):
        super().__init__(message, errors={"product_id": product_id, "available": available})
        self.product_id = product_id
        self.available = available


class AuthenticationError(AppError):
    status_code = 401


class AccessDeniedError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class AccountLockedError(AppError):
    status_code = 423


class RateLimitError(AppError):
    status_code = 429


class EmailDeliveryError(AppError):
    status_code = 502
