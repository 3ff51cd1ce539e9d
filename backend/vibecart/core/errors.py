from __future__ import annotations

from typing import Any

from fastapi import status


class OrderError(Exception):
    """Base class for failures raised by the order and coupon services.

    Every subclass carries a stable ``code`` that clients can switch on, a
    human-readable ``message`` and optional structured ``details`` (field
    errors, offending line items, coupon rejection reason).
    """

    code = "order_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(OrderError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, *, field: str | None = None, details: Any = None) -> None:
        if details is None and field:
            details = [{"field": field, "message": message}]
        super().__init__(message, details=details)
        self.field = field


class NotFoundError(OrderError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InsufficientStockError(OrderError):
    code = "insufficient_stock"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, offenders: list[dict[str, Any]]) -> None:
        names = ", ".join(f"{item.get('product_name') or item['product_id']} ({item['size']})" for item in offenders)
        super().__init__(f"Insufficient stock for: {names}", details=offenders)
        self.offenders = offenders


class InvalidStateError(OrderError):
    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class InvalidTransitionError(OrderError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class WindowExpiredError(OrderError):
    code = "return_window_expired"
    status_code = status.HTTP_409_CONFLICT


class CouponRejectedError(OrderError):
    code = "coupon_rejected"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message, details={"reason": reason})
        self.reason = reason


class ConcurrentModificationError(OrderError):
    code = "concurrent_modification"
    status_code = status.HTTP_409_CONFLICT
