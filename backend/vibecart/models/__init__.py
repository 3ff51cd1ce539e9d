from vibecart.db.base import Base  # noqa: F401
from vibecart.models.user import User, UserRole  # noqa: F401
from vibecart.models.catalog import Category, Product, ProductVariant  # noqa: F401
from vibecart.models.coupon import Coupon, CouponDiscountType, CouponRedemption  # noqa: F401
from vibecart.models.order import (  # noqa: F401
    CancelReason,
    Order,
    OrderEvent,
    OrderItem,
    OrderRequest,
    OrderRequestStatus,
    OrderRequestType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundMethod,
    ReturnReason,
)

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Category",
    "Product",
    "ProductVariant",
    "Coupon",
    "CouponDiscountType",
    "CouponRedemption",
    "CancelReason",
    "Order",
    "OrderEvent",
    "OrderItem",
    "OrderRequest",
    "OrderRequestStatus",
    "OrderRequestType",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "RefundMethod",
    "ReturnReason",
]
