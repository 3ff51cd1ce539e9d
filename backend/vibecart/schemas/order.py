from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vibecart.models.order import (
    CancelReason,
    OrderRequestStatus,
    OrderRequestType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundMethod,
    ReturnReason,
)
from vibecart.schemas.common import PaginationMeta


class ShippingAddress(BaseModel):
    full_name: str = Field(min_length=1, max_length=160)
    line1: str = Field(min_length=1, max_length=200)
    line2: str | None = Field(default=None, max_length=200)
    city: str = Field(min_length=1, max_length=120)
    state: str | None = Field(default=None, max_length=120)
    postal_code: str = Field(min_length=3, max_length=20)
    country: str = Field(default="IN", min_length=2, max_length=2)
    phone: str = Field(min_length=7, max_length=20)


class OrderItemCreate(BaseModel):
    product_id: UUID
    size: str = Field(min_length=1, max_length=50)
    quantity: int = Field(ge=1, le=100)


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = Field(min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    coupon_code: str | None = Field(default=None, max_length=40)
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=64)

    @field_validator("coupon_code")
    @classmethod
    def _normalize_coupon_code(cls, value: str | None) -> str | None:
        cleaned = (value or "").strip().upper()
        return cleaned or None


class CancelRequestCreate(BaseModel):
    reason: CancelReason
    description: str | None = Field(default=None, max_length=2000)


class ReturnRequestCreate(BaseModel):
    reason: ReturnReason
    description: str | None = Field(default=None, max_length=2000)


class CancelDecision(BaseModel):
    approved: bool
    notes: str | None = Field(default=None, max_length=2000)


class ReturnDecision(BaseModel):
    approved: bool
    refund_amount: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    refund_method: RefundMethod | None = None
    return_tracking_number: str | None = Field(default=None, max_length=80)
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _refund_details_required_on_approval(self) -> "ReturnDecision":
        if self.approved and (self.refund_amount is None or self.refund_method is None):
            raise ValueError("refund_amount and refund_method are required when approving a return")
        return self


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    note: str | None = Field(default=None, max_length=2000)


class RefundCompletion(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


# Request records as stored on the order. Each variant has a closed field set;
# building one with a field from the other variant fails validation.


class CancelRequestRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal[OrderRequestType.cancel] = OrderRequestType.cancel
    reason: CancelReason
    description: str | None = None
    requested_at: datetime


class ReturnRequestRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal[OrderRequestType.return_] = OrderRequestType.return_
    reason: ReturnReason
    description: str | None = None
    requested_at: datetime


# Approval details written onto a request; same closed-set rule as above.
# Cancels carry no tracking number.


class CancelApprovalRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal[OrderRequestType.cancel] = OrderRequestType.cancel
    refund_amount: Decimal = Field(ge=0)
    refund_method: RefundMethod = RefundMethod.original_payment


class ReturnApprovalRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal[OrderRequestType.return_] = OrderRequestType.return_
    refund_amount: Decimal = Field(ge=0)
    refund_method: RefundMethod
    return_tracking_number: str | None = Field(default=None, max_length=80)


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    variant_id: UUID
    product_name: str
    category: str
    size: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event: str
    note: str | None = None
    created_at: datetime


class OrderRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: OrderRequestType
    reason: str
    description: str | None = None
    status: OrderRequestStatus
    requested_at: datetime
    processed_at: datetime | None = None
    processed_by: UUID | None = None
    admin_notes: str | None = None
    refund_amount: Decimal | None = None
    refund_method: RefundMethod | None = None
    return_tracking_number: str | None = None
    refunded_at: datetime | None = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: UUID
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    shipping_address: ShippingAddress
    coupon_code: str | None = None
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    delivered_at: datetime | None = None
    items: list[OrderItemRead] = Field(default_factory=list)
    requests: list[OrderRequestRead] = Field(default_factory=list)
    events: list[OrderEventRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrderListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: UUID
    status: OrderStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    created_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderListItem]
    meta: PaginationMeta
