from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vibecart.models.coupon import CouponDiscountType
from vibecart.schemas.common import PaginationMeta
from vibecart.schemas.order import OrderItemCreate


def _normalize_code(value: str) -> str:
    return (value or "").strip().upper()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_categories(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    cleaned = {v.strip().lower() for v in values if v and v.strip()}
    return sorted(cleaned)


class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=40)
    description: str | None = Field(default=None, max_length=500)
    discount: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    discount_type: CouponDiscountType = CouponDiscountType.percentage
    applicable_categories: list[str] = Field(default_factory=list)
    min_order_amount: Decimal = Field(default=Decimal("0.00"), ge=0, max_digits=10, decimal_places=2)
    max_discount: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    valid_from: datetime
    valid_until: datetime
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int | None = Field(default=None, ge=1)
    is_active: bool = True
    is_first_time_only: bool = False

    @field_validator("code")
    @classmethod
    def _clean_code(cls, value: str) -> str:
        return _normalize_code(value)

    @field_validator("applicable_categories")
    @classmethod
    def _clean_categories(cls, value: list[str]) -> list[str]:
        return _normalize_categories(value) or []

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _clean_dates(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "CouponCreate":
        if self.valid_from > self.valid_until:
            raise ValueError("valid_from must not be after valid_until")
        if self.discount_type == CouponDiscountType.percentage and self.discount > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class CouponUpdate(BaseModel):
    description: str | None = Field(default=None, max_length=500)
    discount: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    discount_type: CouponDiscountType | None = None
    applicable_categories: list[str] | None = None
    min_order_amount: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    max_discount: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=1)
    per_user_limit: int | None = Field(default=None, ge=1)
    is_active: bool | None = None
    is_first_time_only: bool | None = None

    @field_validator("applicable_categories")
    @classmethod
    def _clean_categories(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_categories(value)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _clean_dates(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    description: str | None = None
    discount: Decimal
    discount_type: CouponDiscountType
    applicable_categories: list[str] = Field(default_factory=list)
    min_order_amount: Decimal
    max_discount: Decimal | None = None
    valid_from: datetime
    valid_until: datetime
    usage_limit: int | None = None
    per_user_limit: int | None = None
    used_count: int
    is_active: bool
    is_first_time_only: bool
    created_at: datetime


class CouponListResponse(BaseModel):
    items: list[CouponRead]
    meta: PaginationMeta


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    items: list[OrderItemCreate] = Field(min_length=1)

    @model_validator(mode="after")
    def _normalize(self) -> "CouponValidateRequest":
        self.code = _normalize_code(self.code)
        return self


class CouponValidationRead(BaseModel):
    valid: bool
    code: str
    subtotal: Decimal
    discountable_amount: Decimal
    discount_amount: Decimal
    total: Decimal
