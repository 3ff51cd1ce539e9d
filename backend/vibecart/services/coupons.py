from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vibecart.core.config import settings
from vibecart.core.errors import (
    ConcurrentModificationError,
    CouponRejectedError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from vibecart.models.coupon import Coupon, CouponDiscountType, CouponRedemption
from vibecart.models.order import Order, OrderStatus
from vibecart.schemas.coupon import CouponCreate, CouponUpdate
from vibecart.services import pricing

logger = logging.getLogger(__name__)


REASON_MESSAGES: dict[str, str] = {
    "not_found": "Coupon code not found",
    "inactive": "Coupon is not active",
    "not_started": "Coupon is not valid yet",
    "expired": "Coupon has expired",
    "first_order_only": "Coupon is only valid on your first order",
    "min_order_not_met": "Order amount is below the coupon minimum",
    "no_eligible_items": "No items in the cart are eligible for this coupon",
    "usage_limit_exceeded": "Coupon usage limit exceeded",
    "per_user_limit_exceeded": "You have already used this coupon the maximum number of times",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class CartLine:
    category: str
    unit_price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return pricing.line_subtotal(self.unit_price, self.quantity)


@dataclass(frozen=True)
class CouponEvaluation:
    valid: bool
    discount_amount: Decimal = pricing.ZERO
    discountable_amount: Decimal = pricing.ZERO
    reason: str | None = None

    @property
    def message(self) -> str | None:
        if self.reason is None:
            return None
        return REASON_MESSAGES.get(self.reason, "Coupon is not applicable")

    def raise_for_rejection(self) -> None:
        if not self.valid:
            raise CouponRejectedError(self.reason or "rejected", self.message or "Coupon rejected")


def _rejected(reason: str) -> CouponEvaluation:
    return CouponEvaluation(valid=False, reason=reason)


def discountable_base(coupon: Coupon, cart_items: Sequence[CartLine]) -> Decimal:
    categories = {c.lower() for c in (coupon.applicable_categories or [])}
    lines = [line for line in cart_items if not categories or line.category.lower() in categories]
    return pricing.quantize_money(sum((line.subtotal for line in lines), start=pricing.ZERO))


def compute_discount(coupon: Coupon, base: Decimal) -> Decimal:
    if base <= 0:
        return pricing.ZERO
    value = Decimal(coupon.discount)
    if coupon.discount_type == CouponDiscountType.percentage:
        discount = base * value / Decimal("100")
        if coupon.max_discount is not None:
            discount = min(discount, Decimal(coupon.max_discount))
    else:
        discount = min(value, base)
    return pricing.quantize_money(min(discount, base))


def evaluate_coupon(
    coupon: Coupon | None,
    cart_items: Sequence[CartLine],
    order_amount: Decimal,
    *,
    user_order_count: int | None,
    user_usage_count: int = 0,
    now: datetime | None = None,
) -> CouponEvaluation:
    """Check a coupon against a cart snapshot and compute the discount.

    Checks run in a fixed order and the first failure is reported:
    existence/active flag, validity window, first-order restriction,
    minimum order amount, category restriction, then global and per-user
    usage limits. ``user_order_count`` is ``None`` when the caller has no
    history for the customer (guest checkout); such callers pass the
    first-order check.

    Nothing is written; usage counters are only touched when an order
    commits.
    """
    if coupon is None:
        return _rejected("not_found")
    if not coupon.is_active:
        return _rejected("inactive")

    current = now or _now()
    if current < _as_utc(coupon.valid_from):
        return _rejected("not_started")
    if current > _as_utc(coupon.valid_until):
        return _rejected("expired")

    if coupon.is_first_time_only and user_order_count is not None and user_order_count > 0:
        return _rejected("first_order_only")

    if Decimal(order_amount) < Decimal(coupon.min_order_amount or 0):
        return _rejected("min_order_not_met")

    base = discountable_base(coupon, cart_items)
    if coupon.applicable_categories and base <= 0:
        return _rejected("no_eligible_items")

    if coupon.usage_limit is not None and int(coupon.used_count or 0) >= int(coupon.usage_limit):
        return _rejected("usage_limit_exceeded")
    if coupon.per_user_limit is not None and int(user_usage_count) >= int(coupon.per_user_limit):
        return _rejected("per_user_limit_exceeded")

    return CouponEvaluation(valid=True, discount_amount=compute_discount(coupon, base), discountable_amount=base)


async def get_coupon_by_code(session: AsyncSession, code: str) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    result = await session.execute(
        select(Coupon).where(Coupon.code == cleaned).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def count_past_orders(session: AsyncSession, user_id: UUID, *, exclude_order_id: UUID | None = None) -> int:
    """Orders the user has placed that were not cancelled."""
    stmt = select(func.count()).select_from(Order).where(Order.user_id == user_id, Order.status != OrderStatus.cancelled)
    if exclude_order_id is not None:
        stmt = stmt.where(Order.id != exclude_order_id)
    return int((await session.execute(stmt)).scalar_one() or 0)


async def count_user_redemptions(session: AsyncSession, *, coupon_id: UUID, user_id: UUID) -> int:
    stmt = (
        select(func.count())
        .select_from(CouponRedemption)
        .where(
            CouponRedemption.coupon_id == coupon_id,
            CouponRedemption.user_id == user_id,
            CouponRedemption.voided_at.is_(None),
        )
    )
    return int((await session.execute(stmt)).scalar_one() or 0)


async def validate_coupon(
    session: AsyncSession,
    *,
    code: str,
    cart_items: Sequence[CartLine],
    user_id: UUID | None,
) -> tuple[Coupon, CouponEvaluation]:
    """Load a coupon and the customer's history, evaluate, and raise on rejection."""
    coupon = await get_coupon_by_code(session, code)
    order_amount = pricing.quantize_money(sum((line.subtotal for line in cart_items), start=pricing.ZERO))
    user_order_count: int | None = None
    user_usage_count = 0
    if user_id is not None:
        user_order_count = await count_past_orders(session, user_id)
        if coupon is not None:
            user_usage_count = await count_user_redemptions(session, coupon_id=coupon.id, user_id=user_id)

    evaluation = evaluate_coupon(
        coupon,
        cart_items,
        order_amount,
        user_order_count=user_order_count,
        user_usage_count=user_usage_count,
    )
    if not evaluation.valid:
        logger.info("coupon_rejected", extra={"coupon_code": normalize_code(code), "reason": evaluation.reason})
    evaluation.raise_for_rejection()
    return coupon, evaluation


async def _change_usage(session: AsyncSession, coupon_id: UUID, delta: int) -> None:
    attempts = max(1, int(settings.stock_retry_attempts))
    for attempt in range(1, attempts + 1):
        row = (
            await session.execute(
                select(Coupon.used_count, Coupon.usage_limit, Coupon.version).where(Coupon.id == coupon_id)
            )
        ).one_or_none()
        if row is None:
            raise NotFoundError("Coupon not found")
        used_count, usage_limit, version = int(row[0] or 0), row[1], int(row[2])
        new_count = max(0, used_count + delta)
        if delta > 0 and usage_limit is not None and new_count > int(usage_limit):
            raise CouponRejectedError("usage_limit_exceeded", REASON_MESSAGES["usage_limit_exceeded"])
        result = await session.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.version == version)
            .values(used_count=new_count, version=version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        logger.info("coupon_usage_conflict", extra={"coupon_id": str(coupon_id), "attempt": attempt})
    raise ConcurrentModificationError("Coupon usage changed concurrently; please retry")


async def redeem_for_order(
    session: AsyncSession,
    *,
    coupon: Coupon,
    user_id: UUID,
    order_id: UUID,
    discount_amount: Decimal,
) -> CouponRedemption:
    """Consume one use of the coupon inside the caller's order transaction.

    The version bump serializes redemptions of the same coupon, so the
    per-customer checks below see every redemption committed before ours.
    ``order_id`` must already be flushed.
    """
    await _change_usage(session, coupon.id, +1)
    if coupon.per_user_limit is not None:
        used = await count_user_redemptions(session, coupon_id=coupon.id, user_id=user_id)
        if used >= int(coupon.per_user_limit):
            raise CouponRejectedError("per_user_limit_exceeded", REASON_MESSAGES["per_user_limit_exceeded"])
    if coupon.is_first_time_only:
        if await count_past_orders(session, user_id, exclude_order_id=order_id) > 0:
            raise CouponRejectedError("first_order_only", REASON_MESSAGES["first_order_only"])
    redemption = CouponRedemption(
        coupon_id=coupon.id,
        user_id=user_id,
        order_id=order_id,
        discount_amount=pricing.quantize_money(discount_amount),
    )
    session.add(redemption)
    return redemption


async def void_redemption_for_order(session: AsyncSession, *, order_id: UUID, reason: str) -> bool:
    """Give a cancelled order's coupon use back. Does not commit."""
    redemption = (
        (await session.execute(select(CouponRedemption).where(CouponRedemption.order_id == order_id))).scalars().first()
    )
    if redemption is None or redemption.voided_at is not None:
        return False
    redemption.voided_at = _now()
    redemption.void_reason = reason[:255]
    session.add(redemption)
    await _change_usage(session, redemption.coupon_id, -1)
    return True


def _check_invariants(coupon: Coupon) -> None:
    if _as_utc(coupon.valid_from) > _as_utc(coupon.valid_until):
        raise ValidationError("valid_from must not be after valid_until", field="valid_until")
    if Decimal(coupon.discount) <= 0:
        raise ValidationError("discount must be greater than zero", field="discount")
    if coupon.discount_type == CouponDiscountType.percentage and Decimal(coupon.discount) > 100:
        raise ValidationError("percentage discount cannot exceed 100", field="discount")


async def create_coupon(session: AsyncSession, payload: CouponCreate) -> Coupon:
    coupon = Coupon(**payload.model_dump())
    _check_invariants(coupon)
    session.add(coupon)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationError("Coupon code already exists", field="code")
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_code": coupon.code})
    return coupon


async def get_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = await session.get(Coupon, coupon_id, populate_existing=True)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    return coupon


async def list_coupons(
    session: AsyncSession,
    *,
    status_filter: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Coupon], int]:
    filters = []
    if status_filter == "active":
        filters.append(Coupon.is_active.is_(True))
    elif status_filter == "inactive":
        filters.append(Coupon.is_active.is_(False))

    count_stmt = select(func.count()).select_from(Coupon)
    query = select(Coupon)
    if filters:
        count_stmt = count_stmt.where(*filters)
        query = query.where(*filters)
    total_items = int((await session.execute(count_stmt)).scalar_one() or 0)

    query = query.order_by(Coupon.created_at.desc()).offset((page - 1) * limit).limit(limit)
    rows = (await session.execute(query)).scalars().all()
    return list(rows), total_items


async def update_coupon(session: AsyncSession, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    data = payload.model_dump(exclude_unset=True)
    for field, value in data.items():
        setattr(coupon, field, value)
    try:
        _check_invariants(coupon)
    except ValidationError:
        await session.rollback()
        raise
    coupon.version = int(coupon.version or 0) + 1
    session.add(coupon)
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def delete_coupon(session: AsyncSession, coupon_id: UUID) -> None:
    coupon = await get_coupon(session, coupon_id)
    redeemed = int(
        (
            await session.execute(
                select(func.count()).select_from(CouponRedemption).where(CouponRedemption.coupon_id == coupon.id)
            )
        ).scalar_one()
        or 0
    )
    if redeemed:
        raise InvalidStateError("Coupon has been used on orders; deactivate it instead")
    await session.delete(coupon)
    await session.commit()
    logger.info("coupon_deleted", extra={"coupon_code": coupon.code})
