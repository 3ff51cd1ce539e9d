from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from vibecart.core.config import settings
from vibecart.core.errors import InsufficientStockError, InvalidStateError, NotFoundError, OrderError, ValidationError
from vibecart.models.order import (
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
)
from vibecart.models.user import User, UserRole
from vibecart.schemas.order import (
    CancelApprovalRecord,
    CancelDecision,
    CancelRequestCreate,
    CancelRequestRecord,
    OrderCreate,
    OrderItemCreate,
    OrderStatusUpdate,
    RefundCompletion,
    ReturnApprovalRecord,
    ReturnDecision,
    ReturnRequestCreate,
    ReturnRequestRecord,
)
from vibecart.services import coupons, inventory, notifications, order_state, payments, pricing
from vibecart.services.order_state import OrderDomainEvent

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "VC"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal | None) -> str | None:
    return None if value is None else str(pricing.quantize_money(Decimal(value)))


@dataclass(frozen=True)
class PricedLine:
    request: OrderItemCreate
    variant: inventory.VariantSnapshot

    @property
    def subtotal(self) -> Decimal:
        return pricing.line_subtotal(self.variant.price, self.request.quantity)

    def cart_line(self) -> coupons.CartLine:
        return coupons.CartLine(
            category=self.variant.category,
            unit_price=self.variant.price,
            quantity=self.request.quantity,
        )


async def price_items(session: AsyncSession, items: Sequence[OrderItemCreate]) -> list[PricedLine]:
    """Resolve every requested (product, size) to its variant and current price."""
    return [
        PricedLine(request=item, variant=await inventory.get_product_variant(session, item.product_id, item.size))
        for item in items
    ]


def find_stock_offenders(lines: Sequence[PricedLine]) -> list[dict[str, Any]]:
    """All variants whose requested quantity exceeds stock, counting repeated lines together."""
    demand: dict[UUID, int] = {}
    variants: dict[UUID, inventory.VariantSnapshot] = {}
    for line in lines:
        demand[line.variant.variant_id] = demand.get(line.variant.variant_id, 0) + line.request.quantity
        variants[line.variant.variant_id] = line.variant
    offenders: list[dict[str, Any]] = []
    for variant_id, requested in demand.items():
        variant = variants[variant_id]
        if requested > variant.stock:
            offenders.append(
                {
                    "product_id": str(variant.product_id),
                    "product_name": variant.product_name,
                    "size": variant.size,
                    "requested": requested,
                    "available": variant.stock,
                }
            )
    return offenders


def _order_query():
    return select(Order).options(
        selectinload(Order.items),
        selectinload(Order.events),
        selectinload(Order.requests),
    )


async def _load_order(session: AsyncSession, order_id: UUID, *, for_update: bool = False) -> Order | None:
    stmt = _order_query().where(Order.id == order_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update(of=Order)
    return (await session.execute(stmt)).scalar_one_or_none()


async def _find_by_idempotency_key(session: AsyncSession, user_id: UUID, key: str) -> Order | None:
    stmt = (
        _order_query()
        .where(Order.user_id == user_id, Order.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _generate_order_number(session: AsyncSession, length: int = 6) -> str:
    chars = string.ascii_uppercase + string.digits
    stamp = _now().strftime("%y%m%d")
    while True:
        candidate = f"{ORDER_NUMBER_PREFIX}{stamp}{''.join(random.choices(chars, k=length))}"
        result = await session.execute(select(Order.id).where(Order.order_number == candidate))
        if not result.scalar_one_or_none():
            return candidate


def _log_event(session: AsyncSession, order: Order, event: OrderDomainEvent, note: str | None = None) -> None:
    session.add(OrderEvent(order_id=order.id, event=event.name, note=note, data=event.data or None))


async def _notify(order: Order, events: Sequence[OrderDomainEvent]) -> None:
    recipient = order.user.email if order.user is not None else None
    await notifications.emit_all(list(events), recipient=recipient)


def _can_view(order: Order, user: User) -> bool:
    return user.role == UserRole.admin or order.user_id == user.id


def _apply_approval(request: OrderRequest, record: CancelApprovalRecord | ReturnApprovalRecord) -> None:
    if record.type != request.type:
        raise InvalidStateError(f"Cannot apply {record.type.value} approval to a {request.type.value} request")
    for field, value in record.model_dump(exclude={"type"}).items():
        setattr(request, field, value)
    request.status = OrderRequestStatus.approved


async def create_order(session: AsyncSession, user: User, payload: OrderCreate) -> Order:
    """Place an order for ``user``.

    Stock is checked for every line before anything is written and all
    shortages are reported together. Prices are copied from the variants at
    this point and never change afterwards. Stock decrements, the coupon use
    and the order row are committed in one transaction; any failure rolls all
    of them back. Repeating a call with the same ``idempotency_key`` returns
    the order created by the first call.
    """
    user_id = user.id
    key = payload.idempotency_key
    if key:
        existing = await _find_by_idempotency_key(session, user_id, key)
        if existing is not None:
            logger.info("order_idempotent_replay", extra={"order_number": existing.order_number})
            return existing

    lines = await price_items(session, payload.items)
    offenders = find_stock_offenders(lines)
    if offenders:
        raise InsufficientStockError(offenders)

    coupon = None
    discount = pricing.ZERO
    if payload.coupon_code:
        coupon, evaluation = await coupons.validate_coupon(
            session,
            code=payload.coupon_code,
            cart_items=[line.cart_line() for line in lines],
            user_id=user_id,
        )
        discount = evaluation.discount_amount
    totals = pricing.compute_order_totals([line.subtotal for line in lines], discount)

    order = Order(
        user_id=user_id,
        order_number=await _generate_order_number(session),
        status=OrderStatus.pending,
        payment_method=payload.payment_method,
        payment_status=PaymentStatus.pending,
        shipping_address=payload.shipping_address.model_dump(),
        coupon_code=coupon.code if coupon is not None else None,
        subtotal=totals.subtotal,
        discount_amount=totals.discount,
        total_amount=totals.total,
        currency=settings.currency,
        idempotency_key=key,
        items=[
            OrderItem(
                product_id=line.variant.product_id,
                variant_id=line.variant.variant_id,
                product_name=line.variant.product_name,
                category=line.variant.category,
                size=line.variant.size,
                quantity=line.request.quantity,
                unit_price=line.variant.price,
                subtotal=line.subtotal,
            )
            for line in lines
        ],
    )
    try:
        session.add(order)
        await session.flush()
        for line in lines:
            await inventory.adjust_stock(session, line.variant.product_id, line.variant.size, -line.request.quantity)
        if coupon is not None:
            await coupons.redeem_for_order(
                session, coupon=coupon, user_id=user_id, order_id=order.id, discount_amount=totals.discount
            )
        session.add(OrderEvent(order_id=order.id, event="created", note=f"Order {order.order_number}"))
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if key:
            existing = await _find_by_idempotency_key(session, user_id, key)
            if existing is not None:
                logger.info("order_idempotent_replay", extra={"order_number": existing.order_number})
                return existing
        raise
    except (OrderError, SQLAlchemyError):
        await session.rollback()
        raise

    logger.info(
        "order_created",
        extra={"order_number": order.order_number, "user_id": str(user_id), "total_amount": str(totals.total)},
    )
    loaded = await _load_order(session, order.id)
    created = order_state.build_event(
        loaded, "order_created", total_amount=_money(totals.total), currency=settings.currency
    )
    await _notify(loaded, [created])
    return loaded


async def preview_coupon(
    session: AsyncSession, *, code: str, items: Sequence[OrderItemCreate], user: User | None
) -> dict[str, Any]:
    """Price a cart with a coupon without reserving anything."""
    lines = await price_items(session, items)
    coupon, evaluation = await coupons.validate_coupon(
        session,
        code=code,
        cart_items=[line.cart_line() for line in lines],
        user_id=user.id if user is not None else None,
    )
    totals = pricing.compute_order_totals([line.subtotal for line in lines], evaluation.discount_amount)
    return {
        "valid": True,
        "code": coupon.code,
        "subtotal": totals.subtotal,
        "discountable_amount": evaluation.discountable_amount,
        "discount_amount": totals.discount,
        "total": totals.total,
    }


async def get_order_by_id(session: AsyncSession, order_id: UUID) -> Order:
    order = await _load_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def get_order(session: AsyncSession, order_id: UUID, user: User) -> Order:
    order = await _load_order(session, order_id)
    # Other customers' orders look exactly like missing ones.
    if order is None or not _can_view(order, user):
        raise NotFoundError("Order not found")
    return order


async def list_orders_for_user(
    session: AsyncSession, user_id: UUID, *, page: int = 1, limit: int = 20
) -> tuple[list[Order], int]:
    total_items = int(
        (await session.execute(select(func.count()).select_from(Order).where(Order.user_id == user_id))).scalar_one()
        or 0
    )
    result = await session.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().unique()), total_items


async def list_orders(
    session: AsyncSession,
    *,
    status: OrderStatus | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], int]:
    filters = []
    if status:
        filters.append(Order.status == status)
    cleaned = (search or "").strip().upper()
    if cleaned:
        filters.append(Order.order_number.ilike(f"%{cleaned}%"))

    count_stmt = select(func.count()).select_from(Order)
    query = select(Order).order_by(Order.created_at.desc())
    if filters:
        count_stmt = count_stmt.where(*filters)
        query = query.where(*filters)
    total_items = int((await session.execute(count_stmt)).scalar_one() or 0)
    result = await session.execute(query.offset((page - 1) * limit).limit(limit))
    return list(result.scalars().unique()), total_items


async def _locked_order(session: AsyncSession, order_id: UUID, user: User | None = None) -> Order:
    order = await _load_order(session, order_id, for_update=True)
    if order is None or (user is not None and not _can_view(order, user)):
        raise NotFoundError("Order not found")
    return order


async def _commit_transition(
    session: AsyncSession, order: Order, events: Sequence[OrderDomainEvent], note: str | None = None
) -> Order:
    for event in events:
        _log_event(session, order, event, note)
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
    for event in events:
        logger.info(
            "order_transition",
            extra={"order_number": order.order_number, "order_event": event.name, "status": event.status.value},
        )
    loaded = await _load_order(session, order.id)
    await _notify(loaded, events)
    return loaded


async def request_cancel(session: AsyncSession, order_id: UUID, user: User, payload: CancelRequestCreate) -> Order:
    order = await _locked_order(session, order_id, user)
    try:
        order_state.ensure_can_request_cancel(order)
    except OrderError:
        await session.rollback()
        raise
    record = CancelRequestRecord(reason=payload.reason, description=payload.description, requested_at=_now())
    order.requests.append(
        OrderRequest(
            type=record.type,
            reason=record.reason.value,
            description=record.description,
            requested_at=record.requested_at,
            status=OrderRequestStatus.pending,
        )
    )
    event = order_state.build_event(order, "cancel_requested", reason=record.reason.value)
    return await _commit_transition(session, order, [event], note=record.description)


async def request_return(
    session: AsyncSession, order_id: UUID, user: User, payload: ReturnRequestCreate, *, now: datetime | None = None
) -> Order:
    order = await _locked_order(session, order_id, user)
    requested_at = now or _now()
    try:
        order_state.ensure_can_request_return(order, now=requested_at, window_days=settings.return_window_days)
    except OrderError:
        await session.rollback()
        raise
    record = ReturnRequestRecord(reason=payload.reason, description=payload.description, requested_at=requested_at)
    order.requests.append(
        OrderRequest(
            type=record.type,
            reason=record.reason.value,
            description=record.description,
            requested_at=record.requested_at,
            status=OrderRequestStatus.pending,
        )
    )
    event = order_state.build_event(order, "return_requested", reason=record.reason.value)
    return await _commit_transition(session, order, [event], note=record.description)


async def process_cancel_request(session: AsyncSession, order_id: UUID, admin: User, decision: CancelDecision) -> Order:
    """Approve or reject the pending cancel request.

    Approval cancels the order, puts every line's quantity back into stock,
    gives the coupon use back and schedules a refund of the total when the
    order was paid. Rejection only closes the request.
    """
    order = await _locked_order(session, order_id)
    now = _now()
    try:
        request = order_state.pending_request_of_type(order, OrderRequestType.cancel)
        request.processed_at = now
        request.processed_by = admin.id
        request.admin_notes = decision.notes
        if decision.approved:
            target = order_state.check_request_resolution(order, OrderRequestType.cancel)
            for item in order.items:
                await inventory.adjust_stock(session, item.product_id, item.size, item.quantity)
            if order.coupon_code:
                await coupons.void_redemption_for_order(session, order_id=order.id, reason="order_cancelled")
            refund_amount = Decimal(order.total_amount) if order.payment_status == PaymentStatus.paid else pricing.ZERO
            _apply_approval(request, CancelApprovalRecord(refund_amount=pricing.quantize_money(refund_amount)))
            order.status = target
            event = order_state.status_event(
                order, target, refund_amount=_money(refund_amount), refund_method=RefundMethod.original_payment.value
            )
        else:
            request.status = OrderRequestStatus.rejected
            event = order_state.build_event(order, "cancel_rejected", note=decision.notes)
    except (OrderError, SQLAlchemyError):
        await session.rollback()
        raise
    return await _commit_transition(session, order, [event], note=decision.notes)


async def process_return_request(session: AsyncSession, order_id: UUID, admin: User, decision: ReturnDecision) -> Order:
    order = await _locked_order(session, order_id)
    now = _now()
    try:
        request = order_state.pending_request_of_type(order, OrderRequestType.return_)
        if decision.approved:
            target = order_state.check_request_resolution(order, OrderRequestType.return_)
            refund_amount = pricing.quantize_money(Decimal(decision.refund_amount or 0))
            if refund_amount > Decimal(order.total_amount):
                raise ValidationError("Refund amount cannot exceed the order total", field="refund_amount")
            _apply_approval(
                request,
                ReturnApprovalRecord(
                    refund_amount=refund_amount,
                    refund_method=decision.refund_method,
                    return_tracking_number=decision.return_tracking_number,
                ),
            )
            order.status = target
            event = order_state.status_event(
                order,
                target,
                refund_amount=_money(refund_amount),
                refund_method=decision.refund_method.value if decision.refund_method else None,
            )
        else:
            request.status = OrderRequestStatus.rejected
            event = order_state.build_event(order, "return_rejected", note=decision.notes)
        request.processed_at = now
        request.processed_by = admin.id
        request.admin_notes = decision.notes
    except (OrderError, SQLAlchemyError):
        await session.rollback()
        raise
    return await _commit_transition(session, order, [event], note=decision.notes)


async def set_status(session: AsyncSession, order_id: UUID, admin: User, payload: OrderStatusUpdate) -> Order:
    order = await _locked_order(session, order_id)
    try:
        order_state.check_status_transition(order, payload.status)
    except OrderError:
        await session.rollback()
        raise
    previous = order.status
    order.status = payload.status
    if payload.status == OrderStatus.delivered:
        order.delivered_at = _now()
        if order.payment_method == PaymentMethod.cod and order.payment_status == PaymentStatus.pending:
            order.payment_status = PaymentStatus.paid
    event = order_state.status_event(order, payload.status, previous_status=previous.value, changed_by=str(admin.id))
    return await _commit_transition(session, order, [event], note=payload.note)


async def mark_refunded(session: AsyncSession, order_id: UUID, admin: User, payload: RefundCompletion) -> Order:
    """Record that the refund for a cancelled or returned order was paid out."""
    order = await _locked_order(session, order_id)
    try:
        order_state.check_refund(order)
    except OrderError:
        await session.rollback()
        raise
    approved = [r for r in order.requests if r.status == OrderRequestStatus.approved]
    request = approved[-1] if approved else None
    now = _now()
    if request is not None:
        request.refunded_at = now
    if order.payment_status == PaymentStatus.paid:
        order.payment_status = PaymentStatus.refunded
    order.status = OrderStatus.refunded
    event = order_state.status_event(
        order,
        OrderStatus.refunded,
        refund_amount=_money(request.refund_amount) if request is not None else None,
        refunded_by=str(admin.id),
    )
    return await _commit_transition(session, order, [event], note=payload.note)


async def record_payment(session: AsyncSession, order_id: UUID, outcome: PaymentStatus) -> Order:
    """Store a payment outcome; a successful payment confirms a pending order."""
    order = await _locked_order(session, order_id)
    if order_state.is_terminal(order.status) or outcome == PaymentStatus.refunded:
        await session.rollback()
        raise InvalidStateError(f"Cannot record a payment on an order that is {order.status.value}")
    if order.payment_status == PaymentStatus.paid:
        await session.rollback()
        return await get_order_by_id(session, order_id)

    events: list[OrderDomainEvent] = []
    order.payment_status = outcome
    if outcome == PaymentStatus.paid and order.status == OrderStatus.pending:
        order.status = OrderStatus.confirmed
        events.append(order_state.status_event(order, OrderStatus.confirmed, payment_status=outcome.value))
    else:
        events.append(order_state.build_event(order, f"payment_{outcome.value}", payment_status=outcome.value))
    return await _commit_transition(session, order, events)


async def pay_order(session: AsyncSession, order_id: UUID, user: User) -> Order:
    order = await get_order(session, order_id, user)
    if order.payment_status == PaymentStatus.paid:
        return order
    outcome = await payments.charge_order(order)
    return await record_payment(session, order.id, outcome)
