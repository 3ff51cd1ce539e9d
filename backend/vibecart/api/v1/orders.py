import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from vibecart.core.config import settings
from vibecart.core.dependencies import get_current_user, require_admin
from vibecart.db.session import get_session
from vibecart.models.order import OrderStatus
from vibecart.models.user import User
from vibecart.schemas.common import PaginationMeta
from vibecart.schemas.order import (
    CancelDecision,
    CancelRequestCreate,
    OrderCreate,
    OrderListItem,
    OrderListResponse,
    OrderRead,
    OrderStatusUpdate,
    RefundCompletion,
    ReturnDecision,
    ReturnRequestCreate,
)
from vibecart.services import order as order_service

router = APIRouter(prefix="/orders", tags=["orders"])
logger = logging.getLogger(__name__)


def _page_meta(total_items: int, page: int, limit: int) -> PaginationMeta:
    total_pages = max(1, (total_items + limit - 1) // limit)
    return PaginationMeta(total_items=total_items, total_pages=total_pages, page=page, limit=limit)


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> OrderRead:
    try:
        order = await asyncio.wait_for(
            order_service.create_order(session, current_user, payload),
            timeout=settings.order_operation_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning("Order creation timed out for user %s", current_user.id)
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Order creation timed out")
    return OrderRead.model_validate(order)


@router.get("", response_model=OrderListResponse)
async def list_my_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> OrderListResponse:
    orders, total_items = await order_service.list_orders_for_user(session, current_user.id, page=page, limit=limit)
    return OrderListResponse(
        items=[OrderListItem.model_validate(order) for order in orders],
        meta=_page_meta(total_items, page, limit),
    )


@router.get("/admin", response_model=OrderListResponse)
async def admin_list_orders(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=40),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> OrderListResponse:
    orders, total_items = await order_service.list_orders(
        session, status=status_filter, search=search, page=page, limit=limit
    )
    return OrderListResponse(
        items=[OrderListItem.model_validate(order) for order in orders],
        meta=_page_meta(total_items, page, limit),
    )


@router.post("/admin/{order_id}/cancel-request", response_model=OrderRead)
async def admin_process_cancel_request(
    order_id: UUID,
    payload: CancelDecision,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
) -> OrderRead:
    order = await order_service.process_cancel_request(session, order_id, admin, payload)
    return OrderRead.model_validate(order)


@router.post("/admin/{order_id}/return-request", response_model=OrderRead)
async def admin_process_return_request(
    order_id: UUID,
    payload: ReturnDecision,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
) -> OrderRead:
    order = await order_service.process_return_request(session, order_id, admin, payload)
    return OrderRead.model_validate(order)


@router.patch("/admin/{order_id}/status", response_model=OrderRead)
async def admin_set_status(
    order_id: UUID,
    payload: OrderStatusUpdate,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
) -> OrderRead:
    order = await order_service.set_status(session, order_id, admin, payload)
    return OrderRead.model_validate(order)


@router.post("/admin/{order_id}/refund", response_model=OrderRead)
async def admin_mark_refunded(
    order_id: UUID,
    payload: RefundCompletion | None = None,
    session: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
) -> OrderRead:
    order = await order_service.mark_refunded(session, order_id, admin, payload or RefundCompletion())
    return OrderRead.model_validate(order)


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> OrderRead:
    order = await order_service.get_order(session, order_id, current_user)
    return OrderRead.model_validate(order)


@router.post("/{order_id}/cancel-request", response_model=OrderRead)
async def request_cancel(
    order_id: UUID,
    payload: CancelRequestCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> OrderRead:
    order = await order_service.request_cancel(session, order_id, current_user, payload)
    return OrderRead.model_validate(order)


@router.post("/{order_id}/return-request", response_model=OrderRead)
async def request_return(
    order_id: UUID,
    payload: ReturnRequestCreate,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> OrderRead:
    order = await order_service.request_return(session, order_id, current_user, payload)
    return OrderRead.model_validate(order)


@router.post("/{order_id}/pay", response_model=OrderRead)
async def pay_order(
    order_id: UUID,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> OrderRead:
    order = await order_service.pay_order(session, order_id, current_user)
    return OrderRead.model_validate(order)
