from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from vibecart.core.dependencies import get_current_user_optional, require_admin
from vibecart.db.session import get_session
from vibecart.models.user import User
from vibecart.schemas.common import PaginationMeta
from vibecart.schemas.coupon import (
    CouponCreate,
    CouponListResponse,
    CouponRead,
    CouponUpdate,
    CouponValidateRequest,
    CouponValidationRead,
)
from vibecart.services import coupons as coupons_service
from vibecart.services import order as order_service

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidationRead)
async def validate_coupon(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User | None = Depends(get_current_user_optional),
) -> CouponValidationRead:
    result = await order_service.preview_coupon(session, code=payload.code, items=payload.items, user=current_user)
    return CouponValidationRead(**result)


@router.get("/admin", response_model=CouponListResponse)
async def admin_list_coupons(
    status_filter: Literal["active", "inactive"] | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> CouponListResponse:
    rows, total_items = await coupons_service.list_coupons(session, status_filter=status_filter, page=page, limit=limit)
    total_pages = max(1, (total_items + limit - 1) // limit)
    return CouponListResponse(
        items=[CouponRead.model_validate(row) for row in rows],
        meta=PaginationMeta(total_items=total_items, total_pages=total_pages, page=page, limit=limit),
    )


@router.post("/admin", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(
    payload: CouponCreate,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> CouponRead:
    coupon = await coupons_service.create_coupon(session, payload)
    return CouponRead.model_validate(coupon)


@router.get("/admin/{coupon_id}", response_model=CouponRead)
async def admin_get_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> CouponRead:
    coupon = await coupons_service.get_coupon(session, coupon_id)
    return CouponRead.model_validate(coupon)


@router.patch("/admin/{coupon_id}", response_model=CouponRead)
async def admin_update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> CouponRead:
    coupon = await coupons_service.update_coupon(session, coupon_id, payload)
    return CouponRead.model_validate(coupon)


@router.delete("/admin/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> Response:
    await coupons_service.delete_coupon(session, coupon_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
