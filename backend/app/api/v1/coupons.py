from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_user, require_admin
from app.db.session import get_session
from app.models.user import User
from app.schemas.coupon import (
    CouponApplyRequest,
    CouponApplyResponse,
    CouponCreate,
    CouponQuoteRead,
    CouponRead,
    CouponUpdate,
    CouponValidateRequest,
    CouponValidateResponse,
)
from app.schemas.order import OrderRead
from app.services import coupons as coupons_service
from app.services import order as order_service

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(get_current_user),
):
    quote = await coupons_service.validate_coupon(session, payload.code, payload.subtotal)
    return CouponValidateResponse(valid=True, coupon=CouponQuoteRead.model_validate(quote))


@router.post("/apply/{order_id}", response_model=CouponApplyResponse)
async def apply_coupon(
    order_id: UUID,
    payload: CouponApplyRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    order = await order_service.require_order_for_user(session, current_user.id, order_id)
    updated, quote = await coupons_service.redeem_coupon(session, code=payload.code, user=current_user, order=order)
    return CouponApplyResponse(
        order=OrderRead.model_validate(updated),
        discount=float(quote.discount),
        final_amount=float(quote.final_amount),
    )


@router.get("/active", response_model=list[CouponRead])
async def list_active_coupons(session: AsyncSession = Depends(get_session)):
    return await coupons_service.list_active(session)


@router.get("/admin", response_model=list[CouponRead])
async def admin_list_coupons(
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    return await coupons_service.list_coupons(session)


@router.post("/admin", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def admin_create_coupon(
    payload: CouponCreate,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    return await coupons_service.create_coupon(session, payload)


@router.put("/admin/{coupon_id}", response_model=CouponRead)
async def admin_update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    coupon = await coupons_service.get_coupon(session, coupon_id)
    return await coupons_service.update_coupon(session, coupon, payload)


@router.delete("/admin/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
) -> Response:
    coupon = await coupons_service.get_coupon(session, coupon_id)
    await coupons_service.delete_coupon(session, coupon)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
