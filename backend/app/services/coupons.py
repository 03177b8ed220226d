from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.errors import (
    CouponBelowMinimumError,
    CouponInvalidError,
    NotFoundError,
    PreconditionFailedError,
    ValidationFailedError,
)
from app.models.coupon import Coupon, CouponUsage, DiscountType
from app.models.order import Order, OrderEvent, OrderStatus, PaymentStatus
from app.models.user import User
from app.schemas.coupon import CouponCreate, CouponUpdate
from app.services import order as order_service
from app.services import pricing

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def _display_amount(value: Any) -> str:
    # 500.00 -> "500", 499.50 -> "499.5"
    return format(pricing.quantize_money(value).normalize(), "f")


@dataclass(frozen=True)
class CouponQuote:
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    discount: Decimal
    final_amount: Decimal


def is_coupon_valid(coupon: Coupon, now: datetime | None = None) -> bool:
    now = now or _now()
    if not coupon.is_active:
        return False
    if now < _aware(coupon.valid_from) or now > _aware(coupon.valid_until):
        return False
    return coupon.usage_limit is None or int(coupon.used_count or 0) < int(coupon.usage_limit)


def calculate_discount(coupon: Coupon, subtotal: Any) -> Decimal:
    """Discount for ``subtotal``; zero below the minimum and never more than ``subtotal``."""
    amount = pricing.quantize_money(subtotal)
    if amount <= 0 or amount < pricing.to_decimal(coupon.min_purchase_amount):
        return pricing.ZERO
    value = pricing.to_decimal(coupon.discount_value)
    if coupon.discount_type == DiscountType.percentage:
        discount = pricing.percent_of(amount, value)
        if coupon.max_discount_amount is not None:
            discount = min(discount, pricing.quantize_money(coupon.max_discount_amount))
    else:
        discount = pricing.quantize_money(value)
    return max(pricing.ZERO, min(discount, amount))


async def get_coupon_by_code(session: AsyncSession, code: str) -> Coupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    result = await session.execute(select(Coupon).where(Coupon.code == cleaned))
    return result.scalar_one_or_none()


def _quote(coupon: Coupon, subtotal: Any, now: datetime) -> CouponQuote:
    if not is_coupon_valid(coupon, now):
        raise CouponInvalidError("Coupon is expired or usage limit reached")
    discount = calculate_discount(coupon, subtotal)
    if discount <= 0:
        raise CouponBelowMinimumError(_display_amount(coupon.min_purchase_amount))
    return CouponQuote(
        code=coupon.code,
        discount_type=DiscountType(coupon.discount_type),
        discount_value=pricing.quantize_money(coupon.discount_value),
        discount=discount,
        final_amount=pricing.quantize_money(pricing.quantize_money(subtotal) - discount),
    )


async def validate_coupon(session: AsyncSession, code: str, subtotal: Any) -> CouponQuote:
    coupon = await get_coupon_by_code(session, code)
    if coupon is None:
        raise NotFoundError("Invalid coupon code")
    return _quote(coupon, subtotal, _now())


async def redeem_coupon(session: AsyncSession, *, code: str, user: User, order: Order) -> tuple[Order, CouponQuote]:
    """Claim one use of ``code`` against ``order``.

    The usage counter, the usage log row and the order's discount are
    written in one transaction; the limit is a predicate on the increment.
    """
    if order.user_id != user.id:
        raise NotFoundError("Order not found")
    if order.payment_status == PaymentStatus.paid:
        raise PreconditionFailedError("Coupon cannot be applied to a paid order")
    if order.order_status == OrderStatus.cancelled:
        raise PreconditionFailedError("Coupon cannot be applied to a cancelled order")
    if order.coupon_code:
        raise PreconditionFailedError("A coupon has already been applied to this order")

    coupon = await get_coupon_by_code(session, code)
    if coupon is None:
        raise NotFoundError("Invalid coupon code")
    now = _now()
    quote = _quote(coupon, order.total_amount, now)

    claimed = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            Coupon.is_active.is_(True),
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if not claimed.rowcount:
        await session.rollback()
        raise CouponInvalidError("Coupon is expired or usage limit reached")

    attached = await session.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.coupon_code.is_(None),
            Order.payment_status != PaymentStatus.paid,
            Order.order_status != OrderStatus.cancelled,
        )
        .values(coupon_code=coupon.code, discount_amount=quote.discount, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if not attached.rowcount:
        await session.rollback()
        raise PreconditionFailedError("Order changed while applying the coupon; reload and retry")

    session.add(CouponUsage(coupon_id=coupon.id, user_id=user.id, order_id=order.id, used_at=now))
    session.add(OrderEvent(order_id=order.id, event="coupon_applied", note=f"{coupon.code} -{quote.discount}"))
    await session.commit()

    metrics.record_coupon_redeemed()
    logger.info("Coupon redeemed", extra={"order_id": str(order.id), "coupon": coupon.code})

    return await order_service.reload_order(session, order.id), quote


async def list_coupons(session: AsyncSession) -> list[Coupon]:
    result = await session.execute(select(Coupon).order_by(Coupon.created_at.desc()))
    return list(result.scalars().all())


async def list_active(session: AsyncSession) -> list[Coupon]:
    now = _now()
    coupons = await list_coupons(session)
    return [coupon for coupon in coupons if is_coupon_valid(coupon, now)]


async def get_coupon(session: AsyncSession, coupon_id: UUID) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    return coupon


def _check_window(valid_from: datetime, valid_until: datetime) -> None:
    if _aware(valid_until) <= _aware(valid_from):
        raise ValidationFailedError("valid_until must be after valid_from")


async def create_coupon(session: AsyncSession, payload: CouponCreate) -> Coupon:
    data = payload.model_dump()
    data["code"] = normalize_code(data["code"])
    if not data["code"]:
        raise ValidationFailedError("Coupon code is required")
    _check_window(data["valid_from"], data["valid_until"])
    coupon = Coupon(**data, used_count=0)
    session.add(coupon)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationFailedError("Coupon code already exists")
    await session.refresh(coupon)
    logger.info("Coupon created", extra={"coupon": coupon.code})
    return coupon


async def update_coupon(session: AsyncSession, coupon: Coupon, payload: CouponUpdate) -> Coupon:
    data = payload.model_dump(exclude_unset=True)
    if "code" in data:
        data["code"] = normalize_code(data["code"])
    for field, value in data.items():
        setattr(coupon, field, value)
    _check_window(coupon.valid_from, coupon.valid_until)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationFailedError("Coupon code already exists")
    await session.refresh(coupon)
    return coupon


async def delete_coupon(session: AsyncSession, coupon: Coupon) -> None:
    await session.delete(coupon)
    await session.commit()
