from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from app.core import metrics
from app.core.errors import ConcurrentUpdateError, NotFoundError, PreconditionFailedError, ValidationFailedError
from app.models.order import Order, OrderEvent, OrderItem, OrderStatus, PaymentStatus, ShippingAddress
from app.models.user import User
from app.services import cart as cart_service
from app.services import notifications
from app.services import pricing
from app.services.transitions import ORDER_STATUS_TRANSITIONS, PAYMENT_STATUS_TRANSITIONS, ensure_transition

logger = logging.getLogger(__name__)

STATUS_NOTIFICATIONS: dict[OrderStatus, notifications.NotificationEvent] = {
    OrderStatus.shipped: notifications.NotificationEvent.shipping_confirmation,
    OrderStatus.delivered: notifications.NotificationEvent.delivery_confirmation,
    OrderStatus.cancelled: notifications.NotificationEvent.order_cancellation,
}


def order_query():
    return select(Order).options(
        selectinload(Order.items).selectinload(OrderItem.product),
        selectinload(Order.events),
        selectinload(Order.user),
    )


async def create_order_from_cart(session: AsyncSession, user: User, shipping_address: ShippingAddress) -> Order:
    """Price the user's cart, persist the order and empty the cart in one transaction."""
    snapshot = await cart_service.read_snapshot(session, user.id)

    items = [
        OrderItem(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            subtotal=line.subtotal,
        )
        for line in snapshot.lines
    ]
    order = Order(
        user_id=user.id,
        total_amount=snapshot.total,
        discount_amount=Decimal("0.00"),
        payment_status=PaymentStatus.pending,
        order_status=OrderStatus.processing,
        shipping_address=shipping_address,
        items=items,
    )
    try:
        session.add(order)
        await session.flush()
        session.add(OrderEvent(order_id=order.id, event="created", note=f"{len(items)} line(s), total {snapshot.total}"))
        await cart_service.clear_cart(session, snapshot.cart_id)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    metrics.record_order_created()
    logger.info("Order created", extra={"order_id": str(order.id), "total": str(snapshot.total)})
    return await reload_order(session, order.id)


async def get_orders_for_user(session: AsyncSession, user_id: UUID) -> Sequence[Order]:
    result = await session.execute(
        order_query().where(Order.user_id == user_id).order_by(Order.created_at.desc())
    )
    return result.scalars().all()


async def get_order(session: AsyncSession, user_id: UUID, order_id: UUID) -> Order | None:
    result = await session.execute(order_query().where(Order.user_id == user_id, Order.id == order_id))
    return result.scalar_one_or_none()


async def require_order_for_user(session: AsyncSession, user_id: UUID, order_id: UUID) -> Order:
    order = await get_order(session, user_id, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def get_order_by_id(session: AsyncSession, order_id: UUID) -> Order | None:
    result = await session.execute(order_query().where(Order.id == order_id))
    return result.scalar_one_or_none()


async def reload_order(session: AsyncSession, order_id: UUID) -> Order:
    result = await session.execute(
        order_query().where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def list_orders(
    session: AsyncSession,
    *,
    order_status: OrderStatus | None = None,
    payment_status: PaymentStatus | None = None,
    user_id: UUID | None = None,
) -> list[Order]:
    query = order_query().order_by(Order.created_at.desc())
    if order_status:
        query = query.where(Order.order_status == order_status)
    if payment_status:
        query = query.where(Order.payment_status == payment_status)
    if user_id:
        query = query.where(Order.user_id == user_id)
    result = await session.execute(query)
    return list(result.scalars().unique())


async def _compare_and_set(session: AsyncSession, order_id: UUID, *criteria: Any, **values: Any) -> bool:
    """Apply ``values`` only if the row still matches ``criteria``; returns whether a row changed."""
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, *criteria)
        .values(**values, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def update_order_status(
    session: AsyncSession,
    order: Order,
    *,
    order_status: OrderStatus | None = None,
    payment_status: PaymentStatus | None = None,
    background_tasks: BackgroundTasks | None = None,
) -> Order:
    if order_status is None and payment_status is None:
        raise ValidationFailedError("Provide order_status or payment_status")

    current_order_status = OrderStatus(order.order_status)
    current_payment_status = PaymentStatus(order.payment_status)
    values: dict[str, Any] = {}
    notes: list[str] = []
    if order_status is not None and ensure_transition(
        ORDER_STATUS_TRANSITIONS, current_order_status, order_status, entity="order_status"
    ):
        values["order_status"] = order_status
        notes.append(f"order_status {current_order_status.value} -> {order_status.value}")
    if payment_status is not None and ensure_transition(
        PAYMENT_STATUS_TRANSITIONS, current_payment_status, payment_status, entity="payment_status"
    ):
        values["payment_status"] = payment_status
        notes.append(f"payment_status {current_payment_status.value} -> {payment_status.value}")
    if not values:
        return order

    order_id = order.id
    changed = await _compare_and_set(
        session,
        order_id,
        Order.order_status == current_order_status,
        Order.payment_status == current_payment_status,
        **values,
    )
    if not changed:
        await session.rollback()
        logger.warning("Order status update lost a race", extra={"order_id": str(order_id)})
        raise ConcurrentUpdateError("Order was modified concurrently; reload and retry")
    session.add(OrderEvent(order_id=order_id, event="status_change", note="; ".join(notes)))
    await session.commit()

    updated = await reload_order(session, order_id)
    event = STATUS_NOTIFICATIONS.get(order_status) if "order_status" in values else None
    if event is not None:
        notifications.schedule(background_tasks, event, notifications.order_payload(updated))
    return updated


async def cancel_order(session: AsyncSession, order: Order) -> Order:
    """Cancel on behalf of the owner. No refund or coupon rollback happens here."""
    current = OrderStatus(order.order_status)
    if current == OrderStatus.delivered:
        raise PreconditionFailedError("Cannot cancel delivered order")
    if not ensure_transition(ORDER_STATUS_TRANSITIONS, current, OrderStatus.cancelled, entity="order_status"):
        return order

    order_id = order.id
    changed = await _compare_and_set(
        session,
        order_id,
        Order.order_status.notin_([OrderStatus.delivered, OrderStatus.cancelled]),
        order_status=OrderStatus.cancelled,
    )
    if not changed:
        await session.rollback()
        latest = await reload_order(session, order_id)
        if latest.order_status == OrderStatus.delivered:
            raise PreconditionFailedError("Cannot cancel delivered order")
        return latest
    session.add(OrderEvent(order_id=order_id, event="cancelled", note=f"Cancelled by customer from {current.value}"))
    await session.commit()
    logger.info("Order cancelled", extra={"order_id": str(order_id)})
    return await reload_order(session, order_id)


async def mark_order_paid(session: AsyncSession, order_id: UUID, *, note: str) -> bool:
    """Idempotently move payment_status to paid. Returns True only for the call that made the change."""
    changed = await _compare_and_set(
        session,
        order_id,
        Order.payment_status != PaymentStatus.paid,
        payment_status=PaymentStatus.paid,
    )
    if changed:
        session.add(OrderEvent(order_id=order_id, event="payment_confirmed", note=note))
    await session.commit()
    return changed


async def add_order_event(session: AsyncSession, order_id: UUID, event: str, note: str | None = None) -> None:
    session.add(OrderEvent(order_id=order_id, event=event, note=note))
    await session.commit()


def charged_total(order: Order) -> Decimal:
    """Amount the customer is asked to pay: items less discount, plus tax and service charge."""
    return pricing.compute_payment_breakdown(order.total_amount, discount=order.discount_amount).total_amount
