from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import (
    ConcurrentUpdateError,
    DuplicateReturnError,
    NotFoundError,
    PreconditionFailedError,
    ValidationFailedError,
)
from app.models.order import Order, OrderItem, OrderStatus
from app.models.returns import ReturnRequest, ReturnStatus
from app.models.user import User
from app.services import notifications
from app.services import order as order_service
from app.services import pricing
from app.services.notifications import NotificationEvent
from app.services.transitions import RETURN_STATUS_TRANSITIONS, ensure_transition

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = frozenset({ReturnStatus.approved, ReturnStatus.received, ReturnStatus.refunded})

STATUS_NOTIFICATIONS: dict[ReturnStatus, NotificationEvent] = {
    ReturnStatus.approved: NotificationEvent.return_approved,
    ReturnStatus.declined: NotificationEvent.return_declined,
    ReturnStatus.received: NotificationEvent.return_received,
}


def _normalized_optional_text(value: str | None) -> str | None:
    if not value:
        return None
    normalized = value.strip()
    return normalized or None


def _return_query():
    return select(ReturnRequest).options(
        selectinload(ReturnRequest.order).selectinload(Order.items).selectinload(OrderItem.product),
        selectinload(ReturnRequest.order).selectinload(Order.user),
        selectinload(ReturnRequest.user),
    )


async def get_return_request(session: AsyncSession, return_id: UUID, *, refresh: bool = False) -> ReturnRequest | None:
    query = _return_query().where(ReturnRequest.id == return_id)
    if refresh:
        query = query.execution_options(populate_existing=True)
    return (await session.execute(query)).scalar_one_or_none()


async def require_return_request(session: AsyncSession, return_id: UUID) -> ReturnRequest:
    record = await get_return_request(session, return_id)
    if record is None:
        raise NotFoundError("Return request not found")
    return record


async def list_returns_for_user(session: AsyncSession, user_id: UUID) -> list[ReturnRequest]:
    result = await session.execute(
        _return_query().where(ReturnRequest.user_id == user_id).order_by(ReturnRequest.created_at.desc())
    )
    return list(result.scalars().unique())


async def list_return_requests(
    session: AsyncSession,
    *,
    status_filter: ReturnStatus | None = None,
    order_id: UUID | None = None,
) -> list[ReturnRequest]:
    query = _return_query().order_by(ReturnRequest.created_at.desc())
    if status_filter:
        query = query.where(ReturnRequest.status == status_filter)
    if order_id:
        query = query.where(ReturnRequest.order_id == order_id)
    return list((await session.execute(query)).scalars().unique())


async def create_return_request_for_user(
    session: AsyncSession,
    *,
    order_id: UUID,
    reason: str,
    user: User,
    background_tasks: BackgroundTasks | None = None,
) -> ReturnRequest:
    order = await order_service.get_order(session, user.id, order_id)
    if not order:
        raise NotFoundError("Order not found")
    if OrderStatus(order.order_status) != OrderStatus.delivered:
        raise PreconditionFailedError("Returns can only be requested for delivered orders")
    cleaned_reason = _normalized_optional_text(reason)
    if not cleaned_reason:
        raise ValidationFailedError("Reason is required")

    # Lookup-before-insert; two simultaneous requests can both pass this check.
    existing = int(
        (
            await session.execute(
                select(func.count()).select_from(ReturnRequest).where(ReturnRequest.order_id == order.id)
            )
        ).scalar_one()
        or 0
    )
    if existing:
        raise DuplicateReturnError()

    record = ReturnRequest(order_id=order.id, user_id=user.id, status=ReturnStatus.pending, reason=cleaned_reason)
    session.add(record)
    await session.commit()
    created = await get_return_request(session, record.id, refresh=True) or record
    logger.info("Return requested", extra={"return_id": str(created.id), "order_id": str(order.id)})
    notifications.schedule(background_tasks, NotificationEvent.return_created, notifications.return_payload(created))
    return created


def _validate_refund_amount(record: ReturnRequest, resulting_status: ReturnStatus, refund_amount: Any) -> Decimal:
    if resulting_status not in REFUNDABLE_STATUSES:
        raise ValidationFailedError("Refund amount can only be set on an approved return")
    amount = pricing.quantize_money(refund_amount)
    if amount < 0:
        raise ValidationFailedError("Refund amount cannot be negative")
    limit = order_service.charged_total(record.order)
    if amount > limit:
        raise ValidationFailedError(f"Refund amount cannot exceed the order total of {limit}")
    return amount


async def update_return_request(
    session: AsyncSession,
    *,
    record: ReturnRequest,
    status: ReturnStatus,
    admin_notes: str | None = None,
    refund_amount: Any = None,
    background_tasks: BackgroundTasks | None = None,
) -> ReturnRequest:
    previous_status = ReturnStatus(record.status)
    status_changed = ensure_transition(RETURN_STATUS_TRANSITIONS, previous_status, status, entity="return_status")

    values: dict[str, Any] = {}
    if status_changed:
        values["status"] = status
    if admin_notes is not None:
        values["admin_notes"] = _normalized_optional_text(admin_notes)
    if refund_amount is not None:
        values["refund_amount"] = _validate_refund_amount(record, status, refund_amount)
    if not values:
        return record

    return_id = record.id
    result = await session.execute(
        update(ReturnRequest)
        .where(ReturnRequest.id == return_id, ReturnRequest.status == previous_status)
        .values(**values, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        await session.rollback()
        logger.warning("Return update lost a race", extra={"return_id": str(return_id)})
        raise ConcurrentUpdateError("Return request was modified concurrently; reload and retry")
    await session.commit()

    updated = await get_return_request(session, return_id, refresh=True) or record
    if status_changed:
        logger.info(
            "Return status changed",
            extra={"return_id": str(return_id), "event": f"{previous_status.value}->{status.value}"},
        )
        event = STATUS_NOTIFICATIONS.get(status)
        if event is not None:
            notifications.schedule(background_tasks, event, notifications.return_payload(updated))
    return updated


async def delete_return_request(session: AsyncSession, record: ReturnRequest) -> None:
    return_id = str(record.id)
    await session.delete(record)
    await session.commit()
    logger.info("Return request deleted", extra={"return_id": return_id})
