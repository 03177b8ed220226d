from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import metrics
from app.core.config import settings
from app.core.errors import NotFoundError, PaymentFailedError, PreconditionFailedError, ValidationFailedError
from app.models.order import Order, OrderStatus, PaymentStatus
from app.models.user import User
from app.models.webhook import PaymentWebhookEvent
from app.services import notifications
from app.services import order as order_service
from app.services import pricing
from app.services.gateways import GatewayWebhookEvent, IntentResult, PaymentMethod, get_gateway
from app.services.notifications import NotificationEvent

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def payment_breakdown(order: Order) -> pricing.PaymentBreakdown:
    return pricing.compute_payment_breakdown(order.total_amount, discount=order.discount_amount)


async def create_payment_intent(
    session: AsyncSession, *, user: User, order_id: UUID, method: PaymentMethod | str
) -> tuple[Order, IntentResult, pricing.PaymentBreakdown]:
    gateway = get_gateway(method)
    gateway.ensure_configured()
    order = await order_service.require_order_for_user(session, user.id, order_id)
    if order.order_status == OrderStatus.cancelled:
        raise PreconditionFailedError("Cannot pay for a cancelled order")
    if order.payment_status == PaymentStatus.paid:
        raise PreconditionFailedError("Order is already paid")

    breakdown = payment_breakdown(order)
    intent = await gateway.create_intent(order, breakdown)
    await order_service.add_order_event(
        session, order.id, "payment_intent_created", f"{gateway.name} {intent.reference} {breakdown.total_amount}"
    )
    logger.info(
        "Payment intent created",
        extra={"order_id": str(order.id), "gateway": gateway.name},
    )
    return order, intent, breakdown


async def _settle(session: AsyncSession, order_id: UUID, note: str) -> bool:
    transitioned = await order_service.mark_order_paid(session, order_id, note=note)
    if transitioned:
        metrics.record_payment_confirmed()
        logger.info("Order marked paid", extra={"order_id": str(order_id)})
    return transitioned


async def confirm_payment(
    session: AsyncSession,
    *,
    order_id: UUID,
    reference: str,
    method: PaymentMethod | str,
    user: User | None = None,
) -> Order:
    """Ask the gateway how ``reference`` ended and apply the result to the order.

    ``user=None`` is the operator path (CLI reconciliation) and skips the
    ownership check. Paid confirmations are idempotent: only the call that
    performs the transition sends the confirmation notifications.
    """
    gateway = get_gateway(method)
    gateway.ensure_configured()
    if user is not None:
        order = await order_service.require_order_for_user(session, user.id, order_id)
    else:
        found = await order_service.get_order_by_id(session, order_id)
        if found is None:
            raise NotFoundError("Order not found")
        order = found

    confirmation = await gateway.confirm(reference)
    if confirmation.order_id != str(order.id):
        logger.warning(
            "Payment reference belongs to another order",
            extra={"order_id": str(order.id), "gateway": gateway.name},
        )
        raise ValidationFailedError("Payment reference does not belong to this order")

    if confirmation.outcome == "settled":
        expected_minor = payment_breakdown(order).amount_minor
        if confirmation.amount_minor != expected_minor:
            logger.warning(
                "Settled amount %s does not match amount due %s",
                confirmation.amount_minor,
                expected_minor,
                extra={"order_id": str(order.id), "gateway": gateway.name},
            )
            raise ValidationFailedError("Payment amount does not match the order total")
        transitioned = await _settle(session, order.id, f"{gateway.name} {reference}")
        order = await order_service.reload_order(session, order.id)
        if transitioned:
            payload = notifications.order_payload(order)
            await notifications.dispatch(NotificationEvent.order_confirmation, payload)
            await notifications.dispatch(NotificationEvent.payment_success, payload)
        return order

    metrics.record_payment_failure()
    gateway_status = confirmation.gateway_status or "unknown"
    await order_service.add_order_event(session, order.id, "payment_failed", f"{gateway.name} {reference} {gateway_status}")
    order = await order_service.reload_order(session, order.id)
    await notifications.dispatch(
        NotificationEvent.payment_error, notifications.order_payload(order, error=f"Payment status: {gateway_status}")
    )
    raise PaymentFailedError(f"Payment not completed (status: {gateway_status})")


async def _record_webhook_event(session: AsyncSession, gateway: str, event: GatewayWebhookEvent) -> PaymentWebhookEvent:
    now = _now()
    record = PaymentWebhookEvent(
        gateway=gateway,
        event_id=event.event_id,
        event_type=event.event_type,
        order_id=event.order_id,
        attempts=1,
        last_attempt_at=now,
        payload=event.summary,
    )
    session.add(record)
    try:
        await session.commit()
        await session.refresh(record)
        return record
    except IntegrityError:
        await session.rollback()

    result = await session.execute(
        select(PaymentWebhookEvent).where(
            PaymentWebhookEvent.gateway == gateway, PaymentWebhookEvent.event_id == event.event_id
        )
    )
    existing = result.scalar_one()
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = now
    existing.event_type = event.event_type or existing.event_type
    await session.commit()
    await session.refresh(existing)
    return existing


async def _finish_webhook_event(
    session: AsyncSession, record_id: UUID, *, processed: bool, error: str | None = None
) -> PaymentWebhookEvent:
    record = await session.get(PaymentWebhookEvent, record_id)
    if record is None:
        raise NotFoundError("Webhook event not found")
    record.processed_at = _now() if processed else None
    record.last_error = error
    await session.commit()
    await session.refresh(record)
    return record


def _already_processed(record: PaymentWebhookEvent) -> bool:
    return record.processed_at is not None and not (record.last_error or "").strip()


async def _apply_webhook_event(
    session: AsyncSession, gateway: str, event: GatewayWebhookEvent, background_tasks: BackgroundTasks | None
) -> str | None:
    """Apply a verified event. Returns a note when the event could not be matched to an order."""
    if not event.succeeded:
        return None
    if not event.order_id:
        return "Event carries no order id"
    try:
        order_uuid = UUID(event.order_id)
    except ValueError:
        return f"Malformed order id {event.order_id!r}"
    order = await order_service.get_order_by_id(session, order_uuid)
    if order is None:
        return f"Order {event.order_id} not found"

    transitioned = await _settle(session, order.id, f"{gateway} webhook {event.reference or event.event_id}")
    if transitioned:
        order = await order_service.reload_order(session, order.id)
        payload = notifications.order_payload(order)
        notifications.schedule(background_tasks, NotificationEvent.order_confirmation, payload)
        notifications.schedule(background_tasks, NotificationEvent.payment_success, payload)
    return None


async def handle_webhook(
    session: AsyncSession,
    method: PaymentMethod | str,
    payload: bytes,
    headers: Mapping[str, str],
    background_tasks: BackgroundTasks | None = None,
) -> PaymentWebhookEvent:
    """Verify, record and apply a gateway webhook delivery.

    Only signature and configuration problems reach the caller. Everything
    after verification is acknowledged; failures are kept on the event record.
    """
    gateway = get_gateway(method)
    event = gateway.parse_webhook(payload, headers)
    record = await _record_webhook_event(session, gateway.name, event)
    record_id = record.id
    if _already_processed(record):
        logger.info(
            "Webhook already processed",
            extra={"gateway": gateway.name, "event": event.event_id, "order_id": event.order_id},
        )
        return record

    try:
        unmatched = await _apply_webhook_event(session, gateway.name, event, background_tasks)
    except Exception as exc:
        await session.rollback()
        metrics.record_webhook_error()
        logger.exception(
            "Webhook processing failed",
            extra={"gateway": gateway.name, "event": event.event_id, "order_id": event.order_id},
        )
        return await _finish_webhook_event(
            session, record_id, processed=False, error=str(exc) or exc.__class__.__name__
        )

    if unmatched:
        logger.warning("Webhook event not applied: %s", unmatched, extra={"gateway": gateway.name, "event": event.event_id})
    return await _finish_webhook_event(session, record_id, processed=True, error=unmatched)


async def list_payment_reminders(session: AsyncSession, *, now: datetime | None = None) -> list[Order]:
    """Unpaid, uncancelled orders placed inside the reminder window, oldest first."""
    since = (now or _now()) - timedelta(hours=settings.payment_reminder_window_hours)
    result = await session.execute(
        order_service.order_query()
        .where(
            Order.payment_status == PaymentStatus.pending,
            Order.order_status != OrderStatus.cancelled,
            Order.created_at >= since,
        )
        .order_by(Order.created_at.asc())
    )
    return list(result.scalars().unique())


async def send_payment_reminder(
    session: AsyncSession, order_id: UUID, background_tasks: BackgroundTasks | None = None
) -> Order:
    order = await order_service.get_order_by_id(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.payment_status != PaymentStatus.pending or order.order_status == OrderStatus.cancelled:
        raise PreconditionFailedError("Order is not awaiting payment")

    await order_service.add_order_event(session, order.id, "payment_reminder_sent")
    order = await order_service.reload_order(session, order.id)
    breakdown = payment_breakdown(order)
    notifications.schedule(
        background_tasks,
        NotificationEvent.payment_reminder,
        notifications.order_payload(order, amount_due=f"{breakdown.total_amount:.2f}"),
    )
    return order
