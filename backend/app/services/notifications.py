"""Best-effort customer notifications keyed by lifecycle events.

``send`` is the transport contract (rendered email, ``True`` on delivery).
``dispatch`` never raises. ``schedule`` hands ``dispatch`` to FastAPI's
background tasks so it runs after the response has been produced.
"""

from __future__ import annotations

import enum
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any

from fastapi import BackgroundTasks
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core import metrics
from app.models.order import Order
from app.models.returns import ReturnRequest
from app.services import email as email_service
from app.services import pricing

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent.parent / "templates" / "notifications"
env = Environment(
    loader=FileSystemLoader(TEMPLATE_PATH),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class NotificationEvent(str, enum.Enum):
    order_confirmation = "order_confirmation"
    payment_success = "payment_success"
    payment_error = "payment_error"
    payment_reminder = "payment_reminder"
    shipping_confirmation = "shipping_confirmation"
    delivery_confirmation = "delivery_confirmation"
    order_cancellation = "order_cancellation"
    return_created = "return_created"
    return_approved = "return_approved"
    return_declined = "return_declined"
    return_received = "return_received"


SUBJECTS: dict[NotificationEvent, str] = {
    NotificationEvent.order_confirmation: "Order confirmed #{order_ref}",
    NotificationEvent.payment_success: "Payment received for order #{order_ref}",
    NotificationEvent.payment_error: "Payment issue with order #{order_ref}",
    NotificationEvent.payment_reminder: "Complete your payment for order #{order_ref}",
    NotificationEvent.shipping_confirmation: "Your order #{order_ref} has shipped",
    NotificationEvent.delivery_confirmation: "Your order #{order_ref} has been delivered",
    NotificationEvent.order_cancellation: "Your order #{order_ref} has been cancelled",
    NotificationEvent.return_created: "Return request received for order #{order_ref}",
    NotificationEvent.return_approved: "Return approved for order #{order_ref}",
    NotificationEvent.return_declined: "Return request update for order #{order_ref}",
    NotificationEvent.return_received: "Returned items received for order #{order_ref}",
}


def _money(value: Any) -> str:
    return f"{pricing.quantize_money(value):.2f}"


def order_payload(order: Order, **extra: Any) -> dict[str, Any]:
    user = getattr(order, "user", None)
    address = order.shipping_address
    payload: dict[str, Any] = {
        "order_id": str(order.id),
        "order_ref": str(order.id)[:8].upper(),
        "customer_email": getattr(user, "email", None),
        "customer_name": address.full_name if address else getattr(user, "name", None),
        "total_amount": _money(order.total_amount),
        "discount_amount": _money(order.discount_amount or Decimal("0")),
        "order_status": order.order_status.value,
        "payment_status": order.payment_status.value,
        "items": [
            {
                "name": getattr(getattr(item, "product", None), "name", None) or str(item.product_id),
                "quantity": item.quantity,
                "unit_price": _money(item.unit_price),
            }
            for item in (order.items or [])
        ],
    }
    payload.update(extra)
    return payload


def return_payload(record: ReturnRequest, **extra: Any) -> dict[str, Any]:
    payload = order_payload(record.order)
    payload.update(
        {
            "return_id": str(record.id),
            "reason": record.reason,
            "return_status": record.status.value,
            "admin_notes": record.admin_notes,
            "refund_amount": _money(record.refund_amount) if record.refund_amount is not None else None,
        }
    )
    payload.update(extra)
    return payload


def render(event: NotificationEvent, payload: dict[str, Any]) -> tuple[str, str]:
    subject = SUBJECTS[event].format(order_ref=payload.get("order_ref", ""))
    body = env.get_template(f"{event.value}.txt.j2").render(**payload)
    return subject, body


async def send(event: NotificationEvent, payload: dict[str, Any]) -> bool:
    to_email = payload.get("customer_email")
    if not to_email:
        logger.info("Notification skipped: no recipient", extra={"event": event.value, "order_id": payload.get("order_id")})
        return False
    subject, body = render(event, payload)
    return await email_service.send_email(to_email, subject, body)


async def dispatch(event: NotificationEvent, payload: dict[str, Any]) -> bool:
    try:
        delivered = await send(event, payload)
    except Exception:
        logger.exception(
            "Notification dispatch failed", extra={"event": event.value, "order_id": payload.get("order_id")}
        )
        metrics.record_notification_failure()
        return False
    if not delivered:
        metrics.record_notification_failure()
    return delivered


def schedule(background_tasks: BackgroundTasks | None, event: NotificationEvent, payload: dict[str, Any]) -> None:
    if background_tasks is None:
        logger.warning("No background queue; notification dropped", extra={"event": event.value})
        return
    background_tasks.add_task(dispatch, event, payload)
