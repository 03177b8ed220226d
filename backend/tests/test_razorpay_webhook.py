import asyncio
import hashlib
import hmac
import json
from typing import Any, Dict

from fastapi.testclient import TestClient
from sqlalchemy import select

from app.models.webhook import PaymentWebhookEvent
from tests.factories import auth_headers, seed_order, seed_user


def _captured_payload(order_id: Any) -> bytes:
    body = {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {"id": "pay_rzp_1", "status": "captured", "notes": {"order_id": str(order_id)}},
            }
        },
    }
    return json.dumps(body).encode()


def _sign(payload: bytes, secret: str = "rzp_webhook_secret") -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def test_razorpay_webhook_rejects_bad_signature(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    payload = _captured_payload(order_id)

    res = client.post(
        "/api/v1/payments/webhook/razorpay",
        content=payload,
        headers={"x-razorpay-signature": _sign(payload, "wrong-secret"), "content-type": "application/json"},
    )
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_signature"

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"


def test_razorpay_webhook_marks_order_paid(test_app: Dict[str, object], sent_notifications: list) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    payload = _captured_payload(order_id)
    headers = {
        "x-razorpay-signature": _sign(payload),
        "x-razorpay-event-id": "rzp_evt_1",
        "content-type": "application/json",
    }

    res = client.post("/api/v1/payments/webhook/razorpay", content=payload, headers=headers)
    assert res.status_code == 200, res.text
    assert res.json() == {"received": True}
    assert [event for event, _ in sent_notifications] == ["order_confirmation", "payment_success"]

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "paid"

    assert client.post("/api/v1/payments/webhook/razorpay", content=payload, headers=headers).status_code == 200
    assert len(sent_notifications) == 2

    async def _load() -> PaymentWebhookEvent:
        async with SessionLocal() as session:
            return (
                await session.execute(select(PaymentWebhookEvent).where(PaymentWebhookEvent.gateway == "razorpay"))
            ).scalar_one()

    stored = asyncio.run(_load())
    assert stored.event_id == "rzp_evt_1"
    assert stored.event_type == "payment.captured"
    assert stored.attempts == 2


def test_razorpay_webhook_without_event_id_dedupes_on_body(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    payload = _captured_payload(order_id)
    headers = {"x-razorpay-signature": _sign(payload), "content-type": "application/json"}

    assert client.post("/api/v1/payments/webhook/razorpay", content=payload, headers=headers).status_code == 200
    assert client.post("/api/v1/payments/webhook/razorpay", content=payload, headers=headers).status_code == 200

    async def _load() -> list[PaymentWebhookEvent]:
        async with SessionLocal() as session:
            return list((await session.execute(select(PaymentWebhookEvent))).scalars())

    stored = asyncio.run(_load())
    assert len(stored) == 1
    assert stored[0].event_id == hashlib.sha256(payload).hexdigest()
    assert stored[0].attempts == 2


def test_razorpay_order_paid_event_reads_order_notes(test_app: Dict[str, object], sent_notifications: list) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    payload = json.dumps(
        {
            "event": "order.paid",
            "payload": {
                "payment": {"entity": {"id": "pay_rzp_2", "status": "captured", "notes": []}},
                "order": {"entity": {"id": "order_rzp_2", "status": "paid", "notes": {"order_id": str(order_id)}}},
            },
        }
    ).encode()
    headers = {
        "x-razorpay-signature": _sign(payload),
        "x-razorpay-event-id": "rzp_evt_order_paid",
        "content-type": "application/json",
    }

    res = client.post("/api/v1/payments/webhook/razorpay", content=payload, headers=headers)
    assert res.status_code == 200, res.text
    assert [event for event, _ in sent_notifications] == ["order_confirmation", "payment_success"]

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "paid"

    async def _load() -> PaymentWebhookEvent:
        async with SessionLocal() as session:
            return (
                await session.execute(
                    select(PaymentWebhookEvent).where(PaymentWebhookEvent.event_id == "rzp_evt_order_paid")
                )
            ).scalar_one()

    stored = asyncio.run(_load())
    assert stored.order_id == str(order_id)
    assert stored.processed_at is not None
    assert stored.last_error is None
