import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.models.order import OrderStatus, PaymentStatus
from app.services.gateways import RazorpayGateway
from tests.factories import auth_headers, seed_order, seed_user


def _fake_intent(order_id: Any, status: str = "succeeded", amount: int = 28800) -> dict:
    return {"id": "pi_test_123", "status": status, "amount": amount, "metadata": {"order_id": str(order_id)}}


def test_create_payment_intent_uses_server_side_breakdown(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id, total="240.00"))
    captured: dict[str, Any] = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_test_123", "client_secret": "pi_test_123_secret"}

    monkeypatch.setattr("app.services.gateways.stripe.PaymentIntent.create", fake_create)

    res = client.post(
        "/api/v1/payments/create",
        json={"order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["reference"] == "pi_test_123"
    assert body["gateway"] == {"client_secret": "pi_test_123_secret", "payment_intent_id": "pi_test_123"}
    assert body["breakdown"]["items_total"] == 240.0
    assert body["breakdown"]["tax"] == 43.2
    assert body["breakdown"]["service_charge"] == 4.8
    assert body["breakdown"]["total_amount"] == 288.0
    assert body["breakdown"]["amount_minor"] == 28800
    assert captured["amount"] == 28800
    assert captured["currency"] == "inr"
    assert captured["metadata"]["order_id"] == str(order_id)

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"
    assert order["events"][-1]["event"] == "payment_intent_created"


def test_create_payment_intent_rejects_paid_or_cancelled_orders(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    paid_id = asyncio.run(seed_order(SessionLocal, user.id, payment_status=PaymentStatus.paid))
    cancelled_id = asyncio.run(seed_order(SessionLocal, user.id, order_status=OrderStatus.cancelled))

    def fail_create(**kwargs):
        raise AssertionError("gateway must not be called")

    monkeypatch.setattr("app.services.gateways.stripe.PaymentIntent.create", fail_create)

    for order_id, detail in ((paid_id, "Order is already paid"), (cancelled_id, "Cannot pay for a cancelled order")):
        res = client.post(
            "/api/v1/payments/create",
            json={"order_id": str(order_id), "payment_method": "stripe"},
            headers=auth_headers(user.id),
        )
        assert res.status_code == 400
        assert res.json()["detail"] == detail


def test_unsupported_payment_method_is_rejected(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))

    res = client.post(
        "/api/v1/payments/create",
        json={"order_id": str(order_id), "payment_method": "paypal"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["code"] == "validation_error"


def test_confirm_settled_payment_is_idempotent(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch, sent_notifications: list
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))

    monkeypatch.setattr(
        "app.services.gateways.stripe.PaymentIntent.retrieve", lambda reference: _fake_intent(order_id)
    )
    payload = {"payment_intent_id": "pi_test_123", "order_id": str(order_id), "payment_method": "stripe"}

    first = client.post("/api/v1/payments/confirm", json=payload, headers=auth_headers(user.id))
    assert first.status_code == 200, first.text
    assert first.json()["payment_status"] == "paid"
    assert first.json()["order_status"] == "processing"
    assert [event for event, _ in sent_notifications] == ["order_confirmation", "payment_success"]

    second = client.post("/api/v1/payments/confirm", json=payload, headers=auth_headers(user.id))
    assert second.status_code == 200
    assert second.json()["payment_status"] == "paid"
    assert len(sent_notifications) == 2
    assert [e["event"] for e in second.json()["events"]].count("payment_confirmed") == 1

    metrics = client.get("/api/v1/metrics").json()
    assert metrics["payments_confirmed"] == 1


def test_confirm_failed_payment_leaves_order_pending(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch, sent_notifications: list
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))

    monkeypatch.setattr(
        "app.services.gateways.stripe.PaymentIntent.retrieve",
        lambda reference: _fake_intent(order_id, status="requires_payment_method"),
    )
    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pi_test_123", "order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["code"] == "payment_failed"
    assert res.json()["detail"] == "Payment not completed (status: requires_payment_method)"
    assert [event for event, _ in sent_notifications] == ["payment_error"]

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"
    assert order["events"][-1]["event"] == "payment_failed"


def test_confirm_rejects_reference_from_another_order(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    other_id = asyncio.run(seed_order(SessionLocal, user.id))

    monkeypatch.setattr(
        "app.services.gateways.stripe.PaymentIntent.retrieve", lambda reference: _fake_intent(other_id)
    )
    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pi_test_123", "order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment reference does not belong to this order"

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"


def test_confirm_rejects_reference_without_order_metadata(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch, sent_notifications: list
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))

    monkeypatch.setattr(
        "app.services.gateways.stripe.PaymentIntent.retrieve",
        lambda reference: {"id": "pi_unrelated", "status": "succeeded", "amount": 28800, "metadata": {}},
    )
    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pi_unrelated", "order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment reference does not belong to this order"
    assert sent_notifications == []

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"


def test_confirm_rejects_settled_amount_that_differs_from_order_total(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch, sent_notifications: list
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id, total="5000.00"))

    monkeypatch.setattr(
        "app.services.gateways.stripe.PaymentIntent.retrieve", lambda reference: _fake_intent(order_id, amount=100)
    )
    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pi_test_123", "order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment amount does not match the order total"
    assert sent_notifications == []

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"
    assert "payment_confirmed" not in [e["event"] for e in order["events"]]


def test_unconfigured_gateway_fails_before_any_call(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    calls: list[str] = []

    def fake_retrieve(reference):
        calls.append(reference)
        return _fake_intent(order_id)

    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_placeholder")
    monkeypatch.setattr("app.services.gateways.stripe.PaymentIntent.retrieve", fake_retrieve)

    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pi_test_123", "order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["code"] == "gateway_not_configured"
    assert res.json()["detail"] == "Stripe not configured"
    assert calls == []

    monkeypatch.setattr(settings, "razorpay_key_secret", None)
    res = client.post(
        "/api/v1/payments/create",
        json={"order_id": str(order_id), "payment_method": "razorpay"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Razorpay not configured"


def test_gateway_timeout_is_retryable_and_does_not_settle(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))

    def slow_retrieve(reference):
        time.sleep(0.5)
        return _fake_intent(order_id)

    monkeypatch.setattr(settings, "payment_gateway_timeout_seconds", 0.05)
    monkeypatch.setattr("app.services.gateways.stripe.PaymentIntent.retrieve", slow_retrieve)

    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pi_test_123", "order_id": str(order_id), "payment_method": "stripe"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 504
    assert res.json()["code"] == "gateway_timeout"
    assert res.json()["meta"]["retryable"] is True

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(user.id)).json()
    assert order["payment_status"] == "pending"
    assert client.get("/api/v1/metrics").json()["gateway_timeouts"] == 1


def test_razorpay_confirm_captured_payment(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    requested: list[tuple[str, str]] = []

    async def fake_request(self, method, url, **kwargs):
        requested.append((method, url))
        if url == "/v1/orders/order_rzp_1":
            return {"id": "order_rzp_1", "amount": 28800, "notes": {"order_id": str(order_id)}}
        return {"id": "pay_123", "status": "captured", "amount": 28800, "order_id": "order_rzp_1", "notes": []}

    monkeypatch.setattr(RazorpayGateway, "_request", fake_request)

    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pay_123", "order_id": str(order_id), "payment_method": "razorpay"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 200, res.text
    assert res.json()["payment_status"] == "paid"
    assert requested == [("GET", "/v1/payments/pay_123"), ("GET", "/v1/orders/order_rzp_1")]


def test_razorpay_confirm_uses_payment_notes_when_present(
    test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    order_id = asyncio.run(seed_order(SessionLocal, user.id))
    other_id = asyncio.run(seed_order(SessionLocal, user.id))
    requested: list[str] = []

    async def fake_request(self, method, url, **kwargs):
        requested.append(url)
        return {"id": "pay_456", "status": "captured", "amount": 28800, "notes": {"order_id": str(other_id)}}

    monkeypatch.setattr(RazorpayGateway, "_request", fake_request)

    res = client.post(
        "/api/v1/payments/confirm",
        json={"payment_intent_id": "pay_456", "order_id": str(order_id), "payment_method": "razorpay"},
        headers=auth_headers(user.id),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Payment reference does not belong to this order"
    assert requested == ["/v1/payments/pay_456"]


def test_payment_reminders_list_and_send(test_app: Dict[str, object], sent_notifications: list) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    admin = asyncio.run(seed_user(SessionLocal, email="admin@example.com", admin=True))
    pending_id = asyncio.run(seed_order(SessionLocal, user.id))
    asyncio.run(seed_order(SessionLocal, user.id, payment_status=PaymentStatus.paid))
    asyncio.run(seed_order(SessionLocal, user.id, order_status=OrderStatus.cancelled))
    asyncio.run(seed_order(SessionLocal, user.id, created_at=datetime.now(timezone.utc) - timedelta(days=3)))

    assert client.get("/api/v1/payments/reminders", headers=auth_headers(user.id)).status_code == 403

    listed = client.get("/api/v1/payments/reminders", headers=auth_headers(admin.id))
    assert listed.status_code == 200
    assert [o["id"] for o in listed.json()] == [str(pending_id)]

    sent = client.post(f"/api/v1/payments/reminder/{pending_id}", headers=auth_headers(admin.id))
    assert sent.status_code == 200, sent.text
    assert sent.json()["events"][-1]["event"] == "payment_reminder_sent"
    assert [event for event, _ in sent_notifications] == ["payment_reminder"]
    assert sent_notifications[0][1]["amount_due"] == "288.00"


def test_payment_reminder_rejects_paid_order(test_app: Dict[str, object], sent_notifications: list) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    SessionLocal = test_app["session_factory"]  # type: ignore[assignment]
    user = asyncio.run(seed_user(SessionLocal))
    admin = asyncio.run(seed_user(SessionLocal, email="admin@example.com", admin=True))
    paid_id = asyncio.run(seed_order(SessionLocal, user.id, payment_status=PaymentStatus.paid))

    res = client.post(f"/api/v1/payments/reminder/{paid_id}", headers=auth_headers(admin.id))
    assert res.status_code == 400
    assert res.json()["detail"] == "Order is not awaiting payment"
    assert sent_notifications == []
