"""Payment gateway adapters.

Both gateways expose the same three calls: open a payment intent for an
order, look up the outcome of a payment reference, and turn a signed webhook
delivery into a ``GatewayWebhookEvent``. Every outbound call is bounded by
``settings.payment_gateway_timeout_seconds``; a timeout never decides whether
a payment settled.
"""

from __future__ import annotations

import abc
import enum
import functools
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, cast

import anyio
import httpx
import stripe

from app.core import metrics
from app.core.config import settings
from app.core.errors import (
    GatewayError,
    GatewayNotConfiguredError,
    GatewayTimeoutError,
    SignatureVerificationError,
    ValidationFailedError,
)
from app.models.order import Order
from app.services.pricing import PaymentBreakdown

stripe = cast(Any, stripe)

logger = logging.getLogger(__name__)

_PLACEHOLDER_SUFFIX = "_placeholder"

Outcome = Literal["settled", "failed"]


class PaymentMethod(str, enum.Enum):
    stripe = "stripe"
    razorpay = "razorpay"


@dataclass(frozen=True)
class IntentResult:
    gateway: str
    reference: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class GatewayConfirmation:
    reference: str
    outcome: Outcome
    order_id: str | None = None
    gateway_status: str | None = None
    amount_minor: int | None = None


@dataclass(frozen=True)
class GatewayWebhookEvent:
    event_id: str
    event_type: str | None
    succeeded: bool
    order_id: str | None = None
    reference: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)


def _looks_configured(value: str | None) -> bool:
    cleaned = (value or "").strip()
    if not cleaned:
        return False
    return not cleaned.endswith(_PLACEHOLDER_SUFFIX)


def _get(obj: Any, key: str) -> Any:
    getter = getattr(obj, "get", None)
    return getter(key) if callable(getter) else None


def _clean(value: Any) -> str | None:
    cleaned = str(value or "").strip()
    return cleaned or None


def _minor_units(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaymentGateway(abc.ABC):
    name: str

    @abc.abstractmethod
    def is_configured(self) -> bool: ...

    def ensure_configured(self) -> None:
        if not self.is_configured():
            metrics.record_payment_failure()
            raise GatewayNotConfiguredError(self.name)

    @abc.abstractmethod
    async def create_intent(self, order: Order, breakdown: PaymentBreakdown) -> IntentResult: ...

    @abc.abstractmethod
    async def confirm(self, reference: str) -> GatewayConfirmation: ...

    @abc.abstractmethod
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayWebhookEvent: ...

    def _timed_out(self) -> GatewayTimeoutError:
        metrics.record_gateway_timeout()
        logger.warning("Payment gateway timed out", extra={"gateway": self.name})
        return GatewayTimeoutError(self.name)


class StripeGateway(PaymentGateway):
    name = PaymentMethod.stripe.value

    def is_configured(self) -> bool:
        return _looks_configured(settings.stripe_secret_key)

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self.ensure_configured()
        stripe.api_key = settings.stripe_secret_key.strip()
        try:
            with anyio.fail_after(settings.payment_gateway_timeout_seconds):
                return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs), abandon_on_cancel=True)
        except TimeoutError as exc:
            raise self._timed_out() from exc
        except stripe.StripeError as exc:
            metrics.record_payment_failure()
            logger.warning("Stripe request failed: %s", exc, extra={"gateway": self.name})
            raise GatewayError("Stripe request failed") from exc

    async def create_intent(self, order: Order, breakdown: PaymentBreakdown) -> IntentResult:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=breakdown.amount_minor,
            currency=settings.currency.lower(),
            metadata={"order_id": str(order.id), "user_id": str(order.user_id)},
        )
        client_secret = _get(intent, "client_secret")
        intent_id = _get(intent, "id")
        if not client_secret or not intent_id:
            raise GatewayError("Stripe client secret missing")
        return IntentResult(
            gateway=self.name,
            reference=str(intent_id),
            payload={"client_secret": str(client_secret), "payment_intent_id": str(intent_id)},
        )

    async def confirm(self, reference: str) -> GatewayConfirmation:
        intent = await self._call(stripe.PaymentIntent.retrieve, reference)
        intent_status = _clean(_get(intent, "status"))
        return GatewayConfirmation(
            reference=reference,
            outcome="settled" if intent_status == "succeeded" else "failed",
            order_id=_clean(_get(_get(intent, "metadata"), "order_id")),
            gateway_status=intent_status,
            amount_minor=_minor_units(_get(intent, "amount")),
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayWebhookEvent:
        secret = settings.stripe_webhook_secret
        if not _looks_configured(secret):
            raise GatewayNotConfiguredError(self.name)
        try:
            event = stripe.Webhook.construct_event(payload, headers.get("stripe-signature"), secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            metrics.record_webhook_rejected()
            raise SignatureVerificationError(self.name) from exc

        event_id = _clean(_get(event, "id"))
        if not event_id:
            raise ValidationFailedError("Missing event id")
        event_type = _clean(_get(event, "type"))
        obj = _get(_get(event, "data"), "object")
        summary: dict[str, Any] = {"id": event_id, "type": event_type}
        for key in ("id", "status", "amount", "currency"):
            value = _get(obj, key)
            if value is not None:
                summary.setdefault("object", {})[key] = value
        return GatewayWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            succeeded=event_type == "payment_intent.succeeded",
            order_id=_clean(_get(_get(obj, "metadata"), "order_id")),
            reference=_clean(_get(obj, "id")),
            summary=summary,
        )


RAZORPAY_SUCCESS_EVENTS = frozenset({"payment.captured", "order.paid"})


class RazorpayGateway(PaymentGateway):
    name = PaymentMethod.razorpay.value

    def is_configured(self) -> bool:
        return _looks_configured(settings.razorpay_key_id) and _looks_configured(settings.razorpay_key_secret)

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        self.ensure_configured()
        timeout = settings.payment_gateway_timeout_seconds
        try:
            with anyio.fail_after(timeout):
                async with httpx.AsyncClient(
                    base_url=settings.razorpay_api_base,
                    timeout=timeout,
                    auth=(settings.razorpay_key_id or "", settings.razorpay_key_secret or ""),
                ) as client:
                    resp = await client.request(method, url, **kwargs)
                    resp.raise_for_status()
                    return resp.json()
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise self._timed_out() from exc
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_payment_failure()
            logger.warning("Razorpay request failed: %s", exc, extra={"gateway": self.name})
            raise GatewayError("Razorpay request failed") from exc

    async def create_intent(self, order: Order, breakdown: PaymentBreakdown) -> IntentResult:
        data = await self._request(
            "POST",
            "/v1/orders",
            json={
                "amount": breakdown.amount_minor,
                "currency": settings.currency.upper(),
                "receipt": str(order.id),
                "notes": {"order_id": str(order.id)},
            },
        )
        razorpay_order_id = _clean(data.get("id"))
        if not razorpay_order_id:
            raise GatewayError("Razorpay order id missing")
        return IntentResult(
            gateway=self.name,
            reference=razorpay_order_id,
            payload={
                "razorpay_order_id": razorpay_order_id,
                "amount": breakdown.amount_minor,
                "currency": settings.currency.upper(),
                "key_id": settings.razorpay_key_id,
            },
        )

    async def confirm(self, reference: str) -> GatewayConfirmation:
        data = await self._request("GET", f"/v1/payments/{reference}")
        payment_status = _clean(data.get("status"))
        order_id = _clean(_get(data.get("notes"), "order_id"))
        razorpay_order_id = _clean(data.get("order_id"))
        if order_id is None and razorpay_order_id:
            # Checkout payments carry no notes of their own; ours live on the Razorpay order.
            razorpay_order = await self._request("GET", f"/v1/orders/{razorpay_order_id}")
            order_id = _clean(_get(razorpay_order.get("notes"), "order_id"))
        return GatewayConfirmation(
            reference=reference,
            outcome="settled" if payment_status == "captured" else "failed",
            order_id=order_id,
            gateway_status=payment_status,
            amount_minor=_minor_units(data.get("amount")),
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayWebhookEvent:
        secret = settings.razorpay_webhook_secret
        if not _looks_configured(secret):
            raise GatewayNotConfiguredError(self.name)
        expected = hmac.new(str(secret).encode(), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, headers.get("x-razorpay-signature") or ""):
            metrics.record_webhook_rejected()
            raise SignatureVerificationError(self.name)
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise SignatureVerificationError(self.name) from exc
        if not isinstance(body, dict):
            raise SignatureVerificationError(self.name)

        event_type = _clean(body.get("event"))
        # Razorpay sends a delivery id header; fall back to the body digest so replays still dedupe.
        event_id = _clean(headers.get("x-razorpay-event-id")) or hashlib.sha256(payload).hexdigest()
        entities = _get(body, "payload")
        entity = _get(_get(entities, "payment"), "entity")
        order_entity = _get(_get(entities, "order"), "entity")
        # order.paid keeps the notes set at intent creation on the order entity.
        order_id = _clean(_get(_get(entity, "notes"), "order_id")) or _clean(
            _get(_get(order_entity, "notes"), "order_id")
        )
        payment_id = _clean(_get(entity, "id"))
        return GatewayWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            succeeded=event_type in RAZORPAY_SUCCESS_EVENTS,
            order_id=order_id,
            reference=payment_id or _clean(_get(order_entity, "id")),
            summary={
                "id": event_id,
                "type": event_type,
                "payment_id": payment_id,
                "razorpay_order_id": _clean(_get(order_entity, "id")),
            },
        )


_GATEWAYS: dict[PaymentMethod, type[PaymentGateway]] = {
    PaymentMethod.stripe: StripeGateway,
    PaymentMethod.razorpay: RazorpayGateway,
}


def get_gateway(method: PaymentMethod | str) -> PaymentGateway:
    try:
        key = PaymentMethod(method)
    except ValueError as exc:
        raise ValidationFailedError(f"Unsupported payment method: {method}") from exc
    return _GATEWAYS[key]()
