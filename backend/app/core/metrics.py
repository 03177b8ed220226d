from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_order_created() -> None:
    _inc("orders_created")


def record_payment_confirmed() -> None:
    _inc("payments_confirmed")


def record_payment_failure() -> None:
    _inc("payment_failures")


def record_gateway_timeout() -> None:
    _inc("gateway_timeouts")


def record_webhook_rejected() -> None:
    _inc("webhooks_rejected")


def record_webhook_error() -> None:
    _inc("webhook_errors")


def record_coupon_redeemed() -> None:
    _inc("coupons_redeemed")


def record_notification_failure() -> None:
    _inc("notification_failures")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
