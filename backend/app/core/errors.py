"""Error types raised by the order lifecycle services.

Every error is an ``HTTPException`` carrying a stable ``code`` so routers can
let them propagate untouched; ``app.main`` renders them as ``ErrorResponse``.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class LifecycleError(HTTPException):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "error"

    def __init__(self, detail: str, *, meta: dict[str, Any] | None = None) -> None:
        super().__init__(status_code=self.status_code, detail=detail)
        self.meta = meta


class ValidationFailedError(LifecycleError):
    code = "validation_error"


class NotFoundError(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PreconditionFailedError(LifecycleError):
    code = "precondition_failed"


class EmptyCartError(PreconditionFailedError):
    code = "empty_cart"

    def __init__(self) -> None:
        super().__init__("Cart is empty")


class InvalidTransitionError(PreconditionFailedError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid {entity} transition: {current} -> {requested}",
            meta={"entity": entity, "from": current, "to": requested},
        )


class DuplicateReturnError(PreconditionFailedError):
    code = "return_exists"

    def __init__(self) -> None:
        super().__init__("Return request already exists for this order")


class ConcurrentUpdateError(PreconditionFailedError):
    status_code = status.HTTP_409_CONFLICT
    code = "concurrent_update"


class CouponInvalidError(PreconditionFailedError):
    code = "coupon_invalid"


class CouponBelowMinimumError(PreconditionFailedError):
    code = "coupon_below_minimum"

    def __init__(self, minimum: Any) -> None:
        super().__init__(
            f"Minimum purchase amount of {minimum} required",
            meta={"minimum_purchase_amount": str(minimum)},
        )
        self.minimum = minimum


class GatewayNotConfiguredError(LifecycleError):
    code = "gateway_not_configured"

    def __init__(self, gateway: str) -> None:
        super().__init__(f"{gateway.capitalize()} not configured", meta={"gateway": gateway})


class GatewayError(LifecycleError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "gateway_error"


class GatewayTimeoutError(GatewayError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    code = "gateway_timeout"

    def __init__(self, gateway: str) -> None:
        super().__init__(
            f"{gateway.capitalize()} did not respond in time; retry the request",
            meta={"gateway": gateway, "retryable": True},
        )


class PaymentFailedError(LifecycleError):
    code = "payment_failed"


class SignatureVerificationError(LifecycleError):
    code = "invalid_signature"

    def __init__(self, gateway: str) -> None:
        super().__init__("Invalid payload", meta={"gateway": gateway})
