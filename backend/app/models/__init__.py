from app.db.base import Base  # noqa: F401
from app.models.user import User, UserRole  # noqa: F401
from app.models.catalog import Product  # noqa: F401
from app.models.cart import Cart, CartItem  # noqa: F401
from app.models.order import Order, OrderEvent, OrderItem, OrderStatus, PaymentStatus, ShippingAddress  # noqa: F401
from app.models.coupon import Coupon, CouponUsage, DiscountType  # noqa: F401
from app.models.returns import ReturnRequest, ReturnStatus  # noqa: F401
from app.models.webhook import PaymentWebhookEvent  # noqa: F401

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Product",
    "Cart",
    "CartItem",
    "Order",
    "OrderEvent",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "ShippingAddress",
    "Coupon",
    "CouponUsage",
    "DiscountType",
    "ReturnRequest",
    "ReturnStatus",
    "PaymentWebhookEvent",
]
