from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.order import OrderStatus, PaymentStatus, ShippingAddress


class ShippingAddressIn(BaseModel):
    full_name: str = Field(min_length=1, max_length=120)
    address: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=120)
    state: str = Field(min_length=1, max_length=120)
    country: str = Field(min_length=1, max_length=120)
    postal_code: str = Field(min_length=1, max_length=20)
    phone: str = Field(min_length=1, max_length=30)

    @field_validator("*")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Field cannot be blank")
        return cleaned

    def to_address(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class ShippingAddressRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    full_name: str
    address: str
    city: str
    state: str
    country: str
    postal_code: str
    phone: str


class OrderCreate(BaseModel):
    shipping_address: ShippingAddressIn


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    quantity: int
    unit_price: float
    subtotal: float


class OrderEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event: str
    note: str | None = None
    created_at: datetime


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    total_amount: float
    discount_amount: float
    coupon_code: str | None = None
    payment_status: PaymentStatus
    order_status: OrderStatus
    shipping_address: ShippingAddressRead
    items: list[OrderItemRead] = Field(default_factory=list)
    events: list[OrderEventRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrderStatusUpdate(BaseModel):
    order_status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
