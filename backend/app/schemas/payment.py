from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.services.gateways import PaymentMethod


class PaymentIntentCreate(BaseModel):
    order_id: UUID
    payment_method: PaymentMethod


class PaymentBreakdownRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    items_total: float
    discount: float
    subtotal: float
    tax: float
    service_charge: float
    total_amount: float
    amount_minor: int


class PaymentIntentResponse(BaseModel):
    order_id: UUID
    payment_method: PaymentMethod
    reference: str
    gateway: dict[str, Any]
    breakdown: PaymentBreakdownRead


class PaymentConfirmRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1, max_length=255)
    order_id: UUID
    payment_method: PaymentMethod


class WebhookAck(BaseModel):
    received: bool = True
