from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.returns import ReturnStatus


class ReturnRequestCreate(BaseModel):
    order_id: UUID
    reason: str = Field(min_length=1, max_length=2000)


class ReturnRequestUpdate(BaseModel):
    status: ReturnStatus
    admin_notes: str | None = Field(default=None, max_length=5000)
    refund_amount: Decimal | None = Field(default=None, ge=0)


class ReturnRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    user_id: UUID
    status: ReturnStatus
    reason: str
    admin_notes: str | None = None
    refund_amount: float | None = None
    created_at: datetime
    updated_at: datetime
