from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.coupon import DiscountType
from app.schemas.order import OrderRead


class CouponBase(BaseModel):
    code: str = Field(min_length=3, max_length=40)
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    min_purchase_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    @model_validator(mode="after")
    def _check_percentage(self):
        if self.discount_type == DiscountType.percentage and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class CouponCreate(CouponBase):
    pass


class CouponUpdate(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=40)
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)
    min_purchase_amount: Decimal | None = Field(default=None, ge=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    discount_type: DiscountType
    discount_value: float
    min_purchase_amount: float
    max_discount_amount: float | None = None
    usage_limit: int | None = None
    used_count: int
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    created_at: datetime


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    subtotal: Decimal = Field(ge=0)


class CouponApplyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)


class CouponQuoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    discount_type: DiscountType
    discount_value: float
    discount: float
    final_amount: float


class CouponValidateResponse(BaseModel):
    valid: bool = True
    coupon: CouponQuoteRead


class CouponApplyResponse(BaseModel):
    order: OrderRead
    discount: float
    final_amount: float
