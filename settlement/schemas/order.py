# settlement/schemas/order.py
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


class Order(BaseModel):
    id: int
    plan_id: str
    status: str
    settlement_currency: str
    amount_cents: int
    original_amount_cents: Optional[int] = None
    display_currency: str
    display_amount_cents: Optional[int] = None
    fx_rate: Optional[Decimal] = None
    discount_source: Literal["none", "promo", "referral"]
    discount_code: Optional[str] = None
    discount_percent: Optional[int] = None
    created_at: datetime
    checkout_started_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PromoValidateRequest(BaseModel):
    promo_code: str = Field(..., min_length=1, max_length=64)


class PromoPreview(BaseModel):
    """What the checkout page shows after a promo code is applied."""
    valid: bool
    promo_code: str
    discount_percent: int
    original_amount: int
    original_display_amount: int
    discounted_amount: int
    display_amount: int
    display_currency: str


class ReferralDiscountPreview(BaseModel):
    eligible: bool
    discount_percent: int
    applies_at_checkout: bool  # False when a promo code already takes precedence
    amount_cents: int
    display_amount_cents: int
    display_currency: str


class CheckoutRequest(BaseModel):
    display_currency: Optional[str] = Field(None, min_length=3, max_length=3)
