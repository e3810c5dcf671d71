# settlement/schemas/affiliate.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ReferralCode(BaseModel):
    referral_code: str
    referral_link: str


class ReferralCodeVerification(BaseModel):
    valid: bool
    referral_code: Optional[str] = None


class AttributionRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=32)


class Attribution(BaseModel):
    affiliate_id: int
    referred_user_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class AttributionResult(BaseModel):
    attributed: bool
    attribution: Optional[Attribution] = None


class Commission(BaseModel):
    id: int
    affiliate_id: int
    source_order_id: int
    source_type: str
    amount_cents: int
    settled_amount_cents: int
    settled_currency: str
    created_at: datetime

    class Config:
        from_attributes = True


class Referral(BaseModel):
    referred_user_id: int
    created_at: datetime

    class Config:
        from_attributes = True


class Payout(BaseModel):
    id: int
    payout_type: str
    amount_cents: int
    created_at: datetime

    class Config:
        from_attributes = True


class AffiliateDashboard(BaseModel):
    referral_code: str
    is_frozen: bool
    total_commission_cents: int
    total_paid_out_cents: int
    remaining_commission_cents: int
    total_referrals: int
    total_purchases: int  # Paid orders plus completed top-ups of referred users
    total_commissions: int
    recent_commissions: List[Commission]
    referrals: List[Referral]
    payouts: List[Payout]


class ConvertRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)


class ConvertResult(BaseModel):
    converted_cents: int
    remaining_commission_cents: int
    vcash_balance_cents: int
