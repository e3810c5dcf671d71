# settlement/schemas/admin.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from settlement.schemas.affiliate import Commission
from settlement.schemas.common import PaginatedResponse


class AdminAffiliateListItem(BaseModel):
    id: int
    user_id: int
    email: Optional[str]
    referral_code: str
    is_frozen: bool
    created_at: datetime
    total_referrals: int
    total_commissions: int
    total_commission_cents: int


class PaginatedAdminAffiliates(PaginatedResponse[AdminAffiliateListItem]):
    pass


class PaginatedAdminCommissions(PaginatedResponse[Commission]):
    pass


class AffiliateFreezeUpdate(BaseModel):
    is_frozen: bool


class AffiliateVelocity(BaseModel):
    affiliate_id: int
    attributions: int
    commissions: int
    reasons: List[str]


class IpVelocity(BaseModel):
    ip_address: str
    attributions: int
    distinct_affiliates: int


class VelocityReport(BaseModel):
    window_minutes: int
    since: datetime
    affiliates: List[AffiliateVelocity]
    ip_addresses: List[IpVelocity]


class AdjustmentResult(BaseModel):
    user_id: int
    balance_cents: int
