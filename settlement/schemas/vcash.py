# settlement/schemas/vcash.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class VCashBalance(BaseModel):
    balance_cents: int
    currency: str


class VCashTransaction(BaseModel):
    id: int
    amount_cents: int
    type: str
    reason: str
    meta: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    created_at: datetime

    class Config:
        from_attributes = True


class VCashHistory(BaseModel):
    transactions: List[VCashTransaction]
    total: int
    page_size: int
    # Pass back as before_id for the next page; None on the last page
    next_cursor: Optional[int] = None


class VCashAdjustment(BaseModel):
    user_id: int
    amount_cents: int  # Signed: positive credits, negative debits
    note: Optional[str] = Field(None, max_length=500)
