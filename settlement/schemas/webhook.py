# settlement/schemas/webhook.py
from typing import Literal, Optional

from pydantic import BaseModel, Field


class PaymentEvent(BaseModel):
    """Callback body sent by the payment processor."""
    event_id: str = Field(..., min_length=1)
    source_type: Literal["order", "topup"]
    source_id: int
    status: Literal["paid", "failed"]
    # Captured amount in settlement-currency cents; checked against the order before settling
    amount_cents: Optional[int] = Field(None, ge=0)
