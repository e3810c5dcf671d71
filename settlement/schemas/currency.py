# settlement/schemas/currency.py
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel


class CurrencyRates(BaseModel):
    base: str
    rates: Dict[str, Decimal]
    fetched_at: Optional[datetime] = None
    age_seconds: Optional[int] = None


class CurrencyConversion(BaseModel):
    from_currency: str
    to_currency: str
    amount_cents: int
    converted_amount_cents: int
    rate: Decimal


class SupportedCurrencies(BaseModel):
    currencies: List[str]
    default: str
