# settlement/routers/currency.py

from typing import Optional

from fastapi import APIRouter, Depends, Query

from settlement.core.errors import ValidationFailed
from settlement.core.money import convert
from settlement.schemas.currency import CurrencyConversion, CurrencyRates, SupportedCurrencies
from settlement.services.rates import RateStore, get_rate_store

router = APIRouter(prefix="/currency")


@router.get("/rates", response_model=CurrencyRates)
async def get_rates_endpoint(rate_store: RateStore = Depends(get_rate_store)):
    """Current display rates against the settlement currency. Served from memory."""
    snapshot = rate_store.snapshot
    return CurrencyRates(
        base=rate_store.base_currency,
        rates=rate_store.available_rates(),
        fetched_at=snapshot.fetched_at if snapshot else None,
        age_seconds=rate_store.snapshot_age_seconds(),
    )


@router.get("/convert", response_model=CurrencyConversion)
async def convert_endpoint(
    amount_cents: int = Query(..., ge=0),
    to: str = Query(..., min_length=3, max_length=3),
    from_currency: Optional[str] = Query(None, alias="from", min_length=3, max_length=3),
    rate_store: RateStore = Depends(get_rate_store),
):
    # Only base-currency amounts are converted
    source = (from_currency or rate_store.base_currency).upper()
    if source != rate_store.base_currency:
        raise ValidationFailed(
            f"Only {rate_store.base_currency} can be converted from; got {source}.", code="UNSUPPORTED_CURRENCY"
        )

    rate = rate_store.get(to)
    return CurrencyConversion(
        from_currency=source,
        to_currency=to.upper(),
        amount_cents=amount_cents,
        converted_amount_cents=convert(amount_cents, rate),
        rate=rate,
    )


@router.get("/supported", response_model=SupportedCurrencies)
async def supported_currencies_endpoint(rate_store: RateStore = Depends(get_rate_store)):
    return SupportedCurrencies(
        currencies=sorted(rate_store.supported_currencies),
        default=rate_store.base_currency,
    )
