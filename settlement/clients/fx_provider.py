# settlement/clients/fx_provider.py

import httpx
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict

logger = logging.getLogger(__name__)

class FxProviderClient:
    """
    Async client for the FX rate provider.
    Expects `GET {base_url}/latest/{BASE}` to answer `{"rates": {"EUR": 0.92, ...}}`.
    """
    def __init__(self, base_url: str, timeout_seconds: float = 5.0):
        self.base_url = base_url.rstrip("/")
        timeouts = httpx.Timeout(timeout_seconds)
        self.async_client = httpx.AsyncClient(base_url=self.base_url, timeout=timeouts)

    async def get(self, endpoint: str, params: dict = None) -> httpx.Response:
        """
        Performs a GET request. Returns the Response on success,
        raises on network errors and 4xx/5xx answers.
        """
        try:
            response = await self.async_client.get(endpoint, params=params)
            response.raise_for_status()
            return response
        except httpx.RequestError as e:
            logger.error(f"Network error during GET request to {e.request.url!r}.", exc_info=True)
            raise
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error during GET request to {e.request.url!r}: {e.response.text}", exc_info=True)
            raise

    async def fetch_rates(self, base_currency: str) -> Dict[str, Decimal]:
        """Fetches rates for 1 unit of `base_currency`. Values are parsed as Decimal from their string form."""
        response = await self.get(f"/latest/{base_currency.upper()}")
        payload = response.json()
        raw_rates = payload.get("rates") or {}

        rates: Dict[str, Decimal] = {}
        for currency, value in raw_rates.items():
            try:
                rate = Decimal(str(value))
            except (InvalidOperation, TypeError):
                logger.warning(f"Skipping unparsable rate for {currency}: {value!r}")
                continue
            if rate > 0:
                rates[currency.upper()] = rate
        if not rates:
            raise ValueError("FX provider returned no usable rates")
        rates[base_currency.upper()] = Decimal("1")
        return rates

    async def aclose(self):
        await self.async_client.aclose()
