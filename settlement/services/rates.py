# settlement/services/rates.py

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Request
from redis.asyncio import Redis

from settlement.clients.fx_provider import FxProviderClient
from settlement.core.errors import StoreContention, ValidationFailed

logger = logging.getLogger(__name__)

SNAPSHOT_CACHE_KEY = "settlement:fx:snapshot"
REFRESH_JOB_ID = "fx_rates_refresh"


@dataclass(frozen=True)
class RateSnapshot:
    base: str
    rates: Mapping[str, Decimal]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps({
            "base": self.base,
            "rates": {currency: str(rate) for currency, rate in self.rates.items()},
            "fetched_at": self.fetched_at.isoformat(),
        })

    @classmethod
    def from_json(cls, raw: str) -> "RateSnapshot":
        data = json.loads(raw)
        return cls(
            base=data["base"],
            rates=MappingProxyType({currency: Decimal(rate) for currency, rate in data["rates"].items()}),
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
        )


class RateStore:
    """
    Process-wide FX cache with an explicit lifecycle.

    Readers get the current immutable snapshot; `refresh()` builds a new one
    and swaps the reference, so a read never waits on a refresh and never sees
    a half-updated table. A failed refresh keeps serving the last good snapshot.
    """

    def __init__(
        self,
        provider: Optional[FxProviderClient],
        base_currency: str = "USD",
        supported_currencies: Iterable[str] = ("USD",),
        refresh_interval_seconds: int = 1800,
        redis: Optional[Redis] = None,
    ):
        self.provider = provider
        self.base_currency = base_currency.upper()
        self.supported_currencies = {code.upper() for code in supported_currencies} | {self.base_currency}
        self.refresh_interval_seconds = refresh_interval_seconds
        self.redis = redis
        self._snapshot: Optional[RateSnapshot] = None
        self._refresh_lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None

    # --- Lifecycle ---

    async def start(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        """Initial load, then periodic refresh on the given scheduler."""
        refreshed = await self.refresh()
        if not refreshed and self._snapshot is None:
            await self._warm_start_from_cache()

        if scheduler is not None:
            scheduler.add_job(
                self.refresh,
                "interval",
                seconds=self.refresh_interval_seconds,
                id=REFRESH_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self._scheduler = scheduler
            logger.info(f"FX refresh scheduled every {self.refresh_interval_seconds}s.")

    async def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(REFRESH_JOB_ID):
            self._scheduler.remove_job(REFRESH_JOB_ID)
        self._scheduler = None
        if self.provider is not None:
            await self.provider.aclose()

    async def refresh(self) -> bool:
        """Pulls fresh rates. Returns False (and keeps the old snapshot) when the provider is degraded."""
        if self.provider is None:
            return False
        if self._refresh_lock.locked():
            # A refresh is already in flight; its result serves this caller too
            return False

        async with self._refresh_lock:
            try:
                rates = await self.provider.fetch_rates(self.base_currency)
            except Exception as e:
                age = self.snapshot_age_seconds()
                logger.warning(
                    f"EXTERNAL_DEPENDENCY_DEGRADED: FX refresh failed ({e!r}). "
                    f"Serving last snapshot (age: {age if age is not None else 'none'}s)."
                )
                return False

            self.load(rates)
            logger.info(f"FX rates refreshed: {len(rates)} currencies against {self.base_currency}.")
            await self._persist_snapshot()
            return True

    def load(self, rates: Mapping[str, Decimal], fetched_at: Optional[datetime] = None) -> RateSnapshot:
        """Installs a snapshot built from `rates`."""
        table = {currency.upper(): Decimal(rate) for currency, rate in rates.items()}
        table[self.base_currency] = Decimal("1")
        snapshot = RateSnapshot(
            base=self.base_currency,
            rates=MappingProxyType(table),
            fetched_at=fetched_at or datetime.now(timezone.utc),
        )
        self._snapshot = snapshot
        return snapshot

    # --- Reads ---

    @property
    def snapshot(self) -> Optional[RateSnapshot]:
        return self._snapshot

    def snapshot_age_seconds(self) -> Optional[int]:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return int((datetime.now(timezone.utc) - snapshot.fetched_at).total_seconds())

    def get(self, currency: str) -> Decimal:
        """Units of `currency` per one unit of the base currency."""
        code = currency.upper()
        if code not in self.supported_currencies:
            raise ValidationFailed(f"Currency {code} is not supported.", code="UNSUPPORTED_CURRENCY")
        if code == self.base_currency:
            return Decimal("1")

        snapshot = self._snapshot
        if snapshot is None or code not in snapshot.rates:
            raise StoreContention(f"No exchange rate available for {code} yet.", code="FX_RATE_UNAVAILABLE")
        return snapshot.rates[code]

    def available_rates(self) -> dict[str, Decimal]:
        snapshot = self._snapshot
        rates = {self.base_currency: Decimal("1")}
        if snapshot is not None:
            rates.update({code: rate for code, rate in snapshot.rates.items() if code in self.supported_currencies})
        return rates

    # --- Redis warm cache ---

    async def _persist_snapshot(self) -> None:
        if self.redis is None or self._snapshot is None:
            return
        try:
            await self.redis.set(SNAPSHOT_CACHE_KEY, self._snapshot.to_json())
        except Exception as e:
            logger.warning(f"Could not persist FX snapshot to Redis: {e!r}")

    async def _warm_start_from_cache(self) -> None:
        if self.redis is None:
            logger.error("FX provider unavailable at startup and no warm cache configured.")
            return
        try:
            raw = await self.redis.get(SNAPSHOT_CACHE_KEY)
        except Exception as e:
            logger.error(f"FX provider unavailable and Redis warm cache unreadable: {e!r}")
            return
        if not raw:
            logger.error("FX provider unavailable at startup and the warm cache is empty.")
            return
        snapshot = RateSnapshot.from_json(raw)
        self._snapshot = snapshot
        logger.warning(f"FX rates warm-started from cache fetched at {snapshot.fetched_at.isoformat()}.")


def get_rate_store(request: Request) -> RateStore:
    """Dependency returning the application's rate store."""
    store = getattr(request.app.state, "rate_store", None)
    if store is None:
        raise RuntimeError("Rate store is not initialised; the application lifespan did not run.")
    return store
