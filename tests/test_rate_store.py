# tests/test_rate_store.py

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from settlement.clients.fx_provider import FxProviderClient
from settlement.core.errors import StoreContention, ValidationFailed
from settlement.services.rates import REFRESH_JOB_ID, SNAPSHOT_CACHE_KEY, RateSnapshot, RateStore

FRESH_RATES = {"USD": Decimal("1"), "EUR": Decimal("0.92"), "GBP": Decimal("0.79")}


@pytest.fixture
def provider():
    provider = AsyncMock(spec=FxProviderClient)
    provider.fetch_rates.return_value = FRESH_RATES
    return provider


def _store(provider, redis=None) -> RateStore:
    return RateStore(
        provider=provider,
        base_currency="USD",
        supported_currencies=["USD", "EUR", "GBP"],
        refresh_interval_seconds=60,
        redis=redis,
    )


# --- Refresh ---

async def test_refresh_installs_new_snapshot(provider):
    store = _store(provider)

    assert await store.refresh() is True

    provider.fetch_rates.assert_awaited_once_with("USD")
    assert store.get("eur") == Decimal("0.92")
    assert store.get("USD") == Decimal("1")
    assert store.snapshot_age_seconds() is not None


async def test_failed_refresh_keeps_last_snapshot(provider):
    store = _store(provider)
    await store.refresh()
    first = store.snapshot

    provider.fetch_rates.side_effect = httpx.ConnectError("provider down")
    assert await store.refresh() is False

    assert store.snapshot is first
    assert store.get("GBP") == Decimal("0.79")


async def test_refresh_without_provider_is_a_no_op():
    store = _store(None)
    assert await store.refresh() is False
    assert store.snapshot is None


def test_unsupported_currency(provider):
    store = _store(provider)
    store.load(FRESH_RATES)

    with pytest.raises(ValidationFailed) as exc_info:
        store.get("XAU")
    assert exc_info.value.code == "UNSUPPORTED_CURRENCY"


def test_supported_currency_without_rate(provider):
    store = _store(provider)

    with pytest.raises(StoreContention) as exc_info:
        store.get("EUR")
    assert exc_info.value.code == "FX_RATE_UNAVAILABLE"
    assert exc_info.value.status_code == 503

    # The base currency never needs a snapshot
    assert store.get("USD") == Decimal("1")


def test_available_rates_only_lists_supported(provider):
    store = _store(provider)
    store.load({"EUR": Decimal("0.92"), "CHF": Decimal("0.88")})

    assert store.available_rates() == {"USD": Decimal("1"), "EUR": Decimal("0.92")}


# --- Lifecycle and warm cache ---

async def test_start_schedules_refresh_and_persists(provider):
    redis = AsyncMock()
    scheduler = MagicMock()
    store = _store(provider, redis=redis)

    await store.start(scheduler)

    redis.set.assert_awaited_once()
    assert redis.set.await_args.args[0] == SNAPSHOT_CACHE_KEY
    scheduler.add_job.assert_called_once()
    assert scheduler.add_job.call_args.kwargs["id"] == REFRESH_JOB_ID
    assert scheduler.add_job.call_args.kwargs["seconds"] == 60

    await store.stop()
    scheduler.remove_job.assert_called_once_with(REFRESH_JOB_ID)
    provider.aclose.assert_awaited_once()


async def test_warm_start_from_cache_when_provider_is_down(provider):
    cached = RateSnapshot(base="USD", rates={"USD": Decimal("1"), "EUR": Decimal("0.90")})
    redis = AsyncMock()
    redis.get.return_value = cached.to_json()
    provider.fetch_rates.side_effect = httpx.ReadTimeout("timed out")
    store = _store(provider, redis=redis)

    await store.start()

    redis.get.assert_awaited_once_with(SNAPSHOT_CACHE_KEY)
    assert store.get("EUR") == Decimal("0.90")
    assert store.snapshot.fetched_at == cached.fetched_at


async def test_cold_start_without_cache_leaves_store_empty(provider):
    redis = AsyncMock()
    redis.get.return_value = None
    provider.fetch_rates.side_effect = httpx.ConnectError("provider down")
    store = _store(provider, redis=redis)

    await store.start()

    assert store.snapshot is None
    with pytest.raises(StoreContention):
        store.get("EUR")


# --- Provider client ---

def _client_with(handler) -> FxProviderClient:
    client = FxProviderClient("https://fx.example.test/v6")
    client.async_client = httpx.AsyncClient(base_url=client.base_url, transport=httpx.MockTransport(handler))
    return client


async def test_provider_parses_rates_as_decimal():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v6/latest/USD"
        return httpx.Response(200, json={"result": "success", "rates": {"eur": 0.92, "GBP": "0.79", "BAD": "n/a", "ZERO": 0}})

    client = _client_with(handler)
    rates = await client.fetch_rates("usd")
    await client.aclose()

    assert rates == {"EUR": Decimal("0.92"), "GBP": Decimal("0.79"), "USD": Decimal("1")}


async def test_provider_without_rates_is_an_error():
    client = _client_with(lambda request: httpx.Response(200, json={"result": "error"}))

    with pytest.raises(ValueError):
        await client.fetch_rates("USD")
    await client.aclose()


async def test_provider_http_error_propagates():
    client = _client_with(lambda request: httpx.Response(502, text="bad gateway"))

    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_rates("USD")
    await client.aclose()
