from __future__ import annotations

import asyncio
from datetime import datetime

import pandas as pd
import pytest

from core.data_cache import InMemoryHistoricalSource, MarketDataCache
from core.errors import DataIntegrityError, PriceUnavailableError, RequestBudgetExceededError


class SlowSource(InMemoryHistoricalSource):
    """Sorgente che cede il controllo durante il fetch"""

    async def get_market_history(self, symbol, start, end):
        await asyncio.sleep(0.01)
        return await super().get_market_history(symbol, start, end)


@pytest.mark.asyncio
async def test_covered_request_is_served_from_cache(cache, source):
    await cache.get_market_history("COIN", "2021-01-04", "2021-02-26")
    await cache.get_market_history("COIN", "2021-01-20", "2021-02-10")
    assert source.calls == [("daily", "COIN")]
    assert cache.stats["cache_hits"] == 1
    assert cache.api_requests == 1


@pytest.mark.asyncio
async def test_returned_slice_is_filtered_to_requested_range(cache):
    await cache.get_market_history("COIN", "2021-01-04", "2021-03-20")
    history = await cache.get_market_history("COIN", "2021-02-01", "2021-02-10")
    assert history.index.min() >= pd.Timestamp("2021-01-31")
    assert history.index.max() <= pd.Timestamp("2021-02-10")
    assert len(history) == 8


@pytest.mark.asyncio
async def test_request_budget_is_five_per_symbol(cache):
    # ogni start più vecchio del range in cache è un miss
    for start in ["2021-03-10", "2021-03-09", "2021-03-08", "2021-03-05", "2021-03-04"]:
        await cache.get_market_history("COIN", start, "2021-03-20")
    assert cache.api_requests == 5

    with pytest.raises(RequestBudgetExceededError):
        await cache.get_market_history("COIN", "2021-03-03", "2021-03-20")


@pytest.mark.asyncio
async def test_request_budget_grows_with_distinct_symbols(coin_frame):
    cache = MarketDataCache(InMemoryHistoricalSource({"COIN": coin_frame, "ETH": coin_frame * 10}))
    starts = ["2021-03-10", "2021-03-09", "2021-03-08", "2021-03-05", "2021-03-04", "2021-03-03"]
    await cache.get_market_history("ETH", "2021-03-10", "2021-03-20")
    for start in starts:
        await cache.get_market_history("COIN", start, "2021-03-20")
    assert cache.api_requests == 7
    assert cache.request_limit == 10


@pytest.mark.asyncio
async def test_start_tolerance(coin_frame):
    late_frame = coin_frame[coin_frame.index >= "2021-03-05"]
    cache = MarketDataCache(InMemoryHistoricalSource({"COIN": late_frame}))

    with pytest.raises(DataIntegrityError):
        await cache.get_market_history("COIN", "2021-02-20", "2021-03-20")

    # 4 giorni di differenza sono accettati
    history = await cache.get_market_history("COIN", "2021-03-01", "2021-03-20")
    assert history.index[0] == pd.Timestamp("2021-03-05")


@pytest.mark.asyncio
async def test_unknown_symbol_raises(cache):
    with pytest.raises(DataIntegrityError):
        await cache.get_market_history("NOPE", "2021-01-04", "2021-02-01")


@pytest.mark.asyncio
async def test_concurrent_misses_are_coalesced(coin_frame):
    source = SlowSource({"COIN": coin_frame})
    cache = MarketDataCache(source)

    results = await asyncio.gather(*(
        cache.get_market_history("COIN", "2021-01-04", "2021-02-26") for _ in range(3)
    ))
    assert source.calls == [("daily", "COIN")]
    assert cache.api_requests == 1
    assert cache.stats["coalesced_waits"] == 2
    assert all(len(r) == len(results[0]) for r in results)


@pytest.mark.asyncio
async def test_daily_snapshot_uses_open_then_close(cache, coin_frame):
    await cache.get_market_history("COIN", "2021-01-04", "2021-02-26")
    row = coin_frame.loc["2021-01-05"]

    opening = cache.daily_snapshot("COIN", datetime(2021, 1, 5, 9, 30))
    closing = cache.daily_snapshot("COIN", datetime(2021, 1, 5, 16, 0))
    assert opening.mid == pytest.approx(row["open"])
    assert closing.mid == pytest.approx(row["close"])
    assert opening.bid < opening.mid < opening.ask


@pytest.mark.asyncio
async def test_weekend_has_no_snapshot(cache):
    await cache.get_market_history("COIN", "2021-01-04", "2021-02-26")
    with pytest.raises(PriceUnavailableError):
        cache.daily_snapshot("COIN", datetime(2021, 1, 9, 9, 30))
    with pytest.raises(PriceUnavailableError):
        cache.snapshots_for(datetime(2021, 1, 5, 9, 30), ["NOT_CACHED"])


def test_cache_stats(cache):
    stats = cache.get_cache_stats()
    assert stats["total_requests"] == 0
    assert stats["hit_rate_pct"] == 0
    assert stats["request_limit"] == 0


@pytest.mark.asyncio
async def test_entry_keeps_full_fetched_range(cache, source):
    await cache.get_market_history("COIN", "2021-01-04", "2021-01-20")
    history = await cache.get_market_history("COIN", "2021-01-04", "2021-03-20")

    assert source.calls == [("daily", "COIN")]
    assert history.index.max() == pd.Timestamp("2021-03-19")
    assert cache.daily_snapshot("COIN", datetime(2021, 3, 19, 16, 0)).mid > 0


@pytest.mark.asyncio
async def test_request_past_cached_end_is_a_miss(coin_frame):
    source = InMemoryHistoricalSource({"COIN": coin_frame})
    cache = MarketDataCache(source)
    await cache.get_market_history("COIN", "2021-01-04", "2021-01-20")
    # end nel futuro oltre la entry (scaricata fino ad oggi)
    future = pd.Timestamp.today().normalize() + pd.Timedelta(days=30)
    await cache.get_market_history("COIN", "2021-01-04", future)
    assert source.calls == [("daily", "COIN"), ("daily", "COIN")]


@pytest.mark.asyncio
async def test_intraday_history_is_cached_by_range(coin_frame, coin_intraday_frame):
    source = InMemoryHistoricalSource({"COIN": coin_frame}, {("COIN", "15min"): coin_intraday_frame})
    cache = MarketDataCache(source)

    first = await cache.get_intraday_history("COIN", "2021-01-05 09:30", "2021-01-06 16:00", "15min")
    await cache.get_intraday_history("COIN", "2021-01-05 12:00", "2021-01-06 12:00", "15min")
    assert source.calls == [("intraday", "COIN")]
    assert first.index.min() == pd.Timestamp("2021-01-05 09:30")

    # end oltre la entry: nuovo fetch sull'unione dei range
    await cache.get_intraday_history("COIN", "2021-01-05 09:30", "2021-01-08 16:00", "15min")
    assert source.calls == [("intraday", "COIN"), ("intraday", "COIN")]
    cached = cache.cached_intraday_history("COIN", "2021-01-05 09:30", "2021-01-08 16:00", "15min")
    assert cached.index.max() == pd.Timestamp("2021-01-08 15:45")

    with pytest.raises(PriceUnavailableError):
        cache.cached_intraday_history("COIN", "2021-01-05", "2021-01-06", "1min")
