import asyncio
import math

import pytest

from oscwatch.data.provider import MarketDataProvider, ProviderConfig
from oscwatch.errors import RateLimited, UpstreamUnavailable
from oscwatch.utils.ratelimit import TokenBucket
from oscwatch.utils.types import CachedSeries, Candle
from tests.helpers.candles import candles_from_closes
from tests.helpers.clock import FakeClock
from tests.helpers.memory_store import MemorySeriesCache
from tests.helpers.sources import FakeSource

BARS = candles_from_closes([float(i) for i in range(1, 11)])


def _provider(primary, secondary=None, **cfg):
    clock = FakeClock()
    limiter = TokenBucket.from_min_interval(0.285, clock=clock, sleep=clock.sleep)
    cache = MemorySeriesCache()
    p = MarketDataProvider(primary, cache, limiter, secondary=secondary, cfg=ProviderConfig(**cfg), clock=clock)
    return p, cache, limiter, clock


@pytest.mark.asyncio
async def test_fresh_cache_entry_is_a_hit():
    yahoo = FakeSource("yahoo", BARS)
    p, _, _, clock = _provider(yahoo)

    first = await p.get_series("AAPL", "1h", 300)
    clock.advance(59)
    second = await p.get_series("AAPL", "1h", 300)

    assert not first.cache_hit and second.cache_hit
    assert second.candles == BARS
    assert len(yahoo.calls) == 1

@pytest.mark.asyncio
async def test_expired_entry_is_refetched():
    yahoo = FakeSource("yahoo", BARS)
    p, _, _, clock = _provider(yahoo)
    await p.get_series("AAPL", "1h", 300)
    clock.advance(60)
    res = await p.get_series("AAPL", "1h", 300)
    assert not res.cache_hit
    assert len(yahoo.calls) == 2

@pytest.mark.asyncio
async def test_hit_is_trimmed_to_limit():
    p, _, _, _ = _provider(FakeSource("yahoo", BARS))
    await p.get_series("AAPL", "1h", 300)
    res = await p.get_series("AAPL", "1h", 3)
    assert [k.close for k in res.candles] == [8.0, 9.0, 10.0]

@pytest.mark.asyncio
async def test_concurrent_requests_for_one_key_fetch_once():
    yahoo = FakeSource("yahoo", BARS)
    p, _, _, _ = _provider(yahoo)
    results = await asyncio.gather(*(p.get_series("AAPL", "1h", 300) for _ in range(5)))
    assert len(yahoo.calls) == 1
    assert sum(not r.cache_hit for r in results) == 1

@pytest.mark.asyncio
async def test_crypto_prefers_secondary_and_caches_under_primary_symbol():
    yahoo = FakeSource("yahoo", BARS)
    binance = FakeSource("binance", BARS[:5])
    p, cache, _, _ = _provider(yahoo, binance)

    res = await p.get_series("BTC-USD", "1h", 300)

    assert res.provider == "binance"
    assert binance.calls == [("BTCUSDT", "1h", 300)]
    assert yahoo.calls == []
    assert cache.items[("BTC-USD", "1h")].provider == "binance"

@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [
    [],
    UpstreamUnavailable("binance", "HTTP 500"),
    RateLimited("binance", 3.0),
])
async def test_secondary_failure_falls_back_to_primary(outcome):
    yahoo = FakeSource("yahoo", BARS)
    p, _, _, _ = _provider(yahoo, FakeSource("binance", outcome))
    res = await p.get_series("ETH-USD", "4h", 300)
    assert res.provider == "yahoo"
    assert yahoo.calls == [("ETH-USD", "4h", 300)]

@pytest.mark.asyncio
async def test_secondary_disabled_or_not_crypto_uses_primary():
    binance = FakeSource("binance", BARS)
    p, _, _, _ = _provider(FakeSource("yahoo", BARS), binance, use_secondary=False)
    await p.get_series("BTC-USD", "1h", 300)
    p2, _, _, _ = _provider(FakeSource("yahoo", BARS), binance)
    await p2.get_series("EURUSD=X", "1h", 300)
    assert binance.calls == []

@pytest.mark.asyncio
async def test_rate_limit_penalises_shared_limiter():
    p, cache, limiter, clock = _provider(FakeSource("yahoo", RateLimited("yahoo", 12.0)))
    with pytest.raises(RateLimited):
        await p.get_series("AAPL", "1h", 300)
    assert limiter.blocked_until == pytest.approx(clock.now + 12.0)
    assert cache.items == {}

@pytest.mark.asyncio
async def test_rate_limit_without_retry_after_uses_default_backoff():
    p, _, limiter, clock = _provider(FakeSource("yahoo", RateLimited("yahoo")))
    with pytest.raises(RateLimited):
        await p.get_series("AAPL", "1h", 300)
    assert limiter.wait_time() == pytest.approx(5.0)

@pytest.mark.asyncio
async def test_unavailable_propagates_without_caching():
    p, cache, limiter, _ = _provider(FakeSource("yahoo", UpstreamUnavailable("yahoo", "down")))
    with pytest.raises(UpstreamUnavailable):
        await p.get_series("AAPL", "1h", 300)
    assert cache.items == {}
    assert limiter.blocked_until == 0.0

@pytest.mark.asyncio
async def test_consecutive_misses_are_spaced_by_limiter():
    p, _, _, clock = _provider(FakeSource("yahoo", BARS))
    for sym in ("AAPL", "MSFT", "NVDA"):
        await p.get_series(sym, "1h", 300)
    assert sum(clock.sleeps) == pytest.approx(0.57, abs=1e-3)

@pytest.mark.asyncio
async def test_hits_do_not_touch_limiter():
    p, _, _, clock = _provider(FakeSource("yahoo", BARS))
    await p.get_series("AAPL", "1h", 300)
    for _ in range(5):
        await p.get_series("AAPL", "1h", 300)
    assert clock.sleeps == []

@pytest.mark.asyncio
async def test_stale_entries_are_pruned_on_write():
    p, cache, _, clock = _provider(FakeSource("yahoo", BARS))
    await cache.put(CachedSeries("OLD", "1d", BARS, fetched_at=clock.now - 301))
    await cache.put(CachedSeries("RECENT", "1d", BARS, fetched_at=clock.now - 120))
    await p.get_series("AAPL", "1h", 300)
    assert set(cache.items) == {("RECENT", "1d"), ("AAPL", "1h")}

@pytest.mark.asyncio
async def test_non_finite_candles_are_dropped():
    bad = Candle(ts=BARS[-1].ts + 3600, open=1.0, high=math.inf, low=0.0, close=1.0)
    p, _, _, _ = _provider(FakeSource("yahoo", BARS + [bad]))
    res = await p.get_series("AAPL", "1h", 300)
    assert res.candles == BARS

@pytest.mark.asyncio
async def test_secondary_only_for_pairs_that_map_back_to_the_cache_key():
    binance = FakeSource("binance", BARS)
    yahoo = FakeSource("yahoo", BARS)
    p, _, _, _ = _provider(yahoo, binance)
    await p.get_series("btc-USD", "1h", 300)
    await p.get_series("ETH-USDC", "1h", 300)
    assert binance.calls == []
    assert [c[0] for c in yahoo.calls] == ["btc-USD", "ETH-USDC"]
