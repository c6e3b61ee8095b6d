# src/oscwatch/data/provider.py
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import structlog

from oscwatch.errors import RateLimited, UpstreamUnavailable
from oscwatch.ingest.symbols import binance_to_yahoo, is_crypto, yahoo_to_binance
from oscwatch.utils.ratelimit import TokenBucket
from oscwatch.utils.time import utc_now_s
from oscwatch.utils.types import CachedSeries, Candle, ProviderTag
from storage.base import SeriesCache

log = structlog.get_logger("provider")


class CandleSource(Protocol):
    name: ProviderTag

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]: ...


@dataclass(slots=True)
class ProviderConfig:
    ttl_s: float = 60.0
    prune_after_ttls: int = 5
    use_secondary: bool = True
    default_limit: int = 300
    min_fetch_interval_s: float = 0.285    # ≈ 3.5 upstream calls per second
    rate_limit_backoff_s: float = 5.0


@dataclass(slots=True)
class SeriesResult:
    candles: list[Candle] = field(default_factory=list)
    provider: ProviderTag = "yahoo"
    cache_hit: bool = False


def _finite_candle(k: Candle) -> bool:
    return all(math.isfinite(v) for v in (k.open, k.high, k.low, k.close))


class MarketDataProvider:
    """
    Cached candle access keyed by (symbol, timeframe).

    - hit when now - fetched_at < ttl_s (no limiter, no upstream)
    - miss: one upstream call per key at a time (per-key lock), gated by the
      shared token bucket; RateLimited penalises the bucket before re-raising
    - crypto pairs try the secondary source first and fall back to the primary
    The cache is always keyed by the primary (Yahoo) symbol form.
    """

    def __init__(
        self,
        primary: CandleSource,
        cache: SeriesCache,
        limiter: TokenBucket,
        *,
        secondary: Optional[CandleSource] = None,
        cfg: Optional[ProviderConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.primary = primary
        self.secondary = secondary
        self.cache = cache
        self.limiter = limiter
        self.cfg = cfg or ProviderConfig()
        self._clock = clock or utc_now_s
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _fresh(self, cached: Optional[CachedSeries]) -> bool:
        return cached is not None and cached.age(self._clock()) < self.cfg.ttl_s

    async def get_series(self, symbol: str, timeframe: str, limit: Optional[int] = None) -> SeriesResult:
        limit = limit or self.cfg.default_limit
        cached = await self.cache.get(symbol, timeframe)
        if self._fresh(cached):
            return SeriesResult(cached.candles[-limit:], cached.provider, cache_hit=True)

        lock = self._locks.setdefault((symbol, timeframe), asyncio.Lock())
        async with lock:
            # another waiter may have filled the key while we were queued
            cached = await self.cache.get(symbol, timeframe)
            if self._fresh(cached):
                return SeriesResult(cached.candles[-limit:], cached.provider, cache_hit=True)

            candles, provider = await self._fetch(symbol, timeframe, limit)
            now = self._clock()
            await self.cache.put(CachedSeries(symbol, timeframe, candles, fetched_at=now, provider=provider))
            pruned = await self.cache.prune(now - self.cfg.ttl_s * self.cfg.prune_after_ttls)
            if pruned:
                log.debug("series_cache_pruned", removed=pruned)
        return SeriesResult(candles, provider, cache_hit=False)

    async def _fetch(self, symbol: str, timeframe: str, limit: int) -> tuple[list[Candle], ProviderTag]:
        if self.secondary is not None and self.cfg.use_secondary and is_crypto(symbol):
            alt = yahoo_to_binance(symbol)
            # only pairs that map back onto the cache key; anything else stays on the primary
            if alt is not None and binance_to_yahoo(alt) == symbol:
                try:
                    candles = await self._call(self.secondary, alt, timeframe, limit)
                    if candles:
                        return candles, self.secondary.name
                    log.info("secondary_empty_fallback", symbol=symbol, timeframe=timeframe)
                except (UpstreamUnavailable, RateLimited) as e:
                    log.warning("secondary_failed_fallback", symbol=symbol, timeframe=timeframe, err=str(e))
        candles = await self._call(self.primary, symbol, timeframe, limit)
        return candles, self.primary.name

    async def _call(self, source: CandleSource, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        waited = await self.limiter.acquire()
        if waited:
            log.debug("upstream_throttled", source=source.name, waited=round(waited, 3))
        try:
            candles = await source.fetch_candles(symbol, timeframe, limit)
        except RateLimited as e:
            backoff = max(self.cfg.rate_limit_backoff_s, e.retry_after or 0.0)
            self.limiter.penalize(backoff)
            log.warning("upstream_rate_limited", source=source.name, symbol=symbol, backoff_s=backoff)
            raise
        candles = [k for k in candles if _finite_candle(k)]
        return candles[-limit:]
