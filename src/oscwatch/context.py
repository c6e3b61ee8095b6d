# src/oscwatch/context.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog
from redis.asyncio import Redis

from oscwatch.alerts.detector import CrossingDetector
from oscwatch.alerts.scheduler import BatchScheduler
from oscwatch.config import AppConfig
from oscwatch.data.provider import MarketDataProvider
from oscwatch.ingest.binance import BinanceKlinesClient
from oscwatch.ingest.yahoo import YahooChartClient
from oscwatch.notify.auth import AccessTokenProvider
from oscwatch.notify.push import PushDispatcher
from oscwatch.utils.ratelimit import TokenBucket
from storage.redis_store import RedisAlertStore, RedisSeriesCache, RedisTokenCache

log = structlog.get_logger("context")


@dataclass(slots=True)
class EngineContext:
    """Everything one engine process owns. Built once in main, closed on shutdown."""
    cfg: AppConfig
    session: aiohttp.ClientSession
    redis: Redis
    store: RedisAlertStore
    series_cache: RedisSeriesCache
    token_cache: RedisTokenCache
    limiter: TokenBucket
    provider: MarketDataProvider
    detector: CrossingDetector
    dispatcher: Optional[PushDispatcher]
    scheduler: BatchScheduler

    async def aclose(self) -> None:
        try:
            await self.scheduler.stop()
        finally:
            await self.session.close()
            await self.redis.aclose()


async def build_context(
    cfg: AppConfig,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    redis_client: Optional[Redis] = None,
) -> EngineContext:
    """Wire the engine. Must run inside the event loop (aiohttp session creation)."""
    if session is None:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=cfg.http_timeout_s))
    if redis_client is None:
        redis_client = Redis.from_url(
            cfg.redis_url,
            decode_responses=True,
            socket_timeout=cfg.redis_timeout_s,
            socket_connect_timeout=cfg.redis_timeout_s,
        )

    store = RedisAlertStore(redis_client, prefix=cfg.redis_prefix)
    series_cache = RedisSeriesCache(redis_client, prefix=cfg.redis_prefix)
    token_cache = RedisTokenCache(redis_client, prefix=cfg.redis_prefix)
    limiter = TokenBucket.from_min_interval(cfg.provider.min_fetch_interval_s)

    secondary = BinanceKlinesClient(session, cfg.binance) if cfg.provider.use_secondary else None
    provider = MarketDataProvider(
        YahooChartClient(session, cfg.yahoo),
        series_cache,
        limiter,
        secondary=secondary,
        cfg=cfg.provider,
    )
    detector = CrossingDetector()

    dispatcher: Optional[PushDispatcher] = None
    if cfg.push is not None and cfg.service_account is not None:
        tokens = AccessTokenProvider(
            session,
            cfg.service_account,
            cache=token_cache,
            timeout_s=cfg.push.timeout_s,
            refresh_margin_s=cfg.push.token_refresh_margin_s,
        )
        dispatcher = PushDispatcher(store, tokens, session, cfg.push)
    else:
        log.info("push_disabled")

    scheduler = BatchScheduler(store, provider, detector, dispatcher, cfg.scheduler)
    return EngineContext(
        cfg=cfg,
        session=session,
        redis=redis_client,
        store=store,
        series_cache=series_cache,
        token_cache=token_cache,
        limiter=limiter,
        provider=provider,
        detector=detector,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )
