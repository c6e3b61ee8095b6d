from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

import aiohttp
import structlog

from oscwatch.errors import UpstreamUnavailable
from oscwatch.ingest.http import get_json
from oscwatch.ingest.parser import aggregate, parse_chart_payload
from oscwatch.utils.time import TIMEFRAME_SECONDS, utc_now_s
from oscwatch.utils.types import Candle, ProviderTag

log = structlog.get_logger("yahoo")

# Yahoo has no native 4h interval: fetch 1h and roll up.
YAHOO_INTERVALS = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1h",
    "4h": "1h",
    "1d": "1d",
    "1w": "1wk",
}

# How far back to ask for, per timeframe (days). Intraday intervals are capped by Yahoo.
HISTORY_DAYS = {
    "1h": 60,
    "4h": 730,
    "1d": 730,
    "1w": 3650,
}
DEFAULT_HISTORY_DAYS = 5


@dataclass(slots=True)
class YahooConfig:
    base_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    timeout_s: float = 10.0


class YahooChartClient:
    """Primary candle source: Yahoo Finance v8 chart endpoint."""

    name: ProviderTag = "yahoo"

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cfg: Optional[YahooConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._session = session
        self.cfg = cfg or YahooConfig()
        self._clock = clock or utc_now_s

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        interval = YAHOO_INTERVALS.get(timeframe)
        if interval is None:
            raise UpstreamUnavailable(self.name, f"unsupported timeframe {timeframe!r}")

        now = int(self._clock())
        days = HISTORY_DAYS.get(timeframe, DEFAULT_HISTORY_DAYS)
        params = {"interval": interval, "period1": now - days * 86_400, "period2": now}
        url = f"{self.cfg.base_url.rstrip('/')}/{quote(symbol, safe='')}"

        data = await get_json(self._session, url, source=self.name, params=params, timeout_s=self.cfg.timeout_s)
        candles = parse_chart_payload(data)
        if timeframe == "4h":
            candles = aggregate(candles, TIMEFRAME_SECONDS["4h"])
        if not candles:
            log.info("yahoo_empty_series", symbol=symbol, timeframe=timeframe)
        if limit and len(candles) > limit:
            candles = candles[-limit:]
        return candles
