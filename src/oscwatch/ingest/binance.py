from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import aiohttp

from oscwatch.errors import UpstreamUnavailable
from oscwatch.ingest.http import get_json
from oscwatch.ingest.parser import parse_klines
from oscwatch.utils.types import Candle, ProviderTag

BINANCE_INTERVALS = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1h",
    "4h": "4h",
    "1d": "1d",
    "1w": "1w",
}
MAX_KLINES = 1000


@dataclass(slots=True)
class BinanceConfig:
    base_url: str = "https://api.binance.com/api/v3"
    timeout_s: float = 10.0


class BinanceKlinesClient:
    """
    Secondary candle source for crypto pairs. Expects Binance symbols (BTCUSDT);
    the provider translates from the Yahoo form before calling.
    """

    name: ProviderTag = "binance"

    def __init__(self, session: aiohttp.ClientSession, cfg: Optional[BinanceConfig] = None):
        self._session = session
        self.cfg = cfg or BinanceConfig()

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        interval = BINANCE_INTERVALS.get(timeframe)
        if interval is None:
            raise UpstreamUnavailable(self.name, f"unsupported timeframe {timeframe!r}")
        params = {
            "symbol": symbol,
            "interval": interval,
            "limit": min(limit, MAX_KLINES) if limit else 500,
        }
        # 418 is Binance's "IP banned after ignoring 429s"
        rows = await get_json(
            self._session,
            f"{self.cfg.base_url.rstrip('/')}/klines",
            source=self.name,
            params=params,
            timeout_s=self.cfg.timeout_s,
            rate_limit_statuses=(418, 429),
        )
        if not isinstance(rows, list):
            raise UpstreamUnavailable(self.name, "unexpected klines payload")
        return parse_klines(rows)
