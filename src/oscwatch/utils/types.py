from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

# ---- market-data primitives ----

ProviderTag = Literal["yahoo", "binance"]

@dataclass(slots=True, frozen=True)
class Candle:
    """
    One OHLCV bar. ts is the bar open time in integer epoch seconds.
    """
    ts: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

@dataclass(slots=True)
class CachedSeries:
    symbol: str
    timeframe: str
    candles: list[Candle] = field(default_factory=list)  # ascending by ts
    fetched_at: float = 0.0
    provider: ProviderTag = "yahoo"

    def age(self, now: float) -> float:
        return now - self.fetched_at

# ---- delivery ----

@dataclass(slots=True)
class DeviceBinding:
    device_id: str
    owner_id: str
    push_token: str
    platform: str = "android"        # android | ios
    last_active: Optional[float] = None  # None: never reported, counts as active

    def idle_before(self, cutoff: float) -> bool:
        return self.last_active is not None and self.last_active < cutoff

@dataclass(slots=True)
class AccessToken:
    token: str
    expires_at: float                # epoch seconds

    def valid_for(self, now: float, margin_s: float = 0.0) -> bool:
        return bool(self.token) and now < self.expires_at - margin_s
