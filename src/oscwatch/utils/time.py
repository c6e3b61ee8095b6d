from __future__ import annotations

import time

# --- wall-clock helpers ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

# --- bar/timeframe helpers ---

TIMEFRAME_SECONDS: dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14_400,
    "1d": 86_400,
    "1w": 604_800,
}

def timeframe_seconds(timeframe: str) -> int:
    try:
        return TIMEFRAME_SECONDS[timeframe]
    except KeyError:
        raise ValueError(f"unsupported timeframe: {timeframe!r}") from None

def bar_is_closed(bar_ts: int, timeframe: str, now: float) -> bool:
    """True once the interval that starts at bar_ts has fully elapsed."""
    return bar_ts + timeframe_seconds(timeframe) <= now

def align_down(ts: int, seconds: int) -> int:
    """Align timestamp to the start of its bucket."""
    return (int(ts) // seconds) * seconds

