from __future__ import annotations

import math
from typing import Any, Iterable, Optional

from oscwatch.utils.time import align_down
from oscwatch.utils.types import Candle


def _num(v: Any) -> Optional[float]:
    """float(v) if v is a finite number (or numeric string), else None."""
    if v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _at(seq: Optional[list], i: int) -> Any:
    if not seq or i >= len(seq):
        return None
    return seq[i]


def parse_chart_payload(data: dict) -> list[Candle]:
    """
    Yahoo v8 chart response -> ascending candles.

    Shape:
      {"chart": {"result": [{"timestamp": [...],
                             "indicators": {"quote": [{"open": [...], "high": [...],
                                                       "low": [...], "close": [...],
                                                       "volume": [...]}]}}]}}

    Points without open or close are discarded. Missing high/low fall back to
    max/min(open, close); missing volume is 0. A result without timestamps is a
    legitimately empty series (illiquid instrument, closed market).
    """
    chart = (data or {}).get("chart") or {}
    results = chart.get("result") or []
    if not results:
        return []
    result = results[0] or {}
    timestamps = result.get("timestamp") or []
    quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}

    out: list[Candle] = []
    for i, ts in enumerate(timestamps):
        o = _num(_at(quotes.get("open"), i))
        c = _num(_at(quotes.get("close"), i))
        if o is None or c is None or ts is None:
            continue
        h = _num(_at(quotes.get("high"), i))
        l = _num(_at(quotes.get("low"), i))
        v = _num(_at(quotes.get("volume"), i))
        out.append(Candle(
            ts=int(ts),
            open=o,
            high=h if h is not None else max(o, c),
            low=l if l is not None else min(o, c),
            close=c,
            volume=v or 0.0,
        ))
    out.sort(key=lambda k: k.ts)
    return out


def parse_klines(rows: Iterable[list]) -> list[Candle]:
    """
    Binance klines -> ascending candles.
    Row format: [open_time_ms, "open", "high", "low", "close", "volume", close_time_ms, ...]
    """
    out: list[Candle] = []
    for row in rows or []:
        if not isinstance(row, (list, tuple)) or len(row) < 6:
            continue
        o, h, l, c = _num(row[1]), _num(row[2]), _num(row[3]), _num(row[4])
        if o is None or c is None or h is None or l is None:
            continue
        out.append(Candle(ts=int(row[0]) // 1000, open=o, high=h, low=l, close=c, volume=_num(row[5]) or 0.0))
    out.sort(key=lambda k: k.ts)
    return out


def aggregate(candles: list[Candle], bar_seconds: int) -> list[Candle]:
    """
    Roll finer candles up into bar_seconds buckets aligned to UTC multiples
    (e.g. 1h -> 4h for sources without a native 4h interval).
    """
    out: list[Candle] = []
    acc: Optional[Candle] = None
    for k in candles:
        epoch = align_down(k.ts, bar_seconds)
        if acc is None or epoch != acc.ts:
            if acc is not None:
                out.append(acc)
            acc = Candle(ts=epoch, open=k.open, high=k.high, low=k.low, close=k.close, volume=k.volume)
            continue
        acc = Candle(
            ts=acc.ts,
            open=acc.open,
            high=max(acc.high, k.high),
            low=min(acc.low, k.low),
            close=k.close,
            volume=acc.volume + k.volume,
        )
    if acc is not None:
        out.append(acc)
    return out
