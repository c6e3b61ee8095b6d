from __future__ import annotations

from oscwatch.utils.types import Candle

# classic Wilder RSI worked example (period 14)
WILDER_CLOSES = [
    44.34, 44.09, 44.15, 43.61, 44.33, 44.83, 45.10, 45.42, 45.84,
    46.08, 45.89, 46.03, 45.61, 46.28, 46.28, 46.00, 46.03,
]
WILDER_RSI = [70.4641, 66.2496, 66.4809]


def candles_from_closes(closes, start: int = 1_699_000_000, step: int = 3600, spread: float = 0.5) -> list[Candle]:
    out = []
    for i, c in enumerate(closes):
        out.append(Candle(ts=start + i * step, open=c, high=c + spread, low=c - spread, close=c, volume=100.0))
    return out


def candles_from_hlc(rows, start: int = 1_699_000_000, step: int = 3600) -> list[Candle]:
    return [Candle(ts=start + i * step, open=c, high=h, low=l, close=c) for i, (h, l, c) in enumerate(rows)]
