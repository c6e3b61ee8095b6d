from __future__ import annotations

from typing import Optional

from oscwatch.alerts.events import Transition
from oscwatch.indicators.oscillators import IndicatorKind


def fmt_level(v: Optional[float]) -> str:
    """30.0 -> "30", 12.5 -> "12.5", None -> "-"."""
    if v is None:
        return "-"
    return f"{v:g}"


def format_message(
    indicator: IndicatorKind,
    transition: Transition,
    value: float,
    level: float,
    lower: Optional[float] = None,
    upper: Optional[float] = None,
) -> str:
    """
    Human text for one transition, e.g.
      RSI crossed level 30 downward (28.4)
      STOCH entered zone 20-80 (45.0)
    """
    name = indicator.label
    if transition is Transition.CROSS_UP:
        return f"{name} crossed level {fmt_level(level)} upward ({value:.1f})"
    if transition is Transition.CROSS_DOWN:
        return f"{name} crossed level {fmt_level(level)} downward ({value:.1f})"
    zone = f"{fmt_level(lower)}-{fmt_level(upper)}"
    if transition is Transition.ENTER_ZONE:
        return f"{name} entered zone {zone} ({value:.1f})"
    return f"{name} exited zone {zone} ({value:.1f})"


def format_title(symbol: str, timeframe: str) -> str:
    return f"{symbol} ({timeframe})"
