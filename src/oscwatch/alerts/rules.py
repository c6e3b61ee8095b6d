# src/oscwatch/alerts/rules.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from oscwatch.errors import InvalidRule
from oscwatch.indicators.oscillators import IndicatorKind, IndicatorParams
from oscwatch.utils.time import TIMEFRAME_SECONDS


class EvalMode(str, Enum):
    CROSS = "cross"
    ENTER_ZONE = "enter-zone"
    EXIT_ZONE = "exit-zone"


@dataclass(slots=True)
class AlertRule:
    """
    One user alert on (symbol, timeframe, indicator).

    - mode = "cross"      → lower fires on a downward cross, upper on an upward cross
             "enter-zone" → fire when the value moves into [lower, upper]
             "exit-zone"  → fire when the value leaves [lower, upper]
    A missing bound is unbounded on that side. Read-only to the engine.
    """
    id: str
    owner_id: str
    symbol: str
    timeframe: str
    params: IndicatorParams
    lower: Optional[float] = None
    upper: Optional[float] = None
    mode: EvalMode = EvalMode.CROSS
    cooldown_sec: int = 0
    active: bool = True
    on_bar_close: bool = False
    created_at: float = 0.0

    @property
    def indicator(self) -> IndicatorKind:
        return self.params.kind

    @property
    def group_key(self) -> tuple[str, str]:
        return self.symbol, self.timeframe

    def levels(self) -> list[float]:
        return [v for v in (self.lower, self.upper) if v is not None]

    def validate(self) -> None:
        if not self.id or not self.owner_id or not self.symbol:
            raise InvalidRule(f"rule {self.id!r}: id, owner and symbol are required")
        if self.timeframe not in TIMEFRAME_SECONDS:
            raise InvalidRule(f"rule {self.id}: unsupported timeframe {self.timeframe!r}")
        if self.params.period < 1:
            raise InvalidRule(f"rule {self.id}: period must be >= 1")
        if self.lower is None and self.upper is None:
            raise InvalidRule(f"rule {self.id}: at least one level is required")
        if self.lower is not None and self.upper is not None and self.lower > self.upper:
            raise InvalidRule(f"rule {self.id}: lower {self.lower} > upper {self.upper}")
        lo, hi = self.params.bounds
        for lvl in self.levels():
            if not lo <= lvl <= hi:
                raise InvalidRule(f"rule {self.id}: level {lvl} outside [{lo}, {hi}] for {self.indicator.value}")
        if self.cooldown_sec < 0:
            raise InvalidRule(f"rule {self.id}: negative cooldown")
