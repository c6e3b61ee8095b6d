from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from oscwatch.indicators.oscillators import IndicatorState


class Zone(str, Enum):
    BELOW = "below"
    BETWEEN = "between"
    ABOVE = "above"


@dataclass(slots=True)
class AlertState:
    """
    Per-rule evaluation memory, written only by the crossing detector.
    last_value is None until the first published oscillator value (Uninitialized).
    """
    rule_id: str
    last_value: Optional[float] = None
    indicator_state: Optional[IndicatorState] = None
    last_bar_ts: Optional[int] = None
    last_fire_ts: Optional[float] = None
    last_zone: Optional[Zone] = None
    updated_at: float = 0.0

    @property
    def armed(self) -> bool:
        return self.last_value is not None
