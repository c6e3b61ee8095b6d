from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping

from oscwatch.indicators.oscillators import IndicatorKind


class Transition(str, Enum):
    CROSS_UP = "cross_up"
    CROSS_DOWN = "cross_down"
    ENTER_ZONE = "enter_zone"
    EXIT_ZONE = "exit_zone"


@dataclass(slots=True, frozen=True)
class AlertEvent:
    """Append-only history record of one qualifying transition."""
    rule_id: str
    ts: float
    value: float
    level: float
    transition: Transition
    bar_ts: int

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["transition"] = self.transition.value
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "AlertEvent":
        return cls(
            rule_id=str(d["rule_id"]),
            ts=float(d["ts"]),
            value=float(d["value"]),
            level=float(d["level"]),
            transition=Transition(d["transition"]),
            bar_ts=int(d["bar_ts"]),
        )


@dataclass(slots=True, frozen=True)
class AlertTrigger:
    """What the dispatcher needs to notify an owner about one event."""
    rule_id: str
    owner_id: str
    symbol: str
    timeframe: str
    indicator: IndicatorKind
    value: float
    level: float
    transition: Transition
    bar_ts: int
    ts: float
    message: str
    created_at: float

    def to_event(self) -> AlertEvent:
        return AlertEvent(
            rule_id=self.rule_id,
            ts=self.ts,
            value=self.value,
            level=self.level,
            transition=self.transition,
            bar_ts=self.bar_ts,
        )
