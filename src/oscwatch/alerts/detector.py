# src/oscwatch/alerts/detector.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

import structlog

from oscwatch.alerts.events import AlertTrigger, Transition
from oscwatch.alerts.formatting import format_message
from oscwatch.alerts.rules import AlertRule, EvalMode
from oscwatch.alerts.state import AlertState, Zone
from oscwatch.errors import InsufficientData
from oscwatch.indicators.oscillators import compute
from oscwatch.utils.time import bar_is_closed, utc_now_s
from oscwatch.utils.types import Candle

log = structlog.get_logger("detector")


class OutcomeStatus(str, Enum):
    SKIPPED = "skipped"        # source bar already processed, nothing written
    NOT_READY = "not_ready"    # not enough history for a value yet
    BASELINE = "baseline"      # first value captured, rule is now armed
    QUIET = "quiet"            # armed, no qualifying transition
    FIRED = "fired"
    SUPPRESSED = "suppressed"  # qualifying transition inside the cooldown window


@dataclass(slots=True, frozen=True)
class Crossing:
    transition: Transition
    level: float


@dataclass(slots=True)
class DetectorOutcome:
    status: OutcomeStatus
    state: Optional[AlertState] = None    # state to persist; None means leave the stored row alone
    triggers: list[AlertTrigger] = field(default_factory=list)
    value: Optional[float] = None


def classify_zone(value: float, lower: Optional[float], upper: Optional[float]) -> Zone:
    if lower is not None and value < lower:
        return Zone.BELOW
    if upper is not None and value > upper:
        return Zone.ABOVE
    return Zone.BETWEEN


def _inside(x: float, lower: Optional[float], upper: Optional[float]) -> bool:
    return (lower is None or x >= lower) and (upper is None or x <= upper)


def detect_crossings(
    mode: EvalMode,
    previous: float,
    current: float,
    lower: Optional[float],
    upper: Optional[float],
) -> list[Crossing]:
    """
    Qualifying transitions between two consecutive values.

    cross:      lower only on the way down (prev >= lower > cur),
                upper only on the way up   (prev <= upper < cur)
    enter-zone: prev outside [lower, upper], cur inside; level = bound entered through
    exit-zone:  prev inside, cur outside; level = bound exited through
    """
    out: list[Crossing] = []
    if mode is EvalMode.CROSS:
        if lower is not None and previous >= lower and current < lower:
            out.append(Crossing(Transition.CROSS_DOWN, lower))
        if upper is not None and previous <= upper and current > upper:
            out.append(Crossing(Transition.CROSS_UP, upper))
        return out

    was_in = _inside(previous, lower, upper)
    is_in = _inside(current, lower, upper)
    if mode is EvalMode.ENTER_ZONE and not was_in and is_in:
        below = lower is not None and previous < lower
        out.append(Crossing(Transition.ENTER_ZONE, lower if below else upper))
    elif mode is EvalMode.EXIT_ZONE and was_in and not is_in:
        below = lower is not None and current < lower
        out.append(Crossing(Transition.EXIT_ZONE, lower if below else upper))
    return out


class CrossingDetector:
    """
    Per-rule state machine: Uninitialized -> Armed.

    evaluate() is pure apart from the injected clock: it never touches storage.
    The caller persists outcome.state (when not None) and dispatches outcome.triggers.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or utc_now_s

    def evaluate(
        self,
        rule: AlertRule,
        state: Optional[AlertState],
        candles: Sequence[Candle],
    ) -> DetectorOutcome:
        now = self._clock()
        if not rule.active:
            return DetectorOutcome(OutcomeStatus.SKIPPED)

        bars = list(candles)
        if rule.on_bar_close:
            while bars and not bar_is_closed(bars[-1].ts, rule.timeframe, now):
                bars.pop()
        if not bars:
            return DetectorOutcome(OutcomeStatus.NOT_READY)

        bar_ts = bars[-1].ts
        if state is not None and state.last_bar_ts == bar_ts:
            return DetectorOutcome(OutcomeStatus.SKIPPED, value=state.last_value)

        series = compute(bars, rule.params, state.indicator_state if state else None)
        try:
            _, value = series.last()
        except InsufficientData:
            # remember the bar so it is not recomputed; keep whatever baseline existed
            kept = AlertState(
                rule_id=rule.id,
                last_value=state.last_value if state else None,
                indicator_state=None,
                last_bar_ts=bar_ts,
                last_fire_ts=state.last_fire_ts if state else None,
                last_zone=state.last_zone if state else None,
                updated_at=now,
            )
            log.debug("rule_not_ready", rule_id=rule.id, bars=len(bars), need=rule.params.min_bars)
            return DetectorOutcome(OutcomeStatus.NOT_READY, state=kept)

        new_state = AlertState(
            rule_id=rule.id,
            last_value=value,
            indicator_state=series.state,
            last_bar_ts=bar_ts,
            last_fire_ts=state.last_fire_ts if state else None,
            last_zone=classify_zone(value, rule.lower, rule.upper),
            updated_at=now,
        )

        if state is None or not state.armed:
            log.debug("rule_baseline", rule_id=rule.id, value=round(value, 2))
            return DetectorOutcome(OutcomeStatus.BASELINE, state=new_state, value=value)

        previous = float(state.last_value)
        crossings = detect_crossings(rule.mode, previous, value, rule.lower, rule.upper)
        if not crossings:
            return DetectorOutcome(OutcomeStatus.QUIET, state=new_state, value=value)

        if state.last_fire_ts is not None and now - state.last_fire_ts < rule.cooldown_sec:
            log.info(
                "alert_suppressed_cooldown",
                rule_id=rule.id,
                since_last_fire=round(now - state.last_fire_ts, 1),
                cooldown=rule.cooldown_sec,
            )
            return DetectorOutcome(OutcomeStatus.SUPPRESSED, state=new_state, value=value)

        new_state.last_fire_ts = now
        triggers = [
            AlertTrigger(
                rule_id=rule.id,
                owner_id=rule.owner_id,
                symbol=rule.symbol,
                timeframe=rule.timeframe,
                indicator=rule.indicator,
                value=value,
                level=c.level,
                transition=c.transition,
                bar_ts=bar_ts,
                ts=now,
                message=format_message(rule.indicator, c.transition, value, c.level, rule.lower, rule.upper),
                created_at=now,
            )
            for c in crossings
        ]
        log.info(
            "alert_fired",
            rule_id=rule.id,
            symbol=rule.symbol,
            timeframe=rule.timeframe,
            prev=round(previous, 2),
            value=round(value, 2),
            transitions=[c.transition.value for c in crossings],
        )
        return DetectorOutcome(OutcomeStatus.FIRED, state=new_state, triggers=triggers, value=value)
