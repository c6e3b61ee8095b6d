# src/oscwatch/indicators/oscillators.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from oscwatch.errors import InsufficientData
from oscwatch.utils.types import Candle


class IndicatorKind(str, Enum):
    RSI = "rsi"
    STOCHASTIC = "stoch"
    WILLIAMS_R = "williams"

    @property
    def label(self) -> str:
        return {"rsi": "RSI", "stoch": "STOCH", "williams": "WPR"}[self.value]


# ============================================================
# Parameters (one frozen struct per indicator kind)
# ============================================================

@dataclass(slots=True, frozen=True)
class RsiParams:
    period: int = 14

    kind: ClassVar[IndicatorKind] = IndicatorKind.RSI
    bounds: ClassVar[Tuple[float, float]] = (0.0, 100.0)

    @property
    def min_bars(self) -> int:
        return self.period + 1


@dataclass(slots=True, frozen=True)
class StochasticParams:
    """
    period:        %K look-back window
    d_period:      SMA length for %D
    slow_period:   optional SMA over raw %K before %D ("slow" stochastic), 1 = off
    smooth_period: optional SMA over %D, 1 = off
    """
    period: int = 14
    d_period: int = 3
    slow_period: int = 1
    smooth_period: int = 1

    kind: ClassVar[IndicatorKind] = IndicatorKind.STOCHASTIC
    bounds: ClassVar[Tuple[float, float]] = (0.0, 100.0)

    @property
    def min_bars(self) -> int:
        return self.period + (self.slow_period - 1) + (self.d_period - 1) + (self.smooth_period - 1)


@dataclass(slots=True, frozen=True)
class WilliamsParams:
    period: int = 14

    kind: ClassVar[IndicatorKind] = IndicatorKind.WILLIAMS_R
    bounds: ClassVar[Tuple[float, float]] = (-100.0, 0.0)

    @property
    def min_bars(self) -> int:
        return self.period


IndicatorParams = Union[RsiParams, StochasticParams, WilliamsParams]


# ============================================================
# Continuation state (one struct per indicator kind)
# ============================================================

@dataclass(slots=True, frozen=True)
class RsiState:
    """Wilder averages as of the anchor bar (the last completed bar seen)."""
    avg_gain: float
    avg_loss: float
    anchor_ts: int
    anchor_close: float


@dataclass(slots=True, frozen=True)
class StochasticState:
    k: float
    d: float
    anchor_ts: int


@dataclass(slots=True, frozen=True)
class WilliamsState:
    value: float
    anchor_ts: int


IndicatorState = Union[RsiState, StochasticState, WilliamsState]


@dataclass(slots=True)
class OscillatorSeries:
    """
    Aligned (ts, values) arrays plus optional continuation state.
    An empty series is the "not ready" signal.
    """
    ts: np.ndarray
    values: np.ndarray
    state: Optional[IndicatorState] = None

    @classmethod
    def empty(cls) -> "OscillatorSeries":
        return cls(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64), None)

    @property
    def is_ready(self) -> bool:
        return self.values.size > 0

    def __len__(self) -> int:
        return int(self.values.size)

    def last(self) -> Tuple[int, float]:
        if not self.is_ready:
            raise InsufficientData("oscillator series is empty")
        return int(self.ts[-1]), float(self.values[-1])


# ============================================================
# Array helpers
# ============================================================

def _arrays(candles: Sequence[Candle]) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    n = len(candles)
    ts = np.fromiter((c.ts for c in candles), dtype=np.int64, count=n)
    h = np.fromiter((c.high for c in candles), dtype=np.float64, count=n)
    l = np.fromiter((c.low for c in candles), dtype=np.float64, count=n)
    c = np.fromiter((c.close for c in candles), dtype=np.float64, count=n)
    return ts, h, l, c


def sma(x: np.ndarray, periods: int) -> np.ndarray:
    """Simple moving average, 'valid' alignment: len(x) - periods + 1 values."""
    x = np.asarray(x, dtype=np.float64)
    if periods <= 1:
        return x.copy()
    if x.size < periods:
        return np.empty(0, dtype=np.float64)
    cs = np.cumsum(np.insert(x, 0, 0.0))
    return (cs[periods:] - cs[:-periods]) / periods


def rolling_high_low(h: np.ndarray, l: np.ndarray, periods: int) -> Tuple[np.ndarray, np.ndarray]:
    """Highest high / lowest low over each full window, aligned to the window end."""
    hh = sliding_window_view(h, periods).max(axis=1)
    ll = sliding_window_view(l, periods).min(axis=1)
    return hh, ll


def _rsi_from_averages(au: np.ndarray, ad: np.ndarray) -> np.ndarray:
    rs = np.divide(au, ad, out=np.zeros_like(au), where=ad != 0.0)
    rsi = 100.0 - 100.0 / (1.0 + rs)
    rsi = np.where(ad == 0.0, 100.0, rsi)
    return np.clip(rsi, 0.0, 100.0)


# ============================================================
# RSI (Wilder)
# ============================================================

def compute_rsi_series(c: np.ndarray, periods: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Wilder RSI over closes. Returns (rsi, avg_gain, avg_loss) aligned to c[periods:].
    The first value is seeded with plain averages of the first `periods` deltas.
    """
    n_out = c.size - periods
    if periods < 1 or n_out < 1:
        e = np.empty(0, dtype=np.float64)
        return e, e, e

    delta = np.diff(c)
    gain = np.maximum(delta, 0.0)
    loss = np.maximum(-delta, 0.0)

    au = np.empty(n_out, dtype=np.float64)
    ad = np.empty(n_out, dtype=np.float64)
    au[0] = gain[:periods].mean()
    ad[0] = loss[:periods].mean()
    for i in range(1, n_out):
        au[i] = (au[i-1] * (periods - 1) + gain[periods - 1 + i]) / periods
        ad[i] = (ad[i-1] * (periods - 1) + loss[periods - 1 + i]) / periods

    return _rsi_from_averages(au, ad), au, ad


def _resume_index(ts: np.ndarray, c: np.ndarray, state: RsiState) -> Optional[int]:
    idx = np.nonzero(ts == state.anchor_ts)[0]
    if idx.size == 0:
        return None
    j = int(idx[-1])
    # the anchor bar must be unchanged, otherwise the stored averages are stale
    if abs(float(c[j]) - state.anchor_close) > 1e-9 * max(1.0, abs(state.anchor_close)):
        return None
    return j


def _rsi(candles: Sequence[Candle], params: RsiParams, state: Optional[RsiState]) -> OscillatorSeries:
    ts, _, _, c = _arrays(candles)
    p = params.period

    j = _resume_index(ts, c, state) if state is not None else None
    if j is not None:
        delta = np.diff(c[j:])
        au = np.empty(delta.size + 1, dtype=np.float64)
        ad = np.empty(delta.size + 1, dtype=np.float64)
        au[0], ad[0] = state.avg_gain, state.avg_loss
        for i, d in enumerate(delta, start=1):
            au[i] = (au[i-1] * (p - 1) + max(d, 0.0)) / p
            ad[i] = (ad[i-1] * (p - 1) + max(-d, 0.0)) / p
        pts_ts, pts_c = ts[j:], c[j:]
        values = _rsi_from_averages(au, ad)
    else:
        if c.size < params.min_bars:
            return OscillatorSeries.empty()
        values, au, ad = compute_rsi_series(c, p)
        pts_ts, pts_c = ts[p:], c[p:]

    k = -2 if values.size >= 2 else -1
    new_state = RsiState(
        avg_gain=float(au[k]),
        avg_loss=float(ad[k]),
        anchor_ts=int(pts_ts[k]),
        anchor_close=float(pts_c[k]),
    )
    return OscillatorSeries(pts_ts.copy(), values, new_state)


# ============================================================
# Stochastic & Williams %R
# ============================================================

def compute_stochastic_series(
    h: np.ndarray, l: np.ndarray, c: np.ndarray, params: StochasticParams
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Returns (published, slow %K, %D); published is the most-smoothed series."""
    hh, ll = rolling_high_low(h, l, params.period)
    close = c[params.period - 1:]
    rng = hh - ll
    raw_k = np.divide(close - ll, rng, out=np.full_like(rng, 0.5), where=rng != 0.0) * 100.0
    raw_k = np.clip(raw_k, 0.0, 100.0)

    slow_k = sma(raw_k, params.slow_period)
    d = sma(slow_k, params.d_period)
    out = sma(d, params.smooth_period)
    return np.clip(out, 0.0, 100.0), slow_k, d


def _stochastic(candles: Sequence[Candle], params: StochasticParams) -> OscillatorSeries:
    ts, h, l, c = _arrays(candles)
    if c.size < params.min_bars:
        return OscillatorSeries.empty()
    out, slow_k, d = compute_stochastic_series(h, l, c, params)
    if out.size == 0:
        return OscillatorSeries.empty()
    state = StochasticState(k=float(slow_k[-1]), d=float(d[-1]), anchor_ts=int(ts[-1]))
    return OscillatorSeries(ts[-out.size:].copy(), out, state)


def compute_williams_series(h: np.ndarray, l: np.ndarray, c: np.ndarray, periods: int) -> np.ndarray:
    hh, ll = rolling_high_low(h, l, periods)
    close = c[periods - 1:]
    rng = hh - ll
    wr = np.divide(hh - close, rng, out=np.full_like(rng, 0.5), where=rng != 0.0) * -100.0
    return np.clip(wr, -100.0, 0.0)


def _williams(candles: Sequence[Candle], params: WilliamsParams) -> OscillatorSeries:
    ts, h, l, c = _arrays(candles)
    if c.size < params.min_bars:
        return OscillatorSeries.empty()
    wr = compute_williams_series(h, l, c, params.period)
    state = WilliamsState(value=float(wr[-1]), anchor_ts=int(ts[-1]))
    return OscillatorSeries(ts[params.period - 1:].copy(), wr, state)


# ============================================================
# Dispatch
# ============================================================

def compute(
    candles: Sequence[Candle],
    params: IndicatorParams,
    state: Optional[IndicatorState] = None,
) -> OscillatorSeries:
    """
    Pure mapping candles (+ params, + optional continuation state) -> oscillator series.
    Insufficient history yields an empty series, never an error.
    """
    if params.period < 1:
        return OscillatorSeries.empty()
    match params:
        case RsiParams():
            return _rsi(candles, params, state if isinstance(state, RsiState) else None)
        case StochasticParams():
            return _stochastic(candles, params)
        case WilliamsParams():
            return _williams(candles, params)
        case _:
            raise TypeError(f"unsupported indicator params: {type(params).__name__}")


# ============================================================
# Persistence boundary (plain dicts)
# ============================================================

def _int_param(extra: Mapping[str, Any], *names: str, default: int) -> int:
    for n in names:
        v = extra.get(n)
        if v is not None:
            return int(v)
    return default


def params_from_dict(kind: str | IndicatorKind, period: int, extra: Optional[Mapping[str, Any]] = None) -> IndicatorParams:
    """
    Build typed params from the stored indicator name, period and extra parameters.
    Accepts both snake_case and the camelCase keys written by the mobile client.
    """
    k = IndicatorKind(kind)
    extra = extra or {}
    match k:
        case IndicatorKind.RSI:
            return RsiParams(period=int(period))
        case IndicatorKind.STOCHASTIC:
            return StochasticParams(
                period=int(period),
                d_period=_int_param(extra, "d_period", "dPeriod", default=3),
                slow_period=_int_param(extra, "slow_period", "slowPeriod", default=1),
                smooth_period=_int_param(extra, "smooth_period", "smoothPeriod", default=1),
            )
        case IndicatorKind.WILLIAMS_R:
            return WilliamsParams(period=int(period))


def params_extra(params: IndicatorParams) -> dict[str, int]:
    match params:
        case StochasticParams(d_period=d, slow_period=s, smooth_period=m):
            return {"d_period": d, "slow_period": s, "smooth_period": m}
        case _:
            return {}


def params_to_dict(params: IndicatorParams) -> dict[str, Any]:
    return {"indicator": params.kind.value, "period": params.period, **params_extra(params)}


def state_to_dict(state: Optional[IndicatorState]) -> Optional[dict[str, Any]]:
    match state:
        case None:
            return None
        case RsiState():
            return {"kind": "rsi", "avg_gain": state.avg_gain, "avg_loss": state.avg_loss,
                    "anchor_ts": state.anchor_ts, "anchor_close": state.anchor_close}
        case StochasticState():
            return {"kind": "stoch", "k": state.k, "d": state.d, "anchor_ts": state.anchor_ts}
        case WilliamsState():
            return {"kind": "williams", "value": state.value, "anchor_ts": state.anchor_ts}


def state_from_dict(raw: Optional[Mapping[str, Any]]) -> Optional[IndicatorState]:
    """Tolerant decode: anything unrecognised yields None (forces a full recompute)."""
    if not raw:
        return None
    try:
        kind = raw.get("kind")
        if kind == "rsi":
            return RsiState(float(raw["avg_gain"]), float(raw["avg_loss"]),
                            int(raw["anchor_ts"]), float(raw["anchor_close"]))
        if kind == "stoch":
            return StochasticState(float(raw["k"]), float(raw["d"]), int(raw["anchor_ts"]))
        if kind == "williams":
            return WilliamsState(float(raw["value"]), int(raw["anchor_ts"]))
    except (KeyError, TypeError, ValueError):
        return None
    return None
