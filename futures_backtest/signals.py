"""CVD trend detection combined with the indicator agreement filters."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Sequence

from .config import MIN_CVD_LOOKBACK, BacktestConfig
from .indicators import IndicatorSnapshot
from .models import Bar, Signal


@dataclass(frozen=True)
class SignalDecision:
    signal: Signal
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.signal is not Signal.NONE


def cvd_trend(values: Sequence[float]) -> Signal:
    """LONG for a strictly rising window, SHORT for strictly falling, else NONE."""
    if len(values) < MIN_CVD_LOOKBACK:
        return Signal.NONE
    pairs = list(zip(values, values[1:]))
    if all(later > earlier for earlier, later in pairs):
        return Signal.LONG
    if all(later < earlier for earlier, later in pairs):
        return Signal.SHORT
    return Signal.NONE


def indicator_agreement(signal: Signal, close: float, snapshot: IndicatorSnapshot, config: BacktestConfig) -> str | None:
    """Return the first failing filter, or None when every enabled filter agrees."""
    averages = []
    if config.ema_moving_average > 0:
        averages.append((f"EMA({config.ema_moving_average})", snapshot.ema))
    if config.sma_filter > 0:
        averages.append((f"SMA({config.sma_filter})", snapshot.sma))
    if config.use_vwap:
        averages.append(("VWAP", snapshot.vwap))

    for name, value in averages:
        if value is None:
            return f"{name} undefined"
        if signal is Signal.LONG and not close > value:
            return f"close {close:.2f} not above {name} {value:.2f}"
        if signal is Signal.SHORT and not close < value:
            return f"close {close:.2f} not below {name} {value:.2f}"

    if config.adx_threshold > 0:
        if snapshot.adx is None:
            return "ADX undefined"
        if snapshot.adx < config.adx_threshold:
            return f"ADX {snapshot.adx:.2f} below threshold {config.adx_threshold:.2f}"
    return None


class SignalEvaluator:
    """Keeps the rolling CVD window for one run and scores each closed bar."""

    def __init__(self, config: BacktestConfig):
        self.config = config
        self._cvd: deque[float] = deque(maxlen=config.cvd_look_back_bars)

    @property
    def window(self) -> list[float]:
        return list(self._cvd)

    def observe(self, bar: Bar) -> None:
        self._cvd.append(float(bar.cumulative_volume_delta))

    def evaluate(self, bar: Bar, snapshot: IndicatorSnapshot) -> SignalDecision:
        if len(self._cvd) < self.config.cvd_look_back_bars:
            return SignalDecision(Signal.NONE, f"CVD window warming up ({len(self._cvd)}/{self.config.cvd_look_back_bars})")

        candidate = cvd_trend(self.window)
        if candidate is Signal.NONE:
            return SignalDecision(Signal.NONE, "CVD not trending")

        failure = indicator_agreement(candidate, float(bar.close), snapshot, self.config)
        if failure is not None:
            return SignalDecision(Signal.NONE, f"{candidate.value} rejected: {failure}")
        return SignalDecision(candidate, f"CVD {candidate.value.lower()} trend over {len(self._cvd)} bars")
