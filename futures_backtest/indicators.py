"""Incremental indicator estimators and their batch pandas counterparts.

Every estimator consumes closed bars in order and reports ``None`` until it
has enough history. The batch helpers at the bottom recompute the same values
over a full series; the incremental value at bar ``i`` must equal the batch
value at row ``i``.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import date
import logging
import math
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

from .config import ADX_PERIOD, BacktestConfig
from .errors import ComputationError
from .models import Bar

logger = logging.getLogger(__name__)


def _require_period(period: int, name: str) -> int:
    if int(period) <= 0:
        raise ComputationError(f"{name} period must be positive, got {period}")
    return int(period)


class EmaEstimator:
    def __init__(self, period: int):
        self.period = _require_period(period, "EMA")
        self.multiplier = 2.0 / (self.period + 1)
        self._seed: list[float] = []
        self.value: Optional[float] = None

    def update(self, bar: Bar) -> Optional[float]:
        close = float(bar.close)
        if self.value is None:
            self._seed.append(close)
            if len(self._seed) == self.period:
                self.value = sum(self._seed) / self.period
                self._seed.clear()
            return self.value
        self.value = close * self.multiplier + self.value * (1.0 - self.multiplier)
        return self.value


class SmaEstimator:
    def __init__(self, period: int):
        self.period = _require_period(period, "SMA")
        self._window: deque[float] = deque(maxlen=self.period)
        self.value: Optional[float] = None

    def update(self, bar: Bar) -> Optional[float]:
        self._window.append(float(bar.close))
        if len(self._window) == self.period:
            self.value = sum(self._window) / self.period
        return self.value


class VwapEstimator:
    """Session VWAP on typical price, reset on the first bar of each date."""

    def __init__(self) -> None:
        self._session: date | None = None
        self._pv = 0.0
        self._volume = 0.0
        self.value: Optional[float] = None

    def update(self, bar: Bar) -> Optional[float]:
        if bar.session_date != self._session:
            self._session = bar.session_date
            self._pv = 0.0
            self._volume = 0.0
        typical = (float(bar.high) + float(bar.low) + float(bar.close)) / 3.0
        volume = float(bar.volume)
        if volume < 0:
            raise ComputationError(f"Negative volume on bar {bar.timestamp}: {volume}")
        self._pv += typical * volume
        self._volume += volume
        self.value = self._pv / self._volume if self._volume > 0 else None
        return self.value


class AdxEstimator:
    """Wilder ADX; defined once ``2 * period`` bars have been seen."""

    def __init__(self, period: int = ADX_PERIOD):
        self.period = _require_period(period, "ADX")
        self._prev: Bar | None = None
        self._tr_sum = 0.0
        self._plus_sum = 0.0
        self._minus_sum = 0.0
        self._moves = 0
        self._smoothed_tr: Optional[float] = None
        self._smoothed_plus: Optional[float] = None
        self._smoothed_minus: Optional[float] = None
        self._dx_seed: list[float] = []
        self.plus_di: Optional[float] = None
        self.minus_di: Optional[float] = None
        self.value: Optional[float] = None

    def _wilder(self, previous: float, current: float) -> float:
        return (previous * (self.period - 1) + current) / self.period

    def update(self, bar: Bar) -> Optional[float]:
        prev = self._prev
        self._prev = bar
        if prev is None:
            return self.value

        high, low = float(bar.high), float(bar.low)
        up_move = high - float(prev.high)
        down_move = float(prev.low) - low
        plus_dm = up_move if up_move > down_move and up_move > 0 else 0.0
        minus_dm = down_move if down_move > up_move and down_move > 0 else 0.0
        true_range = max(high - low, abs(high - float(prev.close)), abs(low - float(prev.close)))

        self._moves += 1
        if self._smoothed_tr is None:
            self._tr_sum += true_range
            self._plus_sum += plus_dm
            self._minus_sum += minus_dm
            if self._moves < self.period:
                return self.value
            self._smoothed_tr = self._tr_sum / self.period
            self._smoothed_plus = self._plus_sum / self.period
            self._smoothed_minus = self._minus_sum / self.period
        else:
            self._smoothed_tr = self._wilder(self._smoothed_tr, true_range)
            self._smoothed_plus = self._wilder(self._smoothed_plus, plus_dm)
            self._smoothed_minus = self._wilder(self._smoothed_minus, minus_dm)

        if self._smoothed_tr > 0:
            self.plus_di = 100.0 * self._smoothed_plus / self._smoothed_tr
            self.minus_di = 100.0 * self._smoothed_minus / self._smoothed_tr
        else:
            self.plus_di = 0.0
            self.minus_di = 0.0
        di_sum = self.plus_di + self.minus_di
        dx = 100.0 * abs(self.plus_di - self.minus_di) / di_sum if di_sum > 0 else 0.0

        if self.value is None:
            self._dx_seed.append(dx)
            if len(self._dx_seed) == self.period:
                self.value = sum(self._dx_seed) / self.period
                self._dx_seed.clear()
        else:
            self.value = self._wilder(self.value, dx)
        return self.value


@dataclass(frozen=True)
class IndicatorSnapshot:
    ema: Optional[float] = None
    sma: Optional[float] = None
    vwap: Optional[float] = None
    adx: Optional[float] = None
    plus_di: Optional[float] = None
    minus_di: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ema": self.ema,
            "sma": self.sma,
            "vwap": self.vwap,
            "adx": self.adx,
            "plusDI": self.plus_di,
            "minusDI": self.minus_di,
        }


class IndicatorEngine:
    """One estimator per enabled indicator; owned by a single run."""

    def __init__(self, config: BacktestConfig):
        self.ema = EmaEstimator(config.ema_moving_average) if config.ema_moving_average > 0 else None
        self.sma = SmaEstimator(config.sma_filter) if config.sma_filter > 0 else None
        self.vwap = VwapEstimator() if config.use_vwap else None
        self.adx = AdxEstimator(ADX_PERIOD) if config.adx_threshold > 0 else None
        self.bars_seen = 0

    def update(self, bar: Bar) -> IndicatorSnapshot:
        self.bars_seen += 1
        snapshot = IndicatorSnapshot(
            ema=self.ema.update(bar) if self.ema else None,
            sma=self.sma.update(bar) if self.sma else None,
            vwap=self.vwap.update(bar) if self.vwap else None,
            adx=self.adx.update(bar) if self.adx else None,
            plus_di=self.adx.plus_di if self.adx else None,
            minus_di=self.adx.minus_di if self.adx else None,
        )
        for name, value in (("EMA", snapshot.ema), ("SMA", snapshot.sma), ("VWAP", snapshot.vwap), ("ADX", snapshot.adx)):
            if value is not None and not math.isfinite(value):
                raise ComputationError(f"{name} became non-finite at {bar.timestamp}")
        return snapshot


# ---------------------------------------------------------------------------
# Batch recomputation
# ---------------------------------------------------------------------------


def ema_series(closes: pd.Series, period: int) -> pd.Series:
    """EMA seeded with the SMA of the first ``period`` closes; NaN before that."""
    period = _require_period(period, "EMA")
    values = pd.Series(closes, dtype=float).reset_index(drop=True)
    result = pd.Series(np.nan, index=values.index, dtype=float)
    if len(values) < period:
        return result
    seeded = values.iloc[period - 1:].copy()
    seeded.iloc[0] = values.iloc[:period].mean()
    result.iloc[period - 1:] = seeded.ewm(alpha=2.0 / (period + 1), adjust=False).mean().to_numpy()
    return result


def sma_series(closes: pd.Series, period: int) -> pd.Series:
    period = _require_period(period, "SMA")
    return pd.Series(closes, dtype=float).reset_index(drop=True).rolling(period).mean()


def vwap_series(frame: pd.DataFrame) -> pd.Series:
    """Session VWAP over a frame with timestamp/high/low/close/volume columns."""
    data = frame.reset_index(drop=True)
    session = pd.to_datetime(data["timestamp"]).dt.date
    typical = (data["high"].astype(float) + data["low"].astype(float) + data["close"].astype(float)) / 3.0
    volume = data["volume"].astype(float)
    cum_pv = (typical * volume).groupby(session).cumsum()
    cum_volume = volume.groupby(session).cumsum()
    return (cum_pv / cum_volume.where(cum_volume > 0)).astype(float)


def bars_frame(bars: Iterable[Bar]) -> pd.DataFrame:
    """Columnar view of a bar stream."""
    return pd.DataFrame(
        [
            {
                "timestamp": bar.timestamp,
                "open": bar.open,
                "high": bar.high,
                "low": bar.low,
                "close": bar.close,
                "volume": bar.volume,
                "cvd": bar.cumulative_volume_delta,
            }
            for bar in bars
        ],
        columns=["timestamp", "open", "high", "low", "close", "volume", "cvd"],
    )
