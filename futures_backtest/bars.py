"""Tick-to-bar aggregation and the Heikin-Ashi transform."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Callable, Iterable, Iterator, Union

from core.market_metadata import session_date_of

from .config import BacktestConfig
from .errors import ConfigError, DataError
from .models import Bar, Tick

logger = logging.getLogger(__name__)

TickSource = Union[Iterable[Tick], Callable[[], Iterable[Tick]]]

# Offset applied to a tick bar that opens on the previous bar's timestamp.
TIEBREAK = timedelta(microseconds=1)


class _BarAccumulator:
    __slots__ = ("timestamp", "open", "high", "low", "close", "volume", "cvd", "end_time", "tick_count")

    def __init__(self, tick: Tick, cvd: float, opened_at: datetime | None = None):
        self.timestamp = opened_at or tick.timestamp
        self.open = float(tick.price)
        self.high = float(tick.price)
        self.low = float(tick.price)
        self.close = float(tick.price)
        self.volume = float(tick.volume)
        self.cvd = cvd
        self.end_time = self.timestamp
        self.tick_count = 1

    def add(self, tick: Tick, cvd: float) -> None:
        price = float(tick.price)
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += float(tick.volume)
        self.cvd = cvd
        self.end_time = max(tick.timestamp, self.timestamp)
        self.tick_count += 1

    def to_bar(self) -> Bar:
        return Bar(
            timestamp=self.timestamp,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            cumulative_volume_delta=self.cvd,
            end_time=self.end_time,
            tick_count=self.tick_count,
        )


class BarBuilder:
    """Restartable, lazy bar stream over a tick source.

    Each ``iter()`` replays the source from the start, so a callable source is
    invoked once per iteration and a plain sequence is simply re-read.
    """

    def __init__(self, source: TickSource, config: BacktestConfig):
        if config.bar_size <= 0:
            raise ConfigError("barSize must be greater than 0")
        if config.start_time >= config.end_time:
            raise ConfigError("startTime must be before endTime")
        if config.start_date and config.end_date and config.start_date > config.end_date:
            raise ConfigError("startDate is after endDate")
        self.source = source
        self.config = config

    def _ticks(self) -> Iterable[Tick]:
        if callable(self.source):
            return self.source()
        return self.source

    def __iter__(self) -> Iterator[Bar]:
        raw = self._aggregate()
        if self.config.use_heikin_ashi:
            return heikin_ashi(raw)
        return raw

    def _aggregate(self) -> Iterator[Bar]:
        time_bars = self.config.bar_type == "time"
        span = timedelta(minutes=self.config.bar_size)
        cvd = 0.0
        emitted = 0
        current: _BarAccumulator | None = None
        last_ts: datetime | None = None
        last_bar_ts: datetime | None = None

        for tick in self._ticks():
            if last_ts is not None and tick.timestamp < last_ts:
                raise DataError(f"Tick out of order: {tick.timestamp} arrived after {last_ts}")
            last_ts = tick.timestamp
            if not self.config.in_window(tick.timestamp):
                continue

            cvd += float(tick.delta)
            if current is not None:
                same_date = session_date_of(tick.timestamp) == session_date_of(current.timestamp)
                if time_bars:
                    joins = same_date and tick.timestamp < current.timestamp + span
                else:
                    joins = same_date and current.tick_count < self.config.bar_size
                if joins:
                    current.add(tick, cvd)
                    continue
                bar = current.to_bar()
                last_bar_ts = bar.timestamp
                emitted += 1
                yield bar
            opened_at = None
            if last_bar_ts is not None and tick.timestamp <= last_bar_ts:
                # Several prints share a timestamp; keep bar opens strictly increasing.
                opened_at = last_bar_ts + TIEBREAK
            current = _BarAccumulator(tick, cvd, opened_at)

        if current is not None:
            emitted += 1
            yield current.to_bar()
        logger.debug("Aggregated %d %s bars of size %d", emitted, self.config.bar_type, self.config.bar_size)


def heikin_ashi(bars: Iterable[Bar]) -> Iterator[Bar]:
    """Apply the Heikin-Ashi transform to an already aggregated bar stream."""
    prev_open: float | None = None
    prev_close: float | None = None
    for bar in bars:
        ha_close = (bar.open + bar.high + bar.low + bar.close) / 4.0
        if prev_open is None or prev_close is None:
            ha_open = (bar.open + bar.close) / 2.0
        else:
            ha_open = (prev_open + prev_close) / 2.0
        prev_open, prev_close = ha_open, ha_close
        yield Bar(
            timestamp=bar.timestamp,
            open=ha_open,
            high=max(bar.high, ha_open, ha_close),
            low=min(bar.low, ha_open, ha_close),
            close=ha_close,
            volume=bar.volume,
            cumulative_volume_delta=bar.cumulative_volume_delta,
            end_time=bar.end_time,
            tick_count=bar.tick_count,
        )


def prepare_bars(bars: Iterable[Bar], config: BacktestConfig) -> Iterator[Bar]:
    """Window-filter and order-check pre-built bars, then apply the candle type."""

    def _filtered() -> Iterator[Bar]:
        previous: datetime | None = None
        for bar in bars:
            if previous is not None and bar.timestamp <= previous:
                raise DataError(f"Bars must have strictly increasing timestamps: {bar.timestamp} after {previous}")
            previous = bar.timestamp
            if config.in_window(bar.timestamp) and config.in_window(bar.close_time):
                yield bar

    if config.use_heikin_ashi:
        return heikin_ashi(_filtered())
    return _filtered()

