"""
Tests for tick-to-bar aggregation, Heikin-Ashi and pre-built bar preparation.

Usage:
    pytest tests/test_bars.py -v
"""

from datetime import datetime, time, timedelta

import numpy as np
import pytest

from futures_backtest.bars import TIEBREAK, BarBuilder, heikin_ashi, prepare_bars
from futures_backtest.config import BacktestConfig
from futures_backtest.errors import ConfigError, DataError
from futures_backtest.models import Bar, Tick

from conftest import bars_from_rows, make_bar, make_config, make_ticks


@pytest.fixture
def sample_ticks(session_origin: datetime) -> list[Tick]:
    s = lambda seconds: session_origin + timedelta(seconds=seconds)  # noqa: E731
    return make_ticks(
        [
            (s(0), 100.0, 1, 1),
            (s(20), 101.0, 2, 2),
            (s(40), 99.0, 1, -1),
            (s(70), 102.0, 3, 3),
            (s(125), 103.0, 1, 1),
        ]
    )


# ============================================================================
# Time bars
# ============================================================================


class TestTimeBars:
    """A time bar opens at its first tick and covers barSize minutes from there."""

    def test_bar_opens_at_first_tick(self, sample_ticks: list[Tick], session_origin: datetime) -> None:
        bars = list(BarBuilder(sample_ticks, make_config(bar_size=1)))

        assert len(bars) == 2
        first, second = bars
        assert first.timestamp == session_origin
        assert (first.open, first.high, first.low, first.close) == (100.0, 101.0, 99.0, 99.0)
        assert first.volume == 4.0
        assert first.tick_count == 3
        assert first.cumulative_volume_delta == 2.0
        assert first.end_time == session_origin + timedelta(seconds=40)

        assert second.timestamp == session_origin + timedelta(seconds=70)
        assert second.tick_count == 2
        assert (second.open, second.close) == (102.0, 103.0)
        assert second.cumulative_volume_delta == 6.0
        assert second.close_time == session_origin + timedelta(seconds=125)

    def test_bars_never_span_dates(self) -> None:
        """The trading date rolls at display-zone midnight, 21:00 input time."""
        ticks = make_ticks(
            [
                (datetime(2024, 3, 5, 20, 59, 30), 100.0, 1, 1),
                (datetime(2024, 3, 5, 21, 0, 10), 101.0, 1, 1),
            ]
        )
        bars = list(BarBuilder(ticks, make_config(bar_size=5)))
        assert [bar.session_date.day for bar in bars] == [5, 6]

    def test_input_midnight_inside_one_trading_date(self) -> None:
        ticks = make_ticks(
            [
                (datetime(2024, 3, 5, 23, 59, 30), 100.0, 1, 1),
                (datetime(2024, 3, 6, 0, 0, 10), 101.0, 1, 1),
            ]
        )
        bars = list(BarBuilder(ticks, make_config(bar_size=5)))
        assert len(bars) == 1
        assert bars[0].session_date.day == 6

    def test_window_is_inclusive(self, sample_ticks: list[Tick]) -> None:
        config = make_config(start_time=time(6, 30, 20), end_time=time(6, 31, 10))
        bars = list(BarBuilder(sample_ticks, config))

        assert len(bars) == 1
        assert bars[0].tick_count == 3
        # CVD only accumulates deltas inside the window.
        assert bars[0].cumulative_volume_delta == 4.0

    def test_out_of_order_ticks_raise(self, sample_ticks: list[Tick]) -> None:
        ticks = [sample_ticks[1], sample_ticks[0]]
        with pytest.raises(DataError):
            list(BarBuilder(ticks, make_config()))

    def test_empty_source(self) -> None:
        assert list(BarBuilder([], make_config())) == []


# ============================================================================
# Tick bars
# ============================================================================


class TestTickBars:
    def test_fixed_tick_count(self, sample_ticks: list[Tick]) -> None:
        bars = list(BarBuilder(sample_ticks, make_config(bar_type="tick", bar_size=2)))

        assert [bar.tick_count for bar in bars] == [2, 2, 1]
        assert [bar.cumulative_volume_delta for bar in bars] == [3.0, 5.0, 6.0]

    def test_shared_timestamps_split_into_bars(self, session_origin: datetime) -> None:
        """Prints sharing one second still close a bar every ``barSize`` ticks."""
        ticks = make_ticks([(session_origin, 100.0 + 0.25 * index, 1, 1) for index in range(4)])
        bars = list(BarBuilder(ticks, make_config(bar_type="tick", bar_size=2)))

        assert [bar.tick_count for bar in bars] == [2, 2]
        assert bars[0].timestamp == session_origin
        assert bars[1].timestamp == session_origin + TIEBREAK
        assert all(bar.close_time >= bar.timestamp for bar in bars)
        assert (bars[1].open, bars[1].close) == (100.5, 100.75)

    def test_tiebreak_keeps_opens_increasing(self, session_origin: datetime) -> None:
        ticks = make_ticks(
            [(session_origin, 100.0, 1, 1)] * 3 + [(session_origin + timedelta(seconds=1), 100.25, 1, 1)]
        )
        bars = list(BarBuilder(ticks, make_config(bar_type="tick", bar_size=1)))

        stamps = [bar.timestamp for bar in bars]
        assert stamps == sorted(set(stamps))
        assert stamps[-1] == session_origin + timedelta(seconds=1)


# ============================================================================
# Construction and replay
# ============================================================================


class TestBuilderContract:
    def test_rejects_non_positive_bar_size(self, sample_ticks: list[Tick]) -> None:
        with pytest.raises(ConfigError):
            BarBuilder(sample_ticks, BacktestConfig(bar_size=0))

    def test_rejects_inverted_time_window(self, sample_ticks: list[Tick]) -> None:
        config = BacktestConfig(start_time=time(13, 0), end_time=time(6, 30))
        with pytest.raises(ConfigError):
            BarBuilder(sample_ticks, config)

    def test_callable_source_is_restartable(self, sample_ticks: list[Tick]) -> None:
        calls = []

        def source():
            calls.append(1)
            return iter(sample_ticks)

        builder = BarBuilder(source, make_config())
        assert list(builder) == list(builder)
        assert len(calls) == 2

    def test_random_ticks_give_ordered_bars(self, rng: np.random.Generator, session_origin: datetime) -> None:
        """Bars come out strictly increasing and inside the window."""
        offsets = np.cumsum(rng.integers(1, 30, size=500))
        ticks = [
            Tick(
                timestamp=session_origin + timedelta(seconds=int(offset)),
                price=4000.0 + float(rng.normal(0, 2)),
                volume=float(rng.integers(1, 10)),
                delta=float(rng.integers(-5, 6)),
            )
            for offset in offsets
        ]
        config = make_config(bar_size=3, start_time=time(6, 35), end_time=time(8, 0))
        bars = list(BarBuilder(ticks, config))

        assert bars
        stamps = [bar.timestamp for bar in bars]
        assert stamps == sorted(set(stamps))
        assert all(config.in_window(bar.timestamp) and config.in_window(bar.close_time) for bar in bars)
        assert sum(bar.tick_count for bar in bars) == sum(1 for tick in ticks if config.in_window(tick.timestamp))


# ============================================================================
# Heikin-Ashi
# ============================================================================


class TestHeikinAshi:
    def test_transform(self, session_origin: datetime) -> None:
        raw = [
            make_bar(session_origin, 100.0, 102.0, 99.0, 101.0, cvd=1),
            make_bar(session_origin + timedelta(minutes=1), 101.0, 104.0, 100.0, 103.0, cvd=2),
        ]
        first, second = list(heikin_ashi(raw))

        assert first.close == pytest.approx(100.5)
        assert first.open == pytest.approx(100.5)
        assert (first.high, first.low) == (102.0, 99.0)
        assert second.close == pytest.approx(102.0)
        assert second.open == pytest.approx(100.5)
        assert (second.high, second.low) == (104.0, 100.0)
        assert second.cumulative_volume_delta == 2

    def test_builder_applies_candle_type(self, sample_ticks: list[Tick]) -> None:
        traditional = list(BarBuilder(sample_ticks, make_config()))
        smoothed = list(BarBuilder(sample_ticks, make_config(candle_type="heikinashi")))
        assert smoothed == list(heikin_ashi(traditional))


# ============================================================================
# Pre-built bars
# ============================================================================


class TestPrepareBars:
    def test_filters_to_window(self) -> None:
        bars = bars_from_rows([(100, 101, 99, 100, i) for i in range(10)])
        config = make_config(start_time=time(6, 32), end_time=time(6, 35))
        kept = list(prepare_bars(bars, config))
        assert [bar.timestamp.minute for bar in kept] == [32, 33, 34, 35]

    def test_rejects_unordered_bars(self) -> None:
        bars = bars_from_rows([(100, 101, 99, 100, i) for i in range(3)])
        with pytest.raises(DataError):
            list(prepare_bars([bars[1], bars[0]], make_config()))

    def test_heikin_ashi_on_prebuilt(self) -> None:
        bars: list[Bar] = bars_from_rows([(100, 102, 99, 101, 1), (101, 104, 100, 103, 2)])
        prepared = list(prepare_bars(bars, make_config(candle_type="heikinashi")))
        assert prepared[1].open == pytest.approx(100.5)
