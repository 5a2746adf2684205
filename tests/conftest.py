"""
Pytest fixtures for the futures backtest engine.

Provides synthetic ticks and bars so the engine can be exercised without
market data files.
"""

import sys
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from futures_backtest.config import BacktestConfig  # noqa: E402
from futures_backtest.models import Bar, ExitReason, Side, Tick, TradeRecord  # noqa: E402

SESSION_DAY = date(2024, 3, 5)
SESSION_OPEN = time(6, 30)


# ============================================================================
# Builders
# ============================================================================


def make_config(**overrides) -> BacktestConfig:
    """Config with filters off and a 3-bar CVD window unless overridden."""
    params = {
        "bar_type": "time",
        "bar_size": 1,
        "cvd_look_back_bars": 3,
        "stop_loss": 10.0,
        "take_profit": 20.0,
    }
    params.update(overrides)
    config = BacktestConfig(**params)
    config.validate()
    return config


def make_bar(
    timestamp: datetime,
    open_: float,
    high: float,
    low: float,
    close: float,
    cvd: float = 0.0,
    volume: float = 100.0,
) -> Bar:
    return Bar(
        timestamp=timestamp,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=volume,
        cumulative_volume_delta=cvd,
    )


def bars_from_rows(
    rows: list[tuple[float, float, float, float, float]],
    day: date = SESSION_DAY,
    start: time = SESSION_OPEN,
) -> list[Bar]:
    """Build one-minute bars from (open, high, low, close, cvd) rows."""
    origin = datetime.combine(day, start)
    return [
        make_bar(origin + timedelta(minutes=index), o, h, l, c, cvd)
        for index, (o, h, l, c, cvd) in enumerate(rows)
    ]


def bars_from_closes(
    closes: list[float],
    cvds: Optional[list[float]] = None,
    day: date = SESSION_DAY,
    start: time = SESSION_OPEN,
    wick: float = 0.5,
) -> list[Bar]:
    """Bars whose open is the previous close, with a fixed wick beyond the body."""
    cvds = cvds if cvds is not None else [float(index + 1) for index in range(len(closes))]
    rows = []
    previous = closes[0]
    for close, cvd in zip(closes, cvds):
        open_ = previous
        rows.append((open_, max(open_, close) + wick, min(open_, close) - wick, close, cvd))
        previous = close
    return bars_from_rows(rows, day=day, start=start)


def random_walk_bars(seed: int, days: int = 3, bars_per_day: int = 60, start_price: float = 4000.0) -> list[Bar]:
    """Tick-aligned random-walk bars over consecutive session dates."""
    rng = np.random.default_rng(seed)
    bars: list[Bar] = []
    price = start_price
    cvd = 0.0
    for day_index in range(days):
        origin = datetime.combine(SESSION_DAY + timedelta(days=day_index), SESSION_OPEN)
        for index in range(bars_per_day):
            open_ = price
            close = round((open_ + rng.normal(0.0, 1.5)) * 4) / 4
            high = max(open_, close) + round(abs(rng.normal(0.0, 0.75)) * 4) / 4
            low = min(open_, close) - round(abs(rng.normal(0.0, 0.75)) * 4) / 4
            cvd += float(rng.integers(-40, 60))
            bars.append(
                make_bar(
                    origin + timedelta(minutes=index),
                    open_,
                    high,
                    low,
                    close,
                    cvd=cvd,
                    volume=float(rng.integers(50, 500)),
                )
            )
            price = close
    return bars


def make_ticks(rows: list[tuple[datetime, float, float, float]]) -> list[Tick]:
    return [Tick(timestamp=ts, price=price, volume=volume, delta=delta) for ts, price, volume, delta in rows]


def make_trade(
    net: float,
    exit_time: datetime,
    side: Side = Side.LONG,
    reason: ExitReason = ExitReason.STOP_LOSS,
    points: Optional[float] = None,
    contracts: int = 1,
    commission: float = 2.5,
) -> TradeRecord:
    """ES trade record whose gross is ``net + commission``."""
    gross = net + commission
    return TradeRecord(
        entry_time=exit_time - timedelta(minutes=5),
        entry_price=4000.0,
        exit_time=exit_time,
        exit_price=4000.0 + side.direction * gross / 50.0 / contracts,
        side=side,
        contracts=contracts,
        stop_loss=10.0,
        take_profit=20.0,
        exit_reason=reason,
        profit_loss=gross,
        commission=commission,
        net_profit_loss=net,
        points=points if points is not None else gross / 50.0 / contracts,
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config_factory() -> Callable[..., BacktestConfig]:
    return make_config


@pytest.fixture
def session_day() -> date:
    return SESSION_DAY


@pytest.fixture
def session_origin() -> datetime:
    return datetime.combine(SESSION_DAY, SESSION_OPEN)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(20240305)
