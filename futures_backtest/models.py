"""Data models shared across the bar, simulation, and reporting layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
import math
from typing import Any, Optional

from core.market_metadata import format_display_date, format_display_timestamp, session_date_of


def iso_local(value: Any) -> Optional[str]:
    """Serialize datetime-like values to ISO8601 without a zone suffix."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    return str(value)


def finite_or_none(value: float | None) -> float | None:
    """Map NaN/inf to None so the result stays valid JSON."""
    if value is None:
        return None
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        return None
    return number


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def direction(self) -> int:
        return 1 if self is Side.LONG else -1


class Signal(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NONE = "NONE"

    def to_side(self) -> Side | None:
        if self is Signal.LONG:
            return Side.LONG
        if self is Signal.SHORT:
            return Side.SHORT
        return None


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"
    END_OF_SESSION = "END_OF_SESSION"
    DAILY_LIMIT = "DAILY_LIMIT"


@dataclass(frozen=True)
class Tick:
    """One trade print; delta is signed volume (buys positive)."""

    timestamp: datetime
    price: float
    volume: float = 0.0
    delta: float = 0.0


@dataclass(frozen=True)
class Bar:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    cumulative_volume_delta: float
    end_time: datetime | None = None
    tick_count: int = 0

    @property
    def session_date(self) -> date:
        return session_date_of(self.timestamp)

    @property
    def close_time(self) -> datetime:
        return self.end_time or self.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": iso_local(self.timestamp),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": float(self.volume),
            "cumulativeVolumeDelta": float(self.cumulative_volume_delta),
            "endTime": iso_local(self.end_time),
            "tickCount": int(self.tick_count),
        }


@dataclass
class Position:
    """The single open position of a run; mutated only by the simulator."""

    side: Side
    entry_price: float
    entry_time: datetime
    contracts: int
    stop_price: float
    target_price: float
    initial_stop_price: float
    max_favorable_points: float = 0.0
    breakeven_armed: bool = False
    trailing: bool = False

    @property
    def stop_moved(self) -> bool:
        return self.breakeven_armed or self.trailing

    def points_at(self, price: float) -> float:
        return (float(price) - self.entry_price) * self.side.direction


@dataclass(frozen=True)
class TradeRecord:
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    side: Side
    contracts: int
    stop_loss: float
    take_profit: float
    exit_reason: ExitReason
    profit_loss: float
    commission: float
    net_profit_loss: float
    points: float = 0.0

    @property
    def session_date(self) -> str:
        return self.exit_date

    @property
    def entry_date(self) -> str:
        return format_display_date(self.entry_time)

    @property
    def exit_date(self) -> str:
        return format_display_date(self.exit_time)

    @property
    def is_win(self) -> bool:
        return self.net_profit_loss > 0

    def to_dict(self) -> dict[str, Any]:
        entry_display = format_display_timestamp(self.entry_time)
        exit_display = format_display_timestamp(self.exit_time)
        return {
            "entryDate": self.entry_date,
            "entryTime": entry_display.split(" ", 1)[1],
            "entryPrice": float(self.entry_price),
            "exitDate": self.exit_date,
            "exitTime": exit_display.split(" ", 1)[1],
            "exitPrice": float(self.exit_price),
            "type": self.side.value,
            "contracts": int(self.contracts),
            "stopLoss": float(self.stop_loss),
            "takeProfit": float(self.take_profit),
            "exitReason": self.exit_reason.value,
            "profitLoss": float(self.profit_loss),
            "commission": float(self.commission),
            "netProfitLoss": float(self.net_profit_loss),
            "points": float(self.points),
            "sessionDate": self.session_date,
            "entryTimestamp": entry_display,
            "exitTimestamp": exit_display,
        }


@dataclass
class DailyState:
    date: str
    cumulative_pnl: float = 0.0
    trades: int = 0
    trading_halted: bool = False
    halt_reason: str | None = None
    hit_daily_stop: bool = False
    hit_daily_target: bool = False


@dataclass
class AccountState:
    balance: float
    equity: float
    high_water_mark: float
    current_drawdown: float = 0.0
    current_drawdown_percent: float = 0.0


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    balance: float
    equity: float
    drawdown_percent: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_display_timestamp(self.timestamp),
            "balance": float(self.balance),
            "equity": float(self.equity),
            "drawdownPercent": float(self.drawdown_percent),
        }


@dataclass
class DrawdownEvent:
    start_time: datetime
    end_time: datetime
    start_balance: float
    lowest_balance: float
    drawdown_amount: float = 0.0
    drawdown_percent: float = 0.0
    duration: int = 0
    recovered: bool = False

    @property
    def start_date(self) -> str:
        return format_display_date(self.start_time)

    @property
    def end_date(self) -> str:
        return format_display_date(self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startDate": self.start_date,
            "endDate": self.end_date,
            "startBalance": float(self.start_balance),
            "lowestBalance": float(self.lowest_balance),
            "drawdownAmount": float(self.drawdown_amount),
            "drawdownPercent": float(self.drawdown_percent),
            "duration": int(self.duration),
            "recovered": bool(self.recovered),
        }


@dataclass
class BacktestResult:
    """The record consumed by the dashboard."""

    count: int
    logs: list[str]
    statistics: dict[str, Any]
    trades: list[TradeRecord]
    intraday_stats: dict[str, dict[str, Any]]
    equity_curve: list[EquityPoint]
    drawdown_events: list[DrawdownEvent]
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": int(self.count),
            "logs": list(self.logs),
            "statistics": self.statistics,
            "trades": [trade.to_dict() for trade in self.trades],
            "intradayStats": self.intraday_stats,
            "equityCurve": [point.to_dict() for point in self.equity_curve],
            "drawdownEvents": [event.to_dict() for event in self.drawdown_events],
        }
