"""Running balance, equity marks, high-water mark and drawdown events."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from core.market_metadata import to_display_time

from .errors import ComputationError
from .models import AccountState, DrawdownEvent, EquityPoint, TradeRecord, finite_or_none

logger = logging.getLogger(__name__)

_LEDGER_TOLERANCE = 1e-6


def _calendar_days(start: datetime, end: datetime) -> int:
    return (to_display_time(end).date() - to_display_time(start).date()).days


class AccountTracker:
    def __init__(self, starting_balance: float):
        if starting_balance <= 0:
            raise ComputationError(f"Starting balance must be positive, got {starting_balance}")
        self.starting_balance = float(starting_balance)
        self.state = AccountState(
            balance=self.starting_balance,
            equity=self.starting_balance,
            high_water_mark=self.starting_balance,
        )
        self.equity_curve: list[EquityPoint] = []
        self.drawdown_events: list[DrawdownEvent] = []
        self.lowest_balance = self.starting_balance
        self._open_event: DrawdownEvent | None = None
        self._realized = 0.0
        self._gains = 0.0
        self._losses = 0.0
        self._win_streak = 0
        self._loss_streak = 0
        self.largest_winning_streak = 0
        self.largest_losing_streak = 0
        self._daily: dict[str, dict[str, Any]] = {}

    @property
    def balance(self) -> float:
        return self.state.balance

    def apply_trade(self, trade: TradeRecord) -> float:
        net = float(trade.net_profit_loss)
        day = self._daily.setdefault(
            trade.session_date,
            {"date": trade.session_date, "startBalance": self.state.balance, "trades": 0, "pnl": 0.0},
        )
        self.state.balance += net
        self._realized += net
        if abs(self.state.balance - (self.starting_balance + self._realized)) > _LEDGER_TOLERANCE:
            raise ComputationError("Account balance diverged from the trade ledger")

        day["trades"] += 1
        day["pnl"] = round(day["pnl"] + net, 2)
        day["endBalance"] = self.state.balance
        self.lowest_balance = min(self.lowest_balance, self.state.balance)

        if net > 0:
            self._gains += net
            self._win_streak += 1
            self._loss_streak = 0
        elif net < 0:
            self._losses += net
            self._loss_streak += 1
            self._win_streak = 0
        else:
            self._win_streak = 0
            self._loss_streak = 0
        self.largest_winning_streak = max(self.largest_winning_streak, self._win_streak)
        self.largest_losing_streak = max(self.largest_losing_streak, self._loss_streak)
        return self.state.balance

    def mark(self, timestamp: datetime, unrealized_pnl: float = 0.0) -> EquityPoint:
        """Mark equity at a bar close and roll the drawdown state forward."""
        state = self.state
        equity = state.balance + float(unrealized_pnl)
        state.equity = equity

        event = self._open_event
        if event is not None and equity >= event.start_balance:
            event.end_time = timestamp
            event.recovered = True
            event.duration = _calendar_days(event.start_time, timestamp)
            self._open_event = None
            event = None

        if equity > state.high_water_mark:
            state.high_water_mark = equity

        if equity < state.high_water_mark:
            if event is None:
                event = DrawdownEvent(
                    start_time=timestamp,
                    end_time=timestamp,
                    start_balance=state.high_water_mark,
                    lowest_balance=equity,
                )
                self.drawdown_events.append(event)
                self._open_event = event
            event.lowest_balance = min(event.lowest_balance, equity)
            event.end_time = timestamp
            event.duration = _calendar_days(event.start_time, timestamp)
            event.drawdown_amount = event.start_balance - event.lowest_balance
            event.drawdown_percent = event.drawdown_amount / event.start_balance * 100.0

        state.current_drawdown = state.high_water_mark - equity
        state.current_drawdown_percent = (
            state.current_drawdown / state.high_water_mark * 100.0 if state.high_water_mark > 0 else 0.0
        )
        point = EquityPoint(
            timestamp=timestamp,
            balance=state.balance,
            equity=equity,
            drawdown_percent=state.current_drawdown_percent,
        )
        self.equity_curve.append(point)
        return point

    def daily_balances(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self._daily.values()]

    def summary(self) -> dict[str, Any]:
        events = self.drawdown_events
        amounts = [event.drawdown_amount for event in events]
        percents = [event.drawdown_percent for event in events]
        max_drawdown = max(amounts) if amounts else 0.0
        total_return = self.state.balance - self.starting_balance
        profit_factor = self._gains / abs(self._losses) if self._losses < 0 else None
        return {
            "startingBalance": self.starting_balance,
            "finalBalance": round(self.state.balance, 2),
            "totalReturn": round(total_return, 2),
            "totalReturnPercent": total_return / self.starting_balance * 100.0,
            "maxDrawdown": round(max_drawdown, 2),
            "maxDrawdownPercent": max(percents) if percents else 0.0,
            "maxDrawdownDuration": max((event.duration for event in events), default=0),
            "averageDrawdown": round(sum(amounts) / len(amounts), 2) if amounts else 0.0,
            "averageDrawdownPercent": sum(percents) / len(percents) if percents else 0.0,
            "numberOfDrawdowns": len(events),
            "currentDrawdown": round(self.state.current_drawdown, 2),
            "currentDrawdownPercent": self.state.current_drawdown_percent,
            "profitFactor": finite_or_none(profit_factor),
            "returnToDrawdownRatio": finite_or_none(total_return / max_drawdown) if max_drawdown > 0 else None,
            "highWaterMark": round(self.state.high_water_mark, 2),
            "lowestBalance": round(self.lowest_balance, 2),
            "largestWinningStreak": self.largest_winning_streak,
            "largestLosingStreak": self.largest_losing_streak,
            "dailyBalances": self.daily_balances(),
        }
