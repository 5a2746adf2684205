"""Per-session daily loss/profit limits."""

from __future__ import annotations

from datetime import date
import logging
from typing import Any, Callable, Optional

from core.market_metadata import format_date

from .config import BacktestConfig
from .models import DailyState, TradeRecord

logger = logging.getLogger(__name__)

HALT_LINE = "STOPPING TRADING FOR THE DAY - Daily limit reached"


class DailyRiskGovernor:
    """Tracks realized P&L per session date and halts new entries at the limits.

    A limit of 0 disables it. Open positions keep their own exits unless
    ``flattenOnDailyLimit`` is set, in which case the engine asks
    :meth:`should_flatten` at every bar close.
    """

    def __init__(self, config: BacktestConfig, emit: Optional[Callable[[str], None]] = None):
        self.max_daily_loss = float(config.max_daily_loss)
        self.max_daily_profit = float(config.max_daily_profit)
        self.flatten_on_limit = bool(config.flatten_on_daily_limit)
        self._emit = emit or logger.info
        self.days: dict[str, DailyState] = {}
        self.current: DailyState | None = None

    def begin_day(self, session_date: date) -> DailyState:
        key = format_date(session_date)
        if self.current is not None and self.current.date == key:
            return self.current
        self.current = self.days.setdefault(key, DailyState(date=key))
        return self.current

    def can_enter(self) -> bool:
        return self.current is not None and not self.current.trading_halted

    def _breach(self, pnl: float) -> str | None:
        if self.max_daily_loss > 0 and pnl <= -self.max_daily_loss:
            return "loss"
        if self.max_daily_profit > 0 and pnl >= self.max_daily_profit:
            return "profit"
        return None

    def _halt(self, state: DailyState, kind: str, pnl: float) -> None:
        if state.trading_halted:
            return
        state.trading_halted = True
        if kind == "loss":
            state.hit_daily_stop = True
            state.halt_reason = f"Daily stop loss hit on {state.date}"
        else:
            state.hit_daily_target = True
            state.halt_reason = f"Daily profit target hit on {state.date}"
        self._emit(f"{state.halt_reason}: ${pnl:.2f}")
        self._emit(HALT_LINE)

    def record_trade(self, trade: TradeRecord) -> DailyState:
        state = self.current
        if state is None or state.date != trade.session_date:
            state = self.days.setdefault(trade.session_date, DailyState(date=trade.session_date))
        state.cumulative_pnl = round(state.cumulative_pnl + trade.net_profit_loss, 2)
        state.trades += 1
        kind = self._breach(state.cumulative_pnl)
        if kind is not None:
            self._halt(state, kind, state.cumulative_pnl)
        return state

    def should_flatten(self, unrealized_pnl: float) -> bool:
        """Realized plus open P&L breaches a limit; halts the day when it does."""
        state = self.current
        if not self.flatten_on_limit or state is None or state.trading_halted:
            return False
        exposure = state.cumulative_pnl + unrealized_pnl
        kind = self._breach(exposure)
        if kind is None:
            return False
        self._halt(state, kind, exposure)
        return True

    def summary(self) -> dict[str, Any]:
        states = list(self.days.values())
        pnls = [state.cumulative_pnl for state in states]
        return {
            "totalDays": len(states),
            "profitableDays": sum(1 for pnl in pnls if pnl > 0),
            "losingDays": sum(1 for pnl in pnls if pnl < 0),
            "daysHitStop": sum(1 for state in states if state.hit_daily_stop),
            "daysHitTarget": sum(1 for state in states if state.hit_daily_target),
            "bestDay": max(pnls) if pnls else 0.0,
            "worstDay": min(pnls) if pnls else 0.0,
            "totalPnL": round(sum(pnls), 2),
        }
