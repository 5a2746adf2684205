"""Single-position trade simulator: entries, bracket exits, trailing stop, P&L."""

from __future__ import annotations

from datetime import datetime
import logging

from core.market_metadata import ContractSpec, round_to_tick

from .config import BacktestConfig
from .errors import ComputationError
from .models import Bar, ExitReason, Position, Side, TradeRecord

logger = logging.getLogger(__name__)


class TradeSimulator:
    """FLAT -> OPEN -> CLOSED state machine for one run.

    Exits on a bar are judged against the stop as it stood when the bar
    opened; trailing adjustments from that bar apply from the next bar on.
    """

    def __init__(self, config: BacktestConfig, contract: ContractSpec | None = None):
        self.config = config
        self.contract = contract or config.contract
        self.position: Position | None = None

    @property
    def is_open(self) -> bool:
        return self.position is not None

    def _round(self, price: float) -> float:
        return round_to_tick(price, self.contract.tick_size)

    def open_position(self, side: Side, price: float, when: datetime) -> Position:
        if self.position is not None:
            raise ComputationError("Cannot open a position while another is open")
        contracts = int(self.config.contract_size)
        if contracts < 1:
            raise ComputationError(f"Contract count must be positive, got {contracts}")

        entry = self._round(price)
        direction = side.direction
        stop = self._round(entry - direction * self.config.stop_loss)
        target = self._round(entry + direction * self.config.take_profit)
        self.position = Position(
            side=side,
            entry_price=entry,
            entry_time=when,
            contracts=contracts,
            stop_price=stop,
            target_price=target,
            initial_stop_price=stop,
        )
        return self.position

    def unrealized_pnl(self, price: float) -> float:
        if self.position is None:
            return 0.0
        return self._gross(self.position, self._round(price))

    def _gross(self, position: Position, exit_price: float) -> float:
        ticks = round(position.points_at(exit_price) / self.contract.tick_size)
        return ticks * self.contract.tick_value * position.contracts

    def _gap_fill(self, level: float, open_price: float) -> float:
        cap = self.contract.max_slippage_ticks * self.contract.tick_size
        if open_price < level:
            return self._round(max(open_price, level - cap))
        return self._round(min(open_price, level + cap))

    def _resolve_exit(self, position: Position, bar: Bar) -> tuple[ExitReason, float] | None:
        stop, target = position.stop_price, position.target_price
        open_price = float(bar.open)
        if position.side is Side.LONG:
            stop_hit = float(bar.low) <= stop
            target_hit = float(bar.high) >= target
            open_past_stop = open_price <= stop
            open_past_target = open_price >= target
        else:
            stop_hit = float(bar.high) >= stop
            target_hit = float(bar.low) <= target
            open_past_stop = open_price >= stop
            open_past_target = open_price <= target

        if stop_hit and target_hit:
            if open_past_stop:
                stop_first = True
            elif open_past_target:
                stop_first = False
            else:
                stop_first = abs(open_price - stop) <= abs(target - open_price)
        elif stop_hit or target_hit:
            stop_first = stop_hit
        else:
            return None

        if stop_first:
            reason = ExitReason.TRAILING_STOP if position.stop_moved else ExitReason.STOP_LOSS
            price = self._gap_fill(stop, open_price) if open_past_stop else stop
        else:
            reason = ExitReason.TAKE_PROFIT
            price = self._gap_fill(target, open_price) if open_past_target else target
        return reason, price

    def _trail(self, position: Position, bar: Bar) -> None:
        direction = position.side.direction
        favorable = float(bar.high) if position.side is Side.LONG else float(bar.low)
        position.max_favorable_points = max(position.max_favorable_points, position.points_at(favorable))
        if position.max_favorable_points < self.config.breakeven_trigger:
            return

        if not position.breakeven_armed:
            position.breakeven_armed = True
            if position.points_at(position.entry_price) > position.points_at(position.stop_price):
                position.stop_price = position.entry_price
                logger.debug("Stop moved to breakeven %.2f", position.entry_price)

        # Trailing starts one trail distance beyond the breakeven trigger.
        if position.max_favorable_points < self.config.breakeven_trigger + self.config.trail_distance:
            return

        candidate = self._round(
            position.entry_price + direction * (position.max_favorable_points - self.config.trail_distance)
        )
        if position.points_at(candidate) > position.points_at(position.stop_price):
            position.stop_price = candidate
            position.trailing = True
            logger.debug("Trailing stop tightened to %.2f", candidate)

    def update(self, bar: Bar) -> TradeRecord | None:
        """Apply one bar to the open position; return the trade if it closed."""
        position = self.position
        if position is None:
            return None
        stop_before = position.stop_price

        outcome = self._resolve_exit(position, bar)
        if outcome is not None:
            reason, price = outcome
            return self._close(position, price, bar.close_time, reason)

        if self.config.use_trailing_stop:
            self._trail(position, bar)
            if position.points_at(position.stop_price) < position.points_at(stop_before):
                raise ComputationError(f"Stop loosened from {stop_before} to {position.stop_price}")
        return None

    def force_close(self, bar: Bar, reason: ExitReason) -> TradeRecord | None:
        if self.position is None:
            return None
        return self._close(self.position, self._round(bar.close), bar.close_time, reason)

    def _close(self, position: Position, price: float, when: datetime, reason: ExitReason) -> TradeRecord:
        if when < position.entry_time:
            raise ComputationError(f"Exit time {when} precedes entry time {position.entry_time}")
        gross = self._gross(position, price)
        commission = self.contract.commission_per_contract * position.contracts
        record = TradeRecord(
            entry_time=position.entry_time,
            entry_price=position.entry_price,
            exit_time=when,
            exit_price=price,
            side=position.side,
            contracts=position.contracts,
            stop_loss=float(self.config.stop_loss),
            take_profit=float(self.config.take_profit),
            exit_reason=reason,
            profit_loss=round(gross, 2),
            commission=round(commission, 2),
            net_profit_loss=round(gross - commission, 2),
            points=round(position.points_at(price), 10),
        )
        self.position = None
        return record
