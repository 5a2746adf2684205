"""Post-run sanity check of the trade ledger against bracket expectations."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging

from core.market_metadata import ContractSpec

from .models import ExitReason, TradeRecord

logger = logging.getLogger(__name__)

PNL_TOLERANCE = 50.0
EXTREME_MULTIPLIER = 2.0

# Forced exits close at the bar close, so their P&L has no bracket expectation.
_BRACKET_EXITS = {ExitReason.STOP_LOSS, ExitReason.TAKE_PROFIT}


def expected_pnl(points: float, contracts: int, contract: ContractSpec, is_win: bool) -> float:
    ticks = points / contract.tick_size
    gross = ticks * contract.tick_value * contracts
    commission = contract.commission_per_contract * contracts
    return gross - commission if is_win else -(gross + commission)


@dataclass
class TradeAnomaly:
    index: int
    trade: TradeRecord
    expected_pnl: float
    deviation: float
    is_extreme: bool


@dataclass
class ValidationReport:
    expected_win: float
    expected_loss: float
    checked: int = 0
    anomalies: list[TradeAnomaly] = field(default_factory=list)

    @property
    def extreme_count(self) -> int:
        return sum(1 for item in self.anomalies if item.is_extreme)

    def summary_lines(self) -> list[str]:
        lines = [
            "Trade validation summary:",
            f"  Expected win P&L: ${self.expected_win:.2f}",
            f"  Expected loss P&L: ${self.expected_loss:.2f}",
        ]
        if not self.anomalies:
            lines.append(f"  All {self.checked} bracket exits within expected P&L ranges (+/-${PNL_TOLERANCE:.0f})")
            return lines
        lines.append(f"  Found {len(self.anomalies)} trades with unexpected P&L ({self.extreme_count} extreme)")
        for item in self.anomalies:
            if not item.is_extreme:
                continue
            trade = item.trade
            lines.append(
                f"  EXTREME ANOMALY - Trade #{item.index + 1}: {abs(trade.points):.2f} points, "
                f"P&L: ${trade.net_profit_loss:.2f} (Expected: ${item.expected_pnl:.2f}), "
                f"Exit: {trade.exit_reason.value}"
            )
        return lines


def validate_trades(
    trades: list[TradeRecord],
    stop_loss: float,
    take_profit: float,
    contracts: int,
    contract: ContractSpec,
) -> ValidationReport:
    """Flag static stop/target exits whose net P&L strays from the bracket outcome."""
    report = ValidationReport(
        expected_win=expected_pnl(take_profit, contracts, contract, True),
        expected_loss=expected_pnl(stop_loss, contracts, contract, False),
    )
    for index, trade in enumerate(trades):
        if trade.exit_reason not in _BRACKET_EXITS:
            continue
        report.checked += 1
        expected = report.expected_win if trade.is_win else report.expected_loss
        deviation = abs(trade.net_profit_loss - expected)
        if deviation <= PNL_TOLERANCE:
            continue
        is_extreme = abs(trade.net_profit_loss) > abs(expected) * EXTREME_MULTIPLIER
        report.anomalies.append(TradeAnomaly(index, trade, expected, deviation, is_extreme))
    if report.anomalies:
        logger.warning("Trade validation found %d anomalies", len(report.anomalies))
    return report
