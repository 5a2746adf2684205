"""
Tests for the post-run trade P&L sanity check.

Usage:
    pytest tests/test_validation.py -v
"""

from datetime import datetime, timedelta

import pytest

from core.market_metadata import CONTRACT_SPECS
from futures_backtest.models import ExitReason
from futures_backtest.validation import expected_pnl, validate_trades

from conftest import make_trade

ES = CONTRACT_SPECS["ES"]
T0 = datetime(2024, 3, 5, 7, 0)


class TestExpectedPnl:
    def test_bracket_outcomes(self) -> None:
        assert expected_pnl(20, 1, ES, True) == 997.5
        assert expected_pnl(10, 1, ES, False) == -502.5
        assert expected_pnl(10, 3, ES, False) == -1507.5


class TestValidateTrades:
    def test_clean_ledger(self) -> None:
        trades = [
            make_trade(-502.5, T0, reason=ExitReason.STOP_LOSS),
            make_trade(997.5, T0 + timedelta(minutes=5), reason=ExitReason.TAKE_PROFIT),
            make_trade(-515.0, T0 + timedelta(minutes=9), reason=ExitReason.STOP_LOSS),
        ]
        report = validate_trades(trades, 10, 20, 1, ES)

        assert report.checked == 3
        assert report.anomalies == []
        lines = report.summary_lines()
        assert lines[0] == "Trade validation summary:"
        assert "All 3 bracket exits within expected P&L ranges" in lines[-1]

    def test_forced_exits_are_not_checked(self) -> None:
        trades = [
            make_trade(37.5, T0, reason=ExitReason.END_OF_SESSION),
            make_trade(-152.5, T0 + timedelta(minutes=3), reason=ExitReason.DAILY_LIMIT),
        ]
        assert validate_trades(trades, 10, 20, 1, ES).checked == 0

    def test_flags_extreme_anomaly(self) -> None:
        trades = [
            make_trade(-502.5, T0),
            make_trade(-1202.5, T0 + timedelta(minutes=5)),
            make_trade(-600.0, T0 + timedelta(minutes=9)),
        ]
        report = validate_trades(trades, 10, 20, 1, ES)

        assert len(report.anomalies) == 2
        assert report.extreme_count == 1
        extreme = next(item for item in report.anomalies if item.is_extreme)
        assert extreme.index == 1
        assert extreme.deviation == pytest.approx(700.0)
        lines = report.summary_lines()
        assert "Found 2 trades with unexpected P&L (1 extreme)" in lines[3]
        assert lines[4].startswith("  EXTREME ANOMALY - Trade #2: 24.00 points")
