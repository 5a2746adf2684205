"""
Tests for statistics derived from the trade ledger and the report artifacts.

Usage:
    pytest tests/test_reporting.py -v
"""

from datetime import datetime, timedelta
import json
import math
from pathlib import Path

import numpy as np
import pytest

from futures_backtest.models import BacktestResult, DrawdownEvent, ExitReason, Side
from futures_backtest.reporting import (
    avg_win_loss,
    build_statistics,
    consecutive_stats,
    daily_pnl,
    intraday_stats,
    long_short_stats,
    result_json,
    sharpe_ratio,
    write_backtest_artifacts,
)

from conftest import make_trade


def _trades(days: list[list[float]], sides: list[Side] | None = None) -> list:
    trades = []
    index = 0
    for offset, nets in enumerate(days):
        for minute, net in enumerate(nets):
            side = sides[index] if sides else Side.LONG
            exit_time = datetime(2024, 3, 5, 7, 0) + timedelta(days=offset, minutes=minute * 10)
            trades.append(make_trade(net, exit_time, side=side))
            index += 1
    return trades


# ============================================================================
# Per-day figures
# ============================================================================


class TestDailyFigures:
    def test_daily_pnl_in_session_order(self) -> None:
        trades = _trades([[100.0, -300.0, 50.0], [-50.0, -20.0]])
        assert daily_pnl(trades) == {"03/05/2024": -150.0, "03/06/2024": -70.0}

    def test_intraday_extremes_include_flat_start(self) -> None:
        stats = intraday_stats(_trades([[100.0, -300.0, 50.0], [-50.0, -20.0]]))
        assert stats["03/05/2024"] == {"maxHigh": 100.0, "maxLow": -200.0, "finalPnL": -150.0, "trades": 3}
        assert stats["03/06/2024"] == {"maxHigh": 0.0, "maxLow": -70.0, "finalPnL": -70.0, "trades": 2}

    def test_late_exit_keyed_by_its_exit_date(self) -> None:
        """A trade closing after 21:00 input time belongs to the next trading date."""
        late = make_trade(40.0, datetime(2024, 3, 5, 21, 30))
        assert late.exit_date == "03/06/2024"
        assert late.session_date == late.exit_date
        assert daily_pnl([late]) == {late.exit_date: 40.0}
        assert list(intraday_stats([late])) == [late.exit_date]

    def test_empty_ledger(self) -> None:
        assert daily_pnl([]) == {}
        assert intraday_stats([]) == {}


# ============================================================================
# Ratios
# ============================================================================


class TestRatios:
    def test_sharpe_needs_two_sessions(self) -> None:
        assert sharpe_ratio(_trades([[100.0, 50.0]]), 10_000) == 0.0

    def test_sharpe_formula(self) -> None:
        trades = _trades([[100.0], [-50.0], [200.0]])
        balances = np.array([10_000.0, 10_100.0, 10_050.0])
        returns = np.array([100.0, -50.0, 200.0]) / balances
        expected = returns.mean() / returns.std(ddof=1) * math.sqrt(252)
        assert sharpe_ratio(trades, 10_000) == pytest.approx(expected)

    def test_sharpe_flat_returns(self) -> None:
        assert sharpe_ratio(_trades([[0.0], [0.0]]), 10_000) == 0.0

    def test_consecutive(self) -> None:
        stats = consecutive_stats(_trades([[10.0, 20.0, -5.0, -5.0, -5.0, 30.0]]))
        assert stats == {"maxWins": 2, "maxLosses": 3}

    def test_long_short_split(self) -> None:
        trades = _trades([[100.0, -50.0, 30.0]], sides=[Side.LONG, Side.SHORT, Side.SHORT])
        stats = long_short_stats(trades)
        assert stats["longTrades"] == 1 and stats["longWinRate"] == 100.0
        assert stats["shortTrades"] == 2 and stats["shortWins"] == 1 and stats["shortLosses"] == 1
        assert stats["shortAvgProfit"] == -10.0

    def test_avg_win_loss(self) -> None:
        stats = avg_win_loss(_trades([[100.0, 200.0, -50.0]]))
        assert stats["avgWin"] == 150.0
        assert stats["avgLoss"] == -50.0


# ============================================================================
# Statistics record
# ============================================================================


class TestBuildStatistics:
    def test_fields(self) -> None:
        trades = _trades([[100.0, -300.0], [50.0, -20.0]])
        stats = build_statistics(trades, 10_000, daily_summary={"daysHitStop": 1, "totalDays": 2})

        assert stats["totalTrades"] == 4
        assert stats["winRate"] == 50.0
        assert stats["totalProfit"] == -170.0
        assert stats["averageProfit"] == -42.5
        assert stats["closedTradeMaxDrawdown"] == 300.0
        assert stats["maxDrawdown"] == 0.0
        assert stats["profitFactor"] == pytest.approx(150.0 / 320.0)
        assert stats["daysHitStop"] == 1
        assert stats["daysHitTarget"] == 0
        assert stats["totalTradingDays"] == 2
        assert stats["dailyPnL"] == {"03/05/2024": -200.0, "03/06/2024": 30.0}

    def test_no_losses_has_no_profit_factor(self) -> None:
        stats = build_statistics(_trades([[10.0, 20.0]]), 10_000)
        assert stats["profitFactor"] is None

    def test_max_drawdown_comes_from_events(self) -> None:
        trades = _trades([[100.0, -300.0]])
        events = [
            DrawdownEvent(datetime(2024, 3, 5, 7, 0), datetime(2024, 3, 5, 7, 5), 10_000.0, 9_624.5, drawdown_amount=375.5),
            DrawdownEvent(datetime(2024, 3, 5, 7, 10), datetime(2024, 3, 5, 7, 20), 10_100.0, 9_800.0, drawdown_amount=300.0),
        ]
        stats = build_statistics(trades, 10_000, drawdown_events=events)
        assert stats["maxDrawdown"] == 375.5
        assert stats["closedTradeMaxDrawdown"] == 300.0

    def test_empty(self) -> None:
        stats = build_statistics([], 10_000)
        assert stats["totalTrades"] == 0
        assert stats["winRate"] == 0.0
        assert stats["sharpeRatio"] == 0.0
        assert stats["maxDrawdown"] == 0.0
        assert stats["totalTradingDays"] == 0


# ============================================================================
# Artifacts
# ============================================================================


@pytest.fixture
def result() -> BacktestResult:
    trades = _trades([[997.5, -502.5]])
    return BacktestResult(
        count=12,
        logs=["Starting backtest", "Backtest complete. Processed 12 bars."],
        statistics=build_statistics(trades, 50_000),
        trades=trades,
        intraday_stats=intraday_stats(trades),
        equity_curve=[],
        drawdown_events=[],
        config={"instrument": "ES", "stopLoss": 10.0, "takeProfit": 20.0},
    )


class TestArtifacts:
    def test_result_json_is_stable(self, result: BacktestResult) -> None:
        first = result_json(result)
        assert first == result_json(result)
        payload = json.loads(first)
        assert list(payload) == [
            "count",
            "logs",
            "statistics",
            "trades",
            "intradayStats",
            "equityCurve",
            "drawdownEvents",
        ]
        assert payload["trades"][0]["exitReason"] == ExitReason.STOP_LOSS.value
        assert payload["trades"][0]["sessionDate"] == "03/05/2024"

    def test_write_artifacts(self, result: BacktestResult, tmp_path: Path) -> None:
        artifacts = write_backtest_artifacts(result, tmp_path / "run")
        paths = artifacts["paths"]
        for key in ("result_json", "trades_csv", "equity_curve_csv", "drawdown_events_csv", "run_config_json", "report_md"):
            assert Path(paths[key]).exists(), key
        assert artifacts["summary"]["totalTrades"] == 2
        assert json.loads(Path(paths["run_config_json"]).read_text(encoding="utf-8"))["instrument"] == "ES"
        report = Path(paths["report_md"]).read_text(encoding="utf-8")
        assert "# CVD Futures Backtest Report" in report
        assert "| 03/05/2024 |" in report

    def test_rerender_from_payload(self, result: BacktestResult, tmp_path: Path) -> None:
        payload = json.loads(result_json(result))
        artifacts = write_backtest_artifacts(payload, tmp_path / "again", config=result.config)
        assert artifacts["summary"] == payload["statistics"]
