"""Statistics and report artifacts derived from a trade ledger."""

from __future__ import annotations

from enum import Enum
import json
import math
from pathlib import Path
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

from .models import BacktestResult, DrawdownEvent, TradeRecord, finite_or_none

TRADING_DAYS_PER_YEAR = 252

_TRADE_COLUMNS = ["sessionDate", "type", "netProfitLoss", "points", "exitReason"]


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return finite_or_none(float(value))
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def _trades_frame(trades: Iterable[TradeRecord]) -> pd.DataFrame:
    rows = [
        {
            "sessionDate": trade.session_date,
            "type": trade.side.value,
            "netProfitLoss": float(trade.net_profit_loss),
            "points": float(trade.points),
            "exitReason": trade.exit_reason.value,
        }
        for trade in trades
    ]
    return pd.DataFrame(rows, columns=_TRADE_COLUMNS)


def _money(value: float) -> float:
    return round(float(value), 2)


def _profit_factor(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    wins = float(series[series > 0].sum())
    losses = float(series[series < 0].sum())
    if losses == 0:
        return None
    return wins / abs(losses)


def _max_drawdown(series: pd.Series, starting_balance: float) -> float:
    if series.empty:
        return 0.0
    balance = starting_balance + series.astype(float).cumsum()
    peak = balance.cummax().clip(lower=starting_balance)
    return _money((peak - balance).max())


def _win_rate(series: pd.Series) -> float:
    if series.empty:
        return 0.0
    return float((series > 0).sum()) / len(series) * 100.0


def daily_pnl(trades: Iterable[TradeRecord]) -> dict[str, float]:
    frame = _trades_frame(trades)
    if frame.empty:
        return {}
    grouped = frame.groupby("sessionDate", sort=False)["netProfitLoss"].sum()
    return {str(key): _money(value) for key, value in grouped.items()}


def intraday_stats(trades: Iterable[TradeRecord]) -> dict[str, dict[str, Any]]:
    frame = _trades_frame(trades)
    stats: dict[str, dict[str, Any]] = {}
    for key, group in frame.groupby("sessionDate", sort=False):
        running = group["netProfitLoss"].cumsum()
        stats[str(key)] = {
            "maxHigh": _money(max(0.0, float(running.max()))),
            "maxLow": _money(min(0.0, float(running.min()))),
            "finalPnL": _money(running.iloc[-1]),
            "trades": int(len(group)),
        }
    return stats


def sharpe_ratio(trades: Iterable[TradeRecord], starting_balance: float) -> float:
    """Annualized Sharpe of per-session returns; 0.0 when it cannot be estimated."""
    pnl = pd.Series(daily_pnl(trades), dtype=float)
    if len(pnl) < 2:
        return 0.0
    opening_balance = starting_balance + pnl.cumsum().shift(1, fill_value=0.0)
    returns = pnl / opening_balance
    deviation = float(returns.std(ddof=1))
    if not math.isfinite(deviation) or deviation == 0:
        return 0.0
    return float(returns.mean()) / deviation * math.sqrt(TRADING_DAYS_PER_YEAR)


def consecutive_stats(trades: Iterable[TradeRecord]) -> dict[str, int]:
    max_wins = max_losses = wins = losses = 0
    for trade in trades:
        if trade.net_profit_loss > 0:
            wins, losses = wins + 1, 0
        elif trade.net_profit_loss < 0:
            wins, losses = 0, losses + 1
        else:
            wins = losses = 0
        max_wins = max(max_wins, wins)
        max_losses = max(max_losses, losses)
    return {"maxWins": max_wins, "maxLosses": max_losses}


def long_short_stats(trades: Iterable[TradeRecord]) -> dict[str, Any]:
    frame = _trades_frame(trades)
    payload: dict[str, Any] = {}
    for side, prefix in (("LONG", "long"), ("SHORT", "short")):
        pnl = frame.loc[frame["type"] == side, "netProfitLoss"]
        payload[f"{prefix}Trades"] = int(len(pnl))
        payload[f"{prefix}Wins"] = int((pnl > 0).sum())
        payload[f"{prefix}Losses"] = int((pnl < 0).sum())
        payload[f"{prefix}WinRate"] = _win_rate(pnl)
        payload[f"{prefix}AvgProfit"] = _money(pnl.mean()) if not pnl.empty else 0.0
    return payload


def avg_win_loss(trades: Iterable[TradeRecord]) -> dict[str, float]:
    frame = _trades_frame(trades)
    wins = frame[frame["netProfitLoss"] > 0]
    losses = frame[frame["netProfitLoss"] < 0]
    return {
        "avgWin": _money(wins["netProfitLoss"].mean()) if not wins.empty else 0.0,
        "avgLoss": _money(losses["netProfitLoss"].mean()) if not losses.empty else 0.0,
        "avgWinPoints": float(wins["points"].mean()) if not wins.empty else 0.0,
        "avgLossPoints": float(losses["points"].mean()) if not losses.empty else 0.0,
    }


def build_statistics(
    trades: list[TradeRecord],
    starting_balance: float,
    account_stats: Optional[dict[str, Any]] = None,
    daily_summary: Optional[dict[str, Any]] = None,
    drawdown_events: Optional[Iterable[DrawdownEvent]] = None,
) -> dict[str, Any]:
    """Trade-ledger statistics plus the equity drawdown figure.

    ``maxDrawdown`` is the largest of ``drawdown_events``; every other field
    except ``accountStats`` is re-derivable from ``trades`` alone.
    """
    frame = _trades_frame(trades)
    pnl = frame["netProfitLoss"]
    daily = daily_summary or {}
    return {
        "totalTrades": int(len(frame)),
        "winRate": _win_rate(pnl),
        "averageProfit": _money(pnl.mean()) if not pnl.empty else 0.0,
        "totalProfit": _money(pnl.sum()),
        "sharpeRatio": sharpe_ratio(trades, starting_balance),
        "dailyPnL": daily_pnl(trades),
        "maxDrawdown": _money(max((event.drawdown_amount for event in drawdown_events or ()), default=0.0)),
        "closedTradeMaxDrawdown": _max_drawdown(pnl, starting_balance),
        "profitFactor": finite_or_none(_profit_factor(pnl)),
        "consecutiveStats": consecutive_stats(trades),
        "accountStats": dict(account_stats or {}),
        "longShortStats": long_short_stats(trades),
        "avgWinLoss": avg_win_loss(trades),
        "daysHitStop": int(daily.get("daysHitStop", 0)),
        "daysHitTarget": int(daily.get("daysHitTarget", 0)),
        "totalTradingDays": int(daily.get("totalDays", frame["sessionDate"].nunique())),
    }


def result_json(result: BacktestResult | dict[str, Any]) -> str:
    payload = result.to_dict() if isinstance(result, BacktestResult) else result
    return json.dumps(payload, indent=2, default=_json_default, allow_nan=False)


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:,.2f}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def render_markdown_report(payload: dict[str, Any], config: Optional[dict[str, Any]] = None) -> str:
    stats = payload.get("statistics", {})
    account = stats.get("accountStats", {})
    cfg = config or {}

    sections: list[str] = ["# CVD Futures Backtest Report", ""]
    if cfg:
        sections.extend([
            "## Configuration",
            "",
            f"- Instrument: `{cfg.get('instrument')}`",
            f"- Window: `{cfg.get('startDate')} {cfg.get('startTime')}` to `{cfg.get('endDate')} {cfg.get('endTime')}`",
            f"- Bars: `{cfg.get('barSize')} {cfg.get('barType')}` ({cfg.get('candleType')})",
            f"- Stop / target: `{cfg.get('stopLoss')}` / `{cfg.get('takeProfit')}` points",
            "",
        ])

    sections.extend(["## Summary Metrics", ""])
    sections.append(_md_table([
        {"metric": "Bars processed", "value": payload.get("count")},
        {"metric": "Total trades", "value": stats.get("totalTrades")},
        {"metric": "Win rate %", "value": stats.get("winRate")},
        {"metric": "Average profit", "value": stats.get("averageProfit")},
        {"metric": "Total profit", "value": stats.get("totalProfit")},
        {"metric": "Profit factor", "value": stats.get("profitFactor")},
        {"metric": "Sharpe ratio", "value": stats.get("sharpeRatio")},
        {"metric": "Max drawdown (equity)", "value": stats.get("maxDrawdown")},
        {"metric": "Max drawdown (closed trades)", "value": stats.get("closedTradeMaxDrawdown")},
        {"metric": "Final balance", "value": account.get("finalBalance")},
        {"metric": "Max drawdown % (equity)", "value": account.get("maxDrawdownPercent")},
        {"metric": "Return / drawdown", "value": account.get("returnToDrawdownRatio")},
    ], ["metric", "value"]).rstrip())
    sections.append("")

    sections.extend(["## Daily P&L", ""])
    intraday = payload.get("intradayStats", {})
    sections.append(_md_table(
        [{"date": key, **value} for key, value in intraday.items()],
        ["date", "trades", "finalPnL", "maxHigh", "maxLow"],
    ).rstrip())
    sections.append("")

    sections.extend(["## Drawdown Events", ""])
    sections.append(_md_table(payload.get("drawdownEvents", []), [
        "startDate", "endDate", "drawdownAmount", "drawdownPercent", "duration", "recovered",
    ]).rstrip())
    sections.append("")
    return "\n".join(sections)


def write_backtest_artifacts(
    result: BacktestResult | dict[str, Any],
    report_dir: str | Path,
    config: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Write the result record plus CSV and markdown views of it."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    if isinstance(result, BacktestResult):
        payload = result.to_dict()
        run_config = config if config is not None else result.config
    else:
        payload = dict(result)
        run_config = config or {}

    result_path = out_dir / "result.json"
    trades_path = out_dir / "trades.csv"
    equity_path = out_dir / "equity_curve.csv"
    drawdown_path = out_dir / "drawdown_events.csv"
    run_cfg_path = out_dir / "run_config.json"
    report_path = out_dir / "report.md"

    result_path.write_text(result_json(payload), encoding="utf-8")
    pd.DataFrame(payload.get("trades", [])).to_csv(trades_path, index=False)
    pd.DataFrame(payload.get("equityCurve", [])).to_csv(equity_path, index=False)
    pd.DataFrame(payload.get("drawdownEvents", [])).to_csv(drawdown_path, index=False)
    run_cfg_path.write_text(json.dumps(run_config, indent=2, default=_json_default), encoding="utf-8")
    report_path.write_text(render_markdown_report(payload, run_config), encoding="utf-8")

    return {
        "summary": payload.get("statistics", {}),
        "paths": {
            "report_dir": str(out_dir),
            "result_json": str(result_path),
            "trades_csv": str(trades_path),
            "equity_curve_csv": str(equity_path),
            "drawdown_events_csv": str(drawdown_path),
            "run_config_json": str(run_cfg_path),
            "report_md": str(report_path),
        },
    }
