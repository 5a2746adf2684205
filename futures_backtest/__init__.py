"""CVD futures strategy backtest engine."""

from .account import AccountTracker
from .bars import BarBuilder, heikin_ashi, prepare_bars
from .config import BacktestConfig
from .engine import (
    BacktestEngine,
    BacktestOutcome,
    RunLog,
    bar_stream,
    run_backtest,
    run_backtest_async,
    run_backtest_safe,
    run_backtests,
)
from .errors import (
    BacktestCancelled,
    BacktestError,
    BacktestTimeout,
    ComputationError,
    ConfigError,
    DataError,
    DataGapError,
)
from .feeder import TickCsvSource, iter_ticks_csv, load_bars_csv
from .indicators import (
    AdxEstimator,
    EmaEstimator,
    IndicatorEngine,
    IndicatorSnapshot,
    SmaEstimator,
    VwapEstimator,
    ema_series,
    sma_series,
    vwap_series,
)
from .models import (
    BacktestResult,
    Bar,
    DailyState,
    DrawdownEvent,
    EquityPoint,
    ExitReason,
    Position,
    Side,
    Signal,
    Tick,
    TradeRecord,
)
from .reporting import build_statistics, result_json, write_backtest_artifacts
from .risk import DailyRiskGovernor
from .signals import SignalDecision, SignalEvaluator
from .simulator import TradeSimulator
from .validation import validate_trades

__all__ = [
    "AccountTracker",
    "AdxEstimator",
    "BacktestCancelled",
    "BacktestConfig",
    "BacktestEngine",
    "BacktestError",
    "BacktestOutcome",
    "BacktestResult",
    "BacktestTimeout",
    "Bar",
    "BarBuilder",
    "ComputationError",
    "ConfigError",
    "DailyRiskGovernor",
    "DailyState",
    "DataError",
    "DataGapError",
    "DrawdownEvent",
    "EmaEstimator",
    "EquityPoint",
    "ExitReason",
    "IndicatorEngine",
    "IndicatorSnapshot",
    "Position",
    "RunLog",
    "Side",
    "Signal",
    "SignalDecision",
    "SignalEvaluator",
    "SmaEstimator",
    "Tick",
    "TickCsvSource",
    "TradeRecord",
    "TradeSimulator",
    "VwapEstimator",
    "bar_stream",
    "build_statistics",
    "ema_series",
    "heikin_ashi",
    "iter_ticks_csv",
    "load_bars_csv",
    "prepare_bars",
    "result_json",
    "run_backtest",
    "run_backtest_async",
    "run_backtest_safe",
    "run_backtests",
    "sma_series",
    "validate_trades",
    "vwap_series",
    "write_backtest_artifacts",
]
