"""Per-run orchestration: bar loop, cancellation, async boundary and batch runs."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
import threading
from typing import Any, Iterable, Iterator, Optional

from core.market_metadata import ContractSpec, format_display_timestamp, format_price

from .account import AccountTracker
from .bars import BarBuilder, prepare_bars
from .config import DAY_END, DAY_START, BacktestConfig
from .errors import BacktestCancelled, BacktestError, BacktestTimeout, ComputationError, DataError, DataGapError
from .indicators import IndicatorEngine
from .models import Bar, BacktestResult, ExitReason, Side, Tick, TradeRecord
from .reporting import build_statistics, intraday_stats
from .risk import DailyRiskGovernor
from .signals import SignalEvaluator
from .simulator import TradeSimulator
from .validation import validate_trades

logger = logging.getLogger(__name__)

SIGNIFICANT_GAP_PERCENT = 0.5
EXTREME_GAP_PERCENT = 1.0


class RunLog:
    """Ordered, append-only trace lines mirrored to the module logger."""

    def __init__(self) -> None:
        self._lines: list[str] = []

    def append(self, line: str, level: int = logging.INFO) -> None:
        self._lines.append(line)
        logger.log(level, line)

    def extend(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.append(line)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._lines))


@dataclass(frozen=True)
class _PendingEntry:
    side: Side
    signal_time: datetime
    signal_close: float


@dataclass
class _RunState:
    config: BacktestConfig
    contract: ContractSpec
    log: RunLog
    indicators: IndicatorEngine
    signals: SignalEvaluator
    simulator: TradeSimulator
    governor: DailyRiskGovernor
    account: AccountTracker
    trades: list[TradeRecord] = field(default_factory=list)
    pending: _PendingEntry | None = None
    prev_bar: Bar | None = None
    session_date: date | None = None
    bars_processed: int = 0

    @classmethod
    def create(cls, config: BacktestConfig) -> "_RunState":
        log = RunLog()
        contract = config.contract
        return cls(
            config=config,
            contract=contract,
            log=log,
            indicators=IndicatorEngine(config),
            signals=SignalEvaluator(config),
            simulator=TradeSimulator(config, contract),
            governor=DailyRiskGovernor(config, emit=log.append),
            account=AccountTracker(config.starting_balance),
        )


def _gap_percent(reference: float, price: float) -> float:
    if reference == 0:
        return 0.0
    return abs(float(price) - float(reference)) / abs(float(reference)) * 100.0


class BacktestEngine:
    """Runs one configuration over a bar stream.

    Every call to :meth:`run` builds fresh estimator, position, daily and
    account state, so one engine may be reused and several engines may run
    in parallel threads.
    """

    def __init__(self, config: BacktestConfig, cancel_event: threading.Event | None = None):
        config.validate()
        self.config = config
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, bars: Iterable[Bar]) -> BacktestResult:
        state = _RunState.create(self.config)
        self._log_configuration(state)

        iterator = iter(bars)
        current = next(iterator, None)
        if current is None:
            raise DataGapError(
                "No bars in the requested window",
                gap_start=self._window_edge(self.config.start_date, self.config.start_time),
                gap_end=self._window_edge(self.config.end_date, self.config.end_time),
            )
        tolerance = self.config.gap_tolerance()
        if tolerance is not None:
            self._check_day_start(current, tolerance)

        while current is not None:
            if self.cancel_event.is_set():
                raise BacktestCancelled(f"Backtest cancelled after {state.bars_processed} bars")
            upcoming = next(iterator, None)
            session_last = upcoming is None or upcoming.session_date != current.session_date
            self._process_bar(state, current, session_last)
            current = upcoming

        if tolerance is not None:
            self._check_day_end(state.prev_bar, tolerance)
        return self._finish(state)

    @staticmethod
    def _window_edge(day: date | None, moment: Any) -> datetime | None:
        return datetime.combine(day, moment) if day is not None else None

    # ------------------------------------------------------------------
    # Per-bar pipeline
    # ------------------------------------------------------------------

    def _process_bar(self, state: _RunState, bar: Bar, session_last: bool) -> None:
        config = self.config
        simulator = state.simulator
        governor = state.governor

        self._check_continuity(state, bar)
        if bar.session_date != state.session_date:
            state.session_date = bar.session_date
            governor.begin_day(bar.session_date)

        gap = _gap_percent(state.prev_bar.close, bar.open) if state.prev_bar is not None else 0.0
        if gap > SIGNIFICANT_GAP_PERCENT:
            state.log.append(
                f"Significant gap detected at {format_display_timestamp(bar.timestamp)}: {gap:.2f}% "
                f"({format_price(state.prev_bar.close)} -> {format_price(bar.open)})",
                logging.WARNING,
            )

        close_reached = config.session_close_time is not None and bar.timestamp.time() >= config.session_close_time
        pending, state.pending = state.pending, None
        if pending is not None and close_reached:
            state.log.append(f"Entry skipped at {format_display_timestamp(bar.timestamp)}: session close reached")
        elif pending is not None:
            self._fill_pending(state, pending, bar)

        if simulator.is_open:
            trade = simulator.update(bar)
            if trade is not None:
                self._record_close(state, trade)

        if simulator.is_open and (session_last or close_reached):
            self._record_close(state, simulator.force_close(bar, ExitReason.END_OF_SESSION))

        if simulator.is_open and governor.should_flatten(simulator.unrealized_pnl(bar.close)):
            self._record_close(state, simulator.force_close(bar, ExitReason.DAILY_LIMIT))

        snapshot = state.indicators.update(bar)
        state.signals.observe(bar)
        if not simulator.is_open and governor.can_enter() and not session_last and not close_reached:
            decision = state.signals.evaluate(bar, snapshot)
            if decision.accepted:
                side = decision.signal.to_side()
                state.pending = _PendingEntry(side=side, signal_time=bar.close_time, signal_close=float(bar.close))
                state.log.append(
                    f"Signal {side.value} at {format_display_timestamp(bar.close_time)} "
                    f"close {format_price(bar.close)}: {decision.reason}"
                )
            else:
                logger.debug("No entry at %s: %s", bar.timestamp, decision.reason)

        state.account.mark(bar.close_time, simulator.unrealized_pnl(bar.close))
        state.prev_bar = bar
        state.bars_processed += 1

    def _check_continuity(self, state: _RunState, bar: Bar) -> None:
        prev = state.prev_bar
        if prev is None:
            return
        if bar.timestamp <= prev.timestamp:
            raise DataError(f"Bar at {bar.timestamp} does not follow {prev.timestamp}")
        tolerance = self.config.gap_tolerance()
        if tolerance is None:
            return
        if bar.timestamp.date() != prev.timestamp.date():
            self._check_day_end(prev, tolerance)
            self._check_day_start(bar, tolerance)
            return
        if bar.session_date != prev.session_date:
            return
        missing = bar.timestamp - prev.close_time
        if missing > tolerance:
            raise DataGapError(
                f"Missing bars between {prev.close_time} and {bar.timestamp} "
                f"({missing.total_seconds() / 60.0:.1f} minutes)",
                gap_start=prev.close_time,
                gap_end=bar.timestamp,
            )

    def _check_day_start(self, bar: Bar, tolerance: timedelta) -> None:
        """Edges are only enforced for an explicitly configured daily window."""
        if self.config.start_time == DAY_START:
            return
        opens = datetime.combine(bar.timestamp.date(), self.config.start_time)
        if bar.timestamp - opens > tolerance:
            raise DataGapError(
                f"Data for {bar.timestamp.date()} starts at {bar.timestamp}, "
                f"after the {self.config.start_time} window start",
                gap_start=opens,
                gap_end=bar.timestamp,
            )

    def _check_day_end(self, bar: Bar, tolerance: timedelta) -> None:
        if self.config.end_time == DAY_END:
            return
        closes = datetime.combine(bar.timestamp.date(), self.config.end_time)
        if closes - bar.close_time > tolerance:
            raise DataGapError(
                f"Data for {bar.timestamp.date()} ends at {bar.close_time}, "
                f"before the {self.config.end_time} window end",
                gap_start=bar.close_time,
                gap_end=closes,
            )

    def _fill_pending(self, state: _RunState, pending: _PendingEntry, bar: Bar) -> None:
        gap = _gap_percent(pending.signal_close, bar.open)
        if gap >= EXTREME_GAP_PERCENT:
            state.log.append(
                f"Entry skipped at {format_display_timestamp(bar.timestamp)}: open gapped {gap:.2f}% "
                f"from signal close {format_price(pending.signal_close)}",
                logging.WARNING,
            )
            return
        if not state.governor.can_enter():
            state.log.append(f"Entry skipped at {format_display_timestamp(bar.timestamp)}: trading halted")
            return
        position = state.simulator.open_position(pending.side, bar.open, bar.timestamp)
        state.log.append(
            f"ENTRY {position.side.value} {position.contracts} @ {format_price(position.entry_price)} "
            f"on {format_display_timestamp(position.entry_time)} "
            f"(stop {format_price(position.stop_price)}, target {format_price(position.target_price)})"
        )

    def _record_close(self, state: _RunState, trade: TradeRecord) -> None:
        state.trades.append(trade)
        state.account.apply_trade(trade)
        day = state.governor.record_trade(trade)
        state.log.append(
            f"EXIT {trade.side.value} @ {format_price(trade.exit_price)} "
            f"on {format_display_timestamp(trade.exit_time)} - {trade.exit_reason.value}: "
            f"net ${trade.net_profit_loss:.2f} (day ${day.cumulative_pnl:.2f})"
        )

    # ------------------------------------------------------------------
    # Run start / end
    # ------------------------------------------------------------------

    def _log_configuration(self, state: _RunState) -> None:
        config = self.config
        log = state.log
        log.append(
            f"Starting backtest: {config.instrument}, {config.bar_size}-{'minute' if config.bar_type == 'time' else 'tick'} "
            f"{config.candle_type} bars, {config.contract_size} contract(s), "
            f"balance ${config.starting_balance:,.2f}"
        )
        if config.use_trailing_stop:
            log.append(
                f"Stops: trailing, initial stop {config.stop_loss} pts, target {config.take_profit} pts, "
                f"breakeven at {config.breakeven_trigger} pts, trail {config.trail_distance} pts"
            )
        else:
            log.append(f"Stops: static, stop {config.stop_loss} pts, target {config.take_profit} pts")
        loss = f"${config.max_daily_loss:,.2f}" if config.max_daily_loss > 0 else "disabled"
        profit = f"${config.max_daily_profit:,.2f}" if config.max_daily_profit > 0 else "disabled"
        mode = "flatten" if config.flatten_on_daily_limit else "let open positions ride"
        log.append(f"Daily limits: loss {loss}, profit {profit} ({mode})")

    def _finish(self, state: _RunState) -> BacktestResult:
        if state.simulator.is_open:
            raise ComputationError("Position still open after the final bar")
        config = self.config
        if not config.use_trailing_stop:
            report = validate_trades(
                state.trades, config.stop_loss, config.take_profit, config.contract_size, state.contract
            )
            state.log.extend(report.summary_lines())
        state.log.append(f"Backtest complete. Processed {state.bars_processed} bars.")

        statistics = build_statistics(
            state.trades,
            config.starting_balance,
            account_stats=state.account.summary(),
            daily_summary=state.governor.summary(),
            drawdown_events=state.account.drawdown_events,
        )
        return BacktestResult(
            count=state.bars_processed,
            logs=state.log.lines,
            statistics=statistics,
            trades=list(state.trades),
            intraday_stats=intraday_stats(state.trades),
            equity_curve=list(state.account.equity_curve),
            drawdown_events=list(state.account.drawdown_events),
            config=config.to_dict(),
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def bar_stream(
    config: BacktestConfig,
    ticks: Optional[Iterable[Tick]] = None,
    bars: Optional[Iterable[Bar]] = None,
) -> Iterable[Bar]:
    """Bars for a run from either raw ticks or pre-built bars."""
    if (ticks is None) == (bars is None):
        raise ValueError("Provide exactly one of ticks or bars")
    if ticks is not None:
        return BarBuilder(ticks, config)
    return prepare_bars(bars, config)


def run_backtest(
    config: BacktestConfig,
    bars: Iterable[Bar],
    cancel_event: threading.Event | None = None,
) -> BacktestResult:
    return BacktestEngine(config, cancel_event=cancel_event).run(bars)


@dataclass(frozen=True)
class BacktestOutcome:
    ok: bool
    result: BacktestResult | None = None
    error_type: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.ok and self.result is not None:
            return {"ok": True, "result": self.result.to_dict()}
        return {"ok": False, "errorType": self.error_type, "errorMessage": self.error_message}


def run_backtest_safe(
    config: BacktestConfig | dict[str, Any],
    bars: Iterable[Bar],
    cancel_event: threading.Event | None = None,
) -> BacktestOutcome:
    """Run and fold any engine failure into a typed outcome."""
    try:
        resolved = config if isinstance(config, BacktestConfig) else BacktestConfig.from_dict(config)
        result = run_backtest(resolved, bars, cancel_event=cancel_event)
    except BacktestError as exc:
        logger.error("%s: %s", exc.error_type, exc)
        return BacktestOutcome(ok=False, error_type=exc.error_type, error_message=str(exc))
    return BacktestOutcome(ok=True, result=result)


async def run_backtest_async(
    config: BacktestConfig,
    bars: Iterable[Bar],
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
) -> BacktestResult:
    """Run in a worker thread; on timeout the run is cancelled and nothing is returned."""
    cancel = cancel_event or threading.Event()
    engine = BacktestEngine(config, cancel_event=cancel)
    try:
        return await asyncio.wait_for(asyncio.to_thread(engine.run, bars), timeout)
    except asyncio.TimeoutError as exc:
        cancel.set()
        raise BacktestTimeout(f"Backtest exceeded the {timeout}s timeout") from exc
    except asyncio.CancelledError:
        cancel.set()
        raise


def run_backtests(
    jobs: list[tuple[BacktestConfig | dict[str, Any], Iterable[Bar]]],
    max_workers: int = 4,
) -> list[BacktestOutcome]:
    """Run independent configurations in parallel; outcomes keep input order."""
    if not jobs:
        return []
    max_workers = min(max(1, int(max_workers)), len(jobs))
    ordered: list[BacktestOutcome | None] = [None] * len(jobs)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        future_map = {pool.submit(run_backtest_safe, config, bars): index for index, (config, bars) in enumerate(jobs)}
        for future in as_completed(future_map):
            ordered[future_map[future]] = future.result()
    return [outcome for outcome in ordered if outcome is not None]
