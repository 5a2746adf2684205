"""CLI for running CVD futures backtests and re-rendering saved results."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from core.logging_setup import setup_logging  # noqa: E402
from futures_backtest import (  # noqa: E402
    BacktestConfig,
    ComputationError,
    ConfigError,
    DataError,
    TickCsvSource,
    bar_stream,
    load_bars_csv,
    run_backtest,
    write_backtest_artifacts,
)

EXIT_MISSING_FILE = 2
EXIT_CONFIG_ERROR = 3
EXIT_DATA_ERROR = 4
EXIT_COMPUTATION_ERROR = 5


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CVD futures backtest CLI")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--logs-dir", help="Directory for the rotating log file (default: ./logs)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a backtest from a JSON config and a CSV data file")
    run_parser.add_argument("--config", required=True, help="Path to the backtest JSON config")
    run_parser.add_argument("--data", required=True, help="Tick CSV (timestamp,price,volume,delta) or bar CSV")
    run_parser.add_argument(
        "--bars",
        action="store_true",
        help="Treat --data as pre-built bars (timestamp,open,high,low,close,volume,delta|cvd_close)",
    )
    run_parser.add_argument("--report-dir", default="reports/backtest_run", help="Output directory")

    report_parser = subparsers.add_parser("report", help="Re-render CSV and markdown views of a saved result")
    report_parser.add_argument("--result", required=True, help="Path to a result.json written by 'run'")
    report_parser.add_argument("--report-dir", required=True, help="Output directory")

    return parser.parse_args(argv)


def _run_engine(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return EXIT_MISSING_FILE
    data_path = Path(args.data)
    if not data_path.exists():
        logger.error("data file does not exist: %s", data_path)
        return EXIT_MISSING_FILE

    try:
        config = BacktestConfig.from_path(config_path)
        if args.bars:
            bars = bar_stream(config, bars=load_bars_csv(data_path))
        else:
            bars = bar_stream(config, ticks=TickCsvSource(data_path))
        result = run_backtest(config, bars)
        artifacts = write_backtest_artifacts(result, report_dir=args.report_dir)
    except ConfigError as exc:
        logger.error("Config error: %s", exc)
        return EXIT_CONFIG_ERROR
    except DataError as exc:
        logger.error("Data error: %s", exc)
        return EXIT_DATA_ERROR
    except ComputationError as exc:
        logger.error("Computation error: %s", exc)
        return EXIT_COMPUTATION_ERROR

    summary = artifacts["summary"]
    account = summary.get("accountStats", {})
    logger.info("Report dir: %s", artifacts["paths"]["report_dir"])
    logger.info("Total trades: %s", summary.get("totalTrades"))
    logger.info("Win rate: %.2f%%", summary.get("winRate", 0.0))
    logger.info("Final balance: %s", account.get("finalBalance"))
    return 0


def _run_report(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    result_path = Path(args.result)
    if not result_path.exists():
        logger.error("result does not exist: %s", result_path)
        return EXIT_MISSING_FILE

    try:
        payload = json.loads(result_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("result is not valid JSON: %s", exc)
        return EXIT_DATA_ERROR

    run_config_path = result_path.parent / "run_config.json"
    run_config = None
    if run_config_path.exists():
        run_config = json.loads(run_config_path.read_text(encoding="utf-8"))

    artifacts = write_backtest_artifacts(payload, report_dir=args.report_dir, config=run_config)
    logger.info("Report dir: %s", artifacts["paths"]["report_dir"])
    logger.info("Total trades: %s", artifacts["summary"].get("totalTrades"))
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "run":
        return _run_engine(args)
    if args.command == "report":
        return _run_report(args)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level, logs_dir=Path(args.logs_dir) if args.logs_dir else None)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
