"""Typed failures raised by the backtest engine."""

from __future__ import annotations

from datetime import datetime


class BacktestError(Exception):
    """Base class for every failure the engine reports to its caller."""

    error_type = "BacktestError"


class ConfigError(BacktestError, ValueError):
    """Invalid input parameters; raised before the simulation starts."""

    error_type = "ConfigError"


class DataError(BacktestError):
    """The price stream cannot be simulated as delivered."""

    error_type = "DataError"


class DataGapError(DataError):
    """The bar stream is missing coverage inside the requested window."""

    error_type = "DataGapError"

    def __init__(self, message: str, gap_start: datetime | None = None, gap_end: datetime | None = None):
        super().__init__(message)
        self.gap_start = gap_start
        self.gap_end = gap_end


class ComputationError(BacktestError):
    """An indicator or account arithmetic invariant was violated."""

    error_type = "ComputationError"


class BacktestCancelled(BacktestError):
    """The run was cancelled cooperatively between bars."""

    error_type = "BacktestCancelled"


class BacktestTimeout(BacktestCancelled):
    """The run exceeded its boundary timeout and was cancelled."""

    error_type = "BacktestTimeout"
