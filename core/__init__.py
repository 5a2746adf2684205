"""Core utilities shared by the backtest engine and its CLI."""

from .logging_setup import setup_logging, teardown_logging
from .market_metadata import (
    CONTRACT_SPECS,
    DISPLAY_OFFSET,
    DISPLAY_TIMEZONE,
    INPUT_TIMEZONE,
    SYMBOL_ALIASES,
    ContractSpec,
    format_date,
    format_display_date,
    format_display_timestamp,
    format_price,
    format_timestamp,
    get_contract_spec,
    normalize_symbol,
    round_to_tick,
    session_date_of,
    to_display_time,
)

__all__ = [
    "setup_logging",
    "teardown_logging",
    "CONTRACT_SPECS",
    "SYMBOL_ALIASES",
    "INPUT_TIMEZONE",
    "DISPLAY_TIMEZONE",
    "DISPLAY_OFFSET",
    "ContractSpec",
    "normalize_symbol",
    "get_contract_spec",
    "round_to_tick",
    "format_price",
    "to_display_time",
    "format_date",
    "format_timestamp",
    "format_display_date",
    "format_display_timestamp",
    "session_date_of",
]
