"""Futures contract metadata, tick rounding, and display-time helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import re


@dataclass(frozen=True)
class ContractSpec:
    """Static economics of one futures contract."""

    symbol: str
    tick_size: float
    tick_value: float
    commission_per_contract: float
    max_slippage_ticks: int = 1

    @property
    def point_value(self) -> float:
        return self.tick_value / self.tick_size


# Round-trip commission per contract.
CONTRACT_SPECS: dict[str, ContractSpec] = {
    "ES": ContractSpec(symbol="ES", tick_size=0.25, tick_value=12.5, commission_per_contract=2.5),
    "MES": ContractSpec(symbol="MES", tick_size=0.25, tick_value=1.25, commission_per_contract=0.5),
    "NQ": ContractSpec(symbol="NQ", tick_size=0.25, tick_value=5.0, commission_per_contract=2.5),
    "MNQ": ContractSpec(symbol="MNQ", tick_size=0.25, tick_value=0.5, commission_per_contract=0.5),
}

SYMBOL_ALIASES: dict[str, str] = {
    "SPX": "ES",
    "EMINI": "ES",
    "MICRO_ES": "MES",
    "NASDAQ": "NQ",
    "MICRO_NQ": "MNQ",
}

# Input bars are stamped in US Pacific time, results are displayed in US Eastern.
INPUT_TIMEZONE = "America/Los_Angeles"
DISPLAY_TIMEZONE = "America/New_York"
DISPLAY_OFFSET = timedelta(hours=3)

DATE_FORMAT = "%m/%d/%Y"
TIMESTAMP_FORMAT = "%m/%d/%Y %H:%M:%S"

# Strip a trailing front-month code such as ESZ5 or ESH24.
_MONTH_CODE_RE = re.compile(r"^([A-Z]{1,4}?)[FGHJKMNQUVXZ]\d{1,2}$")


def normalize_symbol(raw: str) -> str:
    """
    Normalize user input to a known contract root.

    Examples:
    - es -> ES
    - ESZ5 -> ES
    - micro_es -> MES
    """
    if not raw or not raw.strip():
        raise ValueError("Instrument is required.")

    normalized = raw.strip().upper().replace("/", "").replace("-", "_").replace(" ", "")
    normalized = SYMBOL_ALIASES.get(normalized, normalized)
    if normalized in CONTRACT_SPECS:
        return normalized

    match = _MONTH_CODE_RE.match(normalized)
    if match and match.group(1) in CONTRACT_SPECS:
        return match.group(1)

    raise ValueError(
        f"Unsupported instrument: {raw}. Supported contracts: {', '.join(sorted(CONTRACT_SPECS))}."
    )


def get_contract_spec(symbol: str) -> ContractSpec:
    """Look up the contract economics for a symbol or alias."""
    return CONTRACT_SPECS[normalize_symbol(symbol)]


def round_to_tick(value: float, tick_size: float) -> float:
    """Round price to the nearest tick."""
    ticks = round(float(value) / tick_size)
    return round(ticks * tick_size, 10)


def format_price(value: float, precision: int = 2) -> str:
    """Format price string with thousands separators."""
    return f"{float(value):,.{precision}f}"


def to_display_time(value: datetime) -> datetime:
    """Shift an input-zone timestamp to the display zone.

    The offset is fixed on purpose: results must not depend on the host's
    locale or tz database.
    """
    return value + DISPLAY_OFFSET


def format_date(value: date | datetime) -> str:
    return value.strftime(DATE_FORMAT)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def format_display_date(value: datetime) -> str:
    """Display-zone date for an input-zone timestamp."""
    return format_date(to_display_time(value))


def format_display_timestamp(value: datetime) -> str:
    """Display-zone timestamp for an input-zone timestamp."""
    return format_timestamp(to_display_time(value))


def session_date_of(value: datetime) -> date:
    """Trading date of an input-zone timestamp, counted in the display zone."""
    return to_display_time(value).date()
