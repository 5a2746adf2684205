"""Run configuration for the CVD futures backtest."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
import json
from pathlib import Path
from typing import Any

from core.market_metadata import ContractSpec, get_contract_spec, normalize_symbol

from .errors import ConfigError

BAR_TYPES = ("time", "tick")
CANDLE_TYPES = ("traditional", "heikinashi")
ADX_PERIOD = 14
MIN_CVD_LOOKBACK = 3
DEFAULT_STARTING_BALANCE = 50_000.0
DEFAULT_GAP_BARS = 15
DAY_START = time(0, 0, 0)
DAY_END = time(23, 59, 59)

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y")
_TIME_FORMATS = ("%H:%M:%S", "%H:%M")


def _parse_date(value: Any, key: str) -> date | None:
    if value in (None, "", "None"):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    raise ConfigError(f"{key} must be YYYY-MM-DD or MM/DD/YYYY, got {value!r}")


def _parse_time(value: Any, key: str) -> time | None:
    if value in (None, "", "None"):
        return None
    if isinstance(value, time):
        return value
    raw = str(value).strip()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(raw, fmt).time()
        except ValueError:
            continue
    raise ConfigError(f"{key} must be HH:MM or HH:MM:SS, got {value!r}")


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if value in (None, ""):
        return False
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"true", "yes", "1", "on"}:
        return True
    if text in {"false", "no", "0", "off"}:
        return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _parse_number(value: Any, key: str, default: float) -> float:
    if value in (None, ""):
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def _parse_int(value: Any, key: str, default: int) -> int:
    number = _parse_number(value, key, default)
    if not number.is_integer():
        raise ConfigError(f"{key} must be a whole number, got {value!r}")
    return int(number)


def _time_text(value: time | None) -> str | None:
    return value.strftime("%H:%M:%S") if value is not None else None


@dataclass
class BacktestConfig:
    start_date: date | None = None
    start_time: time = DAY_START
    end_date: date | None = None
    end_time: time = DAY_END
    bar_type: str = "time"
    bar_size: int = 1
    candle_type: str = "traditional"
    cvd_look_back_bars: int = 5
    ema_moving_average: int = 0
    sma_filter: int = 0
    use_vwap: bool = False
    adx_threshold: float = 0.0
    contract_size: int = 1
    stop_loss: float = 10.0
    take_profit: float = 20.0
    max_daily_loss: float = 0.0
    max_daily_profit: float = 0.0
    use_trailing_stop: bool = False
    breakeven_trigger: float = 3.0
    trail_distance: float = 2.0
    starting_balance: float = DEFAULT_STARTING_BALANCE
    flatten_on_daily_limit: bool = False
    session_close_time: time | None = None
    max_bar_gap_minutes: float | None = None
    instrument: str = "ES"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BacktestConfig":
        if not isinstance(payload, dict):
            raise ConfigError("Backtest config must be a JSON object")

        gap_raw = payload.get("maxBarGapMinutes")
        try:
            instrument = normalize_symbol(str(payload.get("instrument") or "ES"))
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        config = cls(
            start_date=_parse_date(payload.get("startDate"), "startDate"),
            start_time=_parse_time(payload.get("startTime"), "startTime") or DAY_START,
            end_date=_parse_date(payload.get("endDate"), "endDate"),
            end_time=_parse_time(payload.get("endTime"), "endTime") or DAY_END,
            bar_type=str(payload.get("barType") or "time").strip().lower(),
            bar_size=_parse_int(payload.get("barSize"), "barSize", 1),
            candle_type=str(payload.get("candleType") or "traditional").strip().lower().replace("-", ""),
            cvd_look_back_bars=_parse_int(payload.get("cvdLookBackBars"), "cvdLookBackBars", 5),
            ema_moving_average=_parse_int(payload.get("emaMovingAverage"), "emaMovingAverage", 0),
            sma_filter=_parse_int(payload.get("smaFilter"), "smaFilter", 0),
            use_vwap=_parse_bool(payload.get("useVWAP"), "useVWAP"),
            adx_threshold=_parse_number(payload.get("adxThreshold"), "adxThreshold", 0.0),
            contract_size=_parse_int(payload.get("contractSize"), "contractSize", 1),
            stop_loss=_parse_number(payload.get("stopLoss"), "stopLoss", 10.0),
            take_profit=_parse_number(payload.get("takeProfit"), "takeProfit", 20.0),
            max_daily_loss=_parse_number(payload.get("maxDailyLoss"), "maxDailyLoss", 0.0),
            max_daily_profit=_parse_number(payload.get("maxDailyProfit"), "maxDailyProfit", 0.0),
            use_trailing_stop=_parse_bool(payload.get("useTrailingStop"), "useTrailingStop"),
            breakeven_trigger=_parse_number(payload.get("breakevenTrigger"), "breakevenTrigger", 3.0),
            trail_distance=_parse_number(payload.get("trailDistance"), "trailDistance", 2.0),
            starting_balance=_parse_number(
                payload.get("startingBalance"), "startingBalance", DEFAULT_STARTING_BALANCE
            ),
            flatten_on_daily_limit=_parse_bool(payload.get("flattenOnDailyLimit"), "flattenOnDailyLimit"),
            session_close_time=_parse_time(payload.get("sessionCloseTime"), "sessionCloseTime"),
            max_bar_gap_minutes=None
            if gap_raw in (None, "", 0)
            else _parse_number(gap_raw, "maxBarGapMinutes", 0.0),
            instrument=instrument,
        )
        config.validate()
        return config

    @classmethod
    def from_path(cls, path: str | Path) -> "BacktestConfig":
        config_path = Path(path)
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config is not valid JSON: {config_path}: {exc}") from exc
        return cls.from_dict(payload)

    def validate(self) -> None:
        if self.bar_type not in BAR_TYPES:
            raise ConfigError(f"barType must be one of {list(BAR_TYPES)}, got {self.bar_type!r}")
        if self.candle_type not in CANDLE_TYPES:
            raise ConfigError(f"candleType must be one of {list(CANDLE_TYPES)}, got {self.candle_type!r}")
        if self.bar_size <= 0:
            raise ConfigError("barSize must be greater than 0")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ConfigError(f"startDate {self.start_date} is after endDate {self.end_date}")
        if self.start_time >= self.end_time:
            raise ConfigError(
                f"startTime {_time_text(self.start_time)} must be before endTime {_time_text(self.end_time)}"
            )
        if self.cvd_look_back_bars < MIN_CVD_LOOKBACK:
            raise ConfigError(f"cvdLookBackBars must be at least {MIN_CVD_LOOKBACK}")
        if self.ema_moving_average < 0:
            raise ConfigError("emaMovingAverage must be 0 (disabled) or a positive period")
        if self.sma_filter < 0:
            raise ConfigError("smaFilter must be 0 (disabled) or a positive period")
        if self.adx_threshold < 0:
            raise ConfigError("adxThreshold must be 0 (disabled) or positive")
        if self.contract_size < 1:
            raise ConfigError("contractSize must be at least 1")
        if self.stop_loss <= 0:
            raise ConfigError("stopLoss must be greater than 0 points")
        if self.take_profit <= 0:
            raise ConfigError("takeProfit must be greater than 0 points")
        if self.max_daily_loss < 0:
            raise ConfigError("maxDailyLoss must be 0 (disabled) or positive")
        if self.max_daily_profit < 0:
            raise ConfigError("maxDailyProfit must be 0 (disabled) or positive")
        if self.use_trailing_stop:
            if self.breakeven_trigger <= 0:
                raise ConfigError("breakevenTrigger must be greater than 0 when useTrailingStop is on")
            if self.trail_distance <= 0:
                raise ConfigError("trailDistance must be greater than 0 when useTrailingStop is on")
        if self.starting_balance <= 0:
            raise ConfigError("startingBalance must be positive")
        if self.max_bar_gap_minutes is not None and self.max_bar_gap_minutes <= 0:
            raise ConfigError("maxBarGapMinutes must be positive when set")

    @property
    def contract(self) -> ContractSpec:
        return get_contract_spec(self.instrument)

    @property
    def use_heikin_ashi(self) -> bool:
        return self.candle_type == "heikinashi"

    def gap_tolerance(self) -> timedelta | None:
        """Largest hole tolerated in time-bar coverage; ``None`` for tick bars."""
        if self.bar_type != "time":
            return None
        if self.max_bar_gap_minutes is not None:
            return timedelta(minutes=self.max_bar_gap_minutes)
        return timedelta(minutes=DEFAULT_GAP_BARS * self.bar_size)

    def in_window(self, timestamp: datetime) -> bool:
        """True when the timestamp falls inside the daily session window."""
        day = timestamp.date()
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return self.start_time <= timestamp.time() <= self.end_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "startTime": _time_text(self.start_time),
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "endTime": _time_text(self.end_time),
            "barType": self.bar_type,
            "barSize": int(self.bar_size),
            "candleType": self.candle_type,
            "cvdLookBackBars": int(self.cvd_look_back_bars),
            "emaMovingAverage": int(self.ema_moving_average),
            "smaFilter": int(self.sma_filter),
            "useVWAP": bool(self.use_vwap),
            "adxThreshold": float(self.adx_threshold),
            "contractSize": int(self.contract_size),
            "stopLoss": float(self.stop_loss),
            "takeProfit": float(self.take_profit),
            "maxDailyLoss": float(self.max_daily_loss),
            "maxDailyProfit": float(self.max_daily_profit),
            "useTrailingStop": bool(self.use_trailing_stop),
            "breakevenTrigger": float(self.breakeven_trigger),
            "trailDistance": float(self.trail_distance),
            "startingBalance": float(self.starting_balance),
            "flattenOnDailyLimit": bool(self.flatten_on_daily_limit),
            "sessionCloseTime": _time_text(self.session_close_time),
            "maxBarGapMinutes": self.max_bar_gap_minutes,
            "instrument": self.instrument,
        }
