"""CSV loaders for tick and pre-built bar files with strict schema validation."""

from __future__ import annotations

import csv
from datetime import datetime
import logging
from pathlib import Path
from typing import Any, Iterator

import numpy as np

from .errors import DataError
from .models import Bar, Tick

logger = logging.getLogger(__name__)

_REQUIRED_TICK_COLUMNS = {"timestamp", "price"}
_REQUIRED_BAR_COLUMNS = {"timestamp", "open", "high", "low", "close", "volume"}
_BAR_ARRAY_COLUMNS: tuple[str, ...] = ("open", "high", "low", "close", "volume")
_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %I:%M:%S %p",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
)


def parse_timestamp(raw_value: Any) -> datetime | None:
    """Parse ISO8601 or exchange-export timestamps as naive input-zone times."""
    raw = str(raw_value or "").strip()
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        value = None
    if value is None:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                value = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
    if value is None:
        return None
    return value.replace(tzinfo=None)


def _float(row: dict[str, Any], column: str, path: Path, default: float | None = None) -> float:
    raw = row.get(column)
    if raw in (None, "") and default is not None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise DataError(f"Invalid numeric value for {column} in {path}: {raw!r}") from exc


def _check_columns(path: Path, fieldnames: list[str], required: set[str]) -> None:
    missing = sorted(required.difference(fieldnames))
    if missing:
        raise DataError(f"Schema validation failed for {path}: missing columns {missing}")


def iter_ticks_csv(path: str | Path) -> Iterator[Tick]:
    """Stream ticks in file order; ordering is checked by the bar builder."""
    csv_path = Path(path)
    with csv_path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        _check_columns(csv_path, list(reader.fieldnames or []), _REQUIRED_TICK_COLUMNS)
        for line_no, row in enumerate(reader, start=2):
            timestamp = parse_timestamp(row.get("timestamp"))
            if timestamp is None:
                raise DataError(f"Unparseable timestamp on line {line_no} of {csv_path}: {row.get('timestamp')!r}")
            yield Tick(
                timestamp=timestamp,
                price=_float(row, "price", csv_path),
                volume=_float(row, "volume", csv_path, default=0.0),
                delta=_float(row, "delta", csv_path, default=0.0),
            )


class TickCsvSource:
    """Zero-argument callable that re-reads the file on every call."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"tick file does not exist: {self.path}")

    def __call__(self) -> Iterator[Tick]:
        return iter_ticks_csv(self.path)


def load_bars_csv(path: str | Path) -> list[Bar]:
    """Load pre-built bars; rows are stably sorted and duplicate timestamps keep the last row.

    CVD comes from a ``cvd_close`` column when present, otherwise it is the
    running sum of the ``delta`` column.
    """
    csv_path = Path(path)
    with csv_path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        fieldnames = list(reader.fieldnames or [])
        _check_columns(csv_path, fieldnames, _REQUIRED_BAR_COLUMNS)
        has_cvd = "cvd_close" in fieldnames
        if not has_cvd and "delta" not in fieldnames:
            raise DataError(f"Schema validation failed for {csv_path}: need a delta or cvd_close column")

        times: list[datetime] = []
        numeric: dict[str, list[float]] = {name: [] for name in (*_BAR_ARRAY_COLUMNS, "flow")}
        skipped = 0
        for row in reader:
            timestamp = parse_timestamp(row.get("timestamp"))
            if timestamp is None:
                skipped += 1
                continue
            times.append(timestamp)
            for column in _BAR_ARRAY_COLUMNS:
                numeric[column].append(_float(row, column, csv_path))
            numeric["flow"].append(_float(row, "cvd_close" if has_cvd else "delta", csv_path))

    if skipped:
        logger.warning("Skipped %d rows with unparseable timestamps in %s", skipped, csv_path)
    if not times:
        raise DataError(f"Bar file has no valid rows: {csv_path}")

    time_ns = np.asarray([np.datetime64(item, "ns") for item in times]).astype(np.int64)
    columns = {name: np.asarray(values, dtype=np.float64) for name, values in numeric.items()}
    order = np.argsort(time_ns, kind="mergesort")
    time_ns = time_ns[order]
    keep = np.ones(time_ns.size, dtype=bool)
    keep[:-1] = time_ns[:-1] != time_ns[1:]
    order = order[keep]
    if not keep.all():
        logger.warning("Dropped %d duplicate bar timestamps in %s", int((~keep).sum()), csv_path)

    flow = columns["flow"][order]
    cvd = flow if has_cvd else np.cumsum(flow)

    return [
        Bar(
            timestamp=times[idx],
            open=float(columns["open"][idx]),
            high=float(columns["high"][idx]),
            low=float(columns["low"][idx]),
            close=float(columns["close"][idx]),
            volume=float(columns["volume"][idx]),
            cumulative_volume_delta=float(cvd[pos]),
        )
        for pos, idx in enumerate(order)
    ]
