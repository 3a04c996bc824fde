from __future__ import annotations

import logging
import re
import warnings
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from pricing_core.fields import map_columns, resolve_premium_bands


logger = logging.getLogger(__name__)

NUMERIC_COLUMNS = [
    "loan_amount",
    "ltv",
    "term",
    "initial_rate",
    "swap_rate",
    "gross_margin",
    "flat_fees",
    "percentage_fees",
]

# A row needs at least one of these to be kept.
IDENTIFYING_FIELDS = ("provider", "lender", "product_name", "initial_rate", "document_date")

DEDUPE_KEY = ["provider", "product_name", "initial_rate", "document_date"]

Dataset = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})\b")
_NON_NUMERIC_RE = re.compile(r"[^\d.\-]")
_LEADING_FLOAT_RE = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)")


# ---------------- Scalar parsers ----------------
def _day(ts: object) -> pd.Timestamp:
    if ts is None or pd.isna(ts):
        return pd.NaT
    ts = pd.Timestamp(ts)
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.normalize()


def _from_parts(year: int, month: int, day: int) -> pd.Timestamp:
    if year < 100:
        year += 2000
    return pd.Timestamp(year=year, month=month, day=day)


def _parse_date_string(value: str) -> pd.Timestamp:
    s = value.strip()
    if not s:
        return pd.NaT

    iso = _ISO_DATE_RE.match(s)
    if iso:
        try:
            return _from_parts(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return pd.NaT

    slash = _SLASH_DATE_RE.match(s)
    if slash:
        first, second, year = (int(g) for g in slash.groups())
        # UK exports are day-first; fall back to month-first when that is impossible.
        try:
            return _from_parts(year, second, first)
        except ValueError:
            pass
        try:
            return _from_parts(year, first, second)
        except ValueError:
            return pd.NaT

    try:
        if s.isdigit():
            if len(s) == 8:
                compact = pd.to_datetime(s, format="%Y%m%d", errors="coerce")
                if pd.notna(compact):
                    return _day(compact)
            return _day(pd.to_datetime(int(s), unit="ms", errors="coerce"))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            return _day(pd.to_datetime(s, errors="coerce"))
    except (ValueError, TypeError, OverflowError):
        return pd.NaT


def parse_date(raw: object) -> pd.Timestamp:
    """Parse a document date into a midnight ``pd.Timestamp``.

    Accepts ISO strings, ``DD/MM/YYYY`` (falling back to ``MM/DD/YYYY``),
    epoch milliseconds and date-like objects. Never raises: anything that
    cannot be read comes back as ``pd.NaT``.
    """
    if raw is None or isinstance(raw, bool):
        return pd.NaT
    if isinstance(raw, str):
        return _parse_date_string(raw)
    try:
        if isinstance(raw, (pd.Timestamp, datetime, date, np.datetime64)):
            return _day(raw)
        if isinstance(raw, (int, float, np.integer, np.floating)):
            if pd.isna(raw):
                return pd.NaT
            return _day(pd.to_datetime(raw, unit="ms", errors="coerce"))
    except (ValueError, TypeError, OverflowError):
        return pd.NaT
    return pd.NaT


def coerce_numeric(raw: object) -> object:
    """Turn ``"£250,000"`` or ``"75%"`` into a float; leave anything else as-is."""
    if raw is None or isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float, np.integer, np.floating)):
        return float(raw)
    if isinstance(raw, str):
        match = _LEADING_FLOAT_RE.match(_NON_NUMERIC_RE.sub("", raw))
        if match:
            return float(match.group(0))
    return raw


def numeric_column(df: pd.DataFrame, col: str) -> pd.Series:
    if col not in df.columns:
        return pd.Series(np.nan, index=df.index, dtype=float)
    return pd.to_numeric(df[col], errors="coerce")


def date_column(df: pd.DataFrame, col: str = "document_date") -> pd.Series:
    if col not in df.columns:
        return pd.Series(pd.NaT, index=df.index, dtype="datetime64[ns]")
    series = df[col]
    if pd.api.types.is_datetime64_any_dtype(series):
        if getattr(series.dt, "tz", None) is not None:
            series = series.dt.tz_localize(None)
        return series
    return pd.to_datetime(series.map(parse_date), errors="coerce")


def _has_value(value: object) -> bool:
    if value is None:
        return False
    try:
        if pd.isna(value):
            return False
    except (TypeError, ValueError):
        pass
    return str(value).strip() != ""


def is_valid_record(record: Mapping[str, Any]) -> bool:
    return any(_has_value(record.get(field)) for field in IDENTIFYING_FIELDS)


# ---------------- Months ----------------
def month_key(value: object) -> Optional[str]:
    ts = parse_date(value)
    if pd.isna(ts):
        return None
    return f"{ts.year:04d}-{ts.month:02d}"


def months_in_range(start: object, end: object) -> List[str]:
    """Every calendar month from ``start`` to ``end`` inclusive, as ``YYYY-MM``."""
    start_ts, end_ts = parse_date(start), parse_date(end)
    if pd.isna(start_ts) or pd.isna(end_ts) or start_ts > end_ts:
        return []
    return [p.strftime("%Y-%m") for p in pd.period_range(start_ts, end_ts, freq="M")]


def sort_months(months: Iterable[str]) -> List[str]:
    return sorted(set(months), key=lambda m: tuple(int(p) for p in m.split("-")))


# ---------------- Collections ----------------
def sample_head_tail(df: pd.DataFrame, sample_size: int = 0) -> Tuple[pd.DataFrame, bool]:
    """Bound ``df`` to ``sample_size`` rows by keeping its head and tail.

    This is an approximation (earliest and latest activity survive, the middle
    is dropped) and only happens when the caller asks for it.
    """
    if not sample_size or sample_size <= 0 or len(df) <= sample_size:
        return df, False
    tail_size = sample_size // 2
    head_size = sample_size - tail_size
    head = df.iloc[:head_size]
    tail = df.iloc[len(df) - tail_size :] if tail_size else df.iloc[0:0]
    return pd.concat([head, tail]), True


def deduplicate(df: pd.DataFrame) -> pd.DataFrame:
    subset = [c for c in DEDUPE_KEY if c in df.columns]
    if not subset:
        return df.copy()
    return df.drop_duplicates(subset=subset, keep="first")


def _to_frame(dataset: Dataset) -> pd.DataFrame:
    if isinstance(dataset, pd.DataFrame):
        frame = dataset.copy()
    else:
        frame = pd.DataFrame([dict(row) for row in dataset])
    return map_columns(frame)


def _combine(datasets: Iterable[Dataset], dedupe: bool) -> Tuple[pd.DataFrame, Dict[str, int]]:
    if datasets is None:
        raise TypeError("datasets must be an iterable of record collections, got None")
    frames = [_to_frame(ds) for ds in datasets]
    frames = [f for f in frames if not f.empty]
    stats = {"source_rows": 0, "rejected_rows": 0, "duplicates_removed": 0, "invalid_dates": 0}
    if not frames:
        return pd.DataFrame(), stats

    df = pd.concat(frames, ignore_index=True)
    stats["source_rows"] = int(len(df))

    valid = df.apply(is_valid_record, axis=1).astype(bool)
    stats["rejected_rows"] = int((~valid).sum())
    df = df[valid].copy()
    if df.empty:
        return df.reset_index(drop=True), stats

    df["premium_band"] = resolve_premium_bands(df)
    if "document_date" in df.columns:
        df["document_date"] = pd.to_datetime(df["document_date"].map(parse_date), errors="coerce")
    else:
        df["document_date"] = pd.NaT
    for col in NUMERIC_COLUMNS:
        if col in df.columns:
            df[col] = df[col].map(coerce_numeric)

    if dedupe:
        before = len(df)
        df = deduplicate(df)
        stats["duplicates_removed"] = int(before - len(df))

    stats["invalid_dates"] = int(df["document_date"].isna().sum())
    df = df.sort_values("document_date", kind="mergesort", na_position="last").reset_index(drop=True)
    return df, stats


def combine_and_sort(datasets: Iterable[Dataset], *, dedupe: bool = False) -> pd.DataFrame:
    """Flatten several sources into one normalized collection, oldest first."""
    df, _ = _combine(datasets, dedupe)
    return df


def date_bounds(df: pd.DataFrame) -> Tuple[Optional[pd.Timestamp], Optional[pd.Timestamp]]:
    if df.empty or "document_date" not in df.columns:
        return None, None
    dates = date_column(df).dropna()
    if dates.empty:
        return None, None
    return dates.min(), dates.max()


def load_records(datasets: Iterable[Dataset], *, dedupe: bool = False) -> Dict[str, Any]:
    """Ingest raw sources and return the data context used by the filter layer."""
    df, stats = _combine(datasets, dedupe)
    logger.info(
        "Ingested %d of %d rows (%d rejected, %d duplicates removed, %d invalid dates)",
        len(df),
        stats["source_rows"],
        stats["rejected_rows"],
        stats["duplicates_removed"],
        stats["invalid_dates"],
    )
    return {"records": df, "date_bounds": date_bounds(df), **stats}


def require_records(records: object, required: Iterable[str] = ()) -> pd.DataFrame:
    """Fail fast on a missing or malformed collection."""
    if records is None:
        raise TypeError("records must be a pandas DataFrame, got None")
    if not isinstance(records, pd.DataFrame):
        raise TypeError(f"records must be a pandas DataFrame, got {type(records).__name__}")
    if not records.empty:
        missing = [c for c in required if c not in records.columns]
        if missing:
            raise ValueError(f"records are missing required columns: {', '.join(missing)}")
    return records
