from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pandas as pd

from pricing_core.data import (
    date_bounds,
    date_column,
    numeric_column,
    parse_date,
    require_records,
    sample_head_tail,
)
from pricing_core.fields import is_reportable_band, resolve_premium_bands, sort_premium_bands


logger = logging.getLogger(__name__)

ALL_LENDERS = "all_lenders"
ALL_PURCHASE_TYPES = "all_purchase_types"

# bucket -> (comparison, cutoff); "above-*" buckets are inclusive of the cutoff.
LTV_BUCKETS: Dict[str, Optional[Tuple[str, float]]] = {
    "all": None,
    "below-80": ("lt", 80.0),
    "above-80": ("ge", 80.0),
    "above-85": ("ge", 85.0),
    "above-90": ("ge", 90.0),
    "above-95": ("ge", 95.0),
}

FILTER_FIELDS = ("date_range", "lenders", "ltv_bucket", "purchase_types")

OPTIONS_MAX_ROWS = 100_000

DateRange = Tuple[Optional[pd.Timestamp], Optional[pd.Timestamp]]


@dataclass(frozen=True)
class FilterSpec:
    date_range: DateRange = (None, None)
    lenders: List[str] = field(default_factory=lambda: [ALL_LENDERS])
    ltv_bucket: str = "all"
    purchase_types: List[str] = field(default_factory=lambda: [ALL_PURCHASE_TYPES])


def normalize_selection(values: Optional[Iterable[object]], sentinel: str) -> List[str]:
    """Clean a multi-select value; explicit members and the sentinel never mix."""
    if values is None:
        return [sentinel]
    if isinstance(values, str):
        values = [values]
    cleaned: List[str] = []
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s and s != sentinel and s not in cleaned:
            cleaned.append(s)
    return cleaned or [sentinel]


def toggle_selection(current: Iterable[str], value: str, sentinel: str) -> List[str]:
    """Apply one checkbox click to a multi-select value."""
    if value == sentinel:
        return [sentinel]
    members = [v for v in current if v != sentinel]
    if value in members:
        members.remove(value)
    else:
        members.append(value)
    return members or [sentinel]


def _as_bound(value: object) -> Optional[pd.Timestamp]:
    if value is None:
        return None
    ts = parse_date(value)
    return None if pd.isna(ts) else ts


def normalize_date_range(value: object, *, date_bounds: Optional[DateRange] = None) -> DateRange:
    start = end = None
    if isinstance(value, (list, tuple)) and len(value) == 2:
        start, end = _as_bound(value[0]), _as_bound(value[1])
    if date_bounds is not None:
        start = start if start is not None else date_bounds[0]
        end = end if end is not None else date_bounds[1]
    return start, end


def normalize_ltv_bucket(value: object) -> str:
    bucket = str(value or "all").strip().lower()
    if bucket not in LTV_BUCKETS:
        logger.warning("Unknown LTV bucket %r, falling back to 'all'", value)
        return "all"
    return bucket


def normalize_filters(raw: Dict[str, Any], *, date_bounds: Optional[DateRange] = None) -> FilterSpec:
    raw = raw or {}
    date_range = raw.get("date_range")
    if date_range is None and ("start_date" in raw or "end_date" in raw):
        date_range = (raw.get("start_date"), raw.get("end_date"))
    return FilterSpec(
        date_range=normalize_date_range(date_range, date_bounds=date_bounds),
        lenders=normalize_selection(raw.get("lenders"), ALL_LENDERS),
        ltv_bucket=normalize_ltv_bucket(raw.get("ltv_bucket")),
        purchase_types=normalize_selection(raw.get("purchase_types"), ALL_PURCHASE_TYPES),
    )


def update_filter(spec: FilterSpec, field_name: str, value: object) -> FilterSpec:
    """Return a copy of ``spec`` with one field replaced (and normalized)."""
    if field_name == "date_range":
        return replace(spec, date_range=normalize_date_range(value))
    if field_name == "lenders":
        return replace(spec, lenders=normalize_selection(value, ALL_LENDERS))
    if field_name == "ltv_bucket":
        return replace(spec, ltv_bucket=normalize_ltv_bucket(value))
    if field_name == "purchase_types":
        return replace(spec, purchase_types=normalize_selection(value, ALL_PURCHASE_TYPES))
    raise ValueError(f"Unknown filter field {field_name!r}; expected one of {', '.join(FILTER_FIELDS)}")


def filters_as_dict(spec: FilterSpec) -> Dict[str, Any]:
    """``asdict(spec)`` with the date bounds rendered as ``YYYY-MM-DD``."""
    payload = asdict(spec)
    payload["date_range"] = [None if ts is None else ts.strftime("%Y-%m-%d") for ts in spec.date_range]
    return payload


def default_filters(records: pd.DataFrame) -> FilterSpec:
    """Full date range of ``records`` and no other restriction."""
    return FilterSpec(date_range=date_bounds(records))


def _selection_active(values: List[str], sentinel: str) -> bool:
    return bool(values) and sentinel not in values


def active_filters(spec: FilterSpec) -> Set[str]:
    active: Set[str] = set()
    start, end = spec.date_range
    if start is not None and end is not None:
        active.add("date_range")
    if _selection_active(spec.lenders, ALL_LENDERS):
        active.add("lenders")
    if spec.ltv_bucket != "all":
        active.add("ltv_bucket")
    if _selection_active(spec.purchase_types, ALL_PURCHASE_TYPES):
        active.add("purchase_types")
    return active


def _text_column(df: pd.DataFrame, col: str) -> pd.Series:
    if col not in df.columns:
        return pd.Series(pd.NA, index=df.index, dtype="string")
    return df[col].astype("string").str.strip()


def apply_filters(records: pd.DataFrame, spec: FilterSpec) -> pd.DataFrame:
    """Rows of ``records`` passing every active dimension of ``spec``.

    Rows in the excluded premium bands are always dropped. Returns a new frame.
    """
    df = require_records(records)
    if not isinstance(spec, FilterSpec):
        raise TypeError(f"spec must be a FilterSpec, got {type(spec).__name__}")
    if df.empty:
        return df.copy()

    active = active_filters(spec)
    mask = resolve_premium_bands(df).map(is_reportable_band).astype(bool)

    if "date_range" in active:
        start = parse_date(spec.date_range[0])
        end = parse_date(spec.date_range[1]) + pd.Timedelta(days=1) - pd.Timedelta(microseconds=1)
        dates = date_column(df)
        mask &= dates.notna() & (dates >= start) & (dates <= end)

    if "lenders" in active:
        mask &= _text_column(df, "lender").isin(set(spec.lenders)).fillna(False).astype(bool)

    if "ltv_bucket" in active:
        op, cutoff = LTV_BUCKETS[spec.ltv_bucket]
        ltv = numeric_column(df, "ltv")
        mask &= (ltv < cutoff) if op == "lt" else (ltv >= cutoff)

    if "purchase_types" in active:
        mask &= _text_column(df, "purchase_type").isin(set(spec.purchase_types)).fillna(False).astype(bool)

    out = df[mask].copy()
    logger.debug("Filtered %d records to %d (active: %s)", len(df), len(out), sorted(active) or "none")
    return out


def _distinct_text(df: pd.DataFrame, col: str) -> List[str]:
    values = _text_column(df, col).dropna()
    return sorted({v for v in values.tolist() if v})


def empty_options() -> Dict[str, Any]:
    return {"lenders": [], "purchase_types": [], "premium_bands": [], "date_range": {"min": None, "max": None}}


def available_options(records: pd.DataFrame, *, max_rows: Optional[int] = None) -> Dict[str, Any]:
    """Filter choices present in ``records`` (optionally a head+tail view of it)."""
    df = require_records(records)
    if df.empty:
        return empty_options()
    view, _ = sample_head_tail(df, max_rows or 0)
    bands = {b for b in resolve_premium_bands(view).tolist() if is_reportable_band(b)}
    start, end = date_bounds(view)
    return {
        "lenders": _distinct_text(view, "lender"),
        "purchase_types": _distinct_text(view, "purchase_type"),
        "premium_bands": sort_premium_bands(bands),
        "date_range": {"min": start, "max": end},
    }


def prepare_context(filters: Dict[str, Any] | FilterSpec, data_ctx: Dict[str, Any]) -> Dict[str, Any]:
    records: pd.DataFrame = data_ctx.get("records", pd.DataFrame())
    bounds = data_ctx.get("date_bounds") or date_bounds(records)
    filt = filters if isinstance(filters, FilterSpec) else normalize_filters(filters, date_bounds=bounds)

    active = active_filters(filt)
    filtered = apply_filters(records, filt)
    month_range = filt.date_range if "date_range" in active else (None, None)

    return {
        "filters": filt,
        "records": records,
        "filtered_records": filtered,
        "active_filters": sorted(active),
        "month_range": month_range,
        "options": available_options(records, max_rows=OPTIONS_MAX_ROWS),
        "source_rows": int(data_ctx.get("source_rows", len(records)) or 0),
        "rejected_rows": int(data_ctx.get("rejected_rows", 0) or 0),
        "duplicates_removed": int(data_ctx.get("duplicates_removed", 0) or 0),
        "invalid_dates": int(data_ctx.get("invalid_dates", 0) or 0),
    }


class FilterEngine:
    """Current filter state over one record collection.

    Holds the ``FilterSpec`` the external state layer edits field by field, and caches
    the filter options for the collection.
    """

    def __init__(self, records: Optional[pd.DataFrame] = None, *, max_option_rows: Optional[int] = OPTIONS_MAX_ROWS):
        self._records = pd.DataFrame() if records is None else require_records(records)
        self._max_option_rows = max_option_rows
        self._options: Optional[Dict[str, Any]] = None
        self._collecting_options = False
        self.spec = default_filters(self._records)

    @property
    def records(self) -> pd.DataFrame:
        return self._records

    def set_records(self, records: pd.DataFrame, *, reset: bool = True) -> None:
        self._records = require_records(records)
        self._options = None
        if reset:
            self.reset()

    @property
    def active(self) -> Set[str]:
        return active_filters(self.spec)

    def update(self, field_name: str, value: object) -> FilterSpec:
        self.spec = update_filter(self.spec, field_name, value)
        return self.spec

    def toggle(self, field_name: str, value: str) -> FilterSpec:
        sentinels = {"lenders": ALL_LENDERS, "purchase_types": ALL_PURCHASE_TYPES}
        if field_name not in sentinels:
            raise ValueError(f"{field_name!r} is not a multi-select filter")
        current = getattr(self.spec, field_name)
        return self.update(field_name, toggle_selection(current, value, sentinels[field_name]))

    def reset(self) -> FilterSpec:
        self.spec = default_filters(self._records)
        return self.spec

    def apply(self) -> pd.DataFrame:
        return apply_filters(self._records, self.spec)

    @property
    def options(self) -> Dict[str, Any]:
        if self._collecting_options:
            return empty_options()
        if self._options is None:
            self._collecting_options = True
            try:
                self._options = available_options(self._records, max_rows=self._max_option_rows)
            finally:
                self._collecting_options = False
        return self._options
