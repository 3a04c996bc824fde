from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from pricing_core.data import (
    date_column,
    months_in_range,
    numeric_column,
    require_records,
    sample_head_tail,
    sort_months,
)
from pricing_core.fields import is_reportable_band, resolve_premium_bands, sort_premium_bands
from pricing_core.filters import FilterSpec, filters_as_dict


logger = logging.getLogger(__name__)

MonthRange = Tuple[Optional[object], Optional[object]]


def _require_band_source(df: pd.DataFrame) -> None:
    if not df.empty and "premium_band" not in df.columns and "gross_margin_bucket" not in df.columns:
        raise ValueError("records are missing required columns: premium_band or gross_margin_bucket")


def _keyed(view: pd.DataFrame) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "band": resolve_premium_bands(view),
            "month": date_column(view).dt.strftime("%Y-%m"),
            "amount": numeric_column(view, "loan_amount").fillna(0.0),
        },
        index=view.index,
    )


def _target_months(keyed: pd.DataFrame, month_range: Optional[MonthRange]) -> List[str]:
    start, end = month_range if month_range else (None, None)
    if start is not None and end is not None:
        return months_in_range(start, end)
    return sort_months(keyed["month"].dropna().tolist())


def market_share(data: Dict[str, Dict[str, Dict[str, Any]]], by_month: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    """Each cell's share of its month total, 0-100 (0 when the month total is not positive)."""
    shares: Dict[str, Dict[str, float]] = {}
    for band, row in data.items():
        shares[band] = {}
        for month, cell in row.items():
            total = by_month[month]["amount"]
            shares[band][month] = cell["amount"] / total * 100 if total > 0 else 0.0
    return shares


def growth_rate(data: Dict[str, Dict[str, Dict[str, Any]]], months: List[str]) -> Dict[str, Dict[str, float]]:
    """Month-over-month change in amount per band, in percent; the first month has no entry."""
    growth: Dict[str, Dict[str, float]] = {}
    for band, row in data.items():
        growth[band] = {}
        for prev_month, month in zip(months, months[1:]):
            prev = row[prev_month]["amount"]
            cur = row[month]["amount"]
            growth[band][month] = (cur - prev) / prev * 100 if prev > 0 else 0.0
    return growth


def aggregate_by_band_and_month(
    records: pd.DataFrame,
    month_range: Optional[MonthRange] = None,
    *,
    sample_size: int = 0,
    include_metrics: bool = True,
) -> Dict[str, Any]:
    """Band x month table of loan amounts with totals and derived metrics.

    ``month_range`` fixes the month axis (every month in it, even empty ones);
    without it the months present in ``records`` are used. ``sample_size``
    opts into the head+tail approximation; the result says so in ``sampled``.
    """
    df = require_records(records, required=("document_date", "loan_amount"))
    _require_band_source(df)
    view, sampled = sample_head_tail(df, sample_size)

    keyed = _keyed(view)
    reportable = keyed["band"].map(is_reportable_band).astype(bool)
    keyed = keyed[reportable]

    undated = keyed["month"].isna()
    if undated.any():
        logger.warning("Skipping %d records without a readable document date", int(undated.sum()))

    bands = sort_premium_bands(keyed["band"].unique().tolist())
    months = _target_months(keyed, month_range)

    in_window = keyed[keyed["month"].isin(months)]
    grouped = in_window.groupby(["band", "month"])["amount"]
    sums = grouped.sum().to_dict()
    counts = grouped.size().to_dict()

    data: Dict[str, Dict[str, Dict[str, Any]]] = {}
    by_band = {band: {"amount": 0.0, "count": 0} for band in bands}
    by_month = {month: {"amount": 0.0, "count": 0} for month in months}
    overall = {"amount": 0.0, "count": 0}
    for band in bands:
        data[band] = {}
        for month in months:
            amount = float(sums.get((band, month), 0.0))
            count = int(counts.get((band, month), 0))
            data[band][month] = {"amount": amount, "count": count, "average": amount / count if count else 0.0}
            for bucket in (by_band[band], by_month[month], overall):
                bucket["amount"] += amount
                bucket["count"] += count

    metrics: Dict[str, Any] = {"market_share": {}, "growth_rate": {}}
    if include_metrics:
        metrics = {"market_share": market_share(data, by_month), "growth_rate": growth_rate(data, months)}

    processed = overall["count"]
    logger.debug("Aggregated %d of %d records into %d bands x %d months", processed, len(view), len(bands), len(months))
    return {
        "premium_bands": bands,
        "months": months,
        "data": data,
        "totals": {"by_premium_band": by_band, "by_month": by_month, "overall": overall},
        "metrics": metrics,
        "sampled": bool(sampled),
        "records_processed": int(processed),
        "records_skipped": int(len(view) - processed),
    }


def compute_band_month_summary(filters: FilterSpec, ctx: Dict[str, Any], *, sample_size: int = 0) -> Dict[str, Any]:
    filtered: pd.DataFrame = ctx.get("filtered_records", pd.DataFrame())
    result = aggregate_by_band_and_month(filtered, ctx.get("month_range"), sample_size=sample_size)
    return {"filters": filters_as_dict(filters), **result}
