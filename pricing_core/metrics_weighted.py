from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from pricing_core.data import date_column, numeric_column, require_records, sort_months
from pricing_core.fields import is_reportable_band, resolve_premium_bands, sort_premium_bands
from pricing_core.filters import FilterSpec, filters_as_dict


logger = logging.getLogger(__name__)

DEFAULT_WEIGHTED_METRICS = ("ltv", "rate", "term")

METRIC_ALIASES = {"rate": "initial_rate"}


def metric_column(metric: str) -> str:
    return METRIC_ALIASES.get(metric, metric)


def _summarize(values: pd.Series, weights: pd.Series) -> Dict[str, Any]:
    total_weight = float(weights.sum())
    weighted_sum = float((values * weights).sum())
    count = int(len(values))
    return {
        "weighted_avg": weighted_sum / total_weight if total_weight else 0.0,
        "total_weight": total_weight,
        "count": count,
        "min": float(values.min()) if count else 0.0,
        "max": float(values.max()) if count else 0.0,
    }


def _by_band(frame: pd.DataFrame, bands: List[str]) -> Dict[str, Dict[str, Any]]:
    groups = dict(tuple(frame.groupby("band")))
    empty = frame.iloc[0:0]
    return {band: _summarize(g["value"], g["weight"]) for band, g in ((b, groups.get(b, empty)) for b in bands)}


def weighted_averages(
    records: pd.DataFrame,
    metrics: Sequence[str] = DEFAULT_WEIGHTED_METRICS,
    *,
    include_monthly: bool = False,
) -> Dict[str, Any]:
    """Loan-weighted averages of numeric fields per premium band.

    For each metric, rows with a non-positive or missing loan amount, or a
    non-positive or unparsable metric value, are left out of that metric only.
    ``min``/``max`` are 0 for a band with no usable rows.
    """
    df = require_records(records, required=("loan_amount",))
    if metrics is None:
        raise TypeError("metrics must be a sequence of field names, got None")
    metrics = list(metrics)

    bands_all = resolve_premium_bands(df)
    reportable = bands_all.map(is_reportable_band).astype(bool)
    bands = sort_premium_bands(bands_all[reportable].unique().tolist())
    weights = numeric_column(df, "loan_amount")
    months_all = date_column(df).dt.strftime("%Y-%m")
    months = sort_months(months_all[reportable].dropna().tolist()) if include_monthly else []

    result: Dict[str, Any] = {"premium_bands": bands, "months": months, "metrics": {}}
    if include_monthly:
        result["monthly"] = {}

    for metric in metrics:
        values = numeric_column(df, metric_column(metric))
        usable = reportable & (weights > 0) & (values > 0)
        frame = pd.DataFrame(
            {
                "band": bands_all[usable],
                "month": months_all[usable],
                "value": values[usable].astype(float),
                "weight": weights[usable].astype(float),
            }
        )
        dropped = int(reportable.sum() - usable.sum())
        if dropped:
            logger.debug("Metric %s: %d records without a usable value or loan amount", metric, dropped)
        result["metrics"][metric] = _by_band(frame, bands)

        if include_monthly:
            monthly: Dict[str, Dict[str, Any]] = {}
            for band in bands:
                band_frame = frame[frame["band"] == band]
                by_month = dict(tuple(band_frame.dropna(subset=["month"]).groupby("month")))
                monthly[band] = {}
                for month in months:
                    monthly[band][month] = _summarize(
                        by_month[month]["value"] if month in by_month else pd.Series(dtype=float),
                        by_month[month]["weight"] if month in by_month else pd.Series(dtype=float),
                    )
            result["monthly"][metric] = monthly

    return result


def overall_weighted_average(records: pd.DataFrame, metric: str) -> float:
    """Loan-weighted average of ``metric`` across every reportable row."""
    df = require_records(records, required=("loan_amount",))
    if df.empty:
        return 0.0
    values = numeric_column(df, metric_column(metric))
    weights = numeric_column(df, "loan_amount")
    usable = resolve_premium_bands(df).map(is_reportable_band).astype(bool) & (weights > 0) & (values > 0)
    total = float(weights[usable].sum())
    if not total:
        return 0.0
    return float(np.average(values[usable], weights=weights[usable]))


def compute_weighted_averages(
    filters: FilterSpec,
    ctx: Dict[str, Any],
    *,
    metrics: Iterable[str] = DEFAULT_WEIGHTED_METRICS,
    include_monthly: bool = False,
) -> Dict[str, Any]:
    filtered: pd.DataFrame = ctx.get("filtered_records", pd.DataFrame())
    result = weighted_averages(filtered, list(metrics), include_monthly=include_monthly)
    result["overall"] = {m: overall_weighted_average(filtered, m) for m in result["metrics"]}
    return {"filters": filters_as_dict(filters), **result}
