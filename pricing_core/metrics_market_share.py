from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from pricing_core.data import date_column, numeric_column, require_records, sort_months
from pricing_core.fields import (
    is_reportable_band,
    resolve_premium_bands,
    sort_premium_bands,
    standardize_premium_band,
)
from pricing_core.filters import FilterSpec, filters_as_dict


logger = logging.getLogger(__name__)

LTV_SEGMENT_CUTOFF = 80.0

UNDER_80 = "under_80"
OVER_80_OR_UNKNOWN = "over_80_or_unknown"
SEGMENTS = (UNDER_80, OVER_80_OR_UNKNOWN, "total")

TOTAL_MARKET = "Total Market"


def ltv_segment(ltv: pd.Series) -> np.ndarray:
    """``under_80`` below the cutoff; everything else, unparsable LTV included, is ``over_80_or_unknown``."""
    return np.where(pd.to_numeric(ltv, errors="coerce") < LTV_SEGMENT_CUTOFF, UNDER_80, OVER_80_OR_UNKNOWN)


def _segment_block() -> Dict[str, Dict[str, Any]]:
    return {seg: {"amount": 0.0, "count": 0} for seg in SEGMENTS}


def _add(block: Dict[str, Dict[str, Any]], segment: str, amount: float, count: int) -> None:
    for key in (segment, "total"):
        block[key]["amount"] += amount
        block[key]["count"] += count


def _lender_column(df: pd.DataFrame) -> pd.Series:
    lenders = df["lender"].astype("string").str.strip()
    return lenders.where(lenders.ne("").fillna(False).astype(bool))


def _selected(selected_bands: Iterable[str]) -> List[str]:
    if selected_bands is None:
        raise TypeError("selected_bands must be an iterable of premium bands, got None")
    if isinstance(selected_bands, str):
        selected_bands = [selected_bands]
    bands = {standardize_premium_band(b) for b in selected_bands}
    return sort_premium_bands(b for b in bands if is_reportable_band(b))


def cross_tab(records: pd.DataFrame, selected_bands: Iterable[str]) -> Dict[str, Any]:
    """Loan amount and count per lender x band x LTV segment.

    Totals are kept at every level: per (lender, band), per lender
    (``overall_total``), per band (``band_totals``) and overall.
    """
    df = require_records(records, required=("lender", "loan_amount"))
    bands = _selected(selected_bands)

    lender_data: Dict[str, Dict[str, Any]] = {}
    band_totals = {band: _segment_block() for band in bands}
    overall_totals = _segment_block()
    result = {
        "lender_data": lender_data,
        "band_totals": band_totals,
        "overall_totals": overall_totals,
        "lenders": [],
        "selected_bands": bands,
    }
    if df.empty or not bands:
        return result

    frame = pd.DataFrame(
        {
            "lender": _lender_column(df),
            "band": resolve_premium_bands(df),
            "segment": ltv_segment(numeric_column(df, "ltv")),
            "amount": numeric_column(df, "loan_amount").fillna(0.0),
        },
        index=df.index,
    )
    no_lender = frame["lender"].isna()
    if no_lender.any():
        logger.debug("Cross-tab skipping %d records without a lender", int(no_lender.sum()))
    frame = frame[~no_lender & frame["band"].isin(bands)]

    grouped = frame.groupby(["lender", "band", "segment"])["amount"]
    sums = grouped.sum().to_dict()
    counts = grouped.size().to_dict()

    lenders = sorted(frame["lender"].unique().tolist())
    for lender in lenders:
        lender_data[lender] = {band: _segment_block() for band in bands}
        lender_data[lender]["overall_total"] = _segment_block()

    for (lender, band, segment), amount in sums.items():
        amount = float(amount)
        count = int(counts[(lender, band, segment)])
        _add(lender_data[lender][band], segment, amount, count)
        _add(lender_data[lender]["overall_total"], segment, amount, count)
        _add(band_totals[band], segment, amount, count)
        _add(overall_totals, segment, amount, count)

    result["lenders"] = lenders
    return result


def _share(amount: float, total: float) -> float:
    return amount / total * 100 if total > 0 else 0.0


def _with_shares(block: Dict[str, Dict[str, Any]], totals: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {
        seg: {
            "amount": block[seg]["amount"],
            "count": block[seg]["count"],
            "percentage": _share(block[seg]["amount"], totals[seg]["amount"]),
        }
        for seg in SEGMENTS
    }


def _total_market_block(block: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {
        seg: {
            "amount": block[seg]["amount"],
            "count": block[seg]["count"],
            "percentage": 100.0 if block[seg]["amount"] > 0 else 0.0,
        }
        for seg in SEGMENTS
    }


def market_share_rows(result: Dict[str, Any], *, sort_by: str = "overall_total") -> List[Dict[str, Any]]:
    """Table rows for a cross-tab: one per lender, then the ``Total Market`` row.

    ``sort_by="overall_total"`` orders lenders by descending overall amount;
    ``sort_by="lender"`` orders them by name.
    """
    if sort_by not in ("overall_total", "lender"):
        raise ValueError(f"sort_by must be 'overall_total' or 'lender', got {sort_by!r}")
    bands: List[str] = result["selected_bands"]
    band_totals = result["band_totals"]
    overall_totals = result["overall_totals"]

    rows: List[Dict[str, Any]] = []
    for lender in result["lenders"]:
        block = result["lender_data"][lender]
        rows.append(
            {
                "lender": lender,
                "is_total_market": False,
                "bands": {band: _with_shares(block[band], band_totals[band]) for band in bands},
                "overall_total": _with_shares(block["overall_total"], overall_totals),
            }
        )

    if sort_by == "overall_total":
        rows.sort(key=lambda r: (-r["overall_total"]["total"]["amount"], r["lender"]))
    else:
        rows.sort(key=lambda r: r["lender"])

    rows.append(
        {
            "lender": TOTAL_MARKET,
            "is_total_market": True,
            "bands": {band: _total_market_block(band_totals[band]) for band in bands},
            "overall_total": _total_market_block(overall_totals),
        }
    )
    return rows


def lender_monthly_trend(records: pd.DataFrame, selected_bands: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Each lender's loan amount and share of the month total, month by month."""
    df = require_records(records, required=("lender", "document_date", "loan_amount"))
    payload: Dict[str, Any] = {"months": [], "lenders": [], "data": {}, "totals": {}}
    if df.empty:
        return payload

    frame = pd.DataFrame(
        {
            "lender": _lender_column(df),
            "band": resolve_premium_bands(df),
            "month": date_column(df).dt.strftime("%Y-%m"),
            "amount": numeric_column(df, "loan_amount").fillna(0.0),
        },
        index=df.index,
    )
    keep = frame["lender"].notna() & frame["month"].notna() & frame["band"].map(is_reportable_band).astype(bool)
    if selected_bands is not None:
        keep &= frame["band"].isin(_selected(selected_bands))
    frame = frame[keep]

    grouped = frame.groupby(["month", "lender"])["amount"]
    sums = grouped.sum().to_dict()
    counts = grouped.size().to_dict()
    months = sort_months(frame["month"].tolist())
    lenders = sorted(frame["lender"].unique().tolist())

    for month in months:
        total = float(sum(sums.get((month, lender), 0.0) for lender in lenders))
        payload["totals"][month] = {"amount": total, "count": int(sum(counts.get((month, lender), 0) for lender in lenders))}
        payload["data"][month] = {}
        for lender in lenders:
            amount = float(sums.get((month, lender), 0.0))
            payload["data"][month][lender] = {
                "amount": amount,
                "count": int(counts.get((month, lender), 0)),
                "share": _share(amount, total),
            }
    payload["months"] = months
    payload["lenders"] = lenders
    return payload


def compute_market_share(
    filters: FilterSpec,
    ctx: Dict[str, Any],
    *,
    selected_bands: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    filtered: pd.DataFrame = ctx.get("filtered_records", pd.DataFrame())
    if selected_bands is None:
        present = resolve_premium_bands(filtered) if not filtered.empty else pd.Series(dtype=object)
        selected_bands = [b for b in present.unique().tolist() if is_reportable_band(b)]
    result = cross_tab(filtered, selected_bands)
    trend = lender_monthly_trend(filtered, selected_bands)
    return {
        "filters": filters_as_dict(filters),
        "cross_tab": result,
        "rows": market_share_rows(result),
        "trend": trend,
    }
