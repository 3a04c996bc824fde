from __future__ import annotations

from typing import Any, Dict

import pandas as pd

from pricing_core.data import date_column
from pricing_core.fields import UNKNOWN_BAND, is_reportable_band, resolve_premium_bands, split_band
from pricing_core.filters import FilterSpec, filters_as_dict


def compute_debug(filters: FilterSpec, ctx: Dict[str, Any]) -> Dict[str, Any]:
    records: pd.DataFrame = ctx.get("records", pd.DataFrame())
    filtered: pd.DataFrame = ctx.get("filtered_records", pd.DataFrame())
    payload = {
        "filters": filters_as_dict(filters),
        "row_counts": {
            "source_rows": int(ctx.get("source_rows", len(records)) or 0),
            "canonical_rows": int(len(records)),
            "filtered_rows": int(len(filtered)),
        },
        "cleaning_checks": {
            "rejected_rows": int(ctx.get("rejected_rows", 0) or 0),
            "duplicates_removed": int(ctx.get("duplicates_removed", 0) or 0),
            "invalid_dates": int(ctx.get("invalid_dates", 0) or 0),
            "excluded_band_rows": 0,
            "rows_without_lender": 0,
        },
        "excluded_band_counts": {},
        "unconverted_bands_top": [],
        "month_coverage": [],
    }
    if records.empty:
        return payload

    bands = resolve_premium_bands(records)
    excluded = bands[~bands.map(is_reportable_band).astype(bool)]
    payload["cleaning_checks"]["excluded_band_rows"] = int(len(excluded))
    payload["excluded_band_counts"] = {str(k): int(v) for k, v in excluded.value_counts().items()}

    # Labels left as-is by the bucket conversion.
    unconverted = bands[(bands != UNKNOWN_BAND) & bands.map(lambda b: not isinstance(b, str) or split_band(b) is None).astype(bool)]
    if not unconverted.empty:
        top = unconverted.astype(str).value_counts().head(20)
        payload["unconverted_bands_top"] = [{"premium_band": k, "count": int(v)} for k, v in top.items()]

    if "lender" in records.columns:
        lenders = records["lender"].astype("string").str.strip()
        payload["cleaning_checks"]["rows_without_lender"] = int((lenders.isna() | lenders.eq("").fillna(False)).sum())

    dates = date_column(records).dropna()
    if not dates.empty:
        coverage = (
            pd.DataFrame({"year": dates.dt.year, "month": dates.dt.month})
            .groupby("year")["month"]
            .agg(["min", "max", "nunique"])
            .reset_index()
            .rename(columns={"min": "first_month", "max": "last_month", "nunique": "months_present"})
        )
        payload["month_coverage"] = [
            {k: int(v) for k, v in row.items()} for row in coverage.to_dict(orient="records")
        ]
    return payload
