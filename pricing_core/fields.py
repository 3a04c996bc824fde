"""Column mapping and premium-band normalization.

Source files name their columns after the pricing export (``BaseLender``,
``GrossMarginBucket``, ...). Everything downstream works on the canonical
snake_case names in ``COLUMN_MAP``.

Premium bands arrive as decimal margin buckets (``"1.6-1.8"``) and are
reported in basis points (``"160-180"``). Both bounds may be negative, so the
separator hyphen collides with the sign (``"-0.4--0.2"``); parsing is done
with an anchored regex instead of ``str.split("-")``.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple

import pandas as pd


UNKNOWN_BAND = "Unknown"

# Business exclusion: these bands never show up in filtered or aggregate views,
# whether they arrive as decimal buckets or already in bps.
EXCLUDED_BANDS = frozenset({UNKNOWN_BAND, "-0.4--0.2"})

# Labels the generic decimal heuristic historically got wrong.
BAND_ALIASES = {"-0.2-0.0": "-20-0"}

COLUMN_MAP = {
    "DocumentDate": "document_date",
    "BaseLender": "lender",
    "Provider": "provider",
    "Loan": "loan_amount",
    "LTV": "ltv",
    "LTV_Buckets": "ltv_bucket",
    "Term": "term",
    "InitialRate": "initial_rate",
    "Rate": "initial_rate",
    "PurchaseType": "purchase_type",
    "SwapRate": "swap_rate",
    "GrossMargin": "gross_margin",
    "GrossMarginBucket": "gross_margin_bucket",
    "PremiumBand": "premium_band",
    "Product_Name": "product_name",
    "Product_Description": "product_description",
    "Mortgage_Type": "mortgage_type",
    "Channel": "channel",
    "Period": "period",
    "First_Time_Buyer": "first_time_buyer",
    "Second_Time_Buyer": "second_time_buyer",
    "Remortgages": "remortgages",
    "Product_Fee_Notes": "product_fee_notes",
    "Flat_Fees": "flat_fees",
    "Percentage_fees": "percentage_fees",
    "Incentives": "incentives",
    "Redemption": "redemption",
    "Revert_Rate": "revert_rate",
}

_NUMBER = r"[+-]?\d*\.?\d+"
_BAND_RE = re.compile(rf"^\s*({_NUMBER})\s*-\s*({_NUMBER})\s*$")
_LEADING_NUMBER_RE = re.compile(rf"^\s*({_NUMBER})")


def split_band(label: str) -> Optional[Tuple[str, str]]:
    match = _BAND_RE.match(label)
    if not match:
        return None
    return match.group(1), match.group(2)


def _to_bps(value: str) -> int:
    # Ties round towards +inf: 12.5 -> 13, -20.5 -> -20.
    scaled = Decimal(str(float(value) * 100))
    rounding = ROUND_HALF_UP if scaled >= 0 else ROUND_HALF_DOWN
    return int(scaled.quantize(Decimal(1), rounding=rounding))


def _range_to_bps(low: str, high: str) -> Optional[str]:
    try:
        return f"{_to_bps(low)}-{_to_bps(high)}"
    except (InvalidOperation, OverflowError, ValueError):
        return None


def convert_margin_bucket_to_bps(bucket: object) -> str:
    """Convert a decimal margin bucket like ``"1.6-1.8"`` to ``"160-180"``.

    Returns the input unchanged when it is not a two-number range, and
    ``"Unknown"`` when there is no bucket at all.
    """
    if not isinstance(bucket, str) or not bucket.strip():
        return UNKNOWN_BAND
    parts = split_band(bucket)
    if parts is None:
        return bucket
    converted = _range_to_bps(*parts)
    return bucket if converted is None else converted


def _is_decimal_range(low: str, high: str) -> bool:
    """True when at least one bound is a fraction of a percent, i.e. not yet in bps."""
    lo, hi = float(low), float(high)
    if not (-1 < lo < 1 or -1 < hi < 1):
        return False
    return "." in low or "." in high or (lo != 0 and abs(lo) < 1) or (hi != 0 and abs(hi) < 1)


def standardize_premium_band(label: Optional[str]) -> Optional[str]:
    """Return the canonical bps form of ``label``; idempotent."""
    if not label or label == UNKNOWN_BAND or not isinstance(label, str):
        return label
    if label in BAND_ALIASES:
        return BAND_ALIASES[label]
    parts = split_band(label)
    if parts is None:
        return label
    if not _is_decimal_range(*parts):
        return label
    converted = _range_to_bps(*parts)
    return label if converted is None else converted


def parse_premium_band_range(label: object) -> Tuple[float, float]:
    """Parse ``"<min>-<max>"`` into floats; NaN for whatever cannot be read."""
    if not isinstance(label, str):
        return float("nan"), float("nan")
    parts = split_band(label)
    if parts is not None:
        return float(parts[0]), float(parts[1])
    match = _LEADING_NUMBER_RE.match(label)
    if match:
        return float(match.group(1)), float("nan")
    return float("nan"), float("nan")


def premium_band_sort_key(label: object) -> Tuple[int, float, str]:
    low, _ = parse_premium_band_range(label)
    if low != low:  # NaN
        return (0, 0.0, str(label))
    return (1, low, str(label))


def sort_premium_bands(bands: Iterable[object]) -> List[str]:
    return sorted(bands, key=premium_band_sort_key)


_EXCLUDED_LABELS = EXCLUDED_BANDS | {standardize_premium_band(b) for b in EXCLUDED_BANDS}


def is_reportable_band(label: object) -> bool:
    if label is None or (isinstance(label, float) and pd.isna(label)):
        return False
    return label not in _EXCLUDED_LABELS


def drop_duplicate_columns(df: pd.DataFrame) -> pd.DataFrame:
    return df.loc[:, ~df.columns.duplicated()]


def map_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename source columns to canonical names; fill lender from provider."""
    df = df.rename(columns={c: COLUMN_MAP.get(str(c).strip(), c) for c in df.columns})
    df = drop_duplicate_columns(df)
    if "provider" in df.columns:
        if "lender" not in df.columns:
            df["lender"] = df["provider"]
        else:
            df["lender"] = df["lender"].where(df["lender"].notna() & df["lender"].astype(str).str.strip().ne(""), df["provider"])
    return df


def resolve_premium_bands(df: pd.DataFrame) -> pd.Series:
    """Premium band per row, derived from the bucket where it is missing."""
    if "premium_band" in df.columns:
        bands = df["premium_band"].astype(object)
    else:
        bands = pd.Series([None] * len(df), index=df.index, dtype=object)
    if "gross_margin_bucket" in df.columns:
        missing = bands.isna() | bands.astype(str).str.strip().eq("")
        if missing.any():
            bands = bands.where(~missing, df["gross_margin_bucket"].map(convert_margin_bucket_to_bps))
    bands = bands.where(bands.notna() & bands.astype(str).str.strip().ne(""), UNKNOWN_BAND)
    return bands.map(standardize_premium_band)
