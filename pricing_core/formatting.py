from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import pandas as pd


def _is_missing(value: object) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def round_half_up(value: object, ndigits: int = 0) -> Optional[float]:
    if _is_missing(value):
        return None
    q = Decimal(10) ** -ndigits
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def format_currency_millions(value: object, include_symbol: bool = True) -> str:
    """Format an amount in millions of pounds, e.g. 1250000 -> '£1.25m'."""
    if _is_missing(value):
        return "-"
    try:
        in_millions = float(value) / 1_000_000
    except (TypeError, ValueError):
        return "-"
    formatted = f"{in_millions:,.2f}m"
    return f"£{formatted}" if include_symbol else formatted


def format_percentage(value: object, decimals: int = 2) -> str:
    if _is_missing(value):
        return "-"
    try:
        return f"{float(value):.{decimals}f}%"
    except (TypeError, ValueError):
        return "-"


def format_number(value: object, decimals: int = 0) -> str:
    if _is_missing(value):
        return "-"
    try:
        return f"{float(value):,.{decimals}f}"
    except (TypeError, ValueError):
        return "-"
