from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from pricing_core.filters import ALL_LENDERS, ALL_PURCHASE_TYPES, DateRange, FilterSpec, normalize_filters


LtvBucket = Literal["all", "below-80", "above-80", "above-85", "above-90", "above-95"]


class FilterSpecModel(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    lenders: List[str] = Field(default_factory=lambda: [ALL_LENDERS])
    ltv_bucket: LtvBucket = "all"
    purchase_types: List[str] = Field(default_factory=lambda: [ALL_PURCHASE_TYPES])


class DateRangeModel(BaseModel):
    min: Optional[date] = None
    max: Optional[date] = None


class FilterOptionsModel(BaseModel):
    lenders: List[str] = Field(default_factory=list)
    purchase_types: List[str] = Field(default_factory=list)
    premium_bands: List[str] = Field(default_factory=list)
    date_range: DateRangeModel = Field(default_factory=DateRangeModel)


def filters_from_payload(payload: Dict[str, Any], *, date_bounds: Optional[DateRange] = None) -> FilterSpec:
    """Validate a filter payload from the state layer and build a ``FilterSpec``.

    Raises ``pydantic.ValidationError`` for malformed payloads (e.g. an unknown
    LTV bucket or an unreadable date).
    """
    model = FilterSpecModel.model_validate(payload or {})
    return normalize_filters(model.model_dump(), date_bounds=date_bounds)


def options_payload(options: Dict[str, Any]) -> Dict[str, Any]:
    rng: Dict[str, Any] = options.get("date_range") or {}
    return FilterOptionsModel(
        lenders=options.get("lenders", []),
        purchase_types=options.get("purchase_types", []),
        premium_bands=options.get("premium_bands", []),
        date_range=DateRangeModel(min=_as_date(rng.get("min")), max=_as_date(rng.get("max"))),
    ).model_dump(mode="json")


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if hasattr(value, "date"):
        return value.date()
    return value
