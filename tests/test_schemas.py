import pandas as pd
import pytest
from pydantic import ValidationError

from pricing_core.filters import ALL_LENDERS, ALL_PURCHASE_TYPES
from pricing_core.schemas import FilterSpecModel, filters_from_payload, options_payload


def test_payload_defaults_match_an_unrestricted_spec():
    model = FilterSpecModel()
    assert model.lenders == [ALL_LENDERS]
    assert model.purchase_types == [ALL_PURCHASE_TYPES]
    assert model.ltv_bucket == "all"


def test_filters_from_payload():
    spec = filters_from_payload(
        {
            "start_date": "2025-01-01",
            "end_date": "2025-01-31",
            "lenders": [],
            "ltv_bucket": "above-85",
            "purchase_types": ["Purchase", "all_purchase_types"],
        }
    )
    assert spec.date_range == (pd.Timestamp("2025-01-01"), pd.Timestamp("2025-01-31"))
    assert spec.lenders == [ALL_LENDERS]
    assert spec.ltv_bucket == "above-85"
    assert spec.purchase_types == ["Purchase"]


def test_missing_dates_come_from_bounds():
    bounds = (pd.Timestamp("2024-06-01"), pd.Timestamp("2025-05-31"))
    spec = filters_from_payload({}, date_bounds=bounds)
    assert spec.date_range == bounds


def test_malformed_payload_is_rejected():
    with pytest.raises(ValidationError):
        filters_from_payload({"ltv_bucket": "above-70"})
    with pytest.raises(ValidationError):
        filters_from_payload({"start_date": "someday"})


def test_options_payload_serializes_dates():
    payload = options_payload(
        {
            "lenders": ["Alpha"],
            "purchase_types": [],
            "premium_bands": ["160-180"],
            "date_range": {"min": pd.Timestamp("2025-01-01"), "max": None},
        }
    )
    assert payload["date_range"] == {"min": "2025-01-01", "max": None}
    assert payload["premium_bands"] == ["160-180"]
