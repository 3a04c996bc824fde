import pandas as pd
import pytest

from pricing_core import filters
from pricing_core.data import load_records
from pricing_core.filters import (
    ALL_LENDERS,
    ALL_PURCHASE_TYPES,
    FilterEngine,
    FilterSpec,
    active_filters,
    apply_filters,
    available_options,
    default_filters,
    filters_as_dict,
    normalize_filters,
    normalize_selection,
    prepare_context,
    toggle_selection,
    update_filter,
)


def _records():
    return pd.DataFrame(
        {
            "lender": ["Alpha", "Alpha", "Beta", "Beta", "Gamma", "Gamma"],
            "loan_amount": [100.0, 200.0, 300.0, 400.0, 500.0, 600.0],
            "ltv": [79.0, 80.0, 85.0, 95.0, "n/a", 60.0],
            "purchase_type": ["Purchase", "Remortgage", "Purchase", "Purchase", "Remortgage", "Purchase"],
            "premium_band": ["160-180", "160-180", "180-200", "Unknown", "-0.4--0.2", "140-160"],
            "document_date": pd.Series(
                [
                    pd.Timestamp("2025-01-01"),
                    pd.Timestamp("2025-01-31 15:00"),
                    pd.Timestamp("2025-02-01"),
                    pd.Timestamp("2025-02-10"),
                    pd.Timestamp("2025-03-01"),
                    pd.NaT,
                ]
            ),
        }
    )


def test_default_spec_has_no_active_dimensions():
    assert active_filters(FilterSpec()) == set()


def test_active_dimensions():
    spec = FilterSpec(
        date_range=(pd.Timestamp("2025-01-01"), pd.Timestamp("2025-01-31")),
        lenders=["Alpha"],
        ltv_bucket="above-80",
        purchase_types=["Purchase"],
    )
    assert active_filters(spec) == {"date_range", "lenders", "ltv_bucket", "purchase_types"}
    assert active_filters(FilterSpec(date_range=(pd.Timestamp("2025-01-01"), None))) == set()


def test_excluded_bands_are_always_dropped():
    out = apply_filters(_records(), FilterSpec())
    assert set(out["premium_band"]) == {"160-180", "180-200", "140-160"}


def test_ltv_above_80_is_inclusive():
    df = pd.DataFrame({"ltv": [79, 80, 85], "loan_amount": [1, 2, 3], "premium_band": ["160-180"] * 3})
    out = apply_filters(df, FilterSpec(ltv_bucket="above-80"))
    assert out["ltv"].tolist() == [80, 85]


def test_ltv_below_80_and_unparsable_ltv():
    out = apply_filters(_records(), FilterSpec(ltv_bucket="below-80"))
    assert out["loan_amount"].tolist() == [100.0, 600.0]
    out = apply_filters(_records(), FilterSpec(ltv_bucket="above-85"))
    assert out["loan_amount"].tolist() == [300.0]


def test_date_range_covers_whole_end_day_and_drops_missing_dates():
    spec = FilterSpec(date_range=(pd.Timestamp("2025-01-01"), pd.Timestamp("2025-01-31")))
    out = apply_filters(_records(), spec)
    assert out["loan_amount"].tolist() == [100.0, 200.0]


def test_lender_and_purchase_type_filters():
    out = apply_filters(_records(), FilterSpec(lenders=["Alpha", "Gamma"]))
    assert out["loan_amount"].tolist() == [100.0, 200.0, 600.0]
    out = apply_filters(_records(), FilterSpec(purchase_types=["Remortgage"]))
    assert out["loan_amount"].tolist() == [200.0]


def test_filtering_is_idempotent():
    spec = FilterSpec(
        date_range=(pd.Timestamp("2025-01-01"), pd.Timestamp("2025-03-31")),
        ltv_bucket="above-80",
    )
    once = apply_filters(_records(), spec)
    twice = apply_filters(once, spec)
    pd.testing.assert_frame_equal(once, twice)


def test_filtering_returns_a_copy():
    records = _records()
    out = apply_filters(records, FilterSpec())
    out.loc[out.index[0], "lender"] = "Changed"
    assert records.loc[0, "lender"] == "Alpha"


def test_apply_filters_contract():
    with pytest.raises(TypeError):
        apply_filters(None, FilterSpec())
    with pytest.raises(TypeError):
        apply_filters(_records(), {"lenders": ["Alpha"]})


def test_selection_sentinel_is_exclusive():
    assert normalize_selection(["all_lenders", "Alpha"], ALL_LENDERS) == ["Alpha"]
    assert normalize_selection([], ALL_LENDERS) == [ALL_LENDERS]
    assert normalize_selection(None, ALL_PURCHASE_TYPES) == [ALL_PURCHASE_TYPES]
    assert normalize_selection("Alpha", ALL_LENDERS) == ["Alpha"]


def test_toggle_selection():
    assert toggle_selection([ALL_LENDERS], "Alpha", ALL_LENDERS) == ["Alpha"]
    assert toggle_selection(["Alpha"], "Beta", ALL_LENDERS) == ["Alpha", "Beta"]
    assert toggle_selection(["Alpha"], "Alpha", ALL_LENDERS) == [ALL_LENDERS]
    assert toggle_selection(["Alpha", "Beta"], ALL_LENDERS, ALL_LENDERS) == [ALL_LENDERS]


def test_normalize_filters_from_raw_dict():
    bounds = (pd.Timestamp("2025-01-01"), pd.Timestamp("2025-03-01"))
    spec = normalize_filters(
        {"start_date": "2025-02-01", "lenders": ["Alpha", ""], "ltv_bucket": "sideways"},
        date_bounds=bounds,
    )
    assert spec.date_range == (pd.Timestamp("2025-02-01"), pd.Timestamp("2025-03-01"))
    assert spec.lenders == ["Alpha"]
    assert spec.ltv_bucket == "all"
    assert spec.purchase_types == [ALL_PURCHASE_TYPES]


def test_update_filter_returns_new_spec():
    spec = FilterSpec()
    updated = update_filter(spec, "ltv_bucket", "above-90")
    assert updated.ltv_bucket == "above-90"
    assert spec.ltv_bucket == "all"
    assert update_filter(spec, "lenders", ["Alpha"]).lenders == ["Alpha"]
    with pytest.raises(ValueError):
        update_filter(spec, "colour", "red")


def test_filters_as_dict_is_serializable():
    spec = FilterSpec(date_range=(pd.Timestamp("2025-01-01"), pd.Timestamp("2025-01-31")))
    assert filters_as_dict(spec)["date_range"] == ["2025-01-01", "2025-01-31"]
    assert filters_as_dict(FilterSpec())["date_range"] == [None, None]


def test_available_options():
    opts = available_options(_records())
    assert opts["lenders"] == ["Alpha", "Beta", "Gamma"]
    assert opts["purchase_types"] == ["Purchase", "Remortgage"]
    assert opts["premium_bands"] == ["140-160", "160-180", "180-200"]
    assert opts["date_range"]["min"] == pd.Timestamp("2025-01-01")
    assert opts["date_range"]["max"] == pd.Timestamp("2025-03-01")


def test_available_options_on_capped_view():
    opts = available_options(_records(), max_rows=2)
    assert opts["lenders"] == ["Alpha", "Gamma"]


def test_default_filters_span_the_data():
    spec = default_filters(_records())
    assert spec.date_range == (pd.Timestamp("2025-01-01"), pd.Timestamp("2025-03-01"))
    assert spec.lenders == [ALL_LENDERS]


def test_engine_update_toggle_and_reset():
    engine = FilterEngine(_records())
    assert engine.active == {"date_range"}
    engine.toggle("lenders", "Beta")
    engine.update("ltv_bucket", "above-80")
    assert engine.active == {"date_range", "lenders", "ltv_bucket"}
    assert engine.apply()["loan_amount"].tolist() == [300.0]
    engine.reset()
    assert engine.spec == default_filters(_records())
    with pytest.raises(ValueError):
        engine.toggle("ltv_bucket", "above-80")


def test_engine_options_follow_the_collection():
    engine = FilterEngine(_records())
    assert engine.options["lenders"] == ["Alpha", "Beta", "Gamma"]
    engine.set_records(_records()[_records()["lender"] == "Beta"])
    assert engine.options["lenders"] == ["Beta"]
    assert engine.spec.date_range == (pd.Timestamp("2025-02-01"), pd.Timestamp("2025-02-10"))


def test_engine_options_reentrant_call_returns_empty(monkeypatch):
    engine = FilterEngine(_records())
    seen = {}
    real = filters.available_options

    def reentrant(records, *, max_rows=None):
        seen["inner"] = engine.options
        return real(records, max_rows=max_rows)

    monkeypatch.setattr(filters, "available_options", reentrant)
    opts = engine.options
    assert seen["inner"] == filters.empty_options()
    assert opts["lenders"] == ["Alpha", "Beta", "Gamma"]


def test_prepare_context_from_ingested_rows():
    rows = [
        {"Provider": "Alpha", "Loan": "100", "LTV": "70", "DocumentDate": "2025-01-05", "GrossMarginBucket": "1.6-1.8"},
        {"Provider": "Beta", "Loan": "300", "LTV": "90", "DocumentDate": "2025-02-05", "GrossMarginBucket": "1.8-2.0"},
        {"Provider": "Beta", "Loan": "50", "LTV": "90", "DocumentDate": "2025-02-06", "GrossMarginBucket": None},
    ]
    data_ctx = load_records([rows])
    ctx = prepare_context({"ltv_bucket": "above-80"}, data_ctx)
    assert ctx["active_filters"] == ["date_range", "ltv_bucket"]
    assert ctx["month_range"] == (pd.Timestamp("2025-01-05"), pd.Timestamp("2025-02-06"))
    assert ctx["filtered_records"]["loan_amount"].tolist() == [300.0]
    assert ctx["options"]["premium_bands"] == ["160-180", "180-200"]
    assert ctx["source_rows"] == 3
