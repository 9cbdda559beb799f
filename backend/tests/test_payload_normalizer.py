from __future__ import annotations

import pytest

from metric_pipeline import PayloadNormalizer, resolve_payload
from metric_pipeline.coercion import coerce_value, parse_duration_minutes


@pytest.fixture
def normalizer(vocabulary):
    return PayloadNormalizer(vocabulary)


def test_flat_payload_maps_aliases_to_canonical_keys(normalizer):
    metrics = normalizer.normalize(
        {
            "sleepScore": "82",
            "totalSleep": "7h 12m",
            "restingHeartRate": 58,
            "heartRate": 72,
            "steps": "8,412",
            "screenshotBorderColor": "#fff",
        }
    )
    assert metrics == {
        "sleep_score": 82,
        "total_sleep": 432,
        "resting_heart_rate": 58,
        "heart_rate": 72,
        "steps": 8412,
    }


def test_output_follows_vocabulary_order(normalizer, vocabulary):
    metrics = normalizer.normalize({"steps": 100, "sleep_score": 70, "heart_rate_variability": 40})
    order = vocabulary.keys()
    assert list(metrics) == sorted(metrics, key=order.index)


def test_resting_heart_rate_prefers_specific_alias_over_generic(normalizer):
    metrics = normalizer.normalize({"heart_rate": 75, "resting_heart_rate": 61})
    assert metrics["resting_heart_rate"] == 61
    assert metrics["heart_rate"] == 75

    generic_only = normalizer.normalize({"heartRate": 64})
    assert generic_only["resting_heart_rate"] == 64


def test_context_list_keeps_only_entries_flagged_for_storage(normalizer):
    metrics = normalizer.normalize(
        {
            "context_data": [
                {"key": "sleep_score", "value": 70, "should_store": True},
                {"key": "steps", "value": 5000, "should_store": False},
                {"key": "mood", "value": "tired"},
                {"key": "sleep_score", "value": 75, "should_store": "true"},
                "not-an-entry",
            ]
        }
    )
    assert metrics == {"sleep_score": 75}


def test_daily_summary_shape_coerces_each_type(normalizer):
    metrics = normalizer.normalize(
        {"dailySummary": {"readinessScore": 77, "traveling": "yes", "mood": "  rested ", "deep_sleep": "1h 5m"}}
    )
    assert metrics == {"readiness_score": 77, "deep_sleep": 65, "mood": "rested", "traveling": True}
    assert resolve_payload({"dailySummary": {}}).kind == "daily_summary"


@pytest.mark.parametrize(
    "raw",
    [None, {}, "garbage", [1, 2], {"context_data": "oops"}, {"daily_summary": [1]}, {"nothing": "known"}],
)
def test_unrecognized_payloads_yield_empty_map(normalizer, raw):
    assert normalizer.normalize(raw) == {}


def test_null_and_uncoercible_values_are_dropped(normalizer):
    metrics = normalizer.normalize({"sleepScore": None, "steps": "lots", "hrv": "41 ms"})
    assert metrics == {"heart_rate_variability": 41}


@pytest.mark.parametrize("bad", [float("inf"), float("-inf"), float("nan")])
def test_non_finite_numbers_are_dropped(normalizer, bad):
    metrics = normalizer.normalize({"totalSleep": bad, "sleepScore": bad, "steps": 4000})
    assert metrics == {"steps": 4000}


def test_null_alias_does_not_shadow_later_alias(normalizer):
    metrics = normalizer.normalize({"restingHeartRate": None, "rhr": 55})
    assert metrics["resting_heart_rate"] == 55


@pytest.mark.parametrize(
    "raw,expected",
    [("7h 30m", 450), ("7 hours and 5 minutes", 425), ("45 min", 45), ("7:30", 450), ("390", 390), (412.4, 412)],
)
def test_duration_values_parse_to_minutes(raw, expected):
    assert parse_duration_minutes(raw) == expected


def test_coerce_value_rejects_mismatched_types():
    assert coerce_value(True, "numeric") is None
    assert coerce_value("maybe", "boolean") is None
    assert coerce_value({"a": 1}, "text") is None
    assert coerce_value("98.6", "numeric") == 98.6
