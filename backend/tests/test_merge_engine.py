from __future__ import annotations

import sqlite3
import threading

import pytest

from health_store import DailyMetricStore, MetricCatalog, MetricStorageError
from metric_pipeline import merge_maps

DAY = "2026-03-02"


@pytest.fixture
def store(health_db, vocabulary):
    catalog = MetricCatalog(health_db)
    catalog.seed(vocabulary)
    return DailyMetricStore(health_db, catalog, vocabulary)


def test_merge_is_a_field_level_upsert():
    result = merge_maps({"sleep_score": 70, "steps": 8000}, {"sleep_score": 85})
    assert result.merged == {"sleep_score": 85, "steps": 8000}
    assert result.changed_keys == ["sleep_score"]


def test_merge_null_means_removal():
    result = merge_maps({"sleep_score": 70}, {"sleep_score": None})
    assert result.merged == {"sleep_score": None}
    assert result.changed_keys == ["sleep_score"]


def test_merge_missing_and_null_are_equal():
    assert merge_maps({}, {"sleep_score": None}).changed_keys == []
    assert merge_maps({"sleep_score": None}, {}).merged == {"sleep_score": None}


def test_merge_does_not_mutate_inputs():
    existing = {"steps": 1}
    incoming = {"steps": 2}
    merge_maps(existing, incoming)
    assert existing == {"steps": 1}
    assert incoming == {"steps": 2}


def test_store_apply_is_idempotent(store):
    incoming = {"sleep_score": 82, "total_sleep": 432}
    first = store.apply(user_id="user-a", metric_date=DAY, incoming=incoming, source="ocr", confidence=0.9)
    second = store.apply(user_id="user-a", metric_date=DAY, incoming=incoming, source="ocr", confidence=0.9)
    assert first.changed_keys == ["sleep_score", "total_sleep"]
    assert second.changed_keys == []
    assert store.get_record("user-a", DAY).metrics == {"sleep_score": 82, "total_sleep": 432}


def test_repeat_ingest_with_nan_value_changes_nothing(service):
    payload = {"sleepScore": float("nan"), "steps": 4000}
    first = service.ingest_payload(user_id="user-a", payload=payload, metric_date=DAY)
    second = service.ingest_payload(user_id="user-a", payload=payload, metric_date=DAY)
    assert first.merge.changed_keys == ["steps"]
    assert second.merge.changed_keys == []
    assert service.daily_record(user_id="user-a", metric_date=DAY).metrics == {"steps": 4000}


def test_store_update_leaves_other_fields_alone(store):
    store.apply(
        user_id="user-a",
        metric_date=DAY,
        incoming={"sleep_score": 70, "steps": 8000, "mood": "ok"},
        source="ocr",
        confidence=0.9,
    )
    store.apply(user_id="user-a", metric_date=DAY, incoming={"sleep_score": 85}, source="correction", confidence=1.0)
    record = store.get_record("user-a", DAY)
    assert record.metrics == {"sleep_score": 85, "steps": 8000, "mood": "ok"}
    assert record.provenance["sleep_score"].source == "correction"
    assert record.provenance["steps"].source == "ocr"
    assert record.provenance["steps"].confidence == pytest.approx(0.9)


def test_store_persists_explicit_null(store):
    store.apply(user_id="user-a", metric_date=DAY, incoming={"sleep_score": 70}, source="ocr", confidence=0.9)
    result = store.apply(
        user_id="user-a",
        metric_date=DAY,
        incoming={"sleep_score": None},
        source="correction",
        confidence=1.0,
    )
    assert result.changed_keys == ["sleep_score"]
    record = store.get_record("user-a", DAY)
    assert "sleep_score" in record.metrics
    assert record.metrics["sleep_score"] is None
    assert record.provenance["sleep_score"].source == "correction"


def test_store_round_trips_each_value_type(store):
    store.apply(
        user_id="user-a",
        metric_date=DAY,
        incoming={"body_temperature": 98.6, "deep_sleep": 65, "traveling": False, "mood": "calm"},
        source="conversation",
        confidence=0.8,
    )
    metrics = store.get_record("user-a", DAY).metrics
    assert metrics == {"deep_sleep": 65, "body_temperature": 98.6, "mood": "calm", "traveling": False}
    assert isinstance(metrics["deep_sleep"], int)


def test_records_are_scoped_by_user_and_date(store):
    store.apply(user_id="user-a", metric_date=DAY, incoming={"steps": 100}, source="ocr", confidence=0.9)
    store.apply(user_id="user-b", metric_date=DAY, incoming={"steps": 200}, source="ocr", confidence=0.9)
    store.apply(user_id="user-a", metric_date="2026-03-03", incoming={"steps": 300}, source="ocr", confidence=0.9)
    assert store.get_record("user-a", DAY).metrics == {"steps": 100}
    assert store.get_record("user-b", DAY).metrics == {"steps": 200}
    assert store.get_record("user-a", "2026-03-03").metrics == {"steps": 300}


def test_unknown_and_uncoercible_keys_are_dropped_not_fatal(store, caplog):
    result = store.apply(
        user_id="user-a",
        metric_date=DAY,
        incoming={"steps": 5000, "mystery_metric": 4, "sleep_score": "n/a"},
        source="ocr",
        confidence=0.9,
    )
    assert result.changed_keys == ["steps"]
    assert "mystery_metric" in caplog.text


def test_key_missing_from_catalog_is_dropped_with_warning(store, health_db, caplog):
    with health_db.connection() as conn:
        conn.execute("DELETE FROM standard_metrics WHERE metric_key = ?", ("weight",))
    result = store.apply(
        user_id="user-a",
        metric_date=DAY,
        incoming={"weight": 170, "steps": 10},
        source="ocr",
        confidence=0.9,
    )
    assert result.changed_keys == ["steps"]
    assert "missing from catalog" in caplog.text


@pytest.mark.parametrize("source,confidence", [("scanner", 0.5), ("ocr", 1.5), ("ocr", -0.1)])
def test_invalid_provenance_is_rejected(store, source, confidence):
    with pytest.raises(ValueError):
        store.apply(user_id="user-a", metric_date=DAY, incoming={"steps": 1}, source=source, confidence=confidence)


def test_storage_failure_surfaces_as_metric_storage_error(store, health_db):
    with health_db.connection() as conn:
        conn.execute("DROP TABLE user_daily_metrics")
    with pytest.raises(MetricStorageError):
        store.apply(user_id="user-a", metric_date=DAY, incoming={"steps": 1}, source="ocr", confidence=0.9)


def test_concurrent_merges_on_different_metrics_both_land(store):
    store.apply(user_id="user-a", metric_date=DAY, incoming={"steps": 1}, source="ocr", confidence=0.9)
    keys = ["sleep_score", "readiness_score", "activity_score", "heart_rate", "weight", "glucose"]
    errors: list[BaseException] = []

    def write(key: str, value: int) -> None:
        try:
            store.apply(user_id="user-a", metric_date=DAY, incoming={key: value}, source="conversation", confidence=0.8)
        except (MetricStorageError, sqlite3.Error) as exc:
            errors.append(exc)

    threads = [threading.Thread(target=write, args=(key, 60 + index)) for index, key in enumerate(keys)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    metrics = store.get_record("user-a", DAY).metrics
    assert metrics["steps"] == 1
    assert {key: metrics[key] for key in keys} == {key: 60 + index for index, key in enumerate(keys)}
