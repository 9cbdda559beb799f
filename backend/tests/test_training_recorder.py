from __future__ import annotations

from health_store import TrainingSampleRecorder
from metric_pipeline import CorrectionEvent


def _event(raw_text: str, original: dict, corrected: dict) -> CorrectionEvent:
    return CorrectionEvent(original_map=original, raw_text=raw_text, corrected_map=corrected)


def test_samples_are_appended_without_dedup(health_db):
    recorder = TrainingSampleRecorder(health_db)
    event = _event("sleep score was 60", {"sleep_score": 70}, {"sleep_score": 60})
    assert recorder.record(event)
    assert recorder.record(event)

    samples = recorder.list_samples()
    assert len(samples) == 2
    assert samples[0].original_map == {"sleep_score": 70}
    assert samples[0].corrected_map == {"sleep_score": 60}
    assert samples[0].raw_text == "sleep score was 60"
    assert samples[0].event_id == event.event_id


def test_explicit_null_survives_in_the_sample(health_db):
    recorder = TrainingSampleRecorder(health_db)
    recorder.record(_event("there is no sleep score", {"sleep_score": 70}, {"sleep_score": None}))
    assert recorder.list_samples()[0].corrected_map == {"sleep_score": None}


def test_stats_count_samples_per_changed_metric(health_db):
    recorder = TrainingSampleRecorder(health_db)
    recorder.record(_event("a", {"sleep_score": 70, "steps": 1}, {"sleep_score": 60, "steps": 2}))
    recorder.record(_event("b", {"sleep_score": 60}, {"sleep_score": None}))
    recorder.record(_event("c", {"steps": 2}, {"steps": 2}))
    assert recorder.stats() == {"total_samples": 3, "by_metric": {"sleep_score": 2, "steps": 1}}


def test_write_failure_is_logged_and_not_raised(health_db, caplog):
    with health_db.connection() as conn:
        conn.execute("DROP TABLE training_samples")
    recorder = TrainingSampleRecorder(health_db)
    event = _event("sleep score was 60", {"sleep_score": 70}, {"sleep_score": 60})
    assert recorder.record(event) is None
    assert "not stored" in caplog.text


def test_correction_survives_training_write_failure(service, health_db):
    service.ingest_payload(user_id="user-a", payload={"sleepScore": 70}, metric_date="2026-03-02")
    with health_db.connection() as conn:
        conn.execute("DROP TABLE training_samples")

    outcome = service.handle_message(user_id="user-a", message="sleep score was 60")
    assert outcome.storage_ok is True
    assert outcome.training_sample_id is None
    assert service.daily_record(user_id="user-a", metric_date="2026-03-02").metrics == {"sleep_score": 60}


def test_reads_can_be_scoped_to_one_user(health_db):
    recorder = TrainingSampleRecorder(health_db)
    recorder.record(_event("sleep score was 60", {"sleep_score": 70}, {"sleep_score": 60}), user_id="user-a")
    recorder.record(_event("steps were 9000", {"steps": 900}, {"steps": 9000}), user_id="user-b")

    assert [sample.raw_text for sample in recorder.list_samples(user_id="user-b")] == ["steps were 9000"]
    assert recorder.list_samples(user_id="user-c") == []
    assert recorder.stats(user_id="user-a") == {"total_samples": 1, "by_metric": {"sleep_score": 1}}
    assert recorder.stats()["total_samples"] == 2
