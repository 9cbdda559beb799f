from __future__ import annotations

from sse_utils import event_data, event_names, parse_sse_events, streamed_text

DAY = "2026-03-02"


def _ingest(client, headers, payload: dict, **extra):
    return client.post("/metrics/ingest", headers=headers, json={"payload": payload, "metric_date": DAY, **extra})


def _chat(client, headers, message: str, **extra) -> list[dict]:
    response = client.post("/chat/stream", headers=headers, json={"message": message, **extra})
    assert response.status_code == 200
    assert "text/event-stream" in response.headers.get("content-type", "")
    return parse_sse_events(response.text)


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_identity_is_rejected(client):
    assert client.post("/metrics/ingest", json={"payload": {}}).status_code == 401
    assert client.get("/metrics/daily", headers={"X-User-Id": "../etc"}).status_code == 400


def test_ingest_then_read_daily_record(client, auth_headers):
    headers = auth_headers("user-a")
    response = _ingest(client, headers, {"context_data": [{"key": "sleep_score", "value": 82, "should_store": True}]})
    assert response.status_code == 200
    body = response.json()
    assert body["payload_kind"] == "context_data"
    assert body["changed_keys"] == ["sleep_score"]

    daily = client.get("/metrics/daily", headers=headers, params={"metric_date": DAY}).json()
    assert daily["metrics"] == {"sleep_score": 82}
    assert daily["provenance"]["sleep_score"]["source"] == "ocr"

    latest = client.get("/metrics/latest", headers=headers).json()
    assert latest["metrics"] == {"sleep_score": 82}


def test_ingest_rejects_bad_input(client, auth_headers):
    headers = auth_headers("user-a")
    assert _ingest(client, headers, {"sleepScore": 1}, source="correction").status_code == 400
    bad_date = client.post(
        "/metrics/ingest",
        headers=headers,
        json={"payload": {"sleepScore": 1}, "metric_date": "yesterday-ish"},
    )
    assert bad_date.status_code == 400


def test_ingest_storage_failure_returns_503(client, auth_headers, backend_module):
    with backend_module.container.db.connection() as conn:
        conn.execute("DROP TABLE user_daily_metrics")
    assert _ingest(client, auth_headers("user-a"), {"sleepScore": 70}).status_code == 503


def test_chat_correction_streams_change_then_reply(client, auth_headers):
    headers = auth_headers("user-a")
    _ingest(client, headers, {"sleepScore": 70, "restingHeartRate": 72})

    events = _chat(client, headers, "That's not my resting heart rate, it's my latest heart rate")
    event_types = event_names(events)
    assert event_types[0] == "correction"
    assert "token" in event_types
    assert event_types[-1] == "message"

    correction = event_data(events, "correction")
    assert correction["saved"] is True
    assert correction["changed_keys"] == ["resting_heart_rate"]
    assert correction["changes"] == {"resting_heart_rate": None}
    assert correction["summary"] == ["resting heart rate: 72 bpm → removed"]

    reply = event_data(events, "message")["text"]
    assert "resting heart rate" in reply
    assert streamed_text(events) == reply

    daily = client.get("/metrics/daily", headers=headers, params={"metric_date": DAY}).json()
    assert daily["metrics"] == {"sleep_score": 70, "resting_heart_rate": None}
    assert daily["provenance"]["resting_heart_rate"]["source"] == "correction"


def test_ordinary_chat_has_no_correction_event(client, auth_headers):
    headers = auth_headers("user-a")
    _ingest(client, headers, {"sleepScore": 70})
    events = _chat(client, headers, "thanks, what does a sleep score measure?")
    event_types = set(event_names(events))
    assert "correction" not in event_types
    assert "message" in event_types


def test_chat_storage_failure_degrades_to_a_reply(client, auth_headers, backend_module):
    headers = auth_headers("user-a")
    _ingest(client, headers, {"sleepScore": 70})
    with backend_module.container.db.connection() as conn:
        conn.execute("DROP TABLE user_daily_metrics")

    events = _chat(client, headers, "sleep score was 60")
    assert "error" not in set(event_names(events))
    assert event_data(events, "correction")["saved"] is False
    assert "couldn't save" in event_data(events, "message")["text"]


def test_training_endpoints_report_corrections(client, auth_headers):
    headers = auth_headers("user-a")
    _ingest(client, headers, {"sleepScore": 70})
    _chat(client, headers, "sleep score was 60")

    samples = client.get("/training/samples", headers=headers, params={"limit": 5}).json()["items"]
    assert len(samples) == 1
    assert samples[0]["original_map"] == {"sleep_score": 70}
    assert samples[0]["corrected_map"] == {"sleep_score": 60}

    stats = client.get("/training/stats", headers=headers).json()
    assert stats == {"total_samples": 1, "by_metric": {"sleep_score": 1}}


def test_users_do_not_share_baselines(client, auth_headers):
    _ingest(client, auth_headers("user-a"), {"sleepScore": 70})
    events = _chat(client, auth_headers("user-b"), "sleep score was 60")
    assert "correction" not in set(event_names(events))
    daily = client.get("/metrics/daily", headers=auth_headers("user-a"), params={"metric_date": DAY}).json()
    assert daily["metrics"] == {"sleep_score": 70}


def test_catalog_lists_every_vocabulary_metric(client, auth_headers, backend_module):
    items = client.get("/metrics/catalog", headers=auth_headers("user-a")).json()["items"]
    keys = {item["metric_key"] for item in items}
    assert keys == set(backend_module.container.metrics.vocabulary.keys())
    total_sleep = next(item for item in items if item["metric_key"] == "total_sleep")
    assert total_sleep["data_type"] == "duration_minutes"
    assert total_sleep["unit"] == "minutes"


def test_training_endpoints_only_show_the_callers_samples(client, auth_headers):
    owner = auth_headers("user-a")
    _ingest(client, owner, {"sleepScore": 70})
    _chat(client, owner, "sleep score was 60, I have insomnia again")

    other = auth_headers("user-b")
    assert client.get("/training/samples", headers=other).json()["items"] == []
    assert client.get("/training/stats", headers=other).json() == {"total_samples": 0, "by_metric": {}}

    owned = client.get("/training/samples", headers=owner).json()["items"]
    assert [sample["raw_text"] for sample in owned] == ["sleep score was 60, I have insomnia again"]
    assert "user_id" not in owned[0]
