from __future__ import annotations

import json
import uuid
from typing import Any

from metric_pipeline import MetricMap

from .database import SQLiteHealthDB
from .time_utils import to_iso, utc_now


class ExtractionLog:
    """Canonical maps produced per user session, newest last."""

    def __init__(self, db: SQLiteHealthDB) -> None:
        self._db = db

    def record(
        self,
        *,
        user_id: str,
        session_key: str,
        metric_date: str,
        source: str,
        payload_kind: str,
        metrics: MetricMap,
        app_type: str | None = None,
        screenshot_type: str | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        event_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO extraction_events (
                  id, user_id, session_key, metric_date, source, payload_kind,
                  app_type, screenshot_type, metrics_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    user_id,
                    session_key,
                    metric_date,
                    source,
                    payload_kind,
                    app_type,
                    screenshot_type,
                    json.dumps(metrics),
                    now,
                ),
            )
        return {"id": event_id, "metric_date": metric_date, "created_at": now}

    def latest(self, *, user_id: str, session_key: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, metric_date, source, payload_kind, app_type, screenshot_type, metrics_json, created_at
                FROM extraction_events
                WHERE user_id = ? AND session_key = ? AND metrics_json != '{}'
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (user_id, session_key),
            ).fetchone()
        if not row:
            return None
        record = dict(row)
        record["metrics"] = json.loads(record.pop("metrics_json"))
        return record
