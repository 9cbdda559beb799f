from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections import Counter
from typing import Any

from metric_pipeline import CorrectionEvent, TrainingSample

from .database import SQLiteHealthDB
from .time_utils import to_iso

logger = logging.getLogger(__name__)


class TrainingSampleRecorder:
    """Append-only store of (original, corrected, raw text) correction triples.

    Writes are best effort: a failure is logged and reported as ``None`` so the
    caller's metric update and reply are never affected. Rows remember which
    user made the correction so reads can be scoped to that user; the returned
    samples never carry the user id.
    """

    def __init__(self, db: SQLiteHealthDB) -> None:
        self._db = db

    def record(self, event: CorrectionEvent, *, user_id: str | None = None) -> str | None:
        sample_id = uuid.uuid4().hex
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO training_samples (
                      id, event_id, user_id, original_json, corrected_json, changed_keys_json, raw_text, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sample_id,
                        event.event_id,
                        user_id,
                        json.dumps(event.original_map),
                        json.dumps(event.corrected_map),
                        json.dumps(event.changed_keys),
                        event.raw_text,
                        to_iso(event.created_at),
                    ),
                )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.warning("Training sample for correction %s not stored: %s", event.event_id, exc)
            return None
        return sample_id

    @staticmethod
    def _scope(user_id: str | None) -> tuple[str, tuple[Any, ...]]:
        # None reads every user's rows (offline export); a user id reads only that user's.
        if user_id is None:
            return "", ()
        return "WHERE user_id = ?", (user_id,)

    def list_samples(self, limit: int = 50, *, user_id: str | None = None) -> list[TrainingSample]:
        where, params = self._scope(user_id)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT event_id, original_json, corrected_json, raw_text, created_at
                FROM training_samples
                {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (*params, max(1, limit)),
            ).fetchall()
        return [
            TrainingSample(
                original_map=json.loads(row["original_json"]),
                corrected_map=json.loads(row["corrected_json"]),
                raw_text=row["raw_text"],
                created_at=row["created_at"],
                event_id=row["event_id"],
            )
            for row in rows
        ]

    def stats(self, *, user_id: str | None = None) -> dict[str, Any]:
        where, params = self._scope(user_id)
        with self._db.connection() as conn:
            rows = conn.execute(f"SELECT changed_keys_json FROM training_samples {where}", params).fetchall()
        by_metric: Counter[str] = Counter()
        for row in rows:
            by_metric.update(json.loads(row["changed_keys_json"]))
        return {
            "total_samples": len(rows),
            "by_metric": dict(sorted(by_metric.items())),
        }
