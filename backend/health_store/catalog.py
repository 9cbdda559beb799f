from __future__ import annotations

import logging
import sqlite3
from typing import Iterable

from metric_pipeline import MetricVocabulary

from .database import SQLiteHealthDB
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


def _metric_id(metric_key: str) -> str:
    return f"metric_{metric_key}"


class MetricCatalog:
    """Maps canonical metric keys to stored metric identifiers."""

    def __init__(self, db: SQLiteHealthDB) -> None:
        self._db = db

    def seed(self, vocabulary: MetricVocabulary) -> int:
        now = to_iso(utc_now())
        rows = [
            (
                _metric_id(entry.key),
                entry.key,
                entry.label,
                entry.category,
                entry.value_type,
                entry.unit or None,
                now,
            )
            for entry in vocabulary
        ]
        with self._db.connection() as conn:
            conn.executemany(
                """
                INSERT INTO standard_metrics (id, metric_key, display_name, category, data_type, unit, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(metric_key) DO UPDATE SET
                  display_name = excluded.display_name,
                  category = excluded.category,
                  data_type = excluded.data_type,
                  unit = excluded.unit
                """,
                rows,
            )
        return len(rows)

    def lookup_ids(self, conn: sqlite3.Connection, metric_keys: Iterable[str]) -> dict[str, str]:
        keys = list(dict.fromkeys(metric_keys))
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        rows = conn.execute(
            f"SELECT id, metric_key FROM standard_metrics WHERE metric_key IN ({placeholders})",
            tuple(keys),
        ).fetchall()
        found = {row["metric_key"]: row["id"] for row in rows}
        missing = [key for key in keys if key not in found]
        if missing:
            logger.warning("Dropping metrics missing from catalog: %s", ", ".join(missing))
        return found

    def list_metrics(self) -> list[dict[str, str]]:
        with self._db.connection() as conn:
            return [
                dict(row)
                for row in conn.execute(
                    """
                    SELECT id, metric_key, display_name, category, data_type, unit
                    FROM standard_metrics
                    ORDER BY category, metric_key
                    """
                ).fetchall()
            ]
