from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any, Mapping

from metric_pipeline import (
    BOOLEAN,
    DURATION_MINUTES,
    NUMERIC,
    SOURCES,
    TEXT,
    DailyMetricRecord,
    FieldProvenance,
    MergeResult,
    MetricMap,
    MetricVocabulary,
    merge_maps,
)
from metric_pipeline.coercion import coerce_value, tidy_number

from .catalog import MetricCatalog
from .database import MetricStorageError, SQLiteHealthDB
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


def _encode(value_type: str, value: Any) -> tuple[float | None, str | None, int | None]:
    if value is None:
        return None, None, None
    if value_type in {NUMERIC, DURATION_MINUTES}:
        return float(value), None, None
    if value_type == BOOLEAN:
        return None, None, int(bool(value))
    return None, str(value), None


def _decode(row: sqlite3.Row) -> Any:
    data_type = row["data_type"]
    if data_type == NUMERIC and row["metric_value"] is not None:
        return tidy_number(float(row["metric_value"]))
    if data_type == DURATION_MINUTES and row["metric_value"] is not None:
        return int(round(row["metric_value"]))
    if data_type == BOOLEAN and row["boolean_value"] is not None:
        return bool(row["boolean_value"])
    if data_type == TEXT:
        return row["text_value"]
    return None


class DailyMetricStore:
    """Per-(user, date) metric record, written field by field."""

    def __init__(self, db: SQLiteHealthDB, catalog: MetricCatalog, vocabulary: MetricVocabulary) -> None:
        self._db = db
        self._catalog = catalog
        self._vocabulary = vocabulary

    def _read(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        metric_date: str,
    ) -> tuple[MetricMap, dict[str, FieldProvenance]]:
        rows = conn.execute(
            """
            SELECT sm.metric_key, sm.data_type, udm.metric_value, udm.text_value, udm.boolean_value,
                   udm.source, udm.confidence, udm.updated_at
            FROM user_daily_metrics udm
            JOIN standard_metrics sm ON sm.id = udm.metric_id
            WHERE udm.user_id = ? AND udm.metric_date = ?
            """,
            (user_id, metric_date),
        ).fetchall()
        by_key = {row["metric_key"]: row for row in rows}
        metrics: MetricMap = {}
        provenance: dict[str, FieldProvenance] = {}
        order = [key for key in self._vocabulary.keys() if key in by_key]
        order.extend(sorted(key for key in by_key if key not in self._vocabulary))
        for key in order:
            row = by_key[key]
            metrics[key] = _decode(row)
            provenance[key] = FieldProvenance(
                source=row["source"],
                confidence=float(row["confidence"]),
                updated_at=row["updated_at"],
            )
        return metrics, provenance

    def get_record(self, user_id: str, metric_date: str) -> DailyMetricRecord:
        try:
            with self._db.connection() as conn:
                metrics, provenance = self._read(conn, user_id, metric_date)
        except sqlite3.Error as exc:
            logger.error("Failed to read daily metrics for %s on %s: %s", user_id, metric_date, exc)
            raise MetricStorageError("Failed to read daily metrics.") from exc
        return DailyMetricRecord(user_id=user_id, metric_date=metric_date, metrics=metrics, provenance=provenance)

    def _typed(self, incoming: Mapping[str, Any]) -> MetricMap:
        typed: MetricMap = {}
        for key, value in incoming.items():
            entry = self._vocabulary.get(key)
            if entry is None:
                logger.warning("Dropping unknown metric key %s", key)
                continue
            if value is None:
                typed[key] = None
                continue
            coerced = coerce_value(value, entry.value_type)
            if coerced is None:
                logger.warning("Dropping %s: %r is not a valid %s", key, value, entry.value_type)
                continue
            typed[key] = coerced
        return typed

    def apply(
        self,
        *,
        user_id: str,
        metric_date: str,
        incoming: Mapping[str, Any],
        source: str,
        confidence: float,
    ) -> MergeResult:
        if source not in SOURCES:
            raise ValueError(f"Invalid source: {source}")
        if not (0.0 <= confidence <= 1.0):
            raise ValueError("Confidence must be between 0 and 1.")

        typed = self._typed(incoming)
        now = to_iso(utc_now())
        try:
            with self._db.transaction() as conn:
                existing, _ = self._read(conn, user_id, metric_date)
                metric_ids = self._catalog.lookup_ids(conn, typed.keys())
                writable = {key: value for key, value in typed.items() if key in metric_ids}
                result = merge_maps(existing, writable)
                for key in result.changed_keys:
                    metric_value, text_value, boolean_value = _encode(
                        self._vocabulary.entry(key).value_type, result.merged[key]
                    )
                    conn.execute(
                        """
                        INSERT INTO user_daily_metrics (
                          id, user_id, metric_id, metric_date, metric_value, text_value, boolean_value,
                          source, confidence, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, metric_id, metric_date) DO UPDATE SET
                          metric_value = excluded.metric_value,
                          text_value = excluded.text_value,
                          boolean_value = excluded.boolean_value,
                          source = excluded.source,
                          confidence = excluded.confidence,
                          updated_at = excluded.updated_at
                        """,
                        (
                            uuid.uuid4().hex,
                            user_id,
                            metric_ids[key],
                            metric_date,
                            metric_value,
                            text_value,
                            boolean_value,
                            source,
                            confidence,
                            now,
                            now,
                        ),
                    )
        except sqlite3.Error as exc:
            logger.error("Daily metric merge failed for %s on %s: %s", user_id, metric_date, exc)
            raise MetricStorageError("Failed to store daily metrics.") from exc

        if result.changed_keys:
            logger.info(
                "Stored %d changed metric(s) for %s on %s from %s",
                len(result.changed_keys),
                user_id,
                metric_date,
                source,
            )
        return result
