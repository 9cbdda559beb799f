from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from metric_pipeline import (
    CorrectionEvent,
    CorrectionIntentDetector,
    CorrectionValueExtractor,
    DailyMetricRecord,
    IntentResult,
    MergeResult,
    MetricMap,
    MetricVocabulary,
    PayloadNormalizer,
    RuleSet,
    TrainingSample,
    build_rule_set,
    default_vocabulary,
    resolve_payload,
    select_original_map,
)
from metric_pipeline.ocr_metadata import detect_app_type, detect_screenshot_type, raw_ocr_text

from .catalog import MetricCatalog
from .daily_metrics import DailyMetricStore
from .database import MetricStorageError, SQLiteHealthDB
from .extraction_log import ExtractionLog
from .time_utils import normalize_metric_date
from .training import TrainingSampleRecorder

logger = logging.getLogger(__name__)

INGEST_SOURCES = {"ocr", "conversation"}
SOURCE_CONFIDENCE = {"ocr": 0.9, "conversation": 0.8, "correction": 1.0}


@dataclass
class IngestOutcome:
    metric_date: str
    payload_kind: str
    metrics: MetricMap
    merge: MergeResult
    app_type: str | None = None
    screenshot_type: str | None = None


@dataclass
class CorrectionOutcome:
    is_correction: bool
    intent: IntentResult
    metric_date: str | None = None
    event: CorrectionEvent | None = None
    merge: MergeResult | None = None
    storage_ok: bool = True
    training_sample_id: str | None = None

    @property
    def changed_keys(self) -> list[str]:
        if self.merge is not None:
            return list(self.merge.changed_keys)
        return []


class MetricService:
    """Ties the extraction pipeline to storage for one database.

    The vocabulary and rule set are built once and shared read-only by every
    request handled through this service.
    """

    def __init__(
        self,
        db: SQLiteHealthDB,
        vocabulary: MetricVocabulary | None = None,
        rule_set: RuleSet | None = None,
    ) -> None:
        self.db = db
        self.vocabulary = vocabulary or default_vocabulary()
        self.rule_set = rule_set or build_rule_set(self.vocabulary)
        self.normalizer = PayloadNormalizer(self.vocabulary)
        self.detector = CorrectionIntentDetector(self.rule_set)
        self.extractor = CorrectionValueExtractor(self.rule_set)
        self.catalog = MetricCatalog(db)
        self.catalog.seed(self.vocabulary)
        self.daily = DailyMetricStore(db, self.catalog, self.vocabulary)
        self.extractions = ExtractionLog(db)
        self.training = TrainingSampleRecorder(db)

    def ingest_payload(
        self,
        *,
        user_id: str,
        payload: Any,
        metric_date: str | None = None,
        session_key: str = "default",
        source: str = "ocr",
    ) -> IngestOutcome:
        if source not in INGEST_SOURCES:
            raise ValueError(f"Invalid ingest source: {source}")
        metric_date = normalize_metric_date(metric_date)
        resolved = resolve_payload(payload)
        metrics = self.normalizer.normalize_payload(resolved)

        ocr_text = raw_ocr_text(payload)
        app_type = detect_app_type(ocr_text) if ocr_text else None
        screenshot_type = detect_screenshot_type(ocr_text) if ocr_text else None

        merge = self.daily.apply(
            user_id=user_id,
            metric_date=metric_date,
            incoming=metrics,
            source=source,
            confidence=SOURCE_CONFIDENCE[source],
        )
        try:
            self.extractions.record(
                user_id=user_id,
                session_key=session_key,
                metric_date=metric_date,
                source=source,
                payload_kind=resolved.kind,
                metrics=metrics,
                app_type=app_type,
                screenshot_type=screenshot_type,
            )
        except sqlite3.Error as exc:
            logger.error("Failed to log extraction for %s: %s", user_id, exc)
            raise MetricStorageError("Failed to log extraction.") from exc

        logger.info(
            "Ingested %s payload for %s on %s: %d metric(s), %d changed",
            resolved.kind,
            user_id,
            metric_date,
            len(metrics),
            len(merge.changed_keys),
        )
        return IngestOutcome(
            metric_date=metric_date,
            payload_kind=resolved.kind,
            metrics=metrics,
            merge=merge,
            app_type=app_type,
            screenshot_type=screenshot_type,
        )

    def latest_extraction(self, *, user_id: str, session_key: str = "default") -> dict[str, Any] | None:
        return self.extractions.latest(user_id=user_id, session_key=session_key)

    def handle_message(
        self,
        *,
        user_id: str,
        message: str,
        session_key: str = "default",
        metric_date: str | None = None,
        history: Iterable[Mapping[str, Any]] = (),
    ) -> CorrectionOutcome:
        try:
            latest = self.latest_extraction(user_id=user_id, session_key=session_key)
        except sqlite3.Error as exc:
            logger.error("Could not load current metrics for %s: %s", user_id, exc)
            intent = self.detector.detect(message, None)
            return CorrectionOutcome(is_correction=False, intent=intent, storage_ok=False)

        if latest:
            current_map, baseline_date = latest["metrics"], latest["metric_date"]
        else:
            # Nothing stored for this session yet: the client may still hold an extraction in its history.
            current_map, baseline_date = self.normalizer.normalize(select_original_map(history)), None
        intent = self.detector.detect(message, current_map)
        if not intent.is_correction or intent.original_map is None:
            return CorrectionOutcome(is_correction=False, intent=intent)

        # Corrections land on the day of the extraction they correct unless a date is given.
        target_date = normalize_metric_date(metric_date or baseline_date)
        event = self.extractor.extract(message, intent.original_map)
        outcome = CorrectionOutcome(is_correction=True, intent=intent, metric_date=target_date, event=event)

        try:
            outcome.merge = self.daily.apply(
                user_id=user_id,
                metric_date=target_date,
                incoming=event.changes(),
                source="correction",
                confidence=SOURCE_CONFIDENCE["correction"],
            )
            if event.changed_keys:
                self.extractions.record(
                    user_id=user_id,
                    session_key=session_key,
                    metric_date=target_date,
                    source="correction",
                    payload_kind="correction",
                    metrics=event.corrected_map,
                )
        except (MetricStorageError, sqlite3.Error) as exc:
            logger.error("Correction %s for %s was not stored: %s", event.event_id, user_id, exc)
            outcome.storage_ok = False

        outcome.training_sample_id = self.training.record(event, user_id=user_id)
        return outcome

    def daily_record(self, *, user_id: str, metric_date: str | None = None) -> DailyMetricRecord:
        return self.daily.get_record(user_id, normalize_metric_date(metric_date))

    def training_samples(self, limit: int = 50, *, user_id: str | None = None) -> list[TrainingSample]:
        return self.training.list_samples(limit, user_id=user_id)

    def training_stats(self, *, user_id: str | None = None) -> dict[str, Any]:
        return self.training.stats(user_id=user_id)
