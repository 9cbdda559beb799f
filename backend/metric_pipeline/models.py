from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


NUMERIC = "numeric"
DURATION_MINUTES = "duration_minutes"
TEXT = "text"
BOOLEAN = "boolean"
VALUE_TYPES = {NUMERIC, DURATION_MINUTES, TEXT, BOOLEAN}

SOURCES = {"ocr", "conversation", "correction"}

# Canonical metric maps are plain insertion-ordered dicts: metric_key -> value | None.
MetricMap = dict[str, Any]


@dataclass(frozen=True)
class MetricVocabularyEntry:
    key: str
    value_type: str
    aliases: tuple[str, ...] = ()
    spoken_names: tuple[str, ...] = ()
    qualitative_bounds: tuple[float, float] | None = None
    category: str = "health"
    unit: str = ""
    display_name: str = ""

    def __post_init__(self) -> None:
        if self.value_type not in VALUE_TYPES:
            raise ValueError(f"Unsupported value type for {self.key}: {self.value_type}")

    @property
    def label(self) -> str:
        return self.display_name or self.key.replace("_", " ")


@dataclass(frozen=True)
class CorrectionEvent:
    original_map: MetricMap
    raw_text: str
    corrected_map: MetricMap
    ambiguous_keys: tuple[str, ...] = ()
    applied_rules: tuple[str, ...] = ()
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changed_keys(self) -> list[str]:
        return [key for key, value in self.corrected_map.items() if self.original_map.get(key) != value]

    def changes(self) -> MetricMap:
        return {key: self.corrected_map[key] for key in self.changed_keys}


@dataclass
class MergeResult:
    merged: MetricMap
    changed_keys: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_keys)


@dataclass(frozen=True)
class FieldProvenance:
    source: str
    confidence: float
    updated_at: str

    def as_dict(self) -> dict[str, Any]:
        return {"source": self.source, "confidence": self.confidence, "updated_at": self.updated_at}


@dataclass
class DailyMetricRecord:
    user_id: str
    metric_date: str
    metrics: MetricMap = field(default_factory=dict)
    provenance: dict[str, FieldProvenance] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "metric_date": self.metric_date,
            "metrics": dict(self.metrics),
            "provenance": {key: value.as_dict() for key, value in self.provenance.items()},
        }


@dataclass(frozen=True)
class TrainingSample:
    original_map: MetricMap
    corrected_map: MetricMap
    raw_text: str
    created_at: str
    event_id: str = ""
