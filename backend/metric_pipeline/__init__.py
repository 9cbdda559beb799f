from .changes import describe_changes, format_value
from .extractor import CorrectionValueExtractor
from .intent import CorrectionIntentDetector, IntentResult, select_original_map
from .merge import merge_maps
from .models import (
    BOOLEAN,
    DURATION_MINUTES,
    NUMERIC,
    SOURCES,
    TEXT,
    CorrectionEvent,
    DailyMetricRecord,
    FieldProvenance,
    MergeResult,
    MetricMap,
    MetricVocabularyEntry,
    TrainingSample,
)
from .normalizer import PayloadNormalizer, resolve_payload
from .rules import CorrectionRule, RuleSet, SignalPattern, build_rule_set, default_rule_set
from .vocabulary import MetricVocabulary, default_vocabulary

__all__ = [
    "BOOLEAN",
    "DURATION_MINUTES",
    "NUMERIC",
    "SOURCES",
    "TEXT",
    "CorrectionEvent",
    "CorrectionIntentDetector",
    "CorrectionRule",
    "CorrectionValueExtractor",
    "DailyMetricRecord",
    "FieldProvenance",
    "IntentResult",
    "MergeResult",
    "MetricMap",
    "MetricVocabulary",
    "MetricVocabularyEntry",
    "PayloadNormalizer",
    "RuleSet",
    "SignalPattern",
    "TrainingSample",
    "build_rule_set",
    "default_rule_set",
    "default_vocabulary",
    "describe_changes",
    "format_value",
    "merge_maps",
    "resolve_payload",
    "select_original_map",
]
