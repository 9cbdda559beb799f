from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .models import MetricMap
from .rules import RuleSet, normalize_message

logger = logging.getLogger(__name__)

EXTRACTION_KEYS = ("metrics", "structured_data", "structuredData")


@dataclass(frozen=True)
class IntentResult:
    is_correction: bool
    original_map: MetricMap | None = None
    matched_signals: tuple[str, ...] = ()


def extraction_map(message: Mapping[str, Any]) -> MetricMap | None:
    for key in EXTRACTION_KEYS:
        value = message.get(key)
        if isinstance(value, Mapping) and value:
            return dict(value)
    return None


def select_original_map(history: Iterable[Mapping[str, Any]]) -> MetricMap | None:
    """Map carried by the most recent extraction-bearing message, if any."""
    latest: MetricMap | None = None
    for message in history:
        if not isinstance(message, Mapping):
            continue
        found = extraction_map(message)
        if found is not None:
            latest = found
    return latest


class CorrectionIntentDetector:
    def __init__(self, rule_set: RuleSet) -> None:
        self.rule_set = rule_set

    def matched_signals(self, message: str) -> list[str]:
        text = normalize_message(message)
        if not text:
            return []
        return [signal.name for signal in self.rule_set.signals if signal.matches(text)]

    def detect(self, message: str, current_map: MetricMap | None) -> IntentResult:
        matched = self.matched_signals(message)
        if not matched:
            return IntentResult(is_correction=False)
        if not current_map:
            logger.debug("Correction phrasing %s ignored: no prior extraction", matched)
            return IntentResult(is_correction=False, matched_signals=tuple(matched))
        logger.info("Correction detected via %s", ", ".join(matched))
        return IntentResult(is_correction=True, original_map=dict(current_map), matched_signals=tuple(matched))
