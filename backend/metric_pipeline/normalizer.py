from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .coercion import coerce_value, parse_bool
from .models import MetricMap
from .vocabulary import MetricVocabulary, alias_token

logger = logging.getLogger(__name__)

CONTEXT_DATA_KEYS = ("context_data", "contextData")
DAILY_SUMMARY_KEYS = ("daily_summary", "dailySummary")


@dataclass(frozen=True)
class FlatPayload:
    fields: Mapping[str, Any]
    kind: str = field(default="flat", init=False)

    def raw_fields(self) -> list[tuple[str, Any]]:
        return list(self.fields.items())


@dataclass(frozen=True)
class ContextListPayload:
    entries: tuple[Mapping[str, Any], ...]
    kind: str = field(default="context_data", init=False)

    def raw_fields(self) -> list[tuple[str, Any]]:
        fields: list[tuple[str, Any]] = []
        for entry in self.entries:
            if parse_bool(entry.get("should_store")) is not True:
                continue
            key = entry.get("key")
            if isinstance(key, str) and key.strip():
                fields.append((key, entry.get("value")))
        # Later statements about the same field supersede earlier ones.
        fields.reverse()
        return fields


@dataclass(frozen=True)
class DailySummaryPayload:
    summary: Mapping[str, Any]
    kind: str = field(default="daily_summary", init=False)

    def raw_fields(self) -> list[tuple[str, Any]]:
        return list(self.summary.items())


@dataclass(frozen=True)
class EmptyPayload:
    kind: str = field(default="empty", init=False)

    def raw_fields(self) -> list[tuple[str, Any]]:
        return []


OcrPayload = Union[FlatPayload, ContextListPayload, DailySummaryPayload, EmptyPayload]


def _first_present(raw: Mapping[str, Any], names: tuple[str, ...]) -> tuple[bool, Any]:
    for name in names:
        if name in raw:
            return True, raw[name]
    return False, None


def resolve_payload(raw: Any) -> OcrPayload:
    """Decide once which of the OCR payload shapes ``raw`` is."""
    if not isinstance(raw, Mapping) or not raw:
        return EmptyPayload()

    present, context_data = _first_present(raw, CONTEXT_DATA_KEYS)
    if present:
        if not isinstance(context_data, list):
            return EmptyPayload()
        return ContextListPayload(tuple(entry for entry in context_data if isinstance(entry, Mapping)))

    present, summary = _first_present(raw, DAILY_SUMMARY_KEYS)
    if present:
        if not isinstance(summary, Mapping):
            return EmptyPayload()
        return DailySummaryPayload(summary)

    return FlatPayload(raw)


class PayloadNormalizer:
    def __init__(self, vocabulary: MetricVocabulary) -> None:
        self.vocabulary = vocabulary

    def normalize(self, raw: Any) -> MetricMap:
        return self.normalize_payload(resolve_payload(raw))

    def normalize_payload(self, payload: OcrPayload) -> MetricMap:
        index: dict[str, Any] = {}
        for name, value in payload.raw_fields():
            if value is None:
                continue
            index.setdefault(alias_token(name), value)

        result: MetricMap = {}
        for entry in self.vocabulary:
            for token in self.vocabulary.alias_tokens(entry.key):
                if token not in index:
                    continue
                value = coerce_value(index[token], entry.value_type)
                if value is None:
                    logger.debug("Skipping uncoercible %s value for %s", token, entry.key)
                    continue
                result[entry.key] = value
                break

        if index and not result:
            logger.info("Payload of shape %s carried no recognized metrics", payload.kind)
        return result
