from __future__ import annotations

from typing import Any, Iterable, Mapping

from .models import BOOLEAN, DURATION_MINUTES, MetricVocabularyEntry
from .vocabulary import MetricVocabulary


def format_value(entry: MetricVocabularyEntry | None, value: Any) -> str:
    if value is None:
        return "not recorded"
    if entry is None:
        return str(value)
    if entry.value_type == DURATION_MINUTES and isinstance(value, (int, float)):
        hours, minutes = divmod(int(value), 60)
        return f"{hours}h {minutes}m" if hours else f"{minutes}m"
    if entry.value_type == BOOLEAN:
        return "yes" if value else "no"
    if entry.unit and entry.unit not in {"minutes", "steps"}:
        joiner = "" if entry.unit.startswith(("/", "%", "°")) else " "
        return f"{value}{joiner}{entry.unit}"
    if entry.unit == "steps":
        return f"{value} steps"
    return str(value)


def describe_changes(
    vocabulary: MetricVocabulary,
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    keys: Iterable[str],
) -> list[str]:
    """Human-readable lines such as ``resting heart rate: 72 bpm → removed``."""
    lines: list[str] = []
    for key in keys:
        entry = vocabulary.get(key)
        label = entry.label if entry else key.replace("_", " ")
        new_value = after.get(key)
        new_text = "removed" if new_value is None else format_value(entry, new_value)
        lines.append(f"{label}: {format_value(entry, before.get(key))} → {new_text}")
    return lines
