from __future__ import annotations

import re
from types import MappingProxyType
from typing import Iterable, Iterator

from .models import BOOLEAN, DURATION_MINUTES, NUMERIC, TEXT, MetricVocabularyEntry


def alias_token(name: str) -> str:
    """Case- and separator-insensitive form of a raw field name."""
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


class MetricVocabulary:
    """Read-only table of canonical metric keys, their types and their aliases."""

    def __init__(self, entries: Iterable[MetricVocabularyEntry]) -> None:
        ordered: dict[str, MetricVocabularyEntry] = {}
        spoken: dict[str, str] = {}
        for entry in entries:
            if entry.key in ordered:
                raise ValueError(f"Duplicate metric key: {entry.key}")
            ordered[entry.key] = entry
            for name in entry.spoken_names:
                normalized = " ".join(name.lower().split())
                owner = spoken.get(normalized)
                if owner and owner != entry.key:
                    raise ValueError(f"Spoken name '{name}' claimed by both {owner} and {entry.key}")
                spoken[normalized] = entry.key
        self._entries = MappingProxyType(ordered)
        self._spoken = MappingProxyType(spoken)
        self._alias_tokens = MappingProxyType(
            {key: tuple(alias_token(alias) for alias in entry.aliases) for key, entry in ordered.items()}
        )
        self._mention_re = self._compile_mentions(spoken)

    @staticmethod
    def _compile_mentions(spoken: dict[str, str]) -> re.Pattern[str] | None:
        if not spoken:
            return None
        return re.compile(rf"(?<![a-z0-9])(?P<alias>{MetricVocabulary.alternation(spoken)})(?![a-z0-9])")

    @staticmethod
    def alternation(names: Iterable[str]) -> str:
        # Longest first so "resting heart rate" wins over "heart rate" at the same position.
        ordered = sorted({name for name in names}, key=lambda name: (-len(name), name))
        return "|".join(re.escape(name).replace(r"\ ", r"\s+") for name in ordered)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[MetricVocabularyEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def entry(self, key: str) -> MetricVocabularyEntry:
        try:
            return self._entries[key]
        except KeyError:
            raise KeyError(f"Unknown metric key: {key}") from None

    def get(self, key: str) -> MetricVocabularyEntry | None:
        return self._entries.get(key)

    def alias_tokens(self, key: str) -> tuple[str, ...]:
        return self._alias_tokens.get(key, ())

    def spoken_names(self, value_types: set[str] | None = None) -> dict[str, str]:
        if value_types is None:
            return dict(self._spoken)
        return {
            name: key
            for name, key in self._spoken.items()
            if self._entries[key].value_type in value_types
        }

    def key_for_spoken(self, name: str) -> str | None:
        return self._spoken.get(" ".join(name.lower().split()))

    def mentioned_keys(self, text: str, value_types: set[str] | None = None) -> list[str]:
        """Metric keys named in lower-cased free text, in order of first mention."""
        if self._mention_re is None:
            return []
        found: list[str] = []
        for match in self._mention_re.finditer(text):
            key = self.key_for_spoken(match.group("alias"))
            if not key or key in found:
                continue
            if value_types is not None and self._entries[key].value_type not in value_types:
                continue
            found.append(key)
        return found


_QUALITATIVE_SCORE = (30.0, 85.0)

DEFAULT_ENTRIES: tuple[MetricVocabularyEntry, ...] = (
    MetricVocabularyEntry(
        key="sleep_score",
        value_type=NUMERIC,
        aliases=("sleep_score", "sleepScore", "sleep_quality_score"),
        spoken_names=("sleep score", "sleep"),
        qualitative_bounds=_QUALITATIVE_SCORE,
        category="sleep",
        unit="/100",
    ),
    MetricVocabularyEntry(
        key="readiness_score",
        value_type=NUMERIC,
        aliases=("readiness_score", "readinessScore", "readiness"),
        spoken_names=("readiness score", "readiness"),
        qualitative_bounds=_QUALITATIVE_SCORE,
        category="wellness",
        unit="/100",
    ),
    MetricVocabularyEntry(
        key="activity_score",
        value_type=NUMERIC,
        aliases=("activity_score", "activityScore", "activity"),
        spoken_names=("activity score", "activity"),
        qualitative_bounds=_QUALITATIVE_SCORE,
        category="activity",
        unit="/100",
    ),
    MetricVocabularyEntry(
        key="total_sleep",
        value_type=DURATION_MINUTES,
        aliases=("total_sleep", "totalSleep", "sleep_duration", "sleep_hours", "total_sleep_minutes"),
        spoken_names=("total sleep", "total sleep time", "sleep duration", "slept for"),
        category="sleep",
        unit="minutes",
    ),
    MetricVocabularyEntry(
        key="deep_sleep",
        value_type=DURATION_MINUTES,
        aliases=("deep_sleep", "deepSleep"),
        spoken_names=("deep sleep", "deep"),
        category="sleep",
        unit="minutes",
    ),
    MetricVocabularyEntry(
        key="rem_sleep",
        value_type=DURATION_MINUTES,
        aliases=("rem_sleep", "remSleep"),
        spoken_names=("rem sleep", "rem"),
        category="sleep",
        unit="minutes",
        display_name="REM sleep",
    ),
    MetricVocabularyEntry(
        key="time_in_bed",
        value_type=DURATION_MINUTES,
        aliases=("time_in_bed", "timeInBed"),
        spoken_names=("time in bed",),
        category="sleep",
        unit="minutes",
    ),
    MetricVocabularyEntry(
        key="sleep_efficiency",
        value_type=NUMERIC,
        aliases=("sleep_efficiency", "sleepEfficiency"),
        spoken_names=("sleep efficiency", "efficiency"),
        category="sleep",
        unit="%",
    ),
    MetricVocabularyEntry(
        key="resting_heart_rate",
        value_type=NUMERIC,
        aliases=(
            "resting_heart_rate",
            "restingHeartRate",
            "rhr",
            "lowest_heart_rate",
            "heart_rate",
            "heartRate",
        ),
        spoken_names=("resting heart rate", "resting hr", "rhr"),
        category="health",
        unit="bpm",
    ),
    MetricVocabularyEntry(
        key="heart_rate",
        value_type=NUMERIC,
        aliases=("heart_rate", "heartRate", "latest_heart_rate", "averageHeartRate", "average_heart_rate"),
        spoken_names=("heart rate", "hr", "latest heart rate", "current heart rate", "pulse"),
        category="health",
        unit="bpm",
    ),
    MetricVocabularyEntry(
        key="heart_rate_variability",
        value_type=NUMERIC,
        aliases=("heart_rate_variability", "heartRateVariability", "hrv", "hrv_balance"),
        spoken_names=("heart rate variability", "hrv"),
        category="health",
        unit="ms",
        display_name="HRV",
    ),
    MetricVocabularyEntry(
        key="respiratory_rate",
        value_type=NUMERIC,
        aliases=("respiratory_rate", "respiratoryRate", "breathing_rate"),
        spoken_names=("respiratory rate", "breathing rate"),
        category="health",
        unit="breaths/min",
    ),
    MetricVocabularyEntry(
        key="body_temperature",
        value_type=NUMERIC,
        aliases=("body_temperature", "bodyTemperature", "temperature"),
        spoken_names=("body temperature", "temperature", "temp"),
        category="health",
        unit="°F",
    ),
    MetricVocabularyEntry(
        key="oxygen_saturation",
        value_type=NUMERIC,
        aliases=("oxygen_saturation", "oxygenSaturation", "spo2"),
        spoken_names=("oxygen saturation", "blood oxygen", "spo2"),
        category="health",
        unit="%",
    ),
    MetricVocabularyEntry(
        key="glucose",
        value_type=NUMERIC,
        aliases=("glucose", "glucose_level", "glucoseLevel", "blood_sugar"),
        spoken_names=("glucose", "blood sugar"),
        category="health",
        unit="mg/dL",
    ),
    MetricVocabularyEntry(
        key="steps",
        value_type=NUMERIC,
        aliases=("steps", "step_count", "stepCount"),
        spoken_names=("steps", "step count"),
        category="activity",
        unit="steps",
    ),
    MetricVocabularyEntry(
        key="calories_burned",
        value_type=NUMERIC,
        aliases=("calories_burned", "caloriesBurned", "calories", "active_calories"),
        spoken_names=("calories burned", "calories", "active calories"),
        category="activity",
        unit="cal",
    ),
    MetricVocabularyEntry(
        key="weight",
        value_type=NUMERIC,
        aliases=("weight", "body_weight", "bodyWeight"),
        spoken_names=("weight",),
        category="health",
        unit="lbs",
    ),
    MetricVocabularyEntry(
        key="mood",
        value_type=TEXT,
        aliases=("mood",),
        category="wellness",
    ),
    MetricVocabularyEntry(
        key="app_name",
        value_type=TEXT,
        aliases=("app_name", "appName", "source_app"),
        category="meta",
    ),
    MetricVocabularyEntry(
        key="traveling",
        value_type=BOOLEAN,
        aliases=("traveling", "travel", "travel_status"),
        category="lifestyle",
    ),
)


def default_vocabulary() -> MetricVocabulary:
    return MetricVocabulary(DEFAULT_ENTRIES)
