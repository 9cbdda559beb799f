from __future__ import annotations

import math
import re
from typing import Any

from .models import BOOLEAN, DURATION_MINUTES, NUMERIC, TEXT

_HOURS = r"(?:hours?|hrs?|h)(?![a-z])"
_MINUTES = r"(?:minutes?|mins?|m)(?![a-z])"

DURATION_PATTERN = (
    rf"(?P<hours>\d+(?:\.\d+)?)\s*{_HOURS}(?:\s*(?:and\s*)?(?P<minutes>\d+)\s*{_MINUTES})?"
    rf"|(?P<only_minutes>\d+)\s*{_MINUTES}"
)
_DURATION_RE = re.compile(DURATION_PATTERN, re.IGNORECASE)
_CLOCK_RE = re.compile(r"^\s*(\d{1,2})\s*:\s*(\d{2})\s*$")
_NUMBER_RE = re.compile(r"[-+]?\d+(?:\.\d+)?")
_THOUSANDS_RE = re.compile(r"(?<=\d),(?=\d{3}\b)")

_TRUE_WORDS = {"true", "yes", "y", "1", "on"}
_FALSE_WORDS = {"false", "no", "n", "0", "off"}


def tidy_number(value: float) -> int | float | None:
    """Integral floats become ints; NaN and infinities become ``None``."""
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def parse_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return tidy_number(value)
    if not isinstance(value, str):
        return None
    cleaned = _THOUSANDS_RE.sub("", value.strip())
    match = _NUMBER_RE.search(cleaned)
    if not match:
        return None
    return tidy_number(float(match.group(0)))


def duration_from_match(match: re.Match[str]) -> int | None:
    hours = match.group("hours")
    minutes = match.group("minutes")
    only_minutes = match.group("only_minutes")
    if hours is not None:
        total = float(hours) * 60 + (int(minutes) if minutes else 0)
        return int(round(total)) if math.isfinite(total) else None
    if only_minutes is not None:
        return int(only_minutes)
    return None


def parse_duration_minutes(value: Any) -> int | None:
    """Total minutes from a number of minutes or text like "7h 30m", "45 min" or "7:30"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(round(value)) if value >= 0 else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    clock = _CLOCK_RE.match(text)
    if clock:
        return int(clock.group(1)) * 60 + int(clock.group(2))
    match = _DURATION_RE.search(text)
    if match:
        return duration_from_match(match)
    if text.isdigit():
        return int(text)
    return None


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return None


def parse_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


_COERCERS = {
    NUMERIC: parse_number,
    DURATION_MINUTES: parse_duration_minutes,
    BOOLEAN: parse_bool,
    TEXT: parse_text,
}


def coerce_value(value: Any, value_type: str) -> Any:
    """Coerce a raw value to the metric type; ``None`` when it can't be."""
    return _COERCERS[value_type](value)
