from __future__ import annotations

from typing import Any, Mapping

RAW_TEXT_KEYS = ("rawOcrText", "raw_ocr_text", "raw_text", "ocr_text")

_APP_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("oura", ("oura", "ōura")),
    ("apple_health", ("apple health", "health app", "healthkit")),
    ("google_fit", ("google fit", "googlefit")),
    ("samsung_health", ("samsung health", "s health")),
    ("fitbit", ("fitbit",)),
    ("garmin", ("garmin",)),
    ("whoop", ("whoop",)),
    ("polar", ("polar flow", "polar")),
)

_SCREENSHOT_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sleep", ("sleep", "bedtime")),
    ("activity", ("activity", "steps", "calories")),
    ("readiness", ("readiness", "recovery")),
    ("heart_rate", ("heart rate", "hrv")),
    ("glucose", ("glucose", "blood sugar")),
)


def raw_ocr_text(payload: Any) -> str:
    if not isinstance(payload, Mapping):
        return ""
    for key in RAW_TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def detect_app_type(ocr_text: str) -> str:
    text = (ocr_text or "").lower()
    for app_type, markers in _APP_MARKERS:
        if any(marker in text for marker in markers):
            return app_type
    return "unknown"


def detect_screenshot_type(ocr_text: str) -> str:
    text = (ocr_text or "").lower()
    for screenshot_type, markers in _SCREENSHOT_MARKERS:
        if any(marker in text for marker in markers):
            return screenshot_type
    return "general"
