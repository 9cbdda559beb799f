from __future__ import annotations

from typing import Any, Mapping

from .models import MergeResult, MetricMap


def merge_maps(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> MergeResult:
    """Field-level upsert of ``incoming`` onto ``existing``.

    Only keys present in ``incoming`` are considered. A key changes when the
    incoming value differs from the stored one, an explicit ``None`` included.
    A missing key and a ``None`` value are the same thing.
    """
    merged: MetricMap = dict(existing)
    changed: list[str] = []
    for key, value in incoming.items():
        if existing.get(key) == value:
            continue
        merged[key] = value
        changed.append(key)
    return MergeResult(merged=merged, changed_keys=changed)
