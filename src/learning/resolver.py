"""Conflict resolution for new values against existing knowledge base fields."""

import json
from datetime import datetime
from typing import Any

import structlog

from .models import ConflictResolution, ResolutionStrategy

logger = structlog.get_logger()

HIGH_CONFIDENCE_OVERRIDE = 90
FIELD_HISTORY_LIMIT = 10


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


class ConflictResolver:
    """Decides replace / merge / keep for a (current, new, confidence) triple."""

    def __init__(self, high_confidence_threshold: int = HIGH_CONFIDENCE_OVERRIDE):
        self.high_confidence_threshold = high_confidence_threshold

    def resolve(self, current: Any, new: Any, confidence: int) -> ConflictResolution:
        if _is_empty(current):
            return ConflictResolution(
                should_apply=True,
                strategy=ResolutionStrategy.REPLACE,
                reason="Field is empty, applying new value",
            )

        if isinstance(current, list) and isinstance(new, list):
            return ConflictResolution(
                should_apply=True,
                strategy=ResolutionStrategy.MERGE,
                reason="Both values are lists, merging with deduplication",
            )

        if isinstance(current, str) and isinstance(new, str):
            if current.strip().lower() == new.strip().lower():
                return ConflictResolution(
                    should_apply=False,
                    strategy=ResolutionStrategy.KEEP,
                    reason="New value is identical to current value",
                )
            if confidence >= self.high_confidence_threshold:
                return ConflictResolution(
                    should_apply=True,
                    strategy=ResolutionStrategy.REPLACE,
                    reason=f"High confidence ({confidence}%) override, replacing existing value",
                    track_history=True,
                )
            return ConflictResolution(
                should_apply=False,
                strategy=ResolutionStrategy.KEEP,
                reason=(
                    f"Confidence ({confidence}%) below threshold "
                    f"({self.high_confidence_threshold}%), keeping existing value"
                ),
            )

        if isinstance(current, dict) and isinstance(new, dict):
            return ConflictResolution(
                should_apply=True,
                strategy=ResolutionStrategy.MERGE,
                reason="Both values are records, merging properties",
            )

        return ConflictResolution(
            should_apply=False,
            strategy=ResolutionStrategy.KEEP,
            reason=f"Confidence ({confidence}%) not sufficient to override existing value",
        )


def merge_unique_strings(current: list[str], new: list[str]) -> list[str]:
    """Union of two string lists, case-insensitive, first-seen casing kept."""
    result = []
    seen = set()
    for item in [*current, *new]:
        key = item.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(item)
    return result


def _item_key(item: Any) -> str:
    if isinstance(item, str):
        return "s:" + item.lower()
    return "j:" + json.dumps(item, sort_keys=True, default=str)


def merge_array_field(current: list, new: list) -> list:
    """Append items from new not already present in current.

    Strings compare case-insensitively; records compare by canonical JSON.
    """
    merged = list(current or [])
    seen = {_item_key(item) for item in merged}
    for item in new:
        key = _item_key(item)
        if key not in seen:
            seen.add(key)
            merged.append(item)
    return merged


def merge_objects(current: dict, new: dict) -> dict:
    """Shallow property union; new keys win."""
    return {**(current or {}), **(new or {})}


def apply_resolution(current: Any, new: Any, resolution: ConflictResolution) -> Any:
    """Value the field should hold after the resolution is applied."""
    if not resolution.should_apply or resolution.strategy == ResolutionStrategy.KEEP:
        return current
    if resolution.strategy == ResolutionStrategy.MERGE:
        if isinstance(current, list) and isinstance(new, list):
            if all(isinstance(v, str) for v in [*current, *new]):
                return merge_unique_strings(current, new)
            return merge_array_field(current, new)
        if isinstance(current, dict) and isinstance(new, dict):
            return merge_objects(current, new)
    if resolution.strategy == ResolutionStrategy.APPEND and isinstance(current, list):
        return [*current, *(new if isinstance(new, list) else [new])]
    return new


def track_field_history(
    history: dict,
    field_name: str,
    previous: Any,
    new: Any,
    event_id: str,
    changed_at: datetime | None = None,
    limit: int = FIELD_HISTORY_LIMIT,
) -> dict:
    """Return a copy of history with one change appended for field_name.

    Only the last `limit` entries per field are kept.
    """
    updated = {k: list(v) for k, v in (history or {}).items()}
    entries = updated.setdefault(field_name, [])
    entries.append(
        {
            "previous_value": previous,
            "new_value": new,
            "changed_at": (changed_at or datetime.now()).isoformat(),
            "event_id": event_id,
        }
    )
    updated[field_name] = entries[-limit:]
    logger.debug("field_history_tracked", field=field_name, entries=len(updated[field_name]))
    return updated
