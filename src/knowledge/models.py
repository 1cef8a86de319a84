"""Knowledge base record and the schema-less knowledge bag."""

import json
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

# Bag keys owned by the engine's provenance and metrics side channels
AUDIT_LOG_KEY = "audit_log"
SNAPSHOTS_KEY = "snapshots"
FIELD_HISTORY_KEY = "field_history"
METRICS_KEY = "metrics"
RESERVED_BAG_KEYS = frozenset({AUDIT_LOG_KEY, SNAPSHOTS_KEY, FIELD_HISTORY_KEY, METRICS_KEY})

# Scalar text fields the engine may write to
SCALAR_FIELDS = (
    "biggest_bottleneck",
    "top_objection",
    "core_offer",
    "ideal_customer",
    "primary_goal",
)
LIST_FIELDS = ("tool_stack",)
BAG_FIELD = "knowledge"


class BagValueError(ValueError):
    """Value does not fit any supported knowledge bag shape."""


class BagValueKind(StrEnum):
    TEXT = "text"
    TEXT_LIST = "text_list"
    RECORD_LIST = "record_list"
    RECORD = "record"


def classify_bag_value(value: Any) -> BagValueKind:
    """Return the tag for a bag value, or raise BagValueError.

    Empty lists classify as TEXT_LIST; they are compatible with either list kind.
    """
    if isinstance(value, str):
        return BagValueKind.TEXT
    if isinstance(value, dict):
        return BagValueKind.RECORD
    if isinstance(value, list):
        if all(isinstance(v, str) for v in value):
            return BagValueKind.TEXT_LIST
        if all(isinstance(v, dict) for v in value):
            return BagValueKind.RECORD_LIST
        raise BagValueError("List mixes text and records")
    raise BagValueError(f"Unsupported bag value type: {type(value).__name__}")


class KnowledgeBag(MutableMapping):
    """Dynamically keyed extension storage with tagged-union values."""

    def __init__(self, data: dict | None = None):
        self._data: dict[str, Any] = {}
        for key, value in (data or {}).items():
            self[key] = value

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if not isinstance(key, str) or not key:
            raise BagValueError(f"Bag keys must be non-empty strings, got {key!r}")
        classify_bag_value(value)
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"KnowledgeBag({self._data!r})"

    def kind(self, key: str) -> BagValueKind | None:
        if key not in self._data:
            return None
        return classify_bag_value(self._data[key])

    def get_list(self, key: str) -> list:
        """Return the list stored at key, or [] when missing or not a list."""
        value = self._data.get(key)
        return list(value) if isinstance(value, list) else []

    def get_record(self, key: str) -> dict:
        value = self._data.get(key)
        return dict(value) if isinstance(value, dict) else {}

    def content_keys(self) -> list[str]:
        """Keys holding enrichment content rather than provenance."""
        return [k for k in self._data if k not in RESERVED_BAG_KEYS]

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def to_json(self) -> str:
        return json.dumps(self._data, default=str)

    @classmethod
    def from_json(cls, raw: str | None) -> "KnowledgeBag":
        return cls(json.loads(raw) if raw else {})


@dataclass
class KnowledgeBase:
    id: str
    business_name: str | None = None
    industry: str | None = None
    biggest_bottleneck: str | None = None
    top_objection: str | None = None
    core_offer: str | None = None
    ideal_customer: str | None = None
    primary_goal: str | None = None
    tool_stack: list[str] = field(default_factory=list)
    knowledge: KnowledgeBag = field(default_factory=KnowledgeBag)
    version: int = 1
    enrichment_version: int = 0
    last_enriched_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)

    def get_field(self, name: str) -> Any:
        if name not in SCALAR_FIELDS and name not in LIST_FIELDS and name != BAG_FIELD:
            raise KeyError(f"Unknown knowledge base field: {name}")
        return getattr(self, name)
