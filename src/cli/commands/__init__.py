"""CLI command modules."""

from .apply import apply
from .events import add_events, extract
from .init import init
from .kb import kb
from .provenance import audit, rebuild, snapshots
from .stats import metrics, stats

__all__ = [
    "init",
    "kb",
    "add_events",
    "extract",
    "apply",
    "audit",
    "snapshots",
    "rebuild",
    "stats",
    "metrics",
]
