"""Knowledge base records: the long-lived business profile being enriched."""

from .models import BagValueError, BagValueKind, KnowledgeBag, KnowledgeBase
from .store import KnowledgeBaseLockedError, KnowledgeBaseNotFoundError, KnowledgeBaseStore

__all__ = [
    "BagValueError",
    "BagValueKind",
    "KnowledgeBag",
    "KnowledgeBase",
    "KnowledgeBaseLockedError",
    "KnowledgeBaseNotFoundError",
    "KnowledgeBaseStore",
]
