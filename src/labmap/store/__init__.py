"""Persistent stores: alias cache and review queue."""

from .aliases import AliasKey, AliasStore, AliasWriteResult, AliasWriteStatus
from .review import ReviewQueue, get_review_queue

__all__ = [
    "AliasKey",
    "AliasStore",
    "AliasWriteResult",
    "AliasWriteStatus",
    "ReviewQueue",
    "get_review_queue",
]
