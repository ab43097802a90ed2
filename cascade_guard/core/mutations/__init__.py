"""
Cascade Guard - Optimistic Mutations
====================================

Components:
- OptimisticMutationEngine: speculative cache edits with LIFO rollback
- ProgressTracker: periodic progress snapshots and analytics
"""

from cascade_guard.core.mutations.cache import CacheStore, InMemoryCacheStore
from cascade_guard.core.mutations.engine import OptimisticMutationEngine, OptimisticUpdate, RevertResult
from cascade_guard.core.mutations.tracker import ProgressAnalytics, ProgressInfo, ProgressSnapshot, ProgressTracker
from cascade_guard.core.mutations.transforms import MutationAction

__all__ = [
    "CacheStore",
    "InMemoryCacheStore",
    "OptimisticMutationEngine",
    "OptimisticUpdate",
    "RevertResult",
    "ProgressAnalytics",
    "ProgressInfo",
    "ProgressSnapshot",
    "ProgressTracker",
    "MutationAction",
]
