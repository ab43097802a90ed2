"""
Optimistic Mutation Engine - speculative cache edits with LIFO rollback.

apply() edits cached query results ahead of the backend and pushes an
OptimisticUpdate on the operation's rollback stack. commit() finalizes the
stack; revert() undoes it in strict reverse order. Reversal failures are
reported through the notification center and raise the safe-state flag
instead of propagating.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

import structlog

from cascade_guard.core.clock import Clock, SystemClock
from cascade_guard.core.errors import RollbackError, RollbackOrderError
from cascade_guard.core.mutations.cache import (
    CacheKey,
    CacheKeyLike,
    CacheStore,
    normalize_key,
    query_keys_for_entity,
)
from cascade_guard.core.mutations.transforms import MutationAction, UndoRecord, apply_action, revert_action
from cascade_guard.core.notifications import NotificationCenter

logger = structlog.get_logger()


@dataclass
class OptimisticUpdate:
    """One speculative edit across one or more cache keys."""
    id: str
    operation_id: str
    entity_type: str
    entity_id: str
    action: MutationAction
    applied_at: datetime
    speculative_value: Optional[Mapping[str, Any]]
    cache_keys: Tuple[CacheKey, ...]
    original_snapshot: Any = None
    undo: Dict[CacheKey, UndoRecord] = field(default_factory=dict)
    applied: bool = True
    reverted: bool = False
    revertible: bool = True


@dataclass(frozen=True)
class RevertResult:
    operation_id: str
    reverted_updates: int
    errors: Tuple[RollbackError, ...] = ()

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def failed_keys(self) -> Tuple[CacheKey, ...]:
        return tuple(e.cache_key for e in self.errors)


class OptimisticMutationEngine:
    """
    Speculative cache mutations grouped by operation id.

    Updates for one operation form a stack; only the top may be reverted
    individually, and revert() always walks the whole stack top-down.
    """

    def __init__(
        self,
        cache: CacheStore,
        notifications: Optional[NotificationCenter] = None,
        clock: Optional[Clock] = None,
    ):
        self.cache = cache
        self.notifications = notifications or NotificationCenter()
        self.clock = clock or SystemClock()
        self._stacks: Dict[str, List[OptimisticUpdate]] = {}
        self._history: Dict[str, List[OptimisticUpdate]] = {}

    # ==========================================================================
    # Inspection
    # ==========================================================================

    def stack(self, operation_id: str) -> Tuple[OptimisticUpdate, ...]:
        return tuple(self._stacks.get(operation_id, ()))

    def history(self, operation_id: str) -> Tuple[OptimisticUpdate, ...]:
        return tuple(self._history.get(operation_id, ()))

    def has_pending(self, operation_id: str) -> bool:
        return bool(self._stacks.get(operation_id))

    @property
    def pending_operations(self) -> List[str]:
        return [op for op, stack in self._stacks.items() if stack]

    # ==========================================================================
    # Apply / Commit
    # ==========================================================================

    async def apply(
        self,
        operation_id: str,
        entity_type: str,
        entity_id: str,
        action: MutationAction,
        speculative_value: Optional[Mapping[str, Any]] = None,
        cache_keys: Optional[Iterable[CacheKeyLike]] = None,
    ) -> str:
        """
        Speculatively apply `action` to every cached key.

        Args:
            operation_id: Operation the update belongs to
            entity_type: Entity type, e.g. "student"
            entity_id: Target entity id
            action: delete, update or nullify
            speculative_value: Fields to merge for update
            cache_keys: Keys to edit (defaults to the entity type's usual query keys)

        Returns:
            The update id
        """
        action = MutationAction(action)
        if cache_keys is None:
            keys = tuple(query_keys_for_entity(entity_type, entity_id))
        else:
            keys = tuple(normalize_key(k) for k in cache_keys)

        update = OptimisticUpdate(
            id=str(uuid4()),
            operation_id=operation_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            applied_at=self.clock.now(),
            speculative_value=copy.deepcopy(speculative_value),
            cache_keys=keys,
        )

        previous: Dict[CacheKey, Any] = {}
        try:
            for key in keys:
                current = await self.cache.read(key)
                if current is None:
                    continue
                if not previous:
                    update.original_snapshot = copy.deepcopy(current)
                previous[key] = copy.deepcopy(current)
                new_value, undo = apply_action(action, current, entity_id, speculative_value)
                await self.cache.write(key, new_value)
                update.undo[key] = undo
        except Exception:
            # Put back keys already written for this update
            for key in reversed(list(update.undo)):
                await self.cache.write(key, previous[key])
            logger.error(
                "optimistic_update_failed",
                operation_id=operation_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action.value,
            )
            raise

        self._stacks.setdefault(operation_id, []).append(update)
        self._history.setdefault(operation_id, []).append(update)
        logger.info(
            "optimistic_update_applied",
            operation_id=operation_id,
            update_id=update.id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            keys=len(update.undo),
        )
        return update.id

    def commit(self, operation_id: str) -> int:
        """Finalize an operation's updates. Returns how many were committed."""
        stack = self._stacks.pop(operation_id, [])
        for update in stack:
            update.revertible = False
        if stack:
            logger.info("optimistic_updates_committed", operation_id=operation_id, count=len(stack))
        return len(stack)

    # ==========================================================================
    # Revert
    # ==========================================================================

    async def revert(self, operation_id: str) -> RevertResult:
        """Undo every pending update of an operation, newest first."""
        stack = self._stacks.pop(operation_id, [])
        if not stack:
            return RevertResult(operation_id, 0)

        # Per key, newest update first
        by_key: Dict[CacheKey, List[UndoRecord]] = {}
        for update in reversed(stack):
            for key, undo in update.undo.items():
                by_key.setdefault(key, []).append(undo)

        errors = await self._revert_keys(operation_id, by_key)

        for update in stack:
            update.applied = False
            update.reverted = True
            update.revertible = False

        self._report(operation_id, len(stack), errors)
        return RevertResult(operation_id, len(stack), tuple(errors))

    async def revert_update(self, operation_id: str, update_id: str) -> RevertResult:
        """
        Undo a single update.

        Raises:
            RollbackOrderError: the update is not the top of the stack
        """
        stack = self._stacks.get(operation_id, [])
        top = stack[-1] if stack else None
        if top is None or top.id != update_id:
            raise RollbackOrderError(operation_id, update_id, top.id if top else None)

        stack.pop()
        if not stack:
            self._stacks.pop(operation_id, None)

        errors = await self._revert_keys(operation_id, {key: [undo] for key, undo in top.undo.items()})
        top.applied = False
        top.reverted = True
        top.revertible = False
        if errors:
            self._report(operation_id, 1, errors)
        return RevertResult(operation_id, 1, tuple(errors))

    async def _revert_keys(
        self,
        operation_id: str,
        by_key: Dict[CacheKey, List[UndoRecord]],
    ) -> List[RollbackError]:
        errors: List[RollbackError] = []
        for key, undos in by_key.items():
            try:
                value = await self.cache.read(key)
                if value is None:
                    continue
                for undo in undos:
                    value = revert_action(value, undo)
                await self.cache.write(key, value)
            except Exception as e:
                errors.append(RollbackError(key, e))
                logger.error("optimistic_revert_failed", operation_id=operation_id, cache_key=list(key), error=str(e))
        return errors

    def _report(self, operation_id: str, count: int, errors: List[RollbackError]) -> None:
        if errors:
            self.notifications.advisory(
                "Rollback Failed",
                "Failed to revert optimistic updates. Please refresh the page.",
                operation_id=operation_id,
                failed_keys=[list(e.cache_key) for e in errors],
            )
            self.notifications.enter_safe_state(f"rollback_failed:{operation_id}")
            return

        self.notifications.info(
            "Changes Reverted",
            f"Optimistic updates for operation {operation_id} have been reverted",
            operation_id=operation_id,
        )
        logger.info("optimistic_updates_reverted", operation_id=operation_id, count=count)
