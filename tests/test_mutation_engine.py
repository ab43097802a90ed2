"""
Cascade Guard - Optimistic Mutation Engine Tests
================================================

Apply, commit and LIFO rollback against an in-memory cache.
"""

import copy

import pytest

from cascade_guard.core.errors import RollbackOrderError
from cascade_guard.core.mutations.cache import InMemoryCacheStore, query_keys_for_entity
from cascade_guard.core.mutations.engine import OptimisticMutationEngine
from cascade_guard.core.mutations.transforms import MutationAction
from cascade_guard.core.notifications import NotificationLevel


def initial_cache():
    return {
        ("students",): {"data": [{"id": "s1", "name": "Dana"}, {"id": "s2", "name": "Noa"}], "totalCount": 2},
        ("students", "s1"): {"id": "s1", "name": "Dana", "status": "active"},
        ("lessons",): [{"id": "l1", "studentId": "s1"}, {"id": "l2", "studentId": "s2"}],
    }


class BrokenWriteCache(InMemoryCacheStore):
    """Cache whose writes start failing for chosen keys."""

    def __init__(self, initial):
        super().__init__(initial)
        self.broken = set()

    async def write(self, key, value):
        if tuple(key) in self.broken:
            raise IOError(f"cannot write {key}")
        await super().write(key, value)


@pytest.fixture
def cache() -> InMemoryCacheStore:
    return InMemoryCacheStore(initial_cache())


@pytest.fixture
def engine(cache, notifications, clock) -> OptimisticMutationEngine:
    return OptimisticMutationEngine(cache, notifications=notifications, clock=clock)


def snapshot(cache: InMemoryCacheStore):
    return {key: cache.peek(key) for key in cache.keys()}


class TestApply:
    """Speculative edits."""

    async def test_default_keys_skip_missing(self, engine, cache):
        update_id = await engine.apply("op1", "student", "s1", MutationAction.DELETE)
        update = engine.stack("op1")[0]

        assert update.id == update_id
        assert update.cache_keys == tuple(query_keys_for_entity("student", "s1"))
        assert set(update.undo) == {("students",), ("students", "s1")}
        assert cache.peek(("students",))["totalCount"] == 1

    async def test_explicit_keys(self, engine, cache):
        await engine.apply("op1", "student", "s1", MutationAction.NULLIFY, cache_keys=[["lessons"]])
        assert cache.peek(("lessons",))[0]["studentId"] is None

    async def test_original_snapshot_kept(self, engine):
        await engine.apply("op1", "student", "s1", MutationAction.UPDATE, {"status": "deleting"}, [("students", "s1")])
        update = engine.stack("op1")[0]
        assert update.speculative_value == {"status": "deleting"}
        assert update.original_snapshot == {"id": "s1", "name": "Dana", "status": "active"}
        assert update.applied is True and update.reverted is False

    async def test_original_snapshot_is_first_read(self, engine):
        await engine.apply("op1", "student", "s1", MutationAction.DELETE)
        update = engine.stack("op1")[0]
        assert update.original_snapshot == initial_cache()[("students",)]

    async def test_failed_apply_restores_written_keys(self, notifications, clock):
        cache = BrokenWriteCache(initial_cache())
        cache.broken.add(("students", "s1"))
        engine = OptimisticMutationEngine(cache, notifications=notifications, clock=clock)

        with pytest.raises(IOError):
            await engine.apply("op1", "student", "s1", MutationAction.DELETE)

        assert cache.peek(("students",)) == initial_cache()[("students",)]
        assert engine.has_pending("op1") is False


class TestRevert:
    """LIFO rollback."""

    async def test_revert_restores_pre_operation_state(self, engine, cache, notifications):
        before = snapshot(cache)
        await engine.apply("op1", "student", "s1", MutationAction.UPDATE, {"status": "deleting"})
        await engine.apply("op1", "student", "s1", MutationAction.DELETE)
        await engine.apply("op1", "lesson", "s1", MutationAction.NULLIFY, cache_keys=[("lessons",)])

        result = await engine.revert("op1")

        assert result.success
        assert result.reverted_updates == 3
        assert snapshot(cache) == before
        assert engine.has_pending("op1") is False
        assert all(u.reverted and not u.applied for u in engine.history("op1"))
        assert notifications.history[-1].title == "Changes Reverted"

    async def test_revert_leaves_other_operations(self, engine, cache):
        await engine.apply("op1", "student", "s1", MutationAction.DELETE, cache_keys=[("students",)])
        await engine.apply("op2", "student", "s2", MutationAction.DELETE, cache_keys=[("students",)])

        await engine.revert("op2")

        ids = [s["id"] for s in cache.peek(("students",))["data"]]
        assert ids == ["s2"]
        assert engine.pending_operations == ["op1"]

    async def test_update_revert_survives_interleaved_delete(self, notifications, clock):
        cache = InMemoryCacheStore({
            ("students",): [{"id": "s1", "name": "A"}, {"id": "s2", "name": "B"}, {"id": "s3", "name": "C"}],
        })
        engine = OptimisticMutationEngine(cache, notifications=notifications, clock=clock)
        await engine.apply("op1", "student", "s2", MutationAction.UPDATE, {"name": "B-pending"}, [("students",)])
        await engine.apply("op2", "student", "s1", MutationAction.DELETE, cache_keys=[("students",)])
        engine.commit("op2")

        result = await engine.revert("op1")

        assert result.success
        assert cache.peek(("students",)) == [{"id": "s2", "name": "B"}, {"id": "s3", "name": "C"}]

    async def test_revert_after_commit_is_noop(self, engine, cache):
        await engine.apply("op1", "student", "s1", MutationAction.DELETE)
        assert engine.commit("op1") == 1
        after_commit = snapshot(cache)

        result = await engine.revert("op1")

        assert result.reverted_updates == 0
        assert snapshot(cache) == after_commit
        assert engine.history("op1")[0].revertible is False

    async def test_out_of_order_single_revert_rejected(self, engine):
        first = await engine.apply("op1", "student", "s1", MutationAction.DELETE)
        second = await engine.apply("op1", "lesson", "s1", MutationAction.NULLIFY, cache_keys=[("lessons",)])

        with pytest.raises(RollbackOrderError) as exc:
            await engine.revert_update("op1", first)
        assert exc.value.expected_id == second
        assert len(engine.stack("op1")) == 2

        await engine.revert_update("op1", second)
        await engine.revert_update("op1", first)
        assert engine.has_pending("op1") is False

    async def test_rollback_failure_raises_advisory(self, notifications, clock):
        cache = BrokenWriteCache(initial_cache())
        engine = OptimisticMutationEngine(cache, notifications=notifications, clock=clock)
        await engine.apply("op1", "student", "s1", MutationAction.DELETE)
        cache.broken.add(("students",))

        result = await engine.revert("op1")

        assert result.success is False
        assert result.failed_keys == (("students",),)
        # Other keys still restored
        assert cache.peek(("students", "s1")) == initial_cache()[("students", "s1")]
        advisory = notifications.history[-1]
        assert advisory.level == NotificationLevel.ERROR
        assert advisory.persistent is True
        assert advisory.message == "Failed to revert optimistic updates. Please refresh the page."
        assert notifications.safe_state is True

    async def test_revert_survives_later_cache_changes(self, engine, cache):
        await engine.apply("op1", "student", "s1", MutationAction.DELETE, cache_keys=[("students",)])
        page = cache.peek(("students",))
        page["data"].append({"id": "s3", "name": "Eli"})
        await cache.write(("students",), copy.deepcopy(page))

        await engine.revert("op1")

        ids = [s["id"] for s in cache.peek(("students",))["data"]]
        assert ids == ["s1", "s2", "s3"]
