"""
Cascade Guard - Cache Transform Tests
=====================================

Forward transforms on each cached shape and their reversal.
"""

import copy

from cascade_guard.core.mutations.transforms import (
    MutationAction,
    apply_action,
    delete_entity,
    nullify_references,
    restore_deleted,
    revert_action,
    update_entity,
)


STUDENTS = [
    {"id": "s1", "name": "Dana"},
    {"id": "s2", "name": "Noa"},
    {"id": "s3", "name": "Eli"},
]


class TestDelete:
    """Record removal and counter maintenance."""

    def test_top_level_list(self):
        result, undo = delete_entity(STUDENTS, "s2")
        assert [s["id"] for s in result] == ["s1", "s3"]
        assert restore_deleted(result, undo) == STUDENTS

    def test_paginated_envelope_decrements_counters(self):
        page = {"data": copy.deepcopy(STUDENTS), "totalCount": 3, "page": 1}
        result, undo = delete_entity(page, "s1")
        assert result["totalCount"] == 2
        assert result["page"] == 1
        assert len(result["data"]) == 2
        assert revert_action(result, undo) == page

    def test_counter_never_negative(self):
        page = {"items": [{"id": "s1"}], "total": 0}
        result, _ = delete_entity(page, "s1")
        assert result["total"] == 0

    def test_multiple_list_fields(self):
        data = {"students": [{"id": "s1"}], "alumni": [{"id": "s1"}, {"id": "s9"}]}
        result, undo = delete_entity(data, "s1")
        assert result == {"students": [], "alumni": [{"id": "s9"}]}
        assert revert_action(result, undo) == data

    def test_input_not_mutated(self):
        data = copy.deepcopy(STUDENTS)
        delete_entity(data, "s1")
        assert data == STUDENTS

    def test_missing_entity_is_noop(self):
        page = {"data": copy.deepcopy(STUDENTS), "totalCount": 3}
        result, undo = delete_entity(page, "nope")
        assert result == page
        assert undo.removed == ()

    def test_restore_into_changed_list(self):
        result, undo = delete_entity(STUDENTS, "s3")
        result = result[:1]
        assert [s["id"] for s in restore_deleted(result, undo)] == ["s1", "s3"]


class TestUpdate:
    """Field merges."""

    def test_single_record(self):
        record = {"id": "s1", "name": "Dana", "status": "active"}
        result, undo = update_entity(record, "s1", {"status": "deleting", "flag": True})
        assert result == {"id": "s1", "name": "Dana", "status": "deleting", "flag": True}
        assert revert_action(result, undo) == record

    def test_records_in_list(self):
        result, undo = update_entity(STUDENTS, "s2", {"name": "Noa B."})
        assert result[1]["name"] == "Noa B."
        assert result[0] == STUDENTS[0]
        assert revert_action(result, undo) == STUDENTS

    def test_restore_after_earlier_record_removed(self):
        result, undo = update_entity(STUDENTS, "s2", {"name": "Noa B."})
        result, _ = delete_entity(result, "s1")

        restored = revert_action(result, undo)

        assert restored == [{"id": "s2", "name": "Noa"}, {"id": "s3", "name": "Eli"}]

    def test_restore_when_record_gone(self):
        result, undo = update_entity(STUDENTS, "s3", {"name": "Eli B."})
        result, _ = delete_entity(result, "s3")
        assert revert_action(result, undo) == STUDENTS[:2]

    def test_restore_in_reordered_envelope(self):
        page = {"data": copy.deepcopy(STUDENTS), "totalCount": 3}
        result, undo = update_entity(page, "s1", {"status": "deleting"})
        result = {"data": list(reversed(result["data"])), "totalCount": 3}

        restored = revert_action(result, undo)

        assert [s["id"] for s in restored["data"]] == ["s3", "s2", "s1"]
        assert restored["data"][2] == {"id": "s1", "name": "Dana"}


class TestNullify:
    """Foreign-key nulling."""

    def test_nulls_matching_reference_keys(self):
        data = {
            "lessons": [
                {"id": "l1", "studentId": "s1", "teacher_id": "t1"},
                {"id": "l2", "studentId": "s2", "meta": {"owner_id": "s1"}},
            ],
            "_id": "s1",
        }
        result, undo = nullify_references(data, "s1")
        assert result["lessons"][0]["studentId"] is None
        assert result["lessons"][0]["teacher_id"] == "t1"
        assert result["lessons"][1]["studentId"] == "s2"
        assert result["lessons"][1]["meta"]["owner_id"] is None
        assert result["_id"] == "s1"
        assert revert_action(result, undo) == data

    def test_dispatch(self):
        result, _ = apply_action(MutationAction.NULLIFY, {"studentId": "s1"}, "s1")
        assert result == {"studentId": None}
