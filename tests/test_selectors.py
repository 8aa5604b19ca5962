"""Tests for tool_runtime.selectors."""

import re
from datetime import date, datetime, timezone

from tool_runtime.selectors import (
    build_by_entity_selector,
    build_by_project_selector,
    build_filter_selector,
    build_name_match_selector,
    build_overdue_selector,
    build_project_by_name_selector,
    build_tasks_selector,
    compile_where,
    date_threshold_clause,
    list_key_for_collection,
    parse_threshold,
)

NOW = datetime(2025, 3, 4, 15, 30, tzinfo=timezone.utc)


def name_pattern(selector, field="name"):
    clause = selector[field]
    assert clause["$options"] == "i"
    return re.compile(clause["$regex"], re.IGNORECASE)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


class TestDates:
    def test_dual_representation(self):
        assert date_threshold_clause(NOW) == {
            "$or": [{"deadline": {"$lte": NOW}}, {"deadline": {"$lte": "2025-03-04"}}],
        }

    def test_custom_field(self):
        clause = date_threshold_clause("2025-01-31", field="when")
        assert clause["$or"][1] == {"when": {"$lte": "2025-01-31"}}

    def test_parse_threshold(self):
        assert parse_threshold("2025-03-04T15:30:00Z") == NOW
        assert parse_threshold(date(2025, 3, 4)) == datetime(2025, 3, 4, tzinfo=timezone.utc)
        assert parse_threshold(datetime(2025, 3, 4)).tzinfo is timezone.utc
        assert parse_threshold("not a date") is None
        assert parse_threshold("") is None
        assert parse_threshold(None) is None

    def test_invalid_threshold(self):
        assert date_threshold_clause("yesterday") is None


class TestOverdue:
    def test_excludes_done_and_matches_both_formats(self):
        assert build_overdue_selector(NOW) == {
            "status": {"$ne": "done"},
            "$or": [{"deadline": {"$lte": NOW}}, {"deadline": {"$lte": "2025-03-04"}}],
        }

    def test_defaults_to_now(self):
        selector = build_overdue_selector()
        threshold = selector["$or"][0]["deadline"]["$lte"]
        assert abs((datetime.now(timezone.utc) - threshold).total_seconds()) < 60
        assert selector["$or"][1]["deadline"]["$lte"] == threshold.date().isoformat()


# ---------------------------------------------------------------------------
# Entity / filter selectors
# ---------------------------------------------------------------------------


class TestByEntity:
    def test_by_project(self):
        assert build_by_project_selector(" p42 ") == {"projectId": "p42", "status": {"$ne": "done"}}

    def test_keep_done(self):
        assert build_by_entity_selector("sessionId", "s1", exclude_done=False) == {"sessionId": "s1"}

    def test_blank_id(self):
        assert build_by_project_selector("  ") == {"status": {"$ne": "done"}}


class TestFilter:
    def test_maps_supplied_filters_only(self):
        assert build_filter_selector({"projectId": "p7", "tag": "home"}) == {"projectId": "p7", "tags": "home"}

    def test_flags(self):
        assert build_filter_selector({"important": "true", "urgent": 0}) == {
            "isImportant": True,
            "isUrgent": False,
        }

    def test_unparseable_flag_omitted(self):
        assert build_filter_selector({"urgent": "maybe", "status": ""}) == {}

    def test_due_before(self):
        selector = build_filter_selector({"status": "todo", "dueBefore": "2025-01-31"})
        assert selector["status"] == "todo"
        assert selector["$or"][1] == {"deadline": {"$lte": "2025-01-31"}}

    def test_empty(self):
        assert build_filter_selector() == {}

    def test_tasks_selector(self):
        selector = build_tasks_selector({"projectId": "p42", "status": " ", "dueBefore": "2025-01-31"})
        assert selector["projectId"] == "p42"
        assert "status" not in selector
        assert "$or" in selector


# ---------------------------------------------------------------------------
# Name matching
# ---------------------------------------------------------------------------


class TestNameMatch:
    def test_metacharacters_are_literal(self):
        pattern = name_pattern(build_name_match_selector("a.b*"))
        assert pattern.search("a.b*")
        assert pattern.search("A.B*")
        assert not pattern.search("axb")
        assert not pattern.search("a.bbb")

    def test_anchored(self):
        pattern = name_pattern(build_project_by_name_selector("Garden (v2)"))
        assert pattern.search("garden (v2)")
        assert not pattern.search("My Garden (v2)")
        assert not pattern.search("Garden (v2) old")

    def test_blank(self):
        assert build_name_match_selector("   ") == {}


# ---------------------------------------------------------------------------
# Generic queries
# ---------------------------------------------------------------------------


class TestCompileWhere:
    def test_operators(self):
        where = {"status": {"ne": "done"}, "deadline": {"lte": "2025-01-31"}, "tags": {"in": "home"}}
        assert compile_where("tasks", where) == {
            "status": {"$ne": "done"},
            "deadline": {"$lte": "2025-01-31"},
            "tags": {"$in": ["home"]},
        }

    def test_logical_branches(self):
        where = {"or": [{"isUrgent": True}, {"isImportant": True}], "projectId": "p42"}
        assert compile_where("tasks", where) == {
            "$or": [{"isUrgent": True}, {"isImportant": True}],
            "projectId": "p42",
        }

    def test_drops_fields_off_allowlist(self):
        assert compile_where("people", {"name": "Ada", "passwordHash": "x"}) == {"name": "Ada"}
        assert compile_where("unknown", {"name": "Ada"}) == {}

    def test_drops_unknown_operators(self):
        assert compile_where("tasks", {"status": {"regex": ".*"}}) == {}

    def test_list_key(self):
        assert list_key_for_collection(" noteSessions ") == "noteSessions"
