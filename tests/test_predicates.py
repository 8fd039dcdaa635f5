"""
Tests for agentmem.predicates — structural filters and temporal predicates.
"""

from agentmem.predicates import (
    EntryQuery,
    StructuralFilter,
    TemporalPredicate,
    as_instant,
    scope_clause,
)
from agentmem.types import GLOBAL_SCOPE, ScopeRef, ValidityWindow


class TestAsInstant:
    def test_start_of_day(self):
        assert as_instant("2024-03-15") == "2024-03-15T00:00:00+00:00"

    def test_end_of_day(self):
        assert as_instant("2024-03-15", end_of_day=True) == "2024-03-15T23:59:59.999999+00:00"

    def test_full_timestamp_unchanged(self):
        ts = "2024-03-15T10:00:00+00:00"
        assert as_instant(ts) == ts
        assert as_instant(ts, end_of_day=True) == ts


class TestScopeClause:
    def test_global_matches_null_scope_id(self):
        c = scope_clause((GLOBAL_SCOPE,))
        assert "scope_id IS NULL" in c.sql
        assert c.params == ("global",)

    def test_chain_is_or_of_scopes(self):
        c = scope_clause((ScopeRef("project", "web"), ScopeRef("org", "acme"), GLOBAL_SCOPE))
        assert c.sql.count(" OR ") == 2
        assert c.params == ("project", "web", "org", "acme", "global")

    def test_alias(self):
        c = scope_clause((ScopeRef("org", "acme"),), alias="e.")
        assert "e.scope_type=?" in c.sql


class TestStructuralFilter:
    def test_defaults_active_only(self):
        c = StructuralFilter().to_sql()
        assert c.sql == "is_active=1"
        assert c.params == ()

    def test_include_inactive(self):
        assert StructuralFilter(active_only=False).to_sql().sql == "1=1"

    def test_column_filters(self):
        c = StructuralFilter(
            category="cli", priority_min=10, priority_max=90,
            level="case", created_by="alice",
        ).to_sql()
        assert "category=?" in c.sql
        assert "priority>=?" in c.sql
        assert "priority<=?" in c.sql
        assert "level=?" in c.sql
        assert "created_by=?" in c.sql
        assert c.params == ("cli", 10, 90, "case", "alice")

    def test_bare_date_upper_bound_is_exclusive_next_day(self):
        c = StructuralFilter(created_before="2024-03-15").to_sql()
        assert "created_at < ?" in c.sql
        assert c.params == ("2024-03-16",)

    def test_bare_date_upper_bound_month_rollover(self):
        c = StructuralFilter(updated_before="2024-02-29").to_sql()
        assert c.params == ("2024-03-01",)

    def test_timestamp_upper_bound_inclusive(self):
        c = StructuralFilter(created_before="2024-03-15T10:00:00+00:00").to_sql()
        assert "created_at <= ?" in c.sql

    def test_lower_bound(self):
        c = StructuralFilter(updated_after="2024-03-15").to_sql()
        assert "updated_at >= ?" in c.sql
        assert c.params == ("2024-03-15",)

    def test_id_restriction(self):
        c = StructuralFilter(ids=("a", "b")).to_sql()
        assert "id IN (?,?)" in c.sql
        assert c.params == ("a", "b")

    def test_empty_id_restriction_matches_nothing(self):
        c = StructuralFilter(ids=()).to_sql()
        assert c.sql.endswith(" AND 0")


class TestTemporalPredicate:
    def test_empty(self):
        assert TemporalPredicate().to_sql().sql == "1=1"

    def test_at_time_binds_point_twice(self):
        c = TemporalPredicate(at_time="2024-03-15T10:00:00+00:00").to_sql()
        assert "valid_from IS NULL" in c.sql
        assert "valid_until IS NULL" in c.sql
        assert c.params == ("2024-03-15T10:00:00+00:00",) * 2

    def test_valid_during_binds_end_then_start(self):
        c = TemporalPredicate(
            valid_during=ValidityWindow("2024-01-01", "2024-01-31"),
        ).to_sql()
        assert c.params == (
            "2024-01-31T23:59:59.999999+00:00",
            "2024-01-01T00:00:00+00:00",
        )

    def test_both(self):
        c = TemporalPredicate(
            at_time="2024-01-10",
            valid_during=ValidityWindow("2024-01-01", "2024-01-31"),
        ).to_sql()
        assert len(c.params) == 4


class TestEntryQuery:
    def test_routing(self):
        assert not EntryQuery("tool", StructuralFilter()).is_raw
        assert EntryQuery(
            "knowledge", StructuralFilter(), TemporalPredicate(at_time="2024-01-01"),
        ).is_raw

    def test_order_by(self):
        assert EntryQuery("guideline", StructuralFilter()).order_by.startswith("priority DESC")
        assert EntryQuery("tool", StructuralFilter()).order_by.startswith("created_at DESC")
