"""
Tests for agentmem.fetch — headroom, scope-ordered bounded reads, backfill.
"""

import asyncio

import pytest

from agentmem.config import AgentMemConfig
from agentmem.context import PipelineDeps, QueryContext
from agentmem.fetch import (
    base_filter,
    candidate_restriction,
    fetch_cap,
    fetch_stage,
    fetch_type,
    headroom_for,
    temporal_for,
)
from agentmem.store import EntryStore
from agentmem.types import (
    GLOBAL_SCOPE,
    CandidateScore,
    Guideline,
    Knowledge,
    PriorityRange,
    QueryRequest,
    ScopeRef,
    TagFilter,
    Tool,
)

PROJECT = ScopeRef("project", "web")
ORG = ScopeRef("org", "acme")
CHAIN = (PROJECT, ORG, GLOBAL_SCOPE)


class RecordingStore(EntryStore):
    """EntryStore that records every entry read."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = []

    def select_entries(self, query, *, scope=None):
        rows = super().select_entries(query, scope=scope)
        self.reads.append((query.entry_type, scope, query.limit, len(rows)))
        return rows


@pytest.fixture
def store():
    s = RecordingStore(":memory:")
    s.add_organization("acme")
    s.add_project("web", org_id="acme")
    yield s
    s.close()


def _ts(n):
    return f"2024-01-01T00:{n // 60:02d}:{n % 60:02d}+00:00"


def _seed_tools(store, scope, count, prefix):
    for i in range(count):
        store.write_entry(Tool(
            id=f"{prefix}{i:02d}", name=f"{prefix} tool {i}",
            scope_type=scope.scope_type, scope_id=scope.scope_id,
            created_at=_ts(i), updated_at=_ts(i),
        ))


def _fetch(store, request, chain=CHAIN, entry_type="tool", **ctx_fields):
    ctx = QueryContext(request=request, chain=chain, **ctx_fields)
    deps = PipelineDeps(store=store, config=AgentMemConfig())
    return asyncio.run(fetch_type(ctx, deps, entry_type))


# ---------------------------------------------------------------------------
# Headroom
# ---------------------------------------------------------------------------


class TestHeadroom:
    def test_small_candidate_set(self):
        req = QueryRequest(limit=10)
        assert headroom_for(req, [frozenset("abcde")]) == 1.2
        assert fetch_cap(req, [frozenset("abcde")]) == 12

    def test_tags_required(self):
        req = QueryRequest(limit=10, tags=TagFilter(require=("python",)))
        assert fetch_cap(req, []) == 15

    def test_any_or_excluded_tags(self):
        assert fetch_cap(QueryRequest(limit=10, tags=TagFilter(include=("a", "b"))), []) == 15
        assert fetch_cap(QueryRequest(limit=10, tags=TagFilter(exclude=("old",))), []) == 15
        assert fetch_cap(QueryRequest(limit=10, tags=TagFilter()), []) == 20

    def test_default(self):
        assert fetch_cap(QueryRequest(limit=10), []) == 20

    def test_empty_candidate_set_is_default(self):
        assert fetch_cap(QueryRequest(limit=10), [frozenset()]) == 20

    def test_large_candidate_set_is_default(self):
        big = frozenset(str(i) for i in range(50))
        assert fetch_cap(QueryRequest(limit=10), [big]) == 20

    def test_window_includes_offset(self):
        assert fetch_cap(QueryRequest(limit=10, offset=5), []) == 30

    def test_cap_rounds_up(self):
        assert fetch_cap(QueryRequest(limit=3), [frozenset("ab")]) == 4


class TestRestriction:
    def test_none(self):
        assert candidate_restriction([]) is None

    def test_intersection(self):
        assert candidate_restriction(
            [frozenset({"a", "b"}), frozenset({"b", "c"})]
        ) == frozenset({"b"})


class TestFilters:
    def test_priority_guidelines_only(self):
        req = QueryRequest(priority=PriorityRange(60, None), level="strategy")
        assert base_filter(req, "guideline").priority_min == 60
        assert base_filter(req, "tool").priority_min is None
        assert base_filter(req, "experience").level == "strategy"
        assert base_filter(req, "guideline").level is None

    def test_temporal_knowledge_only(self):
        req = QueryRequest(at_time="2024-01-15")
        assert temporal_for(req, "knowledge") is not None
        assert temporal_for(req, "tool") is None
        assert temporal_for(QueryRequest(), "knowledge") is None


# ---------------------------------------------------------------------------
# Scope-ordered reads
# ---------------------------------------------------------------------------


class TestScopeReads:
    def test_reads_fill_budget_along_chain(self, store):
        _seed_tools(store, PROJECT, 3, "p")
        _seed_tools(store, ORG, 8, "o")
        _seed_tools(store, GLOBAL_SCOPE, 20, "g")

        tf = _fetch(store, QueryRequest(types=("tool",), limit=10))
        assert store.reads == [
            ("tool", PROJECT, 20, 3),
            ("tool", ORG, 17, 8),
            ("tool", GLOBAL_SCOPE, 9, 9),
        ]
        assert len(tf.rows) == 20
        assert tf.capped is True

    def test_stops_when_cap_reached(self, store):
        _seed_tools(store, PROJECT, 12, "p")
        _seed_tools(store, ORG, 10, "o")
        _seed_tools(store, GLOBAL_SCOPE, 20, "g")

        tf = _fetch(store, QueryRequest(types=("tool",), limit=10))
        assert [r[1] for r in store.reads] == [PROJECT, ORG]
        assert store.reads[1][2] == 8
        assert tf.capped is True
        assert not any(e.scope == GLOBAL_SCOPE for e in tf.rows)

    def test_native_order_within_scope(self, store):
        _seed_tools(store, PROJECT, 3, "p")
        tf = _fetch(store, QueryRequest(types=("tool",)))
        assert [e.id for e in tf.rows] == ["p02", "p01", "p00"]
        assert tf.capped is False

    def test_most_specific_scope_first(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 2, "g")
        _seed_tools(store, PROJECT, 2, "p")
        tf = _fetch(store, QueryRequest(types=("tool",)))
        assert [e.id for e in tf.rows] == ["p01", "p00", "g01", "g00"]

    def test_empty_restriction_skips_reads(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 5, "g")
        tf = _fetch(
            store, QueryRequest(types=("tool",), search="nothing"),
            fts_match_ids={"tool": frozenset()},
        )
        assert store.reads == []
        assert tf.rows == ()

    def test_restriction_applied(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 5, "g")
        tf = _fetch(
            store, QueryRequest(types=("tool",), search="x"),
            fts_match_ids={"tool": frozenset({"g01", "g03"})},
            related_ids={"tool": frozenset({"g03", "g04"})},
        )
        assert [e.id for e in tf.rows] == ["g03"]

    def test_unknown_category_matches_nothing(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 3, "g")
        tf = _fetch(store, QueryRequest(types=("tool",), category="no-such-category"))
        assert tf.rows == ()

    def test_temporal_knowledge(self, store):
        store.write_entry(Knowledge(
            id="k1", title="january", valid_from="2024-01-01", valid_until="2024-01-31",
        ))
        store.write_entry(Knowledge(id="k2", title="march", valid_from="2024-03-01"))
        store.write_entry(Knowledge(id="k3", title="always"))

        tf = _fetch(
            store, QueryRequest(types=("knowledge",), at_time="2024-01-15"),
            entry_type="knowledge",
        )
        assert {e.id for e in tf.rows} == {"k1", "k3"}

    def test_priority_filter(self, store):
        store.write_entry(Guideline(id="hi", name="hi", priority=90))
        store.write_entry(Guideline(id="lo", name="lo", priority=10))
        tf = _fetch(
            store, QueryRequest(types=("guideline",), priority=PriorityRange(50, None)),
            entry_type="guideline",
        )
        assert [e.id for e in tf.rows] == ["hi"]


# ---------------------------------------------------------------------------
# Semantic backfill
# ---------------------------------------------------------------------------


class TestBackfill:
    def test_backfill_best_score_first_within_budget(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 4, "g")
        semantic = {
            ("tool", "g01"): CandidateScore("tool", 0.8),
            ("tool", "g02"): CandidateScore("tool", 0.9),
            ("tool", "g03"): CandidateScore("tool", 0.7),
        }
        tf = _fetch(
            store,
            QueryRequest(types=("tool",), search="x", semantic_search=True, limit=1),
            fts_match_ids={"tool": frozenset({"g00"})},
            semantic_scores=semantic,
        )
        # cap = ceil(1 * 2.0) = 2: one scope row plus the best semantic hit
        assert [e.id for e in tf.rows] == ["g00", "g02"]
        assert tf.capped is True
        backfill_reads = [r for r in store.reads if r[1] is None]
        assert len(backfill_reads) == 1
        assert backfill_reads[0][2] == 1

    def test_backfill_honors_relation_restriction(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 3, "g")
        tf = _fetch(
            store,
            QueryRequest(types=("tool",), search="x", semantic_search=True),
            related_ids={"tool": frozenset({"g00"})},
            semantic_scores={
                ("tool", "g01"): CandidateScore("tool", 0.9),
                ("tool", "g00"): CandidateScore("tool", 0.5),
            },
        )
        assert [e.id for e in tf.rows] == ["g00"]

    def test_backfill_skips_other_types(self, store):
        _seed_tools(store, GLOBAL_SCOPE, 1, "g")
        tf = _fetch(
            store,
            QueryRequest(types=("tool",), search="x", semantic_search=True),
            fts_match_ids={"tool": frozenset()},
            semantic_scores={("guideline", "g00"): CandidateScore("guideline", 0.9)},
        )
        assert tf.rows == ()

    def test_backfill_keyed_by_type(self, store):
        store.write_entry(Tool(id="x1", name="shared id"))
        tf = _fetch(
            store,
            QueryRequest(types=("tool",), search="x", semantic_search=True),
            fts_match_ids={"tool": frozenset()},
            semantic_scores={
                ("guideline", "x1"): CandidateScore("guideline", 0.9),
                ("tool", "x1"): CandidateScore("tool", 0.4),
            },
        )
        assert [e.id for e in tf.rows] == ["x1"]

    def test_backfill_respects_scope_chain(self, store):
        store.write_entry(Tool(id="other", name="other", scope_type="project", scope_id="x"))
        tf = _fetch(
            store,
            QueryRequest(types=("tool",), search="x", semantic_search=True),
            fts_match_ids={"tool": frozenset()},
            semantic_scores={("tool", "other"): CandidateScore("tool", 0.9)},
        )
        assert tf.rows == ()


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


class TestFetchStage:
    def test_scope_index_and_capped(self, store):
        _seed_tools(store, PROJECT, 1, "p")
        _seed_tools(store, GLOBAL_SCOPE, 1, "g")
        store.write_entry(Guideline(id="gd", name="rule", scope_type="org", scope_id="acme"))
        ctx = QueryContext(request=QueryRequest(types=("tool", "guideline")), chain=CHAIN)
        deps = PipelineDeps(store=store, config=AgentMemConfig())
        out = asyncio.run(fetch_stage(ctx, deps))
        assert [e.id for e in out.fetched["tool"]] == ["p00", "g00"]
        assert [e.id for e in out.fetched["guideline"]] == ["gd"]
        assert out.scope_index == {
            ("tool", "p00"): 0, ("tool", "g00"): 2, ("guideline", "gd"): 1,
        }
        assert out.capped == {"tool": False, "guideline": False}
