"""
Tests for agentmem.versions — batched version loading.
"""

import asyncio

import pytest

from agentmem.config import AgentMemConfig
from agentmem.context import PipelineDeps, QueryContext
from agentmem.store import EntryStore
from agentmem.types import Guideline, Knowledge, QueryRequest, Tool
from agentmem.versions import load_versions, version_stage


class CountingStore(EntryStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.version_reads = []

    def select_versions(self, entry_type, entry_ids):
        self.version_reads.append((entry_type, list(entry_ids)))
        return super().select_versions(entry_type, entry_ids)


@pytest.fixture
def store():
    s = CountingStore(":memory:")
    s.write_entry(Tool(id="t1", name="grep"))
    s.write_entry(Tool(id="t2", name="sed"))
    s.write_entry(Guideline(id="g1", name="no prints"))
    s.write_entry(Knowledge(id="k1", title="fact"))
    s.add_version("tool", "t1", "v1 content", change_reason="initial")
    s.add_version("tool", "t1", "v2 content", change_reason="fix")
    s.add_version("tool", "t1", "v3 content")
    s.add_version("guideline", "g1", "never print")
    yield s
    s.close()


class TestLoadVersions:
    def test_current_is_highest(self, store):
        tools, _, _ = load_versions(store, tool_ids=["t1"])
        info = tools["t1"]
        assert info.current.version_num == 3
        assert info.current.content == "v3 content"
        assert [v.version_num for v in info.history] == [3, 2, 1]
        assert info.history[0] == info.current

    def test_entries_without_versions_absent(self, store):
        tools, guidelines, knowledge = load_versions(
            store, tool_ids=["t1", "t2"], guideline_ids=["g1"], knowledge_ids=["k1"],
        )
        assert set(tools) == {"t1"}
        assert set(guidelines) == {"g1"}
        assert knowledge == {}

    def test_one_read_per_non_empty_type(self, store):
        load_versions(store, tool_ids=["t1", "t2", "t1"], guideline_ids=[])
        assert store.version_reads == [("tool", ["t1", "t2"])]

    def test_no_ids_no_reads(self, store):
        assert load_versions(store) == ({}, {}, {})
        assert store.version_reads == []

    def test_change_reason_kept(self, store):
        tools, _, _ = load_versions(store, tool_ids=["t1"])
        assert tools["t1"].history[1].change_reason == "fix"


class TestVersionStage:
    def _ctx(self, store, with_versions):
        return QueryContext(
            request=QueryRequest(with_versions=with_versions),
            fetched={
                "tool": (Tool(id="t1", name="grep"),),
                "guideline": (Guideline(id="g1", name="no prints"),),
            },
        )

    def test_attaches_by_type_and_id(self, store):
        deps = PipelineDeps(store=store, config=AgentMemConfig())
        out = asyncio.run(version_stage(self._ctx(store, True), deps))
        assert out.versions[("tool", "t1")].current.version_num == 3
        assert out.versions[("guideline", "g1")].current.content == "never print"

    def test_skipped_without_flag(self, store):
        deps = PipelineDeps(store=store, config=AgentMemConfig())
        out = asyncio.run(version_stage(self._ctx(store, False), deps))
        assert out.versions == {}
        assert store.version_reads == []
