"""
Tests for the agentmem CLI via subprocess.

Every test exercises the real entry point (`python -m agentmem.cli`) against
a temporary SQLite database so there are no side-effects on the developer
machine.
"""

import json
import os
import subprocess
import sys

import pytest

from agentmem.store import EntryStore
from agentmem.types import Guideline, Knowledge, Tool

PYTHON = sys.executable
CLI = [PYTHON, "-m", "agentmem.cli"]


def run(args, *, env=None):
    """Run an agentmem CLI command and return CompletedProcess."""
    merged_env = {k: v for k, v in os.environ.items() if not k.startswith("AGENTMEM_")}
    merged_env.update(env or {})
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        timeout=30,
    )


@pytest.fixture
def db(tmp_path):
    """Create an initialized store and return the DB path."""
    db_path = str(tmp_path / "test" / "memory.db")
    r = run(["init", "--db", db_path, "-q"])
    assert r.returncode == 0, f"init failed: {r.stderr}"
    return db_path


@pytest.fixture
def populated_db(db):
    """A DB with a small scope tree and a few entries."""
    store = EntryStore(db_path=db)
    store.add_organization("acme")
    store.add_project("web", org_id="acme")
    store.write_entry(Tool(
        id="t1", name="docker compose", scope_type="project", scope_id="web",
        created_at="2024-05-01T00:00:00+00:00",
    ), tags=["containers"])
    store.write_entry(Tool(id="t2", name="vim", created_at="2024-04-01T00:00:00+00:00"))
    store.write_entry(Guideline(id="g1", name="pin image tags", priority=90))
    store.write_entry(Knowledge(id="k1", title="freeze", valid_until="2024-01-31"))
    store.add_version("tool", "t1", "compose wrapper")
    store.write_relation("knowledge", "k1", "tool", "t1")
    store.close()
    return db


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_db(self, tmp_path):
        db_path = str(tmp_path / "new" / "memory.db")
        r = run(["init", "--db", db_path])
        assert r.returncode == 0
        assert os.path.exists(db_path)
        assert f'export AGENTMEM_DB="{db_path}"' in r.stdout

    def test_idempotent(self, db):
        r = run(["init", "--db", db, "-q"])
        assert r.returncode == 0


# ---------------------------------------------------------------------------
# query
# ---------------------------------------------------------------------------


class TestQuery:
    def test_json_output(self, populated_db):
        r = run(["query", "--db", populated_db, "--type", "tool", "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert [x["id"] for x in data["results"]] == ["t2"]
        assert data["meta"] == {"returned_count": 1, "has_more": False}

    def test_scope_chain(self, populated_db):
        r = run([
            "query", "--db", populated_db, "--type", "tool",
            "--scope-type", "project", "--scope-id", "web", "--json",
        ])
        assert [x["id"] for x in json.loads(r.stdout)["results"]] == ["t1", "t2"]

    def test_no_inherit(self, populated_db):
        r = run([
            "query", "--db", populated_db, "--type", "tool",
            "--scope-type", "project", "--scope-id", "web", "--no-inherit", "--json",
        ])
        assert [x["id"] for x in json.loads(r.stdout)["results"]] == ["t1"]

    def test_search(self, populated_db):
        r = run([
            "query", "--db", populated_db, "--type", "tool",
            "--scope-type", "project", "--scope-id", "web", "-s", "docker", "--json",
        ])
        results = json.loads(r.stdout)["results"]
        assert [x["id"] for x in results] == ["t1"]
        assert "score" in results[0]

    def test_types_comma_separated(self, populated_db):
        r = run(["query", "--db", populated_db, "--type", "tool,guideline", "--json"])
        assert [x["type"] for x in json.loads(r.stdout)["results"]] == ["tool", "guideline"]

    def test_tags_and_versions(self, populated_db):
        r = run([
            "query", "--db", populated_db, "--type", "tool",
            "--scope-type", "project", "--scope-id", "web",
            "--tags", "containers", "--with-versions", "--json",
        ])
        results = json.loads(r.stdout)["results"]
        assert [x["id"] for x in results] == ["t1"]
        assert results[0]["version"]["current"]["version_num"] == 1

    def test_any_and_exclude_tags(self, populated_db):
        base = [
            "query", "--db", populated_db, "--type", "tool",
            "--scope-type", "project", "--scope-id", "web", "--json",
        ]
        r = run(base + ["--exclude-tags", "containers"])
        assert [x["id"] for x in json.loads(r.stdout)["results"]] == ["t2"]
        r = run(base + ["--any-tags", "containers,editors"])
        assert [x["id"] for x in json.loads(r.stdout)["results"]] == ["t1"]

    def test_related_to_direction(self, populated_db):
        base = [
            "query", "--db", populated_db, "--type", "tool",
            "--scope-type", "project", "--scope-id", "web",
            "--related-to", "knowledge:k1", "--json",
        ]
        r = run(base + ["--direction", "forward"])
        assert [x["id"] for x in json.loads(r.stdout)["results"]] == ["t1"]
        r = run(base + ["--direction", "backward"])
        assert json.loads(r.stdout)["results"] == []

    def test_at_time(self, populated_db):
        r = run([
            "query", "--db", populated_db, "--type", "knowledge",
            "--at-time", "2024-03-01", "--json",
        ])
        assert json.loads(r.stdout)["results"] == []

    def test_limit_env_and_flag(self, populated_db):
        r = run(
            ["query", "--db", populated_db, "--json"],
            env={"AGENTMEM_LIMIT": "1"},
        )
        data = json.loads(r.stdout)
        assert data["meta"]["returned_count"] == 1
        assert data["meta"]["has_more"] is True

        r = run(
            ["query", "--db", populated_db, "--limit", "5", "--json"],
            env={"AGENTMEM_LIMIT": "1"},
        )
        assert json.loads(r.stdout)["meta"]["returned_count"] == 3

    def test_db_from_env(self, populated_db):
        r = run(["query", "--type", "guideline", "--json"], env={"AGENTMEM_DB": populated_db})
        assert [x["id"] for x in json.loads(r.stdout)["results"]] == ["g1"]

    def test_text_output(self, populated_db):
        r = run(["query", "--db", populated_db, "--type", "guideline"])
        assert r.returncode == 0
        assert "g1" in r.stdout
        assert "pin image tags" in r.stdout

    def test_invalid_limit_exit_1(self, populated_db):
        r = run(["query", "--db", populated_db, "--limit", "0"])
        assert r.returncode == 1
        assert "limit" in r.stderr

    def test_unknown_scope_exit_1(self, populated_db):
        r = run([
            "query", "--db", populated_db, "--scope-type", "project", "--scope-id", "ghost",
        ])
        assert r.returncode == 1
        assert "ghost" in r.stderr

    def test_bad_config_exit_1(self, populated_db, tmp_path):
        cfg = tmp_path / "bad.json"
        cfg.write_text(json.dumps({"scoring": {"decay_function": "cubic"}}))
        r = run(["query", "--db", populated_db, "--config", str(cfg)])
        assert r.returncode == 1


# ---------------------------------------------------------------------------
# stats & misc
# ---------------------------------------------------------------------------


class TestStats:
    def test_json(self, populated_db):
        r = run(["stats", "--db", populated_db, "--json"])
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["status"] == "ok"
        assert data["active_entries"]["tool"] == 2

    def test_text(self, populated_db):
        r = run(["stats", "--db", populated_db])
        assert "Entry Store Statistics" in r.stdout


class TestExitCodes:
    def test_no_command(self):
        assert run([]).returncode == 1

    def test_unopenable_db_exit_2(self, tmp_path):
        r = run(["stats", "--db", str(tmp_path)])
        assert r.returncode == 2
        assert "Internal error" in r.stderr
