"""
Entry Store — SQLite Persistent Backend

Tables:
    organizations, projects, sessions  - Scope rows (parent pointers)
    tools, guidelines, knowledge,
    experiences                         - Entries, one table per variant
    tool_versions, guideline_versions,
    knowledge_versions                  - Append-only version history
    tags, entry_tags                    - Tag vocabulary and assignments
    entry_relations                     - Typed links between entries
    entry_embeddings                    - Vector embeddings per entry
    <table>_fts                         - FTS5 index per entry table

Thread safety: uses sqlite3 check_same_thread=False with explicit
serialization, so reads can be dispatched to worker threads by the async
query pipeline. Read failures surface as StorageError.

The insert helpers are storage primitives for seeding and tests; they do
not decide version numbers beyond "next after max", resolve conflicts, or
generate embeddings.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import struct
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from agentmem.errors import StorageError
from agentmem.predicates import EntryQuery, StructuralFilter, as_instant
from agentmem.query import cascade_query, fts_and_expr, fts_or_expr, normalize_query
from agentmem.types import (
    ENTRY_TYPES,
    Entry,
    EntryVersion,
    _generate_id,
    _now_iso,
    entry_from_row,
    normalize_timestamp,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Per-type storage layout: entry table, label column, FTS body source
ENTRY_TABLES: Dict[str, str] = {
    "tool": "tools",
    "guideline": "guidelines",
    "knowledge": "knowledge",
    "experience": "experiences",
}
LABEL_COLUMNS: Dict[str, str] = {
    "tool": "name",
    "guideline": "name",
    "knowledge": "title",
    "experience": "title",
}
# (version table, foreign key column, content column)
VERSION_TABLES: Dict[str, Tuple[str, str, str]] = {
    "tool": ("tool_versions", "tool_id", "description"),
    "guideline": ("guideline_versions", "guideline_id", "content"),
    "knowledge": ("knowledge_versions", "knowledge_id", "content"),
}

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_ENTRY_COMMON = """
    id                 TEXT PRIMARY KEY,
    scope_type         TEXT NOT NULL CHECK(scope_type IN ('global','org','project','session')),
    scope_id           TEXT,
    category           TEXT,
    current_version_id TEXT,
    is_active          INTEGER NOT NULL DEFAULT 1,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    created_by         TEXT"""

_VERSION_COMMON = """
    id             TEXT PRIMARY KEY,
    version_num    INTEGER NOT NULL,
    change_reason  TEXT,
    created_at     TEXT NOT NULL,
    created_by     TEXT"""

_SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS organizations (
    id         TEXT PRIMARY KEY,
    name       TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id         TEXT PRIMARY KEY,
    org_id     TEXT REFERENCES organizations(id),
    name       TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id         TEXT PRIMARY KEY,
    project_id TEXT REFERENCES projects(id),
    name       TEXT,
    status     TEXT NOT NULL DEFAULT 'active',
    started_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tools ({_ENTRY_COMMON},
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS guidelines ({_ENTRY_COMMON},
    name     TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 50
);

CREATE TABLE IF NOT EXISTS knowledge ({_ENTRY_COMMON},
    title       TEXT NOT NULL,
    valid_from  TEXT,               -- NULL = valid since always
    valid_until TEXT                -- NULL = still valid
);

CREATE TABLE IF NOT EXISTS experiences ({_ENTRY_COMMON},
    title    TEXT NOT NULL,
    content  TEXT NOT NULL DEFAULT '',
    level    TEXT NOT NULL DEFAULT 'case',
    scenario TEXT NOT NULL DEFAULT '',
    outcome  TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS tool_versions ({_VERSION_COMMON},
    tool_id     TEXT NOT NULL REFERENCES tools(id),
    description TEXT NOT NULL DEFAULT '',
    UNIQUE(tool_id, version_num)
);

CREATE TABLE IF NOT EXISTS guideline_versions ({_VERSION_COMMON},
    guideline_id TEXT NOT NULL REFERENCES guidelines(id),
    content      TEXT NOT NULL DEFAULT '',
    UNIQUE(guideline_id, version_num)
);

CREATE TABLE IF NOT EXISTS knowledge_versions ({_VERSION_COMMON},
    knowledge_id TEXT NOT NULL REFERENCES knowledge(id),
    content      TEXT NOT NULL DEFAULT '',
    UNIQUE(knowledge_id, version_num)
);

CREATE TABLE IF NOT EXISTS tags (
    id   TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS entry_tags (
    entry_type TEXT NOT NULL,
    entry_id   TEXT NOT NULL,
    tag_id     TEXT NOT NULL REFERENCES tags(id),
    PRIMARY KEY (entry_type, entry_id, tag_id)
);

CREATE TABLE IF NOT EXISTS entry_relations (
    source_type   TEXT NOT NULL,
    source_id     TEXT NOT NULL,
    target_type   TEXT NOT NULL,
    target_id     TEXT NOT NULL,
    relation_type TEXT NOT NULL DEFAULT 'related_to',
    created_at    TEXT NOT NULL,
    PRIMARY KEY (source_type, source_id, target_type, target_id, relation_type)
);

CREATE TABLE IF NOT EXISTS entry_embeddings (
    entry_type TEXT NOT NULL,
    entry_id   TEXT NOT NULL,
    model_name TEXT NOT NULL,
    dimension  INTEGER NOT NULL,
    vector     BLOB NOT NULL,      -- float32 packed bytes
    created_at TEXT NOT NULL,
    PRIMARY KEY (entry_type, entry_id)
);

-- Schema metadata for forward compatibility
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Indexes for the scope-ordered fetch
CREATE INDEX IF NOT EXISTS idx_tools_scope ON tools(scope_type, scope_id, is_active);
CREATE INDEX IF NOT EXISTS idx_guidelines_scope ON guidelines(scope_type, scope_id, is_active);
CREATE INDEX IF NOT EXISTS idx_knowledge_scope ON knowledge(scope_type, scope_id, is_active);
CREATE INDEX IF NOT EXISTS idx_knowledge_valid ON knowledge(valid_from, valid_until);
CREATE INDEX IF NOT EXISTS idx_experiences_scope ON experiences(scope_type, scope_id, is_active);
CREATE INDEX IF NOT EXISTS idx_projects_org ON projects(org_id);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_relations_source ON entry_relations(source_type, source_id);
CREATE INDEX IF NOT EXISTS idx_relations_target ON entry_relations(target_type, target_id);
"""

# ---------------------------------------------------------------------------
# FTS5 Schema (separate — requires SQLite FTS5 extension)
# ---------------------------------------------------------------------------
# One FTS table per entry table, keyed by entry_id. The label column mirrors
# the entry's name/title; the body column holds the latest version content
# (or the inline content for experiences). Triggers keep both in sync.
# ---------------------------------------------------------------------------

# Conservative whitelist for FTS5 tokenizer strings: only alphanumeric, space,
# underscore, dot, hyphen, and digits are allowed.  Rejects quotes, semicolons,
# parentheses — prevents SQL injection via config or CLI.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

# Well-known presets for --fts-tokenizer CLI flag
FTS_TOKENIZER_PRESETS = {
    "fr": "unicode61 remove_diacritics 2",
    "en": "porter unicode61 remove_diacritics 2",
    "raw": "unicode61",
}


def _validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} — "
            "only [a-zA-Z0-9_ .-] characters allowed"
        )
    return tokenizer


def _fts5_schema_sql(tokenizer: str) -> str:
    """Generate FTS5 schema SQL with a validated tokenizer string."""
    safe = _validate_fts_tokenizer(tokenizer)
    parts: List[str] = []
    for entry_type in ENTRY_TYPES:
        table = ENTRY_TABLES[entry_type]
        label = LABEL_COLUMNS[entry_type]
        if entry_type in VERSION_TABLES:
            vtable, fk, content = VERSION_TABLES[entry_type]
            body = (
                f"COALESCE((SELECT {content} FROM {vtable} WHERE {fk} = new.id "
                f"ORDER BY version_num DESC LIMIT 1), '')"
            )
        else:
            body = "new.content || ' ' || new.scenario || ' ' || new.outcome"
        parts.append(f"""
CREATE VIRTUAL TABLE IF NOT EXISTS {table}_fts USING fts5(
    entry_id UNINDEXED, label, body,
    tokenize='{safe}'
);

CREATE TRIGGER IF NOT EXISTS {table}_fts_ai
AFTER INSERT ON {table} BEGIN
    DELETE FROM {table}_fts WHERE entry_id = new.id;
    INSERT INTO {table}_fts(entry_id, label, body)
    VALUES (new.id, new.{label}, {body});
END;

CREATE TRIGGER IF NOT EXISTS {table}_fts_au
AFTER UPDATE ON {table} BEGIN
    DELETE FROM {table}_fts WHERE entry_id = old.id;
    INSERT INTO {table}_fts(entry_id, label, body)
    VALUES (new.id, new.{label}, {body});
END;
""")
        if entry_type in VERSION_TABLES:
            vtable, fk, content = VERSION_TABLES[entry_type]
            parts.append(f"""
CREATE TRIGGER IF NOT EXISTS {vtable}_fts_ai
AFTER INSERT ON {vtable} BEGIN
    UPDATE {table}_fts SET body = new.{content} WHERE entry_id = new.{fk};
END;
""")
    return "".join(parts)


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

def _pack_vector(vec: Sequence[float]) -> bytes:
    """Pack float list to bytes (float32)."""
    return struct.pack(f"{len(vec)}f", *vec)


def _unpack_vector(data: bytes, dim: int) -> List[float]:
    """Unpack bytes to float list (float32)."""
    return list(struct.unpack(f"{dim}f", data))


# ---------------------------------------------------------------------------
# EntryStore
# ---------------------------------------------------------------------------

class EntryStore:
    """
    SQLite-backed persistent store for scoped, versioned entries.

    Thread-safe via explicit lock. The query pipeline only reads.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
    ):
        """Initialize SQLite-backed entry store with schema and FTS5.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            fts_tokenizer: FTS5 tokenizer string.  Defaults to
                ``"unicode61 remove_diacritics 2"``.  Must match
                ``[a-zA-Z0-9_ .-]+``.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._fts5_available: bool = False
        self._fts_tokenizer = fts_tokenizer or "unicode61 remove_diacritics 2"
        # Auto-create parent directory for disk-backed databases.
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'agentmem')",
        )
        self._conn.commit()
        self._init_fts5()
        logger.info(
            f"EntryStore initialized: {db_path} "
            f"(fts5={'yes' if self._fts5_available else 'no'}"
            f"{', tokenizer=' + self._fts_tokenizer if self._fts5_available else ''})"
        )

    def _init_fts5(self) -> None:
        """
        Create FTS5 virtual tables and sync triggers.

        If the SQLite build does not include FTS5, this sets
        ``_fts5_available = False`` and full-text matching falls back to
        LIKE on the label columns.
        """
        try:
            self._conn.executescript(_fts5_schema_sql(self._fts_tokenizer))
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) "
                "VALUES ('fts_tokenizer', ?)",
                (self._fts_tokenizer,),
            )
            self._conn.commit()
            self._fts5_available = True
            logger.debug(
                f"FTS5 tables initialized (tokenizer={self._fts_tokenizer})"
            )
        except sqlite3.OperationalError as exc:
            # Typical message: "no such module: fts5"
            self._fts5_available = False
            logger.warning(f"FTS5 not available, falling back to LIKE search: {exc}")

    @property
    def fts5_available(self) -> bool:
        return self._fts5_available

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Read plumbing -----------------------------------------------------

    def _fetchall(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        entry_type: Optional[str] = None,
        scope: Optional[Any] = None,
    ) -> List[sqlite3.Row]:
        """Run one read statement; wrap driver errors in StorageError."""
        try:
            with self._lock:
                return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(
                f"Read failed: {exc}", entry_type=entry_type, scope=scope,
            ) from exc

    # -- Scopes ------------------------------------------------------------

    def read_scope(self, scope_type: str, scope_id: str) -> Optional[Dict[str, Any]]:
        """Read one scope row with its parent pointer, or None."""
        sql = {
            "org": "SELECT id, name FROM organizations WHERE id=?",
            "project": "SELECT id, name, org_id FROM projects WHERE id=?",
            "session": "SELECT id, name, project_id FROM sessions WHERE id=?",
        }.get(scope_type)
        if sql is None:
            return None
        rows = self._fetchall(sql, (scope_id,))
        return dict(rows[0]) if rows else None

    # -- Entries -----------------------------------------------------------

    def select_entries(
        self, query: EntryQuery, *, scope: Optional[Any] = None,
    ) -> List[Entry]:
        """Execute one bounded entry read, routed by filter kind."""
        if query.is_raw:
            return self._select_raw(query, scope=scope)
        return self._select_structural(query, scope=scope)

    def _select_structural(
        self, query: EntryQuery, *, scope: Optional[Any] = None,
    ) -> List[Entry]:
        """Structural builder path: WHERE compiled from StructuralFilter."""
        table = ENTRY_TABLES[query.entry_type]
        where = query.where.to_sql()
        sql = (
            f"SELECT * FROM {table} WHERE {where.sql} "
            f"ORDER BY {query.order_by} LIMIT ?"
        )
        limit = query.limit if query.limit is not None else -1
        rows = self._fetchall(
            sql, where.params + (limit,),
            entry_type=query.entry_type, scope=scope,
        )
        return [entry_from_row(query.entry_type, row) for row in rows]

    def _select_raw(
        self, query: EntryQuery, *, scope: Optional[Any] = None,
    ) -> List[Entry]:
        """Raw-predicate path: structural WHERE plus a hand-written
        validity-window fragment (knowledge only)."""
        if query.entry_type != "knowledge":
            raise ValueError(
                f"Temporal predicates apply to knowledge only, got {query.entry_type!r}"
            )
        where = query.where.to_sql()
        temporal = query.temporal.to_sql()
        sql = (
            "SELECT * FROM knowledge "
            f"WHERE {where.sql} AND {temporal.sql} "
            f"ORDER BY {query.order_by} LIMIT ?"
        )
        limit = query.limit if query.limit is not None else -1
        rows = self._fetchall(
            sql, where.params + temporal.params + (limit,),
            entry_type="knowledge", scope=scope,
        )
        return [entry_from_row("knowledge", row) for row in rows]

    # -- Versions ----------------------------------------------------------

    def select_versions(
        self, entry_type: str, entry_ids: Sequence[str],
    ) -> List[EntryVersion]:
        """All version rows for the given ids in one statement.

        Rows come back grouped by entry, version_num descending.
        """
        if not entry_ids:
            return []
        vtable, fk, content = VERSION_TABLES[entry_type]
        placeholders = ",".join("?" for _ in entry_ids)
        rows = self._fetchall(
            f"SELECT id, {fk} AS entry_id, version_num, {content} AS content, "
            f"change_reason, created_at, created_by FROM {vtable} "
            f"WHERE {fk} IN ({placeholders}) "
            f"ORDER BY {fk}, version_num DESC",
            list(entry_ids),
            entry_type=entry_type,
        )
        return [EntryVersion.from_dict(row) for row in rows]

    # -- Tags --------------------------------------------------------------

    def read_tags(
        self, entry_type: str, entry_ids: Sequence[str],
    ) -> Dict[str, List[str]]:
        """Tag names per entry id (ids without tags are absent)."""
        if not entry_ids:
            return {}
        placeholders = ",".join("?" for _ in entry_ids)
        rows = self._fetchall(
            "SELECT et.entry_id, t.name FROM entry_tags et "
            "JOIN tags t ON t.id = et.tag_id "
            f"WHERE et.entry_type=? AND et.entry_id IN ({placeholders}) "
            "ORDER BY t.name",
            [entry_type, *entry_ids],
            entry_type=entry_type,
        )
        result: Dict[str, List[str]] = {}
        for row in rows:
            result.setdefault(row["entry_id"], []).append(row["name"])
        return result

    # -- Relations ---------------------------------------------------------

    def read_relations(
        self,
        entry_type: str,
        entry_id: str,
        *,
        relation: Optional[str] = None,
        direction: str = "both",
        limit: Optional[int] = None,
    ) -> List[Tuple[str, str]]:
        """(type, id) of entries linked to the given entry.

        ``direction`` is "forward" (entry is the source), "backward" (entry
        is the target) or "both". ``relation`` restricts to one relation type.
        """
        parts: List[str] = []
        params: List[Any] = []
        legs = {
            "forward": ("target", "source"),
            "backward": ("source", "target"),
        }
        for leg in ("forward", "backward"):
            if direction not in (leg, "both"):
                continue
            other, anchor = legs[leg]
            sql = (
                f"SELECT {other}_type AS t, {other}_id AS i FROM entry_relations "
                f"WHERE {anchor}_type=? AND {anchor}_id=?"
            )
            params.extend([entry_type, entry_id])
            if relation is not None:
                sql += " AND relation_type=?"
                params.append(relation)
            parts.append(sql)
        if not parts:
            raise ValueError(f"unknown relation direction {direction!r}")
        sql = " UNION ".join(parts) + " ORDER BY t, i"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._fetchall(sql, params)
        return [(row["t"], row["i"]) for row in rows]

    # -- Embeddings --------------------------------------------------------

    def all_embeddings(
        self, entry_types: Iterable[str],
    ) -> List[Tuple[str, str, List[float]]]:
        """Return all (entry_type, entry_id, vector) for the given types."""
        types = list(entry_types)
        if not types:
            return []
        placeholders = ",".join("?" for _ in types)
        rows = self._fetchall(
            "SELECT entry_type, entry_id, vector, dimension FROM entry_embeddings "
            f"WHERE entry_type IN ({placeholders})",
            types,
        )
        return [
            (row["entry_type"], row["entry_id"],
             _unpack_vector(row["vector"], row["dimension"]))
            for row in rows
        ]

    # -- Full-text ---------------------------------------------------------

    def match_fulltext(
        self,
        entry_type: str,
        query: str,
        where: StructuralFilter,
        limit: Optional[int] = None,
    ) -> List[str]:
        """
        Ids of entries of one type matching a free-text query.

        Strategy:
            1. Normalize query (strip stop words).
            2. If FTS5 available, run cascade AND(all) → REDUCED_AND → OR(all).
            3. On any FTS5 error, fall back to LIKE on the label column.

        ``where`` constrains the match (scope chain, is_active).
        """
        terms = normalize_query(query).strip().split()
        if not terms:
            return []

        if self._fts5_available:
            try:
                def and_fn(t: List[str]) -> List[str]:
                    return self._match_fts5(entry_type, fts_and_expr(t), where, limit)

                def or_fn(t: List[str]) -> List[str]:
                    return self._match_fts5(entry_type, fts_or_expr(t), where, limit)

                ids, strategy, effective, dropped = cascade_query(terms, and_fn, or_fn)
                logger.debug(
                    "[fts] %s %s(%s) → %d ids",
                    entry_type, strategy, " ".join(effective), len(ids),
                )
                return ids
            except sqlite3.DatabaseError as exc:
                logger.warning("FTS5 match failed, falling back to LIKE: %s", exc)

        return self._match_like(entry_type, terms, where, limit)

    def _match_fts5(
        self,
        entry_type: str,
        fts_query: str,
        where: StructuralFilter,
        limit: Optional[int],
    ) -> List[str]:
        """Execute a raw FTS5 MATCH query with filters."""
        table = ENTRY_TABLES[entry_type]
        clause = where.to_sql(alias="e.")
        sql = (
            f"SELECT e.id FROM {table} e "
            f"JOIN {table}_fts ON {table}_fts.entry_id = e.id "
            f"WHERE {clause.sql} AND {table}_fts MATCH ? "
            f"ORDER BY {table}_fts.rank LIMIT ?"
        )
        with self._lock:
            rows = self._conn.execute(
                sql, clause.params + (fts_query, limit if limit is not None else -1),
            ).fetchall()
        return [row["id"] for row in rows]

    def _match_like(
        self,
        entry_type: str,
        terms: List[str],
        where: StructuralFilter,
        limit: Optional[int],
    ) -> List[str]:
        """LIKE-based fallback: each term must appear in the label (AND)."""
        table = ENTRY_TABLES[entry_type]
        label = LABEL_COLUMNS[entry_type]
        clause = where.to_sql()
        conditions = [clause.sql]
        params: list = list(clause.params)
        for term in terms:
            conditions.append(f"{label} LIKE ?")
            params.append(f"%{term}%")
        params.append(limit if limit is not None else -1)
        rows = self._fetchall(
            f"SELECT id FROM {table} WHERE {' AND '.join(conditions)} "
            f"ORDER BY created_at DESC LIMIT ?",
            params,
            entry_type=entry_type,
        )
        return [row["id"] for row in rows]

    # -- Write helpers (seeding) -------------------------------------------

    def add_organization(self, org_id: str, name: str = "") -> str:
        """Insert an organization scope row."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO organizations (id, name, created_at) VALUES (?,?,?)",
                (org_id, name or org_id, _now_iso()),
            )
            self._conn.commit()
        return org_id

    def add_project(
        self, project_id: str, org_id: Optional[str] = None, name: str = "",
    ) -> str:
        """Insert a project scope row under an optional organization."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO projects (id, org_id, name, created_at) VALUES (?,?,?,?)",
                (project_id, org_id, name or project_id, _now_iso()),
            )
            self._conn.commit()
        return project_id

    def add_session(
        self, session_id: str, project_id: Optional[str] = None, name: str = "",
    ) -> str:
        """Insert a session scope row under an optional project."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO sessions (id, project_id, name, started_at) VALUES (?,?,?,?)",
                (session_id, project_id, name or session_id, _now_iso()),
            )
            self._conn.commit()
        return session_id

    def write_entry(self, entry: Entry, tags: Optional[List[str]] = None) -> Entry:
        """Insert or replace an entry row (and its tags, if given)."""
        entry_type = entry.entry_type
        table = ENTRY_TABLES[entry_type]
        row = entry.to_dict()
        row["is_active"] = int(entry.is_active)
        for column in ("created_at", "updated_at"):
            row[column] = as_instant(normalize_timestamp(row[column]))
        if entry_type == "knowledge":
            if row["valid_from"]:
                row["valid_from"] = as_instant(normalize_timestamp(row["valid_from"]))
            if row["valid_until"]:
                row["valid_until"] = as_instant(
                    normalize_timestamp(row["valid_until"]), end_of_day=True,
                )
        columns = list(row.keys())
        placeholders = ",".join("?" for _ in columns)
        updates = ", ".join(f"{c}=excluded.{c}" for c in columns if c != "id")
        with self._lock:
            self._conn.execute(
                f"INSERT INTO {table} ({','.join(columns)}) "
                f"VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                [row[c] for c in columns],
            )
            self._conn.commit()
        if tags:
            self.tag_entry(entry_type, entry.id, tags)
        return entry

    def add_version(
        self,
        entry_type: str,
        entry_id: str,
        content: str,
        *,
        change_reason: Optional[str] = None,
        created_by: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> EntryVersion:
        """Append the next version row for an entry."""
        vtable, fk, column = VERSION_TABLES[entry_type]
        with self._lock:
            version = EntryVersion(
                id=_generate_id("VER"),
                entry_id=entry_id,
                version_num=self._next_version_num(vtable, fk, entry_id),
                content=content,
                change_reason=change_reason,
                created_at=created_at or _now_iso(),
                created_by=created_by,
            )
            self._conn.execute(
                f"INSERT INTO {vtable} (id, {fk}, version_num, {column}, "
                "change_reason, created_at, created_by) VALUES (?,?,?,?,?,?,?)",
                (
                    version.id, entry_id, version.version_num, content,
                    change_reason, version.created_at, created_by,
                ),
            )
            self._conn.commit()
        return version

    def tag_entry(self, entry_type: str, entry_id: str, tags: List[str]) -> None:
        """Attach tags (lowercased) to an entry, creating tag rows as needed."""
        with self._lock:
            for name in tags:
                name = name.strip().lower()
                if not name:
                    continue
                self._conn.execute(
                    "INSERT OR IGNORE INTO tags (id, name) VALUES (?,?)",
                    (_generate_id("TAG"), name),
                )
                tag_id = self._conn.execute(
                    "SELECT id FROM tags WHERE name=?", (name,)
                ).fetchone()["id"]
                self._conn.execute(
                    "INSERT OR IGNORE INTO entry_tags (entry_type, entry_id, tag_id) "
                    "VALUES (?,?,?)",
                    (entry_type, entry_id, tag_id),
                )
            self._conn.commit()

    def write_relation(
        self,
        source_type: str,
        source_id: str,
        target_type: str,
        target_id: str,
        relation_type: str = "related_to",
    ) -> None:
        """Create a link between two entries."""
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO entry_relations
                   (source_type, source_id, target_type, target_id,
                    relation_type, created_at) VALUES (?,?,?,?,?,?)""",
                (source_type, source_id, target_type, target_id,
                 relation_type, _now_iso()),
            )
            self._conn.commit()

    def write_embedding(
        self,
        entry_type: str,
        entry_id: str,
        vector: Sequence[float],
        model_name: str = "external",
    ) -> None:
        """Store or update the embedding for an entry."""
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO entry_embeddings
                   (entry_type, entry_id, model_name, dimension, vector, created_at)
                   VALUES (?,?,?,?,?,?)""",
                (entry_type, entry_id, model_name, len(vector),
                 _pack_vector(vector), _now_iso()),
            )
            self._conn.commit()

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the entry store."""
        by_type: Dict[str, int] = {}
        versions: Dict[str, int] = {}
        for entry_type in ENTRY_TYPES:
            table = ENTRY_TABLES[entry_type]
            by_type[entry_type] = self._fetchall(
                f"SELECT COUNT(*) AS cnt FROM {table} WHERE is_active=1"
            )[0]["cnt"]
            if entry_type in VERSION_TABLES:
                vtable = VERSION_TABLES[entry_type][0]
                versions[entry_type] = self._fetchall(
                    f"SELECT COUNT(*) AS cnt FROM {vtable}"
                )[0]["cnt"]
        embeddings = self._fetchall(
            "SELECT COUNT(*) AS cnt FROM entry_embeddings"
        )[0]["cnt"]
        return {
            "active_entries": by_type,
            "versions": versions,
            "embeddings_count": embeddings,
            "fts5_available": self._fts5_available,
            "fts_tokenizer": self._fts_tokenizer if self._fts5_available else None,
        }

    # -- Internal helpers --------------------------------------------------

    def _next_version_num(self, vtable: str, fk: str, entry_id: str) -> int:
        """Get next version number for an entry (must be called within lock)."""
        row = self._conn.execute(
            f"SELECT MAX(version_num) AS mx FROM {vtable} WHERE {fk}=?",
            (entry_id,),
        ).fetchone()
        return (row["mx"] or 0) + 1

