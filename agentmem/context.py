"""
Request-scoped pipeline records.

QueryContext is frozen: every stage returns a new record built with
``dataclasses.replace``. Nothing in it outlives one ``execute()`` call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from agentmem.config import AgentMemConfig
from agentmem.types import CandidateScore, Entry, QueryRequest, QueryResult, ScopeRef, VersionInfo

# (entry_type, entry_id)
EntryKey = Tuple[str, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineDeps:
    """Collaborators and settings shared by the stages of one pipeline."""

    store: Any
    config: AgentMemConfig
    embedder: Optional[Any] = None
    vector_index: Optional[Any] = None
    relations: Optional[Any] = None
    clock: Callable[[], datetime] = utc_now


@dataclass(frozen=True)
class QueryContext:
    """Accumulated state of one query as it moves through the stages."""

    request: QueryRequest
    chain: Tuple[ScopeRef, ...] = ()
    # Candidate signals
    fts_match_ids: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    semantic_scores: Dict[EntryKey, CandidateScore] = field(default_factory=dict)
    related_ids: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    # Fetch output
    fetched: Dict[str, Tuple[Entry, ...]] = field(default_factory=dict)
    capped: Dict[str, bool] = field(default_factory=dict)
    scope_index: Dict[EntryKey, int] = field(default_factory=dict)
    # Attachments
    tags: Dict[EntryKey, Tuple[str, ...]] = field(default_factory=dict)
    versions: Dict[EntryKey, VersionInfo] = field(default_factory=dict)
    result: Optional[QueryResult] = None
