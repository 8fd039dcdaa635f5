"""
agentmem — Scoped, versioned memory for AI coding agents.

Tools, guidelines, knowledge and experiences live in one SQLite + FTS5 + WAL
database and are served back through a structured query pipeline with scope
inheritance, temporal validity and composite ranking.
"""

__version__ = "0.1.0"

from agentmem.types import (
    Entry,
    Tool,
    Guideline,
    Knowledge,
    Experience,
    EntryVersion,
    VersionInfo,
    ScopeRef,
    QueryRequest,
    QueryResult,
    QueryResultItem,
)
from agentmem.errors import AgentMemError, NotFoundError, StorageError, ValidationError
from agentmem.store import EntryStore, SCHEMA_VERSION
from agentmem.config import AgentMemConfig, load_config
from agentmem.pipeline import QueryPipeline

__all__ = [
    "__version__",
    "Entry",
    "Tool",
    "Guideline",
    "Knowledge",
    "Experience",
    "EntryVersion",
    "VersionInfo",
    "ScopeRef",
    "QueryRequest",
    "QueryResult",
    "QueryResultItem",
    "AgentMemError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "EntryStore",
    "SCHEMA_VERSION",
    "AgentMemConfig",
    "load_config",
    "QueryPipeline",
]
