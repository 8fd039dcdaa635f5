"""
agentmem MCP Tools — structured memory query for MCP clients.

Thin wrappers around QueryPipeline and EntryStore:

    memory_query  — scoped, filtered, ranked query over entries
    memory_stats  — entry counts and search capabilities

Errors are returned as ``{"status": "error", ...}`` dictionaries; nothing
is raised to the MCP transport.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from agentmem.errors import NotFoundError, StorageError, ValidationError
from agentmem.pipeline import QueryPipeline
from agentmem.store import EntryStore

logger = logging.getLogger(__name__)


def _split(value: Optional[Union[str, List[str]]]) -> Optional[List[str]]:
    """Accept either a list or a comma-separated string."""
    if value is None:
        return None
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return list(value)


def register_query_tools(mcp, store: EntryStore, pipeline: QueryPipeline) -> None:
    """
    Register the query MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        store: Fully initialized EntryStore.
        pipeline: QueryPipeline bound to the same store.
    """

    @mcp.tool()
    async def memory_query(
        types: Optional[Union[str, List[str]]] = None,
        scope_type: str = "global",
        scope_id: Optional[str] = None,
        inherit: bool = True,
        search: Optional[str] = None,
        semantic_search: bool = False,
        related_to: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
        priority: Optional[Dict[str, int]] = None,
        level: Optional[str] = None,
        tags: Optional[Union[str, List[str]]] = None,
        any_tags: Optional[Union[str, List[str]]] = None,
        exclude_tags: Optional[Union[str, List[str]]] = None,
        created_after: Optional[str] = None,
        created_before: Optional[str] = None,
        updated_after: Optional[str] = None,
        updated_before: Optional[str] = None,
        created_by: Optional[str] = None,
        include_inactive: bool = False,
        at_time: Optional[str] = None,
        valid_during: Optional[Dict[str, str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        with_versions: bool = False,
    ) -> Dict[str, Any]:
        """Query tools, guidelines, knowledge and experiences.

        Reads the given scope and, with inherit, its parents up to global
        (session → project → org → global). Full-text ``search`` and
        ``semantic_search`` turn on composite scoring; otherwise results
        keep storage order (guidelines by priority, others newest first).

        Args:
            types: Entry types (tool|guideline|knowledge|experience), list
                or comma-separated. None = all four.
            scope_type: global|org|project|session.
            scope_id: Scope id (omit for global).
            inherit: Include parent scopes.
            search: Full-text search text.
            semantic_search: Add embedding similarity (needs search text).
            related_to: {"id": ..., "type": ...} anchor entry, optionally
                with "relation", "direction" (forward|backward|both) and
                "max_results".
            category: Exact category filter.
            priority: {"min": .., "max": ..} guideline priority range.
            level: Experience level (case|strategy).
            tags: Required tags (all must be present).
            any_tags: At least one of these tags must be present.
            exclude_tags: Entries carrying any of these tags are dropped.
            created_after / created_before / updated_after / updated_before:
                ISO-8601 dates or timestamps (bare dates cover the whole day).
            created_by: Author filter.
            include_inactive: Include deactivated entries.
            at_time: Knowledge valid at this instant.
            valid_during: {"start": .., "end": ..} knowledge validity overlap.
            limit: Page size (default from config).
            offset: Page start.
            with_versions: Attach current + history versions.

        Returns:
            results: Ranked entries (id, type, fields, tags, score?, version?).
            meta: returned_count, has_more.
        """
        request: Dict[str, Any] = {
            "scope_type": scope_type,
            "scope_id": scope_id,
            "inherit": inherit,
            "search": search,
            "semantic_search": semantic_search,
            "related_to": related_to,
            "category": category,
            "priority": priority,
            "level": level,
            "created_after": created_after,
            "created_before": created_before,
            "updated_after": updated_after,
            "updated_before": updated_before,
            "created_by": created_by,
            "include_inactive": include_inactive,
            "at_time": at_time,
            "valid_during": valid_during,
            "limit": limit if limit is not None else pipeline.config.query.default_limit,
            "offset": offset,
            "with_versions": with_versions,
        }
        type_list = _split(types)
        if type_list:
            request["types"] = type_list
        tag_filter = {
            key: names
            for key, names in (
                ("require", _split(tags)),
                ("include", _split(any_tags)),
                ("exclude", _split(exclude_tags)),
            )
            if names
        }
        if tag_filter:
            request["tags"] = tag_filter

        try:
            result = await pipeline.execute(request)
        except (ValidationError, NotFoundError) as e:
            return {"status": "error", "message": str(e)}
        except StorageError as e:
            logger.error("memory_query storage failure: %s", e)
            return {"status": "error", "message": f"Query failed: {e}"}

        return {"status": "ok", **result.to_dict()}

    @mcp.tool()
    def memory_stats() -> Dict[str, Any]:
        """Entry store statistics: active entries per type, versions, search status.

        Returns:
            active_entries, versions, embeddings_count, fts5_available,
            fts_tokenizer.
        """
        try:
            return {"status": "ok", **store.stats()}
        except StorageError as e:
            return {"status": "error", "message": f"Stats failed: {e}"}
