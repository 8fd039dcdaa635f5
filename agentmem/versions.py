"""
Version batch loader.

One batched read per versioned type with a non-empty id list. ``current`` is
the highest version_num; ``history`` is every version, newest first, so
``history[0]`` is ``current``. Entries without versions are absent from the
returned maps.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Tuple

from agentmem.context import EntryKey, PipelineDeps, QueryContext
from agentmem.types import EntryVersion, VersionInfo

logger = logging.getLogger(__name__)

VersionMap = Dict[str, VersionInfo]


def _dedupe(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(ids))


def _group(versions: List[EntryVersion]) -> VersionMap:
    grouped: Dict[str, List[EntryVersion]] = {}
    for v in versions:
        grouped.setdefault(v.entry_id, []).append(v)
    result: VersionMap = {}
    for entry_id, history in grouped.items():
        history.sort(key=lambda v: v.version_num, reverse=True)
        result[entry_id] = VersionInfo(current=history[0], history=history)
    return result


def _load_type(store, entry_type: str, ids: Iterable[str]) -> VersionMap:
    unique = _dedupe(ids)
    if not unique:
        return {}
    return _group(store.select_versions(entry_type, unique))


def load_versions(
    store,
    tool_ids: Iterable[str] = (),
    guideline_ids: Iterable[str] = (),
    knowledge_ids: Iterable[str] = (),
) -> Tuple[VersionMap, VersionMap, VersionMap]:
    """Attach current + history snapshots for three id lists.

    Returns:
        (tools_map, guidelines_map, knowledge_map), each id → VersionInfo.
    """
    return (
        _load_type(store, "tool", tool_ids),
        _load_type(store, "guideline", guideline_ids),
        _load_type(store, "knowledge", knowledge_ids),
    )


async def version_stage(ctx: QueryContext, deps: PipelineDeps) -> QueryContext:
    """Load versions for fetched entries when ``with_versions`` is set."""
    if not ctx.request.with_versions:
        return ctx

    def ids(entry_type: str) -> List[str]:
        return [e.id for e in ctx.fetched.get(entry_type, ())]

    maps = await asyncio.to_thread(
        load_versions, deps.store, ids("tool"), ids("guideline"), ids("knowledge"),
    )
    versions: Dict[EntryKey, VersionInfo] = {}
    for entry_type, vmap in zip(("tool", "guideline", "knowledge"), maps):
        for entry_id, info in vmap.items():
            versions[(entry_type, entry_id)] = info
    logger.debug("versions attached: %d", len(versions))
    return replace(ctx, versions=versions)
