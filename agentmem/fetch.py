"""
Fetch stage — bounded, filtered, scope-ordered reads per entry type.

For each requested type (types run concurrently):

1. Size the over-fetch: ``cap = ceil((offset + limit) * headroom)``.
     1.2  a non-empty full-text/relation candidate set smaller than the window
     1.5  otherwise, when a tag filter is set (applied after the fetch)
     2.0  otherwise
2. Restrict to candidate ids when full-text and/or relation sets exist
   (intersection when both). An empty restriction skips the scope reads.
3. Read scope by scope along the chain, most specific first, each read
   limited to ``cap - accumulated``.
4. Stop issuing scope reads once the cap is reached (the type is "capped").
5. Backfill semantic hits that the scope reads did not return, best score
   first, one single-id read each, within the remaining budget.

Knowledge queries with ``at_time`` / ``valid_during`` use the raw temporal
predicate; temporal filters on other types are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional, Tuple

from agentmem.context import EntryKey, PipelineDeps, QueryContext
from agentmem.predicates import EntryQuery, StructuralFilter, TemporalPredicate
from agentmem.types import Entry, QueryRequest

logger = logging.getLogger(__name__)

HEADROOM_CANDIDATES = 1.2
HEADROOM_TAGS = 1.5
HEADROOM_DEFAULT = 2.0


@dataclass(frozen=True)
class TypeFetch:
    """Rows read for one entry type, in native order."""

    entry_type: str
    rows: Tuple[Entry, ...]
    capped: bool


def headroom_for(
    request: QueryRequest, candidate_sets: List[FrozenSet[str]],
) -> float:
    """Over-fetch multiplier for one entry type."""
    window = request.window
    if any(0 < len(s) < window for s in candidate_sets):
        return HEADROOM_CANDIDATES
    if request.has_tag_filter:
        return HEADROOM_TAGS
    return HEADROOM_DEFAULT


def fetch_cap(request: QueryRequest, candidate_sets: List[FrozenSet[str]]) -> int:
    """Soft row cap for one entry type."""
    return math.ceil(request.window * headroom_for(request, candidate_sets))


def candidate_sets(ctx: QueryContext, entry_type: str) -> List[FrozenSet[str]]:
    """Full-text and relation id sets present for this type."""
    return [
        s for s in (ctx.fts_match_ids.get(entry_type), ctx.related_ids.get(entry_type))
        if s is not None
    ]


def candidate_restriction(sets: List[FrozenSet[str]]) -> Optional[FrozenSet[str]]:
    """Ids the scope reads are restricted to, or None for no restriction."""
    if not sets:
        return None
    restriction = sets[0]
    for s in sets[1:]:
        restriction = restriction & s
    return restriction


def base_filter(request: QueryRequest, entry_type: str) -> StructuralFilter:
    """Structural predicates shared by every read of this type."""
    priority = request.priority if entry_type == "guideline" else None
    return StructuralFilter(
        active_only=not request.include_inactive,
        category=request.category,
        priority_min=priority.min if priority else None,
        priority_max=priority.max if priority else None,
        level=request.level if entry_type == "experience" else None,
        created_by=request.created_by,
        created_after=request.created_after,
        created_before=request.created_before,
        updated_after=request.updated_after,
        updated_before=request.updated_before,
    )


def temporal_for(
    request: QueryRequest, entry_type: str,
) -> Optional[TemporalPredicate]:
    if entry_type != "knowledge" or not request.is_temporal:
        return None
    return TemporalPredicate(at_time=request.at_time, valid_during=request.valid_during)


async def fetch_type(
    ctx: QueryContext, deps: PipelineDeps, entry_type: str,
) -> TypeFetch:
    """Bounded fetch of one entry type along the scope chain."""
    req = ctx.request
    store = deps.store
    sets = candidate_sets(ctx, entry_type)
    cap = fetch_cap(req, sets)
    restriction = candidate_restriction(sets)
    where = base_filter(req, entry_type)
    if restriction is not None:
        where = replace(where, ids=tuple(sorted(restriction)))
    temporal = temporal_for(req, entry_type)
    logger.debug(
        "[fetch] %s: cap=%d headroom=%.1f restriction=%s",
        entry_type, cap, headroom_for(req, sets),
        "none" if restriction is None else len(restriction),
    )

    rows: List[Entry] = []
    seen = set()
    capped = False

    if restriction is not None and not restriction:
        logger.debug("[fetch] %s: empty candidate restriction, no scope reads", entry_type)
    else:
        for scope in ctx.chain:
            remaining = cap - len(rows)
            if remaining <= 0:
                break
            query = EntryQuery(
                entry_type, replace(where, scopes=(scope,)), temporal, limit=remaining,
            )
            batch = await asyncio.to_thread(store.select_entries, query, scope=scope)
            logger.debug(
                "[fetch] %s @ %s: LIMIT %d → %d rows", entry_type, scope, remaining, len(batch),
            )
            for entry in batch:
                if entry.id not in seen:
                    seen.add(entry.id)
                    rows.append(entry)
        if len(rows) >= cap:
            capped = True
            logger.debug("[fetch] %s: soft cap %d reached", entry_type, cap)

    # Semantic-only backfill; relation links stay a hard filter
    related = ctx.related_ids.get(entry_type)
    missing = sorted(
        (
            (entry_id, cs.score)
            for (score_type, entry_id), cs in ctx.semantic_scores.items()
            if score_type == entry_type and entry_id not in seen
            and (related is None or entry_id in related)
        ),
        key=lambda p: (-p[1], p[0]),
    )
    for entry_id, score in missing:
        if len(rows) >= cap:
            capped = True
            break
        query = EntryQuery(
            entry_type, replace(where, scopes=ctx.chain, ids=(entry_id,)), temporal, limit=1,
        )
        batch = await asyncio.to_thread(store.select_entries, query)
        logger.debug("[fetch] %s backfill %s (%.3f) → %d", entry_type, entry_id, score, len(batch))
        for entry in batch:
            seen.add(entry.id)
            rows.append(entry)

    return TypeFetch(entry_type, tuple(rows), capped)


async def fetch_stage(ctx: QueryContext, deps: PipelineDeps) -> QueryContext:
    """Fetch every requested type concurrently."""
    results = await asyncio.gather(*(fetch_type(ctx, deps, t) for t in ctx.request.types))
    fetched: Dict[str, Tuple[Entry, ...]] = {}
    capped: Dict[str, bool] = {}
    scope_index: Dict[EntryKey, int] = {}
    positions = {scope: i for i, scope in enumerate(ctx.chain)}
    for tf in results:
        fetched[tf.entry_type] = tf.rows
        capped[tf.entry_type] = tf.capped
        for entry in tf.rows:
            scope_index[(tf.entry_type, entry.id)] = positions.get(entry.scope, len(ctx.chain))
    return replace(ctx, fetched=fetched, capped=capped, scope_index=scope_index)
