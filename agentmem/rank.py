"""
Tag filtering, ranking and pagination.

filter_stage   applies the tag filter, attaches tag names
rank_stage     merges types, scores when a ranking signal exists, slices

Composite score (only with ``search`` or ``semantic_search``):

    text_match_weight * [id in full-text set]
  + semantic_weight   * similarity
  + recency_weight    * decay(age)
  + priority_weight   * priority / 100      (guidelines only)
  + scope_proximity_weight * (n - i) / n   (i = scope chain index, n > 1)

Tag filter: ``require`` keeps entries carrying every listed tag, ``include``
keeps entries carrying at least one, ``exclude`` drops entries carrying any.

Without a ranking signal the native fetch order is kept, type by type in
canonical order.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from agentmem.config import ScoringConfig
from agentmem.context import EntryKey, PipelineDeps, QueryContext
from agentmem.types import ENTRY_TYPES, Entry, Guideline, QueryResult, QueryResultItem

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

async def filter_stage(ctx: QueryContext, deps: PipelineDeps) -> QueryContext:
    """Read tags of fetched entries; apply the request's tag filter."""
    tag_filter = ctx.request.tags
    required = set(tag_filter.require) if tag_filter else set()
    any_of = set(tag_filter.include) if tag_filter else set()
    excluded = set(tag_filter.exclude) if tag_filter else set()

    async def one(entry_type: str) -> Tuple[str, Dict[str, List[str]]]:
        ids = [e.id for e in ctx.fetched.get(entry_type, ())]
        tags = await asyncio.to_thread(deps.store.read_tags, entry_type, ids)
        return entry_type, tags

    pairs = await asyncio.gather(*(one(t) for t in ctx.fetched))
    tags: Dict[EntryKey, Tuple[str, ...]] = {}
    fetched = dict(ctx.fetched)
    for entry_type, by_id in pairs:
        kept = []
        for entry in fetched[entry_type]:
            names = tuple(by_id.get(entry.id, ()))
            if required and not required.issubset(names):
                continue
            if any_of and any_of.isdisjoint(names):
                continue
            if excluded and not excluded.isdisjoint(names):
                continue
            kept.append(entry)
            tags[(entry_type, entry.id)] = names
        if len(kept) != len(fetched[entry_type]):
            logger.debug(
                "tags %s: %s kept %d/%d", tag_filter, entry_type,
                len(kept), len(fetched[entry_type]),
            )
        fetched[entry_type] = tuple(kept)
    return replace(ctx, fetched=fetched, tags=tags)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _parse_ts(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def recency_decay(age_days: float, half_life: float, function: str = "exponential") -> float:
    """Recency factor in [0, 1] for an entry ``age_days`` old."""
    age_days = max(0.0, age_days)
    if function == "linear":
        return max(0.0, 1.0 - age_days / (half_life * 2))
    if function == "step":
        return 1.0 if age_days <= half_life else 0.5
    return math.exp(-math.log(2) * age_days / half_life)


def composite_score(
    entry: Entry,
    *,
    text_match: bool,
    semantic: float,
    now: datetime,
    scoring: ScoringConfig,
    scope_index: int = 0,
    total_scopes: int = 0,
) -> float:
    """Weighted sum of text match, similarity, recency, priority and scope proximity."""
    stamp = entry.updated_at if scoring.use_updated_at else entry.created_at
    try:
        age_days = (now - _parse_ts(stamp)).total_seconds() / 86400.0
        recency = recency_decay(age_days, scoring.decay_half_life_days, scoring.decay_function)
    except ValueError:
        recency = 0.0
    score = (
        scoring.text_match_weight * (1.0 if text_match else 0.0)
        + scoring.semantic_weight * semantic
        + scoring.recency_weight * recency
    )
    if isinstance(entry, Guideline):
        score += scoring.priority_weight * entry.priority / 100.0
    if total_scopes > 1:
        closeness = max(0, total_scopes - scope_index) / total_scopes
        score += scoring.scope_proximity_weight * closeness
    return score


# ---------------------------------------------------------------------------
# Rank & paginate
# ---------------------------------------------------------------------------

async def rank_stage(ctx: QueryContext, deps: PipelineDeps) -> QueryContext:
    """Merge per-type rows, score when requested, slice the page."""
    req = ctx.request
    merged: List[QueryResultItem] = []
    for entry_type in ENTRY_TYPES:
        for entry in ctx.fetched.get(entry_type, ()):
            key = (entry_type, entry.id)
            merged.append(QueryResultItem(
                entry=entry,
                tags=list(ctx.tags.get(key, ())),
                version=ctx.versions.get(key),
            ))

    if req.has_ranking_signal:
        now = deps.clock()
        scoring = deps.config.scoring
        total = len(ctx.chain)
        for item in merged:
            key = (item.type, item.id)
            cs = ctx.semantic_scores.get(key)
            item.score = composite_score(
                item.entry,
                text_match=item.id in ctx.fts_match_ids.get(item.type, ()),
                semantic=cs.score if cs is not None else 0.0,
                now=now,
                scoring=scoring,
                scope_index=ctx.scope_index.get(key, total),
                total_scopes=total,
            )
        # Two stable passes: score desc, ties by created_at desc
        merged.sort(key=lambda i: i.entry.created_at, reverse=True)
        merged.sort(key=lambda i: i.score, reverse=True)

    page = merged[req.offset:req.offset + req.limit]
    has_more = any(ctx.capped.values()) or len(merged) > req.window
    logger.debug(
        "rank: merged=%d page=%d has_more=%s", len(merged), len(page), has_more,
    )
    return replace(ctx, result=QueryResult(results=page, has_more=has_more))
