"""
Candidate index stage: full-text, semantic, and relation signals.

Runs only when the request carries ``search``, ``semantic_search`` or
``related_to``. Produces three request-scoped maps:

    fts_match_ids    type → frozenset of ids matching the search text
    semantic_scores  (type, id) → CandidateScore (similarity from the vector service)
    related_ids      type → frozenset of ids linked to the anchor entry

Full-text and relation sets record presence only; scores come from
similarity.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Dict, FrozenSet, List, Tuple

from agentmem.context import EntryKey, PipelineDeps, QueryContext
from agentmem.predicates import StructuralFilter
from agentmem.types import CandidateScore, QueryRequest

logger = logging.getLogger(__name__)


async def _fulltext_sets(
    ctx: QueryContext, deps: PipelineDeps,
) -> Dict[str, FrozenSet[str]]:
    req = ctx.request
    where = StructuralFilter(scopes=ctx.chain, active_only=not req.include_inactive)

    async def one(entry_type: str) -> Tuple[str, FrozenSet[str]]:
        ids = await asyncio.to_thread(
            deps.store.match_fulltext, entry_type, req.search, where,
        )
        return entry_type, frozenset(ids)

    pairs = await asyncio.gather(*(one(t) for t in req.types))
    return dict(pairs)


async def _semantic_scores(
    req: QueryRequest, deps: PipelineDeps,
) -> Dict[EntryKey, CandidateScore]:
    if deps.embedder is None or deps.vector_index is None:
        logger.warning("semantic search requested but no embedding service configured; skipped")
        return {}
    qcfg = deps.config.query
    vector = await asyncio.to_thread(deps.embedder.embed, req.search)
    hits = await asyncio.to_thread(
        deps.vector_index.search_similar, vector, list(req.types), qcfg.semantic_top_k,
    )
    scores: Dict[EntryKey, CandidateScore] = {}
    for hit in hits:
        if hit.entry_type not in req.types or hit.similarity < qcfg.semantic_threshold:
            continue
        key = (hit.entry_type, hit.entry_id)
        scores[key] = CandidateScore(hit.entry_type, hit.similarity, "semantic")
    logger.debug("semantic: %d hits, %d kept", len(hits), len(scores))
    return scores


async def _related_sets(
    req: QueryRequest, deps: PipelineDeps,
) -> Dict[str, FrozenSet[str]]:
    anchor = req.related_to
    pairs: List[Tuple[str, str]] = await asyncio.to_thread(
        deps.relations.related_ids, anchor.id, anchor.type,
        anchor.relation, anchor.direction, anchor.max_results,
    )
    return {
        t: frozenset(entry_id for entry_type, entry_id in pairs if entry_type == t)
        for t in req.types
    }


async def candidate_stage(ctx: QueryContext, deps: PipelineDeps) -> QueryContext:
    """Compute candidate id sets and semantic scores for the request."""
    req = ctx.request
    if not (req.search or req.semantic_search or req.related_to):
        return ctx

    fts: Dict[str, FrozenSet[str]] = {}
    semantic: Dict[EntryKey, CandidateScore] = {}
    related: Dict[str, FrozenSet[str]] = {}

    # Hybrid: full-text is computed even when semantic search is on
    if req.search:
        fts = await _fulltext_sets(ctx, deps)
    if req.semantic_search:
        semantic = await _semantic_scores(req, deps)
    if req.related_to is not None:
        related = await _related_sets(req, deps)

    logger.debug(
        "candidates: fts=%s related=%s semantic=%d",
        {t: len(s) for t, s in fts.items()},
        {t: len(s) for t, s in related.items()},
        len(semantic),
    )
    return replace(ctx, fts_match_ids=fts, semantic_scores=semantic, related_ids=related)
