"""
Query pipeline — request in, ranked page out.

    validate → scope → candidates → fetch → tags → versions → rank

Each stage is an async function ``(ctx, deps) -> ctx`` over a frozen
QueryContext. The pipeline only reads; a failure in any entry type fails
the whole request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

from agentmem.candidates import candidate_stage
from agentmem.collaborators import SqliteRelationRepository, SqliteVectorIndex
from agentmem.config import AgentMemConfig
from agentmem.context import PipelineDeps, QueryContext, utc_now
from agentmem.errors import ValidationError
from agentmem.fetch import fetch_stage
from agentmem.rank import filter_stage, rank_stage
from agentmem.scope import resolve_scope_chain
from agentmem.types import QueryRequest, QueryResult
from agentmem.versions import version_stage

logger = logging.getLogger(__name__)


async def scope_stage(ctx: QueryContext, deps: PipelineDeps) -> QueryContext:
    """Expand the request scope into its chain."""
    req = ctx.request
    chain = await asyncio.to_thread(
        resolve_scope_chain, deps.store, req.scope_type, req.scope_id, req.inherit,
    )
    return replace(ctx, chain=chain)


STAGES = (
    scope_stage,
    candidate_stage,
    fetch_stage,
    filter_stage,
    version_stage,
    rank_stage,
)


class QueryPipeline:
    """Runs QueryRequests against an EntryStore."""

    def __init__(
        self,
        store,
        config: Optional[AgentMemConfig] = None,
        embedder: Optional[Any] = None,
        vector_index: Optional[Any] = None,
        relations: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._deps = PipelineDeps(
            store=store,
            config=config or AgentMemConfig(),
            embedder=embedder,
            vector_index=vector_index or SqliteVectorIndex(store),
            relations=relations or SqliteRelationRepository(store),
            clock=clock or utc_now,
        )

    @property
    def config(self) -> AgentMemConfig:
        return self._deps.config

    def prepare(self, request: Union[QueryRequest, Mapping[str, Any]]) -> QueryRequest:
        """Validate and normalize a request.

        Raises:
            ValidationError: On any malformed field (nothing is read).
        """
        try:
            if not isinstance(request, QueryRequest):
                request = QueryRequest.from_dict(request)
            errors = request.validate(max_limit=self.config.query.max_limit)
        except (AttributeError, TypeError) as exc:
            raise ValidationError(f"Malformed request: {exc}") from exc
        if errors:
            raise ValidationError(f"Invalid query: {'; '.join(errors)}")
        return request.normalized()

    async def execute(
        self, request: Union[QueryRequest, Mapping[str, Any]],
    ) -> QueryResult:
        """Run the stages in order and return the ranked page."""
        ctx = QueryContext(request=self.prepare(request))
        for stage in STAGES:
            ctx = await stage(ctx, self._deps)
        logger.debug(
            "query done: %d results (has_more=%s)",
            ctx.result.returned_count, ctx.result.has_more,
        )
        return ctx.result

    def run(self, request: Union[QueryRequest, Mapping[str, Any]]) -> QueryResult:
        """Synchronous wrapper around ``execute`` for non-async callers."""
        return asyncio.run(self.execute(request))
