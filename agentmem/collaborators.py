"""
External collaborators consumed by the candidate stage.

EmbeddingService    text → vector (supplied by the host application)
VectorService       nearest entries for a query vector
RelationRepository  entries linked to an anchor entry

The SQLite defaults read the store's ``entry_embeddings`` and
``entry_relations`` tables. Collaborators are synchronous; the pipeline
dispatches them to worker threads.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimilarityHit:
    """One vector search hit; similarity in [0, 1] for normalized inputs."""

    entry_type: str
    entry_id: str
    similarity: float


class EmbeddingService(Protocol):
    """Turns query text into a vector."""

    def embed(self, text: str) -> List[float]:
        ...


class VectorService(Protocol):
    """Nearest-neighbour search over entry embeddings."""

    def search_similar(
        self, vector: Sequence[float], types: Iterable[str], k: int,
    ) -> List[SimilarityHit]:
        ...


class RelationRepository(Protocol):
    """Looks up entries linked to an anchor entry."""

    def related_ids(
        self,
        entry_id: str,
        entry_type: str,
        relation: Optional[str] = None,
        direction: str = "both",
        max_results: Optional[int] = None,
    ) -> List[Tuple[str, str]]:
        ...


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 if either is zero)."""
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return dot / (na * nb)


# ---------------------------------------------------------------------------
# SQLite-backed defaults
# ---------------------------------------------------------------------------

class SqliteVectorIndex:
    """Brute-force cosine search over the store's embedding table."""

    def __init__(self, store):
        self._store = store

    def search_similar(
        self, vector: Sequence[float], types: Iterable[str], k: int,
    ) -> List[SimilarityHit]:
        hits = [
            SimilarityHit(entry_type, entry_id, cosine_similarity(vector, stored))
            for entry_type, entry_id, stored in self._store.all_embeddings(types)
        ]
        hits.sort(key=lambda h: (-h.similarity, h.entry_id))
        logger.debug("vector search: %d stored, top %d kept", len(hits), k)
        return hits[:k]


class SqliteRelationRepository:
    """Relation lookups over ``entry_relations``, in both directions."""

    def __init__(self, store):
        self._store = store

    def related_ids(
        self,
        entry_id: str,
        entry_type: str,
        relation: Optional[str] = None,
        direction: str = "both",
        max_results: Optional[int] = None,
    ) -> List[Tuple[str, str]]:
        return self._store.read_relations(
            entry_type, entry_id,
            relation=relation, direction=direction, limit=max_results,
        )
