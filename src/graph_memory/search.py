"""Hybrid retrieval: vector, lexical and graph signals fused with RRF.

Each signal returns its own ranked list; a document's fused score is
``sum(1 / (k + rank))`` over the signals that returned it (ranks are
1-based, a missing signal contributes nothing).  Scores are then divided by
the best achievable fused score, so 1.0 means "ranked first everywhere".
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from graph_memory.embeddings import EmbeddingProvider
from graph_memory.models import RankedHit, SearchResult
from graph_memory.store import MemoryStore

logger = logging.getLogger(__name__)

RRF_K = 60
# Each signal fetches more than the final limit so fusion has overlap to work with.
CANDIDATE_MULTIPLIER = 4
MIN_CANDIDATES = 20

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class _Fused:
    hit: RankedHit
    score: float = 0.0


def rrf_fuse(rankings: list[list[RankedHit]], limit: int, k: int = RRF_K,
             signal_count: int | None = None) -> list[SearchResult]:
    """Fuse ranked lists with reciprocal rank fusion.

    Args:
        rankings: One ranked list per signal, best first.
        limit: Maximum number of results.
        k: Smoothing constant.
        signal_count: Number of signals that were queried (used for
            normalisation; defaults to ``len(rankings)``).
    """
    fused: dict[str, _Fused] = {}
    for ranking in rankings:
        for rank, hit in enumerate(ranking, start=1):
            entry = fused.setdefault(hit.id, _Fused(hit))
            entry.score += 1.0 / (k + rank)

    if not fused:
        return []

    n_signals = signal_count or len(rankings)
    best = n_signals / (k + 1)
    ordered = sorted(
        fused.values(),
        key=lambda f: (f.score, f.hit.importance, f.hit.created_at or _EPOCH),
        reverse=True,
    )
    return [
        SearchResult(
            id=f.hit.id,
            text=f.hit.text,
            category=f.hit.category,
            importance=f.hit.importance,
            score=min(1.0, f.score / best),
            created_at=f.hit.created_at,
        )
        for f in ordered[:limit]
    ]


class HybridSearch:
    """Query-time ranker over a :class:`~graph_memory.store.MemoryStore`."""

    def __init__(self, store: MemoryStore, embeddings: EmbeddingProvider, k: int = RRF_K) -> None:
        self.store = store
        self.embeddings = embeddings
        self.k = k

    async def search(
        self,
        query: str,
        limit: int = 5,
        agent_id: str | None = "default",
        use_graph: bool = True,
    ) -> list[SearchResult]:
        """Return up to *limit* memories ranked for *query*.

        Raises:
            ProviderError: If the query cannot be embedded.
            StoreError: If a store query fails.
        """
        if not query.strip() or limit <= 0:
            return []
        candidates = max(limit * CANDIDATE_MULTIPLIER, MIN_CANDIDATES)
        vector = await self.embeddings.embed(query)

        vector_hits, lexical_hits = await asyncio.gather(
            self.store.vector_search(vector, candidates, agent_id=agent_id),
            self.store.fulltext_search(query, candidates, agent_id=agent_id),
        )
        rankings = [vector_hits, lexical_hits]

        if use_graph:
            seeds = list(dict.fromkeys(h.id for h in vector_hits + lexical_hits))
            graph_hits = await self.store.graph_search(seeds, candidates, agent_id=agent_id) if seeds else []
            rankings.append(graph_hits)

        results = rrf_fuse(rankings, limit, k=self.k)
        logger.debug(
            "search %r: vector=%d lexical=%d graph=%s -> %d",
            query[:60], len(vector_hits), len(lexical_hits),
            len(rankings[2]) if use_graph else "off", len(results),
        )
        return results
