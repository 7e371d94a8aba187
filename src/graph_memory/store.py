"""Memory store contract and the in-process implementation.

:class:`MemoryStore` is the contract every backend satisfies.
:class:`~graph_memory.neo4j_store.Neo4jMemoryStore` is the production
backend; :class:`InMemoryStore` keeps everything in dictionaries and is used
for tests and as an offline fallback.
"""

from __future__ import annotations

import math
import re
from collections import Counter, defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Protocol

from graph_memory.errors import ConfigurationError, StoreError
from graph_memory.models import (
    EdgeType,
    ExtractionResult,
    ExtractionStatus,
    Memory,
    MemoryStatsRow,
    RankedHit,
    SimilarMemory,
    utc_now,
)

EmbedBatchFn = Callable[[list[str]], Awaitable[list[list[float]]]]
ReindexProgress = Callable[[str, int, int], None]

MEMORY_EDGE_TYPES = (EdgeType.MENTIONS, EdgeType.TAGGED)


class MemoryStore(Protocol):
    """Graph-capable memory store.

    All methods are coroutines.  ``agent_id=None`` means "every agent".
    Implementations raise :class:`~graph_memory.errors.StoreError` on backend
    failure.
    """

    async def ensure_initialized(self) -> None: ...
    async def close(self) -> None: ...

    # -- CRUD ---------------------------------------------------------------
    async def store_memory(self, memory: Memory) -> str: ...
    async def get_memory(self, memory_id: str) -> Memory | None: ...
    async def update_memory(self, memory_id: str, fields: dict[str, Any]) -> bool: ...
    async def delete_memory(self, memory_id: str) -> bool: ...

    # -- Retrieval signals --------------------------------------------------
    async def find_similar(self, vector: list[float], threshold: float, limit: int,
                           agent_id: str | None = None) -> list[SimilarMemory]: ...
    async def vector_search(self, vector: list[float], limit: int, min_score: float = 0.0,
                            agent_id: str | None = None) -> list[RankedHit]: ...
    async def fulltext_search(self, query: str, limit: int,
                              agent_id: str | None = None) -> list[RankedHit]: ...
    async def graph_search(self, seed_ids: list[str], limit: int,
                           agent_id: str | None = None) -> list[RankedHit]: ...
    async def record_retrievals(self, memory_ids: list[str], at: datetime) -> None: ...

    # -- Listing / stats ----------------------------------------------------
    async def list_by_category(self, category: str, limit: int, offset: int = 0,
                               agent_id: str | None = None) -> list[Memory]: ...
    async def list_memories(self, agent_id: str | None = None,
                            source: str | None = None) -> list[Memory]: ...
    async def get_memory_stats(self) -> list[MemoryStatsRow]: ...

    # -- Bulk maintenance ---------------------------------------------------
    async def promote_to_core(self, memory_ids: list[str]) -> int: ...
    async def demote_from_core(self, memory_ids: list[str]) -> int: ...
    async def prune_memories(self, memory_ids: list[str]) -> int: ...
    async def reindex(self, embed_batch: EmbedBatchFn, batch_size: int = 50,
                      on_progress: ReindexProgress | None = None) -> int: ...
    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]: ...

    # -- Sleep-cycle support ------------------------------------------------
    async def similar_pairs(self, min_score: float, max_score: float,
                            agent_id: str | None = None) -> list[tuple[str, str, float]]: ...
    async def merge_memories(self, survivor_id: str, absorbed_ids: list[str],
                             fields: dict[str, Any]) -> int: ...
    async def link_memories(self, source_id: str, target_id: str, edge: EdgeType,
                            score: float | None = None) -> None: ...
    async def mention_degrees(self, agent_id: str | None = None) -> dict[str, int]: ...
    async def update_scores(self, scores: dict[str, dict[str, float]]) -> int: ...
    async def list_pending_extraction(self, limit: int, agent_id: str | None = None) -> list[Memory]: ...
    async def apply_extraction(self, memory_id: str, result: ExtractionResult) -> None: ...
    async def set_extraction_status(self, memory_id: str, status: str) -> None: ...
    async def delete_orphans(self) -> tuple[int, int]: ...


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a)) or 1.0
    nb = math.sqrt(sum(y * y for y in b)) or 1.0
    return dot / (na * nb)


_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def entity_key(name: str) -> str:
    return " ".join(name.lower().split())


def _hit(memory: Memory, score: float) -> RankedHit:
    return RankedHit(
        id=memory.id,
        text=memory.text,
        category=memory.category,
        importance=memory.importance,
        created_at=memory.created_at,
        score=score,
    )


class InMemoryStore:
    """Dictionary-backed :class:`MemoryStore`.

    Edges are kept as ``(source_id, EdgeType, target_id)`` triples; entity
    and tag nodes are keyed by their normalised name.  Lexical search is a
    small BM25 over whitespace tokens.
    """

    def __init__(self, dimensions: int | None = None) -> None:
        self.dimensions = dimensions
        self.memories: dict[str, Memory] = {}
        self.entities: dict[str, dict[str, Any]] = {}
        self.tags: dict[str, dict[str, Any]] = {}
        self.edges: set[tuple[str, EdgeType, str]] = set()
        self.initialized = False

    async def ensure_initialized(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.initialized = False

    # -- helpers --------------------------------------------------------------

    def _in_scope(self, memory: Memory, agent_id: str | None) -> bool:
        return agent_id is None or memory.agent_id == agent_id

    def _searchable(self, agent_id: str | None) -> list[Memory]:
        return [m for m in self.memories.values() if self._in_scope(m, agent_id) and not m.invalidated]

    def _drop_edges_of(self, node_id: str) -> None:
        self.edges = {e for e in self.edges if e[0] != node_id and e[2] != node_id}

    # -- CRUD -----------------------------------------------------------------

    async def store_memory(self, memory: Memory) -> str:
        if self.dimensions is not None and memory.embedding and len(memory.embedding) != self.dimensions:
            raise ConfigurationError(
                f"embedding has {len(memory.embedding)} dimensions, store expects {self.dimensions}"
            )
        self.memories[memory.id] = replace(memory)
        return memory.id

    async def get_memory(self, memory_id: str) -> Memory | None:
        memory = self.memories.get(memory_id)
        return replace(memory) if memory else None

    async def update_memory(self, memory_id: str, fields: dict[str, Any]) -> bool:
        memory = self.memories.get(memory_id)
        if memory is None:
            return False
        for key, value in fields.items():
            if not hasattr(memory, key):
                raise StoreError(f"unknown memory field {key!r}")
            setattr(memory, key, value)
        return True

    async def delete_memory(self, memory_id: str) -> bool:
        if self.memories.pop(memory_id, None) is None:
            return False
        self._drop_edges_of(memory_id)
        return True

    # -- retrieval ------------------------------------------------------------

    async def find_similar(self, vector: list[float], threshold: float, limit: int,
                           agent_id: str | None = None) -> list[SimilarMemory]:
        hits = await self.vector_search(vector, limit, min_score=threshold, agent_id=agent_id)
        return [
            SimilarMemory(id=h.id, text=h.text, score=h.score, category=h.category,
                          importance=h.importance, created_at=h.created_at)
            for h in hits
        ]

    async def vector_search(self, vector: list[float], limit: int, min_score: float = 0.0,
                            agent_id: str | None = None) -> list[RankedHit]:
        scored = [
            (m, cosine_similarity(vector, m.embedding))
            for m in self._searchable(agent_id)
            if len(m.embedding) == len(vector)
        ]
        scored = [(m, s) for m, s in scored if s >= min_score]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return [_hit(m, s) for m, s in scored[:limit]]

    async def fulltext_search(self, query: str, limit: int,
                              agent_id: str | None = None) -> list[RankedHit]:
        terms = set(tokenize(query))
        docs = self._searchable(agent_id)
        if not terms or not docs:
            return []
        tokenized = {m.id: tokenize(m.text) for m in docs}
        avg_len = sum(len(t) for t in tokenized.values()) / len(docs) or 1.0
        df = Counter(term for toks in tokenized.values() for term in set(toks) if term in terms)
        k1, b = 1.2, 0.75
        scored: list[tuple[Memory, float]] = []
        for memory in docs:
            toks = tokenized[memory.id]
            tf = Counter(toks)
            score = 0.0
            for term in terms:
                if tf[term] == 0:
                    continue
                idf = math.log(1 + (len(docs) - df[term] + 0.5) / (df[term] + 0.5))
                score += idf * tf[term] * (k1 + 1) / (tf[term] + k1 * (1 - b + b * len(toks) / avg_len))
            if score > 0:
                scored.append((memory, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return [_hit(m, s) for m, s in scored[:limit]]

    async def graph_search(self, seed_ids: list[str], limit: int,
                           agent_id: str | None = None) -> list[RankedHit]:
        seeds = set(seed_ids)
        seed_nodes = {dst for src, etype, dst in self.edges if src in seeds and etype in MEMORY_EDGE_TYPES}
        if not seed_nodes:
            return []
        shared: Counter[str] = Counter()
        for src, etype, dst in self.edges:
            if etype in MEMORY_EDGE_TYPES and dst in seed_nodes:
                shared[src] += 1
        searchable = {m.id: m for m in self._searchable(agent_id)}
        ranked = [(searchable[mid], float(n)) for mid, n in shared.items() if mid in searchable]
        ranked.sort(key=lambda pair: (pair[1], pair[0].importance), reverse=True)
        return [_hit(m, s) for m, s in ranked[:limit]]

    async def record_retrievals(self, memory_ids: list[str], at: datetime) -> None:
        for mid in memory_ids:
            memory = self.memories.get(mid)
            if memory is not None:
                memory.retrieval_count += 1
                memory.last_retrieved_at = at

    # -- listing --------------------------------------------------------------

    async def list_by_category(self, category: str, limit: int, offset: int = 0,
                               agent_id: str | None = None) -> list[Memory]:
        if category == "core":
            rows = [m for m in self._searchable(agent_id) if m.is_core]
        else:
            rows = [m for m in self._searchable(agent_id) if m.category == category]
        rows.sort(key=lambda m: (-m.importance, m.created_at))
        return [replace(m) for m in rows[offset:offset + limit]]

    async def list_memories(self, agent_id: str | None = None,
                            source: str | None = None) -> list[Memory]:
        rows = [
            m for m in self.memories.values()
            if self._in_scope(m, agent_id) and (source is None or m.source == source)
        ]
        rows.sort(key=lambda m: m.created_at)
        return [replace(m) for m in rows]

    async def get_memory_stats(self) -> list[MemoryStatsRow]:
        groups: dict[tuple[str, str], list[float]] = defaultdict(list)
        for memory in self.memories.values():
            groups[(memory.agent_id, memory.category)].append(memory.importance)
        return [
            MemoryStatsRow(agent_id=agent, category=cat, count=len(vals), avg_importance=sum(vals) / len(vals))
            for (agent, cat), vals in sorted(groups.items())
        ]

    # -- bulk maintenance -----------------------------------------------------

    async def _set_core(self, memory_ids: Iterable[str], value: bool) -> int:
        changed = 0
        for mid in memory_ids:
            memory = self.memories.get(mid)
            if memory is not None and memory.is_core != value:
                memory.is_core = value
                changed += 1
        return changed

    async def promote_to_core(self, memory_ids: list[str]) -> int:
        return await self._set_core(memory_ids, True)

    async def demote_from_core(self, memory_ids: list[str]) -> int:
        return await self._set_core(memory_ids, False)

    async def prune_memories(self, memory_ids: list[str]) -> int:
        removed = 0
        for mid in memory_ids:
            if await self.delete_memory(mid):
                removed += 1
        return removed

    async def reindex(self, embed_batch: EmbedBatchFn, batch_size: int = 50,
                      on_progress: ReindexProgress | None = None) -> int:
        rows = sorted(self.memories.values(), key=lambda m: m.created_at)
        total = len(rows)
        if on_progress:
            on_progress("drop-indexes", 0, total)
        done = 0
        for start in range(0, total, batch_size):
            batch = rows[start:start + batch_size]
            vectors = await embed_batch([m.text for m in batch])
            for memory, vector in zip(batch, vectors):
                if vector:
                    memory.embedding = vector
            done += len(batch)
            if on_progress:
                on_progress("memories", done, total)
        if on_progress:
            on_progress("create-indexes", 0, total)
        return done

    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        raise StoreError("raw queries are not supported by InMemoryStore")

    # -- sleep-cycle support --------------------------------------------------

    async def similar_pairs(self, min_score: float, max_score: float,
                            agent_id: str | None = None) -> list[tuple[str, str, float]]:
        rows = sorted(
            (m for m in self.memories.values() if self._in_scope(m, agent_id) and m.embedding),
            key=lambda m: m.id,
        )
        pairs: list[tuple[str, str, float]] = []
        for i, a in enumerate(rows):
            for b in rows[i + 1:]:
                if a.agent_id != b.agent_id:
                    continue
                score = cosine_similarity(a.embedding, b.embedding)
                if min_score <= score < max_score:
                    pairs.append((a.id, b.id, score))
        return pairs

    async def merge_memories(self, survivor_id: str, absorbed_ids: list[str],
                             fields: dict[str, Any]) -> int:
        if survivor_id not in self.memories:
            raise StoreError(f"merge survivor {survivor_id} not found")
        absorbed = [mid for mid in absorbed_ids if mid in self.memories and mid != survivor_id]
        gone = set(absorbed)
        moved: set[tuple[str, EdgeType, str]] = set()
        for src, etype, dst in self.edges:
            new_src = survivor_id if src in gone else src
            new_dst = survivor_id if dst in gone else dst
            if new_src == new_dst:
                continue
            moved.add((new_src, etype, new_dst))
        self.edges = moved
        for mid in absorbed:
            del self.memories[mid]
        await self.update_memory(survivor_id, fields)
        return len(absorbed)

    async def link_memories(self, source_id: str, target_id: str, edge: EdgeType,
                            score: float | None = None) -> None:
        if source_id in self.memories and target_id in self.memories:
            self.edges.add((source_id, edge, target_id))

    async def mention_degrees(self, agent_id: str | None = None) -> dict[str, int]:
        degrees: Counter[str] = Counter()
        for src, etype, _dst in self.edges:
            memory = self.memories.get(src)
            if etype in MEMORY_EDGE_TYPES and memory is not None and self._in_scope(memory, agent_id):
                degrees[src] += 1
        return dict(degrees)

    async def update_scores(self, scores: dict[str, dict[str, float]]) -> int:
        updated = 0
        for mid, values in scores.items():
            if await self.update_memory(mid, values):
                updated += 1
        return updated

    async def list_pending_extraction(self, limit: int, agent_id: str | None = None) -> list[Memory]:
        rows = [
            m for m in self.memories.values()
            if self._in_scope(m, agent_id) and m.extraction_status == ExtractionStatus.PENDING.value
        ]
        rows.sort(key=lambda m: m.created_at)
        return [replace(m) for m in rows[:limit]]

    async def apply_extraction(self, memory_id: str, result: ExtractionResult) -> None:
        memory = self.memories.get(memory_id)
        if memory is None:
            raise StoreError(f"memory {memory_id} not found")
        now = utc_now()
        for entity in result.entities:
            key = entity_key(entity.name)
            node = self.entities.setdefault(key, {"name": entity.name, "type": entity.type, "created_at": now})
            if entity.description:
                node["description"] = entity.description
            self.edges.add((memory_id, EdgeType.MENTIONS, f"entity:{key}"))
        for relation in result.relations:
            src, dst = entity_key(relation.source), entity_key(relation.target)
            if src in self.entities and dst in self.entities:
                self.edges.add((f"entity:{src}", EdgeType.RELATES_TO, f"entity:{dst}"))
        for tag in result.tags:
            key = entity_key(tag)
            self.tags.setdefault(key, {"name": tag, "created_at": now})
            self.edges.add((memory_id, EdgeType.TAGGED, f"tag:{key}"))
        memory.category = result.category
        memory.extraction_status = ExtractionStatus.COMPLETED.value

    async def set_extraction_status(self, memory_id: str, status: str) -> None:
        memory = self.memories.get(memory_id)
        if memory is not None:
            memory.extraction_status = status

    async def delete_orphans(self) -> tuple[int, int]:
        incoming = {dst for src, etype, dst in self.edges if etype in MEMORY_EDGE_TYPES}
        orphan_entities = [k for k in self.entities if f"entity:{k}" not in incoming]
        orphan_tags = [k for k in self.tags if f"tag:{k}" not in incoming]
        for key in orphan_entities:
            del self.entities[key]
            self._drop_edges_of(f"entity:{key}")
        for key in orphan_tags:
            del self.tags[key]
            self._drop_edges_of(f"tag:{key}")
        return len(orphan_entities), len(orphan_tags)
