"""Neo4j-backed :class:`~graph_memory.store.MemoryStore`.

Schema::

    (:Memory {id, text, embedding, importance, category, source,
              extraction_status, is_core, agent_id, session_key, created_at,
              pareto_score, decay_score, retrieval_count, last_retrieved_at,
              invalidated_at})
    (:Entity {key, name, type, description})    (:Tag {key, name})
    (:Memory)-[:MENTIONS]->(:Entity)   (:Memory)-[:TAGGED]->(:Tag)
    (:Memory)-[:SIMILAR_TO]->(:Memory) (:Memory)-[:CONFLICTS_WITH]->(:Memory)
    (:Entity)-[:RELATES_TO {type}]->(:Entity)

Similarity search uses a cosine vector index over ``Memory.embedding`` and
lexical search a fulltext index over ``Memory.text``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any

from neo4j import AsyncDriver, AsyncGraphDatabase
from neo4j.exceptions import DriverError, Neo4jError

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
from graph_memory.store import EmbedBatchFn, ReindexProgress, entity_key

logger = logging.getLogger(__name__)

VECTOR_INDEX = "memory_embedding_index"
FULLTEXT_INDEX = "memory_text_index"

_MEMORY_FIELDS = {f.name for f in dataclass_fields(Memory)}
_LUCENE_SPECIAL = re.compile(r'([+\-!(){}\[\]^"~*?:\\/]|&&|\|\|)')

# Vector index queries return the global top-k before scope filtering.
_OVERSAMPLE = 4
_PAIR_NEIGHBOURS = 20

_SCOPE = "($agent_id IS NULL OR m.agent_id = $agent_id)"


def escape_lucene(text: str) -> str:
    """Escape Lucene query syntax so user text is matched literally."""
    return _LUCENE_SPECIAL.sub(r"\\\1", text)


def lucene_query(text: str) -> str:
    """Build an OR query over the whitespace tokens of *text*."""
    terms = [escape_lucene(t) for t in text.split() if t.strip()]
    return " OR ".join(terms)


def _native(value: Any) -> Any:
    # neo4j.time.DateTime -> datetime.datetime
    to_native = getattr(value, "to_native", None)
    return to_native() if callable(to_native) else value


def _to_memory(node: Any) -> Memory:
    props = {k: _native(v) for k, v in dict(node).items() if k in _MEMORY_FIELDS}
    props.setdefault("embedding", [])
    props["embedding"] = list(props["embedding"] or [])
    props["retrieval_count"] = props.get("retrieval_count") or 0
    return Memory(**props)


def _memory_props(memory: Memory) -> dict[str, Any]:
    return {f: getattr(memory, f) for f in _MEMORY_FIELDS}


def _to_hit(node: Any, score: float) -> RankedHit:
    memory = _to_memory(node)
    return RankedHit(
        id=memory.id,
        text=memory.text,
        category=memory.category,
        importance=memory.importance,
        created_at=memory.created_at,
        score=float(score),
    )


class Neo4jMemoryStore:
    """Async Neo4j store with lazy, retry-on-next-call initialisation.

    Args:
        uri: Bolt URI.
        username: Neo4j user.
        password: Neo4j password.
        dimensions: Vector dimension of the configured embedding model.
    """

    def __init__(self, uri: str, username: str, password: str, dimensions: int) -> None:
        self._uri = uri
        self._auth = (username, password)
        self.dimensions = dimensions
        self._driver: AsyncDriver | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            driver = AsyncGraphDatabase.driver(self._uri, auth=self._auth)
            try:
                await driver.verify_connectivity()
                self._driver = driver
                await self._ensure_schema()
            except ConfigurationError:
                self._driver = None
                await driver.close()
                raise
            except (Neo4jError, DriverError, OSError, StoreError) as exc:
                # Leave uninitialised so the next call retries.
                self._driver = None
                await driver.close()
                logger.error("Neo4j initialisation against %s failed: %s", self._uri, exc)
                raise StoreError(f"cannot initialise Neo4j at {self._uri}: {exc}") from exc
            self._initialized = True
            logger.info("Neo4j memory store ready at %s (%d dims)", self._uri, self.dimensions)

    async def _ensure_schema(self) -> None:
        for statement in (
            "CREATE CONSTRAINT memory_id IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE",
            "CREATE CONSTRAINT entity_key IF NOT EXISTS FOR (e:Entity) REQUIRE e.key IS UNIQUE",
            "CREATE CONSTRAINT tag_key IF NOT EXISTS FOR (t:Tag) REQUIRE t.key IS UNIQUE",
            "CREATE INDEX memory_agent IF NOT EXISTS FOR (m:Memory) ON (m.agent_id)",
            f"CREATE FULLTEXT INDEX {FULLTEXT_INDEX} IF NOT EXISTS FOR (m:Memory) ON EACH [m.text]",
        ):
            await self._execute(statement)
        existing = await self._vector_index_dimensions()
        if existing is not None and existing != self.dimensions:
            raise ConfigurationError(
                f"vector index {VECTOR_INDEX} has {existing} dimensions but the embedding model "
                f"produces {self.dimensions}; run `graph-memory index` to rebuild it"
            )
        if existing is None:
            await self._create_vector_index()

    async def _vector_index_dimensions(self) -> int | None:
        rows = await self._execute(
            "SHOW INDEXES YIELD name, options WHERE name = $name RETURN options",
            name=VECTOR_INDEX,
        )
        if not rows:
            return None
        config = (rows[0].get("options") or {}).get("indexConfig") or {}
        dims = config.get("vector.dimensions")
        return int(dims) if dims is not None else None

    async def _create_vector_index(self) -> None:
        await self._execute(
            f"CREATE VECTOR INDEX {VECTOR_INDEX} IF NOT EXISTS FOR (m:Memory) ON m.embedding "
            "OPTIONS {indexConfig: {`vector.dimensions`: %d, `vector.similarity_function`: 'cosine'}}"
            % int(self.dimensions)
        )

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Query plumbing
    # ------------------------------------------------------------------

    async def _execute(self, query: str, **params: Any) -> list[dict[str, Any]]:
        if self._driver is None:
            raise StoreError("Neo4j driver is not initialised")
        try:
            async with self._driver.session() as session:
                result = await session.run(query, **params)
                return await result.data()
        except (Neo4jError, DriverError) as exc:
            raise StoreError(f"Neo4j query failed: {exc}") from exc

    async def _query(self, query: str, **params: Any) -> list[dict[str, Any]]:
        await self.ensure_initialized()
        return await self._execute(query, **params)

    async def _query_records(self, query: str, **params: Any) -> list[Any]:
        """Like :meth:`_query` but keeps node objects intact."""
        await self.ensure_initialized()
        if self._driver is None:
            raise StoreError("Neo4j driver is not initialised")
        try:
            async with self._driver.session() as session:
                result = await session.run(query, **params)
                return [r async for r in result]
        except (Neo4jError, DriverError) as exc:
            raise StoreError(f"Neo4j query failed: {exc}") from exc

    def _check_dimensions(self, vector: list[float]) -> None:
        if vector and len(vector) != self.dimensions:
            raise ConfigurationError(
                f"embedding has {len(vector)} dimensions, index expects {self.dimensions}"
            )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def store_memory(self, memory: Memory) -> str:
        self._check_dimensions(memory.embedding)
        await self._query("CREATE (m:Memory) SET m = $props", props=_memory_props(memory))
        return memory.id

    async def get_memory(self, memory_id: str) -> Memory | None:
        records = await self._query_records("MATCH (m:Memory {id: $id}) RETURN m", id=memory_id)
        return _to_memory(records[0]["m"]) if records else None

    async def update_memory(self, memory_id: str, fields: dict[str, Any]) -> bool:
        unknown = set(fields) - _MEMORY_FIELDS
        if unknown:
            raise StoreError(f"unknown memory field(s): {sorted(unknown)}")
        rows = await self._query(
            "MATCH (m:Memory {id: $id}) SET m += $fields RETURN m.id AS id", id=memory_id, fields=fields,
        )
        return bool(rows)

    async def delete_memory(self, memory_id: str) -> bool:
        return await self.prune_memories([memory_id]) > 0

    # ------------------------------------------------------------------
    # Retrieval signals
    # ------------------------------------------------------------------

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
        if not vector:
            return []
        self._check_dimensions(vector)
        records = await self._query_records(
            f"""
            CALL db.index.vector.queryNodes('{VECTOR_INDEX}', $k, $vector) YIELD node AS m, score
            WHERE score >= $min_score AND {_SCOPE} AND m.invalidated_at IS NULL
            RETURN m, score ORDER BY score DESC LIMIT $limit
            """,
            k=limit * _OVERSAMPLE, vector=vector, min_score=min_score, agent_id=agent_id, limit=limit,
        )
        return [_to_hit(r["m"], r["score"]) for r in records]

    async def fulltext_search(self, query: str, limit: int,
                              agent_id: str | None = None) -> list[RankedHit]:
        lucene = lucene_query(query)
        if not lucene:
            return []
        records = await self._query_records(
            f"""
            CALL db.index.fulltext.queryNodes('{FULLTEXT_INDEX}', $query) YIELD node AS m, score
            WHERE {_SCOPE} AND m.invalidated_at IS NULL
            RETURN m, score ORDER BY score DESC LIMIT $limit
            """,
            query=lucene, agent_id=agent_id, limit=limit,
        )
        return [_to_hit(r["m"], r["score"]) for r in records]

    async def graph_search(self, seed_ids: list[str], limit: int,
                           agent_id: str | None = None) -> list[RankedHit]:
        if not seed_ids:
            return []
        records = await self._query_records(
            f"""
            MATCH (seed:Memory)-[:MENTIONS|TAGGED]->(n)
            WHERE seed.id IN $seed_ids
            WITH collect(DISTINCT n) AS shared_nodes
            UNWIND shared_nodes AS n
            MATCH (m:Memory)-[:MENTIONS|TAGGED]->(n)
            WHERE {_SCOPE} AND m.invalidated_at IS NULL
            WITH m, count(DISTINCT n) AS shared
            RETURN m, shared ORDER BY shared DESC, m.importance DESC LIMIT $limit
            """,
            seed_ids=seed_ids, agent_id=agent_id, limit=limit,
        )
        return [_to_hit(r["m"], r["shared"]) for r in records]

    async def record_retrievals(self, memory_ids: list[str], at: datetime) -> None:
        if not memory_ids:
            return
        await self._query(
            """
            MATCH (m:Memory) WHERE m.id IN $ids
            SET m.retrieval_count = coalesce(m.retrieval_count, 0) + 1, m.last_retrieved_at = $at
            """,
            ids=memory_ids, at=at,
        )

    # ------------------------------------------------------------------
    # Listing / stats
    # ------------------------------------------------------------------

    async def list_by_category(self, category: str, limit: int, offset: int = 0,
                               agent_id: str | None = None) -> list[Memory]:
        match = "m.is_core = true" if category == "core" else "m.category = $category"
        records = await self._query_records(
            f"""
            MATCH (m:Memory) WHERE {match} AND {_SCOPE} AND m.invalidated_at IS NULL
            RETURN m ORDER BY m.importance DESC, m.created_at ASC SKIP $offset LIMIT $limit
            """,
            category=category, agent_id=agent_id, offset=offset, limit=limit,
        )
        return [_to_memory(r["m"]) for r in records]

    async def list_memories(self, agent_id: str | None = None,
                            source: str | None = None) -> list[Memory]:
        records = await self._query_records(
            f"""
            MATCH (m:Memory) WHERE {_SCOPE} AND ($source IS NULL OR m.source = $source)
            RETURN m ORDER BY m.created_at ASC
            """,
            agent_id=agent_id, source=source,
        )
        return [_to_memory(r["m"]) for r in records]

    async def get_memory_stats(self) -> list[MemoryStatsRow]:
        rows = await self._query(
            """
            MATCH (m:Memory)
            RETURN m.agent_id AS agent_id, m.category AS category,
                   count(m) AS count, avg(m.importance) AS avg_importance
            ORDER BY agent_id, category
            """
        )
        return [
            MemoryStatsRow(
                agent_id=r["agent_id"] or "default",
                category=r["category"] or "other",
                count=int(r["count"]),
                avg_importance=float(r["avg_importance"] or 0.0),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Bulk maintenance
    # ------------------------------------------------------------------

    async def _set_core(self, memory_ids: list[str], value: bool) -> int:
        if not memory_ids:
            return 0
        rows = await self._query(
            """
            MATCH (m:Memory) WHERE m.id IN $ids AND coalesce(m.is_core, false) <> $value
            SET m.is_core = $value RETURN count(m) AS changed
            """,
            ids=memory_ids, value=value,
        )
        return int(rows[0]["changed"]) if rows else 0

    async def promote_to_core(self, memory_ids: list[str]) -> int:
        return await self._set_core(memory_ids, True)

    async def demote_from_core(self, memory_ids: list[str]) -> int:
        return await self._set_core(memory_ids, False)

    async def prune_memories(self, memory_ids: list[str]) -> int:
        if not memory_ids:
            return 0
        rows = await self._query(
            """
            MATCH (m:Memory) WHERE m.id IN $ids
            WITH collect(m) AS doomed
            FOREACH (m IN doomed | DETACH DELETE m)
            RETURN size(doomed) AS removed
            """,
            ids=memory_ids,
        )
        return int(rows[0]["removed"]) if rows else 0

    async def reindex(self, embed_batch: EmbedBatchFn, batch_size: int = 50,
                      on_progress: ReindexProgress | None = None) -> int:
        rows = await self._query("MATCH (m:Memory) RETURN m.id AS id, m.text AS text ORDER BY m.created_at")
        total = len(rows)
        if on_progress:
            on_progress("drop-indexes", 0, total)
        await self._execute(f"DROP INDEX {VECTOR_INDEX} IF EXISTS")
        done = 0
        for start in range(0, total, batch_size):
            batch = rows[start:start + batch_size]
            vectors = await embed_batch([r["text"] for r in batch])
            updates = [
                {"id": r["id"], "embedding": v}
                for r, v in zip(batch, vectors)
                if v and len(v) == self.dimensions
            ]
            if len(updates) < len(batch):
                logger.warning("Reindex: %d/%d embeddings failed in batch", len(batch) - len(updates), len(batch))
            if updates:
                await self._execute(
                    "UNWIND $rows AS row MATCH (m:Memory {id: row.id}) SET m.embedding = row.embedding",
                    rows=updates,
                )
            done += len(batch)
            if on_progress:
                on_progress("memories", done, total)
        if on_progress:
            on_progress("create-indexes", 0, total)
        await self._create_vector_index()
        return done

    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return await self._query(query, **(params or {}))

    # ------------------------------------------------------------------
    # Sleep-cycle support
    # ------------------------------------------------------------------

    async def similar_pairs(self, min_score: float, max_score: float,
                            agent_id: str | None = None) -> list[tuple[str, str, float]]:
        rows = await self._query(
            f"""
            MATCH (m:Memory) WHERE {_SCOPE} AND m.embedding IS NOT NULL
            CALL db.index.vector.queryNodes('{VECTOR_INDEX}', $k, m.embedding) YIELD node, score
            WITH m, node, score
            WHERE node.id > m.id AND node.agent_id = m.agent_id
              AND score >= $min_score AND score < $max_score
            RETURN m.id AS a, node.id AS b, score
            """,
            agent_id=agent_id, k=_PAIR_NEIGHBOURS, min_score=min_score, max_score=max_score,
        )
        return [(r["a"], r["b"], float(r["score"])) for r in rows]

    async def merge_memories(self, survivor_id: str, absorbed_ids: list[str],
                             fields: dict[str, Any]) -> int:
        absorbed = [mid for mid in absorbed_ids if mid != survivor_id]
        if not absorbed:
            await self.update_memory(survivor_id, fields)
            return 0
        params = {"sid": survivor_id, "ids": absorbed}
        await self._query(
            """
            MATCH (s:Memory {id: $sid}), (a:Memory)-[:MENTIONS]->(e:Entity) WHERE a.id IN $ids
            MERGE (s)-[:MENTIONS]->(e)
            """,
            **params,
        )
        await self._query(
            """
            MATCH (s:Memory {id: $sid}), (a:Memory)-[:TAGGED]->(t:Tag) WHERE a.id IN $ids
            MERGE (s)-[:TAGGED]->(t)
            """,
            **params,
        )
        for edge in (EdgeType.SIMILAR_TO, EdgeType.CONFLICTS_WITH):
            await self._query(
                f"""
                MATCH (s:Memory {{id: $sid}}), (o:Memory)-[:{edge.value}]->(a:Memory)
                WHERE a.id IN $ids AND o.id <> $sid AND NOT o.id IN $ids
                MERGE (o)-[:{edge.value}]->(s)
                """,
                **params,
            )
            await self._query(
                f"""
                MATCH (s:Memory {{id: $sid}}), (a:Memory)-[:{edge.value}]->(o:Memory)
                WHERE a.id IN $ids AND o.id <> $sid AND NOT o.id IN $ids
                MERGE (s)-[:{edge.value}]->(o)
                """,
                **params,
            )
        removed = await self.prune_memories(absorbed)
        await self.update_memory(survivor_id, fields)
        return removed

    async def link_memories(self, source_id: str, target_id: str, edge: EdgeType,
                            score: float | None = None) -> None:
        await self._query(
            f"""
            MATCH (a:Memory {{id: $source}}), (b:Memory {{id: $target}})
            MERGE (a)-[r:{EdgeType(edge).value}]->(b)
            SET r.score = $score, r.created_at = coalesce(r.created_at, $now)
            """,
            source=source_id, target=target_id, score=score, now=utc_now(),
        )

    async def mention_degrees(self, agent_id: str | None = None) -> dict[str, int]:
        rows = await self._query(
            f"""
            MATCH (m:Memory)-[r:MENTIONS|TAGGED]->() WHERE {_SCOPE}
            RETURN m.id AS id, count(r) AS degree
            """,
            agent_id=agent_id,
        )
        return {r["id"]: int(r["degree"]) for r in rows}

    async def update_scores(self, scores: dict[str, dict[str, float]]) -> int:
        if not scores:
            return 0
        rows = await self._query(
            """
            UNWIND $rows AS row
            MATCH (m:Memory {id: row.id}) SET m += row.props
            RETURN count(m) AS updated
            """,
            rows=[{"id": mid, "props": props} for mid, props in scores.items()],
        )
        return int(rows[0]["updated"]) if rows else 0

    async def list_pending_extraction(self, limit: int, agent_id: str | None = None) -> list[Memory]:
        records = await self._query_records(
            f"""
            MATCH (m:Memory) WHERE m.extraction_status = $status AND {_SCOPE}
            RETURN m ORDER BY m.created_at ASC LIMIT $limit
            """,
            status=ExtractionStatus.PENDING.value, agent_id=agent_id, limit=limit,
        )
        return [_to_memory(r["m"]) for r in records]

    async def apply_extraction(self, memory_id: str, result: ExtractionResult) -> None:
        now = utc_now()
        entities = [
            {"key": entity_key(e.name), "name": e.name, "type": e.type, "description": e.description}
            for e in result.entities
        ]
        relations = [
            {"source": entity_key(r.source), "target": entity_key(r.target), "type": r.type}
            for r in result.relations
        ]
        tags = [{"key": entity_key(t), "name": t} for t in result.tags]
        rows = await self._query(
            """
            MATCH (m:Memory {id: $id})
            SET m.category = $category, m.extraction_status = $status
            RETURN m.id AS id
            """,
            id=memory_id, category=result.category, status=ExtractionStatus.COMPLETED.value,
        )
        if not rows:
            raise StoreError(f"memory {memory_id} not found")
        if entities:
            await self._query(
                """
                MATCH (m:Memory {id: $id})
                UNWIND $entities AS e
                MERGE (n:Entity {key: e.key})
                ON CREATE SET n.name = e.name, n.type = e.type, n.created_at = $now
                SET n.description = coalesce(e.description, n.description)
                MERGE (m)-[:MENTIONS]->(n)
                """,
                id=memory_id, entities=entities, now=now,
            )
        if relations:
            await self._query(
                """
                UNWIND $relations AS r
                MATCH (a:Entity {key: r.source}), (b:Entity {key: r.target})
                MERGE (a)-[x:RELATES_TO]->(b)
                SET x.type = r.type
                """,
                relations=relations,
            )
        if tags:
            await self._query(
                """
                MATCH (m:Memory {id: $id})
                UNWIND $tags AS t
                MERGE (n:Tag {key: t.key})
                ON CREATE SET n.name = t.name, n.created_at = $now
                MERGE (m)-[:TAGGED]->(n)
                """,
                id=memory_id, tags=tags, now=now,
            )

    async def set_extraction_status(self, memory_id: str, status: str) -> None:
        await self.update_memory(memory_id, {"extraction_status": status})

    async def delete_orphans(self) -> tuple[int, int]:
        counts = []
        for label, edge in (("Entity", EdgeType.MENTIONS), ("Tag", EdgeType.TAGGED)):
            rows = await self._query(
                f"""
                MATCH (n:{label}) WHERE NOT (n)<-[:{edge.value}]-(:Memory)
                WITH collect(n) AS orphans
                FOREACH (n IN orphans | DETACH DELETE n)
                RETURN size(orphans) AS removed
                """
            )
            counts.append(int(rows[0]["removed"]) if rows else 0)
        return counts[0], counts[1]
