"""Memory engine: the operations a host or operator invokes.

``recall`` / ``store`` / ``forget`` return typed outcomes rather than
raising on provider or store failures; ``run_sleep_cycle`` returns the
sleep-cycle report.  Malformed arguments raise
:class:`~graph_memory.errors.ValidationError` before any I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from graph_memory.config import MEMORY_CATEGORIES, MemorySettings, resolve_extraction_config
from graph_memory.embeddings import EmbeddingProvider, build_embeddings
from graph_memory.errors import GraphMemoryError, ValidationError
from graph_memory.extractor import Extractor, strip_message_wrappers
from graph_memory.gate import passes_attention_gate
from graph_memory.models import (
    ExtractionStatus,
    ForgetOutcome,
    Memory,
    MemorySource,
    MemoryStatsRow,
    RecallOutcome,
    StoreOutcome,
    clamp_importance,
    utc_now,
)
from graph_memory.search import HybridSearch
from graph_memory.sleep import SleepCycle, SleepCycleOptions, SleepCycleResult
from graph_memory.store import MemoryStore, ReindexProgress

logger = logging.getLogger(__name__)

DUPLICATE_THRESHOLD = 0.95
FORGET_MIN_SCORE = 0.7
FORGET_AUTO_DELETE_SCORE = 0.9
FORGET_CANDIDATES = 5
DEFAULT_AGENT = "default"


@dataclass
class CleanupReport:
    scanned: int
    noise: list[Memory]
    deleted: int = 0
    executed: bool = False


class MemoryEngine:
    """Wires the store, embeddings, extractor, search and sleep cycle together.

    Args:
        settings: Validated settings.
        store: Memory store (Neo4j in production, :class:`InMemoryStore` in tests).
        embeddings: Embedding provider.
        extractor: Rater / extractor; built from *settings* when omitted.
        clock: Returns "now" (UTC); injectable for tests.
    """

    def __init__(
        self,
        settings: MemorySettings,
        store: MemoryStore,
        embeddings: EmbeddingProvider,
        extractor: Optional[Extractor] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.embeddings = embeddings
        self.extractor = extractor or Extractor(resolve_extraction_config(settings))
        self.search = HybridSearch(store, embeddings)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: MemorySettings) -> "MemoryEngine":
        from graph_memory.neo4j_store import Neo4jMemoryStore

        embeddings = build_embeddings(settings)
        store = Neo4jMemoryStore(
            settings.NEO4J_URI,
            settings.NEO4J_USERNAME,
            settings.NEO4J_PASSWORD,
            dimensions=embeddings.dimensions,
        )
        return cls(settings, store, embeddings)

    @property
    def extraction_enabled(self) -> bool:
        return self.extractor.enabled

    async def start(self) -> bool:
        """Initialise the store; on failure log and rely on lazy init later."""
        try:
            await self.store.ensure_initialized()
        except GraphMemoryError as exc:
            logger.error("Memory store failed to start: %s. Will retry lazily on first use.", exc)
            return False
        logger.info("Memory engine started (embedding model: %s)", self.embeddings.model)
        return True

    async def close(self) -> None:
        await self.store.close()
        await self.embeddings.close()
        await self.extractor.close()

    # ------------------------------------------------------------------
    # recall / store / forget
    # ------------------------------------------------------------------

    async def recall(self, query: str, limit: int = 5, agent_id: str = DEFAULT_AGENT) -> RecallOutcome:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query must be a non-empty string")
        if limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}")
        try:
            results = await self.search.search(
                query, limit=limit, agent_id=agent_id, use_graph=self.extraction_enabled,
            )
            if results:
                await self.store.record_retrievals([r.id for r in results], self._clock())
        except GraphMemoryError as exc:
            logger.warning("Recall failed: %s", exc)
            return RecallOutcome(action="error", error=str(exc))
        return RecallOutcome(action="found" if results else "empty", memories=results)

    async def _embed_and_check(self, text: str, agent_id: str | None) -> tuple[list[float], Optional[Memory]]:
        vector = await self.embeddings.embed(text)
        existing = await self.store.find_similar(vector, DUPLICATE_THRESHOLD, 1, agent_id=agent_id)
        if existing:
            return vector, await self.store.get_memory(existing[0].id)
        return vector, None

    def _new_memory(self, text: str, vector: list[float], importance: float, category: str,
                    source: str, agent_id: str, session_key: str | None) -> Memory:
        status = ExtractionStatus.PENDING if self.extraction_enabled else ExtractionStatus.SKIPPED
        return Memory(
            text=text,
            embedding=vector,
            importance=clamp_importance(importance),
            category=category,
            source=source,
            extraction_status=status.value,
            agent_id=agent_id,
            session_key=session_key,
            created_at=self._clock(),
        )

    async def store_memory(
        self,
        text: str,
        importance: float = 0.7,
        category: str = "other",
        agent_id: str = DEFAULT_AGENT,
        session_key: str | None = None,
    ) -> StoreOutcome:
        """Store *text* unless a near-duplicate (>= 0.95 similarity) exists."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("text must be a non-empty string")
        if category not in MEMORY_CATEGORIES:
            raise ValidationError(f"category must be one of {', '.join(MEMORY_CATEGORIES)}; got {category!r}")
        if not isinstance(importance, (int, float)):
            raise ValidationError(f"importance must be a number, got {importance!r}")
        try:
            vector, existing = await self._embed_and_check(text, agent_id)
            if existing is not None:
                return StoreOutcome(action="duplicate", id=existing.id, existing_text=existing.text)
            memory = self._new_memory(
                text, vector, importance, category, MemorySource.USER.value, agent_id, session_key,
            )
            await self.store.store_memory(memory)
        except GraphMemoryError as exc:
            logger.warning("Store failed: %s", exc)
            return StoreOutcome(action="error", error=str(exc))
        logger.info("Stored memory %s (%s, importance=%.2f)", memory.id, category, memory.importance)
        return StoreOutcome(action="created", id=memory.id)

    async def forget(
        self,
        memory_id: str | None = None,
        query: str | None = None,
        agent_id: str = DEFAULT_AGENT,
    ) -> ForgetOutcome:
        if not memory_id and not (query and query.strip()):
            raise ValidationError("provide a memory id or a query")
        try:
            if memory_id:
                if await self.store.delete_memory(memory_id):
                    return ForgetOutcome(action="deleted", id=memory_id)
                return ForgetOutcome(action="not_found", id=memory_id)

            vector = await self.embeddings.embed(query or "")
            matches = await self.store.find_similar(vector, FORGET_MIN_SCORE, FORGET_CANDIDATES, agent_id=agent_id)
            if not matches:
                return ForgetOutcome(action="not_found")
            if len(matches) == 1 and matches[0].score > FORGET_AUTO_DELETE_SCORE:
                await self.store.delete_memory(matches[0].id)
                return ForgetOutcome(action="deleted", id=matches[0].id, text=matches[0].text)
            return ForgetOutcome(action="candidates", candidates=matches)
        except GraphMemoryError as exc:
            logger.warning("Forget failed: %s", exc)
            return ForgetOutcome(action="error", error=str(exc))

    # ------------------------------------------------------------------
    # Capture path (used by the lifecycle hooks)
    # ------------------------------------------------------------------

    async def capture(
        self,
        text: str,
        source: str = MemorySource.AUTO_CAPTURE.value,
        agent_id: str = DEFAULT_AGENT,
        session_key: str | None = None,
        importance: float | None = None,
        max_importance: float | None = None,
    ) -> Optional[str]:
        """Embed, dedup, rate and store gated text; return the new id or ``None``.

        Raises:
            GraphMemoryError: Provider or store failure (callers isolate it).
        """
        vector, existing = await self._embed_and_check(text, agent_id)
        if existing is not None:
            logger.debug("Capture skipped, duplicate of %s", existing.id)
            return None
        if importance is None:
            importance = await self.extractor.rate_importance(text)
        if max_importance is not None:
            importance = min(importance, max_importance)
        memory = self._new_memory(text, vector, importance, "other", source, agent_id, session_key)
        await self.store.store_memory(memory)
        return memory.id

    # ------------------------------------------------------------------
    # Sleep cycle & maintenance
    # ------------------------------------------------------------------

    def sleep_options(self, **overrides) -> SleepCycleOptions:
        return SleepCycleOptions.from_settings(self.settings, **overrides)

    async def run_sleep_cycle(self, options: SleepCycleOptions | None = None) -> SleepCycleResult:
        """Run the consolidation cycle.

        Raises:
            ValidationError: If *options* are out of range.
        """
        options = options or self.sleep_options()
        options.validate()
        cycle = SleepCycle(self.store, self.extractor, clock=self._clock)
        try:
            await self.store.ensure_initialized()
        except GraphMemoryError as exc:
            logger.error("Sleep cycle could not start: %s", exc)
            return SleepCycleResult(aborted=True, error=str(exc))
        return await cycle.run(options)

    async def stats(self) -> list[MemoryStatsRow]:
        return await self.store.get_memory_stats()

    async def list_memories(self, category: str, limit: int = 20, offset: int = 0,
                            agent_id: str | None = DEFAULT_AGENT) -> list[Memory]:
        if category not in MEMORY_CATEGORIES:
            raise ValidationError(f"category must be one of {', '.join(MEMORY_CATEGORIES)}; got {category!r}")
        return await self.store.list_by_category(category, limit, offset, agent_id=agent_id)

    async def promote(self, memory_ids: list[str]) -> int:
        return await self.store.promote_to_core(memory_ids)

    async def reindex(self, batch_size: int = 50, on_progress: ReindexProgress | None = None) -> int:
        if batch_size < 1:
            raise ValidationError(f"batch_size must be >= 1, got {batch_size}")
        return await self.store.reindex(self.embeddings.embed_batch, batch_size, on_progress)

    async def cleanup(self, execute: bool = False, include_all: bool = False,
                      agent_id: str | None = None) -> CleanupReport:
        """Re-apply the user attention gate to stored memories.

        Only auto-captured memories are considered unless *include_all*.
        Nothing is deleted unless *execute*.
        """
        source = None if include_all else MemorySource.AUTO_CAPTURE.value
        memories = await self.store.list_memories(agent_id=agent_id, source=source)
        noise = [m for m in memories if not passes_attention_gate(strip_message_wrappers(m.text))]
        report = CleanupReport(scanned=len(memories), noise=noise, executed=execute)
        if execute and noise:
            report.deleted = await self.store.prune_memories([m.id for m in noise])
            logger.info("Cleanup deleted %d low-substance memories", report.deleted)
        return report
