"""Sleep cycle -- offline consolidation of the memory population.

Phases run strictly in order::

    dedup -> conflict -> pareto -> promotion -> demotion
          -> extraction -> decay -> cleanup

The cycle is triggered by an operator (CLI) or a host; it never schedules
itself.  Callers must not run two cycles over the same agent scope at the
same time.

Per-item failures (one extraction, one conflict judgement) are logged and
counted.  A store failure inside a phase stops the cycle: the remaining
phases are skipped and the partial result comes back with ``aborted=True``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from graph_memory.config import MemorySettings
from graph_memory.errors import GraphMemoryError, ValidationError
from graph_memory.extractor import Extractor
from graph_memory.models import EdgeType, ExtractionStatus, Memory, age_days, utc_now
from graph_memory.store import MemoryStore

logger = logging.getLogger(__name__)

IMPORTANCE_WEIGHT = 0.5
RECENCY_WEIGHT = 0.3
FREQUENCY_WEIGHT = 0.2
# Reference count at which the frequency term reaches ~63%.
FREQUENCY_SCALE = 5.0


class SleepPhase(str, Enum):
    DEDUP = "dedup"
    CONFLICT = "conflict"
    PARETO = "pareto"
    PROMOTION = "promotion"
    DEMOTION = "demotion"
    EXTRACTION = "extraction"
    DECAY = "decay"
    CLEANUP = "cleanup"


PHASE_ORDER: tuple[SleepPhase, ...] = tuple(SleepPhase)


# ---------------------------------------------------------------------------
# Options & results
# ---------------------------------------------------------------------------


@dataclass
class SleepCycleOptions:
    agent_id: Optional[str] = None
    dedup_threshold: float = 0.95
    conflict_threshold: float = 0.75
    pareto_percentile: float = 0.2
    promotion_min_age_days: float = 7.0
    decay_retention_threshold: float = 0.1
    decay_base_half_life_days: float = 30.0
    recency_half_life_days: float = 14.0
    extraction_batch_size: int = 50
    extraction_delay_ms: int = 1000
    on_phase_start: Optional[Callable[[SleepPhase], None]] = None
    on_progress: Optional[Callable[[SleepPhase, str], None]] = None
    abort: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(cls, settings: MemorySettings, **overrides) -> "SleepCycleOptions":
        values = dict(
            dedup_threshold=settings.SLEEP_DEDUP_THRESHOLD,
            conflict_threshold=settings.SLEEP_CONFLICT_THRESHOLD,
            pareto_percentile=settings.SLEEP_PARETO_PERCENTILE,
            promotion_min_age_days=settings.SLEEP_PROMOTION_MIN_AGE_DAYS,
            decay_retention_threshold=settings.SLEEP_DECAY_THRESHOLD,
            decay_base_half_life_days=settings.SLEEP_DECAY_HALF_LIFE_DAYS,
            recency_half_life_days=settings.RECENCY_HALF_LIFE_DAYS,
            extraction_batch_size=settings.SLEEP_BATCH_SIZE,
            extraction_delay_ms=settings.SLEEP_BATCH_DELAY_MS,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def validate(self) -> None:
        """Reject out-of-range parameters before any I/O.

        Raises:
            ValidationError: Naming the first offending parameter.
        """
        for name in ("dedup_threshold", "conflict_threshold", "pareto_percentile", "decay_retention_threshold"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or math.isnan(value) or not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be between 0 and 1, got {value!r}")
        if self.conflict_threshold > self.dedup_threshold:
            raise ValidationError(
                f"conflict_threshold ({self.conflict_threshold}) must not exceed "
                f"dedup_threshold ({self.dedup_threshold})"
            )
        if self.promotion_min_age_days < 0:
            raise ValidationError(f"promotion_min_age_days must be >= 0, got {self.promotion_min_age_days!r}")
        for name in ("decay_base_half_life_days", "recency_half_life_days"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be > 0, got {getattr(self, name)!r}")
        if not isinstance(self.extraction_batch_size, int) or self.extraction_batch_size < 1:
            raise ValidationError(f"extraction_batch_size must be a positive integer, got {self.extraction_batch_size!r}")
        if self.extraction_delay_ms < 0:
            raise ValidationError(f"extraction_delay_ms must be >= 0, got {self.extraction_delay_ms!r}")


@dataclass
class DedupStats:
    clusters_found: int = 0
    memories_merged: int = 0


@dataclass
class ConflictStats:
    pairs_found: int = 0
    resolved: int = 0
    invalidated: int = 0
    failed: int = 0


@dataclass
class ParetoStats:
    total_memories: int = 0
    core_memories: int = 0
    regular_memories: int = 0
    threshold: float = math.inf


@dataclass
class PromotionStats:
    candidates_found: int = 0
    promoted: int = 0


@dataclass
class DemotionStats:
    candidates_found: int = 0
    demoted: int = 0


@dataclass
class ExtractionStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class DecayStats:
    memories_pruned: int = 0


@dataclass
class CleanupStats:
    entities_removed: int = 0
    tags_removed: int = 0


@dataclass
class SleepCycleResult:
    dedup: DedupStats = field(default_factory=DedupStats)
    conflict: ConflictStats = field(default_factory=ConflictStats)
    pareto: ParetoStats = field(default_factory=ParetoStats)
    promotion: PromotionStats = field(default_factory=PromotionStats)
    demotion: DemotionStats = field(default_factory=DemotionStats)
    extraction: ExtractionStats = field(default_factory=ExtractionStats)
    decay: DecayStats = field(default_factory=DecayStats)
    cleanup: CleanupStats = field(default_factory=CleanupStats)
    completed_phases: list[SleepPhase] = field(default_factory=list)
    duration_sec: float = 0.0
    aborted: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def recency_score(memory: Memory, now: datetime, half_life_days: float) -> float:
    reference = memory.last_retrieved_at or memory.created_at
    return math.exp(-math.log(2) * age_days(reference, now) / half_life_days)


def frequency_score(retrieval_count: int, mention_degree: int) -> float:
    return 1.0 - math.exp(-(retrieval_count + mention_degree) / FREQUENCY_SCALE)


def effective_score(memory: Memory, now: datetime, mention_degree: int = 0,
                    recency_half_life_days: float = 14.0) -> float:
    """Weighted blend of importance, recency and reference frequency in [0, 1]."""
    if memory.invalidated:
        return 0.0
    return (
        IMPORTANCE_WEIGHT * memory.importance
        + RECENCY_WEIGHT * recency_score(memory, now, recency_half_life_days)
        + FREQUENCY_WEIGHT * frequency_score(memory.retrieval_count, mention_degree)
    )


def pareto_threshold(scores: list[float], percentile: float) -> float:
    """Score of the k-th best item, k = ceil(n * percentile); +inf when k is 0."""
    k = math.ceil(len(scores) * percentile)
    if k <= 0:
        return math.inf
    return sorted(scores, reverse=True)[k - 1]


def half_life_days(importance: float, base_half_life_days: float) -> float:
    return base_half_life_days * (1.0 + importance)


def decay_score(age: float, importance: float, base_half_life_days: float) -> float:
    return math.exp(-age / half_life_days(importance, base_half_life_days))


def cluster_pairs(pairs: list[tuple[str, str, float]]) -> list[list[str]]:
    """Connected components of the pair graph, each sorted, largest first."""
    parent: dict[str, str] = {}

    def find(x: str) -> str:
        parent.setdefault(x, x)
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for a, b, _score in pairs:
        ra, rb = find(a), find(b)
        if ra != rb:
            parent[max(ra, rb)] = min(ra, rb)

    groups: dict[str, list[str]] = {}
    for node in parent:
        groups.setdefault(find(node), []).append(node)
    clusters = [sorted(g) for g in groups.values() if len(g) > 1]
    clusters.sort(key=lambda c: (-len(c), c[0]))
    return clusters


def pick_survivor(members: list[Memory]) -> Memory:
    """Most important member; ties go to the earliest, then the smallest id."""
    return min(members, key=lambda m: (-m.importance, m.created_at, m.id))


def weaker_of(a: Memory, b: Memory) -> Memory:
    """Lower importance loses; then the older one; then the larger id."""
    if a.importance != b.importance:
        return a if a.importance < b.importance else b
    if a.created_at != b.created_at:
        return a if a.created_at < b.created_at else b
    return a if a.id > b.id else b


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SleepCycle:
    """Runs the consolidation phases against a store.

    Args:
        store: Memory store.
        extractor: Used for extraction and conflict judging.
        clock: Returns "now" (UTC); injectable for tests.
        sleep: Awaitable delay between extraction batches; injectable.
    """

    def __init__(
        self,
        store: MemoryStore,
        extractor: Extractor,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self._clock = clock
        self._sleep = sleep
        self._scores: dict[str, float] = {}
        self._threshold = math.inf

    async def run(self, options: SleepCycleOptions | None = None) -> SleepCycleResult:
        """Run every phase in order and return the aggregate report.

        Raises:
            ValidationError: If *options* are out of range (nothing has run).
        """
        options = options or SleepCycleOptions()
        options.validate()
        result = SleepCycleResult()
        started = time.monotonic()
        self._scores, self._threshold = {}, math.inf

        handlers = {
            SleepPhase.DEDUP: self._dedup,
            SleepPhase.CONFLICT: self._conflict,
            SleepPhase.PARETO: self._pareto,
            SleepPhase.PROMOTION: self._promotion,
            SleepPhase.DEMOTION: self._demotion,
            SleepPhase.EXTRACTION: self._extraction,
            SleepPhase.DECAY: self._decay,
            SleepPhase.CLEANUP: self._cleanup,
        }

        logger.info("Sleep cycle starting (agent=%s)", options.agent_id or "*")
        for phase in PHASE_ORDER:
            if options.abort is not None and options.abort.is_set():
                logger.info("Sleep cycle aborted before %s", phase.value)
                result.aborted = True
                break
            if options.on_phase_start:
                options.on_phase_start(phase)
            phase_started = time.monotonic()
            try:
                await handlers[phase](options, result)
            except GraphMemoryError as exc:
                logger.error("Sleep cycle phase %s failed: %s", phase.value, exc)
                result.aborted = True
                result.error = f"{phase.value}: {exc}"
                break
            result.completed_phases.append(phase)
            logger.info("Phase %s done in %.2fs", phase.value, time.monotonic() - phase_started)

        result.duration_sec = time.monotonic() - started
        logger.info(
            "Sleep cycle %s in %.2fs (merged=%d invalidated=%d promoted=%d demoted=%d extracted=%d pruned=%d)",
            "aborted" if result.aborted else "finished",
            result.duration_sec,
            result.dedup.memories_merged,
            result.conflict.invalidated,
            result.promotion.promoted,
            result.demotion.demoted,
            result.extraction.succeeded,
            result.decay.memories_pruned,
        )
        return result

    @staticmethod
    def _progress(options: SleepCycleOptions, phase: SleepPhase, message: str) -> None:
        if options.on_progress:
            options.on_progress(phase, message)

    # -- 1. dedup -----------------------------------------------------------

    async def _dedup(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        pairs = await self.store.similar_pairs(options.dedup_threshold, math.inf, options.agent_id)
        clusters = cluster_pairs(pairs)
        result.dedup.clusters_found = len(clusters)
        if not clusters:
            return
        by_id = {m.id: m for m in await self.store.list_memories(options.agent_id)}
        for i, cluster in enumerate(clusters, start=1):
            members = [by_id[mid] for mid in cluster if mid in by_id]
            if len(members) < 2:
                continue
            survivor = pick_survivor(members)
            absorbed = [m.id for m in members if m.id != survivor.id]
            fields = {
                "importance": max(m.importance for m in members),
                "is_core": any(m.is_core for m in members),
            }
            result.dedup.memories_merged += await self.store.merge_memories(survivor.id, absorbed, fields)
            self._progress(options, SleepPhase.DEDUP, f"cluster {i}/{len(clusters)}: kept {survivor.id}")

    # -- 2. conflict detection ---------------------------------------------

    async def _conflict(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        pairs = await self.store.similar_pairs(
            options.conflict_threshold, options.dedup_threshold, options.agent_id,
        )
        if not pairs:
            return
        by_id = {m.id: m for m in await self.store.list_memories(options.agent_id)}
        candidates = [
            (by_id[a], by_id[b], score)
            for a, b, score in pairs
            if a in by_id and b in by_id and not by_id[a].invalidated and not by_id[b].invalidated
        ]
        result.conflict.pairs_found = len(candidates)

        size = options.extraction_batch_size
        for start in range(0, len(candidates), size):
            # A memory that lost an earlier pair no longer takes part.
            batch = [
                (a, b, score) for a, b, score in candidates[start:start + size]
                if not a.invalidated and not b.invalidated
            ]
            verdicts = await asyncio.gather(
                *(self.extractor.judge_conflict(a.text, b.text) for a, b, _ in batch),
                return_exceptions=True,
            )
            for (a, b, score), verdict in zip(batch, verdicts):
                if isinstance(verdict, BaseException):
                    if not isinstance(verdict, GraphMemoryError):
                        raise verdict
                    result.conflict.failed += 1
                    logger.warning("Conflict judgement failed for %s/%s: %s", a.id, b.id, verdict)
                    continue
                if a.invalidated or b.invalidated:
                    continue
                if not verdict:
                    await self.store.link_memories(a.id, b.id, EdgeType.SIMILAR_TO, score)
                    continue
                await self.store.link_memories(a.id, b.id, EdgeType.CONFLICTS_WITH, score)
                result.conflict.resolved += 1
                loser = weaker_of(a, b)
                loser.invalidated_at = self._clock()
                await self.store.update_memory(loser.id, {"invalidated_at": loser.invalidated_at})
                result.conflict.invalidated += 1
                self._progress(options, SleepPhase.CONFLICT, f"invalidated {loser.id}")

    # -- 3. pareto scoring ---------------------------------------------------

    async def _pareto(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        now = self._clock()
        memories = await self.store.list_memories(options.agent_id)
        degrees = await self.store.mention_degrees(options.agent_id)
        self._scores = {
            m.id: effective_score(m, now, degrees.get(m.id, 0), options.recency_half_life_days)
            for m in memories
        }
        self._threshold = pareto_threshold(list(self._scores.values()), options.pareto_percentile)
        await self.store.update_scores({mid: {"pareto_score": s} for mid, s in self._scores.items()})

        core = sum(1 for s in self._scores.values() if s >= self._threshold)
        result.pareto.total_memories = len(memories)
        result.pareto.core_memories = core
        result.pareto.regular_memories = len(memories) - core
        result.pareto.threshold = self._threshold

    # -- 4. promotion --------------------------------------------------------

    async def _promotion(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        now = self._clock()
        memories = await self.store.list_memories(options.agent_id)
        candidates = [
            m.id for m in memories
            if not m.is_core
            and not m.invalidated
            and self._scores.get(m.id, 0.0) >= self._threshold
            and age_days(m.created_at, now) >= options.promotion_min_age_days
        ]
        result.promotion.candidates_found = len(candidates)
        if candidates:
            result.promotion.promoted = await self.store.promote_to_core(candidates)

    # -- 5. demotion ---------------------------------------------------------

    async def _demotion(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        memories = await self.store.list_memories(options.agent_id)
        candidates = [
            m.id for m in memories
            if m.is_core and self._scores.get(m.id, 0.0) < self._threshold
        ]
        result.demotion.candidates_found = len(candidates)
        if candidates:
            result.demotion.demoted = await self.store.demote_from_core(candidates)

    # -- 6. extraction -------------------------------------------------------

    async def _extract_one(self, memory: Memory) -> None:
        extraction = await self.extractor.extract(memory.text)
        await self.store.apply_extraction(memory.id, extraction)

    async def _extraction(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        if not self.extractor.enabled:
            logger.info("Extraction disabled; leaving pending memories untouched")
            return
        seen: set[str] = set()
        batch_no = 0
        while True:
            batch = [
                m for m in await self.store.list_pending_extraction(options.extraction_batch_size, options.agent_id)
                if m.id not in seen
            ]
            if not batch:
                break
            if batch_no > 0:
                if options.abort is not None and options.abort.is_set():
                    logger.info("Extraction interrupted by abort after %d batches", batch_no)
                    break
                await self._sleep(options.extraction_delay_ms / 1000.0)
            batch_no += 1
            seen.update(m.id for m in batch)
            result.extraction.total += len(batch)

            outcomes = await asyncio.gather(*(self._extract_one(m) for m in batch), return_exceptions=True)
            for memory, outcome in zip(batch, outcomes):
                if outcome is None:
                    result.extraction.succeeded += 1
                    continue
                if not isinstance(outcome, GraphMemoryError):
                    raise outcome
                result.extraction.failed += 1
                logger.warning("Extraction failed for memory %s: %s", memory.id, outcome)
                await self.store.set_extraction_status(memory.id, ExtractionStatus.FAILED.value)
            self._progress(
                options, SleepPhase.EXTRACTION,
                f"batch {batch_no}: {result.extraction.succeeded} ok, {result.extraction.failed} failed",
            )

    # -- 7. decay & pruning --------------------------------------------------

    async def _decay(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        now = self._clock()
        memories = await self.store.list_memories(options.agent_id)
        scores: dict[str, dict[str, float]] = {}
        doomed: list[str] = []
        for memory in memories:
            score = decay_score(age_days(memory.created_at, now), memory.importance, options.decay_base_half_life_days)
            scores[memory.id] = {"decay_score": score}
            if memory.is_core:
                continue
            if memory.invalidated or score < options.decay_retention_threshold:
                doomed.append(memory.id)
        await self.store.update_scores(scores)
        if doomed:
            result.decay.memories_pruned = await self.store.prune_memories(doomed)
            self._progress(options, SleepPhase.DECAY, f"pruned {result.decay.memories_pruned}")

    # -- 8. orphan cleanup ---------------------------------------------------

    async def _cleanup(self, options: SleepCycleOptions, result: SleepCycleResult) -> None:
        entities, tags = await self.store.delete_orphans()
        result.cleanup.entities_removed = entities
        result.cleanup.tags_removed = tags
