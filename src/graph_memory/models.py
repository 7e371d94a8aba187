"""Data model shared by the store, search, sleep cycle and engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from graph_memory.config import MEMORY_CATEGORIES

DAY_SECONDS = 86400.0


class MemorySource(str, Enum):
    USER = "user"
    AUTO_CAPTURE = "auto-capture"
    AUTO_CAPTURE_ASSISTANT = "auto-capture-assistant"
    SYSTEM = "system"


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class NodeLabel(str, Enum):
    MEMORY = "Memory"
    ENTITY = "Entity"
    TAG = "Tag"


class EdgeType(str, Enum):
    MENTIONS = "MENTIONS"
    TAGGED = "TAGGED"
    SIMILAR_TO = "SIMILAR_TO"
    CONFLICTS_WITH = "CONFLICTS_WITH"
    RELATES_TO = "RELATES_TO"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_importance(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def normalize_category(category: str | None) -> str:
    """Map any category string onto the enumerated set, defaulting to ``other``."""
    if not category:
        return "other"
    cat = category.strip().lower()
    return cat if cat in MEMORY_CATEGORIES else "other"


def age_days(created_at: datetime, now: datetime) -> float:
    return max(0.0, (now - created_at).total_seconds() / DAY_SECONDS)


@dataclass
class Memory:
    """A remembered fact or statement."""
    text: str
    embedding: list[float]
    importance: float = 0.7
    category: str = "other"
    source: str = MemorySource.USER.value
    extraction_status: str = ExtractionStatus.PENDING.value
    is_core: bool = False
    agent_id: str = "default"
    session_key: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid4()))
    pareto_score: float | None = None
    decay_score: float | None = None
    retrieval_count: int = 0
    last_retrieved_at: datetime | None = None
    invalidated_at: datetime | None = None

    def __post_init__(self) -> None:
        self.importance = clamp_importance(self.importance)
        self.category = normalize_category(self.category)

    @property
    def invalidated(self) -> bool:
        return self.invalidated_at is not None


@dataclass
class SimilarMemory:
    id: str
    text: str
    score: float
    category: str = "other"
    importance: float = 0.0
    created_at: datetime | None = None


@dataclass
class RankedHit:
    """A single hit from one retrieval signal (vector, lexical or graph)."""
    id: str
    text: str
    category: str
    importance: float
    created_at: datetime
    score: float


@dataclass
class SearchResult:
    id: str
    text: str
    category: str
    importance: float
    score: float
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "category": self.category,
            "importance": self.importance,
            "score": self.score,
        }


@dataclass
class MemoryStatsRow:
    agent_id: str
    category: str
    count: int
    avg_importance: float


@dataclass
class ExtractedEntity:
    name: str
    type: str = "concept"
    description: str | None = None


@dataclass
class ExtractedRelation:
    source: str
    target: str
    type: str = "related_to"


@dataclass
class ExtractionResult:
    """Output of the entity extractor for one memory."""
    category: str = "other"
    entities: list[ExtractedEntity] = field(default_factory=list)
    relations: list[ExtractedRelation] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Operation outcomes
# ---------------------------------------------------------------------------


@dataclass
class RecallOutcome:
    action: str  # "found" | "empty" | "error"
    memories: list[SearchResult] = field(default_factory=list)
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.memories)


@dataclass
class StoreOutcome:
    action: str  # "created" | "duplicate" | "error"
    id: str | None = None
    existing_text: str | None = None
    error: str | None = None


@dataclass
class ForgetOutcome:
    action: str  # "deleted" | "candidates" | "not_found" | "error"
    id: str | None = None
    text: str | None = None
    candidates: list[SimilarMemory] = field(default_factory=list)
    error: str | None = None
