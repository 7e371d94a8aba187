"""Central configuration for graph-memory.

All settings are loaded from environment variables prefixed with
``GRAPH_MEMORY_`` (``.env`` files are loaded by the CLI through
*python-dotenv* before settings are built).  Validation and type coercion are
handled by ``pydantic-settings``.

Usage::

    from graph_memory.config import get_settings

    settings = get_settings()
    print(settings.NEO4J_URI)

:func:`get_settings` creates the :class:`MemorySettings` singleton lazily so
that importing this module never triggers validation.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import ClassVar, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model tables
# ---------------------------------------------------------------------------

EMBEDDING_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "mxbai-embed-large": 1024,
    "nomic-embed-text": 768,
    "all-minilm": 384,
    "snowflake-arctic-embed": 1024,
    "bge-m3": 1024,
    "hash": 384,
}
"""Output dimension per known embedding model.

These values MUST match the Neo4j vector index.  Changing the embedding model
after the first run requires a reindex.
"""

DEFAULT_EMBEDDING_DIMS: int = 1536

EMBEDDING_CONTEXT_LENGTHS: dict[str, int] = {
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
    "text-embedding-ada-002": 8191,
    "mxbai-embed-large": 512,
    "nomic-embed-text": 8192,
    "all-minilm": 256,
    "snowflake-arctic-embed": 512,
    "bge-m3": 8192,
}

DEFAULT_CONTEXT_LENGTH: int = 512

MEMORY_CATEGORIES: tuple[str, ...] = (
    "preference",
    "fact",
    "decision",
    "entity",
    "instruction",
    "other",
    "core",
)


def _lookup(table: dict[str, int], model: str, default: int) -> int:
    if model in table:
        return table[model]
    # Tagged variants such as "mxbai-embed-large:latest" resolve by prefix.
    for known, value in table.items():
        if model.startswith(known):
            return value
    return default


def vector_dims_for_model(model: str) -> int:
    return _lookup(EMBEDDING_DIMENSIONS, model, DEFAULT_EMBEDDING_DIMS)


def context_length_for_model(model: str) -> int:
    return _lookup(EMBEDDING_CONTEXT_LENGTHS, model, DEFAULT_CONTEXT_LENGTH)


def is_known_embedding_model(model: str) -> bool:
    return model in EMBEDDING_DIMENSIONS or any(model.startswith(k) for k in EMBEDDING_DIMENSIONS)


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class MemorySettings(BaseSettings):
    """Validated configuration for the memory engine.

    Every setting carries a default so the engine can start against a local
    Neo4j with only an embedding API key configured.
    """

    model_config = SettingsConfigDict(
        env_prefix="GRAPH_MEMORY_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Neo4j
    # ------------------------------------------------------------------
    NEO4J_URI: str = Field(default="bolt://localhost:7687", description="Bolt URI of the Neo4j server.")
    NEO4J_USERNAME: str = Field(default="neo4j")
    NEO4J_PASSWORD: str = Field(default="", description="Empty is allowed for passwordless setups.")

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    EMBEDDING_PROVIDER: Literal["openai", "ollama", "hash"] = Field(
        default="openai",
        description="'openai' (any OpenAI-compatible /embeddings API), 'ollama', or 'hash' (offline).",
    )
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small",
        description=(
            "Model used for vector embeddings.  Changing it after the first run "
            "requires `graph-memory index`."
        ),
    )
    EMBEDDING_API_KEY: str | None = Field(default=None)
    EMBEDDING_BASE_URL: str | None = Field(
        default=None,
        description="Override the provider URL (defaults: api.openai.com / localhost:11434).",
    )

    # ------------------------------------------------------------------
    # Extraction (OpenAI-compatible chat completions)
    # ------------------------------------------------------------------
    EXTRACTION_ENABLED: bool = Field(default=True)
    EXTRACTION_MODEL: str = Field(default="google/gemini-2.0-flash-001")
    EXTRACTION_API_KEY: str | None = Field(default=None)
    EXTRACTION_BASE_URL: str = Field(default="https://openrouter.ai/api/v1")
    EXTRACTION_TEMPERATURE: float = Field(default=0.0, ge=0.0, le=2.0)
    EXTRACTION_MAX_RETRIES: int = Field(
        default=0, ge=0, description="Provider errors are counted, not retried, at the default of 0.",
    )

    # ------------------------------------------------------------------
    # Capture / recall
    # ------------------------------------------------------------------
    AUTO_CAPTURE: bool = Field(default=True)
    AUTO_RECALL: bool = Field(default=True)
    AUTO_RECALL_MIN_SCORE: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Minimum fused score for auto-recalled memories (1.0 = ranked first by every signal).",
    )

    # ------------------------------------------------------------------
    # Core memory
    # ------------------------------------------------------------------
    CORE_MEMORY_ENABLED: bool = Field(default=True)
    CORE_MEMORY_MAX_ENTRIES: int = Field(default=50, ge=1)
    CORE_MEMORY_REFRESH_AT_CONTEXT_PERCENT: float | None = Field(default=None, gt=0.0, le=100.0)

    # ------------------------------------------------------------------
    # Sleep cycle defaults
    # ------------------------------------------------------------------
    SLEEP_DEDUP_THRESHOLD: float = Field(default=0.95, ge=0.0, le=1.0)
    SLEEP_CONFLICT_THRESHOLD: float = Field(default=0.75, ge=0.0, le=1.0)
    SLEEP_PARETO_PERCENTILE: float = Field(default=0.2, ge=0.0, le=1.0)
    SLEEP_PROMOTION_MIN_AGE_DAYS: float = Field(default=7.0, ge=0.0)
    SLEEP_DECAY_THRESHOLD: float = Field(default=0.1, ge=0.0, le=1.0)
    SLEEP_DECAY_HALF_LIFE_DAYS: float = Field(default=30.0, gt=0.0)
    SLEEP_BATCH_SIZE: int = Field(default=50, ge=1)
    SLEEP_BATCH_DELAY_MS: int = Field(default=1000, ge=0)
    RECENCY_HALF_LIFE_DAYS: float = Field(default=14.0, gt=0.0)

    LOG_LEVEL: str = Field(default="INFO")

    # ------------------------------------------------------------------
    # Repr safety -- redact secrets in logs / debug output
    # ------------------------------------------------------------------

    _SENSITIVE_FIELDS: ClassVar[set[str]] = {
        "NEO4J_PASSWORD", "EMBEDDING_API_KEY", "EXTRACTION_API_KEY",
    }

    def __repr__(self) -> str:
        fields = []
        for name in type(self).model_fields:
            val = getattr(self, name)
            if name in self._SENSITIVE_FIELDS:
                val = "***" if val else None
            fields.append(f"{name}={val!r}")
        return f"MemorySettings({', '.join(fields)})"

    @property
    def vector_dims(self) -> int:
        return vector_dims_for_model(self.EMBEDDING_MODEL)


# ---------------------------------------------------------------------------
# Extraction config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractionConfig:
    enabled: bool
    model: str
    base_url: str
    api_key: str | None = None
    temperature: float = 0.0
    max_retries: int = 0


def resolve_extraction_config(settings: MemorySettings) -> ExtractionConfig:
    """Resolve the effective extraction config.

    Extraction needs an API key unless the base URL points at a local
    (keyless) server such as Ollama's OpenAI-compatible endpoint.
    """
    base_url = settings.EXTRACTION_BASE_URL.rstrip("/")
    local = "localhost" in base_url or "127.0.0.1" in base_url or "host.docker.internal" in base_url
    enabled = settings.EXTRACTION_ENABLED and (bool(settings.EXTRACTION_API_KEY) or local)
    if settings.EXTRACTION_ENABLED and not enabled:
        logger.warning("Extraction enabled but no EXTRACTION_API_KEY set -- extraction disabled.")
    return ExtractionConfig(
        enabled=enabled,
        model=settings.EXTRACTION_MODEL,
        base_url=base_url,
        api_key=settings.EXTRACTION_API_KEY,
        temperature=settings.EXTRACTION_TEMPERATURE,
        max_retries=settings.EXTRACTION_MAX_RETRIES,
    )


# ---------------------------------------------------------------------------
# Lazy singleton accessor
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def get_settings() -> MemorySettings:
    """Return the global :class:`MemorySettings` singleton.

    Raises:
        pydantic.ValidationError: If any value fails validation.
    """
    logger.debug("Initialising MemorySettings from environment.")
    settings = MemorySettings()
    if not settings.NEO4J_PASSWORD:
        logger.warning(
            "NEO4J_PASSWORD is empty -- this may be intentional for passwordless "
            "setups, but verify your configuration."
        )
    if not is_known_embedding_model(settings.EMBEDDING_MODEL):
        logger.warning(
            "Unknown embedding model %r -- using default %d dimensions. Known models: %s",
            settings.EMBEDDING_MODEL,
            DEFAULT_EMBEDDING_DIMS,
            ", ".join(EMBEDDING_DIMENSIONS),
        )
    return settings
