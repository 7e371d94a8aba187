"""Shared fixtures for the graph-memory test suite."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from graph_memory.config import ExtractionConfig, MemorySettings
from graph_memory.embeddings import HashEmbeddings
from graph_memory.engine import MemoryEngine
from graph_memory.errors import ProviderError
from graph_memory.extractor import Extractor
from graph_memory.models import Memory
from graph_memory.store import InMemoryStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
DIM = 4


class KeyedEmbeddings:
    """Embedding fake: registered texts get fixed vectors, others a hash vector."""

    def __init__(self, vectors=None, dim=DIM):
        self.model = "fake-embed"
        self.dimensions = dim
        self.vectors = dict(vectors or {})
        self.fail_on = set()
        self.calls = []
        self._hash = HashEmbeddings(dim)

    async def embed(self, text):
        self.calls.append(text)
        if text in self.fail_on:
            raise ProviderError(f"cannot embed {text!r}", provider="fake")
        if text in self.vectors:
            return list(self.vectors[text])
        return await self._hash.embed(text)

    async def embed_batch(self, texts):
        out = []
        for text in texts:
            try:
                out.append(await self.embed(text))
            except ProviderError:
                out.append([])
        return out

    async def close(self):
        return None


def make_memory(text, embedding=None, days_old=0.0, **kwargs):
    """Build a Memory created *days_old* days before NOW."""
    return Memory(
        text=text,
        embedding=list(embedding) if embedding is not None else [],
        created_at=NOW - timedelta(days=days_old),
        **kwargs,
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def settings():
    return MemorySettings(
        _env_file=None,
        EMBEDDING_PROVIDER="hash",
        EMBEDDING_MODEL="hash",
        EXTRACTION_ENABLED=False,
        AUTO_RECALL_MIN_SCORE=0.0,
        CORE_MEMORY_REFRESH_AT_CONTEXT_PERCENT=50.0,
    )


@pytest.fixture
def store():
    return InMemoryStore(dimensions=DIM)


@pytest.fixture
def embeddings():
    return KeyedEmbeddings()


@pytest.fixture
def disabled_extractor():
    return Extractor(ExtractionConfig(enabled=False, model="none", base_url="http://localhost"))


@pytest.fixture
def mock_llm():
    """Stub LLM client; tests set ``complete_json`` side effects."""
    llm = MagicMock()
    llm.complete_json = AsyncMock()
    llm.close = AsyncMock()
    return llm


@pytest.fixture
def enabled_extractor(mock_llm):
    config = ExtractionConfig(enabled=True, model="test/model", base_url="http://localhost:11434/v1")
    return Extractor(config, llm=mock_llm)


@pytest.fixture
def engine(settings, store, embeddings, disabled_extractor, clock):
    return MemoryEngine(settings, store, embeddings, extractor=disabled_extractor, clock=clock)
