"""Embedding providers for graph-memory.

A single capability interface (:class:`EmbeddingProvider`) with two network
variants that differ in batching:

* :class:`OpenAIEmbeddings` -- any OpenAI-compatible ``/embeddings`` endpoint
  (OpenAI, OpenRouter, vLLM...).  Batch-capable: ``embed_batch`` issues one
  request for the whole batch.
* :class:`OllamaEmbeddings` -- Ollama's ``/api/embed``.  Items are sent one
  per request and fanned out concurrently; a failed item yields an empty
  placeholder vector so indices stay aligned with the input.

:class:`HashEmbeddings` is a deterministic offline variant for tests and
air-gapped setups.

**CRITICAL**: the embedding model is baked into the Neo4j vector index.
Changing the model after the first run requires a reindex.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from typing import Any, Protocol, runtime_checkable

import aiohttp

from graph_memory.config import MemorySettings, context_length_for_model, vector_dims_for_model
from graph_memory.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

_EMBED_TIMEOUT = aiohttp.ClientTimeout(total=30)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"


@runtime_checkable
class EmbeddingProvider(Protocol):
    model: str
    dimensions: int

    async def embed(self, text: str) -> list[float]:
        ...  # pragma: no cover

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...  # pragma: no cover

    async def close(self) -> None:
        ...  # pragma: no cover


def truncate_to_context(text: str, context_length: int) -> str:
    """Truncate *text* to fit within *context_length* tokens.

    Uses a conservative ~3 chars/token estimate (code, URLs and punctuation
    tokenize at 1-2 chars/token).  Cuts at a word boundary when one exists in
    the last 20% of the allowed span.
    """
    max_chars = context_length * 3
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        truncated = truncated[:last_space]
    logger.debug(
        "Truncated embedding input from %d to %d chars (model context: %d tokens)",
        len(text), len(truncated), context_length,
    )
    return truncated


class _HttpEmbeddings:
    """Shared session and request handling for the network variants."""

    provider_name = "http"

    def __init__(self, model: str, base_url: str, headers: dict[str, str] | None = None) -> None:
        self.model = model
        self.dimensions = vector_dims_for_model(model)
        self.context_length = context_length_for_model(model)
        self.last_batch_failures = 0
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers)
        return self._session

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        session = self._get_session()
        try:
            async with session.post(url, json=payload, timeout=_EMBED_TIMEOUT) as resp:
                body = await resp.json(content_type=None)
                if resp.status >= 400:
                    detail = body.get("error", resp.reason) if isinstance(body, dict) else resp.reason
                    raise ProviderError(
                        f"HTTP {resp.status} from {path}: {detail}", provider=self.provider_name,
                    )
                return body  # type: ignore[return-value]
        except ProviderError:
            raise
        except (aiohttp.ClientError, OSError, TimeoutError, ValueError) as exc:
            raise ProviderError(
                f"embedding request to {self._base_url} failed: {exc!r}", provider=self.provider_name,
            ) from exc

    def _truncate(self, text: str) -> str:
        return truncate_to_context(text, self.context_length)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r}, dimensions={self.dimensions})"


class OpenAIEmbeddings(_HttpEmbeddings):
    provider_name = "openai"

    def __init__(self, api_key: str, model: str = "text-embedding-3-small",
                 base_url: str | None = None) -> None:
        if not api_key:
            raise ConfigurationError("API key required for OpenAI-compatible embeddings")
        super().__init__(
            model,
            base_url or DEFAULT_OPENAI_BASE_URL,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def _request(self, inputs: str | list[str]) -> list[list[float]]:
        data = await self._post("/embeddings", {"model": self.model, "input": inputs})
        entries = data.get("data")
        if not isinstance(entries, list):
            raise ProviderError("response missing 'data' array", provider=self.provider_name)
        # Entries carry their input index; the API does not guarantee order.
        try:
            ordered = sorted(entries, key=lambda e: e.get("index", 0))
            return [[float(v) for v in e["embedding"]] for e in ordered]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderError(f"malformed embedding entry: {exc!r}", provider=self.provider_name) from exc

    async def embed(self, text: str) -> list[float]:
        vectors = await self._request(self._truncate(text))
        if not vectors:
            raise ProviderError("no embedding returned", provider=self.provider_name)
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = await self._request([self._truncate(t) for t in texts])
        except ProviderError as exc:
            logger.warning("Batch embedding of %d texts failed: %s", len(texts), exc)
            self.last_batch_failures = len(texts)
            return [[] for _ in texts]
        if len(vectors) != len(texts):
            logger.warning("Sent %d texts but received %d vectors", len(texts), len(vectors))
            self.last_batch_failures = len(texts)
            return [[] for _ in texts]
        self.last_batch_failures = 0
        return vectors


class OllamaEmbeddings(_HttpEmbeddings):
    provider_name = "ollama"

    def __init__(self, model: str = "mxbai-embed-large", base_url: str | None = None) -> None:
        super().__init__(model, base_url or DEFAULT_OLLAMA_BASE_URL)

    async def _embed_one(self, text: str) -> list[float]:
        data = await self._post("/api/embed", {"model": self.model, "input": text})
        embeddings = data.get("embeddings") or []
        if not embeddings or not embeddings[0]:
            raise ProviderError("no embedding returned", provider=self.provider_name)
        return list(embeddings[0])

    async def embed(self, text: str) -> list[float]:
        return await self._embed_one(self._truncate(text))

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        results = await asyncio.gather(
            *(self._embed_one(self._truncate(t)) for t in texts),
            return_exceptions=True,
        )
        vectors: list[list[float]] = []
        failures = 0
        for i, result in enumerate(results):
            if isinstance(result, BaseException):
                failures += 1
                logger.warning("Ollama embedding failed for text %d: %s", i, result)
                vectors.append([])
            else:
                vectors.append(result)
        if failures:
            logger.warning("%d/%d Ollama embeddings failed in batch", failures, len(texts))
        self.last_batch_failures = failures
        return vectors


class HashEmbeddings:
    """Deterministic SHA-256 based vectors; identical text -> identical vector."""

    def __init__(self, dim: int = 384) -> None:
        self.model = "hash"
        self.dimensions = dim
        self.last_batch_failures = 0

    def _vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        # Centred so unrelated texts land near-orthogonal.
        values = [(b / 127.5) - 1.0 for b in digest]
        if len(values) < self.dimensions:
            values = (values * ((self.dimensions // len(values)) + 1))[:self.dimensions]
        else:
            values = values[:self.dimensions]
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]

    async def embed(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(t) for t in texts]

    async def close(self) -> None:
        return None


def build_embeddings(settings: MemorySettings) -> EmbeddingProvider:
    provider = settings.EMBEDDING_PROVIDER
    if provider == "ollama":
        return OllamaEmbeddings(settings.EMBEDDING_MODEL, settings.EMBEDDING_BASE_URL)
    if provider == "openai":
        return OpenAIEmbeddings(
            settings.EMBEDDING_API_KEY or "",
            settings.EMBEDDING_MODEL,
            settings.EMBEDDING_BASE_URL,
        )
    return HashEmbeddings(vector_dims_for_model(settings.EMBEDDING_MODEL))
