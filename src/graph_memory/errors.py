"""Error taxonomy for graph-memory.

Every failure the engine raises derives from :class:`GraphMemoryError` so
host integrations can catch one type on their best-effort paths:

* :class:`ConfigurationError` -- the embedding model and the store disagree
  (e.g. vector dimension mismatch) or credentials are missing.
* :class:`ProviderError` -- an embedding or LLM call failed, timed out, or
  returned a malformed payload.  Always a per-item failure.
* :class:`StoreError` -- the backing store rejected a query or write.  Aborts
  the current phase or operation.
* :class:`ValidationError` -- malformed parameters, rejected before any I/O.
"""

from __future__ import annotations


class GraphMemoryError(Exception):
    """Base exception for all graph-memory errors."""


class ConfigurationError(GraphMemoryError):
    """Raised when the configured model and the store cannot work together."""


class ProviderError(GraphMemoryError):
    """Raised when an embedding or extraction provider call fails.

    Attributes:
        provider: Short backend name (``"openai"``, ``"ollama"``, ``"llm"``).
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}" if provider else message)


class StoreError(GraphMemoryError):
    """Raised when the memory store fails a query or write."""


class ValidationError(GraphMemoryError):
    """Raised when operation parameters are out of range or malformed."""
