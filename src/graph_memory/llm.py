"""Async chat-completion client used by the sleep cycle.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint (OpenRouter by
default, or a local Ollama at ``http://localhost:11434/v1``).  Used for
entity extraction, importance rating and contradiction judging, always with
JSON-only prompts.

Failed requests are retried only when ``EXTRACTION_MAX_RETRIES`` is set; a
final failure surfaces as a per-item ProviderError.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import aiohttp

from graph_memory.config import ExtractionConfig
from graph_memory.errors import ProviderError

logger = logging.getLogger(__name__)

_CHAT_TIMEOUT = aiohttp.ClientTimeout(total=60)

_HTTP_REFERER: str = "https://github.com/graph-memory"
_X_TITLE: str = "graph-memory"

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_response(content: str) -> Any:
    """Parse a model reply that should be JSON, tolerating markdown fences.

    Raises:
        ProviderError: If no JSON object or array can be recovered.
    """
    cleaned = _FENCE_RE.sub("", content.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # Fall back to the outermost {...} span (models like to add prose).
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            pass
    raise ProviderError(f"model returned non-JSON content: {content[:120]!r}", provider="llm")


class LLMClient:
    """Minimal async client for OpenAI-compatible chat completions.

    Args:
        config: Resolved extraction config (model, base URL, API key).
    """

    def __init__(self, config: ExtractionConfig) -> None:
        self.model = config.model
        self.temperature = config.temperature
        self.max_retries = config.max_retries
        self._base_url = config.base_url.rstrip("/")
        self._api_key = config.api_key
        self._session: aiohttp.ClientSession | None = None

    def _get_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "HTTP-Referer": _HTTP_REFERER,
            "X-Title": _X_TITLE,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._get_headers())
        return self._session

    async def complete(self, system: str, user: str, max_tokens: int = 1024) -> str:
        """Send one system+user exchange and return the assistant text.

        The request is attempted ``1 + max_retries`` times (once by default).

        Raises:
            ProviderError: On connection errors, timeouts, non-2xx status or
                an unexpected payload.
        """
        attempt = 0
        while True:
            try:
                return await self._complete_once(system, user, max_tokens)
            except ProviderError as exc:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning("Chat request failed (attempt %d/%d): %s", attempt, self.max_retries + 1, exc)

    async def _complete_once(self, system: str, user: str, max_tokens: int) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": max_tokens,
        }
        url = f"{self._base_url}/chat/completions"
        session = self._get_session()
        try:
            async with session.post(url, json=payload, timeout=_CHAT_TIMEOUT) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400:
                    error = data.get("error") if isinstance(data, dict) else None
                    detail = error.get("message") if isinstance(error, dict) else (error or resp.reason)
                    raise ProviderError(f"HTTP {resp.status}: {detail}", provider="llm")
        except ProviderError:
            raise
        except (aiohttp.ClientError, OSError, TimeoutError, ValueError) as exc:
            raise ProviderError(f"chat request to {self._base_url} failed: {exc!r}", provider="llm") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("malformed chat completion payload", provider="llm") from exc
        return content or ""

    async def complete_json(self, system: str, user: str, max_tokens: int = 1024) -> Any:
        content = await self.complete(system, user, max_tokens=max_tokens)
        return parse_json_response(content)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    def __repr__(self) -> str:
        return f"LLMClient(model={self.model!r}, base_url={self._base_url!r})"
