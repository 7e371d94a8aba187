"""Importance rating, entity extraction and contradiction judging.

Extraction only runs inside the sleep cycle; rating runs on the capture path.
Both go through the configured chat model when extraction is enabled and fall
back to cheap deterministic heuristics otherwise.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from graph_memory.config import ExtractionConfig
from graph_memory.errors import ProviderError
from graph_memory.llm import LLMClient
from graph_memory.models import (
    ExtractedEntity,
    ExtractedRelation,
    ExtractionResult,
    clamp_importance,
    normalize_category,
)

logger = logging.getLogger(__name__)

RATING_PROMPT = """Rate how important it is to remember the following statement long-term \
for a personal assistant, on a scale of 1 (trivial chatter) to 10 (critical fact, \
preference or decision). Respond with JSON only: {"score": <1-10>}"""

EXTRACTION_PROMPT = """Extract structured knowledge from the memory below.
Respond with JSON only, using this shape:
{
  "category": "preference" | "fact" | "decision" | "entity" | "instruction" | "other",
  "entities": [{"name": "...", "type": "person|organization|place|project|tool|concept", "description": "..."}],
  "relations": [{"source": "<entity name>", "target": "<entity name>", "type": "<verb_phrase>"}],
  "tags": ["short topical label", "..."]
}
Use at most 10 entities and 5 tags. Use an empty list when nothing applies."""

CONFLICT_PROMPT = """Do these two statements contradict each other (both cannot be true \
at the same time for the same subject)? Respond with JSON only: {"contradicts": true|false}"""

_NEGATIONS = {"not", "never", "no", "none", "cannot", "can't", "don't", "doesn't", "isn't", "won't"}

_IMPORTANT_KEYWORDS = (
    "remember", "always", "never", "prefer", "important", "decided", "decision",
    "my name", "i am", "i'm", "deadline", "must", "allergic", "birthday", "password",
    "goal", "plan", "agreed", "policy",
)


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


def heuristic_importance(text: str) -> float:
    """Deterministic importance estimate from length and keywords."""
    trimmed = text.strip()
    if not trimmed:
        return 0.0
    lowered = trimmed.lower()
    words = len(trimmed.split())
    score = 0.3
    # Longer statements carry more standalone content, saturating at ~60 words.
    score += min(words, 60) / 60 * 0.2
    hits = sum(1 for kw in _IMPORTANT_KEYWORDS if kw in lowered)
    score += min(hits, 3) * 0.1
    if trimmed.endswith("?"):
        score -= 0.1
    return round(clamp_importance(score), 4)


def heuristic_contradiction(s1: str, s2: str) -> float:
    s1_tokens = set(s1.lower().split())
    s2_tokens = set(s2.lower().split())
    has_neg = bool(s1_tokens & _NEGATIONS) ^ bool(s2_tokens & _NEGATIONS)
    overlap = len((s1_tokens & s2_tokens) - _NEGATIONS)
    if has_neg and overlap >= 2:
        return 0.7
    return 0.0


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------

_WRAPPER_PATTERNS = (
    re.compile(r"<relevant-memories>[\s\S]*?</relevant-memories>\s*"),
    re.compile(r"<core-memory-refresh>[\s\S]*?</core-memory-refresh>\s*"),
    # Channel envelope, e.g. "[Discord #general 2026-01-02 10:00] alice: "
    re.compile(
        r"^\[(?:discord|telegram|slack|whatsapp|signal|imessage|matrix|teams)\b[^\]\n]{0,120}\]\s*"
        r"(?:[\w .@-]{1,40}:\s+)?",
        re.IGNORECASE,
    ),
    re.compile(r"\s*\[message_id:\s*[^\]]+\]\s*$"),
)


def strip_message_wrappers(text: str) -> str:
    """Remove channel metadata and injected memory blocks from a message."""
    out = text
    for pattern in _WRAPPER_PATTERNS:
        out = pattern.sub("", out)
    return out.strip()


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "\n".join(p for p in parts if p)
    return ""


def _messages_for_role(messages: Iterable[dict[str, Any]], role: str) -> list[str]:
    out: list[str] = []
    for message in messages:
        if not isinstance(message, dict) or message.get("role") != role:
            continue
        text = strip_message_wrappers(_message_text(message))
        if text:
            out.append(text)
    return out


def extract_user_messages(messages: Iterable[dict[str, Any]]) -> list[str]:
    return _messages_for_role(messages, "user")


def extract_assistant_messages(messages: Iterable[dict[str, Any]]) -> list[str]:
    return _messages_for_role(messages, "assistant")


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


def _list_field(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProviderError(f"extraction field '{key}' is not a list: {value!r}", provider="llm")
    return value


def _parse_extraction(data: Any) -> ExtractionResult:
    if not isinstance(data, dict):
        raise ProviderError("extraction payload is not an object", provider="llm")
    try:
        return _build_extraction(data)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ProviderError(f"malformed extraction payload: {exc}", provider="llm") from exc


def _build_extraction(data: dict[str, Any]) -> ExtractionResult:
    category = normalize_category(data.get("category"))
    if category == "core":
        category = "other"
    entities: list[ExtractedEntity] = []
    seen: set[str] = set()
    for raw in _list_field(data, "entities"):
        if not isinstance(raw, dict) or not str(raw.get("name", "")).strip():
            continue
        name = str(raw["name"]).strip()
        if name.lower() in seen:
            continue
        seen.add(name.lower())
        entities.append(ExtractedEntity(
            name=name,
            type=str(raw.get("type") or "concept").lower(),
            description=raw.get("description") or None,
        ))
    relations = [
        ExtractedRelation(
            source=str(r["source"]).strip(),
            target=str(r["target"]).strip(),
            type=str(r.get("type") or "related_to").lower(),
        )
        for r in _list_field(data, "relations")
        if isinstance(r, dict) and r.get("source") and r.get("target")
    ]
    tags = sorted({str(t).strip().lower() for t in _list_field(data, "tags") if str(t).strip()})
    return ExtractionResult(category=category, entities=entities, relations=relations, tags=tags)


class Extractor:
    """LLM-backed rater/extractor with heuristic fallbacks.

    Args:
        config: Resolved extraction config.  When ``enabled`` is false every
            method uses its heuristic and no network call is made.
        llm: Optional pre-built client (tests inject a mock here).
    """

    def __init__(self, config: ExtractionConfig, llm: LLMClient | None = None) -> None:
        self.config = config
        self._llm = llm

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def _client(self) -> LLMClient:
        if self._llm is None:
            self._llm = LLMClient(self.config)
        return self._llm

    async def rate_importance(self, text: str) -> float:
        """Return an importance score in [0, 1].

        Raises:
            ProviderError: If extraction is enabled and the rating call fails.
        """
        if not self.enabled:
            return heuristic_importance(text)
        data = await self._client().complete_json(RATING_PROMPT, text, max_tokens=32)
        try:
            raw = float(data["score"]) if isinstance(data, dict) else float(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"unparseable rating: {data!r}", provider="llm") from exc
        return clamp_importance(raw / 10.0)

    async def extract(self, text: str) -> ExtractionResult:
        """Extract entities, relations, tags and a category from *text*.

        Raises:
            ProviderError: On any provider or parse failure.
        """
        if not self.enabled:
            raise ProviderError("extraction is disabled", provider="llm")
        data = await self._client().complete_json(EXTRACTION_PROMPT, text)
        return _parse_extraction(data)

    async def judge_conflict(self, a: str, b: str) -> bool:
        if not self.enabled:
            return heuristic_contradiction(a, b) > 0.5
        data = await self._client().complete_json(
            CONFLICT_PROMPT, f"Statement A: {a}\nStatement B: {b}", max_tokens=32,
        )
        if not isinstance(data, dict) or "contradicts" not in data:
            raise ProviderError(f"unparseable conflict verdict: {data!r}", provider="llm")
        verdict = data["contradicts"]
        if isinstance(verdict, str) and verdict.strip().lower() in ("true", "false"):
            return verdict.strip().lower() == "true"
        if not isinstance(verdict, bool):
            raise ProviderError(f"unparseable conflict verdict: {data!r}", provider="llm")
        return verdict

    async def close(self) -> None:
        if self._llm is not None:
            await self._llm.close()
