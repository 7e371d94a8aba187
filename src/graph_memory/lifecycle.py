"""Host lifecycle hooks.

The host runtime owns the event loop and calls these coroutines; each takes
a typed event and returns an optional :class:`HookResult`.  None of them
raises: background paths trade completeness for availability and log
failures instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from graph_memory.engine import DEFAULT_AGENT, MemoryEngine
from graph_memory.errors import GraphMemoryError
from graph_memory.extractor import extract_assistant_messages, extract_user_messages
from graph_memory.gate import passes_assistant_attention_gate, passes_attention_gate
from graph_memory.models import Memory, MemorySource
from graph_memory.sessions import SessionTracker

logger = logging.getLogger(__name__)

AUTO_RECALL_LIMIT = 3
MIN_PROMPT_CHARS = 5
MAX_QUERY_CHARS = 1000
MIN_TOKENS_SINCE_REFRESH = 10_000
ASSISTANT_MIN_IMPORTANCE = 0.7
ASSISTANT_MAX_STORED_IMPORTANCE = 0.4

CORE_MEMORY_FILE = "MEMORY.md"
CORE_MEMORY_PATH = "memory://graph-memory/core-memory"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class TurnCompleteEvent:
    messages: list[dict[str, Any]]
    success: bool = True
    agent_id: Optional[str] = None
    session_key: Optional[str] = None


@dataclass
class TurnStartEvent:
    prompt: str
    agent_id: Optional[str] = None
    session_key: Optional[str] = None


@dataclass
class BootstrapFile:
    name: str
    path: str
    content: str
    missing: bool = False


@dataclass
class BootstrapEvent:
    files: list[BootstrapFile] = field(default_factory=list)
    agent_id: Optional[str] = None
    session_key: Optional[str] = None


@dataclass
class ContextThresholdEvent:
    context_window_tokens: int
    estimated_used_tokens: int
    agent_id: Optional[str] = None
    session_key: Optional[str] = None

    @property
    def usage_percent(self) -> float:
        if self.context_window_tokens <= 0:
            return 0.0
        return self.estimated_used_tokens / self.context_window_tokens * 100


@dataclass
class SessionResetEvent:
    session_key: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class PostCompactionEvent:
    session_key: Optional[str] = None


@dataclass
class HookResult:
    prepend_context: Optional[str] = None
    files: Optional[list[BootstrapFile]] = None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_relevant_memories(results) -> str:
    lines = "\n".join(f"- [{r.category}] {r.text}" for r in results)
    return (
        "<relevant-memories>\n"
        "The following memories may be relevant to this conversation:\n"
        f"{lines}\n"
        "</relevant-memories>"
    )


def render_core_refresh(memories: list[Memory]) -> str:
    lines = "\n".join(f"- {m.text}" for m in memories)
    return (
        "<core-memory-refresh>\n"
        "Reminder of persistent context (you may have seen this earlier, re-stating for recency):\n"
        f"{lines}\n"
        "</core-memory-refresh>"
    )


def render_core_document(memories: list[Memory]) -> str:
    body = "".join(f"- {m.text}\n" for m in memories)
    return "# Core Memory\n\n*Persistent context loaded from long-term memory*\n\n" + body


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class LifecycleHooks:
    """Reactive responder to host lifecycle events.

    Args:
        engine: The memory engine.
        sessions: Session tracker; a default one is created when omitted.
    """

    def __init__(self, engine: MemoryEngine, sessions: SessionTracker | None = None) -> None:
        self.engine = engine
        self.settings = engine.settings
        self.sessions = sessions or SessionTracker()

    # -- auto-capture -------------------------------------------------------

    async def on_turn_complete(self, event: TurnCompleteEvent) -> None:
        if not self.settings.AUTO_CAPTURE:
            return None
        if not event.success or not event.messages:
            logger.debug("Auto-capture skipped: unsuccessful turn or no messages")
            return None
        agent_id = event.agent_id or DEFAULT_AGENT
        stored = 0

        user_texts = extract_user_messages(event.messages)
        retained = [t for t in user_texts if passes_attention_gate(t)]
        for text in retained:
            try:
                if await self.engine.capture(
                    text, MemorySource.AUTO_CAPTURE.value, agent_id, event.session_key,
                ):
                    stored += 1
            except GraphMemoryError as exc:
                logger.debug("Auto-capture item failed: %s", exc)

        assistant_texts = extract_assistant_messages(event.messages)
        retained_assistant = [t for t in assistant_texts if passes_assistant_attention_gate(t)]
        for text in retained_assistant:
            try:
                importance = await self.engine.extractor.rate_importance(text)
                if importance < ASSISTANT_MIN_IMPORTANCE:
                    continue
                if await self.engine.capture(
                    text,
                    MemorySource.AUTO_CAPTURE_ASSISTANT.value,
                    agent_id,
                    event.session_key,
                    importance=importance,
                    max_importance=ASSISTANT_MAX_STORED_IMPORTANCE,
                ):
                    stored += 1
            except GraphMemoryError as exc:
                logger.debug("Assistant auto-capture item failed: %s", exc)

        if stored:
            logger.info("Auto-captured %d memories (attention-gated)", stored)
        elif user_texts or assistant_texts:
            logger.info(
                "Auto-capture ran (0 stored, %d user msgs, %d passed gate, %d assistant msgs, %d passed gate)",
                len(user_texts), len(retained), len(assistant_texts), len(retained_assistant),
            )
        return None

    # -- auto-recall --------------------------------------------------------

    async def on_turn_start(self, event: TurnStartEvent) -> Optional[HookResult]:
        if not self.settings.AUTO_RECALL:
            return None
        prompt = event.prompt or ""
        if len(prompt) < MIN_PROMPT_CHARS:
            return None
        query = prompt[:MAX_QUERY_CHARS]
        try:
            results = await self.engine.search.search(
                query,
                limit=AUTO_RECALL_LIMIT,
                agent_id=event.agent_id or DEFAULT_AGENT,
                use_graph=self.engine.extraction_enabled,
            )
        except GraphMemoryError as exc:
            logger.warning("Auto-recall failed: %s", exc)
            return None

        results = [r for r in results if r.score >= self.settings.AUTO_RECALL_MIN_SCORE]
        state = self.sessions.peek(event.session_key or "")
        if state is not None and state.core_ids:
            results = [r for r in results if r.id not in state.core_ids]
        if not results:
            return None
        logger.info("Injecting %d memories into context", len(results))
        return HookResult(prepend_context=render_relevant_memories(results))

    # -- core memory --------------------------------------------------------

    async def _core_memories(self, agent_id: str) -> list[Memory]:
        return await self.engine.store.list_by_category(
            "core", self.settings.CORE_MEMORY_MAX_ENTRIES, 0, agent_id=agent_id,
        )

    async def on_bootstrap(self, event: BootstrapEvent) -> Optional[HookResult]:
        if not self.settings.CORE_MEMORY_ENABLED:
            return None
        key = event.session_key
        if key:
            existing = self.sessions.peek(key)
            if existing is not None and existing.bootstrapped:
                logger.debug("Session %s already bootstrapped", key)
                return None
        agent_id = event.agent_id or DEFAULT_AGENT
        try:
            memories = await self._core_memories(agent_id)
        except GraphMemoryError as exc:
            logger.warning("Core memory injection failed: %s", exc)
            return None

        state = self.sessions.get(key) if key else None
        if state is not None:
            state.bootstrapped = True
        if not memories:
            logger.debug("No core memories for agent=%s", agent_id)
            return None

        virtual = BootstrapFile(
            name=CORE_MEMORY_FILE, path=CORE_MEMORY_PATH, content=render_core_document(memories),
        )
        files = list(event.files)
        index = next((i for i, f in enumerate(files) if f.name.lower() == CORE_MEMORY_FILE.lower()), None)
        if index is None:
            files.append(virtual)
        else:
            files[index] = virtual
        if state is not None:
            state.core_ids = {m.id for m in memories}
        logger.info(
            "%s %s with %d core memories for agent=%s session=%s",
            "Added" if index is None else "Replaced", CORE_MEMORY_FILE, len(memories), agent_id, key or "unknown",
        )
        return HookResult(files=files)

    async def on_context_threshold(self, event: ContextThresholdEvent) -> Optional[HookResult]:
        threshold = self.settings.CORE_MEMORY_REFRESH_AT_CONTEXT_PERCENT
        if not self.settings.CORE_MEMORY_ENABLED or not threshold:
            return None
        if not event.context_window_tokens or not event.estimated_used_tokens:
            return None
        if event.usage_percent < threshold:
            return None
        key = event.session_key or ""
        state = self.sessions.peek(key)
        last = state.last_refresh_tokens if state is not None else 0
        if event.estimated_used_tokens - last < MIN_TOKENS_SINCE_REFRESH:
            logger.debug("Skipping mid-session refresh (%d tokens since last)", event.estimated_used_tokens - last)
            return None
        try:
            memories = await self._core_memories(event.agent_id or DEFAULT_AGENT)
        except GraphMemoryError as exc:
            logger.warning("Mid-session core refresh failed: %s", exc)
            return None
        if not memories:
            return None
        self.sessions.get(key).last_refresh_tokens = event.estimated_used_tokens
        logger.info("Mid-session core refresh at %.1f%% context (%d memories)", event.usage_percent, len(memories))
        return HookResult(prepend_context=render_core_refresh(memories))

    # -- resets -------------------------------------------------------------

    async def on_session_reset(self, event: SessionResetEvent) -> None:
        key = event.session_key or event.session_id
        if key and self.sessions.reset(key):
            logger.info("Cleared bootstrap/refresh state for session=%s (reset)", key)
        return None

    async def on_post_compaction(self, event: PostCompactionEvent) -> None:
        if event.session_key and self.sessions.reset(event.session_key):
            logger.info("Cleared bootstrap/refresh state for session=%s after compaction", event.session_key)
        return None
