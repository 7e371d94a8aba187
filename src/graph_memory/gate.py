"""Attention gate -- real-time noise filter for captured utterances.

Rejects obvious noise (greetings, short acks, system markup, code dumps)
without any network call.  Everything that passes is retained as a pending
memory; the sleep cycle decides what matters.  False positives only cost a
little storage, so the gate errs on the side of letting text through.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NamedTuple


class NoisePattern(NamedTuple):
    pattern: re.Pattern[str]
    category: str


_I = re.IGNORECASE

_EMOJI_CLASS = "\U0001F000-\U0001FAFF\u2600-\u27BF\u2300-\u23FF\u2B00-\u2BFF\uFE0F\u200D"

# Ordered: the first match names the rejection category.
NOISE_PATTERNS: tuple[NoisePattern, ...] = (
    NoisePattern(
        re.compile(
            r"^(hi|hey|hello|yo|sup|ok|okay|sure|thanks|thank you|thx|ty|yep|yup|nope|no|yes|yeah"
            r"|cool|nice|great|got it|sounds good|perfect|alright|fine|noted|ack|kk|k)\s*[.!?]*$",
            _I,
        ),
        "greeting",
    ),
    NoisePattern(
        re.compile(
            r"^(ok|okay|yes|yeah|yep|sure|no|nope|alright|right|fine|cool|nice|great)\s+"
            r"(great|good|sure|thanks|please|ok|fine|cool|yeah|perfect|noted|absolutely|definitely|exactly)"
            r"\s*[.!?]*$",
            _I,
        ),
        "affirmation",
    ),
    NoisePattern(
        re.compile(
            r"^(ok[,.]?\s+)?(i('ll|'m|'d|'ve)?\s+)?(just\s+)?"
            r"(need|want|got|have|let|let's|let me|give me|send|do|did|try|check|see|look at|test|take|get|go|use)\s+"
            r"(it|that|this|those|these|them|some|one|the|a|an|me|him|her|us)\s*"
            r"(out|up|now|then|too|again|later|first|here|there|please)?\s*[.!?]*$",
            _I,
        ),
        "deictic",
    ),
    NoisePattern(
        re.compile(
            r"^(ok|okay|yes|yeah|yep|sure|no|nope|right|alright|fine|cool|nice|great|perfect)[,.]?\s+.{0,20}$",
            _I,
        ),
        "short-ack",
    ),
    NoisePattern(
        re.compile(
            r"^(hmm+|huh|haha|ha|lol|lmao|rofl|nah|meh|idk|brb|ttyl|omg|wow|whoa|welp|oops|ooh|aah|ugh|bleh"
            r"|pfft|smh|ikr|tbh|imo|fwiw|np|nvm|nm|wut|wat|wha|heh|tsk|sigh|yay|woo+|boo|dang|darn|geez"
            r"|gosh|sheesh|oof)\s*[.!?]*$",
            _I,
        ),
        "interjection",
    ),
    NoisePattern(re.compile(r"^\S{0,3}$"), "near-empty"),
    NoisePattern(re.compile(rf"^[{_EMOJI_CLASS}\s]+$"), "emoji"),
    NoisePattern(re.compile(r"^<[a-z-]+>[\s\S]*</[a-z-]+>$", _I), "markup"),
    NoisePattern(re.compile(r"^A new session was started via", _I), "session-reset"),
    NoisePattern(re.compile(r"Read HEARTBEAT\.md if it exists", _I), "heartbeat"),
    NoisePattern(re.compile(r"^Pre-compaction memory flush", _I), "pre-compaction"),
    NoisePattern(re.compile(r"^System:\s*\[", _I), "system-timestamp"),
    NoisePattern(re.compile(r"^\[cron:[0-9a-f-]+", _I), "cron"),
    NoisePattern(re.compile(r"^GatewayRestart:\s*\{", _I), "gateway-restart"),
    NoisePattern(
        re.compile(r"^\[\w{3}\s+\d{4}-\d{2}-\d{2}\s.*\]\s*A background task", _I),
        "background-task",
    ),
)

# Markers the engine itself injects into context; capturing them would loop.
INJECTED_CONTEXT_MARKERS: tuple[str, ...] = ("<relevant-memories>", "<core-memory-refresh>")

TOOL_MARKUP: tuple[str, ...] = ("<tool_result>", "<tool_use>", "<function_call>")

MIN_CAPTURE_CHARS = 30
MAX_CAPTURE_CHARS = 2000
MIN_WORD_COUNT = 5
MAX_ASSISTANT_CAPTURE_CHARS = 1000
MIN_ASSISTANT_WORD_COUNT = 10
MAX_EMOJI = 3

_EMOJI_RE = re.compile("[\U0001F300-\U0001F9FF]")
_CODE_FENCE_RE = re.compile(r"```[\s\S]*?```")


def classify_noise(text: str) -> str | None:
    """Return the category of the first noise pattern matching *text*, if any."""
    for entry in NOISE_PATTERNS:
        if entry.pattern.search(text):
            return entry.category
    return None


def emoji_count(text: str) -> int:
    return len(_EMOJI_RE.findall(text))


def code_fence_chars(text: str) -> int:
    return sum(len(m.group(0)) for m in _CODE_FENCE_RE.finditer(text))


@dataclass(frozen=True)
class AttentionGate:
    min_chars: int = MIN_CAPTURE_CHARS
    max_chars: int = MAX_CAPTURE_CHARS
    min_words: int = MIN_WORD_COUNT
    strict: bool = False

    def __call__(self, text: str) -> bool:
        trimmed = text.strip()
        if len(trimmed) < self.min_chars or len(trimmed) > self.max_chars:
            return False
        if len(trimmed.split()) < self.min_words:
            return False
        if self.strict:
            if code_fence_chars(trimmed) > len(trimmed) * 0.5:
                return False
            if any(marker in trimmed for marker in TOOL_MARKUP):
                return False
        if any(marker in trimmed for marker in INJECTED_CONTEXT_MARKERS):
            return False
        if classify_noise(trimmed) is not None:
            return False
        if emoji_count(trimmed) > MAX_EMOJI:
            return False
        return True


USER_GATE = AttentionGate()
ASSISTANT_GATE = AttentionGate(
    max_chars=MAX_ASSISTANT_CAPTURE_CHARS,
    min_words=MIN_ASSISTANT_WORD_COUNT,
    strict=True,
)


def passes_attention_gate(text: str) -> bool:
    return USER_GATE(text)


def passes_assistant_attention_gate(text: str) -> bool:
    return ASSISTANT_GATE(text)


def gate(text: str, role: str = "user") -> bool:
    """Decide whether *text* from *role* is worth capturing.

    Pure and deterministic; ``assistant`` applies the stricter gate, any
    other role the user gate.
    """
    if role == "assistant":
        return ASSISTANT_GATE(text)
    return USER_GATE(text)
