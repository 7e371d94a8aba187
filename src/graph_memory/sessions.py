"""Per-session bookkeeping for the lifecycle hooks.

Tracks whether core memory was bootstrapped for a session, the token count
at the last mid-session refresh, and which core memory ids were injected.
Entries expire after a TTL; sweeps are throttled and the number of tracked
sessions is bounded (least recently seen evicted first).
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

DEFAULT_TTL_SEC = 24 * 60 * 60
DEFAULT_SWEEP_INTERVAL_SEC = 5 * 60
DEFAULT_MAX_SESSIONS = 1000


@dataclass
class SessionState:
    last_seen: float
    bootstrapped: bool = False
    last_refresh_tokens: int = 0
    core_ids: set[str] = field(default_factory=set)


class SessionTracker:
    """Bounded, TTL-evicting map of session key -> :class:`SessionState`.

    Args:
        clock: Returns seconds (monotonic or wall); injectable for tests.
    """

    def __init__(
        self,
        ttl_sec: float = DEFAULT_TTL_SEC,
        sweep_interval_sec: float = DEFAULT_SWEEP_INTERVAL_SEC,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_sec = ttl_sec
        self.sweep_interval_sec = sweep_interval_sec
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: OrderedDict[str, SessionState] = OrderedDict()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def get(self, key: str) -> SessionState:
        """Return the state for *key*, creating it and marking it seen."""
        now = self._clock()
        self._maybe_sweep(now)
        state = self._sessions.get(key)
        if state is None:
            state = SessionState(last_seen=now)
            self._sessions[key] = state
            while len(self._sessions) > self.max_sessions:
                self._sessions.popitem(last=False)
        else:
            state.last_seen = now
            self._sessions.move_to_end(key)
        return state

    def peek(self, key: str) -> SessionState | None:
        return self._sessions.get(key)

    def reset(self, key: str) -> bool:
        return self._sessions.pop(key, None) is not None

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self.sweep_interval_sec:
            return
        self._last_sweep = now
        expired = [k for k, s in self._sessions.items() if now - s.last_seen > self.ttl_sec]
        for key in expired:
            del self._sessions[key]
