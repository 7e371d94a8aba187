"""graph-memory: attention-gated long-term memory with sleep-cycle consolidation."""

from graph_memory.config import MemorySettings, get_settings
from graph_memory.engine import MemoryEngine
from graph_memory.gate import gate
from graph_memory.lifecycle import LifecycleHooks
from graph_memory.search import HybridSearch
from graph_memory.sleep import SleepCycle, SleepCycleOptions, SleepCycleResult
from graph_memory.store import InMemoryStore, MemoryStore

__all__ = [
    "HybridSearch",
    "InMemoryStore",
    "LifecycleHooks",
    "MemoryEngine",
    "MemorySettings",
    "MemoryStore",
    "SleepCycle",
    "SleepCycleOptions",
    "SleepCycleResult",
    "gate",
    "get_settings",
]

__version__ = "0.1.0"
