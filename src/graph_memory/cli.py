"""Operator command line: ``graph-memory <command>``.

Each command builds the engine from settings, runs one operation and prints
a plain-text (or JSON) report.  Exit code 0 on success, 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
from collections import OrderedDict
from typing import Any, List

from pydantic import ValidationError as SettingsValidationError

from graph_memory.config import MEMORY_CATEGORIES, MemorySettings, get_settings
from graph_memory.engine import MemoryEngine
from graph_memory.errors import GraphMemoryError
from graph_memory.sleep import SleepCycleResult, SleepPhase

PHASE_TITLES = {
    SleepPhase.DEDUP: "Phase 1: Deduplication",
    SleepPhase.CONFLICT: "Phase 1b: Conflict Detection",
    SleepPhase.PARETO: "Phase 2: Pareto Scoring",
    SleepPhase.PROMOTION: "Phase 3: Core Promotion",
    SleepPhase.DEMOTION: "Phase 4: Core Demotion",
    SleepPhase.EXTRACTION: "Phase 5: Extraction",
    SleepPhase.DECAY: "Phase 6: Decay & Pruning",
    SleepPhase.CLEANUP: "Phase 7: Orphan Cleanup",
}

_RULE = "-" * 60


def _unit_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number")
    if math.isnan(number) or not 0.0 <= number <= 1.0:
        raise argparse.ArgumentTypeError("must be between 0 and 1")
    return number


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer")
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def _non_negative(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number")
    if math.isnan(number) or number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def _positive_float(value: str) -> float:
    number = _non_negative(value)
    if number == 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="graph-memory", description="Graph-backed long-term memory")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List memories in a category")
    p.add_argument("--category", choices=MEMORY_CATEGORIES, default="core")
    p.add_argument("--limit", type=_positive_int, default=20)
    p.add_argument("--offset", type=int, default=0)
    p.add_argument("--agent", default="default", help="Agent id (default: default)")

    p = sub.add_parser("search", help="Hybrid search over memories")
    p.add_argument("query")
    p.add_argument("--limit", type=_positive_int, default=5)
    p.add_argument("--agent", default="default")

    sub.add_parser("stats", help="Memory counts per agent and category")

    p = sub.add_parser("sleep", help="Run the consolidation sleep cycle")
    p.add_argument("--agent", default=None, help="Agent id (default: all agents)")
    p.add_argument("--dedup-threshold", type=_unit_float)
    p.add_argument("--conflict-threshold", type=_unit_float)
    p.add_argument("--pareto", type=_unit_float, help="Top fraction kept as core (default 0.2)")
    p.add_argument("--promotion-min-age", type=_non_negative, help="Days before promotion (default 7)")
    p.add_argument("--decay-threshold", type=_unit_float)
    p.add_argument("--decay-half-life", type=_positive_float, help="Base half-life in days (default 30)")
    p.add_argument("--batch-size", type=_positive_int)
    p.add_argument("--delay", type=_non_negative, help="Delay between extraction batches in ms")

    p = sub.add_parser("promote", help="Manually promote memories to core")
    p.add_argument("ids", nargs="+")

    p = sub.add_parser("index", help="Re-embed all memories (after changing embedding model)")
    p.add_argument("--batch-size", type=_positive_int, default=50)

    p = sub.add_parser("cleanup", help="Retroactively apply the attention gate")
    p.add_argument("--execute", action="store_true", help="Actually delete (default: dry run)")
    p.add_argument("--all", dest="include_all", action="store_true",
                   help="Include explicitly stored memories (default: auto-capture only)")
    p.add_argument("--agent", default=None)
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_list(engine: MemoryEngine, args: argparse.Namespace) -> int:
    memories = await engine.list_memories(args.category, args.limit, args.offset, agent_id=args.agent)
    output = [
        {"id": m.id, "text": m.text, "category": m.category, "importance": m.importance,
         "is_core": m.is_core, "created_at": m.created_at.isoformat()}
        for m in memories
    ]
    print(json.dumps(output, indent=2))
    return 0


async def _cmd_search(engine: MemoryEngine, args: argparse.Namespace) -> int:
    outcome = await engine.recall(args.query, limit=args.limit, agent_id=args.agent)
    if outcome.action == "error":
        print(f"Error: {outcome.error}")
        return 1
    print(json.dumps([r.to_dict() for r in outcome.memories], indent=2))
    return 0


async def _cmd_stats(engine: MemoryEngine, args: argparse.Namespace) -> int:
    settings = engine.settings
    rows = await engine.stats()
    total = sum(r.count for r in rows)
    print("\nMemory statistics")
    print(_RULE)
    print(f"Total memories: {total}")
    print(f"Neo4j URI:      {settings.NEO4J_URI}")
    print(f"Embedding:      {settings.EMBEDDING_PROVIDER}/{settings.EMBEDDING_MODEL}")
    print(f"Extraction:     {engine.extractor.config.model if engine.extraction_enabled else 'disabled'}")
    by_agent: "OrderedDict[str, list[Any]]" = OrderedDict()
    for row in rows:
        by_agent.setdefault(row.agent_id, []).append(row)
    for agent, agent_rows in by_agent.items():
        print(f"\n{agent} ({sum(r.count for r in agent_rows)} total)")
        print("  Category      Count   Avg Importance")
        for r in agent_rows:
            print(f"  {r.category:<12} {r.count:>5}   {r.avg_importance * 100:>3.0f}%")
    print("")
    return 0


def print_sleep_summary(result: SleepCycleResult) -> None:
    print("\n" + "=" * 60)
    status = "aborted" if result.aborted else "complete"
    print(f"Sleep cycle {status} in {result.duration_sec:.1f}s")
    print(_RULE)
    print(f"  Deduplication:  {result.dedup.clusters_found} clusters -> {result.dedup.memories_merged} merged")
    print(f"  Conflicts:      {result.conflict.pairs_found} pairs, {result.conflict.resolved} resolved, "
          f"{result.conflict.invalidated} invalidated")
    print(f"  Pareto:         {result.pareto.total_memories} total ({result.pareto.core_memories} core, "
          f"{result.pareto.regular_memories} regular)")
    threshold = result.pareto.threshold
    print(f"                  Threshold: {'n/a' if math.isinf(threshold) else f'{threshold:.4f}'}")
    print(f"  Promotion:      {result.promotion.promoted}/{result.promotion.candidates_found} promoted to core")
    print(f"  Demotion:       {result.demotion.demoted}/{result.demotion.candidates_found} demoted from core")
    failed = f" ({result.extraction.failed} failed)" if result.extraction.failed else ""
    print(f"  Extraction:     {result.extraction.succeeded}/{result.extraction.total} extracted{failed}")
    print(f"  Decay/Pruning:  {result.decay.memories_pruned} memories pruned")
    print(f"  Cleanup:        {result.cleanup.entities_removed} entities, "
          f"{result.cleanup.tags_removed} tags removed")
    if result.error:
        print(f"\nError: {result.error}")
    print("")


async def _cmd_sleep(engine: MemoryEngine, args: argparse.Namespace) -> int:
    def on_phase_start(phase: SleepPhase) -> None:
        print(f"\n> {PHASE_TITLES[phase]}")
        print(_RULE)

    def on_progress(_phase: SleepPhase, message: str) -> None:
        print(f"   {message}")

    options = engine.sleep_options(
        agent_id=args.agent,
        dedup_threshold=args.dedup_threshold,
        conflict_threshold=args.conflict_threshold,
        pareto_percentile=args.pareto,
        promotion_min_age_days=args.promotion_min_age,
        decay_retention_threshold=args.decay_threshold,
        decay_base_half_life_days=args.decay_half_life,
        extraction_batch_size=args.batch_size,
        extraction_delay_ms=int(args.delay) if args.delay is not None else None,
    )
    options.on_phase_start = on_phase_start
    options.on_progress = on_progress
    result = await engine.run_sleep_cycle(options)
    print_sleep_summary(result)
    return 1 if result.error else 0


async def _cmd_promote(engine: MemoryEngine, args: argparse.Namespace) -> int:
    promoted = await engine.promote(args.ids)
    print(f"Promoted {promoted}/{len(args.ids)} memories to core.")
    return 0 if promoted else 1


async def _cmd_index(engine: MemoryEngine, args: argparse.Namespace) -> int:
    def on_progress(phase: str, done: int, total: int) -> None:
        if phase == "drop-indexes":
            print("> Dropping old vector index")
        elif phase == "memories":
            print(f"   Memories: {done}/{total}")
        elif phase == "create-indexes":
            print("> Recreating vector index")

    print(f"Model:      {engine.settings.EMBEDDING_PROVIDER}/{engine.embeddings.model}")
    print(f"Dimensions: {engine.embeddings.dimensions}")
    count = await engine.reindex(args.batch_size, on_progress)
    print(f"Reindex complete: {count} memories")
    return 0


async def _cmd_cleanup(engine: MemoryEngine, args: argparse.Namespace) -> int:
    report = await engine.cleanup(execute=args.execute, include_all=args.include_all, agent_id=args.agent)
    if not report.noise:
        print("No low-substance memories found. Everything passes the gate.")
        return 0
    print(f"Found {len(report.noise)}/{report.scanned} memories that fail the attention gate:\n")
    for memory in report.noise:
        preview = memory.text if len(memory.text) <= 80 else memory.text[:77] + "..."
        print(f"  [{memory.source}] {preview!r}")
    if report.executed:
        print(f"\nDeleted {report.deleted} low-substance memories.")
    else:
        print(f"\nDry run: {len(report.noise)} memories would be removed. Re-run with --execute to delete.")
    return 0


COMMANDS = {
    "list": _cmd_list,
    "search": _cmd_search,
    "stats": _cmd_stats,
    "sleep": _cmd_sleep,
    "promote": _cmd_promote,
    "index": _cmd_index,
    "cleanup": _cmd_cleanup,
}


async def run_command(engine: MemoryEngine, args: argparse.Namespace) -> int:
    try:
        return await COMMANDS[args.command](engine, args)
    except GraphMemoryError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        await engine.close()


def main(argv: List[str] | None = None, settings: MemorySettings | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings or get_settings()
        engine = MemoryEngine.from_settings(settings)
    except (SettingsValidationError, GraphMemoryError) as exc:
        print(f"Configuration error: {exc}")
        return 1
    return asyncio.run(run_command(engine, args))


if __name__ == "__main__":
    raise SystemExit(main())
