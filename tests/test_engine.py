"""Tests for the memory engine operations (recall / store / forget / maintenance)."""

from unittest.mock import AsyncMock, patch

import pytest

from graph_memory.errors import StoreError, ValidationError
from graph_memory.models import MemorySource
from graph_memory.sleep import SleepCycleOptions, SleepPhase

from conftest import NOW, make_memory

SUBSTANTIVE = "The staging cluster lives in eu-west-1 and is rebuilt every Sunday night"


# ---------------------------------------------------------------------------
# store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_store_creates_memory(engine, store):
    outcome = await engine.store_memory(SUBSTANTIVE, importance=0.8, category="fact", session_key="s1")

    assert outcome.action == "created"
    memory = store.memories[outcome.id]
    assert memory.text == SUBSTANTIVE
    assert memory.category == "fact"
    assert memory.importance == 0.8
    assert memory.source == MemorySource.USER.value
    assert memory.session_key == "s1"
    assert memory.created_at == NOW
    # Extraction is disabled in the fixture settings.
    assert memory.extraction_status == "skipped"


@pytest.mark.asyncio
async def test_store_clamps_importance(engine, store):
    outcome = await engine.store_memory(SUBSTANTIVE, importance=1.7)
    assert store.memories[outcome.id].importance == 1.0


@pytest.mark.asyncio
async def test_store_detects_duplicate(engine, store):
    first = await engine.store_memory(SUBSTANTIVE)
    second = await engine.store_memory(SUBSTANTIVE)

    assert second.action == "duplicate"
    assert second.id == first.id
    assert second.existing_text == SUBSTANTIVE
    assert len(store.memories) == 1


@pytest.mark.asyncio
async def test_store_duplicate_check_is_per_agent(engine, store):
    await engine.store_memory(SUBSTANTIVE, agent_id="alpha")
    outcome = await engine.store_memory(SUBSTANTIVE, agent_id="beta")

    assert outcome.action == "created"
    assert len(store.memories) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"text": ""},
    {"text": "   "},
    {"text": SUBSTANTIVE, "category": "gossip"},
    {"text": SUBSTANTIVE, "importance": "high"},
])
async def test_store_validation(engine, store, kwargs):
    with pytest.raises(ValidationError):
        await engine.store_memory(**kwargs)
    assert store.memories == {}


@pytest.mark.asyncio
async def test_store_reports_provider_error(engine, embeddings, store):
    embeddings.fail_on.add(SUBSTANTIVE)

    outcome = await engine.store_memory(SUBSTANTIVE)

    assert outcome.action == "error"
    assert "cannot embed" in outcome.error
    assert store.memories == {}


# ---------------------------------------------------------------------------
# recall
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_recall_finds_and_records_retrieval(engine, store):
    created = await engine.store_memory(SUBSTANTIVE)

    outcome = await engine.recall(SUBSTANTIVE, limit=3)

    assert outcome.action == "found"
    assert outcome.count == 1
    assert outcome.memories[0].id == created.id
    assert outcome.memories[0].score == pytest.approx(1.0)
    stored = store.memories[created.id]
    assert stored.retrieval_count == 1
    assert stored.last_retrieved_at == NOW


@pytest.mark.asyncio
async def test_recall_empty_store(engine):
    outcome = await engine.recall("anything about the roadmap")
    assert outcome.action == "empty"
    assert outcome.memories == []


@pytest.mark.asyncio
async def test_recall_store_failure_is_reported(engine, store):
    with patch.object(store, "vector_search", AsyncMock(side_effect=StoreError("neo4j unavailable"))):
        outcome = await engine.recall("anything about the roadmap")

    assert outcome.action == "error"
    assert "neo4j unavailable" in outcome.error


@pytest.mark.asyncio
async def test_recall_validation(engine):
    with pytest.raises(ValidationError):
        await engine.recall("  ")
    with pytest.raises(ValidationError):
        await engine.recall("roadmap", limit=0)


# ---------------------------------------------------------------------------
# forget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_forget_by_id(engine, store):
    created = await engine.store_memory(SUBSTANTIVE)

    first = await engine.forget(memory_id=created.id)
    second = await engine.forget(memory_id=created.id)

    assert first.action == "deleted"
    assert second.action == "not_found"
    assert store.memories == {}


@pytest.mark.asyncio
async def test_forget_by_query_single_strong_match(engine, store):
    created = await engine.store_memory(SUBSTANTIVE)

    outcome = await engine.forget(query=SUBSTANTIVE)

    assert outcome.action == "deleted"
    assert outcome.id == created.id
    assert outcome.text == SUBSTANTIVE


@pytest.mark.asyncio
async def test_forget_by_query_returns_candidates(engine, store, embeddings):
    embeddings.vectors["the coffee memories"] = [1.0, 0.0, 0.0, 0.0]
    await store.store_memory(make_memory("Likes espresso", [1.0, 0.1, 0.0, 0.0]))
    await store.store_memory(make_memory("Likes flat whites", [1.0, 0.2, 0.0, 0.0]))

    outcome = await engine.forget(query="the coffee memories")

    assert outcome.action == "candidates"
    assert [c.text for c in outcome.candidates] == ["Likes espresso", "Likes flat whites"]
    assert len(store.memories) == 2


@pytest.mark.asyncio
async def test_forget_by_query_without_match(engine, store, embeddings):
    embeddings.vectors["unrelated"] = [0.0, 0.0, 1.0, 0.0]
    await store.store_memory(make_memory("Likes espresso", [1.0, 0.0, 0.0, 0.0]))

    outcome = await engine.forget(query="unrelated")

    assert outcome.action == "not_found"
    assert len(store.memories) == 1


@pytest.mark.asyncio
async def test_forget_requires_id_or_query(engine):
    with pytest.raises(ValidationError):
        await engine.forget()
    with pytest.raises(ValidationError):
        await engine.forget(query="   ")


# ---------------------------------------------------------------------------
# capture
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_capture_rates_and_caps_importance(engine, store):
    memory_id = await engine.capture(
        "I always want deployment summaries in bullet points please",
        source=MemorySource.AUTO_CAPTURE_ASSISTANT.value,
        importance=0.9,
        max_importance=0.4,
    )

    memory = store.memories[memory_id]
    assert memory.importance == 0.4
    assert memory.source == "auto-capture-assistant"


@pytest.mark.asyncio
async def test_capture_uses_heuristic_rating_when_disabled(engine, store):
    memory_id = await engine.capture("Remember that my deadline for the tax filing is April 15")
    assert 0.0 < store.memories[memory_id].importance <= 1.0


@pytest.mark.asyncio
async def test_capture_skips_duplicates(engine, store):
    assert await engine.capture(SUBSTANTIVE) is not None
    assert await engine.capture(SUBSTANTIVE) is None
    assert len(store.memories) == 1


# ---------------------------------------------------------------------------
# sleep cycle & maintenance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_sleep_cycle_uses_settings_defaults(engine, store):
    await store.store_memory(make_memory("A settled decision", days_old=30, importance=0.9))

    result = await engine.run_sleep_cycle()

    assert result.aborted is False
    assert result.completed_phases[-1] == SleepPhase.CLEANUP
    assert result.promotion.promoted == 1


@pytest.mark.asyncio
async def test_run_sleep_cycle_validates_options(engine):
    with pytest.raises(ValidationError):
        await engine.run_sleep_cycle(engine.sleep_options(pareto_percentile=2.0))


@pytest.mark.asyncio
async def test_run_sleep_cycle_store_unavailable(engine, store):
    with patch.object(store, "ensure_initialized", AsyncMock(side_effect=StoreError("refused"))):
        result = await engine.run_sleep_cycle(SleepCycleOptions())

    assert result.aborted is True
    assert result.error == "refused"
    assert result.completed_phases == []


@pytest.mark.asyncio
async def test_start_tolerates_store_failure(engine, store):
    with patch.object(store, "ensure_initialized", AsyncMock(side_effect=StoreError("refused"))):
        assert await engine.start() is False
    assert await engine.start() is True


@pytest.mark.asyncio
async def test_list_memories_and_promote(engine, store):
    memory = make_memory("Pinned instruction", category="instruction")
    await store.store_memory(memory)

    assert await engine.list_memories("core") == []
    assert await engine.promote([memory.id, "missing"]) == 1
    assert [m.id for m in await engine.list_memories("core")] == [memory.id]
    assert [m.id for m in await engine.list_memories("instruction")] == [memory.id]
    with pytest.raises(ValidationError):
        await engine.list_memories("gossip")


@pytest.mark.asyncio
async def test_stats_groups_by_agent_and_category(engine, store):
    await store.store_memory(make_memory("a", category="fact", importance=0.4))
    await store.store_memory(make_memory("b", category="fact", importance=0.8))
    await store.store_memory(make_memory("c", category="preference", agent_id="other"))

    rows = await engine.stats()

    by_key = {(r.agent_id, r.category): r for r in rows}
    assert by_key[("default", "fact")].count == 2
    assert by_key[("default", "fact")].avg_importance == pytest.approx(0.6)
    assert by_key[("other", "preference")].count == 1


@pytest.mark.asyncio
async def test_reindex_reembeds_all_memories(engine, store, embeddings):
    memory = make_memory("Re-embed me", [0.0, 0.0, 0.0, 1.0])
    await store.store_memory(memory)
    embeddings.vectors["Re-embed me"] = [1.0, 0.0, 0.0, 0.0]
    progress = []

    count = await engine.reindex(batch_size=10, on_progress=lambda *args: progress.append(args))

    assert count == 1
    assert store.memories[memory.id].embedding == [1.0, 0.0, 0.0, 0.0]
    assert [p[0] for p in progress] == ["drop-indexes", "memories", "create-indexes"]
    with pytest.raises(ValidationError):
        await engine.reindex(batch_size=0)


@pytest.mark.asyncio
async def test_cleanup_dry_run_and_execute(engine, store):
    noise = make_memory("ok great", source=MemorySource.AUTO_CAPTURE.value)
    keep = make_memory(SUBSTANTIVE, source=MemorySource.AUTO_CAPTURE.value)
    explicit = make_memory("thanks", source=MemorySource.USER.value)
    for memory in (noise, keep, explicit):
        await store.store_memory(memory)

    dry = await engine.cleanup()
    assert dry.scanned == 2
    assert [m.id for m in dry.noise] == [noise.id]
    assert dry.deleted == 0
    assert len(store.memories) == 3

    everything = await engine.cleanup(include_all=True)
    assert {m.id for m in everything.noise} == {noise.id, explicit.id}

    executed = await engine.cleanup(execute=True)
    assert executed.executed is True
    assert executed.deleted == 1
    assert set(store.memories) == {keep.id, explicit.id}


@pytest.mark.asyncio
async def test_close_releases_resources(engine, store):
    await store.ensure_initialized()
    await engine.close()
    assert store.initialized is False
