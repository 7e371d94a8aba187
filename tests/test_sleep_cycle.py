"""Tests for the consolidation sleep cycle."""

import asyncio
import math
from unittest.mock import AsyncMock, patch

import pytest

from graph_memory.errors import ProviderError, StoreError, ValidationError
from graph_memory.models import EdgeType, ExtractedEntity, ExtractionResult
from graph_memory.sleep import (
    SleepCycle,
    SleepCycleOptions,
    SleepPhase,
    cluster_pairs,
    decay_score,
    half_life_days,
    pareto_threshold,
    pick_survivor,
    weaker_of,
)

from conftest import NOW, make_memory


def _cycle(store, extractor, clock, sleep=None):
    return SleepCycle(store, extractor, clock=clock, sleep=sleep or AsyncMock())


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_pareto_threshold():
    scores = [0.1, 0.5, 0.9, 0.3, 0.7]
    assert pareto_threshold(scores, 0.2) == 0.9
    assert pareto_threshold(scores, 0.5) == 0.5
    assert pareto_threshold(scores, 1.0) == 0.1
    assert math.isinf(pareto_threshold([], 0.2))
    assert math.isinf(pareto_threshold(scores, 0.0))


def test_decay_half_life_grows_with_importance():
    assert half_life_days(0.0, 30) == 30
    assert half_life_days(1.0, 30) == 60
    assert decay_score(30, 0.0, 30) == pytest.approx(math.exp(-1))
    assert decay_score(0, 0.5, 30) == 1.0
    assert decay_score(30, 1.0, 30) > decay_score(30, 0.0, 30)


def test_cluster_pairs_is_transitive():
    pairs = [("a", "b", 0.96), ("b", "c", 0.97), ("x", "y", 0.99)]
    assert cluster_pairs(pairs) == [["a", "b", "c"], ["x", "y"]]
    assert cluster_pairs([]) == []


def test_pick_survivor_and_weaker_of():
    old = make_memory("old", days_old=10, importance=0.5, id="b")
    new = make_memory("new", days_old=1, importance=0.5, id="a")
    strong = make_memory("strong", days_old=1, importance=0.9, id="c")

    assert pick_survivor([old, new, strong]).id == "c"
    assert pick_survivor([old, new]).id == "b"
    assert weaker_of(strong, old).id == "b"
    assert weaker_of(old, new).id == "b"

    twin_a = make_memory("twin", importance=0.5, id="a")
    twin_b = make_memory("twin", importance=0.5, id="b")
    assert weaker_of(twin_a, twin_b).id == "b"


def test_options_from_settings_ignores_none(settings):
    options = SleepCycleOptions.from_settings(settings, pareto_percentile=None, agent_id="alpha")
    assert options.pareto_percentile == settings.SLEEP_PARETO_PERCENTILE
    assert options.agent_id == "alpha"


@pytest.mark.parametrize("overrides", [
    {"pareto_percentile": 1.5},
    {"dedup_threshold": -0.1},
    {"conflict_threshold": 0.96, "dedup_threshold": 0.95},
    {"decay_base_half_life_days": 0},
    {"extraction_batch_size": 0},
    {"extraction_delay_ms": -1},
])
def test_options_validation(overrides):
    with pytest.raises(ValidationError):
        SleepCycleOptions(**overrides).validate()


# ---------------------------------------------------------------------------
# Full cycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invalid_options_rejected_before_io(store, disabled_extractor, clock):
    await store.store_memory(make_memory("kept as is", [1.0, 0.0, 0.0, 0.0], days_old=500))
    with pytest.raises(ValidationError):
        await _cycle(store, disabled_extractor, clock).run(SleepCycleOptions(pareto_percentile=1.5))
    assert len(store.memories) == 1


@pytest.mark.asyncio
async def test_empty_store_completes_every_phase(store, disabled_extractor, clock):
    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.aborted is False
    assert result.error is None
    assert result.completed_phases == list(SleepPhase)
    assert math.isinf(result.pareto.threshold)


@pytest.mark.asyncio
async def test_dedup_merges_cluster_into_survivor(store, disabled_extractor, clock):
    weak = make_memory("User likes dark roast coffee", [1.0, 0.0, 0.0, 0.0], days_old=3, importance=0.5, is_core=True)
    strong = make_memory("The user likes dark roast coffee", [1.0, 0.25, 0.0, 0.0], days_old=3, importance=0.9)
    mid = make_memory("User likes dark-roast coffee", [1.0, 0.01, 0.0, 0.0], days_old=3, importance=0.6)
    for memory in (weak, strong, mid):
        await store.store_memory(memory)
    await store.apply_extraction(weak.id, ExtractionResult(entities=[ExtractedEntity("Coffee", "concept")]))

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.dedup.clusters_found == 1
    assert result.dedup.memories_merged == 2
    assert set(store.memories) == {strong.id}
    survivor = store.memories[strong.id]
    assert survivor.importance == 0.9
    assert survivor.is_core is True
    assert (strong.id, EdgeType.MENTIONS, "entity:coffee") in store.edges
    assert "coffee" in store.entities


@pytest.mark.asyncio
async def test_dedup_does_not_cross_agents(store, disabled_extractor, clock):
    await store.store_memory(make_memory("Prefers tea", [1.0, 0.0, 0.0, 0.0], agent_id="a"))
    await store.store_memory(make_memory("Prefers tea", [1.0, 0.0, 0.0, 0.0], agent_id="b"))

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.dedup.clusters_found == 0
    assert len(store.memories) == 2


@pytest.mark.asyncio
async def test_conflict_invalidates_weaker_memory(store, disabled_extractor, clock):
    keep = make_memory("I like coffee in the morning every day", [1.0, 0.0, 0.0, 0.0], importance=0.8)
    lose = make_memory("I do not like coffee in the morning every day", [1.0, 0.75, 0.0, 0.0], importance=0.5)
    await store.store_memory(keep)
    await store.store_memory(lose)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.conflict.pairs_found == 1
    assert result.conflict.resolved == 1
    assert result.conflict.invalidated == 1
    # The invalidated memory is pruned in the decay phase.
    assert result.decay.memories_pruned == 1
    assert set(store.memories) == {keep.id}
    assert store.memories[keep.id].invalidated_at is None


@pytest.mark.asyncio
async def test_non_conflicting_pair_linked_as_similar(store, disabled_extractor, clock):
    a = make_memory("The team standup happens at nine every weekday", [1.0, 0.0, 0.0, 0.0])
    b = make_memory("Weekly planning sessions happen on Monday afternoons", [1.0, 0.75, 0.0, 0.0])
    await store.store_memory(a)
    await store.store_memory(b)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.conflict.pairs_found == 1
    assert result.conflict.invalidated == 0
    similar = {(s, d) for s, etype, d in store.edges if etype == EdgeType.SIMILAR_TO}
    assert similar in ({(a.id, b.id)}, {(b.id, a.id)})


@pytest.mark.asyncio
async def test_conflict_judgement_failure_is_counted(store, enabled_extractor, mock_llm, clock):
    mock_llm.complete_json.side_effect = ProviderError("model offline", provider="llm")
    await store.store_memory(make_memory("The deploy window is on Tuesday", [1.0, 0.0, 0.0, 0.0]))
    await store.store_memory(make_memory("The deploy window is not on Tuesday", [1.0, 0.75, 0.0, 0.0]))

    result = await _cycle(store, enabled_extractor, clock).run()

    assert result.conflict.failed == 1
    assert result.conflict.invalidated == 0
    assert result.error is None
    assert all(m.invalidated_at is None for m in store.memories.values())


@pytest.mark.asyncio
async def test_invalidated_memory_cannot_invalidate_another(store, enabled_extractor, mock_llm, clock):
    mock_llm.complete_json.return_value = {"contradicts": True}
    middle = make_memory("The office moves to Berlin in spring", [1.0, 0.0, 0.0, 0.0], id="x", importance=0.5)
    strong = make_memory("The office stays in Hamburg", [1.0, 0.75, 0.0, 0.0], id="y", importance=0.9)
    weak = make_memory("The office never moves to Berlin", [1.0, -0.75, 0.0, 0.0], id="z", importance=0.1)
    for memory in (middle, strong, weak):
        await store.store_memory(memory)

    result = await _cycle(store, enabled_extractor, clock).run()

    assert result.conflict.pairs_found == 2
    assert result.conflict.resolved == 1
    assert result.conflict.invalidated == 1
    assert "x" not in store.memories
    assert store.memories["z"].invalidated_at is None
    assert store.memories["y"].invalidated_at is None


@pytest.mark.asyncio
async def test_pareto_promotes_top_fifth(store, disabled_extractor, clock):
    memories = [make_memory(f"memory number {i}", days_old=30, importance=i / 100) for i in range(100)]
    for memory in memories:
        await store.store_memory(memory)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.pareto.total_memories == 100
    assert result.pareto.core_memories == 20
    assert result.pareto.regular_memories == 80
    assert result.promotion.promoted == 20
    core = {m.id for m in store.memories.values() if m.is_core}
    assert core == {m.id for m in memories[80:]}
    assert all(m.pareto_score is not None for m in store.memories.values())


@pytest.mark.asyncio
async def test_promotion_respects_minimum_age(store, disabled_extractor, clock):
    young = make_memory("A very important and recent decision", days_old=2, importance=0.9)
    await store.store_memory(young)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.pareto.core_memories == 1
    assert result.promotion.candidates_found == 0
    assert store.memories[young.id].is_core is False


@pytest.mark.asyncio
async def test_demotion_of_low_scoring_core(store, disabled_extractor, clock):
    for i in range(9):
        await store.store_memory(make_memory(f"strong memory {i}", days_old=30, importance=0.9))
    weak = make_memory("stale core memory", days_old=30, importance=0.0, is_core=True)
    await store.store_memory(weak)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.demotion.candidates_found == 1
    assert result.demotion.demoted == 1
    assert store.memories[weak.id].is_core is False


@pytest.mark.asyncio
async def test_decay_prunes_old_regular_but_keeps_core(store, disabled_extractor, clock):
    core = make_memory(
        "Long standing core fact", days_old=100, importance=1.0, is_core=True,
        retrieval_count=50, last_retrieved_at=NOW,
    )
    stale = make_memory("Forgotten trivia", days_old=100, importance=0.0)
    await store.store_memory(core)
    await store.store_memory(stale)

    result = await _cycle(store, disabled_extractor, clock).run(
        SleepCycleOptions(decay_base_half_life_days=10),
    )

    assert result.decay.memories_pruned == 1
    assert set(store.memories) == {core.id}
    assert store.memories[core.id].is_core is True
    assert store.memories[core.id].decay_score == pytest.approx(math.exp(-100 / 20))


@pytest.mark.asyncio
async def test_extraction_failures_are_isolated(store, enabled_extractor, mock_llm, clock):
    def fake_complete_json(system, user, max_tokens=1024):
        if "broken" in user:
            raise ProviderError("bad payload", provider="llm")
        return {"category": "fact", "entities": [{"name": "Lisbon", "type": "place"}], "tags": ["travel"]}

    mock_llm.complete_json.side_effect = fake_complete_json
    texts = ["trip one to Lisbon", "trip two to Lisbon", "broken memory", "trip three", "trip four"]
    for i, text in enumerate(texts):
        await store.store_memory(make_memory(text, days_old=(10 - i) / 1440))
    sleep = AsyncMock()

    result = await _cycle(store, enabled_extractor, clock, sleep=sleep).run(
        SleepCycleOptions(extraction_batch_size=2, extraction_delay_ms=250),
    )

    assert result.extraction.total == 5
    assert result.extraction.succeeded == 4
    assert result.extraction.failed == 1
    assert result.error is None
    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.25)
    statuses = {m.text: m.extraction_status for m in store.memories.values()}
    assert statuses["broken memory"] == "failed"
    assert statuses["trip one to Lisbon"] == "completed"
    assert "lisbon" in store.entities


@pytest.mark.asyncio
async def test_malformed_extraction_payload_counts_as_item_failure(store, enabled_extractor, mock_llm, clock):
    def fake_complete_json(system, user, max_tokens=1024):
        if "garbled" in user:
            return {"category": "fact", "entities": 5}
        return {"category": "fact", "entities": [{"name": "Oslo", "type": "place"}]}

    mock_llm.complete_json.side_effect = fake_complete_json
    for i, text in enumerate(["visit to Oslo", "garbled reply", "second Oslo visit"]):
        await store.store_memory(make_memory(text, days_old=(10 - i) / 1440))

    result = await _cycle(store, enabled_extractor, clock).run()

    assert result.error is None
    assert not result.aborted
    assert result.extraction.succeeded == 2
    assert result.extraction.failed == 1
    statuses = {m.text: m.extraction_status for m in store.memories.values()}
    assert statuses["garbled reply"] == "failed"


@pytest.mark.asyncio
async def test_extraction_skipped_when_disabled(store, disabled_extractor, clock):
    memory = make_memory("Pending memory stays pending")
    await store.store_memory(memory)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.extraction.total == 0
    assert store.memories[memory.id].extraction_status == "pending"


@pytest.mark.asyncio
async def test_orphan_cleanup(store, disabled_extractor, clock):
    memory = make_memory("Met Bob at the conference")
    await store.store_memory(memory)
    await store.apply_extraction(
        memory.id, ExtractionResult(entities=[ExtractedEntity("Bob", "person")], tags=["events"]),
    )
    await store.delete_memory(memory.id)

    result = await _cycle(store, disabled_extractor, clock).run()

    assert result.cleanup.entities_removed == 1
    assert result.cleanup.tags_removed == 1
    assert store.entities == {} and store.tags == {}


# ---------------------------------------------------------------------------
# Abort and failure handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_abort_before_start(store, disabled_extractor, clock):
    await store.store_memory(make_memory("ancient", days_old=1000, importance=0.0))
    abort = asyncio.Event()
    abort.set()

    result = await _cycle(store, disabled_extractor, clock).run(SleepCycleOptions(abort=abort))

    assert result.aborted is True
    assert result.completed_phases == []
    assert len(store.memories) == 1


@pytest.mark.asyncio
async def test_abort_between_phases(store, disabled_extractor, clock):
    abort = asyncio.Event()
    seen = []

    def on_phase_start(phase):
        seen.append(phase)
        if phase == SleepPhase.PROMOTION:
            abort.set()

    result = await _cycle(store, disabled_extractor, clock).run(
        SleepCycleOptions(abort=abort, on_phase_start=on_phase_start),
    )

    assert result.aborted is True
    assert result.error is None
    assert result.completed_phases == [
        SleepPhase.DEDUP, SleepPhase.CONFLICT, SleepPhase.PARETO, SleepPhase.PROMOTION,
    ]
    assert seen == result.completed_phases


@pytest.mark.asyncio
async def test_store_failure_aborts_with_partial_result(store, disabled_extractor, clock):
    memory = make_memory("A month old fact worth keeping", days_old=30, importance=0.9)
    await store.store_memory(memory)

    with patch.object(store, "promote_to_core", AsyncMock(side_effect=StoreError("connection lost"))):
        result = await _cycle(store, disabled_extractor, clock).run()

    assert result.aborted is True
    assert result.error == "promotion: connection lost"
    assert result.completed_phases == [SleepPhase.DEDUP, SleepPhase.CONFLICT, SleepPhase.PARETO]
    assert result.pareto.core_memories == 1
    assert store.memories[memory.id].decay_score is None


@pytest.mark.asyncio
async def test_progress_callback_receives_phase_messages(store, disabled_extractor, clock):
    await store.store_memory(make_memory("dup one", [1.0, 0.0, 0.0, 0.0]))
    await store.store_memory(make_memory("dup two", [1.0, 0.0, 0.0, 0.0]))
    messages = []

    await _cycle(store, disabled_extractor, clock).run(
        SleepCycleOptions(on_progress=lambda phase, msg: messages.append((phase, msg))),
    )

    assert any(phase == SleepPhase.DEDUP for phase, _ in messages)
