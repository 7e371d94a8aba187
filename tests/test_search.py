"""Tests for hybrid search and reciprocal rank fusion."""

from datetime import timedelta

import pytest

from graph_memory.models import ExtractedEntity, ExtractionResult, RankedHit
from graph_memory.search import RRF_K, HybridSearch, rrf_fuse

from conftest import NOW, KeyedEmbeddings, make_memory


def _hit(mid, importance=0.5, days_old=0):
    return RankedHit(
        id=mid, text=f"text {mid}", category="fact", importance=importance,
        created_at=NOW - timedelta(days=days_old), score=1.0,
    )


def test_rrf_top_in_every_signal_scores_one():
    results = rrf_fuse([[_hit("a"), _hit("b")], [_hit("a")]], limit=5)
    assert results[0].id == "a"
    assert results[0].score == pytest.approx(1.0)


def test_rrf_both_signals_beat_single_signal():
    vector = [_hit("both"), _hit("vec-only")]
    lexical = [_hit("both"), _hit("lex-only")]
    results = rrf_fuse([vector, lexical], limit=5)
    scores = {r.id: r.score for r in results}
    assert scores["both"] >= scores["vec-only"]
    assert scores["both"] >= scores["lex-only"]
    assert results[0].id == "both"


def test_rrf_formula_and_normalisation():
    results = rrf_fuse([[_hit("x"), _hit("y")], [], []], limit=5)
    expected_y = (1 / (RRF_K + 2)) / (3 / (RRF_K + 1))
    assert {r.id: r.score for r in results}["y"] == pytest.approx(expected_y)


def test_rrf_ties_break_on_importance_then_recency():
    results = rrf_fuse(
        [[_hit("low", importance=0.2)], [_hit("high", importance=0.9)]], limit=5,
    )
    assert [r.id for r in results] == ["high", "low"]

    results = rrf_fuse(
        [[_hit("old", days_old=10)], [_hit("new", days_old=1)]], limit=5,
    )
    assert [r.id for r in results] == ["new", "old"]


def test_rrf_empty_and_limit():
    assert rrf_fuse([[], [], []], limit=5) == []
    many = [_hit(str(i)) for i in range(10)]
    assert len(rrf_fuse([many], limit=3)) == 3


async def _seed(store, embeddings, rows):
    ids = {}
    for key, text, vector in rows:
        embeddings.vectors[text] = vector
        memory = make_memory(text, vector, days_old=1)
        await store.store_memory(memory)
        ids[key] = memory.id
    return ids


@pytest.mark.asyncio
async def test_hybrid_search_ranks_relevant_memory_first(store):
    embeddings = KeyedEmbeddings()
    ids = await _seed(store, embeddings, [
        ("db", "The production database runs on Postgres 16", [1.0, 0.0, 0.0, 0.0]),
        ("pet", "The user has a cat named Miso", [0.0, 1.0, 0.0, 0.0]),
    ])
    embeddings.vectors["which database do we run"] = [0.9, 0.1, 0.0, 0.0]
    search = HybridSearch(store, embeddings)

    results = await search.search("which database do we run", limit=5, use_graph=False)

    assert results[0].id == ids["db"]
    assert all(0.0 <= r.score <= 1.0 for r in results)


@pytest.mark.asyncio
async def test_hybrid_search_respects_agent_scope(store):
    embeddings = KeyedEmbeddings()
    embeddings.vectors["coffee order preference"] = [1.0, 0.0, 0.0, 0.0]
    other = make_memory("Agent two likes coffee orders", [1.0, 0.0, 0.0, 0.0], agent_id="two")
    await store.store_memory(other)

    results = await HybridSearch(store, embeddings).search("coffee order preference", agent_id="default")

    assert results == []


@pytest.mark.asyncio
async def test_graph_signal_surfaces_linked_memory(store):
    embeddings = KeyedEmbeddings()
    ids = await _seed(store, embeddings, [
        ("seed", "Alice leads the payments migration project", [1.0, 0.0, 0.0, 0.0]),
        ("linked", "Quarterly roadmap review happens in March", [-1.0, 0.0, 0.0, 0.0]),
    ])
    shared = ExtractionResult(category="fact", entities=[ExtractedEntity("Payments Migration", "project")])
    await store.apply_extraction(ids["seed"], shared)
    await store.apply_extraction(ids["linked"], shared)
    embeddings.vectors["alice"] = [1.0, 0.0, 0.0, 0.0]
    search = HybridSearch(store, embeddings)

    without_graph = await search.search("alice", limit=5, use_graph=False)
    with_graph = await search.search("alice", limit=5, use_graph=True)

    assert ids["linked"] not in {r.id for r in without_graph}
    assert ids["linked"] in {r.id for r in with_graph}


@pytest.mark.asyncio
async def test_invalidated_memories_are_not_returned(store):
    embeddings = KeyedEmbeddings()
    ids = await _seed(store, embeddings, [
        ("stale", "The office moved to Berlin last spring", [1.0, 0.0, 0.0, 0.0]),
    ])
    await store.update_memory(ids["stale"], {"invalidated_at": NOW})
    embeddings.vectors["office location"] = [1.0, 0.0, 0.0, 0.0]

    assert await HybridSearch(store, embeddings).search("office location") == []


@pytest.mark.asyncio
async def test_blank_query_returns_empty(store, embeddings):
    assert await HybridSearch(store, embeddings).search("   ") == []
    assert embeddings.calls == []
