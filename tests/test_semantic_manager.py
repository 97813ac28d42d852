from __future__ import annotations

import json
import math
from datetime import timedelta

import pytest

from fakes import FailingEmbeddingService, TableEmbeddingService
from research_agent.autonomous.models import Fact, NewFact, utc_now
from research_agent.llm.embeddings import HashEmbeddingService
from research_agent.llm.stub import StubCompletionService
from research_agent.memory.semantic_manager import NAMESPACE, SemanticManager

A = "Perovskite cells reached 26% efficiency"
B = "Perovskite solar cells hit 26 percent efficiency"
C = "Perovskite cells degrade under humidity"

SIMILARITY_TABLE = {
    A: [1.0, 0.0],
    B: [0.92, math.sqrt(1 - 0.92**2)],
    C: [0.8, 0.6],
}


def _manager(doc_store, vector_index, completion=None, embeddings=None) -> SemanticManager:
    return SemanticManager(
        doc_store,
        vector_index,
        embeddings or HashEmbeddingService(),
        completion or StubCompletionService(fail_all=True),
    )


@pytest.mark.asyncio
async def test_extract_facts_from_json_array(doc_store, vector_index) -> None:
    payload = [
        {"content": "Sodium-ion cells avoid lithium", "category": "Chemistry", "confidence": 0.8, "tags": ["na", "na"]},
        {"content": "CATL announced a sodium cell in 2021", "category": "industry", "subcategory": "news"},
    ]
    completion = StubCompletionService(responses=["Here you go:\n" + json.dumps(payload)])
    manager = _manager(doc_store, vector_index, completion)
    facts = await manager.extract_facts("some article text", source="https://example.org/a", topic="batteries")
    assert [f.content for f in facts] == [p["content"] for p in payload]
    assert facts[0].category == "chemistry"
    assert facts[0].tags == ["na"]
    assert facts[1].subcategory == "news"
    assert all(f.source == "https://example.org/a" for f in facts)


@pytest.mark.asyncio
async def test_extract_facts_never_raises(doc_store, vector_index) -> None:
    garbled = _manager(doc_store, vector_index, StubCompletionService(responses=["I could not find any facts."]))
    assert await garbled.extract_facts("text", source="s") == []
    down = _manager(doc_store, vector_index, StubCompletionService(fail_all=True))
    assert await down.extract_facts("text", source="s") == []
    messages = [{"role": "user", "content": "hi"}]
    assert await down.extract_facts_from_messages(messages, topic="t") == []


@pytest.mark.asyncio
async def test_store_facts_batches_and_tolerates_embedding_failure(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index)
    stored = await manager.store_facts([NewFact(content="one fact"), NewFact(content="two facts")])
    assert await vector_index.count(NAMESPACE) == 2
    assert (await manager.get_fact(stored[0].id)).content == "one fact"

    broken = _manager(doc_store, vector_index, embeddings=FailingEmbeddingService())
    lone = await broken.store_fact(NewFact(content="unindexed"))
    assert (await broken.get_fact(lone.id)).model_dump() == lone.model_dump()
    assert await vector_index.count(NAMESPACE) == 2


@pytest.mark.asyncio
async def test_search_applies_category_and_numeric_filters(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index)
    await manager.store_fact(NewFact(content="solar panel efficiency record", category="energy", confidence=0.9))
    await manager.store_fact(NewFact(content="solar panel efficiency claim", category="energy", confidence=0.3))
    await manager.store_fact(NewFact(content="solar panel efficiency history", category="history", confidence=0.9))

    energy = await manager.search("solar panel efficiency", category="energy")
    assert {r.fact.category for r in energy} == {"energy"}
    assert len(energy) == 2
    confident = await manager.search("solar panel efficiency", category="energy", min_confidence=0.5)
    assert [r.fact.content for r in confident] == ["solar panel efficiency record"]


@pytest.mark.asyncio
async def test_find_similar_facts_uses_threshold(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index, embeddings=TableEmbeddingService(table=SIMILARITY_TABLE))
    a = await manager.store_fact(NewFact(content=A, category="energy"))
    b = await manager.store_fact(NewFact(content=B, category="energy"))
    await manager.store_fact(NewFact(content=C, category="energy"))

    similar = await manager.find_similar_facts(a, threshold=0.85)
    assert [s.fact.id for s in similar] == [b.id]
    assert similar[0].score == pytest.approx(0.92)

    assert [s.fact.id for s in await manager.find_similar_facts(a, threshold=0.75)][0] == b.id
    assert len(await manager.find_similar_facts(a, threshold=0.75)) == 2


@pytest.mark.asyncio
async def test_find_similar_facts_stays_within_category(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index, embeddings=TableEmbeddingService(table=SIMILARITY_TABLE))
    a = await manager.store_fact(NewFact(content=A, category="energy"))
    await manager.store_fact(NewFact(content=B, category="policy"))
    assert await manager.find_similar_facts(a, threshold=0.5) == []


@pytest.mark.asyncio
async def test_merge_facts_unions_and_keeps_originals(doc_store, vector_index) -> None:
    completion = StubCompletionService(responses=['{"content": "Perovskite cells reached 26% efficiency (2024)"}'])
    manager = _manager(doc_store, vector_index, completion)
    a = await manager.store_fact(
        NewFact(content=A, source="paper", confidence=0.7, relevance=0.4, tags=["pv", "record"], related_facts=["x"])
    )
    b = await manager.store_fact(NewFact(content=B, source="news", confidence=0.9, relevance=0.8, tags=["record", "news"]))

    merged = await manager.merge_facts(a, b)
    assert merged.content == "Perovskite cells reached 26% efficiency (2024)"
    assert merged.confidence == 0.9
    assert merged.relevance == 0.8
    assert merged.tags == ["pv", "record", "news"]
    assert {a.id, b.id, "x"} <= set(merged.related_facts)
    assert merged.source == "paper; news"
    assert (await manager.get_fact(a.id)).model_dump() == a.model_dump()
    assert (await manager.get_fact(b.id)).model_dump() == b.model_dump()


@pytest.mark.asyncio
async def test_merge_falls_back_to_more_confident_content(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index)
    a = await manager.store_fact(NewFact(content=A, confidence=0.4))
    b = await manager.store_fact(NewFact(content=B, confidence=0.6))
    merged = await manager.merge_facts(a, b)
    assert merged.content == B
    assert set(merged.related_facts) == {a.id, b.id}


@pytest.mark.asyncio
async def test_consolidate_facts_single_greedy_pass(doc_store, vector_index) -> None:
    completion = StubCompletionService(responses=['{"content": "merged perovskite record"}'])
    manager = _manager(doc_store, vector_index, completion, TableEmbeddingService(table=SIMILARITY_TABLE))
    a = await manager.store_fact(NewFact(content=A, category="energy", confidence=0.9))
    b = await manager.store_fact(NewFact(content=B, category="energy", confidence=0.8))
    await manager.store_fact(NewFact(content=C, category="energy", confidence=0.7))

    merged = await manager.consolidate_facts(threshold=0.85)
    assert len(merged) == 1
    assert {a.id, b.id} <= set(merged[0].related_facts)
    assert len(completion.calls) == 1


@pytest.mark.asyncio
async def test_repeated_consolidation_leaves_fact_count_stable(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index, embeddings=TableEmbeddingService(table=SIMILARITY_TABLE))
    a = await manager.store_fact(NewFact(content=A, category="energy", confidence=0.9))
    b = await manager.store_fact(NewFact(content=B, category="energy", confidence=0.8))

    first = await manager.consolidate_facts(threshold=0.85)
    assert len(first) == 1
    assert first[0].content == A
    assert set(first[0].related_facts) == {a.id, b.id}

    counts = []
    for _ in range(2):
        assert await manager.consolidate_facts(threshold=0.85) == []
        counts.append(await manager.count_facts())
    assert counts == [3, 3]


@pytest.mark.asyncio
async def test_consolidation_skips_fact_whose_top_match_is_taken(doc_store, vector_index) -> None:
    def at(degrees: float):
        return [math.cos(math.radians(degrees)), math.sin(math.radians(degrees))]

    table = {"x": at(0), "y": at(5), "z": at(-15), "w": at(-31)}
    manager = _manager(doc_store, vector_index, embeddings=TableEmbeddingService(table=table))
    x = await manager.store_fact(NewFact(content="x", category="energy", confidence=0.9))
    y = await manager.store_fact(NewFact(content="y", category="energy", confidence=0.8))
    await manager.store_fact(NewFact(content="z", category="energy", confidence=0.7))
    await manager.store_fact(NewFact(content="w", category="energy", confidence=0.6))

    merged = await manager.consolidate_facts(threshold=0.85)
    assert [set(m.related_facts) for m in merged] == [{x.id, y.id}]
    assert await manager.count_facts() == 5


@pytest.mark.asyncio
async def test_update_fact_relevance_decays_and_boosts(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index)
    now = utc_now()
    stale = Fact(content="stale", relevance=0.9, access_count=4, last_accessed=now - timedelta(days=30))
    fresh = Fact(content="fresh", relevance=1.0, access_count=0, last_accessed=now)
    await doc_store.create_fact(stale)
    await doc_store.create_fact(fresh)

    assert await manager.update_fact_relevance(now=now) == 1
    updated = await manager.get_fact(stale.id)
    assert updated.relevance == pytest.approx(0.9 * math.exp(-0.5) + 0.04)
    assert (await manager.get_fact(fresh.id)).relevance == 1.0


@pytest.mark.asyncio
async def test_knowledge_context_budget_and_grouping(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index)
    await manager.store_fact(NewFact(content="grid storage uses lithium batteries", category="energy", confidence=0.9))
    await manager.store_fact(NewFact(content="grid storage policy in the EU", category="policy", confidence=0.5))

    context = await manager.build_knowledge_context("grid storage", 10_000)
    assert context.truncated is False
    assert len(context.facts) == 2
    assert context.facts[0].category == "energy"
    formatted = context.format()
    assert "## energy" in formatted and "## policy" in formatted

    tight = await manager.build_knowledge_context("grid storage", 5)
    assert tight.facts == [] and tight.truncated is True


@pytest.mark.asyncio
async def test_access_stats_and_delete(doc_store, vector_index) -> None:
    manager = _manager(doc_store, vector_index)
    fact = await manager.store_fact(NewFact(content="fact one", category="a", tags=["t1", "t2"]))
    await manager.store_fact(NewFact(content="fact two", category="a", tags=["t1"]))

    accessed = await manager.record_access(fact.id)
    assert accessed.access_count == 1
    assert await manager.record_access("missing") is None

    stats = await manager.get_stats()
    assert stats.total == 2
    assert stats.top_categories == [("a", 2)]
    assert stats.top_tags[0] == ("t1", 2)

    assert await manager.delete_fact(fact.id) is True
    assert await manager.get_fact(fact.id) is None
    assert await vector_index.get(NAMESPACE, fact.id) is None
