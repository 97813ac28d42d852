from __future__ import annotations

import pytest

from research_agent.memory.stores.base import VectorItem


@pytest.mark.asyncio
async def test_search_ranks_by_cosine_and_normalizes(vector_index) -> None:
    await vector_index.upsert("ns", "same", [1.0, 0.0], {"kind": "a"}, "same direction")
    await vector_index.upsert("ns", "near", [0.8, 0.6], {"kind": "a"}, "close")
    await vector_index.upsert("ns", "opposite", [-1.0, 0.0], {"kind": "b"}, "opposite")

    matches = await vector_index.search_by_vector("ns", [2.0, 0.0], limit=10)
    assert [m.id for m in matches] == ["same", "near", "opposite"]
    assert matches[0].score == pytest.approx(1.0)
    assert matches[1].score == pytest.approx(0.8)
    assert matches[2].score == 0.0
    assert all(0.0 <= m.score <= 1.0 for m in matches)
    assert matches[0].document == "same direction"


@pytest.mark.asyncio
async def test_search_filters_and_min_score(vector_index) -> None:
    await vector_index.upsert_many(
        "ns",
        [
            VectorItem(id="a", vector=[1.0, 0.0], metadata={"topic": "x"}),
            VectorItem(id="b", vector=[0.6, 0.8], metadata={"topic": "x"}),
            VectorItem(id="c", vector=[1.0, 0.1], metadata={"topic": "y"}),
        ],
    )
    assert [m.id for m in await vector_index.search_by_vector("ns", [1.0, 0.0], where={"topic": "x"})] == ["a", "b"]
    assert [m.id for m in await vector_index.search_by_vector("ns", [1.0, 0.0], min_score=0.9)] == ["a", "c"]
    assert [m.id for m in await vector_index.search_by_vector("ns", [1.0, 0.0], limit=1)] == ["a"]
    assert await vector_index.search_by_vector("other", [1.0, 0.0]) == []
    assert await vector_index.search_by_vector("ns", [0.0, 0.0]) == []


@pytest.mark.asyncio
async def test_upsert_replaces_and_delete_removes(vector_index) -> None:
    await vector_index.upsert("ns", "a", [1.0, 0.0], {"v": 1})
    await vector_index.upsert("ns", "a", [0.0, 1.0], {"v": 2})
    item = await vector_index.get("ns", "a")
    assert item.vector == [0.0, 1.0]
    assert item.metadata == {"v": 2}
    assert await vector_index.count("ns") == 1
    assert await vector_index.delete("ns", "a") is True
    assert await vector_index.get("ns", "a") is None
    assert await vector_index.count("ns") == 0


@pytest.mark.asyncio
async def test_dimension_mismatch_is_skipped(vector_index) -> None:
    await vector_index.upsert("ns", "short", [1.0, 0.0])
    await vector_index.upsert("ns", "long", [1.0, 0.0, 0.0])
    assert [m.id for m in await vector_index.search_by_vector("ns", [1.0, 0.0, 0.0])] == ["long"]
