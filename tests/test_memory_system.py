from __future__ import annotations

import json

import pytest

from fakes import FailingEmbeddingService
from research_agent.autonomous.config import AgentConfig, MemoryConfig
from research_agent.autonomous.exceptions import NoActiveSessionError, SessionNotFoundError
from research_agent.autonomous.models import Action, Finding, Goal, NewFact, NewStrategy, Outcome
from research_agent.llm.stub import StubCompletionService
from research_agent.memory.memory_system import MemorySystem, split_budget

GOAL = Goal(description="Survey grid-scale battery storage", success_criteria=["three sources"])


def _step(success: bool = True):
    action = Action(type="search", tool="web_search", parameters={"query": "grid batteries"})
    outcome = Outcome(action_id=action.id, success=success, duration_ms=120.0)
    return [action], [outcome]


def test_split_budget_truncates_each_share() -> None:
    assert split_budget(1000, (0.4, 0.4, 0.2)) == {"episodic": 400, "semantic": 400, "procedural": 200}
    assert split_budget(9, (0.4, 0.4, 0.2)) == {"episodic": 3, "semantic": 3, "procedural": 1}


@pytest.mark.asyncio
async def test_store_experience_requires_active_session(make_memory) -> None:
    memory = make_memory()
    actions, outcomes = _step()
    with pytest.raises(SessionNotFoundError):
        await memory.store_experience("nope", actions, outcomes, [], "nothing")

    session = await memory.start_session("grid storage", GOAL)
    await memory.sessions.pause_session(session.id)
    with pytest.raises(NoActiveSessionError):
        await memory.store_experience(session.id, actions, outcomes, [], "paused")
    assert await memory.count_records() == (0, 0)


@pytest.mark.asyncio
async def test_reflection_counter_is_per_session(make_memory) -> None:
    memory = make_memory(config=MemoryConfig(reflection_interval=2))
    first = await memory.start_session("grid storage", GOAL)
    second = await memory.start_session("home storage", GOAL)
    actions, outcomes = _step()

    result = await memory.store_experience(first.id, actions, outcomes, [], "searched")
    assert result.should_reflect is False
    result = await memory.store_experience(first.id, actions, outcomes, [], "searched again")
    assert result.should_reflect is True
    assert memory.should_reflect(first.id) is True
    assert memory.should_reflect(second.id) is False

    memory.reset_reflection_counter(first.id)
    assert memory.action_count(first.id) == 0
    assert memory.should_reflect(first.id) is False


@pytest.mark.asyncio
async def test_store_experience_survives_embedding_failure(make_memory) -> None:
    memory = make_memory(embeddings=FailingEmbeddingService())
    session = await memory.start_session("grid storage", GOAL)
    actions, outcomes = _step(success=False)
    result = await memory.store_experience(session.id, actions, outcomes, [], "search timed out")
    assert result.episode.success is False
    assert await memory.count_records() == (1, 0)
    assert (await memory.search_memories("grid")).episodes == []


@pytest.mark.asyncio
async def test_store_experience_can_extract_facts(make_memory) -> None:
    completion = StubCompletionService(
        responses=[json.dumps([{"content": "Flow batteries suit long-duration storage", "category": "energy"}])]
    )
    memory = make_memory(completion=completion)
    session = await memory.start_session("grid storage", GOAL)
    actions, outcomes = _step()
    findings = [Finding(content="Vanadium flow batteries last 20 years", source="https://example.org")]
    result = await memory.store_experience(
        session.id, actions, outcomes, findings, "read a review", tags=["review"], extract_facts=True
    )
    assert [f.content for f in result.facts] == ["Flow batteries suit long-duration storage"]
    assert result.facts[0].source == f"session:{session.id}"
    assert result.episode.tags == ["review"]
    assert "Vanadium flow batteries" in completion.prompts[0]


@pytest.mark.asyncio
async def test_build_context_respects_budget(make_memory) -> None:
    memory = make_memory()
    session = await memory.start_session("grid storage", GOAL)
    actions, outcomes = _step()
    for i in range(3):
        await memory.store_experience(session.id, actions, outcomes, [], f"grid battery search round {i}")
    await memory.semantic.store_fact(NewFact(content="grid batteries smooth solar output", category="energy"))
    await memory.store_strategy(NewStrategy(strategy_name="grid-review", description="grid battery reviews"))

    roomy = await memory.build_context("grid battery", max_tokens=4000)
    assert roomy.budgets == {"episodic": 1600, "semantic": 1600, "procedural": 800}
    assert roomy.truncated == {"episodic": False, "semantic": False, "procedural": False}
    assert len(roomy.episodic.episodes) == 3
    assert len(roomy.semantic.facts) == 1
    assert [r.strategy.strategy_name for r in roomy.procedural] == ["grid-review"]
    formatted = roomy.format()
    assert "# Past experience" in formatted
    assert "# Known facts" in formatted
    assert "# Recommended strategies" in formatted

    tight = await memory.build_context("grid battery", max_tokens=10)
    assert tight.total_tokens <= 10
    assert tight.truncated == {"episodic": True, "semantic": True, "procedural": True}
    assert tight.format() == ""


@pytest.mark.asyncio
async def test_complete_session_clears_counter(make_memory) -> None:
    memory = make_memory()
    session = await memory.start_session("grid storage", GOAL)
    actions, outcomes = _step()
    await memory.store_experience(session.id, actions, outcomes, [], "searched")
    completed = await memory.complete_session(session.id)
    assert completed.status == "completed"
    assert completed.completed_at is not None
    assert memory.action_count(session.id) == 0


@pytest.mark.asyncio
async def test_maintenance_isolates_failures(make_memory, monkeypatch) -> None:
    memory = make_memory()

    async def boom(*args, **kwargs):
        raise RuntimeError("index corrupted")

    monkeypatch.setattr(memory.semantic, "consolidate_facts", boom)
    report = await memory.perform_maintenance()
    assert report.errors == {"semantic": "index corrupted"}
    assert report.episodes_consolidated == 0
    assert report.facts_updated == 0


@pytest.mark.asyncio
async def test_health_check_reports_each_component(make_memory, doc_store, monkeypatch) -> None:
    memory = make_memory()
    assert await memory.health_check() == {
        "sessions": True,
        "episodic": True,
        "semantic": True,
        "procedural": True,
    }

    async def boom(*args, **kwargs):
        raise RuntimeError("table missing")

    monkeypatch.setattr(doc_store, "list_strategies", boom)
    health = await memory.health_check()
    assert health["procedural"] is False
    assert health["sessions"] is True
    assert health["episodic"] is True


@pytest.mark.asyncio
async def test_health_check_sees_embedding_and_index_outages(make_memory, vector_index, monkeypatch) -> None:
    memory = make_memory(embeddings=FailingEmbeddingService())
    assert await memory.health_check() == {
        "sessions": True,
        "episodic": False,
        "semantic": False,
        "procedural": False,
    }

    async def index_down(*args, **kwargs):
        raise RuntimeError("vector index unavailable")

    memory = make_memory()
    monkeypatch.setattr(vector_index, "search_by_vector", index_down)
    health = await memory.health_check()
    assert health["episodic"] is False
    assert health["sessions"] is True


@pytest.mark.asyncio
async def test_statistics_include_session_details(make_memory) -> None:
    memory = make_memory()
    session = await memory.start_session("grid storage", GOAL)
    actions, outcomes = _step()
    await memory.store_experience(session.id, actions, outcomes, [], "searched")
    stats = await memory.get_statistics(session.id)
    assert stats["episodes"] == 1
    assert stats["session_episodes"] == 1
    assert stats["actions_since_reflection"] == 1
    assert stats["sessions"].total == 1


def test_create_wires_sqlite_stores(tmp_path) -> None:
    config = AgentConfig(db_path=tmp_path / "memory.sqlite3")
    memory = MemorySystem.create(config, StubCompletionService(fail_all=True))
    assert memory.config == config.memory
    assert (tmp_path / "memory.sqlite3").exists()
