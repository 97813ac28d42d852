"""
Memory System - coordinator over session, episodic, semantic and procedural memory.

Builds token-budgeted prompt context from all three memory kinds at once,
records experiences for a session, and runs best-effort maintenance.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from research_agent.autonomous.config import AgentConfig, MemoryConfig
from research_agent.autonomous.models import (
    Action,
    Episode,
    Fact,
    Finding,
    Goal,
    NewStrategy,
    Outcome,
    Session,
    Strategy,
)
from research_agent.llm.base import CompletionService, EmbeddingService
from research_agent.llm.embeddings import create_embedding_service
from research_agent.llm.tokens import estimate_tokens

from .episodic_manager import EpisodeConsolidator, EpisodicContext, EpisodicManager, ScoredEpisode
from .procedural_manager import (
    ProceduralManager,
    ScoredStrategy,
    StrategyRecommendation,
    format_strategies_as_context,
)
from .semantic_manager import KnowledgeContext, ScoredFact, SemanticManager
from .session_manager import SessionManager
from .stores.sqlite_store import SqliteDocumentStore
from .stores.vector_index import SqliteVectorIndex

logger = logging.getLogger(__name__)

MEMORY_KINDS = ("episodic", "semantic", "procedural")


@dataclass
class MemoryContext:
    episodic: EpisodicContext
    semantic: KnowledgeContext
    procedural: List[StrategyRecommendation] = field(default_factory=list)
    budgets: Dict[str, int] = field(default_factory=dict)
    truncated: Dict[str, bool] = field(default_factory=dict)
    total_tokens: int = 0

    def format(self) -> str:
        sections = []
        if self.episodic.episodes:
            sections.append("# Past experience\n" + self.episodic.format())
        if self.semantic.facts:
            sections.append("# Known facts\n" + self.semantic.format())
        if self.procedural:
            sections.append(
                "# Recommended strategies\n" + format_strategies_as_context([r.strategy for r in self.procedural])
            )
        return "\n\n".join(sections)


@dataclass
class ExperienceResult:
    episode: Episode
    facts: List[Fact] = field(default_factory=list)
    should_reflect: bool = False


@dataclass
class MemorySearchResults:
    episodes: List[ScoredEpisode] = field(default_factory=list)
    facts: List[ScoredFact] = field(default_factory=list)
    strategies: List[ScoredStrategy] = field(default_factory=list)


@dataclass
class MaintenanceReport:
    episodes_consolidated: int = 0
    facts_merged: int = 0
    facts_updated: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


def split_budget(max_tokens: int, shares: Tuple[float, float, float]) -> Dict[str, int]:
    return {kind: int(max_tokens * share) for kind, share in zip(MEMORY_KINDS, shares)}


class MemorySystem:
    def __init__(
        self,
        sessions: SessionManager,
        episodic: EpisodicManager,
        semantic: SemanticManager,
        procedural: ProceduralManager,
        config: MemoryConfig = MemoryConfig(),
    ):
        self.sessions = sessions
        self.episodic = episodic
        self.semantic = semantic
        self.procedural = procedural
        self.config = config
        self._action_counts: Dict[str, int] = {}

    @classmethod
    def create(
        cls,
        config: AgentConfig,
        completion: CompletionService,
        *,
        embeddings: Optional[EmbeddingService] = None,
        consolidator: Optional[EpisodeConsolidator] = None,
        db_path: Optional[Path] = None,
    ) -> "MemorySystem":
        """Wire all managers over SQLite stores at ``config.db_path``."""
        path = db_path or config.db_path
        store = SqliteDocumentStore(path)
        index = SqliteVectorIndex(path)
        embeddings = embeddings or create_embedding_service(config.embedding_backend, config.embedding_model)
        return cls(
            SessionManager(store),
            EpisodicManager(store, index, embeddings, completion, consolidator=consolidator),
            SemanticManager(store, index, embeddings, completion, config=config.memory),
            ProceduralManager(store, index, embeddings, completion),
            config.memory,
        )

    # Sessions

    async def start_session(self, topic: str, goal: Goal, *, user_id: Optional[str] = None) -> Session:
        session = await self.sessions.create_session(topic, goal, user_id=user_id)
        self._action_counts[session.id] = 0
        return session

    async def complete_session(self, session_id: str) -> Session:
        session = await self.sessions.complete_session(session_id)
        self._action_counts.pop(session_id, None)
        if self.config.auto_consolidate:
            report = await self.consolidate_memories(session_id=session_id)
            if report.errors:
                logger.warning("Consolidation after session %s had errors: %s", session_id, report.errors)
        return session

    # Context

    async def build_context(
        self,
        query: str,
        *,
        max_tokens: Optional[int] = None,
        shares: Optional[Tuple[float, float, float]] = None,
        session_id: Optional[str] = None,
        available_tools: Optional[Sequence[str]] = None,
    ) -> MemoryContext:
        max_tokens = max_tokens or self.config.max_context_tokens
        shares = shares or (self.config.episodic_share, self.config.semantic_share, self.config.procedural_share)
        budgets = split_budget(max_tokens, shares)
        episodic, semantic, recommendations = await asyncio.gather(
            self.episodic.build_context(query, budgets["episodic"], session_id=session_id),
            self.semantic.build_knowledge_context(query, budgets["semantic"]),
            self.procedural.recommend_strategies(query, available_tools, k=5),
        )
        procedural: List[StrategyRecommendation] = []
        procedural_tokens = 0
        procedural_truncated = False
        for rec in recommendations:
            cost = estimate_tokens(format_strategies_as_context([rec.strategy]))
            if procedural_tokens + cost > budgets["procedural"]:
                procedural_truncated = True
                break
            procedural.append(rec)
            procedural_tokens += cost
        return MemoryContext(
            episodic=episodic,
            semantic=semantic,
            procedural=procedural,
            budgets=budgets,
            truncated={
                "episodic": episodic.truncated,
                "semantic": semantic.truncated,
                "procedural": procedural_truncated,
            },
            total_tokens=episodic.total_tokens + semantic.total_tokens + procedural_tokens,
        )

    async def format_context_for_prompt(self, query: str, **kwargs: Any) -> str:
        context = await self.build_context(query, **kwargs)
        return context.format()

    # Recording

    async def store_experience(
        self,
        session_id: str,
        actions: Sequence[Action],
        outcomes: Sequence[Outcome],
        findings: Sequence[Finding],
        summary: str,
        *,
        tags: Sequence[str] = (),
        feedback: Optional[str] = None,
        extract_facts: bool = False,
    ) -> ExperienceResult:
        """Record one unit of work for an active session.

        Returns whether the session's experience counter has reached the
        reflection interval. The caller decides whether to reflect.
        """
        session = await self.sessions.require_active(session_id)
        episode = await self.episodic.create_episode(
            session.id, session.topic, actions, outcomes, findings, summary, tags=tags, feedback=feedback
        )
        facts: List[Fact] = []
        if extract_facts:
            text = "\n".join([summary] + [f.content for f in findings])
            new_facts = await self.semantic.extract_facts(text, source=f"session:{session.id}", topic=session.topic)
            if new_facts:
                facts = await self.semantic.store_facts(new_facts)
        count = self._action_counts.get(session.id, 0) + 1
        self._action_counts[session.id] = count
        return ExperienceResult(
            episode=episode,
            facts=facts,
            should_reflect=self.config.auto_reflect and count >= self.config.reflection_interval,
        )

    def should_reflect(self, session_id: str) -> bool:
        return self._action_counts.get(session_id, 0) >= self.config.reflection_interval

    def reset_reflection_counter(self, session_id: str) -> None:
        self._action_counts[session_id] = 0

    def action_count(self, session_id: str) -> int:
        return self._action_counts.get(session_id, 0)

    async def store_strategy(self, new: NewStrategy) -> Strategy:
        return await self.procedural.store_strategy(new)

    async def record_strategy_use(self, strategy_id: str, success: bool, duration_ms: float) -> Strategy:
        return await self.procedural.record_strategy_use(strategy_id, success, duration_ms)

    # Retrieval

    async def search_memories(
        self,
        query: str,
        *,
        types: Sequence[str] = MEMORY_KINDS,
        limit: int = 5,
    ) -> MemorySearchResults:
        async def _none() -> list:
            return []

        episodes, facts, strategies = await asyncio.gather(
            self.episodic.search_similar(query, limit=limit) if "episodic" in types else _none(),
            self.semantic.search(query, limit=limit) if "semantic" in types else _none(),
            self.procedural.search_strategies(query, max_results=limit) if "procedural" in types else _none(),
        )
        return MemorySearchResults(episodes=episodes, facts=facts, strategies=strategies)

    async def get_strategy_recommendations(
        self, context: str, available_tools: Optional[Sequence[str]] = None, k: int = 3
    ) -> List[StrategyRecommendation]:
        return await self.procedural.recommend_strategies(context, available_tools, k)

    async def get_session_episodes(self, session_id: str, limit: Optional[int] = None) -> List[Episode]:
        return await self.episodic.get_session_episodes(session_id, limit)

    async def extract_insights(self, session_id: str, n: int = 10) -> List[str]:
        episodes = await self.episodic.get_session_episodes(session_id, limit=n)
        return await self.episodic.extract_insights(episodes)

    async def extract_strategy_from_episodes(self, session_id: str, context: str = "") -> Optional[Strategy]:
        episodes = await self.episodic.get_session_episodes(session_id)
        return await self.procedural.extract_strategy_from_episodes(episodes, context)

    # Maintenance

    async def update_fact_relevance(self) -> int:
        return await self.semantic.update_fact_relevance()

    async def consolidate_memories(self, *, session_id: Optional[str] = None) -> MaintenanceReport:
        report = MaintenanceReport()
        try:
            consolidated = await self.episodic.consolidate_old_episodes(
                self.config.consolidation_threshold_days, session_id=session_id
            )
            report.episodes_consolidated = len(consolidated)
        except Exception as exc:
            logger.error("Episode consolidation failed: %s", exc)
            report.errors["episodic"] = str(exc)
        try:
            report.facts_merged = len(await self.semantic.consolidate_facts())
        except Exception as exc:
            logger.error("Fact consolidation failed: %s", exc)
            report.errors["semantic"] = str(exc)
        return report

    async def perform_maintenance(self) -> MaintenanceReport:
        report = await self.consolidate_memories()
        try:
            report.facts_updated = await self.semantic.update_fact_relevance()
        except Exception as exc:
            logger.error("Fact relevance update failed: %s", exc)
            report.errors["relevance"] = str(exc)
        return report

    async def get_statistics(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        session_stats = await self.sessions.get_statistics()
        fact_stats = await self.semantic.get_stats()
        strategy_stats = await self.procedural.get_strategy_stats()
        stats: Dict[str, Any] = {
            "sessions": session_stats,
            "facts": fact_stats,
            "strategies": strategy_stats,
            "episodes": await self.episodic.count_episodes(),
        }
        if session_id:
            stats["session"] = await self.sessions.get_session_summary(session_id)
            stats["session_episodes"] = len(await self.episodic.get_session_episodes(session_id))
            stats["actions_since_reflection"] = self.action_count(session_id)
        return stats

    async def count_records(self) -> Tuple[int, int]:
        """(episode count, fact count)"""
        return await self.episodic.count_episodes(), await self.semantic.count_facts()

    async def health_check(self) -> Dict[str, bool]:
        probes = {
            "sessions": self.sessions.get_recent_sessions(limit=1),
            "episodic": self.episodic.check_health(),
            "semantic": self.semantic.check_health(),
            "procedural": self.procedural.check_health(),
        }
        results = await asyncio.gather(*probes.values(), return_exceptions=True)
        health: Dict[str, bool] = {}
        for name, result in zip(probes, results):
            if isinstance(result, BaseException):
                logger.error("Health probe %s failed: %s", name, result)
                health[name] = False
            else:
                health[name] = True
        return health
