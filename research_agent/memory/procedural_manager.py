from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from research_agent.autonomous.exceptions import DuplicateStrategyError, RecordNotFoundError
from research_agent.autonomous.models import Episode, NewStrategy, Refinement, Strategy, utc_now
from research_agent.llm.base import CompletionService, EmbeddingService, user_message
from research_agent.llm.json_enforcer import ParseError, extract_text, parse_model
from research_agent.llm.schemas import StrategyPayload

from .episodic_manager import format_episode
from .scoring import StrategyScoreWeights, age_in_days, strategy_score, tool_availability
from .stores.base import DocumentStore, VectorIndex

logger = logging.getLogger(__name__)

NAMESPACE = "strategies"

EXTRACTION_PROMPT = """These research episodes all succeeded. Describe the reusable strategy behind them.
Return ONLY JSON:
{{"strategyName": "...", "description": "...", "applicableContexts": ["..."], "requiredTools": ["..."]}}
Context: {context}

Episodes:
{episodes}
"""


@dataclass
class ScoredStrategy:
    strategy: Strategy
    similarity: float


@dataclass
class StrategyRecommendation:
    strategy: Strategy
    score: float
    similarity: float
    reasoning: str


@dataclass
class StrategyStats:
    total: int = 0
    average_success_rate: float = 0.0
    total_uses: int = 0
    most_used: Optional[str] = None
    most_successful: Optional[str] = None
    underperforming: List[str] = field(default_factory=list)


def strategy_document(strategy: Strategy) -> str:
    parts = [strategy.strategy_name, strategy.description]
    if strategy.applicable_contexts:
        parts.append("Contexts: " + ", ".join(strategy.applicable_contexts))
    return "\n".join(parts)


def format_strategy(strategy: Strategy) -> str:
    tools = ", ".join(strategy.required_tools) or "none"
    return (
        f"- {strategy.strategy_name}: {strategy.description} "
        f"(success {strategy.success_rate:.0%} over {strategy.times_used} uses; tools: {tools})"
    )


def format_strategies_as_context(strategies: Sequence[Strategy]) -> str:
    return "\n".join(format_strategy(s) for s in strategies)


def _recommendation_reasoning(strategy: Strategy, availability: float, similarity: float, missing: List[str]) -> str:
    parts = [f"{strategy.success_rate:.0%} success over {strategy.times_used} uses"]
    if missing:
        parts.append("missing tools: " + ", ".join(missing))
    elif availability == 1.0 and strategy.required_tools:
        parts.append("all required tools available")
    parts.append(f"context similarity {similarity:.2f}")
    return "; ".join(parts)


class ProceduralManager:
    def __init__(
        self,
        store: DocumentStore,
        vector_index: VectorIndex,
        embeddings: EmbeddingService,
        completion: Optional[CompletionService] = None,
        *,
        weights: StrategyScoreWeights = StrategyScoreWeights(),
    ):
        self._store = store
        self._index = vector_index
        self._embeddings = embeddings
        self._completion = completion
        self._weights = weights

    async def _index_strategy(self, strategy: Strategy) -> None:
        document = strategy_document(strategy)
        try:
            vector = await self._embeddings.embed(document, "document")
            await self._index.upsert(
                NAMESPACE,
                strategy.id,
                vector,
                {"strategy_name": strategy.strategy_name, "success_rate": strategy.success_rate},
                document,
            )
        except Exception as exc:
            logger.warning("Strategy %s stored without embedding: %s", strategy.id, exc)

    async def store_strategy(self, new: NewStrategy) -> Strategy:
        if await self._store.get_strategy_by_name(new.strategy_name) is not None:
            raise DuplicateStrategyError(new.strategy_name)
        now = utc_now()
        strategy = Strategy(**new.model_dump(), created_at=now, last_used=now)
        await self._store.create_strategy(strategy)
        await self._index_strategy(strategy)
        return strategy

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        return await self._store.get_strategy(strategy_id)

    async def get_strategy_by_name(self, name: str) -> Optional[Strategy]:
        return await self._store.get_strategy_by_name(name)

    async def check_health(self) -> None:
        """Touch the store, the embedder and the index; any failure propagates."""
        await self._store.list_strategies(limit=1)
        vector = await self._embeddings.embed("health check", "query")
        await self._index.search_by_vector(NAMESPACE, vector, limit=1)

    async def _require(self, strategy_id: str) -> Strategy:
        strategy = await self._store.get_strategy(strategy_id)
        if strategy is None:
            raise RecordNotFoundError("strategy", strategy_id)
        return strategy

    async def search_strategies(
        self,
        context: str,
        *,
        max_results: int = 5,
        min_success_rate: Optional[float] = None,
        required_tools: Optional[Sequence[str]] = None,
        similarity_threshold: Optional[float] = None,
    ) -> List[ScoredStrategy]:
        try:
            vector = await self._embeddings.embed(context, "query")
            matches = await self._index.search_by_vector(
                NAMESPACE, vector, limit=max_results * 2, min_score=similarity_threshold
            )
        except Exception as exc:
            logger.warning("Strategy search failed for %r: %s", context[:80], exc)
            return []
        out: List[ScoredStrategy] = []
        for match in matches:
            strategy = await self._store.get_strategy(match.id)
            if strategy is None:
                continue
            if min_success_rate is not None and strategy.success_rate < min_success_rate:
                continue
            if required_tools and not set(required_tools).issubset(strategy.required_tools):
                continue
            out.append(ScoredStrategy(strategy=strategy, similarity=match.score))
            if len(out) >= max_results:
                break
        return out

    async def recommend_strategies(
        self,
        context: str,
        available_tools: Optional[Sequence[str]] = None,
        k: int = 3,
        *,
        now: Optional[datetime] = None,
    ) -> List[StrategyRecommendation]:
        now = now or utc_now()
        candidates = await self.search_strategies(context, max_results=max(k * 3, 10))
        recs: List[StrategyRecommendation] = []
        for cand in candidates:
            s = cand.strategy
            availability = tool_availability(s.required_tools, available_tools, self._weights.missing_tool_penalty)
            missing = [t for t in s.required_tools if available_tools is not None and t not in available_tools]
            score = strategy_score(
                s.success_rate, s.times_used, availability, age_in_days(s.last_used, now), self._weights
            )
            recs.append(
                StrategyRecommendation(
                    strategy=s,
                    score=score,
                    similarity=cand.similarity,
                    reasoning=_recommendation_reasoning(s, availability, cand.similarity, missing),
                )
            )
        recs.sort(key=lambda r: r.score, reverse=True)
        return recs[:k]

    async def record_strategy_use(self, strategy_id: str, success: bool, duration_ms: float) -> Strategy:
        strategy = await self._require(strategy_id)
        n = strategy.times_used
        strategy.success_rate = (strategy.success_rate * n + (1.0 if success else 0.0)) / (n + 1)
        strategy.average_duration_ms = (strategy.average_duration_ms * n + duration_ms) / (n + 1)
        strategy.times_used = n + 1
        strategy.last_used = utc_now()
        await self._store.update_strategy(strategy)
        return strategy

    async def refine_strategy(
        self,
        strategy_id: str,
        reason: str,
        change: str,
        expected_improvement: str = "",
    ) -> Strategy:
        strategy = await self._require(strategy_id)
        refinement = Refinement(reason=reason, change=change, expected_improvement=expected_improvement)
        strategy.refinements.append(refinement)
        strategy.last_refined = refinement.timestamp
        await self._store.update_strategy(strategy)
        return strategy

    async def _unique_name(self, name: str) -> str:
        candidate = name
        n = 2
        while await self._store.get_strategy_by_name(candidate) is not None:
            candidate = f"{name} ({n})"
            n += 1
        return candidate

    async def extract_strategy_from_episodes(self, episodes: Sequence[Episode], context: str = "") -> Optional[Strategy]:
        """Derive a strategy from the successful episodes; None when there are none."""
        successes = [e for e in episodes if e.success]
        if not successes:
            return None
        if self._completion is None:
            logger.info("No completion service; skipping strategy extraction")
            return None
        prompt = EXTRACTION_PROMPT.format(
            context=context or successes[0].topic,
            episodes="\n\n".join(format_episode(e) for e in successes),
        )
        try:
            response = await self._completion.complete([user_message(prompt)], max_tokens=800, temperature=0.3)
        except Exception as exc:
            logger.warning("Strategy extraction failed: %s", exc)
            return None
        parsed = parse_model(extract_text(response), StrategyPayload)
        if isinstance(parsed, ParseError):
            logger.warning("Strategy extraction returned unusable output: %s", parsed.reason)
            return None
        payload = parsed.value
        durations = [e.duration_ms for e in successes]
        return await self.store_strategy(
            NewStrategy(
                strategy_name=await self._unique_name(payload.strategy_name),
                description=payload.description,
                applicable_contexts=payload.applicable_contexts,
                required_tools=payload.required_tools,
                success_rate=1.0,
                average_duration_ms=sum(durations) / len(durations),
                times_used=len(successes),
            )
        )

    async def compare_strategies(self, first_id: str, second_id: str) -> Dict[str, Any]:
        a = await self._require(first_id)
        b = await self._require(second_id)
        now = utc_now()
        score_a = strategy_score(a.success_rate, a.times_used, 1.0, age_in_days(a.last_used, now), self._weights)
        score_b = strategy_score(b.success_rate, b.times_used, 1.0, age_in_days(b.last_used, now), self._weights)
        return {
            "better": a.strategy_name if score_a >= score_b else b.strategy_name,
            "scores": {a.strategy_name: score_a, b.strategy_name: score_b},
            "success_rate_delta": a.success_rate - b.success_rate,
            "duration_delta_ms": a.average_duration_ms - b.average_duration_ms,
            "shared_tools": sorted(set(a.required_tools) & set(b.required_tools)),
        }

    async def get_strategy_stats(self, *, underperforming_below: float = 0.5, min_uses: int = 3) -> StrategyStats:
        strategies = await self._store.list_strategies()
        if not strategies:
            return StrategyStats()
        most_used = max(strategies, key=lambda s: s.times_used)
        return StrategyStats(
            total=len(strategies),
            average_success_rate=sum(s.success_rate for s in strategies) / len(strategies),
            total_uses=sum(s.times_used for s in strategies),
            most_used=most_used.strategy_name,
            most_successful=strategies[0].strategy_name,
            underperforming=[
                s.strategy_name
                for s in strategies
                if s.times_used >= min_uses and s.success_rate < underperforming_below
            ],
        )
