from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from research_agent.autonomous.models import Action, Episode, Finding, NewEpisode, Outcome, utc_now
from research_agent.llm.base import CompletionService, EmbeddingService, user_message
from research_agent.llm.json_enforcer import extract_text, parse_bullets
from research_agent.llm.tokens import estimate_tokens

from .budget import select_within_budget
from .scoring import EpisodeScoreWeights, age_in_days, episode_context_score, relevance_rank
from .stores.base import DocumentStore, EpisodeFilter, VectorIndex

logger = logging.getLogger(__name__)

NAMESPACE = "episodes"
CONTEXT_CANDIDATES = 50


@dataclass
class ScoredEpisode:
    episode: Episode
    score: float


@dataclass
class EpisodicContext:
    episodes: List[Episode] = field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False

    def format(self) -> str:
        return "\n\n".join(format_episode(e) for e in self.episodes)


class EpisodeConsolidator(Protocol):
    """Turns a batch of old episodes into replacement summary episodes."""

    async def consolidate(self, episodes: Sequence[Episode]) -> List[NewEpisode]: ...


class NoOpConsolidator:
    async def consolidate(self, episodes: Sequence[Episode]) -> List[NewEpisode]:
        return []


def format_episode(episode: Episode) -> str:
    status = "success" if episode.success else "failure"
    lines = [f"[{episode.timestamp.isoformat()}] {episode.topic} ({status})", episode.summary]
    if episode.findings:
        lines.extend(f"- {f.content}" for f in episode.findings[:5])
    return "\n".join(lines)


class EpisodicManager:
    def __init__(
        self,
        store: DocumentStore,
        vector_index: VectorIndex,
        embeddings: EmbeddingService,
        completion: Optional[CompletionService] = None,
        *,
        consolidator: Optional[EpisodeConsolidator] = None,
        weights: EpisodeScoreWeights = EpisodeScoreWeights(),
    ):
        self._store = store
        self._index = vector_index
        self._embeddings = embeddings
        self._completion = completion
        self._consolidator = consolidator or NoOpConsolidator()
        self._weights = weights

    async def store(self, new: NewEpisode) -> Episode:
        """Persist an episode, then index its summary.

        The document write propagates failures. Embedding or index failures
        are logged and leave the episode retrievable by id.
        """
        data = new.model_dump(exclude={"timestamp"})
        episode = Episode(**data, timestamp=new.timestamp or utc_now())
        await self._store.create_episode(episode)
        await self._index_episode(episode)
        return episode

    async def _index_episode(self, episode: Episode) -> None:
        try:
            vector = await self._embeddings.embed(episode.summary, "document")
            await self._index.upsert(
                NAMESPACE,
                episode.id,
                vector,
                {
                    "session_id": episode.session_id,
                    "topic": episode.topic,
                    "timestamp": episode.timestamp.isoformat(),
                    "success": episode.success,
                },
                episode.summary,
            )
        except Exception as exc:
            logger.warning("Episode %s stored without embedding: %s", episode.id, exc)

    async def create_episode(
        self,
        session_id: str,
        topic: str,
        actions: Sequence[Action],
        outcomes: Sequence[Outcome],
        findings: Sequence[Finding],
        summary: str,
        *,
        tags: Sequence[str] = (),
        feedback: Optional[str] = None,
    ) -> Episode:
        stamps = [a.timestamp for a in actions] + [o.timestamp for o in outcomes]
        duration_ms = (max(stamps) - min(stamps)).total_seconds() * 1000.0 if stamps else 0.0
        return await self.store(
            NewEpisode(
                session_id=session_id,
                topic=topic,
                actions=list(actions),
                outcomes=list(outcomes),
                findings=list(findings),
                duration_ms=duration_ms,
                success=all(o.success for o in outcomes),
                summary=summary,
                tags=list(tags),
                feedback=feedback,
            )
        )

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        return await self._store.get_episode(episode_id)

    async def get_session_episodes(self, session_id: str, limit: Optional[int] = None) -> List[Episode]:
        """Episodes of one session, oldest first; ``limit`` keeps the latest."""
        return await self._store.list_episodes(EpisodeFilter(session_id=session_id, limit=limit))

    async def count_episodes(self) -> int:
        return await self._store.count_episodes()

    async def check_health(self) -> None:
        """Touch the store, the embedder and the index; any failure propagates."""
        await self._store.count_episodes()
        vector = await self._embeddings.embed("health check", "query")
        await self._index.search_by_vector(NAMESPACE, vector, limit=1)

    async def search_similar(
        self,
        query: str,
        *,
        limit: int = 10,
        session_id: Optional[str] = None,
        topic: Optional[str] = None,
        min_similarity: Optional[float] = None,
    ) -> List[ScoredEpisode]:
        where = {}
        if session_id:
            where["session_id"] = session_id
        if topic:
            where["topic"] = topic
        try:
            vector = await self._embeddings.embed(query, "query")
            matches = await self._index.search_by_vector(
                NAMESPACE, vector, limit=limit, where=where or None, min_score=min_similarity
            )
        except Exception as exc:
            logger.warning("Episode search failed for %r: %s", query[:80], exc)
            return []
        out: List[ScoredEpisode] = []
        for match in matches:
            episode = await self._store.get_episode(match.id)
            if episode is None:
                logger.debug("Dropping index hit %s with no stored episode", match.id)
                continue
            out.append(ScoredEpisode(episode=episode, score=match.score))
        return out

    async def build_context(
        self,
        query: str,
        max_tokens: int,
        *,
        session_id: Optional[str] = None,
        topic: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EpisodicContext:
        now = now or utc_now()
        results = await self.search_similar(query, limit=CONTEXT_CANDIDATES, session_id=session_id, topic=topic)
        total = len(results)
        scored = [
            (
                episode_context_score(relevance_rank(i, total), age_in_days(r.episode.timestamp, now), self._weights),
                r.episode,
            )
            for i, r in enumerate(results)
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        selection = select_within_budget(
            [ep for _, ep in scored],
            max_tokens,
            lambda ep: estimate_tokens(format_episode(ep)),
        )
        chronological = sorted(selection.items, key=lambda ep: ep.timestamp)
        return EpisodicContext(episodes=chronological, total_tokens=selection.total_tokens, truncated=selection.truncated)

    async def extract_insights(self, episodes: Sequence[Episode]) -> List[str]:
        if not episodes or self._completion is None:
            return []
        body = "\n\n".join(format_episode(e) for e in episodes)
        prompt = (
            "Review these research episodes and list the key insights as bullet points "
            "(one per line, starting with '- '). Focus on what worked, what failed, and patterns.\n\n"
            f"{body}"
        )
        try:
            response = await self._completion.complete([user_message(prompt)], max_tokens=800, temperature=0.3)
        except Exception as exc:
            logger.warning("Insight extraction failed: %s", exc)
            return []
        return parse_bullets(extract_text(response))

    async def consolidate_old_episodes(
        self,
        older_than_days: int = 7,
        *,
        session_id: Optional[str] = None,
    ) -> List[Episode]:
        cutoff = utc_now() - timedelta(days=older_than_days)
        old = await self._store.list_episodes(EpisodeFilter(session_id=session_id, before=cutoff))
        if not old:
            return []
        replacements = await self._consolidator.consolidate(old)
        stored = [await self.store(new) for new in replacements]
        if stored:
            logger.info("Consolidated %d episodes into %d", len(old), len(stored))
        return stored
