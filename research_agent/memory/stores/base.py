from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from research_agent.autonomous.models import Episode, Fact, Session, SessionStatus, Strategy

Metadata = Dict[str, Any]


@dataclass(frozen=True)
class SessionFilter:
    status: Optional[SessionStatus] = None
    topic: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class EpisodeFilter:
    session_id: Optional[str] = None
    topic: Optional[str] = None
    before: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class FactFilter:
    category: Optional[str] = None
    min_confidence: Optional[float] = None
    min_relevance: Optional[float] = None
    tags: Sequence[str] = ()
    """Matches facts carrying any of these tags."""
    limit: Optional[int] = None


class DocumentStore(Protocol):
    """Typed CRUD over the four primary record kinds.

    ``update_*`` raises ``RecordNotFoundError`` when the id is unknown;
    ``get_*`` returns None instead.
    """

    async def create_session(self, session: Session) -> Session: ...
    async def get_session(self, session_id: str) -> Optional[Session]: ...
    async def update_session(self, session: Session) -> Session: ...
    async def list_sessions(self, filters: SessionFilter = SessionFilter()) -> List[Session]: ...

    async def create_episode(self, episode: Episode) -> Episode: ...
    async def get_episode(self, episode_id: str) -> Optional[Episode]: ...
    async def list_episodes(self, filters: EpisodeFilter = EpisodeFilter()) -> List[Episode]: ...
    async def count_episodes(self) -> int: ...

    async def create_fact(self, fact: Fact) -> Fact: ...
    async def get_fact(self, fact_id: str) -> Optional[Fact]: ...
    async def update_fact(self, fact: Fact) -> Fact: ...
    async def delete_fact(self, fact_id: str) -> bool: ...
    async def list_facts(self, filters: FactFilter = FactFilter()) -> List[Fact]: ...
    async def count_facts(self) -> int: ...

    async def create_strategy(self, strategy: Strategy) -> Strategy: ...
    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]: ...
    async def get_strategy_by_name(self, name: str) -> Optional[Strategy]: ...
    async def update_strategy(self, strategy: Strategy) -> Strategy: ...
    async def list_strategies(self, limit: Optional[int] = None) -> List[Strategy]: ...


@dataclass
class VectorMatch:
    id: str
    score: float
    """Similarity normalized to [0, 1], higher is closer."""
    metadata: Metadata = field(default_factory=dict)
    document: str = ""


@dataclass
class VectorItem:
    id: str
    vector: List[float]
    metadata: Metadata = field(default_factory=dict)
    document: str = ""


class VectorIndex(Protocol):
    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: Optional[Metadata] = None,
        document: str = "",
    ) -> None: ...

    async def upsert_many(self, namespace: str, items: Sequence[VectorItem]) -> None: ...

    async def search_by_vector(
        self,
        namespace: str,
        vector: Sequence[float],
        *,
        limit: int = 10,
        where: Optional[Metadata] = None,
        min_score: Optional[float] = None,
    ) -> List[VectorMatch]: ...

    async def get(self, namespace: str, id: str) -> Optional[VectorItem]: ...
    async def delete(self, namespace: str, id: str) -> bool: ...
    async def count(self, namespace: str) -> int: ...
