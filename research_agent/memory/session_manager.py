"""
Session lifecycle management.

Sessions are addressed by id; callers keep the handle themselves and pass
it into every operation. Status moves one way (active to a terminal
status) except for pause and resume.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from research_agent.autonomous.exceptions import (
    InvalidSessionTransitionError,
    NoActiveSessionError,
    SessionNotFoundError,
)
from research_agent.autonomous.models import (
    TERMINAL_STATUSES,
    AgentState,
    Goal,
    Plan,
    Session,
    SessionStatus,
    utc_now,
)

from .stores.base import DocumentStore, SessionFilter

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"paused", "completed", "failed", "cancelled"}),
    "paused": frozenset({"active", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


@dataclass
class SessionStatistics:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    completion_rate: float = 0.0
    average_duration_minutes: float = 0.0
    top_topics: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class SessionSummary:
    session_id: str
    topic: str
    status: str
    iterations: int
    phase: str
    confidence: float
    sources_gathered: int
    facts_extracted: int
    reflections: int
    duration_minutes: float


def initial_state(goal: Goal) -> AgentState:
    return AgentState(goal=goal, plan=Plan(strategy="initial"))


def session_duration_minutes(session: Session, now: Optional[datetime] = None) -> float:
    end = session.completed_at or now or utc_now()
    return max(0.0, (end - session.created_at).total_seconds() / 60.0)


class SessionManager:
    def __init__(self, store: DocumentStore):
        self._store = store

    async def create_session(
        self,
        topic: str,
        goal: Goal,
        *,
        user_id: Optional[str] = None,
        parent_session_id: Optional[str] = None,
    ) -> Session:
        session = Session(
            topic=topic,
            goal=goal,
            state=initial_state(goal),
            user_id=user_id,
            parent_session_id=parent_session_id,
        )
        await self._store.create_session(session)
        logger.info("Created session %s (topic=%s)", session.id, topic)
        return session

    async def create_child_session(self, parent_id: str, topic: str, goal: Goal) -> Session:
        parent = await self.get_session(parent_id)
        return await self.create_session(topic, goal, user_id=parent.user_id, parent_session_id=parent.id)

    async def get_session(self, session_id: str) -> Session:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def require_active(self, session_id: Optional[str]) -> Session:
        if not session_id:
            raise NoActiveSessionError()
        session = await self.get_session(session_id)
        if session.status != "active":
            raise NoActiveSessionError(session_id, status=session.status)
        return session

    async def update_session_state(self, session_id: str, state: AgentState) -> Session:
        session = await self.get_session(session_id)
        if state.goal != session.goal:
            logger.warning("Ignoring goal change for session %s; goals are fixed at creation", session_id)
            state = state.model_copy(update={"goal": session.goal})
        session.state = state
        session.updated_at = utc_now()
        return await self._store.update_session(session)

    async def update_session_status(self, session_id: str, status: SessionStatus) -> Session:
        session = await self.get_session(session_id)
        if status == session.status:
            return session
        if status not in ALLOWED_TRANSITIONS[session.status]:
            raise InvalidSessionTransitionError(session_id, session.status, status)
        now = utc_now()
        session.status = status
        session.updated_at = now
        if status in TERMINAL_STATUSES:
            session.completed_at = now
        logger.info("Session %s -> %s", session_id, status)
        return await self._store.update_session(session)

    async def complete_session(self, session_id: str) -> Session:
        return await self.update_session_status(session_id, "completed")

    async def fail_session(self, session_id: str, reason: str = "") -> Session:
        if reason:
            logger.warning("Session %s failed: %s", session_id, reason)
        return await self.update_session_status(session_id, "failed")

    async def pause_session(self, session_id: str) -> Session:
        return await self.update_session_status(session_id, "paused")

    async def resume_session(self, session_id: str) -> Session:
        return await self.update_session_status(session_id, "active")

    async def cancel_session(self, session_id: str) -> Session:
        return await self.update_session_status(session_id, "cancelled")

    async def list_sessions(self, filters: SessionFilter = SessionFilter()) -> List[Session]:
        return await self._store.list_sessions(filters)

    async def get_recent_sessions(self, limit: int = 10) -> List[Session]:
        return await self._store.list_sessions(SessionFilter(limit=limit))

    async def get_active_sessions(self) -> List[Session]:
        return await self._store.list_sessions(SessionFilter(status="active"))

    async def get_sessions_by_topic(self, topic: str, limit: Optional[int] = None) -> List[Session]:
        return await self._store.list_sessions(SessionFilter(topic=topic, limit=limit))

    async def get_session_summary(self, session_id: str) -> SessionSummary:
        session = await self.get_session(session_id)
        progress = session.state.progress
        return SessionSummary(
            session_id=session.id,
            topic=session.topic,
            status=session.status,
            iterations=session.state.iteration_count,
            phase=progress.current_phase,
            confidence=progress.confidence,
            sources_gathered=progress.sources_gathered,
            facts_extracted=progress.facts_extracted,
            reflections=len(session.state.reflections),
            duration_minutes=session_duration_minutes(session),
        )

    async def get_statistics(self) -> SessionStatistics:
        sessions = await self._store.list_sessions()
        by_status = Counter(s.status for s in sessions)
        finished = by_status["completed"] + by_status["failed"]
        completed = [s for s in sessions if s.status == "completed"]
        durations = [session_duration_minutes(s) for s in completed]
        topics = Counter(s.topic for s in sessions)
        return SessionStatistics(
            total=len(sessions),
            by_status=dict(by_status),
            completion_rate=(by_status["completed"] / finished) if finished else 0.0,
            average_duration_minutes=(sum(durations) / len(durations)) if durations else 0.0,
            top_topics=topics.most_common(10),
        )

    async def cleanup_old_sessions(self, older_than_days: int = 30) -> int:
        """Count finished sessions older than the cutoff.

        Sessions are kept; the count tells an operator how much could be archived.
        """
        cutoff = utc_now() - timedelta(days=older_than_days)
        old = await self._store.list_sessions(SessionFilter(created_before=cutoff))
        count = sum(1 for s in old if s.status in TERMINAL_STATUSES)
        logger.info("%d finished sessions older than %d days", count, older_than_days)
        return count

    async def export_session(self, session_id: str) -> Dict[str, Any]:
        session = await self.get_session(session_id)
        return session.model_dump(mode="json")

    def validate_session(self, session: Session) -> List[str]:
        problems: List[str] = []
        if not session.topic.strip():
            problems.append("topic is empty")
        if not session.goal.description.strip():
            problems.append("goal description is empty")
        if session.state.goal != session.goal:
            problems.append("state goal differs from session goal")
        if session.state.iteration_count < 0:
            problems.append("iteration count is negative")
        progress = session.state.progress
        if progress.steps_total and progress.steps_completed > progress.steps_total:
            problems.append("more steps completed than planned")
        if session.status in TERMINAL_STATUSES and session.completed_at is None:
            problems.append("finished session has no completion time")
        if session.status not in TERMINAL_STATUSES and session.completed_at is not None:
            problems.append("unfinished session has a completion time")
        return problems

    def format_session(self, session: Session) -> str:
        progress = session.state.progress
        lines = [
            f"Session {session.id} [{session.status}]",
            f"Topic: {session.topic}",
            f"Goal: {session.goal.description}",
            f"Phase: {progress.current_phase} (confidence {progress.confidence:.2f})",
            f"Steps: {progress.steps_completed}/{progress.steps_total}",
            f"Sources: {progress.sources_gathered}  Facts: {progress.facts_extracted}",
            f"Iterations: {session.state.iteration_count}  Reflections: {len(session.state.reflections)}",
        ]
        return "\n".join(lines)
