from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel

from research_agent.autonomous.exceptions import DuplicateStrategyError, MemoryError, RecordNotFoundError
from research_agent.autonomous.jsonio import dumps_list, loads_list
from research_agent.autonomous.models import Episode, Fact, Session, Strategy

from .base import EpisodeFilter, FactFilter, SessionFilter

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

IN_MEMORY = ":memory:"


class SqliteDocumentStore:
    """Document store keeping each record as JSON plus indexed filter columns."""

    def __init__(self, path: Union[Path, str] = IN_MEMORY):
        self.path = path
        if str(path) != IN_MEMORY:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path))
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            logger.debug("Closing document store failed: %s", exc)

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
              id TEXT PRIMARY KEY,
              topic TEXT NOT NULL,
              status TEXT NOT NULL,
              parent_session_id TEXT,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              data_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS episodes (
              id TEXT PRIMARY KEY,
              session_id TEXT NOT NULL,
              topic TEXT NOT NULL,
              success INTEGER NOT NULL,
              timestamp REAL NOT NULL,
              data_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS facts (
              id TEXT PRIMARY KEY,
              category TEXT NOT NULL,
              confidence REAL NOT NULL,
              relevance REAL NOT NULL,
              created_at REAL NOT NULL,
              tags_json TEXT NOT NULL,
              data_json TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS strategies (
              id TEXT PRIMARY KEY,
              strategy_name TEXT NOT NULL UNIQUE,
              success_rate REAL NOT NULL,
              times_used INTEGER NOT NULL,
              data_json TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at DESC);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_episodes_session ON episodes(session_id, timestamp);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_facts_category ON facts(category);")
        self._conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur
        except sqlite3.IntegrityError:
            self._conn.rollback()
            raise
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise MemoryError(f"document store operation failed: {exc}", cause=exc)

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise MemoryError(f"document store query failed: {exc}", cause=exc)

    @staticmethod
    def _hydrate(model_cls: Type[ModelT], rows: List[sqlite3.Row]) -> List[ModelT]:
        return [model_cls.model_validate_json(r["data_json"]) for r in rows]

    def _get_one(self, table: str, model_cls: Type[ModelT], record_id: str) -> Optional[ModelT]:
        rows = self._fetch(f"SELECT data_json FROM {table} WHERE id=?", (record_id,))
        return self._hydrate(model_cls, rows)[0] if rows else None

    def _insert(self, kind: str, sql: str, params: tuple) -> None:
        try:
            self._execute(sql, params)
        except sqlite3.IntegrityError as exc:
            raise MemoryError(f"{kind} already exists", cause=exc)

    def _require_updated(self, cur: sqlite3.Cursor, kind: str, record_id: str) -> None:
        if cur.rowcount == 0:
            raise RecordNotFoundError(kind, record_id)

    # Sessions

    async def create_session(self, session: Session) -> Session:
        self._insert(
            "session",
            """
            INSERT INTO sessions(id, topic, status, parent_session_id, created_at, updated_at, data_json)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.topic,
                session.status,
                session.parent_session_id,
                session.created_at.timestamp(),
                session.updated_at.timestamp(),
                session.model_dump_json(),
            ),
        )
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self._get_one("sessions", Session, session_id)

    async def update_session(self, session: Session) -> Session:
        cur = self._execute(
            "UPDATE sessions SET topic=?, status=?, updated_at=?, data_json=? WHERE id=?",
            (session.topic, session.status, session.updated_at.timestamp(), session.model_dump_json(), session.id),
        )
        self._require_updated(cur, "session", session.id)
        return session

    async def list_sessions(self, filters: SessionFilter = SessionFilter()) -> List[Session]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.status:
            clauses.append("status=?")
            params.append(filters.status)
        if filters.topic:
            clauses.append("LOWER(topic) LIKE ?")
            params.append(f"%{filters.topic.lower()}%")
        if filters.created_after:
            clauses.append("created_at>=?")
            params.append(filters.created_after.timestamp())
        if filters.created_before:
            clauses.append("created_at<=?")
            params.append(filters.created_before.timestamp())
        sql = "SELECT data_json FROM sessions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC"
        if filters.limit is not None:
            sql += " LIMIT ?"
            params.append(filters.limit)
        return self._hydrate(Session, self._fetch(sql, tuple(params)))

    # Episodes

    async def create_episode(self, episode: Episode) -> Episode:
        self._insert(
            "episode",
            "INSERT INTO episodes(id, session_id, topic, success, timestamp, data_json) VALUES(?, ?, ?, ?, ?, ?)",
            (
                episode.id,
                episode.session_id,
                episode.topic,
                int(episode.success),
                episode.timestamp.timestamp(),
                episode.model_dump_json(),
            ),
        )
        return episode

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        return self._get_one("episodes", Episode, episode_id)

    async def list_episodes(self, filters: EpisodeFilter = EpisodeFilter()) -> List[Episode]:
        """Episodes in chronological order; ``limit`` keeps the most recent ones."""
        clauses: List[str] = []
        params: List[Any] = []
        if filters.session_id:
            clauses.append("session_id=?")
            params.append(filters.session_id)
        if filters.topic:
            clauses.append("topic=?")
            params.append(filters.topic)
        if filters.before:
            clauses.append("timestamp<?")
            params.append(filters.before.timestamp())
        sql = "SELECT data_json FROM episodes"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, rowid DESC"
        if filters.limit is not None:
            sql += " LIMIT ?"
            params.append(filters.limit)
        episodes = self._hydrate(Episode, self._fetch(sql, tuple(params)))
        episodes.reverse()
        return episodes

    async def count_episodes(self) -> int:
        return int(self._fetch("SELECT COUNT(*) AS n FROM episodes")[0]["n"])

    # Facts

    async def create_fact(self, fact: Fact) -> Fact:
        self._insert(
            "fact",
            """
            INSERT INTO facts(id, category, confidence, relevance, created_at, tags_json, data_json)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fact.id,
                fact.category,
                fact.confidence,
                fact.relevance,
                fact.created_at.timestamp(),
                dumps_list(fact.tags),
                fact.model_dump_json(),
            ),
        )
        return fact

    async def get_fact(self, fact_id: str) -> Optional[Fact]:
        return self._get_one("facts", Fact, fact_id)

    async def update_fact(self, fact: Fact) -> Fact:
        cur = self._execute(
            "UPDATE facts SET category=?, confidence=?, relevance=?, tags_json=?, data_json=? WHERE id=?",
            (fact.category, fact.confidence, fact.relevance, dumps_list(fact.tags), fact.model_dump_json(), fact.id),
        )
        self._require_updated(cur, "fact", fact.id)
        return fact

    async def delete_fact(self, fact_id: str) -> bool:
        cur = self._execute("DELETE FROM facts WHERE id=?", (fact_id,))
        return cur.rowcount > 0

    async def list_facts(self, filters: FactFilter = FactFilter()) -> List[Fact]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.category:
            clauses.append("category=?")
            params.append(filters.category)
        if filters.min_confidence is not None:
            clauses.append("confidence>=?")
            params.append(filters.min_confidence)
        if filters.min_relevance is not None:
            clauses.append("relevance>=?")
            params.append(filters.min_relevance)
        sql = "SELECT data_json, tags_json FROM facts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY relevance DESC, confidence DESC"
        rows = self._fetch(sql, tuple(params))
        if filters.tags:
            wanted = set(filters.tags)
            rows = [r for r in rows if wanted.intersection(loads_list(r["tags_json"]))]
        if filters.limit is not None:
            rows = rows[: filters.limit]
        return self._hydrate(Fact, rows)

    async def count_facts(self) -> int:
        return int(self._fetch("SELECT COUNT(*) AS n FROM facts")[0]["n"])

    # Strategies

    async def create_strategy(self, strategy: Strategy) -> Strategy:
        try:
            self._execute(
                "INSERT INTO strategies(id, strategy_name, success_rate, times_used, data_json) VALUES(?, ?, ?, ?, ?)",
                (
                    strategy.id,
                    strategy.strategy_name,
                    strategy.success_rate,
                    strategy.times_used,
                    strategy.model_dump_json(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "strategy_name" in str(exc):
                raise DuplicateStrategyError(strategy.strategy_name) from exc
            raise MemoryError("strategy already exists", cause=exc)
        return strategy

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        return self._get_one("strategies", Strategy, strategy_id)

    async def get_strategy_by_name(self, name: str) -> Optional[Strategy]:
        rows = self._fetch("SELECT data_json FROM strategies WHERE strategy_name=?", (name,))
        return self._hydrate(Strategy, rows)[0] if rows else None

    async def update_strategy(self, strategy: Strategy) -> Strategy:
        try:
            cur = self._execute(
                "UPDATE strategies SET strategy_name=?, success_rate=?, times_used=?, data_json=? WHERE id=?",
                (
                    strategy.strategy_name,
                    strategy.success_rate,
                    strategy.times_used,
                    strategy.model_dump_json(),
                    strategy.id,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateStrategyError(strategy.strategy_name) from exc
        self._require_updated(cur, "strategy", strategy.id)
        return strategy

    async def list_strategies(self, limit: Optional[int] = None) -> List[Strategy]:
        sql = "SELECT data_json FROM strategies ORDER BY success_rate DESC, times_used DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return self._hydrate(Strategy, self._fetch(sql, params))
