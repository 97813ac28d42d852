from __future__ import annotations

import json
import logging
import math
import sqlite3
import time
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

import numpy as np

from research_agent.autonomous.exceptions import MemoryError
from research_agent.autonomous.jsonio import dumps_list, loads_dict, loads_list

from .base import Metadata, VectorItem, VectorMatch

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


def _norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(v * v for v in vector))


def _matches(metadata: Metadata, where: Optional[Metadata]) -> bool:
    if not where:
        return True
    return all(metadata.get(k) == v for k, v in where.items())


class SqliteVectorIndex:
    """Brute-force cosine index over vectors stored as JSON rows.

    Scores are cosine similarity clamped to [0, 1]. Vectors whose
    dimension differs from the query are skipped.
    """

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
            logger.debug("Closing vector index failed: %s", exc)

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS vectors (
              namespace TEXT NOT NULL,
              id TEXT NOT NULL,
              dim INTEGER NOT NULL,
              vector_json TEXT NOT NULL,
              norm REAL NOT NULL,
              metadata_json TEXT NOT NULL,
              document TEXT NOT NULL,
              updated_at REAL NOT NULL,
              PRIMARY KEY(namespace, id)
            );
            """
        )
        self._conn.commit()

    def _write(self, namespace: str, items: Sequence[VectorItem]) -> None:
        now = time.time()
        rows = [
            (
                namespace,
                item.id,
                len(item.vector),
                dumps_list(float(v) for v in item.vector),
                _norm(item.vector),
                json.dumps(item.metadata or {}, ensure_ascii=False, default=str),
                item.document or "",
                now,
            )
            for item in items
        ]
        try:
            self._conn.executemany(
                """
                INSERT INTO vectors(namespace, id, dim, vector_json, norm, metadata_json, document, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(namespace, id) DO UPDATE SET
                  dim=excluded.dim,
                  vector_json=excluded.vector_json,
                  norm=excluded.norm,
                  metadata_json=excluded.metadata_json,
                  document=excluded.document,
                  updated_at=excluded.updated_at;
                """,
                rows,
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise MemoryError(f"vector upsert failed in {namespace}: {exc}", cause=exc)

    async def upsert(
        self,
        namespace: str,
        id: str,
        vector: Sequence[float],
        metadata: Optional[Metadata] = None,
        document: str = "",
    ) -> None:
        self._write(namespace, [VectorItem(id=id, vector=list(vector), metadata=metadata or {}, document=document)])

    async def upsert_many(self, namespace: str, items: Sequence[VectorItem]) -> None:
        if items:
            self._write(namespace, items)

    async def search_by_vector(
        self,
        namespace: str,
        vector: Sequence[float],
        *,
        limit: int = 10,
        where: Optional[Metadata] = None,
        min_score: Optional[float] = None,
    ) -> List[VectorMatch]:
        if limit <= 0:
            return []
        query = np.asarray(vector, dtype=np.float64)
        q_norm = float(np.linalg.norm(query))
        if q_norm == 0.0:
            return []
        rows = self._conn.execute(
            "SELECT id, vector_json, norm, metadata_json, document FROM vectors WHERE namespace=? AND dim=?",
            (namespace, len(query)),
        ).fetchall()

        ids: List[str] = []
        metas: List[Metadata] = []
        docs: List[str] = []
        vecs: List[List[float]] = []
        norms: List[float] = []
        for r in rows:
            meta = loads_dict(r["metadata_json"])
            if not _matches(meta, where):
                continue
            ids.append(r["id"])
            metas.append(meta)
            docs.append(r["document"])
            vecs.append(loads_list(r["vector_json"]))
            norms.append(float(r["norm"]) or 1.0)
        if not ids:
            return []

        matrix = np.asarray(vecs, dtype=np.float64)
        sims = matrix @ query / (np.asarray(norms) * q_norm)
        scores = np.clip(sims, 0.0, 1.0)
        order = np.argsort(-scores, kind="stable")

        out: List[VectorMatch] = []
        for idx in order:
            score = float(scores[idx])
            if min_score is not None and score < min_score:
                break
            out.append(VectorMatch(id=ids[idx], score=score, metadata=metas[idx], document=docs[idx]))
            if len(out) >= limit:
                break
        return out

    async def get(self, namespace: str, id: str) -> Optional[VectorItem]:
        row = self._conn.execute(
            "SELECT id, vector_json, metadata_json, document FROM vectors WHERE namespace=? AND id=?",
            (namespace, id),
        ).fetchone()
        if row is None:
            return None
        return VectorItem(
            id=row["id"],
            vector=loads_list(row["vector_json"]),
            metadata=loads_dict(row["metadata_json"]),
            document=row["document"],
        )

    async def delete(self, namespace: str, id: str) -> bool:
        cur = self._conn.execute("DELETE FROM vectors WHERE namespace=? AND id=?", (namespace, id))
        self._conn.commit()
        return cur.rowcount > 0

    async def count(self, namespace: str) -> int:
        row: Any = self._conn.execute("SELECT COUNT(*) AS n FROM vectors WHERE namespace=?", (namespace,)).fetchone()
        return int(row["n"])
