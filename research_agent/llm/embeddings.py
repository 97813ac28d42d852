from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from typing import Any, List, Optional, Sequence

import numpy as np

from research_agent.autonomous.exceptions import ConfigurationError, DependencyError

from .base import EmbeddingKind, EmbeddingService
from .errors import EmbeddingError

logger = logging.getLogger(__name__)

HASH_EMBED_DIM = 256
DEFAULT_SENTENCE_MODEL = "all-MiniLM-L6-v2"


def _tokenize(text: str) -> List[str]:
    return re.findall(r"[a-z0-9]+", (text or "").lower())


def hash_embed(text: str, dim: int = HASH_EMBED_DIM) -> List[float]:
    """Bag-of-words vector with tokens bucketed by md5 hash."""
    vec = [0.0] * dim
    for tok in _tokenize(text):
        h = int(hashlib.md5(tok.encode("utf-8", errors="replace")).hexdigest(), 16)
        vec[h % dim] += 1.0
    return vec


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is all zeros or lengths differ."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class HashEmbeddingService:
    """Deterministic, dependency-free embeddings for tests and offline runs."""

    def __init__(self, dim: int = HASH_EMBED_DIM):
        self.dim = dim
        self.model = f"hash{dim}"

    async def embed(self, text: str, kind: EmbeddingKind = "document") -> List[float]:
        return hash_embed(text, self.dim)

    async def embed_batch(self, texts: Sequence[str], kind: EmbeddingKind = "document") -> List[List[float]]:
        return [hash_embed(t, self.dim) for t in texts]

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)


class SentenceTransformerEmbeddingService:
    """Embeddings from a sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = DEFAULT_SENTENCE_MODEL):
        self.model = model_name
        self._model: Any = None

    def _load(self) -> Any:
        if self._model is not None:
            return self._model
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise DependencyError("sentence-transformers not installed", cause=exc)
        try:
            self._model = SentenceTransformer(self.model)
        except (OSError, RuntimeError, ValueError) as exc:
            logger.warning("SentenceTransformer model load failed for '%s': %s", self.model, exc)
            raise EmbeddingError(f"could not load embedding model {self.model}") from exc
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load()
        vecs = model.encode(texts, normalize_embeddings=False)
        return [np.asarray(v, dtype=np.float64).tolist() for v in vecs]

    async def embed(self, text: str, kind: EmbeddingKind = "document") -> List[float]:
        vecs = await asyncio.to_thread(self._encode, [text])
        return vecs[0]

    async def embed_batch(self, texts: Sequence[str], kind: EmbeddingKind = "document") -> List[List[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, list(texts))

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)


def create_embedding_service(backend: str = "hash", model_name: Optional[str] = None) -> EmbeddingService:
    backend = (backend or "hash").strip().lower()
    if backend in {"hash", "fallback", "simple"}:
        return HashEmbeddingService()
    if backend in {"sentence-transformers", "sentence_transformers", "st"}:
        return SentenceTransformerEmbeddingService(model_name or DEFAULT_SENTENCE_MODEL)
    raise ConfigurationError(f"unknown embedding backend: {backend}")


__all__ = [
    "HASH_EMBED_DIM",
    "HashEmbeddingService",
    "SentenceTransformerEmbeddingService",
    "cosine_similarity",
    "create_embedding_service",
    "hash_embed",
]
