from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from research_agent.autonomous.config import MemoryConfig  # noqa: E402
from research_agent.llm.base import CompletionService, EmbeddingService  # noqa: E402
from research_agent.llm.embeddings import HashEmbeddingService  # noqa: E402
from research_agent.llm.stub import StubCompletionService  # noqa: E402
from research_agent.memory.episodic_manager import EpisodicManager  # noqa: E402
from research_agent.memory.memory_system import MemorySystem  # noqa: E402
from research_agent.memory.procedural_manager import ProceduralManager  # noqa: E402
from research_agent.memory.semantic_manager import SemanticManager  # noqa: E402
from research_agent.memory.session_manager import SessionManager  # noqa: E402
from research_agent.memory.stores.sqlite_store import SqliteDocumentStore  # noqa: E402
from research_agent.memory.stores.vector_index import SqliteVectorIndex  # noqa: E402


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AGENT_EMBED_BACKEND", "hash")
    for name in ("AGENT_DB_PATH", "AGENT_MAX_ITERATIONS", "AGENT_REFLECTION_INTERVAL", "AGENT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def doc_store():
    store = SqliteDocumentStore()
    yield store
    store.close()


@pytest.fixture
def vector_index():
    index = SqliteVectorIndex()
    yield index
    index.close()


@pytest.fixture
def hash_embeddings() -> HashEmbeddingService:
    return HashEmbeddingService()


MemoryFactory = Callable[..., MemorySystem]


@pytest.fixture
def make_memory(doc_store, vector_index) -> MemoryFactory:
    def _make(
        completion: Optional[CompletionService] = None,
        embeddings: Optional[EmbeddingService] = None,
        config: Optional[MemoryConfig] = None,
    ) -> MemorySystem:
        completion = completion or StubCompletionService(fail_all=True)
        embeddings = embeddings or HashEmbeddingService()
        config = config or MemoryConfig()
        return MemorySystem(
            SessionManager(doc_store),
            EpisodicManager(doc_store, vector_index, embeddings, completion),
            SemanticManager(doc_store, vector_index, embeddings, completion, config=config),
            ProceduralManager(doc_store, vector_index, embeddings, completion),
            config,
        )

    return _make
