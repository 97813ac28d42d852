from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from research_agent.autonomous.config import (
    AgentConfig,
    MemoryConfig,
    ReasoningConfig,
    ReflectionConfig,
    load_agent_config,
)
from research_agent.autonomous.exceptions import ConfigurationError
from research_agent.autonomous.logging_config import LOG_FILE_NAME, configure_logging


def test_logging_writes_package_records_and_replaces_handlers(tmp_path) -> None:
    root = logging.getLogger()
    try:
        configure_logging(AgentConfig(log_level="warning"))
        handlers = configure_logging(AgentConfig(log_dir=tmp_path / "logs"))
        own = [h for h in root.handlers if (h.get_name() or "").startswith("research_agent.")]
        assert own == handlers
        assert [h.level for h in handlers] == [logging.INFO, logging.DEBUG]
        assert logging.getLogger("sentence_transformers").level == logging.WARNING

        logging.getLogger("research_agent.memory.test").debug("stored episode e-1")
        logging.getLogger("elsewhere").warning("not ours")
        for handler in handlers:
            handler.flush()
        text = (tmp_path / "logs" / LOG_FILE_NAME).read_text(encoding="utf-8")
        assert "stored episode e-1" in text
        assert "not ours" not in text
    finally:
        for handler in list(root.handlers):
            if (handler.get_name() or "").startswith("research_agent."):
                root.removeHandler(handler)
                handler.close()


def test_config_defaults() -> None:
    cfg = AgentConfig()
    assert cfg.max_iterations == 50
    assert cfg.reflection_interval == 5
    assert cfg.memory.max_context_tokens == 4000
    assert (cfg.memory.episodic_share, cfg.memory.semantic_share, cfg.memory.procedural_share) == (0.4, 0.4, 0.2)
    assert cfg.reflection.consolidate_episode_threshold == 50
    assert cfg.reflection.consolidate_fact_threshold == 100


def test_config_validation() -> None:
    with pytest.raises(ConfigurationError):
        AgentConfig(max_iterations=0)
    with pytest.raises(ConfigurationError):
        MemoryConfig(episodic_share=0.5, semantic_share=0.5, procedural_share=0.5)
    with pytest.raises(ConfigurationError):
        ReasoningConfig(max_options=7)
    with pytest.raises(ConfigurationError):
        ReflectionConfig(recent_episode_count=0)


def test_config_from_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("AGENT_MAX_ITERATIONS", "20")
    monkeypatch.setenv("AGENT_REFLECTION_INTERVAL", "3")
    monkeypatch.setenv("AGENT_DB_PATH", str(tmp_path / "mem.db"))
    cfg = AgentConfig.from_env(env_file=tmp_path / "missing.env")
    assert cfg.max_iterations == 20
    assert cfg.reflection_interval == 3
    assert cfg.memory.reflection_interval == 3
    assert cfg.db_path == tmp_path / "mem.db"
    assert cfg.embedding_backend == "hash"


def test_config_from_env_rejects_non_integer(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("AGENT_MAX_ITERATIONS", "lots")
    with pytest.raises(ConfigurationError):
        AgentConfig.from_env(env_file=tmp_path / "missing.env")


def test_config_from_dotenv_file(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("AGENT_MAX_CONTEXT_TOKENS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("AGENT_MAX_CONTEXT_TOKENS=1234\n", encoding="utf-8")
    try:
        cfg = AgentConfig.from_env(env_file=env_file)
    finally:
        os.environ.pop("AGENT_MAX_CONTEXT_TOKENS", None)
    assert cfg.memory.max_context_tokens == 1234


def test_load_agent_config_yaml(tmp_path) -> None:
    path = tmp_path / "agent.yaml"
    path.write_text(
        "max_iterations: 12\n"
        "db_path: data/test.sqlite3\n"
        "memory:\n"
        "  max_context_tokens: 2000\n"
        "reasoning:\n"
        "  max_options: 3\n",
        encoding="utf-8",
    )
    cfg = load_agent_config(path)
    assert cfg.max_iterations == 12
    assert cfg.db_path == Path("data/test.sqlite3")
    assert cfg.memory.max_context_tokens == 2000
    assert cfg.reasoning.max_options == 3
    assert cfg.reflection == ReflectionConfig()


def test_load_agent_config_rejects_unknown_keys(tmp_path) -> None:
    path = tmp_path / "agent.yaml"
    path.write_text("memory:\n  bogus: 1\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_agent_config(path)
    with pytest.raises(ConfigurationError):
        load_agent_config(tmp_path / "nope.yaml")
