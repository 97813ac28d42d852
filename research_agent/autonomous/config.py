from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError

EmbeddingBackend = Literal["hash", "sentence-transformers"]

_ENV_PREFIX = "AGENT_"


@dataclass(frozen=True)
class MemoryConfig:
    consolidation_threshold_days: int = 7
    auto_consolidate: bool = True
    reflection_interval: int = 5
    """Number of stored experiences after which the memory system signals reflection readiness."""
    auto_reflect: bool = True
    max_context_tokens: int = 4000
    episodic_share: float = 0.4
    semantic_share: float = 0.4
    procedural_share: float = 0.2
    fact_relevance_decay_days: float = 60.0
    fact_merge_threshold: float = 0.85

    def __post_init__(self) -> None:
        if self.consolidation_threshold_days < 0:
            raise ConfigurationError("consolidation_threshold_days must be >= 0")
        if self.reflection_interval <= 0:
            raise ConfigurationError("reflection_interval must be > 0")
        if self.max_context_tokens <= 0:
            raise ConfigurationError("max_context_tokens must be > 0")
        shares = (self.episodic_share, self.semantic_share, self.procedural_share)
        if any(s < 0 for s in shares):
            raise ConfigurationError("memory shares must be >= 0")
        if abs(sum(shares) - 1.0) > 1e-6:
            raise ConfigurationError("memory shares must sum to 1.0")
        if self.fact_relevance_decay_days <= 0:
            raise ConfigurationError("fact_relevance_decay_days must be > 0")
        if not 0.0 <= self.fact_merge_threshold <= 1.0:
            raise ConfigurationError("fact_merge_threshold must be within [0, 1]")


@dataclass(frozen=True)
class ReflectionConfig:
    min_episodes: int = 3
    min_actions: int = 5
    recent_episode_count: int = 10
    analyze_topics: bool = True
    analyze_strategies: bool = True
    identify_gaps: bool = True
    max_reflection_tokens: int = 2000
    consolidate_episode_threshold: int = 50
    consolidate_fact_threshold: int = 100

    def __post_init__(self) -> None:
        if self.min_episodes < 0 or self.min_actions < 0:
            raise ConfigurationError("reflection minimums must be >= 0")
        if self.recent_episode_count <= 0:
            raise ConfigurationError("recent_episode_count must be > 0")
        if self.max_reflection_tokens <= 0:
            raise ConfigurationError("max_reflection_tokens must be > 0")
        if self.consolidate_episode_threshold <= 0 or self.consolidate_fact_threshold <= 0:
            raise ConfigurationError("consolidation thresholds must be > 0")


@dataclass(frozen=True)
class ReasoningConfig:
    max_options: int = 4
    temperature: float = 0.7
    max_tokens: int = 2000
    fallback_confidence: float = 0.3
    fallback_cost: float = 5.0
    max_relevant_memories: int = 5

    def __post_init__(self) -> None:
        if not 2 <= self.max_options <= 4:
            raise ConfigurationError("max_options must be between 2 and 4")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError("temperature must be within [0, 2]")
        if self.max_tokens <= 0:
            raise ConfigurationError("max_tokens must be > 0")
        if not 0.0 <= self.fallback_confidence <= 1.0:
            raise ConfigurationError("fallback_confidence must be within [0, 1]")
        if not 1.0 <= self.fallback_cost <= 10.0:
            raise ConfigurationError("fallback_cost must be within [1, 10]")
        if self.max_relevant_memories < 0:
            raise ConfigurationError("max_relevant_memories must be >= 0")


@dataclass(frozen=True)
class AgentConfig:
    max_iterations: int = 50
    reflection_interval: int = 5
    db_path: Path = Path("data/agent_memory.sqlite3")
    embedding_backend: EmbeddingBackend = "hash"
    embedding_model: str = "all-MiniLM-L6-v2"
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    reflection: ReflectionConfig = field(default_factory=ReflectionConfig)
    reasoning: ReasoningConfig = field(default_factory=ReasoningConfig)

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ConfigurationError("max_iterations must be > 0")
        if self.reflection_interval <= 0:
            raise ConfigurationError("reflection_interval must be > 0")
        if self.embedding_backend not in ("hash", "sentence-transformers"):
            raise ConfigurationError(f"unknown embedding_backend: {self.embedding_backend}")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"unknown log_level: {self.log_level}")

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "AgentConfig":
        """Build a config from ``AGENT_*`` environment variables.

        A ``.env`` file is loaded first (without overriding variables that
        are already set).
        """
        load_dotenv(env_file)
        base = cls()
        log_dir = os.getenv(f"{_ENV_PREFIX}LOG_DIR")
        max_context = _env_int("MAX_CONTEXT_TOKENS", base.memory.max_context_tokens)
        reflection_interval = _env_int("REFLECTION_INTERVAL", base.reflection_interval)
        return cls(
            max_iterations=_env_int("MAX_ITERATIONS", base.max_iterations),
            reflection_interval=reflection_interval,
            db_path=Path(os.getenv(f"{_ENV_PREFIX}DB_PATH") or base.db_path),
            embedding_backend=(os.getenv(f"{_ENV_PREFIX}EMBED_BACKEND") or base.embedding_backend).strip().lower(),  # type: ignore[arg-type]
            embedding_model=(os.getenv(f"{_ENV_PREFIX}EMBED_MODEL") or base.embedding_model).strip(),
            log_level=(os.getenv(f"{_ENV_PREFIX}LOG_LEVEL") or base.log_level).strip().upper(),
            log_dir=Path(log_dir) if log_dir else None,
            memory=replace(
                base.memory,
                max_context_tokens=max_context,
                reflection_interval=reflection_interval,
            ),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}", cause=exc)


def _build_section(cls: type, raw: Any, section: str) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"'{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"unknown keys in '{section}': {', '.join(unknown)}")
    return cls(**dict(raw))


def config_from_dict(data: Mapping[str, Any]) -> AgentConfig:
    """Build an AgentConfig from a plain mapping (as read from YAML)."""
    sections: Dict[str, Any] = {
        "memory": _build_section(MemoryConfig, data.get("memory"), "memory"),
        "reflection": _build_section(ReflectionConfig, data.get("reflection"), "reflection"),
        "reasoning": _build_section(ReasoningConfig, data.get("reasoning"), "reasoning"),
    }
    top = {k: v for k, v in data.items() if k not in sections}
    known = {f.name for f in fields(AgentConfig)}
    unknown = sorted(set(top) - known)
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(unknown)}")
    if "db_path" in top:
        top["db_path"] = Path(top["db_path"])
    if top.get("log_dir"):
        top["log_dir"] = Path(top["log_dir"])
    return AgentConfig(**top, **sections)


def load_agent_config(path: Path) -> AgentConfig:
    if not path.is_file():
        raise ConfigurationError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}", cause=exc)
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"config root must be a mapping: {path}")
    return config_from_dict(data)
