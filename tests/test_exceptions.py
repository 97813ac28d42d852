from __future__ import annotations

from research_agent.autonomous.exceptions import (
    AgentException,
    ConfigurationError,
    DependencyError,
    DuplicateStrategyError,
    InsufficientDataError,
    InvalidSessionTransitionError,
    MemoryError,
    NoActiveSessionError,
    PreconditionError,
    RecordNotFoundError,
    ReflectionError,
    SessionNotFoundError,
)
from research_agent.llm.errors import CompletionError, EmbeddingError, LLMError


def test_exception_hierarchy() -> None:
    for cls in (
        PreconditionError,
        MemoryError,
        ConfigurationError,
        DependencyError,
        ReflectionError,
    ):
        assert issubclass(cls, AgentException)
    for cls in (
        SessionNotFoundError,
        NoActiveSessionError,
        InvalidSessionTransitionError,
        RecordNotFoundError,
        DuplicateStrategyError,
        InsufficientDataError,
    ):
        assert issubclass(cls, PreconditionError)


def test_collaborator_errors_stay_outside_agent_hierarchy() -> None:
    for cls in (CompletionError, EmbeddingError):
        assert issubclass(cls, LLMError)
        assert not issubclass(cls, AgentException)
    assert issubclass(LLMError, RuntimeError)


def test_record_not_found_records_kind_and_id() -> None:
    err = RecordNotFoundError("strategy", "s-1")
    assert err.kind == "strategy"
    assert err.record_id == "s-1"
    assert err.data == {"kind": "strategy", "record_id": "s-1"}
    assert "s-1" in str(err)


def test_no_active_session_message() -> None:
    assert "No active session" in str(NoActiveSessionError())
    err = NoActiveSessionError("abc", status="paused")
    assert err.status == "paused"
    assert "paused" in str(err)


def test_cause_is_mirrored() -> None:
    boom = RuntimeError("boom")
    err = ConfigurationError("bad", cause=boom)
    assert err.original_exception is boom
    assert err.cause is boom
