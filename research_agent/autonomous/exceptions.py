from __future__ import annotations

from typing import Any, Dict, Optional


class AgentException(Exception):
    """Base exception for agent failures.

    Attributes:
        message: Human-readable error message.
        context: Optional contextual metadata.
        original_exception: The underlying exception, if any.

    Example:
        >>> raise AgentException("failed", context={"step": "reflect"}, original_exception=RuntimeError("boom"))
    """

    def __init__(
        self,
        message: str = "",
        *,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception or cause
        self.data = data or {}
        self.cause = cause or original_exception


class PreconditionError(AgentException):
    """Raised when an operation is called in a state it cannot proceed from.

    These always propagate to the caller; there is no fallback.
    """


class SessionNotFoundError(PreconditionError):
    """Raised when a session id does not resolve to a stored session.

    Example:
        >>> raise SessionNotFoundError("abc123")
    """

    def __init__(self, session_id: str, message: str = ""):
        super().__init__(
            message or f"Session not found: {session_id}",
            data={"session_id": session_id},
        )
        self.session_id = session_id


class NoActiveSessionError(PreconditionError):
    """Raised when an operation requires an active session.

    Example:
        >>> raise NoActiveSessionError("abc123", status="paused")
    """

    def __init__(self, session_id: Optional[str] = None, *, status: Optional[str] = None):
        if session_id is None:
            detail = "No active session"
        else:
            detail = f"Session {session_id} is not active (status={status})"
        super().__init__(detail, data={"session_id": session_id, "status": status})
        self.session_id = session_id
        self.status = status


class InvalidSessionTransitionError(PreconditionError):
    """Raised when a session status change is not allowed.

    Example:
        >>> raise InvalidSessionTransitionError("abc123", "completed", "active")
    """

    def __init__(self, session_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move session {session_id} from {current} to {requested}",
            data={"session_id": session_id, "current": current, "requested": requested},
        )
        self.session_id = session_id
        self.current = current
        self.requested = requested


class RecordNotFoundError(PreconditionError):
    """Raised when a memory record id is unknown.

    Example:
        >>> raise RecordNotFoundError("strategy", "s-1")
    """

    def __init__(self, kind: str, record_id: str):
        super().__init__(
            f"Unknown {kind} id: {record_id}",
            data={"kind": kind, "record_id": record_id},
        )
        self.kind = kind
        self.record_id = record_id


class DuplicateStrategyError(PreconditionError):
    """Raised when a strategy name is already taken.

    Example:
        >>> raise DuplicateStrategyError("breadth-first survey")
    """

    def __init__(self, strategy_name: str):
        super().__init__(
            f"Strategy already exists: {strategy_name}",
            data={"strategy_name": strategy_name},
        )
        self.strategy_name = strategy_name


class InsufficientDataError(PreconditionError):
    """Raised when there is not enough recorded activity to reflect on."""


class MemoryError(AgentException):
    """Raised when memory storage/retrieval fails.

    Example:
        >>> raise MemoryError("document store unavailable")
    """


class ConfigurationError(AgentException):
    """Raised for invalid configuration values.

    Example:
        >>> raise ConfigurationError("max_iterations must be > 0")
    """


class DependencyError(AgentException):
    """Raised when optional dependencies are missing.

    Example:
        >>> raise DependencyError("sentence-transformers not installed")
    """


class ReflectionError(AgentException):
    """Raised when reflection step fails unexpectedly.

    Example:
        >>> raise ReflectionError("reflection could not be persisted")
    """
