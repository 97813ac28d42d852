from __future__ import annotations


class LLMError(RuntimeError):
    pass


class CompletionError(LLMError):
    """Raised by completion services when a request cannot be served."""


class EmbeddingError(LLMError):
    """Raised by embedding services when a text cannot be embedded."""
