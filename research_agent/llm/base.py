from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence

Message = Dict[str, str]
EmbeddingKind = Literal["query", "document"]


@dataclass
class CompletionResponse:
    text: str
    model: str = ""
    stop_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


class CompletionService(Protocol):
    """
    Protocol for language-model completion backends.

    Implementations raise ``CompletionError`` (or any exception) on failure;
    callers in the core treat those as recoverable wherever a fallback exists.
    """

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        stop_sequences: Optional[Sequence[str]] = None,
    ) -> CompletionResponse:
        ...


class EmbeddingService(Protocol):
    """
    Protocol for text embedding backends.

    ``kind`` lets asymmetric models embed queries and documents differently.
    """

    model: str

    async def embed(self, text: str, kind: EmbeddingKind = "document") -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str], kind: EmbeddingKind = "document") -> List[List[float]]:
        ...

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        ...


def user_message(content: str) -> Message:
    return {"role": "user", "content": content}


__all__ = [
    "CompletionResponse",
    "CompletionService",
    "EmbeddingKind",
    "EmbeddingService",
    "Message",
    "user_message",
]
