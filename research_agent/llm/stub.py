from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .base import CompletionResponse, Message
from .errors import CompletionError


@dataclass
class StubCompletionService:
    """
    Deterministic completion service for unit tests.

    Provide a list of responses; each ``complete(...)`` call returns the next one.
    A response that is an exception instance is raised instead of returned.
    With ``fail_all=True`` every call raises ``CompletionError``.
    """

    responses: List[Union[str, BaseException]] = field(default_factory=list)
    model: str = "stub"
    fail_all: bool = False
    calls: List[Dict[str, Any]] = field(default_factory=list)
    _idx: int = 0

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        stop_sequences: Optional[Sequence[str]] = None,  # noqa: ARG002
    ) -> CompletionResponse:
        self.calls.append(
            {
                "messages": list(messages),
                "system_prompt": system_prompt,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if self.fail_all:
            raise CompletionError("stub completion service unavailable")
        if self._idx >= len(self.responses):
            raise CompletionError("StubCompletionService out of responses")
        out = self.responses[self._idx]
        self._idx += 1
        if isinstance(out, BaseException):
            raise out
        return CompletionResponse(text=out, model=self.model, stop_reason="end_turn")

    @property
    def prompts(self) -> List[str]:
        return [m["content"] for call in self.calls for m in call["messages"] if m.get("role") == "user"]
