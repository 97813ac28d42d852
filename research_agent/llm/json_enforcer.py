from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Generic, Iterator, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .base import CompletionResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

_OPENERS = {"{": "}", "[": "]"}
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")


@dataclass(frozen=True)
class ParseOk(Generic[T]):
    value: T


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str = ""


ParseResult = Union[ParseOk[T], ParseError]


def extract_text(response: Union[CompletionResponse, str, None]) -> str:
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    return response.text or ""


def _span_end(text: str, start: int) -> Optional[int]:
    stack: List[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return i
    return None


def iter_json_spans(text: str) -> Iterator[Tuple[str, Any]]:
    """Yield ``(span, value)`` for each top-level JSON value in ``text``.

    Scanning starts at every ``{`` or ``[``. A candidate that never balances
    or does not decode is skipped and the scan resumes at the next opener,
    so bracketed prose such as ``[draft]`` or ``[1`` does not hide the
    JSON after it. Brackets inside string literals are ignored.
    """
    pos = 0
    n = len(text or "")
    while pos < n:
        start = next((i for i in range(pos, n) if text[i] in _OPENERS), -1)
        if start < 0:
            return
        end = _span_end(text, start)
        if end is not None:
            span = text[start : end + 1]
            try:
                value = json.loads(span)
            except json.JSONDecodeError:
                pass
            else:
                yield span, value
                pos = end + 1
                continue
        pos = start + 1


def find_json_span(text: str) -> Optional[str]:
    """Return the first decodable top-level JSON object or array in ``text``."""
    for span, _ in iter_json_spans(text):
        return span
    return None


def extract_json(text: str) -> str:
    if not text or not text.strip():
        raise ValueError("Empty response")
    span = find_json_span(text)
    if span is None:
        raise ValueError("No JSON found")
    return span


def parse_json(text: str) -> ParseResult[Any]:
    try:
        span = extract_json(text)
        return ParseOk(json.loads(span))
    except (ValueError, json.JSONDecodeError) as exc:
        return ParseError(str(exc), raw=(text or "")[:500])


def parse_model(text: str, model_cls: Type[ModelT]) -> ParseResult[ModelT]:
    """Validate the first JSON value in ``text`` that fits ``model_cls``."""
    first_error: Optional[ValidationError] = None
    found = False
    for _, value in iter_json_spans(text):
        found = True
        try:
            return ParseOk(model_cls.model_validate(value))
        except ValidationError as exc:
            first_error = first_error or exc
    if not found:
        return parse_json(text)
    return ParseError(
        f"{model_cls.__name__} validation failed: {first_error.error_count()} error(s)", raw=(text or "")[:500]
    )


def _first_array(text: str, key: Optional[str]) -> Optional[List[Any]]:
    """An array under ``key`` in any object wins over an earlier bare array."""
    bare: Optional[List[Any]] = None
    for _, value in iter_json_spans(text):
        if isinstance(value, dict) and key is not None and isinstance(value.get(key), list):
            return value[key]
        if isinstance(value, list) and bare is None:
            if key is None:
                return value
            bare = value
    return bare


def parse_model_list(text: str, item_cls: Type[ModelT], *, key: Optional[str] = None) -> ParseResult[List[ModelT]]:
    """Scan ``text`` for a JSON array of ``item_cls`` items.

    A top-level object is accepted when ``key`` names an array inside it.
    Items that fail validation are dropped; the result is an error only
    when no array can be found at all.
    """
    value = _first_array(text, key)
    if value is None:
        return ParseError("expected a JSON array", raw=(text or "")[:500])
    items: List[ModelT] = []
    for raw_item in value:
        try:
            items.append(item_cls.model_validate(raw_item))
        except ValidationError as exc:
            logger.debug("Dropping invalid %s item: %s", item_cls.__name__, exc)
    return ParseOk(items)


def parse_string_list(text: str, *, key: Optional[str] = None) -> ParseResult[List[str]]:
    value = _first_array(text, key)
    if value is None:
        return ParseError("expected a JSON array of strings", raw=(text or "")[:500])
    return ParseOk([str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()])


def parse_bullets(text: str) -> List[str]:
    """Lines of ``text`` that look like list items, with their markers stripped."""
    out: List[str] = []
    for line in (text or "").splitlines():
        m = _BULLET_RE.match(line)
        if m:
            out.append(m.group(1))
    return out


__all__ = [
    "ParseError",
    "ParseOk",
    "ParseResult",
    "extract_json",
    "extract_text",
    "find_json_span",
    "iter_json_spans",
    "parse_bullets",
    "parse_json",
    "parse_model",
    "parse_model_list",
    "parse_string_list",
]
