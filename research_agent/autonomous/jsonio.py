from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List


def dumps_compact(obj: Any, *, max_chars: int = 18_000) -> str:
    s = json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + "…"


def dumps_list(values: Iterable[Any]) -> str:
    return json.dumps(list(values), ensure_ascii=False, default=str)


def loads_list(text: str | None) -> List[Any]:
    if not text:
        return []
    value = json.loads(text)
    return value if isinstance(value, list) else []


def loads_dict(text: str | None) -> Dict[str, Any]:
    if not text:
        return {}
    value = json.loads(text)
    return value if isinstance(value, dict) else {}
