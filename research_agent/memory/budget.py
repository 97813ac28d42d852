from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, List, Sequence, TypeVar

T = TypeVar("T")


@dataclass
class BudgetSelection(Generic[T]):
    items: List[T] = field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False


def select_within_budget(
    candidates: Sequence[T],
    max_tokens: int,
    token_cost: Callable[[T], int],
) -> BudgetSelection[T]:
    """Greedily take candidates in order until the next one would overflow.

    Selection stops at the first candidate that does not fit, so the result
    is a prefix of ``candidates``; ``truncated`` is set exactly when that
    prefix is shorter than the input.
    """
    selection: BudgetSelection[T] = BudgetSelection()
    for item in candidates:
        cost = token_cost(item)
        if selection.total_tokens + cost > max_tokens:
            selection.truncated = True
            break
        selection.items.append(item)
        selection.total_tokens += cost
    return selection
