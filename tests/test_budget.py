from __future__ import annotations

import random

from research_agent.llm.tokens import estimate_tokens
from research_agent.memory.budget import select_within_budget


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_selection_stops_at_first_overflow() -> None:
    costs = [3, 4, 10, 1]
    result = select_within_budget(costs, 8, lambda c: c)
    assert result.items == [3, 4]
    assert result.total_tokens == 7
    assert result.truncated is True


def test_everything_fits_is_not_truncated() -> None:
    result = select_within_budget([1, 2, 3], 6, lambda c: c)
    assert result.items == [1, 2, 3]
    assert result.truncated is False


def test_zero_budget() -> None:
    assert select_within_budget([], 0, lambda c: c).truncated is False
    result = select_within_budget([1], 0, lambda c: c)
    assert result.items == [] and result.truncated is True


def test_budget_invariant_holds_for_random_inputs() -> None:
    rng = random.Random(7)
    for _ in range(200):
        candidates = [rng.randint(0, 50) for _ in range(rng.randint(0, 12))]
        max_tokens = rng.randint(0, 200)
        result = select_within_budget(candidates, max_tokens, lambda c: c)
        assert result.total_tokens == sum(result.items) <= max_tokens
        assert result.truncated == (len(result.items) < len(candidates))
        assert result.items == candidates[: len(result.items)]
