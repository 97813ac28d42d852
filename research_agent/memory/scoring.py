"""Weighted scoring functions used by memory retrieval and option selection.

Each function is pure: all inputs are explicit and weights come from a
frozen dataclass so they can be swapped without touching retrieval code.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

SECONDS_PER_DAY = 86_400.0


def age_in_days(then: datetime, now: datetime) -> float:
    return max(0.0, (now - then).total_seconds() / SECONDS_PER_DAY)


def exponential_decay(days: float, decay_days: float) -> float:
    return math.exp(-max(0.0, days) / decay_days)


def relevance_rank(position: int, total: int) -> float:
    """1.0 for the first result, decreasing linearly with result position."""
    if total <= 0:
        return 0.0
    return 1.0 - (position / total)


@dataclass(frozen=True)
class EpisodeScoreWeights:
    relevance: float = 0.7
    recency: float = 0.3
    recency_decay_days: float = 7.0


def episode_context_score(
    rank: float,
    age_days: float,
    weights: EpisodeScoreWeights = EpisodeScoreWeights(),
) -> float:
    return weights.relevance * rank + weights.recency * exponential_decay(age_days, weights.recency_decay_days)


@dataclass(frozen=True)
class FactScoreWeights:
    confidence: float = 0.5
    recency: float = 0.3
    access: float = 0.2
    recency_decay_days: float = 30.0
    access_saturation: int = 10


def fact_context_score(
    confidence: float,
    age_days: float,
    access_count: int,
    weights: FactScoreWeights = FactScoreWeights(),
) -> float:
    access = min(access_count / weights.access_saturation, 1.0)
    return (
        weights.confidence * confidence
        + weights.recency * exponential_decay(age_days, weights.recency_decay_days)
        + weights.access * access
    )


@dataclass(frozen=True)
class RelevanceDecay:
    decay_days: float = 60.0
    boost_per_access: float = 0.01
    max_access_boost: float = 0.2


def decayed_relevance(
    relevance: float,
    days_since_access: float,
    access_count: int,
    params: RelevanceDecay = RelevanceDecay(),
) -> float:
    boost = min(access_count * params.boost_per_access, params.max_access_boost)
    value = relevance * exponential_decay(days_since_access, params.decay_days) + boost
    return max(0.0, min(value, 1.0))


@dataclass(frozen=True)
class StrategyScoreWeights:
    success: float = 0.40
    experience: float = 0.25
    tools: float = 0.20
    recency: float = 0.15
    experience_saturation: int = 20
    recency_decay_days: float = 30.0
    missing_tool_penalty: float = 0.2


def tool_availability(
    required_tools: Iterable[str],
    available_tools: Optional[Iterable[str]],
    penalty: float = StrategyScoreWeights.missing_tool_penalty,
) -> float:
    if available_tools is None:
        return 1.0
    available = set(available_tools)
    missing = [t for t in required_tools if t not in available]
    if not missing:
        return 1.0
    return max(0.0, 1.0 - penalty * len(missing))


def strategy_score(
    success_rate: float,
    times_used: int,
    availability: float,
    days_since_last_use: float,
    weights: StrategyScoreWeights = StrategyScoreWeights(),
) -> float:
    experience = min(times_used / weights.experience_saturation, 1.0)
    return (
        weights.success * success_rate
        + weights.experience * experience
        + weights.tools * availability
        + weights.recency * exponential_decay(days_since_last_use, weights.recency_decay_days)
    )


@dataclass(frozen=True)
class OptionScoreWeights:
    confidence: float = 0.7
    cost: float = 0.3
    max_cost: float = 10.0


def option_score(confidence: float, estimated_cost: float, weights: OptionScoreWeights = OptionScoreWeights()) -> float:
    return weights.confidence * confidence - weights.cost * estimated_cost / weights.max_cost
