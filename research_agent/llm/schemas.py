"""Schemas for structured completion output.

Model output uses camelCase keys; every schema also accepts snake_case.
Numeric fields are clamped into range instead of rejected.
"""
from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExtractedFact(_Payload):
    content: str = Field(min_length=1)
    category: str = "general"
    subcategory: Optional[str] = None
    confidence: float = 0.7
    tags: List[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)

    @field_validator("category")
    @classmethod
    def _normalize_category(cls, v: str) -> str:
        return v.strip().lower() or "general"


class MergedFactPayload(_Payload):
    content: str = Field(min_length=1)
    subcategory: Optional[str] = None


class StrategyPayload(_Payload):
    strategy_name: str = Field(min_length=1, validation_alias=AliasChoices("strategyName", "strategy_name", "name"))
    description: str = ""
    applicable_contexts: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("applicableContexts", "applicable_contexts")
    )
    required_tools: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("requiredTools", "required_tools")
    )


class ReasoningOptionPayload(_Payload):
    action: str = Field(min_length=1)
    rationale: str = ""
    expected_benefit: str = Field(default="", validation_alias=AliasChoices("expectedBenefit", "expected_benefit"))
    potential_risks: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("potentialRisks", "potential_risks")
    )
    estimated_cost: float = Field(default=5.0, validation_alias=AliasChoices("estimatedCost", "estimated_cost"))
    confidence: float = 0.5

    @field_validator("estimated_cost")
    @classmethod
    def _clamp_cost(cls, v: float) -> float:
        return _clamp(v, 1.0, 10.0)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)


class ReflectionSynthesis(_Payload):
    learnings: List[str] = Field(default_factory=list)
    adjustments: List[str] = Field(default_factory=list)
    next_focus: str = Field(default="", validation_alias=AliasChoices("nextFocus", "next_focus"))
    should_replan: bool = Field(default=False, validation_alias=AliasChoices("shouldReplan", "should_replan"))


class LearningsPayload(_Payload):
    learnings: List[str] = Field(default_factory=list)


__all__ = [
    "ExtractedFact",
    "LearningsPayload",
    "MergedFactPayload",
    "ReasoningOptionPayload",
    "ReflectionSynthesis",
    "StrategyPayload",
]
