from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


SessionStatus = Literal["active", "paused", "completed", "failed", "cancelled"]
Phase = Literal["planning", "gathering", "analyzing", "synthesizing", "verifying", "completed"]
ActionType = Literal["search", "fetch", "analyze", "synthesize", "reflect", "plan"]
Complexity = Literal["simple", "moderate", "complex"]
StepStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
Recommendation = Literal["continue", "adjust", "change"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class Goal(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    success_criteria: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    estimated_complexity: Complexity = "moderate"


class PlanStep(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    action: str = ""
    status: StepStatus = "pending"
    dependencies: List[str] = Field(default_factory=list)


class Plan(BaseModel):
    steps: List[PlanStep] = Field(default_factory=list)
    current_step_index: int = 0
    strategy: str = "initial"
    created_at: datetime = Field(default_factory=utc_now)
    last_modified: datetime = Field(default_factory=utc_now)


class Progress(BaseModel):
    steps_completed: int = 0
    steps_total: int = 0
    sources_gathered: int = 0
    facts_extracted: int = 0
    current_phase: Phase = "planning"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class Action(BaseModel):
    id: str = Field(default_factory=new_id)
    type: ActionType = "search"
    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""
    strategy: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class Outcome(BaseModel):
    action_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    observations: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class Finding(BaseModel):
    id: str = Field(default_factory=new_id)
    content: str
    source: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utc_now)
    related_findings: List[str] = Field(default_factory=list)


class WorkingMemory(BaseModel):
    recent_actions: List[Action] = Field(default_factory=list)
    recent_outcomes: List[Outcome] = Field(default_factory=list)
    key_findings: List[Finding] = Field(default_factory=list)
    open_questions: List[str] = Field(default_factory=list)
    current_hypotheses: List[str] = Field(default_factory=list)


class ProgressAssessment(BaseModel):
    is_on_track: bool
    progress_rate: float
    """Steps completed per elapsed minute."""
    estimated_completion: Optional[datetime] = None
    blockers: List[str] = Field(default_factory=list)
    achievements: List[str] = Field(default_factory=list)


class StrategyEvaluation(BaseModel):
    current_strategy: str
    effectiveness: float = Field(ge=0.0, le=1.0)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    alternative_strategies: List[str] = Field(default_factory=list)
    recommendation: Recommendation


class Reflection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_id: str
    iteration_number: int
    timestamp: datetime = Field(default_factory=utc_now)
    action_summary: str = ""
    outcome_summary: str = ""
    progress_assessment: ProgressAssessment
    strategy_evaluation: StrategyEvaluation
    learnings: List[str] = Field(default_factory=list)
    should_replan: bool = False
    adjustments: List[str] = Field(default_factory=list)
    next_focus: str = ""
    degraded: bool = False


class AgentState(BaseModel):
    goal: Goal
    plan: Plan = Field(default_factory=Plan)
    progress: Progress = Field(default_factory=Progress)
    working_memory: WorkingMemory = Field(default_factory=WorkingMemory)
    reflections: List[Reflection] = Field(default_factory=list)
    iteration_count: int = 0
    last_action_timestamp: Optional[datetime] = None


class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    topic: str
    goal: Goal
    state: AgentState
    status: SessionStatus = "active"
    user_id: Optional[str] = None
    parent_session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class NewEpisode(BaseModel):
    session_id: str
    topic: str
    actions: List[Action] = Field(default_factory=list)
    outcomes: List[Outcome] = Field(default_factory=list)
    findings: List[Finding] = Field(default_factory=list)
    duration_ms: float = 0.0
    success: bool = True
    summary: str
    tags: List[str] = Field(default_factory=list)
    feedback: Optional[str] = None
    timestamp: Optional[datetime] = None


class Episode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    topic: str
    actions: List[Action] = Field(default_factory=list)
    outcomes: List[Outcome] = Field(default_factory=list)
    findings: List[Finding] = Field(default_factory=list)
    duration_ms: float = 0.0
    success: bool = True
    summary: str
    tags: List[str] = Field(default_factory=list)
    feedback: Optional[str] = None


class NewFact(BaseModel):
    content: str
    category: str = "general"
    subcategory: Optional[str] = None
    source: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    relevance: float = Field(default=1.0, ge=0.0, le=1.0)
    tags: List[str] = Field(default_factory=list)
    related_facts: List[str] = Field(default_factory=list)


class Fact(BaseModel):
    id: str = Field(default_factory=new_id)
    content: str
    category: str = "general"
    subcategory: Optional[str] = None
    source: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    relevance: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed: datetime = Field(default_factory=utc_now)
    access_count: int = 0
    last_modified: datetime = Field(default_factory=utc_now)
    tags: List[str] = Field(default_factory=list)
    related_facts: List[str] = Field(default_factory=list)


class Refinement(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    reason: str
    change: str
    expected_improvement: str = ""


class NewStrategy(BaseModel):
    strategy_name: str
    description: str
    applicable_contexts: List[str] = Field(default_factory=list)
    required_tools: List[str] = Field(default_factory=list)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_duration_ms: float = 0.0
    times_used: int = 0


class Strategy(BaseModel):
    id: str = Field(default_factory=new_id)
    strategy_name: str
    description: str
    applicable_contexts: List[str] = Field(default_factory=list)
    required_tools: List[str] = Field(default_factory=list)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_duration_ms: float = 0.0
    times_used: int = 0
    refinements: List[Refinement] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_used: datetime = Field(default_factory=utc_now)
    last_refined: Optional[datetime] = None


class ReasoningOption(BaseModel):
    action: str
    rationale: str = ""
    expected_benefit: str = ""
    potential_risks: List[str] = Field(default_factory=list)
    estimated_cost: float = Field(default=5.0, ge=1.0, le=10.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ReasoningResult(BaseModel):
    options: List[ReasoningOption]
    selected: ReasoningOption
    action: Action
    analysis: str = ""
    used_fallback: bool = False


class ObservationResult(BaseModel):
    learnings: List[str] = Field(default_factory=list)
    should_continue: bool
    should_replan: bool
