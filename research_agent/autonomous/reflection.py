from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from research_agent.memory.memory_system import MemorySystem
from research_agent.memory.reflection_engine import ReflectionEngine

from .config import AgentConfig
from .exceptions import InsufficientDataError
from .models import Action, AgentState, Outcome, Reflection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReflectionTrigger:
    should_reflect: bool
    reason: str = ""


@dataclass
class ReflectionApplication:
    adjustments_made: List[str] = field(default_factory=list)
    should_replan: bool = False
    new_focus: str = ""
    strategy_recommendation: str = "continue"


class ReflectionTriggerPolicy:
    """Decides when the agent should stop and reflect.

    Holds only the iteration of the last reflection; call ``reset()`` when
    a new session starts.
    """

    def __init__(
        self,
        *,
        interval: int = 5,
        max_iterations: int = 50,
        low_confidence: float = 0.4,
        low_confidence_min_iterations: int = 3,
        late_fraction: float = 0.8,
    ):
        self.interval = interval
        self.max_iterations = max_iterations
        self.low_confidence = low_confidence
        self.low_confidence_min_iterations = low_confidence_min_iterations
        self.late_fraction = late_fraction
        self._last_reflection_iteration = 0
        self._reflection_iterations: List[int] = []

    @classmethod
    def from_config(cls, config: AgentConfig) -> "ReflectionTriggerPolicy":
        return cls(interval=config.reflection_interval, max_iterations=config.max_iterations)

    def should_reflect(
        self,
        state: AgentState,
        recent_actions: Optional[Sequence[Action]] = None,
        recent_outcomes: Optional[Sequence[Outcome]] = None,
    ) -> ReflectionTrigger:
        iterations = state.iteration_count
        since_last = iterations - self._last_reflection_iteration
        if since_last >= self.interval:
            return ReflectionTrigger(True, f"{since_last} iterations since last reflection")

        outcomes = list(state.working_memory.recent_outcomes if recent_outcomes is None else recent_outcomes)
        failures = sum(1 for o in outcomes[-3:] if not o.success)
        if failures >= 2:
            return ReflectionTrigger(True, f"{failures} of the last 3 outcomes failed")

        confidence = state.progress.confidence
        if confidence < self.low_confidence and iterations > self.low_confidence_min_iterations:
            return ReflectionTrigger(True, f"low confidence ({confidence:.2f}) after {iterations} iterations")

        if iterations > self.late_fraction * self.max_iterations and state.progress.current_phase != "completed":
            return ReflectionTrigger(True, f"iteration {iterations} of {self.max_iterations} without completion")

        actions = list(state.working_memory.recent_actions if recent_actions is None else recent_actions)
        if actions and actions[-1].type == "reflect":
            return ReflectionTrigger(True, "explicit reflect action")

        return ReflectionTrigger(False)

    def record_reflection(self, iteration: int) -> None:
        self._last_reflection_iteration = iteration
        self._reflection_iterations.append(iteration)

    def reset(self) -> None:
        self._last_reflection_iteration = 0
        self._reflection_iterations = []

    def get_statistics(self) -> Dict[str, Any]:
        its = self._reflection_iterations
        gaps = [b - a for a, b in zip([0, *its], its)]
        return {
            "reflections": len(its),
            "last_reflection_iteration": self._last_reflection_iteration,
            "average_gap": (sum(gaps) / len(gaps)) if gaps else 0.0,
            "interval": self.interval,
        }

    def apply_reflection(self, reflection: Reflection) -> ReflectionApplication:
        recommendation = reflection.strategy_evaluation.recommendation
        adjustments = list(reflection.adjustments)
        if recommendation == "change":
            alternatives = reflection.strategy_evaluation.alternative_strategies
            target = alternatives[0] if alternatives else "a different approach"
            adjustments.append(f"Switch strategy to {target}")
        elif recommendation == "adjust":
            adjustments.append(f"Adjust strategy '{reflection.strategy_evaluation.current_strategy}'")
        return ReflectionApplication(
            adjustments_made=adjustments,
            should_replan=reflection.should_replan or recommendation == "change",
            new_focus=reflection.next_focus,
            strategy_recommendation=recommendation,
        )


@dataclass
class ReflectionCycle:
    trigger: ReflectionTrigger
    reflection: Reflection
    application: ReflectionApplication


class AgentReflection:
    """Runs the reflection engine whenever the trigger policy fires."""

    def __init__(self, memory: MemorySystem, engine: ReflectionEngine, policy: ReflectionTriggerPolicy):
        self._memory = memory
        self._engine = engine
        self._policy = policy

    def reset(self) -> None:
        self._policy.reset()

    async def maybe_reflect(self, session_id: str) -> Optional[ReflectionCycle]:
        session = await self._memory.sessions.require_active(session_id)
        trigger = self._policy.should_reflect(session.state)
        if not trigger.should_reflect:
            return None
        try:
            reflection = await self._engine.reflect(session_id)
        except InsufficientDataError as exc:
            logger.info("Skipping reflection for %s: %s", session_id, exc)
            return None
        self._policy.record_reflection(session.state.iteration_count)
        logger.info("Reflected on session %s (%s)", session_id, trigger.reason)
        return ReflectionCycle(trigger=trigger, reflection=reflection, application=self._policy.apply_reflection(reflection))
