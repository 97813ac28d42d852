"""
Reflection Engine - periodic assessment of a session's progress and strategy.

A reflection looks at the session's recent episodes and working memory,
measures progress and strategy effectiveness, and asks the completion
service for learnings and adjustments. Completion failures degrade the
reflection instead of raising; precondition failures and a failed state
write still propagate.
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from research_agent.autonomous.config import ReflectionConfig
from research_agent.autonomous.exceptions import InsufficientDataError, MemoryError, ReflectionError
from research_agent.autonomous.jsonio import dumps_compact
from research_agent.autonomous.models import (
    Action,
    Episode,
    Outcome,
    ProgressAssessment,
    Recommendation,
    Reflection,
    Session,
    Strategy,
    StrategyEvaluation,
    utc_now,
)
from research_agent.llm.base import CompletionService, user_message
from research_agent.llm.json_enforcer import ParseError, extract_text, parse_model, parse_string_list
from research_agent.llm.schemas import ReflectionSynthesis

from .memory_system import MaintenanceReport, MemorySystem

logger = logging.getLogger(__name__)

RECENT_ACTION_PAIRS = 10
ON_TRACK_CONFIDENCE = 0.6
CONTINUE_THRESHOLD = 0.7
ADJUST_THRESHOLD = 0.4
DEFAULT_EFFECTIVENESS = 0.5

DEGRADED_LEARNING = "Reflection synthesis was unavailable; keep the current approach and reassess next cycle."

GAPS_PROMPT = """You are reviewing a research session.
Goal: {goal}
Open questions: {questions}
Recent work:
{episodes}

List knowledge gaps that still block the goal. Return ONLY a JSON array of short strings.
"""

ALTERNATIVES_PROMPT = """Current research strategy: {strategy}
Effectiveness so far: {effectiveness:.2f}
Weaknesses: {weaknesses}

Suggest up to 3 alternative strategies. Return ONLY a JSON array of short strings.
"""

SYNTHESIS_PROMPT = """Reflect on this research session and recommend what to do next.
Goal: {goal}
Progress: {progress}
Strategy evaluation: {evaluation}
Topic patterns: {topics}
Tool effectiveness: {tools}
Knowledge gaps: {gaps}

Return ONLY JSON:
{{"learnings": ["..."], "adjustments": ["..."], "nextFocus": "...", "shouldReplan": true|false}}
"""


@dataclass
class TopicPattern:
    topic: str
    episodes: int
    success_rate: float


@dataclass
class ReflectionInputs:
    episodes: List[Episode] = field(default_factory=list)
    topic_patterns: List[TopicPattern] = field(default_factory=list)
    tool_effectiveness: Dict[str, float] = field(default_factory=dict)
    knowledge_gaps: List[str] = field(default_factory=list)


def recent_action_pairs(actions: Sequence[Action], outcomes: Sequence[Outcome], n: int = RECENT_ACTION_PAIRS) -> List[Tuple[Action, Outcome]]:
    by_action = {o.action_id: o for o in outcomes}
    pairs = [(a, by_action[a.id]) for a in actions if a.id in by_action]
    return pairs[-n:]


def analyze_topic_patterns(episodes: Sequence[Episode]) -> List[TopicPattern]:
    counts: Dict[str, List[bool]] = defaultdict(list)
    for episode in episodes:
        for topic in [episode.topic, *episode.tags]:
            counts[topic].append(episode.success)
    patterns = [
        TopicPattern(topic=t, episodes=len(results), success_rate=sum(results) / len(results))
        for t, results in counts.items()
    ]
    patterns.sort(key=lambda p: (-p.episodes, p.topic))
    return patterns


def analyze_strategy_effectiveness(episodes: Sequence[Episode]) -> Dict[str, float]:
    """Success ratio per tool across the actions recorded in ``episodes``."""
    totals: Dict[str, List[bool]] = defaultdict(list)
    for episode in episodes:
        for action, outcome in recent_action_pairs(episode.actions, episode.outcomes, n=len(episode.actions)):
            totals[action.tool].append(outcome.success)
    return {tool: sum(r) / len(r) for tool, r in sorted(totals.items())}


def recommendation_for(effectiveness: float) -> Recommendation:
    if effectiveness >= CONTINUE_THRESHOLD:
        return "continue"
    if effectiveness >= ADJUST_THRESHOLD:
        return "adjust"
    return "change"


def assess_progress(session: Session, episodes: Sequence[Episode], now: Optional[datetime] = None) -> ProgressAssessment:
    now = now or utc_now()
    state = session.state
    progress = state.progress
    successes = sum(1 for e in episodes if e.success)
    failures = len(episodes) - successes
    elapsed_minutes = (now - session.created_at).total_seconds() / 60.0
    rate = progress.steps_completed / elapsed_minutes if elapsed_minutes > 0 else 0.0

    estimated: Optional[datetime] = None
    remaining = progress.steps_total - progress.steps_completed
    if progress.steps_total and remaining <= 0:
        estimated = now
    elif remaining > 0 and rate > 0:
        estimated = now + timedelta(minutes=remaining / rate)

    blockers: List[str] = []
    for outcome in state.working_memory.recent_outcomes[-5:]:
        if not outcome.success and outcome.error and outcome.error not in blockers:
            blockers.append(outcome.error)
    if progress.confidence < ADJUST_THRESHOLD:
        blockers.append(f"Low confidence ({progress.confidence:.2f})")

    achievements = [e.summary for e in episodes if e.success][-5:]
    if progress.sources_gathered:
        achievements.append(f"Gathered {progress.sources_gathered} sources")
    if progress.facts_extracted:
        achievements.append(f"Extracted {progress.facts_extracted} facts")

    return ProgressAssessment(
        is_on_track=progress.confidence > ON_TRACK_CONFIDENCE and successes > failures,
        progress_rate=rate,
        estimated_completion=estimated,
        blockers=blockers,
        achievements=achievements,
    )


def measure_effectiveness(session: Session, episodes: Sequence[Episode]) -> Tuple[float, Dict[str, List[bool]]]:
    """Success ratio of the last ten action/outcome pairs, with per-tool results.

    Falls back to the episode success ratio, then to a neutral 0.5.
    """
    wm = session.state.working_memory
    pairs = recent_action_pairs(wm.recent_actions, wm.recent_outcomes)
    per_tool: Dict[str, List[bool]] = defaultdict(list)
    for action, outcome in pairs:
        per_tool[action.tool].append(outcome.success)
    if pairs:
        return sum(o.success for _, o in pairs) / len(pairs), per_tool
    if episodes:
        return sum(e.success for e in episodes) / len(episodes), per_tool
    return DEFAULT_EFFECTIVENESS, per_tool


def format_reflection(reflection: Reflection) -> str:
    pa = reflection.progress_assessment
    se = reflection.strategy_evaluation
    lines = [
        f"Reflection #{reflection.iteration_number} ({reflection.timestamp.isoformat()})",
        f"On track: {'yes' if pa.is_on_track else 'no'}  rate: {pa.progress_rate:.2f} steps/min",
        f"Strategy '{se.current_strategy}': effectiveness {se.effectiveness:.2f} -> {se.recommendation}",
    ]
    if reflection.learnings:
        lines.append("Learnings:")
        lines.extend(f"- {item}" for item in reflection.learnings)
    if reflection.adjustments:
        lines.append("Adjustments:")
        lines.extend(f"- {item}" for item in reflection.adjustments)
    if reflection.next_focus:
        lines.append(f"Next focus: {reflection.next_focus}")
    lines.append(f"Replan: {'yes' if reflection.should_replan else 'no'}")
    return "\n".join(lines)


class ReflectionEngine:
    def __init__(
        self,
        memory: MemorySystem,
        completion: CompletionService,
        config: ReflectionConfig = ReflectionConfig(),
    ):
        self._memory = memory
        self._completion = completion
        self._config = config

    async def can_reflect(self, session: Session) -> bool:
        episodes = await self._memory.get_session_episodes(session.id)
        return (
            len(episodes) >= self._config.min_episodes
            or len(session.state.working_memory.recent_actions) >= self._config.min_actions
        )

    async def reflect(self, session_id: str, *, now: Optional[datetime] = None) -> Reflection:
        session = await self._memory.sessions.require_active(session_id)
        if not await self.can_reflect(session):
            raise InsufficientDataError(
                f"Not enough activity to reflect on session {session_id}",
                data={"min_episodes": self._config.min_episodes, "min_actions": self._config.min_actions},
            )
        now = now or utc_now()
        inputs = await self._gather_inputs(session)
        progress = assess_progress(session, inputs.episodes, now)
        evaluation = await self.evaluate_strategy(session, inputs.episodes)
        synthesis = await self._synthesize(session, progress, evaluation, inputs)

        wm = session.state.working_memory
        tool_counts = Counter(a.tool for a in wm.recent_actions)
        succeeded = sum(1 for o in wm.recent_outcomes if o.success)
        if synthesis is None:
            learnings = [DEGRADED_LEARNING]
            adjustments: List[str] = []
            next_focus = inputs.knowledge_gaps[0] if inputs.knowledge_gaps else session.goal.description
            should_replan = False
        else:
            learnings = synthesis.learnings or [DEGRADED_LEARNING]
            adjustments = synthesis.adjustments
            next_focus = synthesis.next_focus
            should_replan = synthesis.should_replan

        reflection = Reflection(
            session_id=session.id,
            iteration_number=session.state.iteration_count,
            timestamp=now,
            action_summary=", ".join(f"{tool} x{n}" for tool, n in tool_counts.most_common()) or "no recent actions",
            outcome_summary=f"{succeeded} succeeded, {len(wm.recent_outcomes) - succeeded} failed",
            progress_assessment=progress,
            strategy_evaluation=evaluation,
            learnings=learnings,
            should_replan=should_replan,
            adjustments=adjustments,
            next_focus=next_focus,
            degraded=synthesis is None,
        )
        state = session.state.model_copy(deep=True)
        state.reflections.append(reflection)
        try:
            await self._memory.sessions.update_session_state(session.id, state)
        except MemoryError as exc:
            raise ReflectionError(f"reflection for session {session.id} could not be persisted", cause=exc)
        self._memory.reset_reflection_counter(session.id)
        logger.info(
            "Reflection for session %s: %s (replan=%s, degraded=%s)",
            session.id,
            evaluation.recommendation,
            should_replan,
            reflection.degraded,
        )
        return reflection

    async def _gather_inputs(self, session: Session) -> ReflectionInputs:
        episodes = await self._memory.get_session_episodes(session.id, limit=self._config.recent_episode_count)
        inputs = ReflectionInputs(episodes=episodes)
        if self._config.analyze_topics:
            inputs.topic_patterns = analyze_topic_patterns(episodes)
        if self._config.analyze_strategies:
            inputs.tool_effectiveness = analyze_strategy_effectiveness(episodes)
        if self._config.identify_gaps:
            inputs.knowledge_gaps = await self.identify_knowledge_gaps(session, episodes)
        return inputs

    async def identify_knowledge_gaps(self, session: Session, episodes: Sequence[Episode]) -> List[str]:
        gaps = list(dict.fromkeys(session.state.working_memory.open_questions))
        prompt = GAPS_PROMPT.format(
            goal=session.goal.description,
            questions="; ".join(gaps) or "none",
            episodes="\n".join(f"- {e.summary}" for e in episodes) or "none",
        )
        try:
            response = await self._completion.complete([user_message(prompt)], max_tokens=500, temperature=0.3)
        except Exception as exc:
            logger.warning("Knowledge-gap suggestion failed for session %s: %s", session.id, exc)
            return gaps
        parsed = parse_string_list(extract_text(response), key="gaps")
        if isinstance(parsed, ParseError):
            logger.warning("Knowledge-gap output unusable: %s", parsed.reason)
            return gaps
        for gap in parsed.value:
            if gap not in gaps:
                gaps.append(gap)
        return gaps

    async def evaluate_strategy(self, session: Session, episodes: Sequence[Episode]) -> StrategyEvaluation:
        effectiveness, per_tool = measure_effectiveness(session, episodes)
        strengths: List[str] = []
        weaknesses: List[str] = []
        for tool, results in sorted(per_tool.items()):
            ratio = sum(results) / len(results)
            label = f"{tool} succeeded {sum(results)}/{len(results)} times"
            if ratio >= CONTINUE_THRESHOLD:
                strengths.append(label)
            elif ratio < ADJUST_THRESHOLD:
                weaknesses.append(label)
        confidence = session.state.progress.confidence
        if confidence < ADJUST_THRESHOLD:
            weaknesses.append(f"Low confidence ({confidence:.2f})")
        current = session.state.plan.strategy
        return StrategyEvaluation(
            current_strategy=current,
            effectiveness=effectiveness,
            strengths=strengths,
            weaknesses=weaknesses,
            alternative_strategies=await self._suggest_alternatives(current, effectiveness, weaknesses),
            recommendation=recommendation_for(effectiveness),
        )

    async def _suggest_alternatives(self, strategy: str, effectiveness: float, weaknesses: List[str]) -> List[str]:
        prompt = ALTERNATIVES_PROMPT.format(
            strategy=strategy, effectiveness=effectiveness, weaknesses="; ".join(weaknesses) or "none"
        )
        try:
            response = await self._completion.complete([user_message(prompt)], max_tokens=400, temperature=0.5)
        except Exception as exc:
            logger.warning("Alternative strategy suggestion failed: %s", exc)
            return []
        parsed = parse_string_list(extract_text(response), key="alternatives")
        if isinstance(parsed, ParseError):
            logger.warning("Alternative strategy output unusable: %s", parsed.reason)
            return []
        return parsed.value[:3]

    async def _synthesize(
        self,
        session: Session,
        progress: ProgressAssessment,
        evaluation: StrategyEvaluation,
        inputs: ReflectionInputs,
    ) -> Optional[ReflectionSynthesis]:
        prompt = SYNTHESIS_PROMPT.format(
            goal=session.goal.description,
            progress=dumps_compact(progress.model_dump(mode="json"), max_chars=2000),
            evaluation=dumps_compact(evaluation.model_dump(mode="json"), max_chars=2000),
            topics=", ".join(f"{p.topic} ({p.episodes}, {p.success_rate:.0%})" for p in inputs.topic_patterns[:5]) or "none",
            tools=dumps_compact(inputs.tool_effectiveness, max_chars=1000),
            gaps="; ".join(inputs.knowledge_gaps) or "none",
        )
        try:
            response = await self._completion.complete(
                [user_message(prompt)], max_tokens=self._config.max_reflection_tokens, temperature=0.4
            )
        except Exception as exc:
            logger.warning("Reflection synthesis failed for session %s: %s", session.id, exc)
            return None
        parsed = parse_model(extract_text(response), ReflectionSynthesis)
        if isinstance(parsed, ParseError):
            logger.warning("Reflection synthesis output unusable for session %s: %s", session.id, parsed.reason)
            return None
        return parsed.value

    async def should_consolidate(self) -> bool:
        episodes, facts = await self._memory.count_records()
        return (
            episodes >= self._config.consolidate_episode_threshold
            or facts >= self._config.consolidate_fact_threshold
        )

    async def trigger_consolidation_if_needed(self) -> Optional[MaintenanceReport]:
        if not await self.should_consolidate():
            return None
        logger.info("Memory volume over threshold; consolidating")
        return await self._memory.consolidate_memories()

    async def get_reflection_history(self, session_id: str) -> List[Reflection]:
        session = await self._memory.sessions.get_session(session_id)
        return list(reversed(session.state.reflections))

    async def compare_with_previous(self, session_id: str) -> Optional[Dict[str, Any]]:
        history = await self.get_reflection_history(session_id)
        if len(history) < 2:
            return None
        latest, previous = history[0], history[1]
        return {
            "effectiveness_delta": latest.strategy_evaluation.effectiveness
            - previous.strategy_evaluation.effectiveness,
            "progress_rate_delta": latest.progress_assessment.progress_rate
            - previous.progress_assessment.progress_rate,
            "became_on_track": latest.progress_assessment.is_on_track
            and not previous.progress_assessment.is_on_track,
            "new_learnings": [item for item in latest.learnings if item not in previous.learnings],
            "recommendation_changed": latest.strategy_evaluation.recommendation
            != previous.strategy_evaluation.recommendation,
        }

    async def extract_strategy_from_recent_episodes(self, session_id: str) -> Optional[Strategy]:
        session = await self._memory.sessions.get_session(session_id)
        return await self._memory.extract_strategy_from_episodes(session_id, context=session.topic)
