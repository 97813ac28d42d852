from __future__ import annotations

import logging
import textwrap
from typing import Any, Dict, List, Optional, Sequence, Tuple

from research_agent.llm.base import CompletionService, user_message
from research_agent.llm.json_enforcer import (
    ParseError,
    ParseOk,
    extract_text,
    iter_json_spans,
    parse_bullets,
    parse_model,
    parse_model_list,
    parse_string_list,
)
from research_agent.llm.schemas import LearningsPayload, ReasoningOptionPayload
from research_agent.memory.memory_system import MemorySystem
from research_agent.memory.scoring import option_score

from .config import ReasoningConfig
from .models import (
    Action,
    ActionType,
    AgentState,
    ObservationResult,
    Outcome,
    Phase,
    Progress,
    ReasoningOption,
    ReasoningResult,
    WorkingMemory,
)

logger = logging.getLogger(__name__)

DEFAULT_TOOLS: Tuple[str, ...] = ("web_search", "web_fetch", "content_analyzer", "synthesizer")

_TOOL_ALIASES = {
    "search": "web_search",
    "web_search": "web_search",
    "fetch": "web_fetch",
    "web_fetch": "web_fetch",
    "fetch_full_content": "web_fetch",
    "analyze": "content_analyzer",
    "content_analyzer": "content_analyzer",
    "synthesize": "synthesizer",
    "synthesizer": "synthesizer",
}

_TOOL_FOR_TYPE: Dict[str, str] = {
    "search": "web_search",
    "fetch": "web_fetch",
    "analyze": "content_analyzer",
    "synthesize": "synthesizer",
    "reflect": "reflect",
    "plan": "planner",
}

_TYPE_KEYWORDS: Tuple[Tuple[ActionType, Tuple[str, ...]], ...] = (
    ("fetch", ("fetch", "retrieve", "download", "scrape", "full content")),
    ("analyze", ("analy", "evaluate", "compare", "extract")),
    ("synthesize", ("synthes", "summar", "report", "compile")),
    ("reflect", ("reflect",)),
    ("plan", ("plan",)),
    ("search", ("search", "query", "find", "look up")),
)

RECENT_STEPS = 3
FETCH_URL_LIMIT = 5
LOW_CONFIDENCE = 0.4
CONTINUE_CONFIDENCE = 0.3
REPLAN_MIN_STEPS = 3


def infer_action_type(action_name: str) -> ActionType:
    name = (action_name or "").lower()
    for action_type, keywords in _TYPE_KEYWORDS:
        if any(k in name for k in keywords):
            return action_type
    return "search"


def fallback_decision(
    sources_gathered: int,
    facts_extracted: int,
    phase: Phase,
    *,
    confidence: float = 0.3,
    cost: float = 5.0,
) -> ReasoningOption:
    """Heuristic next step used when no completion is available.

    Depends only on its arguments: nothing gathered means search; sources
    without facts means fetch their full content; more than three facts
    means synthesize; otherwise search for more.
    """
    if sources_gathered == 0:
        action, why = "web_search", "No sources gathered yet"
    elif facts_extracted == 0:
        action, why = "web_fetch", f"{sources_gathered} sources found but no facts extracted; fetch full content"
    elif facts_extracted > 3:
        action, why = "synthesizer", f"{facts_extracted} facts available to synthesize"
    else:
        action, why = "web_search", f"Only {facts_extracted} facts so far; gather more sources"
    return ReasoningOption(
        action=action,
        rationale=f"{why} (phase: {phase}).",
        expected_benefit="Keeps the research moving without model guidance",
        potential_risks=["Heuristic choice may not be optimal"],
        estimated_cost=cost,
        confidence=confidence,
    )


def select_option(options: Sequence[ReasoningOption]) -> ReasoningOption:
    """Highest ``0.7*confidence - 0.3*cost/10``; earlier options win ties."""
    best = options[0]
    best_score = option_score(best.confidence, best.estimated_cost)
    for option in options[1:]:
        score = option_score(option.confidence, option.estimated_cost)
        if score > best_score:
            best, best_score = option, score
    return best


def _action_outcome_pairs(wm: WorkingMemory) -> List[Tuple[Action, Outcome]]:
    by_action = {o.action_id: o for o in wm.recent_outcomes}
    return [(a, by_action[a.id]) for a in wm.recent_actions if a.id in by_action]


def _result_items(result: Any) -> List[Any]:
    if isinstance(result, dict):
        items = result.get("results")
        return items if isinstance(items, list) else [result]
    if isinstance(result, list):
        return result
    return [result] if result is not None else []


def recent_search_urls(wm: WorkingMemory, limit: int = FETCH_URL_LIMIT) -> List[str]:
    urls: List[str] = []
    for action, outcome in reversed(_action_outcome_pairs(wm)):
        if action.type != "search" or not outcome.success:
            continue
        for item in _result_items(outcome.result):
            url = item.get("url") if isinstance(item, dict) else None
            if url and url not in urls:
                urls.append(url)
    return urls[:limit]


def recent_fetched_content(wm: WorkingMemory) -> List[str]:
    contents: List[str] = []
    for action, outcome in _action_outcome_pairs(wm):
        if action.type != "fetch" or not outcome.success:
            continue
        for item in _result_items(outcome.result):
            if isinstance(item, dict) and item.get("content"):
                contents.append(str(item["content"]))
            elif isinstance(item, str) and item.strip():
                contents.append(item)
    return contents


def default_parameters(tool: str, state: AgentState) -> Dict[str, Any]:
    goal = state.goal.description
    wm = state.working_memory
    if tool == "web_search":
        return {"query": goal, "max_results": 10, "search_depth": "basic"}
    if tool == "web_fetch":
        return {"urls": recent_search_urls(wm), "extract_content": True, "include_metadata": True}
    if tool == "content_analyzer":
        fetched = recent_fetched_content(wm)
        content = "\n\n".join(fetched) if fetched else "\n".join(f.content for f in wm.key_findings)
        return {"content": content, "focus": goal}
    if tool == "synthesizer":
        return {
            "synthesis_goal": goal,
            "sources": [{"content": f.content, "source": f.source} for f in wm.key_findings],
            "output_format": "summary",
        }
    return {}


def should_continue(outcome: Outcome, progress: Progress) -> bool:
    if progress.current_phase == "completed":
        return False
    return outcome.success or progress.confidence > CONTINUE_CONFIDENCE


def should_replan(outcome: Outcome, state: AgentState) -> bool:
    if not outcome.success:
        return True
    history = [o for o in state.working_memory.recent_outcomes if o.action_id != outcome.action_id]
    last_three = (history + [outcome])[-3:]
    if sum(1 for o in last_three if not o.success) >= 2:
        return True
    progress = state.progress
    return progress.confidence < LOW_CONFIDENCE and progress.steps_completed > REPLAN_MIN_STEPS


def outcome_note(action: Action, outcome: Outcome) -> str:
    verdict = "succeeded" if outcome.success else "failed"
    note = f"{action.tool} {verdict}"
    detail = outcome.error if not outcome.success and outcome.error else (outcome.observations[0] if outcome.observations else "")
    return f"{note}: {detail}" if detail else note


class ReasoningEngine:
    """Reason -> act -> observe cycle over an AgentState."""

    def __init__(
        self,
        completion: CompletionService,
        *,
        memory: Optional[MemorySystem] = None,
        config: ReasoningConfig = ReasoningConfig(),
        available_tools: Sequence[str] = DEFAULT_TOOLS,
    ):
        self._completion = completion
        self._memory = memory
        self._config = config
        self.available_tools = tuple(available_tools)

    # Reason

    async def reason(self, state: AgentState, relevant_memories: Optional[Sequence[str]] = None) -> ReasoningResult:
        if relevant_memories is None:
            relevant_memories = await self._recall(state.goal.description)
        context = self.build_reasoning_context(state, relevant_memories)
        options, analysis, used_fallback = await self.generate_options(context, state.progress)
        selected = select_option(options)
        action = self.create_action(selected, state)
        action.strategy = await self._recommended_strategy(state.goal.description)
        return ReasoningResult(
            options=options,
            selected=selected,
            action=action,
            analysis=analysis,
            used_fallback=used_fallback,
        )

    async def _recall(self, query: str) -> List[str]:
        cap = self._config.max_relevant_memories
        if self._memory is None or cap == 0:
            return []
        try:
            found = await self._memory.search_memories(query, limit=cap)
        except Exception as exc:
            logger.warning("Memory recall failed: %s", exc)
            return []
        memories = [f"Past episode: {e.episode.summary}" for e in found.episodes]
        memories += [f"Known fact: {f.fact.content}" for f in found.facts]
        memories += [f"Strategy: {s.strategy.strategy_name} - {s.strategy.description}" for s in found.strategies]
        return memories[:cap]

    async def _recommended_strategy(self, context: str) -> Optional[str]:
        if self._memory is None:
            return None
        try:
            recs = await self._memory.get_strategy_recommendations(context, self.available_tools, k=1)
        except Exception as exc:
            logger.warning("Strategy recommendation failed: %s", exc)
            return None
        return recs[0].strategy.strategy_name if recs else None

    def build_reasoning_context(self, state: AgentState, relevant_memories: Sequence[str] = ()) -> str:
        p = state.progress
        wm = state.working_memory
        outcomes = {o.action_id: o for o in wm.recent_outcomes}
        lines = [f"Goal: {state.goal.description}"]
        if state.goal.success_criteria:
            lines.append("Success criteria: " + "; ".join(state.goal.success_criteria))
        lines.append(
            f"Progress: phase={p.current_phase}, steps={p.steps_completed}/{p.steps_total}, "
            f"sources={p.sources_gathered}, facts={p.facts_extracted}, confidence={p.confidence:.2f}"
        )
        recent = wm.recent_actions[-RECENT_STEPS:]
        if recent:
            lines.append("Recent actions:")
            for action in recent:
                outcome = outcomes.get(action.id)
                status = "pending" if outcome is None else ("ok" if outcome.success else f"failed: {outcome.error or 'unknown'}")
                lines.append(f"- {action.tool} ({action.type}) -> {status}")
        lines.append("Available tools: " + ", ".join(self.available_tools))
        memories = list(relevant_memories)[: self._config.max_relevant_memories]
        if memories:
            lines.append("Relevant memories:")
            lines.extend(f"- {m}" for m in memories)
        if state.goal.constraints:
            lines.append("Constraints: " + "; ".join(state.goal.constraints))
        if wm.open_questions:
            lines.append("Open questions: " + "; ".join(wm.open_questions[:5]))
        return "\n".join(lines)

    async def generate_options(self, context: str, progress: Progress) -> Tuple[List[ReasoningOption], str, bool]:
        """Ask for 2-4 candidate actions; fall back to the decision table on any failure.

        Returns (options, analysis, used_fallback).
        """
        prompt = textwrap.dedent(
            """
            You are the planning core of a research agent.

            {context}

            Propose 2 to {max_options} candidate next actions. Each action should name one of the available tools.
            Return STRICT JSON:
              {{
                "analysis": "one paragraph on where the research stands",
                "options": [
                  {{"action": "...", "rationale": "...", "expectedBenefit": "...",
                    "potentialRisks": ["..."], "estimatedCost": 1-10, "confidence": 0.0-1.0}}
                ]
              }}
            Return JSON only.
            """
        ).strip().format(context=context, max_options=self._config.max_options)
        try:
            response = await self._completion.complete(
                [user_message(prompt)],
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
        except Exception as exc:
            logger.warning("Option generation failed; using fallback: %s", exc)
            return self._fallback(progress)
        text = extract_text(response)
        parsed = parse_model_list(text, ReasoningOptionPayload, key="options")
        if isinstance(parsed, ParseError) or not parsed.value:
            reason = parsed.reason if isinstance(parsed, ParseError) else "no valid options"
            logger.warning("Option output unusable; using fallback: %s", reason)
            return self._fallback(progress)
        options = [ReasoningOption(**p.model_dump()) for p in parsed.value[: self._config.max_options]]
        analysis = ""
        for _, value in iter_json_spans(text):
            if isinstance(value, dict) and "options" in value:
                analysis = str(value.get("analysis") or "")
                break
        return options, analysis, False

    def _fallback(self, progress: Progress) -> Tuple[List[ReasoningOption], str, bool]:
        option = fallback_decision(
            progress.sources_gathered,
            progress.facts_extracted,
            progress.current_phase,
            confidence=self._config.fallback_confidence,
            cost=self._config.fallback_cost,
        )
        return [option], "Analysis unavailable", True

    def create_action(self, option: ReasoningOption, state: AgentState) -> Action:
        name = option.action.strip()
        action_type = infer_action_type(name)
        tool = _TOOL_ALIASES.get(name.lower(), name)
        if tool not in self.available_tools:
            tool = _TOOL_FOR_TYPE[action_type]
        return Action(
            type=action_type,
            tool=tool,
            parameters=default_parameters(tool, state),
            reasoning=option.rationale,
        )

    # Observe

    async def observe(self, action: Action, outcome: Outcome, state: AgentState) -> ObservationResult:
        return ObservationResult(
            learnings=await self.extract_learnings(action, outcome),
            should_continue=should_continue(outcome, state.progress),
            should_replan=should_replan(outcome, state),
        )

    async def extract_learnings(self, action: Action, outcome: Outcome) -> List[str]:
        """Learnings from one outcome: JSON first, then bullet lines, then a one-line note."""
        result_preview = str(outcome.result)[:1500] if outcome.result is not None else ""
        prompt = textwrap.dedent(
            """
            Action: {tool} ({type})
            Reasoning: {reasoning}
            Success: {success}
            Error: {error}
            Observations: {observations}
            Result: {result}

            What did we learn? Return STRICT JSON: {{"learnings": ["..."]}}
            """
        ).strip().format(
            tool=action.tool,
            type=action.type,
            reasoning=action.reasoning or "-",
            success=outcome.success,
            error=outcome.error or "-",
            observations="; ".join(outcome.observations) or "-",
            result=result_preview or "-",
        )
        try:
            response = await self._completion.complete([user_message(prompt)], max_tokens=600, temperature=0.3)
        except Exception as exc:
            logger.warning("Learning extraction failed: %s", exc)
            return [outcome_note(action, outcome)]
        text = extract_text(response)

        structured = parse_model(text, LearningsPayload)
        if isinstance(structured, ParseOk) and structured.value.learnings:
            return [item.strip() for item in structured.value.learnings if item.strip()]
        as_list = parse_string_list(text)
        if isinstance(as_list, ParseOk) and as_list.value:
            return as_list.value

        bullets = parse_bullets(text)
        if bullets:
            return bullets

        first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
        return [first_line[:200]] if first_line else [outcome_note(action, outcome)]
