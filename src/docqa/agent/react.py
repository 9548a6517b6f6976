"""Iterative reason/act loop over the tool registry."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from loguru import logger

from docqa.agent.budget import TokenBudgetManager
from docqa.agent.events import AgentEvent, EventBus, EventType
from docqa.agent.parsing import AnswerDecision, ToolCall, parse_decision
from docqa.agent.prompts import (
    CONTEXT_HEADER,
    CONTEXT_STATUS,
    build_initial_context,
    build_reasoning_prompt,
    build_reasoning_system_prompt,
    build_tool_guidelines,
    format_tool_result,
)
from docqa.agent.registry import ToolRegistry
from docqa.config import AgentConfig
from docqa.errors import ServiceError, describe_error
from docqa.llm import LanguageModel, with_timeout
from docqa.retrieval.corpus import IndexSnapshot
from docqa.types import ToolCallRecord

Sufficiency = Literal["likely_sufficient", "maybe_sufficient", "insufficient"]

_EMPTY_CONTEXT_CHARS = 100
_METADATA_ONLY_CHARS = 800


class ReasoningPhase(str, Enum):
    INIT = "init"
    REASON = "reason"
    ACT = "act"
    ANSWER = "answer"
    MAX_ITERATIONS_FALLBACK = "max_iterations_fallback"
    ERROR = "error"


@dataclass(slots=True)
class AgentState:
    """Per-session mutable state of the loop."""

    question: str
    session_id: str
    context: str
    history: list[ToolCallRecord] = field(default_factory=list)
    iteration: int = 0
    phase: ReasoningPhase = ReasoningPhase.INIT
    events: list[AgentEvent] = field(default_factory=list)
    pruned: int = 0


@dataclass(slots=True)
class ReasoningResult:
    answer: str
    iterations: int
    context: str
    session_id: str
    phase: ReasoningPhase
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    events: list[AgentEvent] = field(default_factory=list)
    fallback: bool = False
    error: str | None = None

    @property
    def tool_call_count(self) -> int:
        return len(self.tool_calls)


def is_context_empty(context: str) -> bool:
    """True for a missing/short context or one holding only the startup metadata."""
    if not context or len(context) < _EMPTY_CONTEXT_CHARS:
        return True
    metadata_only = CONTEXT_HEADER in context and CONTEXT_STATUS in context
    return metadata_only and len(context) <= _METADATA_ONLY_CHARS


def has_repeated_calls(history: Sequence[ToolCallRecord]) -> bool:
    if len(history) < 2:
        return False
    last, previous = history[-1], history[-2]
    return last.tool == previous.tool and _params_key(last.params) == _params_key(previous.params)


def last_result_empty(history: Sequence[ToolCallRecord]) -> bool:
    if not history:
        return False
    result = history[-1].result
    return result.success and not result.items()


def analyze_sufficiency(history: Sequence[ToolCallRecord]) -> Sufficiency:
    successful = 0
    content_chars = 0
    for record in history:
        items = record.result.items()
        if items:
            successful += 1
            content_chars += len(json.dumps(items, ensure_ascii=False, default=str))
    if successful >= 2 and content_chars > 1500:
        return "likely_sufficient"
    if successful >= 1 and content_chars > 800:
        return "maybe_sufficient"
    return "insufficient"


def summarize_retrieved(history: Sequence[ToolCallRecord]) -> str:
    parts: list[str] = []
    total = 0
    for record in history:
        count = len(record.result.items())
        if count:
            total += count
            parts.append(f"{count} items from {record.tool}")
    if not parts:
        return "no content retrieved yet"
    return f"{total} items ({', '.join(parts)})"


def build_warnings(state: AgentState, max_iterations: int) -> list[str]:
    warnings: list[str] = []
    if state.iteration == 1 and is_context_empty(state.context):
        warnings.append(
            "FIRST ITERATION: the context holds no document content. Call a tool now; "
            "do not answer and do not ask the user for details."
        )
    if has_repeated_calls(state.history):
        warnings.append(
            "You repeated the same tool call with the same parameters. Try another tool, "
            "other parameters, or answer from what you have."
        )
    if last_result_empty(state.history):
        warnings.append(
            "The last search returned no results. Use different terms or another strategy."
        )
    if analyze_sufficiency(state.history) != "insufficient":
        warnings.append(
            f"Retrieved so far: {summarize_retrieved(state.history)} over "
            f"{len(state.history)} tool calls. If this answers the question, answer now."
        )
    if state.iteration >= max_iterations - 1:
        warnings.append(
            f"FINAL ITERATION ({state.iteration}/{max_iterations}): answer from the available "
            "information; a partial answer is better than none."
        )
    return warnings


class ReasoningEngine:
    """Drives reason -> act iterations until an answer or the iteration limit."""

    def __init__(
        self,
        llm: LanguageModel,
        registry: ToolRegistry,
        snapshot: Callable[[], IndexSnapshot],
        *,
        config: AgentConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self._snapshot = snapshot
        self.config = config or AgentConfig()
        self.events = events or EventBus()
        self.budget = TokenBudgetManager(self.config.budget)

    async def run(
        self,
        question: str,
        *,
        conversation: list[dict[str, str]] | None = None,
        session_id: str | None = None,
    ) -> ReasoningResult:
        snapshot = self._snapshot()
        state = AgentState(
            question=question,
            session_id=session_id or uuid4().hex,
            context=build_initial_context(
                group_count=len(snapshot.corpus.groups),
                has_vector_index=snapshot.has_vector_index,
                doc_gist=snapshot.corpus.doc_gist,
            ),
        )
        self._emit(state, EventType.SESSION_START, question=question)
        self._emit(state, EventType.CONTEXT_INITIALIZED, context=state.context[:500])

        system_prompt = build_reasoning_system_prompt(
            snapshot.has_semantic_groups, snapshot.has_vector_index
        )
        guidelines = build_tool_guidelines(
            self.registry.get_available_tool_definitions(
                has_semantic_groups=snapshot.has_semantic_groups,
                has_vector_index=snapshot.has_vector_index,
                has_chunks=snapshot.has_chunks,
            )
        )

        max_iterations = self.config.max_iterations
        while state.iteration < max_iterations:
            state.iteration += 1
            self._emit(
                state,
                EventType.ITERATION_START,
                iteration=state.iteration,
                max_iterations=max_iterations,
            )
            self._enforce_budget(state)

            state.phase = ReasoningPhase.REASON
            prompt = build_reasoning_prompt(
                question,
                state.context,
                state.history,
                build_warnings(state, max_iterations),
                guidelines,
                preview_chars=self.config.history_preview_chars,
            )
            self._emit(state, EventType.REASONING_START, iteration=state.iteration)
            try:
                response = await with_timeout(
                    self.llm.invoke(system_prompt, list(conversation or []), prompt),
                    self.config.reasoning_timeout_seconds,
                    "reasoning",
                )
            except ServiceError as exc:
                logger.warning(f"Reasoning call failed in iteration {state.iteration}: {exc}")
                return self._abort(state, str(exc))
            except Exception as exc:
                logger.exception(f"Reasoning call raised unexpectedly in iteration {state.iteration}")
                return self._abort(state, describe_error(exc))

            decision = parse_decision(response)
            self._emit(
                state,
                EventType.REASONING_COMPLETE,
                iteration=state.iteration,
                kind=decision.kind,
                thought=decision.thought,
                strategy=decision.strategy,
            )

            if isinstance(decision, AnswerDecision):
                return self._finish(state, decision.answer, fallback=False)

            state.phase = ReasoningPhase.ACT
            await self._act(state, decision.calls)

        self._emit(
            state,
            EventType.MAX_ITERATIONS_REACHED,
            iterations=max_iterations,
            tool_calls=len(state.history),
        )
        state.phase = ReasoningPhase.MAX_ITERATIONS_FALLBACK
        return self._finish(state, self._fallback_answer(state), fallback=True)

    async def _act(self, state: AgentState, calls: list[ToolCall]) -> None:
        parallel = len(calls) > 1
        for call in calls:
            self._emit(
                state,
                EventType.TOOL_CALL_START,
                iteration=state.iteration,
                tool=call.tool,
                params=call.params,
                parallel=parallel,
                total_calls=len(calls),
            )

        results = await asyncio.gather(
            *(
                self.registry.execute(
                    call.tool, call.params, timeout=self.config.tool_timeout_seconds
                )
                for call in calls
            )
        )

        for call, result in zip(calls, results):
            self._emit(
                state,
                EventType.TOOL_CALL_COMPLETE,
                iteration=state.iteration,
                tool=call.tool,
                success=result.success,
                error=result.error,
                parallel=parallel,
            )
            state.context += "\n\n" + format_tool_result(call.tool, result)
            state.history.append(ToolCallRecord(tool=call.tool, params=call.params, result=result))

        self._enforce_budget(state)
        self._emit(
            state,
            EventType.CONTEXT_UPDATED,
            iteration=state.iteration,
            context_chars=len(state.context),
            estimated_tokens=self.budget.estimate(state.context),
            parallel_calls=len(calls) if parallel else 0,
        )

    def _enforce_budget(self, state: AgentState) -> None:
        if not self.budget.context_exceeds(state.context):
            return
        before = self.budget.estimate(state.context)
        state.context = self.budget.prune(state.context)
        state.pruned += 1
        self._emit(
            state,
            EventType.CONTEXT_PRUNED,
            iteration=state.iteration,
            before=before,
            after=self.budget.estimate(state.context),
            limit=self.config.budget.context_tokens,
        )

    def _fallback_answer(self, state: AgentState) -> str:
        excerpt = state.context[: self.config.fallback_context_chars]
        return (
            f"After {state.iteration} reasoning iterations the question could not be fully "
            "answered within the iteration limit.\n\n"
            f"Based on the information gathered so far:\n\n{excerpt}\n\n"
            "Try a more specific question or raise the iteration limit."
        )

    def _finish(self, state: AgentState, answer: str, *, fallback: bool) -> ReasoningResult:
        if not fallback:
            state.phase = ReasoningPhase.ANSWER
        self._emit(
            state,
            EventType.FINAL_ANSWER,
            answer=answer,
            iterations=state.iteration,
            tool_calls=len(state.history),
            fallback=fallback,
        )
        self._emit(
            state,
            EventType.SESSION_COMPLETE,
            iterations=state.iteration,
            fallback=fallback,
        )
        logger.info(
            f"Reasoning session {state.session_id} finished after {state.iteration} "
            f"iteration(s), {len(state.history)} tool call(s), fallback={fallback}"
        )
        return self._result(state, answer, fallback=fallback)

    def _abort(self, state: AgentState, error: str) -> ReasoningResult:
        state.phase = ReasoningPhase.ERROR
        self._emit(state, EventType.ERROR, iteration=state.iteration, error=error)
        return self._result(state, "", fallback=False, error=error)

    def _result(
        self, state: AgentState, answer: str, *, fallback: bool, error: str | None = None
    ) -> ReasoningResult:
        return ReasoningResult(
            answer=answer,
            iterations=state.iteration,
            context=state.context,
            session_id=state.session_id,
            phase=state.phase,
            tool_calls=list(state.history),
            events=state.events,
            fallback=fallback,
            error=error,
        )

    def _emit(self, state: AgentState, event_type: EventType, **data: Any) -> None:
        state.events.append(self.events.emit(event_type, state.session_id, **data))


def _params_key(params: dict[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)
