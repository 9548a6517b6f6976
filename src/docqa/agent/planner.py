"""Multi-hop retrieval planner with a heuristic fallback."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from loguru import logger

from docqa.agent.events import AgentEvent, EventBus, EventType
from docqa.agent.fallback import build_fallback_context
from docqa.agent.parsing import (
    FetchGroupOp,
    KeywordSearchOp,
    RetrievalPlan,
    VectorSearchOp,
    parse_plan,
)
from docqa.agent.prompts import PLANNER_SYSTEM_PROMPT, build_planner_prompt
from docqa.config import PlannerConfig
from docqa.errors import PlanParseError, ServiceError, describe_error
from docqa.llm import LanguageModel, with_timeout
from docqa.retrieval.corpus import IndexSnapshot
from docqa.types import GRANULARITIES, ContextBundle, Provenance


class PlannerPhase(str, Enum):
    ANALYZE = "analyze"
    ROUND = "round"
    COMPLETE = "complete"
    FALLBACK = "fallback"


@dataclass(slots=True)
class PlannerResult:
    context: str
    provenance: list[Provenance]
    source: Literal["planner", "fallback"]
    rounds: int
    phase: PlannerPhase
    session_id: str
    events: list[AgentEvent] = field(default_factory=list)
    error: str | None = None

    @property
    def bundle(self) -> ContextBundle:
        return ContextBundle(text=self.context, provenance=list(self.provenance))

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


@dataclass(slots=True)
class _ContextPart:
    key: str
    text: str
    provenance: Provenance


@dataclass(slots=True)
class _Session:
    question: str
    session_id: str
    snapshot: IndexSnapshot
    history_size: int
    parts: list[_ContextPart] = field(default_factory=list)
    fetched: dict[str, str] = field(default_factory=dict)
    seen_chunks: set[str] = field(default_factory=set)
    events: list[AgentEvent] = field(default_factory=list)
    rounds: int = 0
    error: str | None = None
    search_history: deque[dict[str, Any]] = field(init=False)

    def __post_init__(self) -> None:
        self.search_history = deque(maxlen=self.history_size)

    @property
    def context(self) -> str:
        return "\n\n".join(part.text for part in self.parts)


class MultiHopPlanner:
    """Runs planning rounds against an LLM and accumulates retrieved context.

    Each round the model receives the group map, the tool vocabulary, the
    groups already held and the recent searches, and answers with a JSON plan.
    Operations run sequentially. An unparseable plan, an empty first plan or
    an empty final context switches to `build_fallback_context`.
    """

    def __init__(
        self,
        llm: LanguageModel,
        snapshot: Callable[[], IndexSnapshot],
        *,
        config: PlannerConfig | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.llm = llm
        self._snapshot = snapshot
        self.config = config or PlannerConfig()
        self.events = events or EventBus()

    async def retrieve(self, question: str, *, session_id: str | None = None) -> PlannerResult:
        session = _Session(
            question=question,
            session_id=session_id or uuid4().hex,
            snapshot=self._snapshot(),
            history_size=self.config.search_history_size,
        )
        corpus = session.snapshot.corpus
        self._emit(
            session,
            EventType.ANALYZE,
            groups=len(corpus.groups),
            chunks=len(corpus.chunks),
            has_vector_index=session.snapshot.has_vector_index,
        )

        for round_number in range(1, self.config.max_rounds + 1):
            session.rounds = round_number
            self._emit(session, EventType.ROUND_START, round=round_number)
            plan = await self._plan(session)
            if plan is None:
                if session.parts:
                    return self._complete(session)
                return self._fallback(session, session.error or "planning failed")

            if not plan.operations:
                if session.parts:
                    return self._complete(session)
                return self._fallback(session, "planner returned no operations")

            for op in plan.operations:
                await self._run_operation(session, op)

            if plan.final:
                break
        else:
            self._emit(
                session,
                EventType.WARNING,
                message=f"stopped after max_rounds={self.config.max_rounds}",
            )

        if not session.parts:
            return self._fallback(session, "no context retrieved")
        return self._complete(session)

    async def _plan(self, session: _Session) -> RetrievalPlan | None:
        corpus = session.snapshot.corpus
        prompt = build_planner_prompt(
            session.question,
            corpus.groups,
            session.fetched,
            list(session.search_history),
            doc_gist=corpus.doc_gist,
        )
        try:
            raw = await with_timeout(
                self.llm.invoke(PLANNER_SYSTEM_PROMPT, [], prompt),
                self.config.planner_timeout_seconds,
                "planner",
            )
        except ServiceError as exc:
            logger.warning(f"Planner call failed in round {session.rounds}: {exc}")
            return self._planning_failed(session, str(exc))
        except Exception as exc:
            logger.exception(f"Planner call raised unexpectedly in round {session.rounds}")
            return self._planning_failed(session, describe_error(exc))

        try:
            plan = parse_plan(raw)
        except PlanParseError as exc:
            logger.warning(f"Unusable plan in round {session.rounds}: {exc}")
            session.error = str(exc)
            self._emit(
                session,
                EventType.WARNING,
                round=session.rounds,
                message=f"plan could not be parsed: {exc}",
            )
            return None

        self._emit(
            session,
            EventType.PLAN,
            round=session.rounds,
            operations=[op.model_dump(by_alias=True) for op in plan.operations],
            final=plan.final,
            repaired=plan.repaired,
        )
        return plan

    async def _run_operation(self, session: _Session, op: Any) -> None:
        if isinstance(op, VectorSearchOp):
            await self._vector_search(session, op)
        elif isinstance(op, KeywordSearchOp):
            self._keyword_search(session, op)
        elif isinstance(op, FetchGroupOp):
            self._fetch_group(session, op)

    async def _vector_search(self, session: _Session, op: VectorSearchOp) -> None:
        args = op.args
        self._emit(session, EventType.TOOL_START, tool=op.tool, args=args.model_dump())
        provider = session.snapshot.vector_search
        if provider is None:
            self._tool_failed(session, op.tool, "vector search is not configured")
            return
        try:
            hits = await with_timeout(
                provider.search(
                    args.query,
                    session.snapshot.corpus.chunks,
                    args.limit,
                    self.config.vector_threshold,
                ),
                self.config.tool_timeout_seconds,
                "vector_search",
            )
        except ServiceError as exc:
            self._tool_failed(session, op.tool, str(exc))
            return
        except Exception as exc:
            logger.exception(f"Vector search provider raised unexpectedly in round {session.rounds}")
            self._tool_failed(session, op.tool, describe_error(exc))
            return

        added = 0
        for index, hit in enumerate(hits, start=1):
            if hit.id in session.seen_chunks:
                continue
            session.seen_chunks.add(hit.id)
            header = f"[vector hit {index}] (chunk {hit.id}, group {hit.group_id}, score {hit.score:.3f})"
            session.parts.append(
                _ContextPart(
                    key=f"chunk:{hit.id}",
                    text=f"{header}\n{hit.text}",
                    provenance=Provenance(source="chunk", ref=hit.id),
                )
            )
            added += 1
        session.search_history.append(
            {"tool": op.tool, "query": args.query, "result_count": len(hits)}
        )
        self._emit(
            session, EventType.TOOL_RESULT, tool=op.tool, success=True, count=len(hits), added=added
        )

    def _keyword_search(self, session: _Session, op: KeywordSearchOp) -> None:
        args = op.args
        self._emit(session, EventType.TOOL_START, tool=op.tool, args=args.model_dump())
        snapshot = session.snapshot
        chunks = snapshot.corpus.chunks
        if not snapshot.chunk_index.document_count:
            self._tool_failed(session, op.tool, "no chunks have been indexed")
            return

        hits = snapshot.chunk_index.search_keywords(args.keywords, args.limit, 0.0)
        added = 0
        for index, hit in enumerate(hits, start=1):
            chunk = chunks[hit.doc_index]
            if chunk.chunk_id in session.seen_chunks:
                continue
            session.seen_chunks.add(chunk.chunk_id)
            matched = ", ".join(hit.matched_keywords) or "-"
            header = (
                f"[keyword hit {index}] (chunk {chunk.chunk_id}, group {chunk.group_id}, "
                f"matched: {matched})"
            )
            session.parts.append(
                _ContextPart(
                    key=f"chunk:{chunk.chunk_id}",
                    text=f"{header}\n{chunk.text}",
                    provenance=Provenance(source="chunk", ref=chunk.chunk_id),
                )
            )
            added += 1
        session.search_history.append(
            {"tool": op.tool, "query": " ".join(args.keywords), "result_count": len(hits)}
        )
        self._emit(
            session, EventType.TOOL_RESULT, tool=op.tool, success=True, count=len(hits), added=added
        )

    def _fetch_group(self, session: _Session, op: FetchGroupOp) -> None:
        group_id = op.args.group_id
        requested = op.args.granularity
        held = session.fetched.get(group_id)
        if held is not None and GRANULARITIES.index(held) >= GRANULARITIES.index(requested):
            self._emit(
                session,
                EventType.TOOL_SKIP,
                tool=op.tool,
                group_id=group_id,
                held=held,
                requested=requested,
            )
            return

        self._emit(session, EventType.TOOL_START, tool=op.tool, args=op.args.model_dump())
        fetched = session.snapshot.corpus.fetch_group_text(group_id, requested)
        if not fetched["text"]:
            self._tool_failed(session, op.tool, f"group {group_id} has no content")
            return

        granularity = fetched["granularity"]
        part = _ContextPart(
            key=f"group:{group_id}",
            text=f"[{group_id} - {granularity}]\n{fetched['text']}",
            provenance=Provenance(source="group", ref=group_id, granularity=granularity),
        )
        if held is None:
            session.parts.append(part)
        else:
            # Upgrade in place so the group keeps its position in the context.
            for index, existing in enumerate(session.parts):
                if existing.key == part.key:
                    session.parts[index] = part
                    break
        session.fetched[group_id] = granularity
        self._emit(
            session,
            EventType.TOOL_RESULT,
            tool=op.tool,
            success=True,
            group_id=group_id,
            granularity=granularity,
            upgraded_from=held,
            chars=len(fetched["text"]),
        )

    def _planning_failed(self, session: _Session, error: str) -> None:
        session.error = error
        self._emit(session, EventType.ERROR, round=session.rounds, error=error)
        return None

    def _tool_failed(self, session: _Session, tool: str, error: str) -> None:
        logger.warning(f"Planner operation {tool} failed: {error}")
        self._emit(session, EventType.TOOL_RESULT, tool=tool, success=False, error=error)

    def _complete(self, session: _Session) -> PlannerResult:
        context = session.context
        logger.info(
            f"Planner finished after {session.rounds} round(s) with {len(session.parts)} "
            f"context part(s), {len(context)} chars"
        )
        self._emit(
            session,
            EventType.COMPLETE,
            rounds=session.rounds,
            parts=len(session.parts),
            chars=len(context),
        )
        return PlannerResult(
            context=context,
            provenance=[part.provenance for part in session.parts],
            source="planner",
            rounds=session.rounds,
            phase=PlannerPhase.COMPLETE,
            session_id=session.session_id,
            events=session.events,
            error=session.error,
        )

    def _fallback(self, session: _Session, reason: str) -> PlannerResult:
        logger.warning(f"Planner falling back to heuristic context: {reason}")
        bundle = build_fallback_context(
            session.question, session.snapshot.corpus, self.config.fallback_groups
        )
        self._emit(
            session,
            EventType.FALLBACK,
            reason=reason,
            refs=[item.ref for item in bundle.provenance],
        )
        return PlannerResult(
            context=bundle.text,
            provenance=bundle.provenance,
            source="fallback",
            rounds=session.rounds,
            phase=PlannerPhase.FALLBACK,
            session_id=session.session_id,
            events=session.events,
            error=session.error,
        )

    def _emit(self, session: _Session, event_type: EventType, **data: Any) -> None:
        session.events.append(self.events.emit(event_type, session.session_id, **data))
