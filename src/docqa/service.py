"""Service facade owning the corpus snapshot, tools, planner and reasoning engine."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

from loguru import logger

from docqa.agent.events import EventBus, EventType
from docqa.agent.fallback import build_fallback_context
from docqa.agent.planner import MultiHopPlanner, PlannerPhase, PlannerResult
from docqa.agent.react import ReasoningEngine
from docqa.agent.registry import ToolRegistry
from docqa.agent.tools import register_builtin_tools
from docqa.config import Settings
from docqa.ingest.aggregator import SemanticAggregator
from docqa.lexical.bm25 import BM25Index
from docqa.llm import LanguageModel
from docqa.obs.tracing import Timer, TraceStore
from docqa.retrieval.corpus import DocumentCorpus, IndexSnapshot
from docqa.retrieval.vector_store import InMemoryVectorIndex, VectorSearchProvider
from docqa.types import Chunk, Provenance, ToolTrace

_ACTIVE_TRACES: ContextVar[list[ToolTrace] | None] = ContextVar("docqa_tool_traces", default=None)


@dataclass(slots=True)
class Capabilities:
    """Optional external capabilities; each missing one degrades gracefully."""

    summarizer: LanguageModel | None = None
    reasoner: LanguageModel | None = None
    vector_search: VectorSearchProvider | None = None


@dataclass(slots=True)
class AnswerResult:
    answer: str
    trace_id: str
    session_id: str
    mode: Literal["reasoning", "planner"]
    iterations: int
    fallback: bool
    latency_ms: float
    tool_calls: int = 0
    error: str | None = None
    provenance: list[Provenance] = field(default_factory=list)


class DocQAService:
    """Entry point for loading a document and asking questions about it.

    Sessions read an immutable `IndexSnapshot`; `load_chunks` builds a new one
    and swaps it in under a lock, so a rebuild never disturbs running sessions.
    """

    def __init__(
        self,
        capabilities: Capabilities | None = None,
        settings: Settings | None = None,
        *,
        trace_store: TraceStore | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.capabilities = capabilities or Capabilities()
        self.settings = settings or Settings()
        self.trace_store = trace_store or TraceStore()
        self.events = events or EventBus()

        self._snapshot = IndexSnapshot()
        self._lock = asyncio.Lock()

        self.aggregator = SemanticAggregator(self.capabilities.summarizer, self.settings.aggregation)
        self.registry = ToolRegistry(default_timeout=self.settings.agent.tool_timeout_seconds)
        register_builtin_tools(self.registry, self.snapshot)
        self.registry.set_observer(_record_tool_trace)

        reasoner = self.capabilities.reasoner
        self.engine = (
            ReasoningEngine(
                reasoner,
                self.registry,
                self.snapshot,
                config=self.settings.agent,
                events=self.events,
            )
            if reasoner is not None
            else None
        )
        self.planner = (
            MultiHopPlanner(reasoner, self.snapshot, config=self.settings.planner, events=self.events)
            if reasoner is not None
            else None
        )

    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    @property
    def has_semantic_groups(self) -> bool:
        return self._snapshot.has_semantic_groups

    @property
    def has_vector_index(self) -> bool:
        return self._snapshot.has_vector_index

    @property
    def has_chunks(self) -> bool:
        return self._snapshot.has_chunks

    def capability_flags(self) -> dict[str, bool]:
        return {
            "semantic_groups": self.has_semantic_groups,
            "vector_index": self.has_vector_index,
            "chunks": self.has_chunks,
            "summarizer": self.capabilities.summarizer is not None,
            "reasoner": self.capabilities.reasoner is not None,
        }

    async def load_chunks(self, texts: Sequence[str]) -> dict[str, Any]:
        """Aggregate `texts`, build every index and swap the snapshot in."""
        async with self._lock:
            chunks = [
                Chunk(chunk_id=f"chunk-{index}", text=text, position=index)
                for index, text in enumerate(texts)
            ]
            result = await self.aggregator.aggregate(chunks)
            doc_gist = ""
            if result.groups:
                doc_gist = await self.aggregator.generate_doc_gist(
                    "\n\n".join(chunk.text for chunk in result.chunks)
                )

            lexical = self.settings.lexical
            corpus = DocumentCorpus(result.chunks, result.groups, doc_gist=doc_gist)
            vector_search = self.capabilities.vector_search
            if isinstance(vector_search, InMemoryVectorIndex):
                # Each snapshot owns its index; sessions on the old one keep the old vectors.
                vector_search = vector_search.rebuilt(result.chunks)

            self._snapshot = IndexSnapshot(
                corpus=corpus,
                chunk_index=BM25Index.from_chunks(result.chunks, lexical),
                group_index=BM25Index.from_groups(result.groups, lexical),
                vector_search=vector_search,
            )

        stats = result.stats()
        logger.info(
            f"Document loaded: {stats['chunk_count']} chunks, {stats['group_count']} groups, "
            f"{stats['degraded_groups']} degraded"
        )
        return {**stats, "capabilities": self.capability_flags()}

    async def answer(
        self,
        question: str,
        *,
        conversation: list[dict[str, str]] | None = None,
    ) -> AnswerResult:
        """Answer with the reasoning loop, or with fallback context when no reasoner is set."""
        if self.engine is None:
            return self._record_fallback_answer(question)

        traces: list[ToolTrace] = []
        token = _ACTIVE_TRACES.set(traces)
        try:
            with Timer() as timer:
                result = await self.engine.run(question, conversation=conversation)
        finally:
            _ACTIVE_TRACES.reset(token)

        record = self.trace_store.create_record(
            question=question,
            answer=result.answer,
            mode="reasoning",
            session_id=result.session_id,
            tool_traces=traces,
            event_count=len(result.events),
            iterations=result.iterations,
            latency_ms=timer.elapsed_ms,
            fallback=result.fallback,
            error=result.error,
        )
        return AnswerResult(
            answer=result.answer,
            trace_id=record.trace_id,
            session_id=result.session_id,
            mode="reasoning",
            iterations=result.iterations,
            fallback=result.fallback,
            latency_ms=record.latency_ms,
            tool_calls=result.tool_call_count,
            error=result.error,
        )

    async def retrieve(self, question: str) -> tuple[PlannerResult, str]:
        """Run the multi-hop planner; returns the result and its trace id."""
        with Timer() as timer:
            if self.planner is None:
                result = self._fallback_retrieval(question)
            else:
                result = await self.planner.retrieve(question)

        record = self.trace_store.create_record(
            question=question,
            answer=result.context,
            mode="planner",
            session_id=result.session_id,
            tool_traces=_planner_tool_traces(result),
            event_count=len(result.events),
            iterations=result.rounds,
            latency_ms=timer.elapsed_ms,
            fallback=result.is_fallback,
            error=result.error,
            provenance=[item.ref for item in result.provenance],
        )
        return result, record.trace_id

    def search_keywords(self, keywords: Sequence[str], top_k: int | None = None) -> list[dict[str, Any]]:
        snapshot = self._snapshot
        hits = snapshot.chunk_index.search_keywords(list(keywords), top_k)
        results = []
        for hit in hits:
            chunk = snapshot.corpus.chunks[hit.doc_index]
            results.append(
                {
                    "chunk_id": chunk.chunk_id,
                    "group_id": chunk.group_id,
                    "score": hit.score,
                    "matched_keywords": list(hit.matched_keywords),
                    "text": chunk.text,
                }
            )
        return results

    def _fallback_retrieval(self, question: str) -> PlannerResult:
        session_id = uuid4().hex
        bundle = build_fallback_context(
            question, self._snapshot.corpus, self.settings.planner.fallback_groups
        )
        event = self.events.emit(
            EventType.FALLBACK,
            session_id,
            reason="no reasoning model configured",
            refs=[item.ref for item in bundle.provenance],
        )
        return PlannerResult(
            context=bundle.text,
            provenance=bundle.provenance,
            source="fallback",
            rounds=0,
            phase=PlannerPhase.FALLBACK,
            session_id=session_id,
            events=[event],
        )

    def _record_fallback_answer(self, question: str) -> AnswerResult:
        with Timer() as timer:
            result = self._fallback_retrieval(question)
        answer = result.context or "No document content is available to answer this question."
        record = self.trace_store.create_record(
            question=question,
            answer=answer,
            mode="planner",
            session_id=result.session_id,
            tool_traces=[],
            event_count=len(result.events),
            iterations=0,
            latency_ms=timer.elapsed_ms,
            fallback=True,
            provenance=[item.ref for item in result.provenance],
        )
        return AnswerResult(
            answer=answer,
            trace_id=record.trace_id,
            session_id=result.session_id,
            mode="planner",
            iterations=0,
            fallback=True,
            latency_ms=record.latency_ms,
            provenance=result.provenance,
        )


def _record_tool_trace(trace: ToolTrace) -> None:
    traces = _ACTIVE_TRACES.get()
    if traces is not None:
        traces.append(trace)


def _planner_tool_traces(result: PlannerResult) -> list[ToolTrace]:
    traces: list[ToolTrace] = []
    for event in result.events:
        if event.type is not EventType.TOOL_RESULT:
            continue
        data = dict(event.data)
        name = str(data.pop("tool", "unknown"))
        traces.append(
            ToolTrace(
                name=name,
                input_payload={},
                output_preview=str(data)[:320],
                latency_ms=0.0,
                success=bool(data.get("success", True)),
            )
        )
    return traces
