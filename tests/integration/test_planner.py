import asyncio
import json

from docqa.agent.events import EventType
from docqa.agent.planner import MultiHopPlanner, PlannerPhase
from docqa.config import AggregationConfig, PlannerConfig
from docqa.errors import TransientServiceError
from docqa.ingest.aggregator import SemanticAggregator
from docqa.lexical.bm25 import BM25Index
from docqa.retrieval.corpus import DocumentCorpus, IndexSnapshot

CHUNKS = [
    "1 Background\nLehman Brothers collapsed in September 2008.",
    "Figure 1: exposure by sector\nInvestment risk concentrated in mortgage securities.",
    "Conclusion: regulators raised capital requirements after the crisis.",
]


class ScriptedLLM:
    """Replays canned planner replies; exception instances are raised instead."""

    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def invoke(self, system_prompt, history, user_prompt, config=None) -> str:
        self.prompts.append(user_prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _plan(*operations: dict, final: bool = False) -> str:
    return json.dumps({"operations": list(operations), "final": final})


def _fetch(group_id: str, granularity: str) -> dict:
    return {"tool": "fetch_group", "args": {"groupId": group_id, "granularity": granularity}}


def _snapshot(vector_search=None) -> IndexSnapshot:
    config = AggregationConfig(max_chars=100, min_interval_seconds=0.0, jitter_seconds=0.0)
    result = asyncio.run(SemanticAggregator(config=config).aggregate(CHUNKS))
    return IndexSnapshot(
        corpus=DocumentCorpus(result.chunks, result.groups),
        chunk_index=BM25Index.from_chunks(result.chunks),
        group_index=BM25Index.from_groups(result.groups),
        vector_search=vector_search,
    )


def _planner(llm: ScriptedLLM, vector_search=None, **config) -> MultiHopPlanner:
    snapshot = _snapshot(vector_search)
    return MultiHopPlanner(llm, lambda: snapshot, config=PlannerConfig(**config))


def _types(result) -> list[EventType]:
    return [event.type for event in result.events]


def test_empty_first_plan_uses_fallback_context() -> None:
    planner = _planner(ScriptedLLM([_plan()]))

    result = asyncio.run(planner.retrieve("What capital requirements were raised?"))

    assert result.is_fallback
    assert result.phase is PlannerPhase.FALLBACK
    assert result.provenance[0].ref == "group-2"
    assert "[group-2]" in result.context
    assert _types(result)[-1] is EventType.FALLBACK


def test_fallback_without_match_uses_leading_groups() -> None:
    planner = _planner(ScriptedLLM([_plan()]), fallback_groups=2)

    result = asyncio.run(planner.retrieve("zzz"))

    assert [item.ref for item in result.provenance] == ["group-0", "group-1"]
    assert result.context


def test_fetch_is_memoized_and_upgraded_in_place() -> None:
    llm = ScriptedLLM(
        [
            _plan(_fetch("group-0", "summary"), _fetch("group-1", "digest"), _fetch("group-1", "summary")),
            _plan(_fetch("group-0", "full"), final=True),
        ]
    )
    planner = _planner(llm)

    result = asyncio.run(planner.retrieve("What happened to Lehman?"))

    assert result.source == "planner" and result.rounds == 2
    assert _types(result).count(EventType.TOOL_SKIP) == 1
    assert [(item.ref, item.granularity) for item in result.provenance] == [
        ("group-0", "full"),
        ("group-1", "digest"),
    ]
    assert result.context.startswith("[group-0 - full]")
    assert "[Already fetched] group-0 (summary), group-1 (digest)" in llm.prompts[1]


def test_keyword_search_feeds_search_history() -> None:
    llm = ScriptedLLM(
        [
            _plan({"tool": "keyword_search", "args": {"keywords": ["Lehman"], "limit": 3}}),
            _plan(),
        ]
    )
    planner = _planner(llm)

    result = asyncio.run(planner.retrieve("When did Lehman collapse?"))

    assert result.source == "planner"
    assert "[keyword hit 1] (chunk chunk-0, group group-0, matched: Lehman)" in result.context
    assert '- keyword_search "Lehman" -> 1 results' in llm.prompts[1]
    assert _types(result)[-1] is EventType.COMPLETE


def test_final_flag_stops_after_round() -> None:
    llm = ScriptedLLM([_plan(_fetch("group-1", "digest"), final=True), _plan(_fetch("group-2", "digest"))])
    planner = _planner(llm)

    result = asyncio.run(planner.retrieve("What was the exposure?"))

    assert result.rounds == 1
    assert len(llm.prompts) == 1
    assert [item.ref for item in result.provenance] == ["group-1"]


def test_max_rounds_bounds_the_loop() -> None:
    llm = ScriptedLLM([_plan(_fetch("group-1", "summary"))])
    planner = _planner(llm, max_rounds=2)

    result = asyncio.run(planner.retrieve("What was the exposure?"))

    assert result.rounds == 2
    assert len(llm.prompts) == 2
    assert result.source == "planner"
    warnings = [event for event in result.events if event.type is EventType.WARNING]
    assert warnings[0].data["message"] == "stopped after max_rounds=2"


def test_unparseable_plan_falls_back() -> None:
    planner = _planner(ScriptedLLM(["I would search the document first."]))

    result = asyncio.run(planner.retrieve("What capital requirements were raised?"))

    assert result.is_fallback
    assert result.error
    assert EventType.WARNING in _types(result)
    assert result.context


def test_unknown_operation_is_a_parse_failure() -> None:
    planner = _planner(ScriptedLLM([_plan({"tool": "delete_everything", "args": {}})]))

    result = asyncio.run(planner.retrieve("What capital requirements were raised?"))

    assert result.is_fallback
    assert EventType.PLAN not in _types(result)


def test_vector_search_without_provider_reports_failure() -> None:
    llm = ScriptedLLM([_plan({"tool": "vector_search", "args": {"query": "mortgage"}}, final=True)])
    planner = _planner(llm)

    result = asyncio.run(planner.retrieve("mortgage exposure"))

    failed = [event for event in result.events if event.type is EventType.TOOL_RESULT]
    assert failed[0].data["success"] is False
    assert failed[0].data["error"] == "vector search is not configured"
    assert result.is_fallback


def test_llm_failure_after_progress_keeps_context() -> None:
    llm = ScriptedLLM([_plan(_fetch("group-1", "digest")), TransientServiceError("503")])
    planner = _planner(llm)

    result = asyncio.run(planner.retrieve("What was the exposure?"))

    assert result.source == "planner"
    assert result.error == "503"
    assert EventType.ERROR in _types(result)
    assert [item.ref for item in result.provenance] == ["group-1"]


class UnreachableVectorIndex:
    async def search(self, query, chunks=None, top_k=10, threshold=0.0):
        raise ConnectionError("vector backend unreachable")


def test_vector_provider_crash_does_not_abort_the_round() -> None:
    llm = ScriptedLLM(
        [
            _plan(
                {"tool": "vector_search", "args": {"query": "mortgage"}},
                _fetch("group-0", "digest"),
                final=True,
            )
        ]
    )
    planner = _planner(llm, vector_search=UnreachableVectorIndex())

    result = asyncio.run(planner.retrieve("mortgage exposure"))

    results = [event.data for event in result.events if event.type is EventType.TOOL_RESULT]
    assert results[0]["success"] is False
    assert results[0]["error"] == "vector backend unreachable"
    assert results[1]["success"] is True
    assert result.source == "planner"
    assert [item.ref for item in result.provenance] == ["group-0"]


def test_unexpected_llm_exception_falls_back() -> None:
    planner = _planner(ScriptedLLM([RuntimeError("socket closed")]))

    result = asyncio.run(planner.retrieve("What capital requirements were raised?"))

    assert result.is_fallback
    assert result.error == "socket closed"
    assert EventType.ERROR in _types(result)
    assert result.context
