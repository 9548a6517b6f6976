import asyncio
import json

from docqa.agent.budget import TokenBudgetManager
from docqa.agent.events import EventType
from docqa.agent.react import ReasoningEngine, ReasoningPhase
from docqa.agent.registry import ToolRegistry
from docqa.agent.tools import register_builtin_tools
from docqa.config import AgentConfig, AggregationConfig, Settings, TokenBudgetConfig
from docqa.errors import PermanentServiceError
from docqa.ingest.aggregator import SemanticAggregator
from docqa.lexical.bm25 import BM25Index
from docqa.retrieval.corpus import DocumentCorpus, IndexSnapshot
from docqa.retrieval.vector_store import InMemoryVectorIndex
from docqa.service import Capabilities, DocQAService

CHUNKS = [
    "1 Background\nLehman Brothers collapsed in September 2008.",
    "Figure 1: exposure by sector\nInvestment risk concentrated in mortgage securities.",
    "Conclusion: regulators raised capital requirements after the crisis.",
]


class ScriptedLLM:
    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def invoke(self, system_prompt, history, user_prompt, config=None) -> str:
        self.prompts.append(user_prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _answer(text: str) -> str:
    return json.dumps({"thought": "enough context", "action": "answer", "answer": text})


def _use_tool(tool: str, **params) -> str:
    return json.dumps({"thought": "need more", "action": "use_tool", "tool": tool, "params": params})


def _engine(llm: ScriptedLLM, config: AgentConfig | None = None) -> ReasoningEngine:
    aggregation = AggregationConfig(max_chars=100, min_interval_seconds=0.0, jitter_seconds=0.0)
    result = asyncio.run(SemanticAggregator(config=aggregation).aggregate(CHUNKS))
    snapshot = IndexSnapshot(
        corpus=DocumentCorpus(result.chunks, result.groups),
        chunk_index=BM25Index.from_chunks(result.chunks),
        group_index=BM25Index.from_groups(result.groups),
    )
    registry = ToolRegistry()
    register_builtin_tools(registry, lambda: snapshot)
    return ReasoningEngine(llm, registry, lambda: snapshot, config=config)


def _types(result) -> list[EventType]:
    return [event.type for event in result.events]


def test_immediate_answer_takes_one_iteration() -> None:
    llm = ScriptedLLM([_answer("Lehman collapsed in September 2008.")])

    result = asyncio.run(_engine(llm).run("When did Lehman collapse?"))

    assert result.answer == "Lehman collapsed in September 2008."
    assert result.iterations == 1
    assert result.phase is ReasoningPhase.ANSWER
    assert not result.fallback
    assert _types(result)[0] is EventType.SESSION_START
    assert _types(result)[-2:] == [EventType.FINAL_ANSWER, EventType.SESSION_COMPLETE]


def test_tool_result_reaches_next_prompt() -> None:
    llm = ScriptedLLM([_use_tool("grep", query="Lehman"), _answer("September 2008")])

    result = asyncio.run(_engine(llm).run("When did Lehman collapse?"))

    assert result.iterations == 2
    assert result.tool_call_count == 1
    assert "[Tool: grep]" in llm.prompts[1]
    assert "Lehman Brothers collapsed" in result.context


def test_tool_loop_stops_at_max_iterations_with_fallback_answer() -> None:
    llm = ScriptedLLM([_use_tool("grep", query="mortgage")])
    engine = _engine(llm, AgentConfig(max_iterations=3))

    result = asyncio.run(engine.run("What was the exposure?"))

    assert len(llm.prompts) == 3
    assert result.iterations == 3
    assert result.fallback
    assert result.phase is ReasoningPhase.MAX_ITERATIONS_FALLBACK
    assert result.answer.startswith("After 3 reasoning iterations")
    assert EventType.MAX_ITERATIONS_REACHED in _types(result)
    assert "final iteration" in llm.prompts[-1].lower()
    assert "repeat" in llm.prompts[-1].lower()


def test_parallel_calls_merge_in_request_order() -> None:
    parallel = json.dumps(
        {
            "thought": "look up both",
            "action": "use_tool",
            "tool_calls": [
                {"tool": "fetch_group_text", "params": {"groupId": "group-2"}},
                {"tool": "grep", "params": {"query": "Lehman"}},
            ],
        }
    )
    llm = ScriptedLLM([parallel, _answer("done")])

    result = asyncio.run(_engine(llm).run("Summarize the document"))

    assert [call.tool for call in result.tool_calls] == ["fetch_group_text", "grep"]
    assert result.context.index("[Tool: fetch_group_text]") < result.context.index("[Tool: grep]")
    starts = [event for event in result.events if event.type is EventType.TOOL_CALL_START]
    assert all(event.data["parallel"] for event in starts)


def test_unknown_tool_is_reported_in_context() -> None:
    llm = ScriptedLLM([_use_tool("sql_query", query="select 1"), _answer("no data")])

    result = asyncio.run(_engine(llm).run("Anything?"))

    assert "Error: Unknown tool: sql_query" in result.context
    assert not result.tool_calls[0].result.success


def test_context_is_pruned_to_budget() -> None:
    limit = 60
    llm = ScriptedLLM([_use_tool("fetch_group_text", groupId="group-1", granularity="full")])
    config = AgentConfig(max_iterations=3, budget=TokenBudgetConfig(context_tokens=limit))

    result = asyncio.run(_engine(llm, config).run("What was the exposure?"))

    pruned = [event for event in result.events if event.type is EventType.CONTEXT_PRUNED]
    assert pruned
    assert all(event.data["after"] <= limit for event in pruned)
    assert TokenBudgetManager.estimate(result.context) <= limit


def test_llm_failure_aborts_with_error() -> None:
    llm = ScriptedLLM([PermanentServiceError("invalid api key", status_code=401)])

    result = asyncio.run(_engine(llm).run("When did Lehman collapse?"))

    assert result.error == "invalid api key"
    assert result.answer == ""
    assert result.phase is ReasoningPhase.ERROR
    assert _types(result)[-1] is EventType.ERROR


def test_service_answer_records_tool_traces() -> None:
    llm = ScriptedLLM([_use_tool("keyword_search", keywords=["Lehman"]), _answer("September 2008")])
    settings = Settings()
    settings.aggregation = AggregationConfig(max_chars=100, min_interval_seconds=0.0, jitter_seconds=0.0)
    service = DocQAService(Capabilities(reasoner=llm), settings)

    asyncio.run(service.load_chunks(CHUNKS))
    result = asyncio.run(service.answer("When did Lehman collapse?"))

    assert result.answer == "September 2008"
    assert result.mode == "reasoning"
    assert result.tool_calls == 1
    record = service.trace_store.get(result.trace_id)
    assert [trace.name for trace in record.tool_traces] == ["keyword_search"]
    assert record.iterations == 2


def test_service_without_reasoner_answers_from_fallback() -> None:
    settings = Settings()
    settings.aggregation = AggregationConfig(max_chars=100, min_interval_seconds=0.0, jitter_seconds=0.0)
    service = DocQAService(settings=settings)

    asyncio.run(service.load_chunks(CHUNKS))
    result = asyncio.run(service.answer("What capital requirements were raised?"))

    assert result.fallback and result.mode == "planner"
    assert "capital requirements" in result.answer
    assert result.provenance[0].ref == "group-2"


def test_reload_does_not_leak_into_held_snapshot() -> None:
    service = DocQAService(Capabilities(vector_search=InMemoryVectorIndex()))

    asyncio.run(service.load_chunks(["apples grow on orchard trees"]))
    held = service.snapshot()
    asyncio.run(service.load_chunks(["submarines dive beneath the ocean"]))

    old_hits = asyncio.run(held.vector_search.search("submarines ocean", held.corpus.chunks, 5, 0.0))
    current = service.snapshot()
    new_hits = asyncio.run(current.vector_search.search("submarines ocean", current.corpus.chunks, 5, 0.0))

    assert all("submarines" not in hit.text for hit in old_hits)
    assert new_hits[0].text == "submarines dive beneath the ocean"
    assert held.vector_search is not current.vector_search


def test_unexpected_llm_exception_aborts_with_error_event() -> None:
    llm = ScriptedLLM([_use_tool("grep", query="Lehman"), ValueError("malformed completion payload")])

    result = asyncio.run(_engine(llm).run("When did Lehman collapse?"))

    assert result.error == "malformed completion payload"
    assert result.phase is ReasoningPhase.ERROR
    assert result.iterations == 2
    assert result.tool_call_count == 1
    assert _types(result)[-1] is EventType.ERROR
