import json

from fastapi.testclient import TestClient

from docqa.api.main import create_app
from docqa.config import AggregationConfig, Settings
from docqa.service import Capabilities, DocQAService

CHUNKS = [
    "1 Background\nLehman Brothers collapsed in September 2008.",
    "Figure 1: exposure by sector\nInvestment risk concentrated in mortgage securities.",
    "Conclusion: regulators raised capital requirements after the crisis.",
]


class ScriptedLLM:
    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)

    async def invoke(self, system_prompt, history, user_prompt, config=None) -> str:
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


def _settings() -> Settings:
    settings = Settings()
    settings.aggregation = AggregationConfig(max_chars=100, min_interval_seconds=0.0, jitter_seconds=0.0)
    return settings


def test_api_load_query_trace_metrics() -> None:
    llm = ScriptedLLM(
        [
            json.dumps({"action": "use_tool", "tool": "keyword_search", "params": {"keywords": ["Lehman"]}}),
            json.dumps({"action": "answer", "answer": "Lehman collapsed in September 2008."}),
        ]
    )
    client = TestClient(create_app(DocQAService(Capabilities(reasoner=llm), _settings())))

    load_resp = client.post("/documents", json={"chunks": CHUNKS})
    assert load_resp.status_code == 200
    assert load_resp.json()["group_count"] == 3
    assert load_resp.json()["capabilities"]["semantic_groups"]

    query_resp = client.post("/query", json={"question": "When did Lehman collapse?"})
    assert query_resp.status_code == 200
    payload = query_resp.json()
    assert payload["answer"] == "Lehman collapsed in September 2008."
    assert payload["mode"] == "reasoning"
    assert payload["iterations"] == 2

    trace_resp = client.get(f"/traces/{payload['trace_id']}")
    assert trace_resp.status_code == 200
    assert trace_resp.json()["tool_traces"][0]["name"] == "keyword_search"

    search_resp = client.post("/search/keywords", json={"keywords": ["capital"], "top_k": 2})
    assert search_resp.status_code == 200
    assert search_resp.json()["items"][0]["chunk_id"] == "chunk-2"

    assert client.get("/traces/missing").status_code == 404

    metrics = client.get("/metrics").json()
    assert metrics["total_requests"] == 1
    assert metrics["total_tool_calls"] == 1

    health = client.get("/health").json()
    assert health["answer_mode"] == "reasoning"
    assert health["trace_count"] == 1


def test_api_retrieve_with_planner() -> None:
    plan = json.dumps(
        {"operations": [{"tool": "fetch_group", "args": {"groupId": "group-2"}}], "final": True}
    )
    client = TestClient(create_app(DocQAService(Capabilities(reasoner=ScriptedLLM([plan])), _settings())))
    client.post("/documents", json={"chunks": CHUNKS})

    resp = client.post("/retrieve", json={"question": "What changed after the crisis?"})

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["source"] == "planner"
    assert payload["provenance"] == [{"source": "group", "ref": "group-2", "granularity": "digest"}]
    assert payload["context"].startswith("[group-2 - digest]")
    assert payload["events"][-1]["type"] == "complete"


def test_api_without_reasoner_uses_fallback() -> None:
    client = TestClient(create_app(DocQAService(settings=_settings())))

    assert client.post("/query", json={"question": "anything"}).status_code == 409

    client.post("/documents", json={"chunks": CHUNKS})
    query = client.post("/query", json={"question": "What capital requirements were raised?"}).json()
    retrieve = client.post("/retrieve", json={"question": "capital requirements"}).json()

    assert query["fallback"] and query["mode"] == "planner"
    assert "capital requirements" in query["answer"]
    assert retrieve["source"] == "fallback"
    assert client.get("/health").json()["answer_mode"] == "fallback"
    assert client.get("/metrics").json()["fallback_rate"] == 1.0
