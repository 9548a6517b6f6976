import asyncio

from docqa.agent.registry import ToolRegistry
from docqa.agent.tools import register_builtin_tools
from docqa.config import AggregationConfig
from docqa.ingest.aggregator import SemanticAggregator
from docqa.lexical.bm25 import BM25Index
from docqa.retrieval.corpus import DocumentCorpus, IndexSnapshot
from docqa.retrieval.vector_store import InMemoryVectorIndex

CHUNKS = [
    "1 Background\nLehman Brothers collapsed in September 2008. ",
    "Figure 1: exposure by sector\nInvestment risk concentrated in mortgage securities. ",
    "Conclusion: regulators raised capital requirements after the crisis. ",
]


def _snapshot(with_vectors: bool = False) -> IndexSnapshot:
    config = AggregationConfig(max_chars=100, min_interval_seconds=0.0, jitter_seconds=0.0)
    result = asyncio.run(SemanticAggregator(config=config).aggregate(CHUNKS))
    vectors = InMemoryVectorIndex() if with_vectors else None
    if vectors is not None:
        vectors.upsert(result.chunks)
    return IndexSnapshot(
        corpus=DocumentCorpus(result.chunks, result.groups),
        chunk_index=BM25Index.from_chunks(result.chunks),
        group_index=BM25Index.from_groups(result.groups),
        vector_search=vectors,
    )


def _registry(snapshot: IndexSnapshot) -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry, lambda: snapshot)
    return registry


def test_builtin_catalogue_is_gated_by_capabilities() -> None:
    registry = _registry(IndexSnapshot())

    plain = {item["name"] for item in registry.get_available_tool_definitions()}
    full = {
        item["name"]
        for item in registry.get_available_tool_definitions(
            has_semantic_groups=True, has_vector_index=True, has_chunks=True
        )
    }

    assert plain == {"grep", "regex_search", "boolean_search"}
    assert full == {
        "vector_search",
        "keyword_search",
        "grep",
        "regex_search",
        "boolean_search",
        "search_semantic_groups",
        "fetch_group_text",
        "fetch",
        "map",
        "list_all_groups",
    }


def test_keyword_search_returns_chunks_with_groups() -> None:
    registry = _registry(_snapshot())

    result = asyncio.run(registry.execute("keyword_search", {"keywords": ["Lehman"], "limit": 2}))

    assert result.success
    top = result.data["results"][0]
    assert top["chunk_id"] == "chunk-0"
    assert top["group_id"] == "group-0"
    assert top["matched_keywords"] == ["Lehman"]


def test_grep_on_empty_document_fails() -> None:
    result = asyncio.run(_registry(IndexSnapshot()).execute("grep", {"query": "risk"}))

    assert not result.success
    assert result.error == "Document content is empty"


def test_fetch_group_text_granularities_and_unknown_group() -> None:
    registry = _registry(_snapshot())

    summary = asyncio.run(
        registry.execute("fetch_group_text", {"groupId": "group-1", "granularity": "summary"})
    )
    full = asyncio.run(registry.execute("fetch_group_text", {"group_id": "group-1", "granularity": "full"}))
    unknown = asyncio.run(registry.execute("fetch_group_text", {"groupId": "group-99"}))

    assert summary.success and summary.data["granularity"] == "summary"
    assert full.data["text"].startswith("Figure 1: exposure by sector")
    assert len(summary.data["text"]) <= 800
    assert not unknown.success and "group-99" in (unknown.error or "")


def test_map_and_fetch_expose_structure() -> None:
    registry = _registry(_snapshot())

    doc_map = asyncio.run(registry.execute("map", {}))
    fetched = asyncio.run(registry.execute("fetch", {"groupId": "group-1"}))

    assert doc_map.data["total_groups"] == 3
    assert doc_map.data["map"][0]["structure"]["sections"] == ["1 Background"]
    assert fetched.data["structure"]["figures"] == ["Figure 1: exposure by sector"]


def test_search_semantic_groups_and_list() -> None:
    registry = _registry(_snapshot())

    found = asyncio.run(registry.execute("search_semantic_groups", {"query": "capital requirements"}))
    listing = asyncio.run(registry.execute("list_all_groups", {"includeDigest": True}))

    assert found.data["results"][0]["group_id"] == "group-2"
    assert listing.data["count"] == 3
    assert "digest" in listing.data["groups"][0]


def test_vector_search_when_configured() -> None:
    with_vectors = _registry(_snapshot(with_vectors=True))
    without = _registry(_snapshot())

    hits = asyncio.run(with_vectors.execute("vector_search", {"query": "mortgage securities risk"}))
    missing = asyncio.run(without.execute("vector_search", {"query": "mortgage"}))

    assert hits.success
    assert "chunk-1" in [item["chunk_id"] for item in hits.data["results"]]
    assert not missing.success


def test_boolean_search_tool() -> None:
    result = asyncio.run(
        _registry(_snapshot()).execute("boolean_search", {"query": "Investment AND mortgage"})
    )

    assert result.success and result.data["count"] >= 1
