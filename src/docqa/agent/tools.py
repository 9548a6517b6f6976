"""Built-in retrieval tools exposed to the planner and reasoning engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from docqa.agent.registry import CHUNKS, SEMANTIC_GROUPS, VECTOR_INDEX, ToolRegistry, ToolSpec
from docqa.errors import ToolExecutionError
from docqa.ingest.aggregator import quick_match
from docqa.retrieval import text_search
from docqa.retrieval.corpus import GRANULARITY_CAPS, IndexSnapshot
from docqa.types import ToolResult

Granularity = Literal["summary", "digest", "full"]


class _ToolInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VectorSearchInput(_ToolInput):
    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=30)


class KeywordSearchInput(_ToolInput):
    keywords: list[str] = Field(min_length=1)
    limit: int = Field(default=8, ge=1, le=30)


class GrepInput(_ToolInput):
    query: str = Field(min_length=1)
    limit: int = Field(default=20, ge=1, le=50)
    context: int = Field(default=2000, ge=0, le=5000)
    case_insensitive: bool = Field(default=True, alias="caseInsensitive")


class RegexSearchInput(_ToolInput):
    pattern: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=50)
    context: int = Field(default=1500, ge=0, le=5000)


class BooleanSearchInput(_ToolInput):
    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=50)
    context: int = Field(default=1500, ge=0, le=5000)


class SearchGroupsInput(_ToolInput):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)


class FetchGroupTextInput(_ToolInput):
    group_id: str = Field(min_length=1, alias="groupId")
    granularity: Granularity = "digest"


class FetchInput(_ToolInput):
    group_id: str = Field(min_length=1, alias="groupId")


class MapInput(_ToolInput):
    limit: int = Field(default=50, ge=1, le=200)
    include_structure: bool = Field(default=True, alias="includeStructure")


class ListGroupsInput(_ToolInput):
    limit: int = Field(default=20, ge=1, le=200)
    include_digest: bool = Field(default=False, alias="includeDigest")


def register_builtin_tools(
    registry: ToolRegistry,
    snapshot: Callable[[], IndexSnapshot],
    *,
    vector_threshold: float = 0.0,
) -> None:
    """Register the default retrieval tool set.

    Tools read the current `IndexSnapshot` on every call, so a rebuilt corpus
    is picked up without re-registering anything.
    """

    async def _vector_search(data: VectorSearchInput) -> ToolResult:
        current = snapshot()
        if current.vector_search is None:
            return ToolResult.fail("Vector search is not configured; use keyword_search or grep")
        hits = await current.vector_search.search(
            data.query, current.corpus.chunks, data.limit, vector_threshold
        )
        return ToolResult.ok(
            count=len(hits),
            results=[
                {"chunk_id": hit.id, "group_id": hit.group_id, "score": hit.score, "text": hit.text}
                for hit in hits
            ],
        )

    async def _keyword_search(data: KeywordSearchInput) -> ToolResult:
        current = snapshot()
        if current.chunk_index.document_count:
            hits = current.chunk_index.search_keywords(data.keywords, data.limit, 0.0)
            results = []
            for hit in hits:
                chunk = current.corpus.chunks[hit.doc_index]
                results.append(
                    {
                        "chunk_id": chunk.chunk_id,
                        "group_id": chunk.group_id,
                        "score": hit.score,
                        "text": chunk.text,
                        "matched_keywords": list(hit.matched_keywords),
                    }
                )
            return ToolResult.ok(count=len(results), results=results)
        if current.group_index.document_count:
            hits = current.group_index.search_keywords(data.keywords, data.limit, 0.0)
            results = [
                {
                    "group_id": hit.doc_id,
                    "score": hit.score,
                    "text": current.corpus.groups[hit.doc_index].digest,
                    "matched_keywords": list(hit.matched_keywords),
                }
                for hit in hits
            ]
            return ToolResult.ok(count=len(results), results=results)
        return ToolResult.fail("No chunks have been indexed; use grep")

    def _document_text() -> str:
        text = snapshot().corpus.full_text
        if not text:
            raise ToolExecutionError("Document content is empty")
        return text

    async def _grep(data: GrepInput) -> ToolResult:
        matches = text_search.grep(
            _document_text(),
            data.query,
            limit=data.limit,
            context=data.context,
            case_insensitive=data.case_insensitive,
        )
        return ToolResult.ok(count=len(matches), matches=matches)

    async def _regex_search(data: RegexSearchInput) -> ToolResult:
        matches = text_search.regex_search(
            _document_text(), data.pattern, limit=data.limit, context=data.context
        )
        return ToolResult.ok(count=len(matches), matches=matches)

    async def _boolean_search(data: BooleanSearchInput) -> ToolResult:
        matches = text_search.boolean_search(
            _document_text(), data.query, limit=data.limit, context=data.context
        )
        return ToolResult.ok(count=len(matches), matches=matches)

    async def _search_groups(data: SearchGroupsInput) -> ToolResult:
        groups = snapshot().corpus.groups
        if not groups:
            return ToolResult.fail("No semantic groups; use grep or vector_search")
        matched = quick_match(data.query, groups)[: data.limit]
        return ToolResult.ok(
            count=len(matched),
            results=[
                {
                    "group_id": group.group_id,
                    "summary": group.summary,
                    "keywords": list(group.keywords),
                    "char_count": group.char_count,
                }
                for group in matched
            ],
        )

    async def _fetch_group_text(data: FetchGroupTextInput) -> ToolResult:
        corpus = snapshot().corpus
        if corpus.group(data.group_id) is None:
            return ToolResult.fail(f"Unknown group: {data.group_id}")
        fetched = corpus.fetch_group_text(data.group_id, data.granularity)
        return ToolResult.ok(**fetched, char_count=len(fetched["text"]))

    async def _fetch(data: FetchInput) -> ToolResult:
        group = snapshot().corpus.group(data.group_id)
        if group is None:
            return ToolResult.fail(f"Unknown group: {data.group_id}")
        return ToolResult.ok(
            group_id=group.group_id,
            text=group.full_text[: GRANULARITY_CAPS["full"]],
            structure=group.structure.as_dict(),
            keywords=list(group.keywords),
            summary=group.summary,
            digest=group.digest,
            char_count=group.char_count,
        )

    async def _map(data: MapInput) -> ToolResult:
        corpus = snapshot().corpus
        if not corpus.groups:
            return ToolResult.fail("No semantic groups; use grep or vector_search")
        entries = corpus.list_groups(limit=data.limit)
        if data.include_structure:
            for entry, group in zip(entries, corpus.groups):
                outline = group.structure.as_dict()
                entry["structure"] = {
                    key: outline[key] for key in ("sections", "figures", "formulas", "tables")
                }
        return ToolResult.ok(
            total_groups=len(corpus.groups),
            returned_groups=len(entries),
            doc_gist=corpus.doc_gist,
            map=entries,
        )

    async def _list_groups(data: ListGroupsInput) -> ToolResult:
        groups = snapshot().corpus.list_groups(data.limit, data.include_digest)
        return ToolResult.ok(count=len(groups), groups=groups)

    for spec in (
        ToolSpec(
            name="vector_search",
            description=(
                "Semantic search that understands synonyms and related concepts. "
                "Best for conceptual or exploratory questions."
            ),
            args_schema=VectorSearchInput,
            handler=_vector_search,
            requires=[VECTOR_INDEX],
            tags=["search"],
        ),
        ToolSpec(
            name="keyword_search",
            description="Weighted multi-keyword BM25 search for exact keyword combinations.",
            args_schema=KeywordSearchInput,
            handler=_keyword_search,
            requires=[SEMANTIC_GROUPS, CHUNKS],
            tags=["search"],
        ),
        ToolSpec(
            name="grep",
            description=(
                "Literal text search with surrounding context. "
                'Separate alternatives with "|", e.g. "term1|term2".'
            ),
            args_schema=GrepInput,
            handler=_grep,
            tags=["search"],
        ),
        ToolSpec(
            name="regex_search",
            description="Regular-expression search for formatted items such as dates, ids or captions.",
            args_schema=RegexSearchInput,
            handler=_regex_search,
            tags=["search"],
        ),
        ToolSpec(
            name="boolean_search",
            description='Boolean search with AND/OR/NOT, e.g. "(A OR B) AND C NOT D".',
            args_schema=BooleanSearchInput,
            handler=_boolean_search,
            tags=["search"],
        ),
        ToolSpec(
            name="search_semantic_groups",
            description="Find semantic groups related to a query; returns ids, summaries and keywords.",
            args_schema=SearchGroupsInput,
            handler=_search_groups,
            requires=[SEMANTIC_GROUPS],
            tags=["groups"],
        ),
        ToolSpec(
            name="fetch_group_text",
            description="Fetch a group's text at granularity summary, digest or full.",
            args_schema=FetchGroupTextInput,
            handler=_fetch_group_text,
            requires=[SEMANTIC_GROUPS],
            tags=["groups"],
        ),
        ToolSpec(
            name="fetch",
            description="Fetch everything about one group: full text, structure, keywords and summary.",
            args_schema=FetchInput,
            handler=_fetch,
            requires=[SEMANTIC_GROUPS],
            tags=["groups"],
        ),
        ToolSpec(
            name="map",
            description="Document map: every group's id, size, keywords, summary and outline.",
            args_schema=MapInput,
            handler=_map,
            requires=[SEMANTIC_GROUPS],
            tags=["groups"],
        ),
        ToolSpec(
            name="list_all_groups",
            description="Overview of all groups (id, keywords, summary).",
            args_schema=ListGroupsInput,
            handler=_list_groups,
            requires=[SEMANTIC_GROUPS],
            tags=["groups"],
        ),
    ):
        registry.register(spec)
