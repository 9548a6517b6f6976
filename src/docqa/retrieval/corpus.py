"""Read-only document snapshot shared by tools, planner and reasoning engine."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from docqa.lexical.bm25 import BM25Index
from docqa.retrieval.vector_store import VectorSearchProvider
from docqa.types import GRANULARITIES, Chunk, SemanticGroup

GRANULARITY_CAPS = {"summary": 800, "digest": 3000, "full": 8000}


class CorpusAccessor(Protocol):
    @property
    def chunks(self) -> Sequence[Chunk]: ...

    @property
    def groups(self) -> Sequence[SemanticGroup]: ...

    @property
    def full_text(self) -> str: ...

    def group_of(self, chunk_id: str) -> SemanticGroup | None: ...

    def fetch_group_text(self, group_id: str, granularity: str = "digest") -> dict[str, Any]: ...


class DocumentCorpus:
    """Immutable snapshot of one document's chunks and semantic groups."""

    def __init__(
        self,
        chunks: Sequence[Chunk] = (),
        groups: Sequence[SemanticGroup] = (),
        *,
        doc_gist: str = "",
    ) -> None:
        self._chunks = tuple(chunks)
        self._groups = tuple(groups)
        self._groups_by_id = {group.group_id: group for group in self._groups}
        if len(self._groups_by_id) != len(self._groups):
            raise ValueError("group ids must be unique")
        self._chunks_by_id = {chunk.chunk_id: chunk for chunk in self._chunks}
        self.doc_gist = doc_gist

    @property
    def chunks(self) -> tuple[Chunk, ...]:
        return self._chunks

    @property
    def groups(self) -> tuple[SemanticGroup, ...]:
        return self._groups

    @property
    def full_text(self) -> str:
        if self._chunks:
            return "\n\n".join(chunk.text for chunk in self._chunks)
        return "\n\n".join(group.full_text for group in self._groups)

    @property
    def has_groups(self) -> bool:
        return bool(self._groups)

    @property
    def has_chunks(self) -> bool:
        return bool(self._chunks)

    def group(self, group_id: str) -> SemanticGroup | None:
        return self._groups_by_id.get(group_id)

    def chunk(self, chunk_id: str) -> Chunk | None:
        return self._chunks_by_id.get(chunk_id)

    def group_of(self, chunk_id: str) -> SemanticGroup | None:
        chunk = self._chunks_by_id.get(chunk_id)
        if chunk is None or chunk.group_id is None:
            return None
        return self._groups_by_id.get(chunk.group_id)

    def fetch_group_text(self, group_id: str, granularity: str = "digest") -> dict[str, Any]:
        """Return group text at `granularity`, falling back to coarser fields and capped in length.

        Unknown groups yield empty text rather than an error.
        """
        gran = (granularity or "digest").lower()
        if gran not in GRANULARITIES:
            gran = "digest"
        group = self._groups_by_id.get(group_id)
        if group is None:
            return {"group_id": group_id, "granularity": gran, "text": ""}

        if gran == "full":
            text = group.full_text or group.digest or group.summary
        elif gran == "summary":
            text = group.summary
        else:
            text = group.digest or group.summary or group.full_text
        return {
            "group_id": group_id,
            "granularity": gran,
            "text": text[: GRANULARITY_CAPS[gran]],
        }

    def list_groups(self, limit: int = 20, include_digest: bool = False) -> list[dict[str, Any]]:
        listing: list[dict[str, Any]] = []
        for group in self._groups[:limit]:
            item: dict[str, Any] = {
                "group_id": group.group_id,
                "char_count": group.char_count,
                "keywords": list(group.keywords),
                "summary": group.summary,
            }
            if include_digest:
                item["digest"] = group.digest[:800]
            listing.append(item)
        return listing


@dataclass(frozen=True, slots=True)
class IndexSnapshot:
    """A corpus plus the indexes built over it; swapped wholesale on rebuild."""

    corpus: DocumentCorpus = field(default_factory=DocumentCorpus)
    chunk_index: BM25Index = field(default_factory=BM25Index)
    group_index: BM25Index = field(default_factory=BM25Index)
    vector_search: VectorSearchProvider | None = None

    @property
    def has_semantic_groups(self) -> bool:
        return self.corpus.has_groups

    @property
    def has_chunks(self) -> bool:
        return self.corpus.has_chunks

    @property
    def has_vector_index(self) -> bool:
        return self.vector_search is not None
