"""Vector search capability and an in-memory reference index."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from math import sqrt
from typing import Protocol

from loguru import logger

from docqa.ingest.embedder import Embedder, HashingEmbedder
from docqa.types import Chunk, VectorHit


class VectorSearchProvider(Protocol):
    """External semantic search over chunks."""

    async def search(
        self,
        query: str,
        chunks: Sequence[Chunk] | None = None,
        top_k: int = 10,
        threshold: float = 0.0,
    ) -> list[VectorHit]:
        """Return hits ranked by similarity, best first."""


@dataclass(slots=True)
class _StoredVector:
    chunk: Chunk
    embedding: list[float]


class InMemoryVectorIndex:
    """Deterministic cosine-similarity index used for tests and local runs.

    `search` never writes to the index: chunks it has not stored, or whose
    text differs from the stored copy, are embedded for that call only.
    """

    def __init__(self, embedder: Embedder | None = None) -> None:
        self.embedder = embedder or HashingEmbedder()
        self._store: dict[str, _StoredVector] = {}

    def __len__(self) -> int:
        return len(self._store)

    def upsert(self, chunks: Sequence[Chunk]) -> None:
        embeddings = self.embedder.embed_documents([chunk.text for chunk in chunks])
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            self._store[chunk.chunk_id] = _StoredVector(chunk=chunk, embedding=embedding)
        logger.info(f"Vector index holds {len(self._store)} chunks")

    def rebuilt(self, chunks: Sequence[Chunk]) -> "InMemoryVectorIndex":
        """Return a new index over `chunks` sharing this index's embedder."""
        index = InMemoryVectorIndex(self.embedder)
        index.upsert(chunks)
        return index

    async def search(
        self,
        query: str,
        chunks: Sequence[Chunk] | None = None,
        top_k: int = 10,
        threshold: float = 0.0,
    ) -> list[VectorHit]:
        candidates = self._candidates(chunks) if chunks else list(self._store.values())
        if not candidates or not query.strip():
            return []

        query_embedding = self.embedder.embed_query(query)
        scored = [
            (_cosine_similarity(query_embedding, record.embedding), position, record)
            for position, record in enumerate(candidates)
        ]
        ranked = sorted(
            (item for item in scored if item[0] > threshold),
            key=lambda item: (-item[0], item[1]),
        )
        return [
            VectorHit(
                id=record.chunk.chunk_id,
                score=score,
                text=record.chunk.text,
                group_id=record.chunk.group_id,
            )
            for score, _, record in ranked[:top_k]
        ]

    def _candidates(self, chunks: Sequence[Chunk]) -> list[_StoredVector]:
        candidates: list[_StoredVector | None] = []
        missing: list[tuple[int, Chunk]] = []
        for chunk in chunks:
            stored = self._store.get(chunk.chunk_id)
            if stored is not None and stored.chunk.text == chunk.text:
                candidates.append(_StoredVector(chunk=chunk, embedding=stored.embedding))
            else:
                missing.append((len(candidates), chunk))
                candidates.append(None)
        if missing:
            embeddings = self.embedder.embed_documents([chunk.text for _, chunk in missing])
            for (position, chunk), embedding in zip(missing, embeddings, strict=True):
                candidates[position] = _StoredVector(chunk=chunk, embedding=embedding)
        return [record for record in candidates if record is not None]


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
