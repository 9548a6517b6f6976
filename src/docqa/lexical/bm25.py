"""BM25 lexical index with CJK n-gram tokenization."""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from docqa.config import LexicalConfig
from docqa.types import Chunk, LexicalHit, SemanticGroup

_PUNCTUATION = re.compile(r"[^\w\s]|_", flags=re.UNICODE)
_TOKEN_RUNS = re.compile(r"[一-鿿]+|[A-Za-z]+|\d+")
_CJK_RUN = re.compile(r"[一-鿿]+")


def tokenize(text: str) -> list[str]:
    """Split text into BM25 terms.

    CJK runs yield every overlapping 2-gram and 3-gram plus each single
    character; Latin words are lower-cased; digit runs are kept as-is.
    Duplicates are preserved so term frequencies stay meaningful.
    """
    if not text:
        return []
    cleaned = _PUNCTUATION.sub(" ", text)
    tokens: list[str] = []
    for match in _TOKEN_RUNS.finditer(cleaned):
        run = match.group(0)
        if _CJK_RUN.fullmatch(run):
            tokens.extend(run[i : i + 2] for i in range(len(run) - 1))
            tokens.extend(run[i : i + 3] for i in range(len(run) - 2))
            tokens.extend(run)
        elif run.isdigit():
            tokens.append(run)
        else:
            tokens.append(run.lower())
    return tokens


@dataclass(slots=True)
class _Posting:
    doc_index: int
    freq: int


class BM25Index:
    """Immutable-after-build BM25 index over an ordered corpus."""

    def __init__(self, config: LexicalConfig | None = None) -> None:
        self.config = config or LexicalConfig()
        self._doc_ids: list[str] = []
        self._raw_texts: list[str] = []
        self._doc_tokens: list[list[str]] = []
        self._doc_lengths: list[int] = []
        self._avg_doc_length = 0.0
        self._postings: dict[str, list[_Posting]] = {}
        self._term_freqs: list[Counter[str]] = []
        self._idf: dict[str, float] = {}
        self._built = False

    @property
    def document_count(self) -> int:
        return len(self._doc_tokens)

    @property
    def is_built(self) -> bool:
        return self._built

    def build(
        self,
        documents: Sequence[str],
        doc_ids: Sequence[str] | None = None,
    ) -> "BM25Index":
        if doc_ids is not None and len(doc_ids) != len(documents):
            raise ValueError("documents and doc_ids must have the same length")

        self._doc_ids = list(doc_ids) if doc_ids is not None else [
            f"doc-{i}" for i in range(len(documents))
        ]
        self._raw_texts = list(documents)
        self._doc_tokens = [tokenize(text) for text in documents]
        self._doc_lengths = [len(tokens) for tokens in self._doc_tokens]
        total = sum(self._doc_lengths)
        self._avg_doc_length = total / len(documents) if documents else 0.0

        self._term_freqs = [Counter(tokens) for tokens in self._doc_tokens]
        postings: dict[str, list[_Posting]] = {}
        for doc_index, freqs in enumerate(self._term_freqs):
            for term, freq in freqs.items():
                postings.setdefault(term, []).append(_Posting(doc_index, freq))
        self._postings = postings
        n = self.document_count
        self._idf = {
            term: math.log((n - len(items) + 0.5) / (len(items) + 0.5) + 1)
            for term, items in postings.items()
        }
        self._built = True

        logger.info(
            f"BM25 index built: {self.document_count} documents, "
            f"{len(self._postings)} terms, avg length {self._avg_doc_length:.1f}"
        )
        return self

    @classmethod
    def from_chunks(
        cls, chunks: Sequence[Chunk], config: LexicalConfig | None = None
    ) -> "BM25Index":
        return cls(config).build(
            [chunk.text for chunk in chunks],
            [chunk.chunk_id for chunk in chunks],
        )

    @classmethod
    def from_groups(
        cls, groups: Sequence[SemanticGroup], config: LexicalConfig | None = None
    ) -> "BM25Index":
        """Index groups with keywords weighted x3, summary x2 and the digest once."""
        return cls(config).build(
            [group_document_text(group) for group in groups],
            [group.group_id for group in groups],
        )

    def idf(self, term: str) -> float:
        cached = self._idf.get(term)
        if cached is not None:
            return cached
        n = self.document_count
        return math.log((n + 0.5) / 0.5 + 1)

    def score(self, doc_index: int, query_terms: Sequence[str]) -> float:
        if not self._built or not 0 <= doc_index < self.document_count:
            return 0.0
        freqs = self._term_freqs[doc_index]
        total = 0.0
        for term in query_terms:
            freq = freqs.get(term, 0)
            if freq:
                total += self._idf[term] * self._saturate(freq, doc_index)
        return total

    def score_all(self, query_terms: Sequence[str]) -> list[float]:
        """Score every document by walking each query term's postings once."""
        scores = [0.0] * self.document_count
        if not self._built:
            return scores
        for term in query_terms:
            postings = self._postings.get(term)
            if not postings:
                continue
            idf = self._idf[term]
            for posting in postings:
                scores[posting.doc_index] += idf * self._saturate(posting.freq, posting.doc_index)
        return scores

    def _saturate(self, freq: int, doc_index: int) -> float:
        k1 = self.config.k1
        b = self.config.b
        avg = self._avg_doc_length or 1.0
        denominator = freq + k1 * (1 - b + b * (self._doc_lengths[doc_index] / avg))
        return freq * (k1 + 1) / denominator

    def search(
        self,
        query: str,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[LexicalHit]:
        if not self._built or self.document_count == 0:
            return []
        terms = tokenize(query)
        if not terms:
            return []
        scores = self.score_all(terms)
        return self._rank(scores, top_k, threshold)

    def search_keywords(
        self,
        keywords: Sequence[str],
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[LexicalHit]:
        """Score keyword tokens, then multiply by `phrase_boost` per verbatim keyword match."""
        if not self._built or self.document_count == 0:
            return []
        cleaned = [keyword.strip() for keyword in keywords if keyword and keyword.strip()]
        terms = [term for keyword in cleaned for term in tokenize(keyword)]
        if not terms:
            return []

        scores = self.score_all(terms)
        matched: list[tuple[str, ...]] = []
        for doc_index, raw_text in enumerate(self._raw_texts):
            raw = raw_text.lower()
            hits = tuple(keyword for keyword in cleaned if keyword.lower() in raw)
            scores[doc_index] *= self.config.phrase_boost ** len(hits)
            matched.append(hits)
        return self._rank(scores, top_k, threshold, matched)

    def stats(self) -> dict[str, float | int]:
        return {
            "document_count": self.document_count,
            "term_count": len(self._postings),
            "avg_doc_length": round(self._avg_doc_length, 1),
            "total_tokens": sum(self._doc_lengths),
        }

    def _rank(
        self,
        scores: list[float],
        top_k: int | None,
        threshold: float | None,
        matched: list[tuple[str, ...]] | None = None,
    ) -> list[LexicalHit]:
        limit = self.config.default_top_k if top_k is None else top_k
        floor = self.config.default_threshold if threshold is None else threshold
        ranked = sorted(
            (i for i, value in enumerate(scores) if value > floor),
            key=lambda i: (-scores[i], i),
        )
        return [
            LexicalHit(
                doc_index=i,
                doc_id=self._doc_ids[i],
                score=scores[i],
                matched_keywords=matched[i] if matched else (),
            )
            for i in ranked[: max(0, limit)]
        ]


def group_document_text(group: SemanticGroup) -> str:
    parts: list[str] = []
    if group.keywords:
        keyword_text = " ".join(group.keywords)
        parts.extend([keyword_text] * 3)
    if group.summary:
        parts.extend([group.summary] * 2)
    if group.digest:
        parts.append(group.digest)
    return " ".join(parts)
