"""Aggregate ordered chunks into enriched semantic groups."""

from __future__ import annotations

import asyncio
import random
import re
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field

from loguru import logger

from docqa.config import AggregationConfig
from docqa.llm import LanguageModel, with_timeout
from docqa.types import Chunk, GroupStructure, SemanticGroup, StructureElement

_SYSTEM_PROMPT = (
    "You are a precise document analyst. Answer in the language of the source text "
    "and never add facts that are not in it."
)

_SUMMARY_PROMPT = """{context}Summarize the core points of the passage below in at most {max_chars} characters.
Stay consistent with the background, keep technical terms, and do not start with
phrases such as "This passage describes".

{text}"""

_KEYWORD_PROMPT = """{context}Extract 3-5 of the most important keywords or key phrases from the passage below.
Prioritise named entities (people, organisations, places, products, events).
Return only the keywords separated by commas, without explanation.

{text}"""

_STRUCTURE_PROMPT = """{context}List the structure of the passage below in document order, one element per line,
formatted as `kind: text` where kind is one of title, section, key_point, figure,
table, formula. Copy figure, table and formula captions verbatim. Give 3-5
key points of at most 30 characters each. Return only the lines.

{text}"""

_GIST_PROMPT = """Write an overview of the whole document below in at most {max_chars} characters:
its subject, structure and main conclusions. It will be used as background when
summarising individual sections.

{text}"""

_FIGURE_RE = re.compile(r"(?:图|Figure|Fig\.?)\s*(\d+)[：:]?\s*([^\n]{0,50})", re.IGNORECASE)
_TABLE_RE = re.compile(r"(?:表|Table)\s*(\d+)[：:]?\s*([^\n]{0,50})", re.IGNORECASE)
_FORMULA_RE = re.compile(
    r"(?:公式|Equation|Eq\.?)\s*\(?(\d+)\)?[：:]?\s*([^\n]{0,50})", re.IGNORECASE
)
_SECTION_RE = re.compile(r"^(?:#+\s*)?(\d+(?:\.\d+)*)\s+([^\n]{3,60})$", re.MULTILINE)
_STRUCTURE_LINE_RE = re.compile(
    r"^[-*\s]*(title|section|key_point|figure|table|formula)\s*[:：]\s*(.+)$",
    re.IGNORECASE,
)
_KEYWORD_SPLIT_RE = re.compile(r"[,，、\n]")
_QUERY_SPLIT_RE = re.compile(r"[\s，,、。.]+")
_BULLET_RE = re.compile(r"^[-*\d.]+\s*")

_MAX_PER_KIND = 5
_MAX_KEYWORDS = 5
_SUMMARY_INPUT_CHARS = 5000
_DETAIL_INPUT_CHARS = 3000
_GIST_INPUT_CHARS = 20000
_GIST_CHARS = 400


@dataclass(slots=True)
class GroupCandidate:
    """A packed but not yet enriched group."""

    chunk_indices: list[int] = field(default_factory=list)
    texts: list[str] = field(default_factory=list)
    char_count: int = 0

    @property
    def full_text(self) -> str:
        return "\n\n".join(self.texts)


@dataclass(slots=True)
class AggregationResult:
    groups: list[SemanticGroup]
    chunks: list[Chunk]
    target_chars: int = 0

    def stats(self) -> dict[str, int | float]:
        sizes = [group.char_count for group in self.groups]
        return {
            "chunk_count": len(self.chunks),
            "group_count": len(self.groups),
            "target_chars": self.target_chars,
            "avg_group_chars": (sum(sizes) / len(sizes)) if sizes else 0.0,
            "max_group_chars": max(sizes, default=0),
            "degraded_groups": sum(1 for group in self.groups if group.error),
        }


class RateLimiter:
    """Fixed-gap start scheduler with optional random jitter."""

    def __init__(
        self,
        min_interval: float,
        jitter: float = 0.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.min_interval = min_interval
        self.jitter = jitter
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._lock = asyncio.Lock()
        self._next_start = 0.0

    async def acquire(self) -> None:
        if self.min_interval <= 0 and self.jitter <= 0:
            return
        async with self._lock:
            now = self._clock()
            wait = self._next_start - now
            if wait > 0:
                await self._sleep(wait)
                now = self._next_start
            gap = self.min_interval + (self._rng() * self.jitter if self.jitter else 0.0)
            self._next_start = now + gap


class SemanticAggregator:
    """Packs chunks into size-bounded groups and enriches each group.

    Packing is a single left-to-right pass: a chunk joins the open buffer while
    the buffer stays within `max_chars`, otherwise the buffer is closed. Groups
    may end up below `min_chars`; chunks are never split or reordered.
    Enrichment (summary, keywords, structure) goes through an optional
    summarizer and degrades per field when the summarizer fails.
    """

    def __init__(
        self,
        summarizer: LanguageModel | None = None,
        config: AggregationConfig | None = None,
    ) -> None:
        self.summarizer = summarizer
        self.config = config or AggregationConfig()

    async def aggregate(
        self,
        chunks: Sequence[str | Chunk],
        config: AggregationConfig | None = None,
    ) -> AggregationResult:
        cfg = config or self.config
        base = [
            item if isinstance(item, Chunk) else Chunk(chunk_id=f"chunk-{i}", text=item, position=i)
            for i, item in enumerate(chunks)
        ]
        if not base:
            logger.warning("Aggregation skipped: no chunks supplied")
            return AggregationResult(groups=[], chunks=[], target_chars=cfg.target_chars)

        candidates = pack_chunks([chunk.text for chunk in base], cfg.max_chars)
        logger.info(
            f"Packed {len(base)} chunks into {len(candidates)} candidate groups "
            f"(max {cfg.max_chars} chars, concurrency {cfg.concurrency})"
        )
        groups = await self.finalize_groups_in_parallel(candidates, cfg.concurrency, config=cfg)

        owners: dict[int, str] = {}
        for group in groups:
            for index in group.chunk_indices:
                owners[index] = group.group_id
        bound = [chunk.bind(owners[i]) for i, chunk in enumerate(base)]

        logger.info(f"Aggregation finished: {len(groups)} semantic groups")
        return AggregationResult(groups=groups, chunks=bound, target_chars=cfg.target_chars)

    async def finalize_groups_in_parallel(
        self,
        candidates: Sequence[GroupCandidate],
        concurrency: int | None = None,
        *,
        config: AggregationConfig | None = None,
    ) -> list[SemanticGroup]:
        """Enrich candidates with a fixed worker pool; output order follows input order."""
        cfg = config or self.config
        if not candidates:
            return []
        results: list[SemanticGroup | None] = [None] * len(candidates)
        limiter = RateLimiter(cfg.min_interval_seconds, cfg.jitter_seconds)
        cursor = 0

        async def worker() -> None:
            nonlocal cursor
            while cursor < len(candidates):
                index = cursor
                cursor += 1
                await limiter.acquire()
                results[index] = await self.finalize_group(candidates[index], index, config=cfg)

        pool_size = max(1, min(concurrency or cfg.concurrency, len(candidates)))
        await asyncio.gather(*(worker() for _ in range(pool_size)))
        return [group for group in results if group is not None]

    async def finalize_group(
        self,
        candidate: GroupCandidate,
        index: int,
        *,
        config: AggregationConfig | None = None,
    ) -> SemanticGroup:
        cfg = config or self.config
        full_text = candidate.full_text
        group_id = f"group-{index}"

        summary, keywords, structure = await asyncio.gather(
            self._guard(group_id, "summary", self._summarize(full_text, cfg), cfg),
            self._guard(group_id, "keywords", self._keywords(full_text, cfg), cfg),
            self._guard(group_id, "structure", self._structure(full_text, cfg), cfg),
        )

        errors = [
            f"{name}: {outcome}"
            for name, outcome in (("summary", summary), ("keywords", keywords), ("structure", structure))
            if isinstance(outcome, Exception)
        ]
        if isinstance(summary, Exception) or summary is None:
            summary = truncate_summary(full_text, cfg.summary_chars)
        if isinstance(keywords, Exception) or keywords is None:
            keywords = []
        if isinstance(structure, Exception) or structure is None:
            structure = extract_structure_by_regex(full_text)

        return SemanticGroup(
            group_id=group_id,
            chunk_indices=tuple(candidate.chunk_indices),
            char_count=candidate.char_count,
            summary=summary,
            keywords=tuple(keywords),
            structure=structure,
            full_text=full_text,
            error="; ".join(errors) or None,
        )

    async def generate_doc_gist(self, text: str) -> str:
        """Produce a short whole-document overview used as enrichment background."""
        fallback = text[:_GIST_CHARS]
        if self.summarizer is None or not text.strip():
            return fallback
        prompt = _GIST_PROMPT.format(max_chars=_GIST_CHARS, text=text[:_GIST_INPUT_CHARS])
        try:
            gist = await with_timeout(
                self.summarizer.invoke(_SYSTEM_PROMPT, [], prompt),
                self.config.enrichment_timeout_seconds,
                "document gist",
            )
        except Exception as exc:
            logger.warning(f"Document gist generation failed, using leading text: {exc}")
            return fallback
        return gist.strip()[:_GIST_CHARS] or fallback

    async def _guard(
        self,
        group_id: str,
        name: str,
        work: Awaitable[object],
        cfg: AggregationConfig,
    ) -> object:
        try:
            return await with_timeout(work, cfg.enrichment_timeout_seconds, f"{name} enrichment")
        except Exception as exc:
            logger.warning(f"{group_id} {name} enrichment degraded: {exc}")
            return exc

    async def _summarize(self, text: str, cfg: AggregationConfig) -> str | None:
        if self.summarizer is None:
            return None
        prompt = _SUMMARY_PROMPT.format(
            context=_context_block(cfg.doc_context, 1000),
            max_chars=cfg.summary_chars,
            text=_clip(text, _SUMMARY_INPUT_CHARS),
        )
        summary = (await self.summarizer.invoke(_SYSTEM_PROMPT, [], prompt)).strip()
        if not summary:
            raise ValueError("empty summary")
        return summary[: cfg.summary_chars]

    async def _keywords(self, text: str, cfg: AggregationConfig) -> list[str] | None:
        if self.summarizer is None:
            return None
        prompt = _KEYWORD_PROMPT.format(
            context=_context_block(cfg.doc_context, 500),
            text=_clip(text, _DETAIL_INPUT_CHARS),
        )
        return parse_keywords(await self.summarizer.invoke(_SYSTEM_PROMPT, [], prompt))

    async def _structure(self, text: str, cfg: AggregationConfig) -> GroupStructure | None:
        if self.summarizer is None:
            return None
        prompt = _STRUCTURE_PROMPT.format(
            context=_context_block(cfg.doc_context, 500),
            text=_clip(text, _DETAIL_INPUT_CHARS),
        )
        structure = parse_structure_lines(await self.summarizer.invoke(_SYSTEM_PROMPT, [], prompt))
        if not structure.elements:
            raise ValueError("no structure lines in response")
        return structure


def pack_chunks(texts: Sequence[str], max_chars: int) -> list[GroupCandidate]:
    candidates: list[GroupCandidate] = []
    current = GroupCandidate()
    for index, text in enumerate(texts):
        size = len(text)
        if current.chunk_indices and current.char_count + size > max_chars:
            candidates.append(current)
            current = GroupCandidate()
        current.chunk_indices.append(index)
        current.texts.append(text)
        current.char_count += size
    if current.chunk_indices:
        candidates.append(current)
    return candidates


def extract_structure_by_regex(text: str) -> GroupStructure:
    """Pattern-match figure, table, formula and numbered section headings."""
    elements: list[StructureElement] = []
    for kind, pattern, label in (
        ("figure", _FIGURE_RE, "Figure"),
        ("table", _TABLE_RE, "Table"),
        ("formula", _FORMULA_RE, "Equation"),
    ):
        found = _dedupe(
            f"{label} {match.group(1)}: {match.group(2).strip()}" for match in pattern.finditer(text)
        )
        elements.extend(StructureElement(kind, item) for item in found[:_MAX_PER_KIND])

    sections = _dedupe(
        f"{match.group(1)} {match.group(2).strip()}" for match in _SECTION_RE.finditer(text)
    )
    elements.extend(StructureElement("section", item) for item in sections[:_MAX_PER_KIND])
    return GroupStructure(elements=tuple(elements))


def parse_keywords(raw: str) -> list[str]:
    keywords: list[str] = []
    for part in _KEYWORD_SPLIT_RE.split(raw):
        keyword = part.strip().strip("\"'“”")
        if 0 < len(keyword) < 20 and keyword not in keywords:
            keywords.append(keyword)
    return keywords[:_MAX_KEYWORDS]


def parse_structure_lines(raw: str) -> GroupStructure:
    elements: list[StructureElement] = []
    counts: dict[str, int] = {}
    for line in raw.splitlines():
        match = _STRUCTURE_LINE_RE.match(line.strip())
        if not match:
            continue
        kind = match.group(1).lower()
        text = match.group(2).strip()
        if kind == "key_point":
            text = _BULLET_RE.sub("", text).strip()
            if not 5 < len(text) < 100:
                continue
        if counts.get(kind, 0) >= _MAX_PER_KIND or StructureElement(kind, text) in elements:
            continue
        counts[kind] = counts.get(kind, 0) + 1
        elements.append(StructureElement(kind, text))
    return GroupStructure(elements=tuple(elements))


def truncate_summary(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def quick_match(query: str, groups: Sequence[SemanticGroup]) -> list[SemanticGroup]:
    """Rank groups by cheap keyword/summary/digest overlap with the query."""
    if not query or not groups:
        return []
    query_lower = query.lower()
    words = [word for word in _QUERY_SPLIT_RE.split(query_lower) if len(word) > 1]

    scored: list[tuple[int, SemanticGroup]] = []
    for group in groups:
        score = 3 * sum(1 for kw in group.keywords if kw and kw.lower() in query_lower)
        summary = group.summary.lower()
        digest = group.digest.lower()
        score += 2 * sum(1 for word in words if word in summary)
        score += sum(1 for word in words if word in digest)
        if score > 0:
            scored.append((score, group))

    scored.sort(key=lambda item: item[0], reverse=True)
    return [group for _, group in scored]


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _context_block(doc_context: str, limit: int) -> str:
    context = (doc_context or "")[:limit]
    return f"Background (whole-document overview):\n{context}\n\n" if context else ""
