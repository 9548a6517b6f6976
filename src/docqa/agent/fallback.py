"""Heuristic context used when the multi-hop planner cannot produce one."""

from __future__ import annotations

from loguru import logger

from docqa.ingest.aggregator import quick_match
from docqa.retrieval.corpus import GRANULARITY_CAPS, DocumentCorpus
from docqa.types import ContextBundle, Provenance


def build_fallback_context(
    question: str,
    corpus: DocumentCorpus,
    max_groups: int = 3,
) -> ContextBundle:
    """Pick the best-matching groups for `question` and return their digests.

    Groups are ranked with `quick_match`, followed by the remaining groups in
    document order. Groups without text are passed over. When no group has
    text the leading non-empty chunks are used, so the result is never empty
    for a corpus that holds any text.
    """
    ranked = quick_match(question, corpus.groups)
    if corpus.groups and not ranked:
        logger.info("Fallback found no matching group; using the first groups")
    bundle = _group_digests(ranked or corpus.groups, corpus, max_groups)
    if not bundle.text and ranked:
        bundle = _group_digests(corpus.groups, corpus, max_groups)
    if bundle.text:
        return bundle
    if corpus.groups:
        logger.warning("Every semantic group is empty; falling back to leading chunks")
    return _leading_chunks(corpus, max_groups)


def _group_digests(groups, corpus: DocumentCorpus, limit: int) -> ContextBundle:
    parts: list[str] = []
    provenance: list[Provenance] = []
    for group in groups:
        if len(parts) >= limit:
            break
        fetched = corpus.fetch_group_text(group.group_id, "digest")
        if not fetched["text"].strip():
            continue
        keywords = "、".join(group.keywords) or "-"
        parts.append(
            f"[{group.group_id}]\nKeywords: {keywords}\nContent (digest):\n{fetched['text']}"
        )
        provenance.append(Provenance(source="group", ref=group.group_id, granularity="digest"))

    return ContextBundle(text="\n\n".join(parts), provenance=provenance)


def _leading_chunks(corpus: DocumentCorpus, limit: int) -> ContextBundle:
    parts: list[str] = []
    provenance: list[Provenance] = []
    for chunk in corpus.chunks:
        if len(parts) >= limit:
            break
        if not chunk.text.strip():
            continue
        parts.append(f"[{chunk.chunk_id}]\n{chunk.text[: GRANULARITY_CAPS['digest']]}")
        provenance.append(Provenance(source="chunk", ref=chunk.chunk_id))
    return ContextBundle(text="\n\n".join(parts), provenance=provenance)
