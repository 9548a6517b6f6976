from docqa.agent.fallback import build_fallback_context
from docqa.retrieval.corpus import DocumentCorpus
from docqa.types import Chunk, GroupStructure, SemanticGroup


def _group(group_id: str, text: str, keywords: tuple[str, ...] = ()) -> SemanticGroup:
    return SemanticGroup(
        group_id=group_id,
        chunk_indices=(),
        char_count=len(text),
        summary="",
        keywords=keywords,
        structure=GroupStructure(),
        full_text=text,
    )


def test_empty_top_ranked_group_is_skipped() -> None:
    corpus = DocumentCorpus(
        groups=[
            _group("group-0", "", keywords=("capital",)),
            _group("group-1", "Regulators raised capital requirements."),
        ]
    )

    bundle = build_fallback_context("capital requirements", corpus, max_groups=1)

    assert [item.ref for item in bundle.provenance] == ["group-1"]
    assert "Regulators raised capital requirements." in bundle.text


def test_unmatched_groups_are_used_when_matches_are_empty() -> None:
    corpus = DocumentCorpus(
        groups=[
            _group("group-0", "   ", keywords=("capital",)),
            _group("group-1", "Lehman Brothers collapsed in September 2008."),
        ]
    )

    bundle = build_fallback_context("capital", corpus)

    assert [item.ref for item in bundle.provenance] == ["group-1"]


def test_all_empty_groups_fall_back_to_chunks() -> None:
    chunks = [
        Chunk(chunk_id="chunk-0", text="", position=0),
        Chunk(chunk_id="chunk-1", text="Mortgage securities carried the risk.", position=1),
    ]
    corpus = DocumentCorpus(chunks, [_group("group-0", ""), _group("group-1", "")])

    bundle = build_fallback_context("mortgage", corpus)

    assert bundle.text == "[chunk-1]\nMortgage securities carried the risk."
    assert [(item.source, item.ref) for item in bundle.provenance] == [("chunk", "chunk-1")]


def test_empty_corpus_gives_empty_context() -> None:
    bundle = build_fallback_context("anything", DocumentCorpus())

    assert bundle.text == ""
    assert bundle.provenance == []
