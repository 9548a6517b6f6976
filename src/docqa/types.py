"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

GRANULARITIES = ("summary", "digest", "full")
DIGEST_CHARS = 1000


@dataclass(frozen=True, slots=True)
class Chunk:
    """Smallest addressable unit of document text."""

    chunk_id: str
    text: str
    position: int
    group_id: str | None = None

    @property
    def char_count(self) -> int:
        return len(self.text)

    def bind(self, group_id: str) -> "Chunk":
        """Return a copy owned by `group_id`; a bound chunk cannot be rebound."""
        if self.group_id is not None and self.group_id != group_id:
            raise ValueError(f"{self.chunk_id} already belongs to {self.group_id}")
        return replace(self, group_id=group_id)


@dataclass(frozen=True, slots=True)
class StructureElement:
    kind: str
    text: str


@dataclass(frozen=True, slots=True)
class GroupStructure:
    """Ordered structural outline of a semantic group."""

    elements: tuple[StructureElement, ...] = ()

    def of_kind(self, kind: str) -> list[str]:
        return [element.text for element in self.elements if element.kind == kind]

    @property
    def titles(self) -> list[str]:
        return self.of_kind("title")

    @property
    def sections(self) -> list[str]:
        return self.of_kind("section")

    @property
    def key_points(self) -> list[str]:
        return self.of_kind("key_point")

    @property
    def figures(self) -> list[str]:
        return self.of_kind("figure")

    @property
    def tables(self) -> list[str]:
        return self.of_kind("table")

    @property
    def formulas(self) -> list[str]:
        return self.of_kind("formula")

    def as_dict(self) -> dict[str, list[str]]:
        return {
            "titles": self.titles,
            "sections": self.sections,
            "key_points": self.key_points,
            "figures": self.figures,
            "tables": self.tables,
            "formulas": self.formulas,
        }


@dataclass(frozen=True, slots=True)
class SemanticGroup:
    """Contiguous span of chunks enriched with summary, keywords and structure."""

    group_id: str
    chunk_indices: tuple[int, ...]
    char_count: int
    summary: str
    keywords: tuple[str, ...]
    structure: GroupStructure
    full_text: str
    error: str | None = None

    @property
    def digest(self) -> str:
        return self.full_text[:DIGEST_CHARS]


@dataclass(frozen=True, slots=True)
class LexicalHit:
    """A BM25 result pointing back into the indexed corpus."""

    doc_index: int
    doc_id: str
    score: float
    matched_keywords: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class VectorHit:
    """A ranked result from a vector search provider."""

    id: str
    score: float
    text: str
    group_id: str | None = None


@dataclass(slots=True)
class ToolResult:
    """Structured outcome of a tool call: `{success, data | error}`."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, **data: Any) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def items(self) -> list[Any]:
        """Retrieved items regardless of which tool produced them."""
        if not self.success:
            return []
        for key in ("results", "matches", "groups", "map"):
            value = self.data.get(key)
            if isinstance(value, list):
                return value
        text = self.data.get("text")
        if text:
            return [{"text": text}]
        return []

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "error": self.error}


@dataclass(slots=True)
class ToolCallRecord:
    """One entry of a session's ordered tool-call history."""

    tool: str
    params: dict[str, Any]
    result: ToolResult


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True


@dataclass(frozen=True, slots=True)
class Provenance:
    """Where a piece of accumulated context came from."""

    source: str
    ref: str
    granularity: str | None = None


@dataclass(slots=True)
class ContextBundle:
    """Answer-ready context handed to the downstream answer step."""

    text: str
    provenance: list[Provenance] = field(default_factory=list)
