"""Prompt builders for the multi-hop planner and the reasoning loop."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from docqa.types import SemanticGroup, ToolCallRecord, ToolResult

PLANNER_SYSTEM_PROMPT = """
You are a retrieval planner. Gather document content over several rounds with
the tools below, then stop.

Tools (JSON):
- {"tool":"vector_search","args":{"query":"...","limit":15}}
  Semantic search over the original chunks; understands synonyms.
- {"tool":"keyword_search","args":{"keywords":["term1","term2"],"limit":8}}
  Exact BM25 keyword search over the original chunks.
- {"tool":"fetch_group","args":{"groupId":"group-1","granularity":"summary|digest|full"}}
  Fetch one semantic group at the given granularity.

Rules:
1. The candidate group map gives a global view of the document; use searches
   to locate the exact passages rather than judging from summaries alone.
2. Search hits report the group they belong to; fetch that group when more
   surrounding context is needed.
3. Do not repeat a search listed in the search history.
4. Set "final": true only once the fetched content is enough to answer.

Reply with JSON only:
{"operations":[{"tool":"vector_search","args":{...}}],"final":false}
""".strip()

REASONING_ROLE = "You are a document retrieval assistant. Answer questions by retrieving document content with tools."

_DECISION_FORMAT = """
## Response format

Single tool call:
```json
{"action": "use_tool", "thought": "why", "tool": "grep", "params": {"query": "conclusion|result", "limit": 10}}
```

Parallel tool calls:
```json
{"action": "use_tool", "thought": "why", "tool_calls": [{"tool": "...", "params": {}}, {"tool": "...", "params": {}}]}
```

Final answer:
```json
{"action": "answer", "thought": "why the context is enough", "answer": "detailed answer"}
```

Parameter names must match the tool definitions exactly.
""".strip()

_SEARCH_TOOLS = ("vector_search", "keyword_search", "grep", "regex_search", "boolean_search")
_GROUP_TOOLS = ("search_semantic_groups", "fetch_group_text", "fetch", "map", "list_all_groups")

CONTEXT_HEADER = "=== Document ==="
CONTEXT_STATUS = "Document content has not been retrieved yet."


# --- planner ---------------------------------------------------------------


def build_planner_prompt(
    question: str,
    groups: Sequence[SemanticGroup],
    fetched: dict[str, str],
    search_history: Sequence[dict[str, Any]],
    *,
    doc_gist: str = "",
) -> str:
    """Assemble one round's planning prompt.

    `fetched` maps group id to the granularity already held.
    """
    lines = [f"Question: {question}", ""]
    if doc_gist:
        lines += ["[Document overview]", doc_gist, ""]

    lines.append("[Candidate groups]")
    if groups:
        for group in groups:
            lines.append(_group_map_entry(group))
    else:
        lines.append("(none; rely on vector_search and keyword_search)")
    lines.append("")

    if fetched:
        held = ", ".join(f"{group_id} ({gran})" for group_id, gran in fetched.items())
    else:
        held = "none"
    lines.append(f"[Already fetched] {held}")

    if search_history:
        lines += ["", "[Search history] (do not repeat these)"]
        for entry in search_history:
            count = entry.get("result_count", 0)
            status = f"{count} results" if count else "no results"
            lines.append(f'- {entry["tool"]} "{entry["query"]}" -> {status}')
    return "\n".join(lines)


def _group_map_entry(group: SemanticGroup) -> str:
    parts = [f"- {group.group_id} ({group.char_count} chars)"]
    if group.keywords:
        parts.append(f"  keywords: {', '.join(group.keywords)}")
    outline = group.structure.as_dict()
    for kind in ("sections", "figures", "tables", "formulas"):
        if outline[kind]:
            parts.append(f"  {kind}: {'; '.join(outline[kind])}")
    if group.summary:
        parts.append(f"  summary: {group.summary}")
    return "\n".join(parts)


# --- reasoning loop --------------------------------------------------------


def build_reasoning_system_prompt(has_semantic_groups: bool, has_vector_index: bool) -> str:
    priorities: list[str] = []
    if has_semantic_groups:
        priorities.append(
            "Structured tools (recommended): `map` for the document outline, "
            "`search_semantic_groups` to find groups, `fetch` for a group's full content."
        )
    if has_vector_index:
        priorities.append("Semantic search: `vector_search` for synonyms and related concepts.")
    priorities.append(
        "Exact search (always available): `grep` (OR with `a|b`), `keyword_search`, "
        "`regex_search`, `boolean_search`."
    )
    numbered = "\n".join(f"{index}. {text}" for index, text in enumerate(priorities, start=1))

    return f"""{REASONING_ROLE}

## Objective

Work iteratively: decide what information is needed, retrieve it with tools,
judge whether the results are enough, then either retrieve more or answer.

## Tools

Several tools may be called in one response. Priority:

{numbered}

## Guidelines

- Start by retrieving; the context holds no document content yet.
- Broad questions: grep for common section words (abstract, introduction, conclusion).
- When a tool fails and suggests another, switch to it and do not retry the failed one.
- Use what was already retrieved instead of repeating the same search.
- Never answer from general knowledge or assumptions.

{_DECISION_FORMAT}"""


def build_initial_context(
    *,
    group_count: int,
    has_vector_index: bool,
    doc_gist: str = "",
) -> str:
    """Metadata-only starting context: what is loaded and which tools apply."""
    lines = [CONTEXT_HEADER]
    if doc_gist:
        lines.append(f"Overview: {doc_gist}")
    if group_count:
        lines.append(f"Structured tools: map, search_semantic_groups, fetch ({group_count} groups)")
    else:
        lines.append("Structured tools unavailable (no semantic groups)")
    if has_vector_index:
        lines.append("Semantic search: vector_search")
    else:
        lines.append("Semantic search unavailable (no vector index)")
    lines.append("Exact search: grep, keyword_search, regex_search, boolean_search")
    lines += ["", CONTEXT_STATUS]
    return "\n".join(lines)


def build_tool_guidelines(definitions: Sequence[dict[str, Any]]) -> str:
    lines = ["## Available tools"]
    for title, names in (("Search tools", _SEARCH_TOOLS), ("Group tools", _GROUP_TOOLS)):
        selected = [item for item in definitions if item["name"] in names]
        if not selected:
            continue
        lines += ["", f"### {title}"]
        for item in selected:
            lines += ["", f"**{item['name']}**: {item['description']}", "Parameters:"]
            properties = item.get("parameters", {}).get("properties", {})
            for key, schema in properties.items():
                default = f" (default: {schema['default']})" if "default" in schema else ""
                lines.append(f"- `{key}` ({schema.get('type', 'any')}){default}")
    return "\n".join(lines)


def build_reasoning_prompt(
    question: str,
    context: str,
    history: Sequence[ToolCallRecord],
    warnings: Sequence[str],
    guidelines: str,
    *,
    preview_chars: int = 300,
) -> str:
    lines = [f"## Question\n\n{question}", "", f"## Current context\n\n{context or '(empty)'}"]
    if history:
        lines += ["", "## Tool calls so far"]
        for index, record in enumerate(history, start=1):
            params = json.dumps(record.params, ensure_ascii=False, default=str)
            payload = json.dumps(record.result.to_dict(), ensure_ascii=False, default=str)
            lines.append(f"{index}. {record.tool}({params}) -> {payload[:preview_chars]}")
    if warnings:
        lines += ["", "## Warnings"]
        lines += [f"- {warning}" for warning in warnings]
    lines += ["", guidelines, "", "Decide the next step and reply with the JSON format above."]
    return "\n".join(lines)


def format_tool_result(tool: str, result: ToolResult) -> str:
    """Render one tool result as a context block."""
    lines = [f"[Tool: {tool}]"]
    if not result.success:
        lines.append(f"Error: {result.error}")
        return "\n".join(lines)

    data = result.data
    if tool in ("vector_search", "keyword_search"):
        hits = data.get("results", [])
        lines.append(f"{len(hits)} results:")
        for index, hit in enumerate(hits, start=1):
            lines.append(
                f"{index}. [{hit.get('group_id') or hit.get('chunk_id')}] "
                f"(score {float(hit.get('score', 0.0)):.2f})"
            )
            lines.append(f"   {hit.get('text', '')}")
    elif tool in ("grep", "regex_search", "boolean_search"):
        matches = data.get("matches", [])
        lines.append(f"{len(matches)} matches:")
        for index, match in enumerate(matches, start=1):
            lines.append(f"{index}. {match.get('preview', '')}")
    elif tool == "search_semantic_groups":
        groups = data.get("results", [])
        lines.append(f"{len(groups)} related groups:")
        for index, group in enumerate(groups, start=1):
            lines.append(f"{index}. [{group['group_id']}] {', '.join(group.get('keywords', []))}")
            lines.append(f"   {group.get('summary', '')}")
    elif tool in ("fetch", "fetch_group_text"):
        text = data.get("text", "")
        lines.append(f"Group [{data.get('group_id')}] ({len(text)} chars):")
        lines.append(text)
    elif tool == "map":
        entries = data.get("map", [])
        lines.append(f"Document map ({data.get('returned_groups')}/{data.get('total_groups')} groups):")
        for index, entry in enumerate(entries, start=1):
            lines.append(
                f"{index}. [{entry['group_id']}] {entry['char_count']} chars - "
                f"{', '.join(entry.get('keywords', []))}"
            )
    elif tool == "list_all_groups":
        for entry in data.get("groups", []):
            lines.append(f"- [{entry['group_id']}] {entry.get('summary', '')}")
    else:
        lines.append(json.dumps(data, ensure_ascii=False, default=str)[:500])
    return "\n".join(lines)
