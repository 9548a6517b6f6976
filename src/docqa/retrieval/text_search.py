"""Literal, regex and boolean full-text search with surrounding context."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from docqa.errors import ToolExecutionError

BOOLEAN_WINDOW_CHARS = 500
_OPERATORS = {"AND", "OR", "NOT"}


def grep(
    text: str,
    query: str,
    *,
    limit: int = 20,
    context: int = 2000,
    case_insensitive: bool = True,
) -> list[dict[str, Any]]:
    """Literal search; `|` separates alternative keywords searched in turn."""
    if not text or not query:
        return []
    flags = re.IGNORECASE if case_insensitive else 0
    matches: list[dict[str, Any]] = []
    for keyword in (part.strip() for part in query.split("|")):
        if not keyword:
            continue
        for match in re.finditer(re.escape(keyword), text, flags):
            if len(matches) >= limit:
                return matches
            start = max(0, match.start() - context)
            end = min(len(text), match.end() + context)
            matches.append(
                {"keyword": keyword, "position": match.start(), "preview": text[start:end]}
            )
    return matches


def regex_search(
    text: str,
    pattern: str,
    *,
    limit: int = 10,
    context: int = 1500,
    case_insensitive: bool = True,
    multiline: bool = True,
) -> list[dict[str, Any]]:
    if not text or not pattern:
        return []
    flags = (re.IGNORECASE if case_insensitive else 0) | (re.MULTILINE if multiline else 0)
    try:
        compiled = re.compile(pattern, flags)
    except re.error as exc:
        raise ToolExecutionError(f"Invalid regular expression: {exc}") from exc

    results: list[dict[str, Any]] = []
    for match in compiled.finditer(text):
        if len(results) >= limit:
            break
        start = max(0, match.start() - context)
        end = min(len(text), match.end() + context)
        results.append(
            {
                "match": match.group(0),
                "match_offset": match.start(),
                "match_length": len(match.group(0)),
                "preview": text[start:end],
                "groups": list(match.groups()),
            }
        )
    return results


@dataclass(slots=True)
class BooleanQuery:
    """Flattened boolean query: required, optional and excluded terms."""

    must: list[str] = field(default_factory=list)
    should: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)


def parse_boolean_query(query: str) -> BooleanQuery:
    """Parse `AND`/`OR`/`NOT` with quoted phrases; parentheses only delimit terms.

    A term following `OR` is optional, one following `NOT` is excluded, and
    every other term is required. With no required term the first optional
    term is promoted.
    """
    parsed = BooleanQuery()
    operator = "AND"
    for token in _tokenize_boolean(query):
        if token in _OPERATORS:
            operator = token
            continue
        if operator == "NOT":
            parsed.exclude.append(token)
            operator = "AND"
        elif operator == "OR":
            parsed.should.append(token)
        else:
            parsed.must.append(token)
    if not parsed.must and parsed.should:
        parsed.must.append(parsed.should.pop(0))
    return parsed


def boolean_search(
    text: str,
    query: str,
    *,
    limit: int = 10,
    context: int = 1500,
    case_insensitive: bool = True,
) -> list[dict[str, Any]]:
    """Find windows where all required terms co-occur within 500 characters."""
    if not text or not query:
        return []
    parsed = parse_boolean_query(query)
    if not parsed.must:
        raise ToolExecutionError(f"Boolean query has no searchable terms: {query!r}")

    haystack = text.lower() if case_insensitive else text
    positions = {
        term: _find_all(haystack, term.lower() if case_insensitive else term)
        for term in {*parsed.must, *parsed.should, *parsed.exclude}
    }

    found: dict[tuple[int, int], dict[str, Any]] = {}
    for base_start in positions[parsed.must[0]]:
        base_end = base_start + len(parsed.must[0])
        lo, hi = base_start, base_end
        matched = [parsed.must[0]]
        score = 1.0
        valid = True
        for term in parsed.must[1:]:
            near = _nearby(positions[term], base_start)
            if near is None:
                valid = False
                break
            matched.append(term)
            lo, hi = min(lo, near), max(hi, near + len(term))
            score += 1.0
        if not valid:
            continue
        for term in parsed.should:
            near = _nearby(positions[term], base_start)
            if near is not None:
                matched.append(term)
                lo, hi = min(lo, near), max(hi, near + len(term))
                score += 0.5
        if any(_nearby(positions[term], base_start) is not None for term in parsed.exclude):
            continue
        found.setdefault(
            (lo, hi - lo),
            {"matched_terms": list(dict.fromkeys(matched)), "relevance_score": score},
        )

    results: list[dict[str, Any]] = []
    for (position, length), info in sorted(found.items())[:limit]:
        start = max(0, position - context)
        end = min(len(text), position + length + context)
        results.append(
            {
                "match_offset": position,
                "match_length": length,
                "preview": text[start:end],
                **info,
            }
        )
    return results


def _tokenize_boolean(query: str) -> list[str]:
    tokens: list[str] = []
    current: list[str] = []
    in_quotes = False

    def flush() -> None:
        word = "".join(current).strip()
        if word:
            tokens.append(word)
        current.clear()

    for char in query.strip():
        if char == '"':
            in_quotes = not in_quotes
        elif not in_quotes and char in "()":
            flush()
        elif not in_quotes and char.isspace():
            flush()
        else:
            current.append(char)
    flush()
    return tokens


def _find_all(haystack: str, needle: str) -> list[int]:
    if not needle:
        return []
    positions: list[int] = []
    start = haystack.find(needle)
    while start != -1:
        positions.append(start)
        start = haystack.find(needle, start + 1)
    return positions


def _nearby(candidates: list[int], anchor: int) -> int | None:
    return next((p for p in candidates if abs(p - anchor) <= BOOLEAN_WINDOW_CHARS), None)
