"""Decoding of planner plans and reasoning decisions from LLM output.

Both decoders try a strict parse first. Repair passes are a labelled
best-effort layer: plans decoded after repair carry `repaired=True` and
decisions record which strategy produced them.
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal, Union

from json_repair import repair_json
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from docqa.errors import PlanParseError

_MAX_SEARCH_LIMIT = 30


# --- retrieval plans -------------------------------------------------------


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VectorSearchArgs(_Args):
    query: str = Field(min_length=1)
    limit: int = Field(default=15, ge=1)

    @field_validator("limit")
    @classmethod
    def _clamp(cls, value: int) -> int:
        return min(value, _MAX_SEARCH_LIMIT)


class KeywordSearchArgs(_Args):
    keywords: list[str] = Field(min_length=1)
    limit: int = Field(default=8, ge=1)

    @field_validator("keywords", mode="before")
    @classmethod
    def _coerce_keywords(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part for part in re.split(r"[,，、\s]+", value) if part]
        return value

    @field_validator("limit")
    @classmethod
    def _clamp(cls, value: int) -> int:
        return min(value, _MAX_SEARCH_LIMIT)


class FetchGroupArgs(_Args):
    group_id: str = Field(min_length=1, alias="groupId")
    granularity: Literal["summary", "digest", "full"] = "digest"

    @field_validator("granularity", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class VectorSearchOp(BaseModel):
    tool: Literal["vector_search"]
    args: VectorSearchArgs


class KeywordSearchOp(BaseModel):
    tool: Literal["keyword_search"]
    args: KeywordSearchArgs


class FetchGroupOp(BaseModel):
    tool: Literal["fetch_group"]
    args: FetchGroupArgs


Operation = Annotated[
    Union[VectorSearchOp, KeywordSearchOp, FetchGroupOp],
    Field(discriminator="tool"),
]


class RetrievalPlan(BaseModel):
    operations: list[Operation] = Field(default_factory=list)
    final: bool = False
    repaired: bool = False


_FENCE_RE = re.compile(r"```(?:jsonc?|tool)?", re.IGNORECASE)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

# Applied in order; comment stripping must precede whitespace collapsing.
_PLAN_REPAIRS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"/\*.*?\*/", re.DOTALL), ""),
    (re.compile(r"(?<![:\"\w])//[^\n]*"), ""),
    (re.compile(r"[\x00-\x1f\x7f-\x9f]"), " "),
    (re.compile(r"[“”]"), '"'),
    (re.compile(r"[‘’]"), "'"),
    (re.compile(r"\"(\w+)\"\s*:\s*'([^']*)'"), r'"\1":"\2"'),
    (re.compile(r"([{,]\s*)([A-Za-z_]\w*)\s*:"), r'\1"\2":'),
    (re.compile(r",\s*\"\s+\"(\w+)\"\s*:"), r',"\1":'),
    (re.compile(r"\"\s+([\w-]+)\"\s*:"), r'"\1":'),
    (re.compile(r"\"([\w-]+)\s+\"\s*:"), r'"\1":'),
    (re.compile(r"\"\s*final\s*\"", re.IGNORECASE), '"final"'),
    (re.compile(r"\"operations\"\s*(?=\[)", re.IGNORECASE), '"operations":'),
    (re.compile(r"\"(args|tool|final)\"\s+(?=[\[{\"tf])"), r'"\1":'),
    (re.compile(r",\s*}"), "}"),
    (re.compile(r",\s*]"), "]"),
    (re.compile(r"\s+"), " "),
]


def parse_plan(raw: str) -> RetrievalPlan:
    """Decode a planner response into a `RetrievalPlan`.

    Raises `PlanParseError` when neither the strict parse nor the repaired
    parse yields a valid plan.
    """
    cleaned = _CONTROL_RE.sub(" ", _FENCE_RE.sub("", raw or "")).strip()
    if not cleaned:
        raise PlanParseError("empty planner output", raw=raw)
    body = _outer_object(cleaned)
    if body is None:
        raise PlanParseError("no JSON object in planner output", raw=raw)

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        payload = None

    if payload is not None:
        return _validate_plan(payload, raw, repaired=False)

    repaired = repair_plan_text(body)
    try:
        payload = json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"plan is not valid JSON after repair: {exc}", raw=raw) from exc
    logger.warning("Planner output needed regex repair before it parsed")
    return _validate_plan(payload, raw, repaired=True)


def repair_plan_text(text: str) -> str:
    for pattern, replacement in _PLAN_REPAIRS:
        text = pattern.sub(replacement, text)
    return text.strip()


def _validate_plan(payload: Any, raw: str, *, repaired: bool) -> RetrievalPlan:
    if not isinstance(payload, dict):
        raise PlanParseError("plan must be a JSON object", raw=raw)
    payload = {**payload, "repaired": repaired}
    try:
        return RetrievalPlan.model_validate(payload)
    except ValidationError as exc:
        raise PlanParseError(f"invalid plan shape: {exc.errors()[0]['msg']}", raw=raw) from exc


# --- reasoning decisions ---------------------------------------------------


class ToolCall(BaseModel):
    tool: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class _Decision(BaseModel):
    thought: str = ""
    strategy: str = "raw"


class AnswerDecision(_Decision):
    kind: Literal["answer"] = "answer"
    answer: str = ""


class ToolDecision(_Decision):
    kind: Literal["tool"] = "tool"
    tool: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def calls(self) -> list[ToolCall]:
        return [ToolCall(tool=self.tool, params=self.params)]


class ParallelToolDecision(_Decision):
    kind: Literal["parallel"] = "parallel"
    tool_calls: list[ToolCall] = Field(min_length=1)

    @property
    def calls(self) -> list[ToolCall]:
        return list(self.tool_calls)


Decision = Annotated[
    Union[AnswerDecision, ToolDecision, ParallelToolDecision],
    Field(discriminator="kind"),
]
_DECISION_ADAPTER: TypeAdapter[Any] = TypeAdapter(Decision)

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_LINE_COMMENT_RE = re.compile(r"//.*$", re.MULTILINE)
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def parse_decision(response: str) -> AnswerDecision | ToolDecision | ParallelToolDecision:
    """Decode a reasoning response.

    Strategies, in order: fenced code block, outermost raw object, simple
    textual fixes, `json_repair`. When all fail the whole response is taken
    as a plain-text answer.
    """
    text = response or ""
    candidates: list[tuple[str, str]] = []
    block = _CODE_BLOCK_RE.search(text)
    if block:
        candidates.append(("code_block", block.group(1).strip()))
    body = _outer_object(text)
    if body is not None:
        candidates.append(("raw", body))
        fixed = _TRAILING_COMMA_RE.sub(r"\1", body).replace("'", '"')
        fixed = _BLOCK_COMMENT_RE.sub("", _LINE_COMMENT_RE.sub("", fixed))
        candidates.append(("fixed", fixed))

    for strategy, candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        decision = _normalize_decision(payload, strategy)
        if decision is not None:
            return decision

    start = text.find("{")
    if start != -1:
        # Truncated output has no closing brace; let json_repair close it.
        repaired = repair_json(body if body is not None else text[start:], return_objects=False)
        try:
            payload = json.loads(repaired) if repaired else None
        except json.JSONDecodeError:
            payload = None
        decision = _normalize_decision(payload, "json_repair")
        if decision is not None:
            logger.warning("Reasoning output decoded only after json_repair")
            return decision

    logger.warning("Reasoning output is not a JSON decision; treating it as the answer")
    return AnswerDecision(
        thought="Response was not a tool call; treated as a direct answer",
        answer=text.strip(),
        strategy="plain_text",
    )


def _normalize_decision(
    payload: Any, strategy: str
) -> AnswerDecision | ToolDecision | ParallelToolDecision | None:
    if not isinstance(payload, dict):
        return None
    action = payload.get("action")
    thought = str(payload.get("thought") or "")
    if action == "answer":
        data: dict[str, Any] = {"kind": "answer", "answer": str(payload.get("answer") or "")}
    elif action == "use_tool" and isinstance(payload.get("tool_calls"), list):
        data = {"kind": "parallel", "tool_calls": payload["tool_calls"]}
    elif action == "use_tool" and payload.get("tool"):
        data = {"kind": "tool", "tool": payload["tool"], "params": payload.get("params") or {}}
    else:
        return None
    try:
        return _DECISION_ADAPTER.validate_python({**data, "thought": thought, "strategy": strategy})
    except ValidationError:
        return None


def _outer_object(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]
