"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import Any, Union

from langchain_core.tools import StructuredTool
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from docqa.errors import ToolExecutionError, describe_error
from docqa.types import ToolResult, ToolTrace

SEMANTIC_GROUPS = "semantic_groups"
VECTOR_INDEX = "vector_index"
CHUNKS = "chunks"

HandlerOutput = Union[ToolResult, dict[str, Any]]
ToolHandler = Callable[[BaseModel], Union[Awaitable[HandlerOutput], HandlerOutput]]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation.

    `requires` lists capabilities of which at least one must be present for the
    tool to be advertised; an empty list means always available.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    requires: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    async def invoke(self, payload: dict[str, Any]) -> ToolResult:
        data = self.args_schema.model_validate(payload)
        output = self.handler(data)
        if inspect.isawaitable(output):
            output = await output
        if isinstance(output, ToolResult):
            return output
        data = dict(output)
        if not data.pop("success", True):
            return ToolResult.fail(str(data.get("error") or f"{self.name} failed"))
        return ToolResult(success=True, data=data)

    def is_available(self, capabilities: set[str]) -> bool:
        return not self.requires or any(item in capabilities for item in self.requires)

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.args_schema.model_json_schema(),
        }


class ToolRegistry:
    """Stores tool specs, executes them safely and exports LangChain tools."""

    def __init__(self, *, default_timeout: float | None = 30.0) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._observer: Callable[[ToolTrace], None] | None = None
        self.default_timeout = default_timeout

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")
        return spec

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def get_tool_definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self._tools.values()]

    def get_available_tool_definitions(
        self,
        has_semantic_groups: bool = False,
        has_vector_index: bool = False,
        has_chunks: bool = False,
    ) -> list[dict[str, Any]]:
        """Filter the catalogue to tools the current document can serve.

        Advisory only: `execute` still runs tools that are filtered out here.
        """
        capabilities = {
            name
            for name, present in (
                (SEMANTIC_GROUPS, has_semantic_groups),
                (VECTOR_INDEX, has_vector_index),
                (CHUNKS, has_chunks),
            )
            if present
        }
        return [
            spec.definition() for spec in self._tools.values() if spec.is_available(capabilities)
        ]

    async def execute(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run a tool; every failure comes back as `ToolResult(success=False)`."""
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult.fail(f"Unknown tool: {name}")
        return await self._execute_spec(spec, payload, timeout)

    def as_langchain_tools(self) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._tools.values():
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    coroutine=self._build_coroutine(spec),
                )
            )
        return tools

    def _build_coroutine(self, spec: ToolSpec) -> Callable[..., Awaitable[str]]:
        async def _callable(**kwargs: Any) -> str:
            result = await self._execute_spec(spec, kwargs, None)
            return json.dumps(result.to_dict(), ensure_ascii=False, default=str)

        return _callable

    async def _execute_spec(
        self,
        spec: ToolSpec,
        payload: dict[str, Any],
        timeout: float | None,
    ) -> ToolResult:
        limit = timeout if timeout is not None else self.default_timeout
        start = perf_counter()
        try:
            if limit is None:
                result = await spec.invoke(payload)
            else:
                result = await asyncio.wait_for(spec.invoke(payload), timeout=limit)
        except ValidationError as exc:
            result = ToolResult.fail(f"Invalid parameters for {spec.name}: {exc.errors()[0]['msg']}")
        except ToolExecutionError as exc:
            result = ToolResult.fail(str(exc))
        except asyncio.TimeoutError:
            result = ToolResult.fail(f"{spec.name} timed out after {limit:.1f}s")
        except Exception as exc:
            logger.exception(f"Tool {spec.name} raised")
            result = ToolResult.fail(describe_error(exc))
        latency_ms = (perf_counter() - start) * 1000.0

        if self._observer is not None:
            preview = result.error if not result.success else json.dumps(
                result.data, ensure_ascii=False, default=str
            )
            self._observer(
                ToolTrace(
                    name=spec.name,
                    input_payload=payload,
                    output_preview=(preview or "")[:320],
                    latency_ms=latency_ms,
                    success=result.success,
                )
            )
        return result
