"""Session tracing and aggregate metrics."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from docqa.agent.budget import TokenBudgetManager
from docqa.types import ToolTrace

TraceMode = Literal["reasoning", "planner"]


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    question: str
    answer: str
    mode: TraceMode
    session_id: str
    tool_traces: list[ToolTrace]
    event_count: int
    iterations: int
    input_tokens: int
    output_tokens: int
    latency_ms: float
    fallback: bool
    error: str | None = None
    provenance: list[str] = field(default_factory=list)


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, max_records: int = 1000) -> None:
        self._records: dict[str, TraceRecord] = {}
        self.max_records = max_records

    def __len__(self) -> int:
        return len(self._records)

    def create_record(
        self,
        *,
        question: str,
        answer: str,
        mode: TraceMode,
        session_id: str,
        tool_traces: list[ToolTrace],
        event_count: int,
        iterations: int,
        latency_ms: float,
        fallback: bool,
        error: str | None = None,
        provenance: list[str] | None = None,
    ) -> TraceRecord:
        trace_id = str(uuid.uuid4())
        record = TraceRecord(
            trace_id=trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            answer=answer,
            mode=mode,
            session_id=session_id,
            tool_traces=tool_traces,
            event_count=event_count,
            iterations=iterations,
            input_tokens=estimate_token_count(question),
            output_tokens=estimate_token_count(answer),
            latency_ms=latency_ms,
            fallback=fallback,
            error=error,
            provenance=list(provenance or []),
        )
        self._records[trace_id] = record
        while len(self._records) > self.max_records:
            del self._records[next(iter(self._records))]
        return record

    def get(self, trace_id: str) -> TraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TraceRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_tool_calls": 0,
                "fallback_rate": 0.0,
                "error_rate": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_tool_calls": sum(len(record.tool_traces) for record in records),
            "fallback_rate": sum(1 for record in records if record.fallback) / total,
            "error_rate": sum(1 for record in records if record.error) / total,
        }


class Timer:
    """Simple context timer used around sessions."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return TokenBudgetManager.estimate(text)
