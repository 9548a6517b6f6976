"""Configuration models for the document QA core."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class LexicalConfig(BaseModel):
    """Configures BM25 scoring and phrase boosting."""

    k1: float = Field(default=1.5, gt=0.0)
    b: float = Field(default=0.75, ge=0.0, le=1.0)
    phrase_boost: float = Field(default=3.0, ge=1.0)
    default_top_k: int = Field(default=8, ge=1)
    default_threshold: float = Field(default=0.0, ge=0.0)


class AggregationConfig(BaseModel):
    """Configures chunk -> semantic group packing and enrichment."""

    target_chars: int = Field(default=5000, ge=1)
    min_chars: int = Field(default=2500, ge=0)
    max_chars: int = Field(default=6000, ge=1)
    concurrency: int = Field(default=20, ge=1)
    summary_chars: int = Field(default=400, ge=20)
    min_interval_seconds: float = Field(default=0.05, ge=0.0)
    jitter_seconds: float = Field(default=0.1, ge=0.0)
    enrichment_timeout_seconds: float = Field(default=60.0, gt=0.0)
    doc_context: str = ""


class RetryConfig(BaseModel):
    """Capped exponential backoff for transient service failures."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.5, ge=0.0)
    max_delay_seconds: float = Field(default=8.0, ge=0.0)


class TokenBudgetConfig(BaseModel):
    """Token allocation used by the reasoning loop."""

    total_tokens: int = Field(default=32000, ge=1)
    system_tokens: int = Field(default=2000, ge=0)
    history_tokens: int = Field(default=8000, ge=0)
    context_tokens: int = Field(default=18000, ge=1)
    response_tokens: int = Field(default=4000, ge=0)


class PlannerConfig(BaseModel):
    """Configures the multi-hop retrieval planner."""

    max_rounds: int = Field(default=10, ge=1)
    planner_timeout_seconds: float = Field(default=60.0, gt=0.0)
    tool_timeout_seconds: float = Field(default=30.0, gt=0.0)
    vector_limit: int = Field(default=15, ge=1, le=30)
    keyword_limit: int = Field(default=8, ge=1, le=30)
    vector_threshold: float = Field(default=0.3, ge=0.0)
    fallback_groups: int = Field(default=3, ge=1)
    search_history_size: int = Field(default=5, ge=0)


class AgentConfig(BaseModel):
    """Configures the reasoning/acting loop."""

    max_iterations: int = Field(default=5, ge=1)
    reasoning_timeout_seconds: float = Field(default=60.0, gt=0.0)
    tool_timeout_seconds: float = Field(default=30.0, gt=0.0)
    history_preview_chars: int = Field(default=300, ge=20)
    fallback_context_chars: int = Field(default=2000, ge=100)
    budget: TokenBudgetConfig = Field(default_factory=TokenBudgetConfig)


class Settings(BaseModel):
    """Process-level settings for the HTTP app."""

    openai_model: str = "gpt-4o-mini"
    lexical: LexicalConfig = Field(default_factory=LexicalConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
        if value := os.getenv("DOCQA_CONCURRENCY"):
            settings.aggregation.concurrency = max(1, int(value))
        if value := os.getenv("DOCQA_MAX_CHARS"):
            settings.aggregation.max_chars = max(1, int(value))
        if value := os.getenv("DOCQA_MAX_ITERATIONS"):
            settings.agent.max_iterations = max(1, int(value))
        if value := os.getenv("DOCQA_MAX_ROUNDS"):
            settings.planner.max_rounds = max(1, int(value))
        return settings
