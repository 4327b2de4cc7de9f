"""Configuration models for the agentic RAG engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChunkingConfig(BaseModel):
    """Configures the chunking strategies."""

    chunk_size: int = Field(default=500, ge=20)
    chunk_overlap: int = Field(default=50, ge=0)
    sentences_per_chunk: int = Field(default=3, ge=1)
    max_chunk_chars: int = Field(default=1000, ge=50)
    semantic_break_threshold: float = Field(default=0.9, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "ChunkingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        return self


class RetrievalConfig(BaseModel):
    """Configures strategy retrieval, fusion and fan-out."""

    rrf_k: int = Field(default=60, ge=1)
    bm25_k1: float = Field(default=1.5, gt=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=2, ge=1)
    fusion_variations: int = Field(default=3, ge=1, le=8)
    max_workers: int = Field(default=4, ge=1)
    sub_query_timeout_seconds: float = Field(default=10.0, gt=0.0)
    cache_ttl_seconds: float = Field(default=20.0, ge=0.0)
    backend_index_name: str | None = None


class GeneratorConfig(BaseModel):
    """Configures the text-generation adapter."""

    answer_model: str = "gpt-4o"
    fast_model: str = "gpt-4o-mini"
    max_attempts: int = Field(default=3, ge=1)
    retry_initial_seconds: float = Field(default=0.5, ge=0.0)
    retry_max_seconds: float = Field(default=8.0, ge=0.0)
    context_chars_per_document: int = Field(default=800, ge=50)


class EvaluatorConfig(BaseModel):
    """Weights and thresholds of the self-evaluation step."""

    relevance_weight: float = Field(default=0.4, ge=0.0)
    support_weight: float = Field(default=0.4, ge=0.0)
    utility_weight: float = Field(default=0.2, ge=0.0)
    fully_supported_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    partially_supported_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    min_overlap: float = Field(default=0.35, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _positive_weights(self) -> "EvaluatorConfig":
        if self.relevance_weight + self.support_weight + self.utility_weight <= 0:
            raise ValueError("at least one evaluation weight must be positive")
        return self


class OrchestratorConfig(BaseModel):
    """Per-run orchestration settings."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_iterations: int = Field(default=3, gt=0)
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    enable_criticism: bool = True
    enable_auto_retry: bool = True
    top_k: int = Field(default=5, gt=0)
    on_progress: Callable[[Any], None] | None = None


class TrackerConfig(BaseModel):
    """Configures the performance tracker and its insight rules."""

    success_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    trend_window: int = Field(default=5, ge=1)
    history_limit: int = Field(default=1000, ge=1)
    min_samples: int = Field(default=3, ge=1)
    insight_min_queries: int = Field(default=5, ge=1)
    degradation_window: int = Field(default=10, ge=2)
    low_routing_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
