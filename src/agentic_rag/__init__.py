"""Agentic RAG query engine package."""

from .config import (
    ChunkingConfig,
    EvaluatorConfig,
    GeneratorConfig,
    OrchestratorConfig,
    RetrievalConfig,
    TrackerConfig,
)

__all__ = [
    "ChunkingConfig",
    "EvaluatorConfig",
    "GeneratorConfig",
    "OrchestratorConfig",
    "RetrievalConfig",
    "TrackerConfig",
]
