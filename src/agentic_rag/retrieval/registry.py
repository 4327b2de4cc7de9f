"""Retrieval strategy registry built on Pydantic v2 models."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agentic_rag.obs.tracing import Timer
from agentic_rag.types import RetrievalResult, RetrievalStrategy, RetrievalTrace


class RetrievalRequest(BaseModel):
    """Validated input of one strategy execution."""

    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1)
    sub_queries: list[str] = Field(default_factory=list)
    parallelizable: bool = False


class StrategySpec(BaseModel):
    """Declarative strategy definition for registration and dispatch."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    strategy: RetrievalStrategy
    description: str
    handler: Callable[[RetrievalRequest], RetrievalResult]

    def invoke(self, payload: dict[str, Any] | RetrievalRequest) -> RetrievalResult:
        request = (
            payload if isinstance(payload, RetrievalRequest) else RetrievalRequest.model_validate(payload)
        )
        return self.handler(request)


class StrategyRegistry:
    """Maps strategy identifiers to handlers and reports execution latency."""

    def __init__(self) -> None:
        self._strategies: dict[RetrievalStrategy, StrategySpec] = {}
        self._observer: Callable[[RetrievalTrace], None] | None = None

    def register(self, spec: StrategySpec) -> None:
        if spec.strategy in self._strategies:
            raise ValueError(f"Strategy already registered: {spec.strategy.value}")
        self._strategies[spec.strategy] = spec

    def set_observer(self, observer: Callable[[RetrievalTrace], None] | None) -> None:
        """Set an optional callback invoked after each strategy execution."""
        self._observer = observer

    def execute(
        self, strategy: RetrievalStrategy | str, payload: dict[str, Any] | RetrievalRequest
    ) -> RetrievalResult:
        spec = self._strategies.get(RetrievalStrategy(strategy))
        if spec is None:
            raise KeyError(f"Unknown strategy: {strategy}")

        with Timer() as timer:
            result = spec.invoke(payload)

        if self._observer is not None:
            self._observer(
                RetrievalTrace(
                    strategy=spec.strategy,
                    query=result.query_used,
                    result_count=len(result.documents),
                    latency_ms=timer.elapsed_ms,
                )
            )
        return result

    def specs(self) -> list[StrategySpec]:
        return list(self._strategies.values())
