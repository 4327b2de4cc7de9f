"""Strategy performance tracking, learned recommendations and insights."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from hashlib import blake2b

from agentic_rag.config import TrackerConfig
from agentic_rag.learning.store import InMemoryRecordStore, RecordStore
from agentic_rag.types import (
    AgenticResponse,
    Feedback,
    Impact,
    InsightData,
    InsightType,
    LearningInsight,
    PerformanceRecord,
    QueryIntent,
    RetrievalStrategy,
    StrategyMetrics,
)

logger = logging.getLogger(__name__)

ALTERNATIVE_STRATEGIES: dict[QueryIntent, RetrievalStrategy] = {
    QueryIntent.FACTUAL: RetrievalStrategy.HYBRID,
    QueryIntent.ANALYTICAL: RetrievalStrategy.MULTI_QUERY,
    QueryIntent.COMPARATIVE: RetrievalStrategy.RAG_FUSION,
    QueryIntent.PROCEDURAL: RetrievalStrategy.SEMANTIC,
    QueryIntent.CLARIFICATION: RetrievalStrategy.SEMANTIC,
    QueryIntent.CHITCHAT: RetrievalStrategy.DIRECT_ANSWER,
    QueryIntent.OUT_OF_SCOPE: RetrievalStrategy.DIRECT_ANSWER,
}


@dataclass(slots=True)
class StrategyRecommendation:
    strategy: RetrievalStrategy
    confidence: float
    reasoning: str
    based_on_history: bool


class PerformanceTracker:
    """Append-only log of runs with incrementally maintained strategy metrics.

    Metrics are keyed by `(intent, strategy)`. Each record contributes with a
    weight of 1, halved when the router was unsure of its decision. Running
    means are updated in place when a record arrives; user feedback only
    re-scores the success contribution of the record it targets.

    Writes are serialised by a lock. Reads return copies, so callers never
    observe a half-applied update.
    """

    def __init__(self, store: RecordStore | None = None, config: TrackerConfig | None = None) -> None:
        self.config = config or TrackerConfig()
        self.store = store if store is not None else InMemoryRecordStore()
        self._lock = threading.Lock()
        self._history: dict[str, PerformanceRecord] = {}
        self._metrics: dict[str, StrategyMetrics] = {}
        self._recent: dict[str, deque[float]] = {}
        for record in self.store.load()[-self.config.history_limit :]:
            self._history[record.id] = record
            self._apply(record)

    def record(self, response: AgenticResponse, query: str) -> PerformanceRecord:
        record = PerformanceRecord(
            id=response.run_id,
            query=query,
            intent=response.routing.intent,
            strategy=response.routing.strategy,
            confidence=response.evaluation.confidence,
            iterations=response.iterations,
            time_ms=float(response.metadata.get("total_time_ms", 0.0)),
            documents_retrieved=len(response.retrieval.documents),
            needs_improvement=bool(response.metadata.get("needs_improvement", False)),
            timestamp=time.time(),
            retrieval_method=response.retrieval.method.value,
            routing_confidence=response.routing.confidence,
        )
        with self._lock:
            if record.id in self._history:
                raise ValueError(f"Run already recorded: {record.id}")
            self.store.append(record)
            self._history[record.id] = record
            self._apply(record)
            self._evict()
        logger.debug("recorded run", extra={"run_id": record.id, "strategy_id": _strategy_id(record)})
        return replace(record)

    def record_user_feedback(self, run_id: str, feedback: Feedback | str) -> None:
        """Attach feedback to a recorded run; a later call overwrites.

        Raises `KeyError` for an unknown run id.
        """

        resolved = Feedback(feedback)
        with self._lock:
            record = self._history.get(run_id)
            if record is None:
                raise KeyError(f"Unknown run id: {run_id}")
            before = self._is_success(record.confidence, record.user_feedback)
            after = self._is_success(record.confidence, resolved)
            updated = replace(record, user_feedback=resolved)
            self.store.update(updated)
            self._history[run_id] = updated
            metrics = self._metrics.get(_strategy_id(record))
            if metrics is not None and before != after:
                metrics.successful_queries += self._weight(record) * (float(after) - float(before))
                metrics.success_rate = _ratio(metrics.successful_queries, metrics.total_weight)

    def get_all_metrics(self) -> list[StrategyMetrics]:
        with self._lock:
            return [replace(metrics) for _, metrics in sorted(self._metrics.items())]

    def metrics_snapshot(self) -> tuple[StrategyMetrics, ...]:
        return tuple(self.get_all_metrics())

    def get_metrics_for_intent(self, intent: QueryIntent | str) -> list[StrategyMetrics]:
        resolved = QueryIntent(intent)
        return [metrics for metrics in self.get_all_metrics() if metrics.intent is resolved]

    def get_metrics_for_strategy(self, strategy: RetrievalStrategy | str) -> list[StrategyMetrics]:
        resolved = RetrievalStrategy(strategy)
        return [metrics for metrics in self.get_all_metrics() if metrics.strategy is resolved]

    def get_query_history(self, limit: int | None = None) -> list[PerformanceRecord]:
        with self._lock:
            records = [replace(record) for record in self._history.values()]
        return records[-limit:] if limit else records

    def recommend(self, intent: QueryIntent | str) -> StrategyRecommendation:
        """Best historical strategy for `intent`, or the static default."""

        resolved = QueryIntent(intent)
        candidates = [
            metrics
            for metrics in self.get_metrics_for_intent(resolved)
            if metrics.total_queries >= self.config.min_samples
        ]
        if not candidates:
            default = ALTERNATIVE_STRATEGIES[resolved]
            return StrategyRecommendation(
                strategy=default,
                confidence=0.5,
                reasoning=f"not enough history for {resolved.value}; default {default.value}",
                based_on_history=False,
            )

        def _score(metrics: StrategyMetrics) -> float:
            return (
                metrics.success_rate * 0.5
                + metrics.average_confidence * 0.3
                + metrics.improvement_trend * 0.05
            )

        best = max(candidates, key=lambda metrics: (_score(metrics), metrics.total_queries))
        return StrategyRecommendation(
            strategy=best.strategy,
            confidence=min(_score(best) / 0.8, 0.95),
            reasoning=(
                f"{best.strategy.value} succeeded on {best.success_rate:.0%} of "
                f"{best.total_queries} {resolved.value} queries"
            ),
            based_on_history=True,
        )

    def get_insights(self) -> list[LearningInsight]:
        """Rule-based insights; identical history always yields identical output."""

        metrics = self.get_all_metrics()
        history = self.get_query_history()
        if not history:
            return []
        cfg = self.config
        stamp = history[-1].timestamp
        insights: list[LearningInsight] = []

        for item in metrics:
            if item.total_queries < cfg.insight_min_queries:
                continue
            data = InsightData(
                queries_analyzed=item.total_queries,
                time_range="all time",
                key_metrics={
                    "success_rate": item.success_rate,
                    "average_confidence": item.average_confidence,
                },
            )
            if item.success_rate > 0.85:
                insights.append(
                    _insight(
                        InsightType.STRATEGY_PERFORMANCE,
                        f"best:{item.strategy_id}",
                        title=f"High Success Rate: {item.strategy.value} for {item.intent.value}",
                        description=(
                            f"The {item.strategy.value} strategy achieves {item.success_rate:.1%} success "
                            f"for {item.intent.value} queries with average confidence "
                            f"{item.average_confidence:.2f}."
                        ),
                        impact=Impact.HIGH,
                        suggested_action=(
                            f"Prioritize {item.strategy.value} strategy for {item.intent.value} queries"
                        ),
                        data=data,
                        stamp=stamp,
                    )
                )
            elif item.success_rate < 0.5:
                alternative = ALTERNATIVE_STRATEGIES[item.intent]
                insights.append(
                    _insight(
                        InsightType.FAILURE_MODE,
                        f"poor:{item.strategy_id}",
                        title=f"Low Success Rate: {item.strategy.value} for {item.intent.value}",
                        description=(
                            f"The {item.strategy.value} strategy only achieves {item.success_rate:.1%} "
                            f"success for {item.intent.value} queries."
                        ),
                        impact=Impact.MEDIUM,
                        suggested_action=(
                            f"Avoid {item.strategy.value} for {item.intent.value} queries, "
                            f"try {alternative.value}"
                        ),
                        data=data,
                        stamp=stamp,
                    )
                )

        if len(history) >= 10:
            counts = Counter(record.intent for record in history)
            intent, count = min(counts.items(), key=lambda pair: (-pair[1], pair[0].value))
            share = count / len(history)
            if share > 0.4:
                insights.append(
                    _insight(
                        InsightType.INTENT_PATTERN,
                        f"dominant:{intent.value}",
                        title=f"Dominant Query Pattern: {intent.value}",
                        description=f"{share:.1%} of queries are {intent.value} type.",
                        impact=Impact.MEDIUM,
                        suggested_action=(
                            f"Optimize document structure and chunking strategy for {intent.value} queries"
                        ),
                        data=InsightData(
                            queries_analyzed=len(history),
                            time_range=_time_range(history),
                            key_metrics={"share": share},
                        ),
                        stamp=stamp,
                    )
                )

        window = cfg.degradation_window
        if len(history) >= 2 * window:
            recent = [record.confidence for record in history[-window:]]
            previous = [record.confidence for record in history[-2 * window : -window]]
            drop = _mean(previous) - _mean(recent)
            if drop > 0.1:
                insights.append(
                    _insight(
                        InsightType.FAILURE_MODE,
                        f"degradation:{window}",
                        title="Confidence Degradation Detected",
                        description=(
                            f"Average confidence fell from {_mean(previous):.2f} to {_mean(recent):.2f} "
                            f"over the last {window} queries."
                        ),
                        impact=Impact.HIGH,
                        suggested_action="Review recent corpus changes and routing decisions",
                        data=InsightData(
                            queries_analyzed=2 * window,
                            time_range=_time_range(history[-2 * window :]),
                            key_metrics={"previous": _mean(previous), "recent": _mean(recent), "drop": drop},
                        ),
                        stamp=stamp,
                    )
                )

        recent_history = history[-10:]
        if len(recent_history) >= 10:
            average_iterations = _mean([float(record.iterations) for record in recent_history])
            if average_iterations > 1.5:
                insights.append(
                    _insight(
                        InsightType.OPTIMIZATION_OPPORTUNITY,
                        "iterations:recent",
                        title="High Iteration Count Detected",
                        description=(
                            f"Recent queries average {average_iterations:.1f} iterations, so initial "
                            "strategies often need refinement."
                        ),
                        impact=Impact.MEDIUM,
                        suggested_action="Review and improve initial query analysis and strategy selection",
                        data=InsightData(
                            queries_analyzed=len(recent_history),
                            time_range=_time_range(recent_history),
                            key_metrics={"average_iterations": average_iterations},
                        ),
                        stamp=stamp,
                    )
                )
        return insights

    def clear(self) -> None:
        with self._lock:
            self.store.clear()
            self._history.clear()
            self._metrics.clear()
            self._recent.clear()

    def close(self) -> None:
        with self._lock:
            self.store.close()

    def _apply(self, record: PerformanceRecord) -> None:
        key = _strategy_id(record)
        metrics = self._metrics.get(key)
        if metrics is None:
            metrics = StrategyMetrics(strategy_id=key, intent=record.intent, strategy=record.strategy)
            self._metrics[key] = metrics

        weight = self._weight(record)
        metrics.total_queries += 1
        metrics.total_weight += weight
        share = weight / metrics.total_weight
        metrics.successful_queries += weight * float(self._is_success(record.confidence, record.user_feedback))
        metrics.success_rate = _ratio(metrics.successful_queries, metrics.total_weight)
        metrics.average_confidence += (record.confidence - metrics.average_confidence) * share
        metrics.average_retrieval_time += (record.time_ms - metrics.average_retrieval_time) * share
        metrics.average_iterations += (record.iterations - metrics.average_iterations) * share
        metrics.last_used = max(metrics.last_used, record.timestamp)

        window = self.config.trend_window
        recent = self._recent.setdefault(key, deque(maxlen=2 * window))
        recent.append(record.confidence)
        if len(recent) == 2 * window:
            values = list(recent)
            metrics.improvement_trend = _mean(values[window:]) - _mean(values[:window])
        else:
            metrics.improvement_trend = 0.0

    def _evict(self) -> None:
        while len(self._history) > self.config.history_limit:
            oldest = next(iter(self._history))
            del self._history[oldest]
            self.store.delete(oldest)

    def _weight(self, record: PerformanceRecord) -> float:
        return 0.5 if record.routing_confidence < self.config.low_routing_confidence else 1.0

    def _is_success(self, confidence: float, feedback: Feedback | None) -> bool:
        return confidence >= self.config.success_threshold and feedback is not Feedback.NEGATIVE


def _strategy_id(record: PerformanceRecord) -> str:
    return f"{record.intent.value}-{record.strategy.value}"


def _insight(
    kind: InsightType,
    key: str,
    *,
    title: str,
    description: str,
    impact: Impact,
    suggested_action: str | None,
    data: InsightData,
    stamp: float,
) -> LearningInsight:
    digest = blake2b(f"{kind.value}:{key}".encode("utf-8"), digest_size=6).hexdigest()
    return LearningInsight(
        id=f"insight-{digest}",
        type=kind,
        title=title,
        description=description,
        impact=impact,
        actionable=suggested_action is not None,
        supporting_data=data,
        timestamp=stamp,
        suggested_action=suggested_action,
    )


def _time_range(records: list[PerformanceRecord]) -> str:
    start = datetime.fromtimestamp(records[0].timestamp, tz=timezone.utc).isoformat()
    end = datetime.fromtimestamp(records[-1].timestamp, tz=timezone.utc).isoformat()
    return f"{start} / {end}"


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0
