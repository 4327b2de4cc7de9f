"""Agentic RAG orchestration: route, retrieve, generate, evaluate and retry."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, TypeVar

from pydantic import ValidationError

from agentic_rag.agent.evaluator import SelfEvaluator, conservative_evaluation
from agentic_rag.agent.generator import AnswerGenerator
from agentic_rag.agent.reformulation import ReformulationGraph, RetryPlan, plan_retry
from agentic_rag.agent.router import QueryRouter
from agentic_rag.config import OrchestratorConfig
from agentic_rag.errors import ConfigurationError
from agentic_rag.ingest.corpus import Corpus
from agentic_rag.learning.tracker import PerformanceTracker
from agentic_rag.obs.progress import ProgressStream
from agentic_rag.obs.tracing import Timer
from agentic_rag.retrieval.retriever import StrategyRetriever
from agentic_rag.types import (
    AgenticResponse,
    ConversationTurn,
    Criticism,
    EvaluationResult,
    LinkType,
    NodeType,
    Phase,
    QueryIntent,
    RelevanceToken,
    RetrievalResult,
    RetrievalStrategy,
    RoutingDecision,
    StepStatus,
    SupportToken,
    UtilityToken,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FAILURE_ANSWER = "I'm sorry, something went wrong while answering this question. Please try again."


class RunState(str, Enum):
    ROUTE = "route"
    RETRIEVE = "retrieve"
    GENERATE = "generate"
    EVALUATE = "evaluate"
    CRITICIZE = "criticize"
    RETRY = "retry"
    DONE = "done"


_STATE_PHASES = {
    RunState.ROUTE: Phase.ROUTING,
    RunState.RETRIEVE: Phase.RETRIEVAL,
    RunState.GENERATE: Phase.GENERATION,
    RunState.EVALUATE: Phase.EVALUATION,
    RunState.CRITICIZE: Phase.CRITICISM,
    RunState.RETRY: Phase.RETRY,
    RunState.DONE: Phase.COMPLETE,
}


class _Cancelled(Exception):
    pass


@dataclass(slots=True)
class _Run:
    """Mutable working state of a single orchestration run."""

    query: str
    config: OrchestratorConfig
    history: list[ConversationTurn]
    progress: ProgressStream
    graph: ReformulationGraph
    current_query: str
    iteration: int = 0
    state: RunState = RunState.ROUTE
    routing: RoutingDecision | None = None
    retrieval: RetrievalResult | None = None
    answer: str = ""
    evaluation: EvaluationResult | None = None
    criticism: Criticism | None = None
    actions: list[str] = field(default_factory=list)
    pending: RetryPlan | None = None
    used_fallbacks: set[RetrievalStrategy] = field(default_factory=set)


class Orchestrator:
    """Runs the agentic RAG state machine over explicitly injected collaborators.

    One call to `orchestrate` is one logical task. The only state shared across
    runs is the performance tracker and the bounded conversation history.
    """

    def __init__(
        self,
        corpus: Corpus,
        retriever: StrategyRetriever,
        router: QueryRouter,
        answer_generator: AnswerGenerator,
        evaluator: SelfEvaluator,
        tracker: PerformanceTracker,
        *,
        history_size: int = 5,
    ) -> None:
        self.corpus = corpus
        self.retriever = retriever
        self.router = router
        self.answer_generator = answer_generator
        self.evaluator = evaluator
        self.tracker = tracker
        self._history: deque[ConversationTurn] = deque(maxlen=history_size)
        self._history_lock = threading.Lock()

    @property
    def history(self) -> list[ConversationTurn]:
        with self._history_lock:
            return list(self._history)

    def clear_history(self) -> None:
        with self._history_lock:
            self._history.clear()

    def orchestrate(
        self,
        query: str,
        config: OrchestratorConfig | Mapping[str, Any] | None = None,
        *,
        cancel_event: threading.Event | None = None,
        history: Sequence[ConversationTurn] | None = None,
    ) -> AgenticResponse:
        """Answer `query`, retrying with reformulated queries while confidence is low.

        Invalid configuration or an empty query raises `ConfigurationError`
        before any state transition. Every other outcome, including
        collaborator failure and cancellation, is returned as a complete
        `AgenticResponse`.
        """

        cfg = _resolve_config(config)
        if not isinstance(query, str) or not query.strip():
            raise ConfigurationError("query must be a non-empty string")

        turns = list(history) if history is not None else self.history
        run = _Run(
            query=query,
            config=cfg,
            history=turns[-(self._history.maxlen or 5) :],
            progress=ProgressStream(cfg.on_progress),
            graph=ReformulationGraph(query),
            current_query=query,
        )

        failure: Exception | None = None
        cancelled = False
        with Timer() as timer:
            try:
                while run.state is not RunState.DONE:
                    # Results of a call that finished after cancellation are dropped here.
                    if cancel_event is not None and cancel_event.is_set():
                        raise _Cancelled()
                    logger.debug(
                        "state transition",
                        extra={"state": run.state.value, "iteration": run.iteration},
                    )
                    run.state = self._step(run)
            except _Cancelled:
                cancelled = True
            except Exception as exc:
                failure = exc

        if cancelled:
            logger.info("run cancelled", extra={"iteration": run.iteration, "state": run.state.value})
            return self._cancelled_response(run, timer.elapsed_ms)
        if failure is not None:
            logger.warning("run failed; returning degraded response", exc_info=failure)
            return self._failure_response(run, failure, timer.elapsed_ms)

        try:
            response = self._final_response(run, timer.elapsed_ms)
        except Exception as exc:
            logger.warning("failed to assemble response; returning degraded response", exc_info=exc)
            return self._failure_response(run, exc, timer.elapsed_ms)
        with self._history_lock:
            self._history.append(ConversationTurn(query=query, response=response.answer))
        try:
            self.tracker.record(response, query)
        except Exception:
            logger.exception("failed to record run performance", extra={"run_id": response.run_id})
        logger.info(
            "run complete",
            extra={
                "run_id": response.run_id,
                "iterations": response.iterations,
                "confidence": response.evaluation.confidence,
                "strategy": response.routing.strategy.value,
            },
        )
        return response

    def _step(self, run: _Run) -> RunState:
        if run.state is RunState.ROUTE:
            return self._route(run)
        if run.state is RunState.RETRIEVE:
            return self._retrieve(run)
        if run.state is RunState.GENERATE:
            return self._generate(run)
        if run.state is RunState.EVALUATE:
            return self._evaluate(run)
        if run.state is RunState.CRITICIZE:
            return self._criticize(run)
        if run.state is RunState.RETRY:
            return self._retry(run)
        raise ValueError(f"Unexpected state: {run.state}")

    def _route(self, run: _Run) -> RunState:
        cfg = run.config
        run.iteration += 1
        run.criticism = None
        run.progress.emit(
            Phase.ROUTING,
            StepStatus.IN_PROGRESS,
            f"Analyzing query (Iteration {run.iteration}/{cfg.max_iterations})",
            details="Understanding query intent, complexity, and optimal strategy...",
            progress=10,
        )
        routing = self.router.route(
            run.current_query,
            self.corpus.summary(),
            history=run.history,
            metrics=self.tracker.metrics_snapshot(),
        )
        plan, run.pending = run.pending, None
        if plan is not None and plan.strategy is not None and routing.needs_retrieval:
            sub_queries = plan.sub_queries or routing.sub_queries
            routing = replace(
                routing,
                strategy=plan.strategy,
                sub_queries=sub_queries if plan.strategy is RetrievalStrategy.MULTI_QUERY else (),
                parallelizable=plan.strategy is RetrievalStrategy.MULTI_QUERY and len(sub_queries) > 1,
                reasoning=f"{routing.reasoning}; retry uses {plan.strategy.value}",
            )
        run.routing = routing
        run.progress.emit(
            Phase.ROUTING,
            StepStatus.COMPLETE,
            "Query analysis complete",
            details=f"Intent: {routing.intent.value}, Strategy: {routing.strategy.value}",
            progress=20,
            metadata={
                "intent": routing.intent.value,
                "strategy": routing.strategy.value,
                "needs_retrieval": routing.needs_retrieval,
                "learned": routing.learned,
            },
        )
        if not routing.needs_retrieval:
            run.retrieval = RetrievalResult.empty(run.current_query)
            return RunState.GENERATE
        return RunState.RETRIEVE

    def _retrieve(self, run: _Run) -> RunState:
        cfg = run.config
        routing = _require(run.routing, "routing")

        sub_queries = list(routing.sub_queries)
        if routing.strategy is RetrievalStrategy.MULTI_QUERY and not sub_queries:
            sub_queries = self.router.decompose(run.current_query)
            routing = replace(routing, sub_queries=tuple(sub_queries))
            run.routing = routing
        if sub_queries:
            run.progress.emit(
                Phase.RETRIEVAL,
                StepStatus.IN_PROGRESS,
                "Breaking down complex query",
                details=f"Generated {len(sub_queries)} sub-queries for comprehensive retrieval",
                progress=35,
                metadata={"sub_queries": sub_queries},
            )

        search_query = self._search_query(run)
        run.progress.emit(
            Phase.RETRIEVAL,
            StepStatus.IN_PROGRESS,
            f"Executing {routing.strategy.value} retrieval",
            details=f"Searching {len(self.corpus)} documents with top-{cfg.top_k} results...",
            progress=45,
        )
        retrieval = self.retriever.retrieve(
            search_query,
            routing.strategy,
            cfg.top_k,
            sub_queries=sub_queries or None,
            parallelizable=routing.parallelizable,
        )
        run.progress.emit(
            Phase.RETRIEVAL,
            StepStatus.COMPLETE,
            f"Retrieved {len(retrieval.documents)} documents",
            details=f"{routing.strategy.value} strategy found {len(retrieval.documents)} relevant documents",
            progress=55,
            metadata={"documents_found": len(retrieval.documents), "method": retrieval.method.value},
        )

        quality = self.router.evaluate_retrieval_quality(
            retrieval.documents, search_query, cfg.top_k, available=len(self.corpus)
        )
        fallbacks = [s for s in routing.fallback_strategies if s is not routing.strategy]
        if quality.needs_fallback and fallbacks and run.iteration < cfg.max_iterations:
            fallback = fallbacks[0]
            run.progress.emit(
                Phase.RETRIEVAL,
                StepStatus.IN_PROGRESS,
                "Trying fallback strategy",
                details=f"Initial results insufficient, using {fallback.value} strategy...",
                progress=62,
                metadata={"fallback_strategy": fallback.value},
            )
            alternative = self.retriever.retrieve(search_query, fallback, cfg.top_k)
            alternative_quality = self.router.evaluate_retrieval_quality(
                alternative.documents, search_query, cfg.top_k, available=len(self.corpus)
            )
            if (alternative_quality.quality, alternative_quality.coverage) > (quality.quality, quality.coverage):
                alternative.metadata["fallback_from"] = routing.strategy.value
                retrieval = alternative
            run.progress.emit(
                Phase.RETRIEVAL,
                StepStatus.COMPLETE,
                "Fallback retrieval complete",
                details=f"Found {len(alternative.documents)} documents using fallback strategy",
                progress=65,
                metadata={"documents_found": len(alternative.documents)},
            )
        run.retrieval = retrieval
        return RunState.GENERATE

    def _generate(self, run: _Run) -> RunState:
        routing, retrieval = _require(run.routing, "routing"), _require(run.retrieval, "retrieval")

        if not routing.needs_retrieval:
            run.progress.emit(
                Phase.GENERATION,
                StepStatus.IN_PROGRESS,
                "Generating direct response",
                details="No retrieval needed for this query type",
                progress=60,
            )
            run.answer = self.answer_generator.direct_answer(run.current_query, routing.intent)
            run.evaluation = self._direct_evaluation(routing.intent, run.config.confidence_threshold)
            run.graph.annotate_current(run.evaluation.confidence)
            run.progress.emit(Phase.COMPLETE, StepStatus.COMPLETE, "Response generated", progress=100)
            return RunState.DONE

        run.progress.emit(
            Phase.GENERATION,
            StepStatus.IN_PROGRESS,
            "Generating response",
            details="Synthesizing information from retrieved documents...",
            progress=70,
        )
        run.answer = self.answer_generator.answer(run.current_query, retrieval)
        run.progress.emit(
            Phase.GENERATION,
            StepStatus.COMPLETE,
            "Response generated",
            details=f"Generated {len(run.answer)} character response",
            progress=78,
            metadata={"response_length": len(run.answer)},
        )
        return RunState.EVALUATE

    def _evaluate(self, run: _Run) -> RunState:
        retrieval = _require(run.retrieval, "retrieval")
        run.progress.emit(
            Phase.EVALUATION,
            StepStatus.IN_PROGRESS,
            "Self-evaluating response quality",
            details="Checking relevance, support, and utility...",
            progress=80,
        )
        evaluation = self.evaluator.evaluate(
            run.current_query,
            run.answer,
            retrieval,
            confidence_threshold=run.config.confidence_threshold,
        )
        run.evaluation = evaluation
        run.graph.annotate_current(evaluation.confidence)
        run.progress.emit(
            Phase.EVALUATION,
            StepStatus.COMPLETE,
            f"Quality assessment: {evaluation.confidence * 100:.0f}% confidence",
            details=f"Relevance: {evaluation.relevance.value}, Support: {evaluation.support.value}",
            progress=85,
            metadata={
                "confidence": evaluation.confidence,
                "relevance": evaluation.relevance.value,
                "support": evaluation.support.value,
                "utility": evaluation.utility.value,
            },
        )
        if run.config.enable_criticism:
            return RunState.CRITICIZE
        return self._decide(run)

    def _criticize(self, run: _Run) -> RunState:
        retrieval = _require(run.retrieval, "retrieval")
        run.progress.emit(
            Phase.CRITICISM,
            StepStatus.IN_PROGRESS,
            "Running critic analysis",
            details="Checking logical consistency, accuracy, and completeness...",
            progress=88,
        )
        criticism = self.evaluator.critique(run.current_query, run.answer, retrieval)
        run.criticism = criticism
        run.progress.emit(
            Phase.CRITICISM,
            StepStatus.COMPLETE,
            "Critic analysis complete",
            details=(
                f"Logic: {criticism.logical_consistency * 100:.0f}%, "
                f"Accuracy: {criticism.factual_accuracy * 100:.0f}%"
            ),
            progress=92,
            metadata={
                "logical_consistency": criticism.logical_consistency,
                "factual_accuracy": criticism.factual_accuracy,
                "completeness": criticism.completeness,
            },
        )
        return self._decide(run)

    def _decide(self, run: _Run) -> RunState:
        cfg = run.config
        evaluation = _require(run.evaluation, "evaluation")

        if not evaluation.needs_retry or not cfg.enable_auto_retry:
            run.progress.emit(
                Phase.COMPLETE,
                StepStatus.COMPLETE,
                "Response meets quality threshold" if not evaluation.needs_retry else "Response finalized",
                details=f"Completed in {run.iteration} iteration(s)",
                progress=100,
                metadata={"iterations": run.iteration},
            )
            return RunState.DONE

        if run.iteration >= cfg.max_iterations:
            run.progress.emit(
                Phase.COMPLETE,
                StepStatus.COMPLETE,
                "Maximum iterations reached",
                details=f"Completed after {run.iteration} iteration(s)",
                progress=100,
                metadata={"iterations": run.iteration},
            )
            return RunState.DONE

        run.progress.emit(
            Phase.RETRY,
            StepStatus.IN_PROGRESS,
            "Quality below threshold, analyzing improvements",
            details="Determining if retry can improve response...",
            progress=94,
        )
        should_retry, run.actions = self.evaluator.suggest_improvements(evaluation, run.criticism)
        if not should_retry:
            run.progress.emit(
                Phase.COMPLETE,
                StepStatus.COMPLETE,
                "Response finalized",
                details="No further improvements possible",
                progress=100,
            )
            return RunState.DONE
        return RunState.RETRY

    def _retry(self, run: _Run) -> RunState:
        routing = _require(run.routing, "routing")
        evaluation = _require(run.evaluation, "evaluation")
        retrieval = _require(run.retrieval, "retrieval")
        run.progress.emit(
            Phase.RETRY,
            StepStatus.IN_PROGRESS,
            f"Retrying with improved query ({run.iteration + 1}/{run.config.max_iterations})",
            details=f"Improvements: {', '.join(run.actions[:2])}",
            progress=96,
            metadata={"improvements": list(run.actions)},
        )
        plan = plan_retry(
            run.current_query,
            evaluation,
            routing,
            retrieval.documents,
            router=self.router,
            used_fallbacks=run.used_fallbacks,
        )
        if plan is None:
            refined = self.answer_generator.reformulate(run.current_query, evaluation, run.actions)
            plan = RetryPlan(
                query=refined,
                node_type=NodeType.REFORMULATION,
                link_type=LinkType.REFINED,
                reasoning="free-form refinement of the previous query",
            )
        if plan.link_type is LinkType.FALLBACK and plan.strategy is not None:
            run.used_fallbacks.add(plan.strategy)

        node = run.graph.append(plan, run.iteration + 1)
        run.current_query = plan.query
        run.pending = plan
        run.progress.emit(
            Phase.RETRY,
            StepStatus.COMPLETE,
            "Query reformulated",
            details="Starting new iteration with improved query...",
            progress=5,
            metadata={"link_type": plan.link_type.value, "query": node.query},
        )
        return RunState.ROUTE

    def _search_query(self, run: _Run) -> str:
        routing = _require(run.routing, "routing")
        if routing.intent is QueryIntent.CLARIFICATION and run.history:
            return f"{run.history[-1].query} {run.current_query}"
        return run.current_query

    def _direct_evaluation(self, intent: QueryIntent, threshold: float) -> EvaluationResult:
        if intent is QueryIntent.CHITCHAT:
            return EvaluationResult(
                relevance=RelevanceToken.RELEVANT,
                support=SupportToken.FULLY_SUPPORTED,
                utility=UtilityToken.USEFUL,
                confidence=0.9,
                needs_retry=False,
                reasoning="Direct answer without retrieval",
            )
        confidence = self.evaluator.confidence(
            RelevanceToken.NOT_RELEVANT, SupportToken.FULLY_SUPPORTED, UtilityToken.NOT_USEFUL
        )
        return EvaluationResult(
            relevance=RelevanceToken.NOT_RELEVANT,
            support=SupportToken.FULLY_SUPPORTED,
            utility=UtilityToken.NOT_USEFUL,
            confidence=confidence,
            needs_retry=confidence < threshold,
            reasoning="Query is outside the knowledge base; answered without retrieval",
            suggestions=["Add documents covering this topic to the knowledge base"],
        )

    def _final_response(self, run: _Run, elapsed_ms: float) -> AgenticResponse:
        routing = _require(run.routing, "routing")
        retrieval = _require(run.retrieval, "retrieval")
        evaluation = _require(run.evaluation, "evaluation")
        _, actions = self.evaluator.suggest_improvements(evaluation, run.criticism)
        return AgenticResponse(
            answer=run.answer,
            sources=[doc.title for doc in retrieval.documents],
            routing=routing,
            retrieval=retrieval,
            evaluation=evaluation,
            criticism=run.criticism,
            iterations=run.iteration,
            reformulations=run.graph.nodes(),
            metadata={
                "total_time_ms": elapsed_ms,
                "retrieval_method": retrieval.method.value,
                "confidence": evaluation.confidence,
                "needs_improvement": evaluation.needs_retry,
                "improvement_suggestions": actions or None,
                "cancelled": False,
                "error": None,
            },
            run_id=_run_id(),
            progress=run.progress.events(),
        )

    def _failure_response(self, run: _Run, exc: Exception, elapsed_ms: float) -> AgenticResponse:
        run.progress.emit(
            _STATE_PHASES[run.state],
            StepStatus.ERROR,
            "Run failed",
            details=str(exc),
            progress=100,
            metadata={"error_type": type(exc).__name__},
        )
        evaluation = conservative_evaluation(f"collaborator failure: {exc}")
        return self._terminal_response(
            run,
            answer=FAILURE_ANSWER,
            evaluation=evaluation,
            elapsed_ms=elapsed_ms,
            cancelled=False,
            error=f"{type(exc).__name__}: {exc}",
        )

    def _cancelled_response(self, run: _Run, elapsed_ms: float) -> AgenticResponse:
        run.progress.emit(
            _STATE_PHASES[run.state],
            StepStatus.ERROR,
            "Run cancelled",
            progress=100,
            metadata={"cancelled": True},
        )
        return self._terminal_response(
            run,
            answer="",
            evaluation=conservative_evaluation("run cancelled before completion"),
            elapsed_ms=elapsed_ms,
            cancelled=True,
            error=None,
        )

    def _terminal_response(
        self,
        run: _Run,
        *,
        answer: str,
        evaluation: EvaluationResult,
        elapsed_ms: float,
        cancelled: bool,
        error: str | None,
    ) -> AgenticResponse:
        routing = run.routing or _unrouted(run.query)
        retrieval = RetrievalResult.empty(run.current_query, routing.strategy)
        return AgenticResponse(
            answer=answer,
            sources=[],
            routing=routing,
            retrieval=retrieval,
            evaluation=evaluation,
            criticism=None,
            iterations=run.iteration,
            reformulations=run.graph.nodes(),
            metadata={
                "total_time_ms": elapsed_ms,
                "retrieval_method": retrieval.method.value,
                "confidence": 0.0,
                "needs_improvement": True,
                "improvement_suggestions": None,
                "cancelled": cancelled,
                "error": error,
            },
            run_id=_run_id(),
            progress=run.progress.events(),
        )


def _resolve_config(config: OrchestratorConfig | Mapping[str, Any] | None) -> OrchestratorConfig:
    if config is None:
        return OrchestratorConfig()
    if isinstance(config, OrchestratorConfig):
        return config
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"Unsupported config type: {type(config).__name__}")
    try:
        return OrchestratorConfig.model_validate(dict(config))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid orchestrator config: {exc}") from exc


def _unrouted(query: str) -> RoutingDecision:
    return RoutingDecision(
        intent=QueryIntent.FACTUAL,
        strategy=RetrievalStrategy.DIRECT_ANSWER,
        needs_retrieval=False,
        parallelizable=False,
        confidence=0.0,
        reasoning=f"run ended before routing {query!r}",
    )


def _require(value: T | None, name: str) -> T:
    if value is None:
        raise RuntimeError(f"{name} is not available in the current run state")
    return value


def _run_id() -> str:
    return f"run-{uuid.uuid4().hex}"
