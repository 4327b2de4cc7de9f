"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class QueryIntent(str, Enum):
    """Coarse classification of what a query is trying to accomplish."""

    FACTUAL = "factual"
    ANALYTICAL = "analytical"
    COMPARATIVE = "comparative"
    PROCEDURAL = "procedural"
    CLARIFICATION = "clarification"
    CHITCHAT = "chitchat"
    OUT_OF_SCOPE = "out_of_scope"


class RetrievalStrategy(str, Enum):
    """Retrieval algorithm chosen to satisfy a query."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"
    MULTI_QUERY = "multi_query"
    RAG_FUSION = "rag_fusion"
    DIRECT_ANSWER = "direct_answer"


class ChunkingStrategy(str, Enum):
    FIXED = "fixed"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"
    SEMANTIC = "semantic"


class RelevanceToken(str, Enum):
    RELEVANT = "RELEVANT"
    PARTIALLY_RELEVANT = "PARTIALLY_RELEVANT"
    NOT_RELEVANT = "NOT_RELEVANT"


class SupportToken(str, Enum):
    FULLY_SUPPORTED = "FULLY_SUPPORTED"
    PARTIALLY_SUPPORTED = "PARTIALLY_SUPPORTED"
    NOT_SUPPORTED = "NOT_SUPPORTED"


class UtilityToken(str, Enum):
    USEFUL = "USEFUL"
    SOMEWHAT_USEFUL = "SOMEWHAT_USEFUL"
    NOT_USEFUL = "NOT_USEFUL"


class NodeType(str, Enum):
    ORIGINAL = "original"
    REFORMULATION = "reformulation"
    SUBQUERY = "subquery"
    EXPANSION = "expansion"
    SIMPLIFICATION = "simplification"


class LinkType(str, Enum):
    DECOMPOSED = "decomposed"
    EXPANDED = "expanded"
    SIMPLIFIED = "simplified"
    REFINED = "refined"
    FALLBACK = "fallback"


class Feedback(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class Phase(str, Enum):
    ROUTING = "routing"
    RETRIEVAL = "retrieval"
    GENERATION = "generation"
    EVALUATION = "evaluation"
    CRITICISM = "criticism"
    RETRY = "retry"
    COMPLETE = "complete"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"


class Impact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class InsightType(str, Enum):
    STRATEGY_PERFORMANCE = "strategy_performance"
    INTENT_PATTERN = "intent_pattern"
    FAILURE_MODE = "failure_mode"
    OPTIMIZATION_OPPORTUNITY = "optimization_opportunity"


@dataclass(slots=True)
class Document:
    """A plain-text corpus document."""

    id: str
    title: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    added_at: float = 0.0


@dataclass(slots=True)
class Chunk:
    """A contiguous slice of one document, optionally embedded.

    `start_index`/`end_index` are character offsets into the source content.
    """

    id: str
    document_id: str
    text: str
    start_index: int
    end_index: int
    token_count: int
    strategy: ChunkingStrategy
    embedding: list[float] | None = None


@dataclass(slots=True)
class ScoredChunk:
    """A chunk-level search hit."""

    chunk: Chunk
    score: float
    rank: int = 0


@dataclass(slots=True)
class Point2D:
    x: float
    y: float


@dataclass(slots=True, frozen=True)
class CorpusSummary:
    """What the router is allowed to know about the corpus."""

    name: str
    document_count: int
    vocabulary: frozenset[str] = frozenset()


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    query: str
    response: str


@dataclass(slots=True, frozen=True)
class RetrievalQuality:
    quality: float
    coverage: float
    needs_fallback: bool


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    intent: QueryIntent
    strategy: RetrievalStrategy
    needs_retrieval: bool
    parallelizable: bool
    confidence: float
    reasoning: str
    sub_queries: tuple[str, ...] = ()
    fallback_strategies: tuple[RetrievalStrategy, ...] = ()
    learned: bool = False


@dataclass(slots=True)
class RetrievalResult:
    """Ranked documents with parallel, strategy-local scores."""

    documents: list[Document]
    scores: list[float]
    method: RetrievalStrategy
    query_used: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.documents) != len(self.scores):
            raise ValueError("documents and scores must have the same length")

    @classmethod
    def empty(cls, query: str, method: RetrievalStrategy = RetrievalStrategy.DIRECT_ANSWER) -> "RetrievalResult":
        return cls(documents=[], scores=[], method=method, query_used=query)


@dataclass(slots=True)
class EvaluationResult:
    relevance: RelevanceToken
    support: SupportToken
    utility: UtilityToken
    confidence: float
    needs_retry: bool
    reasoning: str
    suggestions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Criticism:
    logical_consistency: float
    factual_accuracy: float
    completeness: float
    hallucinations: list[str] = field(default_factory=list)
    gaps: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReformulationNode:
    id: str
    query: str
    type: NodeType
    iteration: int
    timestamp: float
    parent_id: str | None = None
    link_type: LinkType | None = None
    confidence: float | None = None
    reasoning: str | None = None


@dataclass(slots=True)
class ProgressStep:
    """One advisory telemetry event emitted by the orchestrator."""

    phase: Phase
    status: StepStatus
    message: str
    timestamp: float
    sequence: int
    details: str | None = None
    metadata: dict[str, Any] | None = None
    progress: int | None = None


@dataclass(slots=True)
class AgenticResponse:
    answer: str
    sources: list[str]
    routing: RoutingDecision
    retrieval: RetrievalResult
    evaluation: EvaluationResult
    iterations: int
    reformulations: list[ReformulationNode]
    metadata: dict[str, Any]
    run_id: str
    criticism: Criticism | None = None
    progress: list[ProgressStep] = field(default_factory=list)


@dataclass(slots=True)
class PerformanceRecord:
    id: str
    query: str
    intent: QueryIntent
    strategy: RetrievalStrategy
    confidence: float
    iterations: int
    time_ms: float
    documents_retrieved: int
    needs_improvement: bool
    timestamp: float
    retrieval_method: str = ""
    routing_confidence: float = 1.0
    user_feedback: Feedback | None = None


@dataclass(slots=True)
class StrategyMetrics:
    strategy_id: str
    intent: QueryIntent
    strategy: RetrievalStrategy
    total_queries: int = 0
    successful_queries: float = 0.0
    success_rate: float = 0.0
    average_confidence: float = 0.0
    average_retrieval_time: float = 0.0
    average_iterations: float = 0.0
    improvement_trend: float = 0.0
    last_used: float = 0.0
    total_weight: float = 0.0


@dataclass(slots=True)
class InsightData:
    queries_analyzed: int
    time_range: str
    key_metrics: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class LearningInsight:
    id: str
    type: InsightType
    title: str
    description: str
    impact: Impact
    actionable: bool
    supporting_data: InsightData
    timestamp: float
    suggested_action: str | None = None


@dataclass(slots=True)
class RetrievalTrace:
    """Latency record for one executed retrieval strategy."""

    strategy: RetrievalStrategy
    query: str
    result_count: int
    latency_ms: float
