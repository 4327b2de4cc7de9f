from agentic_rag.agent.router import QueryRouter
from agentic_rag.types import (
    ConversationTurn,
    CorpusSummary,
    Document,
    QueryIntent,
    RetrievalStrategy,
    StrategyMetrics,
)

_SUMMARY = CorpusSummary(
    name="Support handbook",
    document_count=3,
    vocabulary=frozenset(
        {"refund", "policy", "shipping", "error", "code", "orders", "tracking", "issued", "refunds"}
    ),
)


def test_greeting_routes_to_direct_answer() -> None:
    decision = QueryRouter().route("Hello there!", _SUMMARY)

    assert decision.intent is QueryIntent.CHITCHAT
    assert decision.strategy is RetrievalStrategy.DIRECT_ANSWER
    assert decision.needs_retrieval is False
    assert decision.fallback_strategies == ()


def test_comparison_is_decomposed_into_parallel_sub_queries() -> None:
    query = "Compare the refund policy and the shipping policy"

    decision = QueryRouter().route(query, _SUMMARY)

    assert decision.intent is QueryIntent.COMPARATIVE
    assert decision.strategy is RetrievalStrategy.MULTI_QUERY
    assert decision.sub_queries == ("What is the refund policy?", "What is the shipping policy?", query)
    assert decision.parallelizable is True
    assert RetrievalStrategy.RAG_FUSION in decision.fallback_strategies


def test_identifier_query_prefers_keyword_search() -> None:
    decision = QueryRouter().route("Where is error code ERR42 documented?", _SUMMARY)

    assert decision.intent is QueryIntent.FACTUAL
    assert decision.strategy is RetrievalStrategy.KEYWORD
    assert decision.sub_queries == ()


def test_short_question_uses_semantic_search() -> None:
    decision = QueryRouter().route("What is the refund policy?", _SUMMARY)

    assert decision.intent is QueryIntent.FACTUAL
    assert decision.confidence == 0.8
    assert decision.strategy is RetrievalStrategy.SEMANTIC
    assert decision.fallback_strategies == (RetrievalStrategy.HYBRID, RetrievalStrategy.KEYWORD)


def test_query_outside_vocabulary_is_out_of_scope() -> None:
    decision = QueryRouter().route("Tell me about quantum chromodynamics", _SUMMARY)

    assert decision.intent is QueryIntent.OUT_OF_SCOPE
    assert decision.strategy is RetrievalStrategy.DIRECT_ANSWER
    assert decision.needs_retrieval is False


def test_follow_up_with_history_is_clarification() -> None:
    history = [ConversationTurn(query="What is the refund policy?", response="Refunds within 30 days [1]")]

    decision = QueryRouter().route("What about shipping?", _SUMMARY, history)

    assert decision.intent is QueryIntent.CLARIFICATION
    assert decision.needs_retrieval is True


def test_learned_metrics_override_heuristic_after_min_samples() -> None:
    router = QueryRouter(min_samples=3)

    def metrics(total: int) -> list[StrategyMetrics]:
        return [
            StrategyMetrics(
                strategy_id="factual-hybrid",
                intent=QueryIntent.FACTUAL,
                strategy=RetrievalStrategy.HYBRID,
                total_queries=total,
                successful_queries=float(total),
                success_rate=1.0,
                average_confidence=0.9,
            )
        ]

    too_few = router.route("What is the refund policy?", _SUMMARY, metrics=metrics(2))
    enough = router.route("What is the refund policy?", _SUMMARY, metrics=metrics(3))

    assert too_few.strategy is RetrievalStrategy.SEMANTIC
    assert too_few.learned is False
    assert enough.strategy is RetrievalStrategy.HYBRID
    assert enough.learned is True
    assert "learned preference" in enough.reasoning


def test_routing_is_deterministic() -> None:
    router = QueryRouter()
    query = "Why do refunds take longer for international orders?"

    assert router.route(query, _SUMMARY) == router.route(query, _SUMMARY)


def test_decompose_splits_compound_question() -> None:
    router = QueryRouter()

    assert router.decompose("What is the refund policy and how are refunds issued?") == [
        "What is the refund policy?",
        "How are refunds issued?",
    ]
    assert router.decompose("refund policy") == ["refund policy"]


def test_expand_keeps_original_query_first() -> None:
    variations = QueryRouter().expand("What is the refund policy?", 3)

    assert variations[0] == "What is the refund policy?"
    assert "refund policy" in variations
    assert len(variations) == len(set(v.lower() for v in variations)) <= 4


def test_retrieval_quality_caps_coverage_at_corpus_size() -> None:
    router = QueryRouter()
    doc = Document(id="refund", title="Refund Policy", content="Refunds are issued within 30 days.")

    empty = router.evaluate_retrieval_quality([], "refund policy")
    single = router.evaluate_retrieval_quality([doc], "refund policy", top_k=5, available=1)
    sparse = router.evaluate_retrieval_quality([doc], "refund policy", top_k=5)

    assert empty.needs_fallback is True
    assert (single.quality, single.coverage, single.needs_fallback) == (1.0, 1.0, False)
    assert sparse.coverage == 0.2
    assert sparse.needs_fallback is True
