from agentic_rag.agent.reformulation import ReformulationGraph, RetryPlan, expand_with_feedback, plan_retry, simplify
from agentic_rag.agent.router import QueryRouter
from agentic_rag.types import (
    Document,
    EvaluationResult,
    LinkType,
    NodeType,
    QueryIntent,
    RelevanceToken,
    RetrievalStrategy,
    RoutingDecision,
    SupportToken,
    UtilityToken,
)

_ROUTING = RoutingDecision(
    intent=QueryIntent.FACTUAL,
    strategy=RetrievalStrategy.SEMANTIC,
    needs_retrieval=True,
    parallelizable=False,
    confidence=0.8,
    reasoning="direct question form",
    fallback_strategies=(RetrievalStrategy.HYBRID, RetrievalStrategy.KEYWORD),
)

_REFUND = Document(
    id="refund",
    title="Refund Policy",
    content="Refunds are issued to the original payment method within 30 days.",
)


def _evaluation(
    relevance: RelevanceToken = RelevanceToken.RELEVANT,
    support: SupportToken = SupportToken.FULLY_SUPPORTED,
    utility: UtilityToken = UtilityToken.USEFUL,
) -> EvaluationResult:
    return EvaluationResult(
        relevance=relevance,
        support=support,
        utility=utility,
        confidence=0.3,
        needs_retry=True,
        reasoning="test",
    )


def test_empty_retrieval_switches_to_unused_fallback_strategy() -> None:
    router = QueryRouter()
    evaluation = _evaluation(relevance=RelevanceToken.NOT_RELEVANT)

    first = plan_retry("refund policy", evaluation, _ROUTING, [], router=router)
    second = plan_retry(
        "refund policy", evaluation, _ROUTING, [], router=router, used_fallbacks={RetrievalStrategy.HYBRID}
    )

    assert first is not None and first.link_type is LinkType.FALLBACK
    assert first.strategy is RetrievalStrategy.HYBRID
    assert first.query == "refund policy"
    assert second is not None and second.strategy is RetrievalStrategy.KEYWORD


def test_partial_relevance_expands_with_document_terms() -> None:
    plan = plan_retry(
        "refund",
        _evaluation(relevance=RelevanceToken.PARTIALLY_RELEVANT),
        _ROUTING,
        [_REFUND],
        router=QueryRouter(),
    )

    assert plan is not None
    assert plan.node_type is NodeType.EXPANSION
    assert plan.link_type is LinkType.EXPANDED
    assert plan.query.startswith("refund ")
    assert plan.query != "refund"


def test_support_failure_simplifies_query() -> None:
    plan = plan_retry(
        "What is the refund policy?",
        _evaluation(support=SupportToken.NOT_SUPPORTED),
        _ROUTING,
        [_REFUND],
        router=QueryRouter(),
    )

    assert plan == RetryPlan(
        query="refund policy",
        node_type=NodeType.SIMPLIFICATION,
        link_type=LinkType.SIMPLIFIED,
        reasoning="support NOT_SUPPORTED; reduced to core terms",
    )


def test_utility_failure_decomposes_compound_query() -> None:
    plan = plan_retry(
        "What is the refund policy and how are refunds issued?",
        _evaluation(utility=UtilityToken.NOT_USEFUL),
        _ROUTING,
        [_REFUND],
        router=QueryRouter(),
    )

    assert plan is not None
    assert plan.link_type is LinkType.DECOMPOSED
    assert plan.strategy is RetrievalStrategy.MULTI_QUERY
    assert plan.sub_queries == ("What is the refund policy?", "How are refunds issued?")


def test_no_deterministic_rewrite_returns_none() -> None:
    plan = plan_retry(
        "refund policy",
        _evaluation(utility=UtilityToken.SOMEWHAT_USEFUL),
        _ROUTING,
        [_REFUND],
        router=QueryRouter(),
    )

    assert plan is None


def test_expand_without_documents_uses_router_variation() -> None:
    assert expand_with_feedback("refund policy", [], router=QueryRouter()) == "refund policy details and explanation"
    assert simplify("What is the refund policy?") == "refund policy"


def test_graph_nodes_link_to_their_parent() -> None:
    graph = ReformulationGraph("What is the refund policy?")
    graph.annotate_current(0.4)
    plan = RetryPlan(
        query="refund policy",
        node_type=NodeType.SIMPLIFICATION,
        link_type=LinkType.SIMPLIFIED,
        reasoning="reduced to core terms",
    )

    child = graph.append(plan, iteration=2)
    nodes = graph.nodes()

    assert nodes[0].type is NodeType.ORIGINAL
    assert nodes[0].parent_id is None
    assert nodes[0].confidence == 0.4
    assert child.parent_id == graph.root.id
    assert child.iteration == 2
    assert graph.current is child
    assert len({node.id for node in nodes}) == 2
