"""Reformulation DAG and retry query rewriting."""

from __future__ import annotations

import time
import uuid
from collections import Counter
from dataclasses import dataclass

from agentic_rag.agent.router import QueryRouter
from agentic_rag.obs.tracing import content_words
from agentic_rag.types import (
    Document,
    EvaluationResult,
    LinkType,
    NodeType,
    ReformulationNode,
    RelevanceToken,
    RetrievalStrategy,
    RoutingDecision,
    SupportToken,
    UtilityToken,
)


@dataclass(slots=True, frozen=True)
class RetryPlan:
    """How the next iteration should differ from the last one."""

    query: str
    node_type: NodeType
    link_type: LinkType
    reasoning: str
    strategy: RetrievalStrategy | None = None
    sub_queries: tuple[str, ...] = ()


class ReformulationGraph:
    """Append-only DAG of the queries a run tried, rooted at the user query."""

    def __init__(self, query: str) -> None:
        root = ReformulationNode(
            id=_node_id(),
            query=query,
            type=NodeType.ORIGINAL,
            iteration=1,
            timestamp=time.time(),
        )
        self._nodes: list[ReformulationNode] = [root]

    @property
    def root(self) -> ReformulationNode:
        return self._nodes[0]

    @property
    def current(self) -> ReformulationNode:
        return self._nodes[-1]

    def annotate_current(self, confidence: float) -> None:
        self._nodes[-1].confidence = confidence

    def append(self, plan: RetryPlan, iteration: int) -> ReformulationNode:
        node = ReformulationNode(
            id=_node_id(),
            query=plan.query,
            type=plan.node_type,
            iteration=iteration,
            timestamp=time.time(),
            parent_id=self.current.id,
            link_type=plan.link_type,
            reasoning=plan.reasoning,
        )
        self._nodes.append(node)
        return node

    def nodes(self) -> list[ReformulationNode]:
        return list(self._nodes)


def plan_retry(
    query: str,
    evaluation: EvaluationResult,
    routing: RoutingDecision,
    documents: list[Document],
    *,
    router: QueryRouter,
    used_fallbacks: set[RetrievalStrategy] | None = None,
) -> RetryPlan | None:
    """Pick the rewrite for the axis that failed.

    Relevance failures expand the query (or switch to a fallback strategy when
    nothing was retrieved), support failures simplify it and utility failures
    decompose it. Returns `None` when no deterministic rewrite applies, which
    callers treat as a request for a free-form refinement.
    """

    used = used_fallbacks or set()
    if evaluation.relevance is not RelevanceToken.RELEVANT:
        unused = [s for s in routing.fallback_strategies if s not in used and s is not routing.strategy]
        if not documents and unused:
            return RetryPlan(
                query=query,
                node_type=NodeType.REFORMULATION,
                link_type=LinkType.FALLBACK,
                reasoning=f"nothing retrieved with {routing.strategy.value}; switching to {unused[0].value}",
                strategy=unused[0],
            )
        expanded = expand_with_feedback(query, documents, router=router)
        if expanded != query:
            return RetryPlan(
                query=expanded,
                node_type=NodeType.EXPANSION,
                link_type=LinkType.EXPANDED,
                reasoning=f"relevance {evaluation.relevance.value}; expanded with related terms",
            )

    if evaluation.support is not SupportToken.FULLY_SUPPORTED:
        simplified = simplify(query)
        if simplified and simplified.lower() != query.strip().lower():
            return RetryPlan(
                query=simplified,
                node_type=NodeType.SIMPLIFICATION,
                link_type=LinkType.SIMPLIFIED,
                reasoning=f"support {evaluation.support.value}; reduced to core terms",
            )

    if evaluation.utility is not UtilityToken.USEFUL:
        sub_queries = router.decompose(query)
        if len(sub_queries) > 1:
            return RetryPlan(
                query=" | ".join(sub_queries),
                node_type=NodeType.SUBQUERY,
                link_type=LinkType.DECOMPOSED,
                reasoning=f"utility {evaluation.utility.value}; decomposed into {len(sub_queries)} parts",
                strategy=RetrievalStrategy.MULTI_QUERY,
                sub_queries=tuple(sub_queries),
            )
    return None


def expand_with_feedback(query: str, documents: list[Document], *, router: QueryRouter, terms: int = 3) -> str:
    """Append the most frequent new content words of the retrieved documents.

    Without documents the router's deterministic variation is used instead.
    """

    known = set(content_words(query))
    counts: Counter[str] = Counter()
    for document in documents[:3]:
        counts.update(w for w in content_words(f"{document.title} {document.content}") if w not in known)
    extra = [word for word, _ in sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:terms]]
    if extra:
        return f"{query.strip()} {' '.join(extra)}"
    variations = router.expand(query, 3)
    return variations[-1] if len(variations) > 1 else query


def simplify(query: str) -> str:
    return " ".join(content_words(query))


def _node_id() -> str:
    return f"node-{uuid.uuid4().hex[:12]}"
