import threading

import pytest

from agentic_rag.agent.router import QueryRouter
from agentic_rag.config import RetrievalConfig
from agentic_rag.errors import CollaboratorError, SearchBackendError
from agentic_rag.ingest.corpus import Corpus
from agentic_rag.retrieval.retriever import StrategyRetriever
from agentic_rag.retrieval.search_backend import SearchHit
from agentic_rag.types import RetrievalStrategy, RetrievalTrace


def _corpus() -> Corpus:
    corpus = Corpus("Support handbook")
    corpus.add_document(
        "Refund Policy",
        "Our refund policy allows customers to request a refund within 30 days of purchase.",
        doc_id="refund",
    )
    corpus.add_document(
        "Shipping Guide",
        "Orders ship within two business days. Tracking numbers are sent by email.",
        doc_id="shipping",
    )
    corpus.add_document(
        "Warranty Terms",
        "Hardware carries a one year warranty covering manufacturing defects.",
        doc_id="warranty",
    )
    return corpus


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _StaticBackend:
    def __init__(self, hits: list[SearchHit] | None = None, error: Exception | None = None) -> None:
        self.hits = hits or []
        self.error = error
        self.calls: list[tuple[str, str, int, str]] = []

    def query(self, query: str, index_name: str, top_k: int, *, mode: str = "semantic") -> list[SearchHit]:
        self.calls.append((query, index_name, top_k, mode))
        if self.error is not None:
            raise self.error
        return self.hits


def test_semantic_retrieval_ranks_matching_document_first() -> None:
    retriever = StrategyRetriever(_corpus())

    result = retriever.retrieve("refund policy for purchases", RetrievalStrategy.SEMANTIC, top_k=2)

    assert result.documents[0].id == "refund"
    assert len(result.documents) == len(result.scores) <= 2
    assert result.scores == sorted(result.scores, reverse=True)
    assert result.metadata["retrieval_backend"] == "local"
    assert result.metadata["chunk_ids"][0].startswith("refund-")


def test_semantic_ties_prefer_newer_documents() -> None:
    corpus = Corpus()
    corpus.add_document("Old", "identical refund text", doc_id="old")
    corpus.add_document("New", "identical refund text", doc_id="new")

    result = StrategyRetriever(corpus).retrieve("identical refund text", RetrievalStrategy.SEMANTIC)

    assert [doc.id for doc in result.documents] == ["new", "old"]


def test_keyword_retrieval_drops_unmatched_documents() -> None:
    result = StrategyRetriever(_corpus()).retrieve("warranty defects", RetrievalStrategy.KEYWORD)

    assert [doc.id for doc in result.documents] == ["warranty"]


def test_hybrid_score_exceeds_single_strategy_contribution() -> None:
    retriever = StrategyRetriever(_corpus())

    result = retriever.retrieve("refund policy", RetrievalStrategy.HYBRID, top_k=3)

    top = result.documents[0]
    assert top.id == "refund"
    assert top.id in result.metadata["semantic_ids"]
    assert top.id in result.metadata["keyword_ids"]
    assert result.scores[0] > 1.0 / (60 + 1)


def test_direct_answer_returns_empty_result() -> None:
    result = StrategyRetriever(_corpus()).retrieve("hello", RetrievalStrategy.DIRECT_ANSWER)

    assert result.documents == []
    assert result.method is RetrievalStrategy.DIRECT_ANSWER


def test_multi_query_uses_completed_sub_queries_when_one_fails() -> None:
    retriever = StrategyRetriever(_corpus())
    original = retriever._local_hybrid

    def flaky(query: str, top_k: int):
        if query == "broken sub-query":
            raise TimeoutError("search timed out")
        return original(query, top_k)

    retriever._local_hybrid = flaky  # type: ignore[method-assign]

    result = retriever.retrieve(
        "refund policy and shipping",
        RetrievalStrategy.MULTI_QUERY,
        top_k=3,
        sub_queries=["refund policy", "broken sub-query", "shipping tracking"],
        parallelizable=True,
    )

    ids = [doc.id for doc in result.documents]
    assert "refund" in ids and "shipping" in ids
    assert len(ids) == len(set(ids))
    assert result.metadata["failed_sub_queries"] == ["broken sub-query"]


def test_multi_query_raises_when_every_sub_query_fails() -> None:
    retriever = StrategyRetriever(_corpus())

    def failing(query: str, top_k: int):
        raise TimeoutError("search timed out")

    retriever._local_hybrid = failing  # type: ignore[method-assign]

    with pytest.raises(CollaboratorError):
        retriever.retrieve(
            "refund",
            RetrievalStrategy.MULTI_QUERY,
            sub_queries=["refund", "shipping"],
            parallelizable=True,
        )


def test_rag_fusion_fuses_router_variations() -> None:
    router = QueryRouter()
    retriever = StrategyRetriever(_corpus(), expander=router.expand)

    result = retriever.retrieve("refund policy purchase", RetrievalStrategy.RAG_FUSION, top_k=2)

    assert result.documents[0].id == "refund"
    assert result.metadata["variations"][0] == "refund policy purchase"
    assert result.metadata["failed_sub_queries"] == []


def test_results_are_cached_until_ttl_or_corpus_change() -> None:
    corpus = _corpus()
    clock = _FakeClock()
    retriever = StrategyRetriever(corpus, config=RetrievalConfig(cache_ttl_seconds=20), clock=clock)
    traces: list[RetrievalTrace] = []
    retriever.set_observer(traces.append)

    retriever.retrieve("refund policy", RetrievalStrategy.KEYWORD)
    cached = retriever.retrieve("refund policy", RetrievalStrategy.KEYWORD)
    assert len(traces) == 1
    cached.documents.clear()
    assert retriever.retrieve("refund policy", RetrievalStrategy.KEYWORD).documents

    corpus.edit_document("refund", content="Refund policy: returns accepted within 14 days.")
    retriever.retrieve("refund policy", RetrievalStrategy.KEYWORD)
    assert len(traces) == 2

    clock.now += 21
    retriever.retrieve("refund policy", RetrievalStrategy.KEYWORD)
    assert len(traces) == 3
    assert traces[-1].strategy is RetrievalStrategy.KEYWORD
    assert traces[-1].latency_ms >= 0.0


def test_backend_hits_are_mapped_to_corpus_documents() -> None:
    backend = _StaticBackend(
        hits=[
            SearchHit(id="unknown-id", title="Shipping Guide", content="", score=3.2),
            SearchHit(id="refund", title="Refund Policy", content="", score=2.1),
            SearchHit(id="ghost", title="Not In Corpus", content="", score=1.0),
        ]
    )
    retriever = StrategyRetriever(
        _corpus(), config=RetrievalConfig(backend_index_name="handbook"), backend=backend
    )

    result = retriever.retrieve("shipping", RetrievalStrategy.SEMANTIC, top_k=5)

    assert [doc.id for doc in result.documents] == ["shipping", "refund"]
    assert result.scores == [3.2, 2.1]
    assert result.metadata["retrieval_backend"] == "azure"
    assert backend.calls == [("shipping", "handbook", 5, "semantic")]


def test_backend_failure_falls_back_to_local_index() -> None:
    backend = _StaticBackend(error=SearchBackendError("service unavailable", status_code=503))
    retriever = StrategyRetriever(
        _corpus(), config=RetrievalConfig(backend_index_name="handbook"), backend=backend
    )

    result = retriever.retrieve("warranty defects", RetrievalStrategy.KEYWORD)

    assert [doc.id for doc in result.documents] == ["warranty"]
    assert result.metadata["retrieval_backend"] == "local"
    assert "service unavailable" in result.metadata["fallback_reason"]


def test_backend_without_index_name_is_ignored() -> None:
    backend = _StaticBackend(hits=[SearchHit(id="refund", title="Refund Policy", content="", score=1.0)])
    retriever = StrategyRetriever(_corpus(), backend=backend)

    retriever.retrieve("warranty", RetrievalStrategy.KEYWORD)

    assert retriever.backend is None
    assert backend.calls == []


def test_unexpected_backend_errors_fall_back_to_local_index() -> None:
    backend = _StaticBackend(error=ConnectionError("backend unreachable"))
    retriever = StrategyRetriever(_corpus(), config=RetrievalConfig(backend_index_name="idx"), backend=backend)

    result = retriever.retrieve("refund policy", RetrievalStrategy.SEMANTIC)

    assert result.documents[0].id == "refund"
    assert result.metadata["retrieval_backend"] == "local"
    assert result.metadata["fallback_reason"] == "ConnectionError: backend unreachable"
    assert len(backend.calls) == 1


def test_slow_sub_query_times_out_and_completed_results_are_kept() -> None:
    retriever = StrategyRetriever(_corpus(), config=RetrievalConfig(sub_query_timeout_seconds=0.2))
    original = retriever._local_hybrid
    release = threading.Event()

    def slow(query: str, top_k: int):
        if query == "slow sub-query":
            release.wait(5.0)
        return original(query, top_k)

    retriever._local_hybrid = slow  # type: ignore[method-assign]

    try:
        result = retriever.retrieve(
            "refund policy and shipping",
            RetrievalStrategy.MULTI_QUERY,
            top_k=3,
            sub_queries=["refund policy", "slow sub-query", "shipping tracking"],
            parallelizable=True,
        )
    finally:
        release.set()

    ids = [doc.id for doc in result.documents]
    assert "refund" in ids and "shipping" in ids
    assert result.metadata["failed_sub_queries"] == ["slow sub-query"]


def test_large_top_k_is_accepted() -> None:
    result = StrategyRetriever(_corpus()).retrieve("refund policy", RetrievalStrategy.HYBRID, top_k=500)

    assert 1 <= len(result.documents) <= 3
