"""Strategy retriever: semantic, keyword, hybrid, multi-query and RAG-fusion."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, TypeVar

from agentic_rag.config import RetrievalConfig
from agentic_rag.errors import CollaboratorError
from agentic_rag.ingest.corpus import Corpus
from agentic_rag.retrieval.fusion import max_score_fusion, reciprocal_rank_fusion
from agentic_rag.retrieval.keyword import BM25Index
from agentic_rag.retrieval.registry import RetrievalRequest, StrategyRegistry, StrategySpec
from agentic_rag.retrieval.search_backend import SearchBackend
from agentic_rag.types import Document, RetrievalResult, RetrievalStrategy, RetrievalTrace

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Ranked = list[tuple[Document, float]]


class StrategyRetriever:
    """Executes a named retrieval strategy against a `Corpus`.

    Semantic and keyword retrieval go to the managed search backend first when
    one is configured, and fall back to the local index when the backend fails
    or returns nothing that maps onto the corpus. Hybrid retrieval fuses local
    semantic and keyword rankings with reciprocal-rank fusion. Multi-query and
    RAG-fusion fan out over a bounded thread pool; completed sub-results are
    used even when siblings fail or time out.

    Results are cached for `cache_ttl_seconds`, keyed on the request and the
    corpus version, so edits to the corpus never serve stale rankings.
    """

    def __init__(
        self,
        corpus: Corpus,
        *,
        config: RetrievalConfig | None = None,
        backend: SearchBackend | None = None,
        expander: Callable[[str, int], list[str]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.corpus = corpus
        self.config = config or RetrievalConfig()
        self.backend = backend if self.config.backend_index_name else None
        self._expander = expander or (lambda query, n: [query])
        self._clock = clock
        self._cache: dict[tuple[Any, ...], tuple[float, RetrievalResult]] = {}
        self._bm25: tuple[int, BM25Index] | None = None
        self._lock = threading.Lock()
        self.registry = StrategyRegistry()
        self._register_builtin_strategies()

    def set_observer(self, observer: Callable[[RetrievalTrace], None] | None) -> None:
        self.registry.set_observer(observer)

    def retrieve(
        self,
        query: str,
        strategy: RetrievalStrategy | str,
        top_k: int = 5,
        *,
        sub_queries: list[str] | tuple[str, ...] | None = None,
        parallelizable: bool = False,
    ) -> RetrievalResult:
        """Run `strategy` for `query` and return at most `top_k` ranked documents.

        Raises `CollaboratorError` when retrieval cannot produce any result,
        for example when the embedder fails or every sub-query fails.
        """

        resolved = RetrievalStrategy(strategy)
        request = RetrievalRequest(
            query=query,
            top_k=top_k,
            sub_queries=list(sub_queries or []),
            parallelizable=parallelizable,
        )
        key = (
            resolved,
            request.query,
            request.top_k,
            tuple(request.sub_queries),
            request.parallelizable,
            self.corpus.version,
        )
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None and cached[0] > now:
            logger.debug("retrieval cache hit", extra={"strategy": resolved.value})
            return _copy_result(cached[1])

        result = self.registry.execute(resolved, request)
        if self.config.cache_ttl_seconds > 0:
            with self._lock:
                self._evict_expired(now)
                self._cache[key] = (now + self.config.cache_ttl_seconds, _copy_result(result))
        return result

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _register_builtin_strategies(self) -> None:
        handlers: list[tuple[RetrievalStrategy, str, Callable[[RetrievalRequest], RetrievalResult]]] = [
            (RetrievalStrategy.SEMANTIC, "Cosine similarity over chunk embeddings.", self._semantic),
            (RetrievalStrategy.KEYWORD, "BM25 over document title and content.", self._keyword),
            (RetrievalStrategy.HYBRID, "Semantic and keyword rankings fused with RRF.", self._hybrid),
            (RetrievalStrategy.MULTI_QUERY, "Per sub-query hybrid retrieval, max-aggregated.", self._multi_query),
            (RetrievalStrategy.RAG_FUSION, "Query variations fused with RRF.", self._rag_fusion),
            (RetrievalStrategy.DIRECT_ANSWER, "No retrieval.", self._direct_answer),
        ]
        for strategy, description, handler in handlers:
            self.registry.register(StrategySpec(strategy=strategy, description=description, handler=handler))

    def _semantic(self, request: RetrievalRequest) -> RetrievalResult:
        return self._with_backend(request, RetrievalStrategy.SEMANTIC, self._local_semantic)

    def _keyword(self, request: RetrievalRequest) -> RetrievalResult:
        return self._with_backend(request, RetrievalStrategy.KEYWORD, self._local_keyword)

    def _hybrid(self, request: RetrievalRequest) -> RetrievalResult:
        return self._with_backend(request, RetrievalStrategy.HYBRID, self._local_hybrid)

    def _multi_query(self, request: RetrievalRequest) -> RetrievalResult:
        sub_queries = request.sub_queries or [request.query]
        completed, failed = self._fan_out(
            sub_queries,
            lambda sub_query: self._local_hybrid(sub_query, request.top_k)[0],
            parallel=request.parallelizable,
        )
        if not completed:
            raise CollaboratorError(f"all {len(sub_queries)} sub-queries failed")
        fused = max_score_fusion([completed[q] for q in sub_queries if q in completed])
        return _result(
            fused[: request.top_k],
            RetrievalStrategy.MULTI_QUERY,
            request.query,
            sub_queries=sub_queries,
            failed_sub_queries=failed,
        )

    def _rag_fusion(self, request: RetrievalRequest) -> RetrievalResult:
        variations = self._expander(request.query, self.config.fusion_variations) or [request.query]
        candidate_k = request.top_k * self.config.candidate_multiplier
        completed, failed = self._fan_out(
            variations,
            lambda variation: self._local_hybrid(variation, candidate_k)[0],
            parallel=True,
        )
        if not completed:
            raise CollaboratorError(f"all {len(variations)} query variations failed")
        rankings = [[doc for doc, _ in completed[v]] for v in variations if v in completed]
        fused = reciprocal_rank_fusion(rankings, k=self.config.rrf_k)
        return _result(
            fused[: request.top_k],
            RetrievalStrategy.RAG_FUSION,
            request.query,
            variations=variations,
            failed_sub_queries=failed,
        )

    def _direct_answer(self, request: RetrievalRequest) -> RetrievalResult:
        return RetrievalResult.empty(request.query)

    def _with_backend(
        self,
        request: RetrievalRequest,
        strategy: RetrievalStrategy,
        local: Callable[[str, int], tuple[_Ranked, dict[str, Any]]],
    ) -> RetrievalResult:
        fallback_reason: str | None = None
        if self.backend is not None and self.config.backend_index_name:
            try:
                hits = self.backend.query(
                    request.query, self.config.backend_index_name, request.top_k, mode=strategy.value
                )
            except Exception as exc:
                # Any backend failure degrades to the local index.
                logger.warning("search backend failed; using local index", exc_info=True)
                fallback_reason = f"{type(exc).__name__}: {exc}"
            else:
                mapped = self._map_hits(hits)
                if mapped:
                    return _result(mapped[: request.top_k], strategy, request.query, retrieval_backend="azure")
                fallback_reason = f"search backend {strategy.value} returned no mapped documents"

        ranked, extra = local(request.query, request.top_k)
        metadata: dict[str, Any] = {"retrieval_backend": "local", **extra}
        if fallback_reason is not None:
            metadata["fallback_reason"] = fallback_reason
        return _result(ranked[: request.top_k], strategy, request.query, **metadata)

    def _map_hits(self, hits: list[Any]) -> _Ranked:
        mapped: _Ranked = []
        seen: set[str] = set()
        for hit in hits:
            document = self.corpus.get(hit.id) or self.corpus.find_by_title(hit.title)
            if document is None or document.id in seen:
                continue
            seen.add(document.id)
            mapped.append((document, float(hit.score)))
        return mapped

    def _local_semantic(self, query: str, top_k: int) -> tuple[_Ranked, dict[str, Any]]:
        try:
            query_embedding = self.corpus.embedder.embed_query(query)
        except Exception as exc:
            raise CollaboratorError(f"query embedding failed: {exc}") from exc

        ranked: _Ranked = []
        chunk_ids: list[str] = []
        seen: set[str] = set()
        # Chunks arrive best-first, so the first chunk seen per document is its best.
        for hit in self.corpus.vector_store.semantic_search(query_embedding, len(self.corpus.vector_store)):
            if hit.score <= 0.0 or hit.chunk.document_id in seen:
                continue
            document = self.corpus.get(hit.chunk.document_id)
            if document is None:
                continue
            seen.add(document.id)
            ranked.append((document, hit.score))
            chunk_ids.append(hit.chunk.id)
            if len(ranked) == top_k:
                break
        return ranked, {"chunk_ids": chunk_ids}

    def _local_keyword(self, query: str, top_k: int) -> tuple[_Ranked, dict[str, Any]]:
        return self._keyword_index().search(query, top_k), {}

    def _local_hybrid(self, query: str, top_k: int) -> tuple[_Ranked, dict[str, Any]]:
        candidate_k = top_k * self.config.candidate_multiplier
        with ThreadPoolExecutor(max_workers=2) as pool:
            semantic = pool.submit(self._local_semantic, query, candidate_k)
            keyword = pool.submit(self._local_keyword, query, candidate_k)
            semantic_ranked, semantic_meta = semantic.result()
            keyword_ranked, _ = keyword.result()
        fused = reciprocal_rank_fusion(
            [[doc for doc, _ in semantic_ranked], [doc for doc, _ in keyword_ranked]],
            k=self.config.rrf_k,
        )
        return fused[:top_k], {
            "semantic_ids": [doc.id for doc, _ in semantic_ranked],
            "keyword_ids": [doc.id for doc, _ in keyword_ranked],
            "chunk_ids": semantic_meta.get("chunk_ids", []),
        }

    def _keyword_index(self) -> BM25Index:
        version = self.corpus.version
        with self._lock:
            if self._bm25 is None or self._bm25[0] != version:
                self._bm25 = (
                    version,
                    BM25Index(self.corpus.documents(), k1=self.config.bm25_k1, b=self.config.bm25_b),
                )
            return self._bm25[1]

    def _fan_out(
        self, queries: list[str], fn: Callable[[str], T], *, parallel: bool
    ) -> tuple[dict[str, T], list[str]]:
        completed: dict[str, T] = {}
        failed: list[str] = []
        if not parallel or len(queries) == 1:
            for query in queries:
                try:
                    completed[query] = fn(query)
                except Exception:
                    logger.warning("sub-query retrieval failed: %s", query, exc_info=True)
                    failed.append(query)
            return completed, failed

        pool = ThreadPoolExecutor(max_workers=self.config.max_workers)
        try:
            futures = {pool.submit(fn, query): query for query in queries}
            done, not_done = wait(futures, timeout=self.config.sub_query_timeout_seconds)
            for future in not_done:
                future.cancel()
                logger.warning("sub-query timed out: %s", futures[future])
            for future, query in futures.items():
                if future not in done:
                    failed.append(query)
                    continue
                try:
                    completed[query] = future.result()
                except Exception:
                    logger.warning("sub-query retrieval failed: %s", query, exc_info=True)
                    failed.append(query)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return completed, failed

    def _evict_expired(self, now: float) -> None:
        for key in [key for key, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]


def _result(ranked: _Ranked, method: RetrievalStrategy, query: str, **metadata: Any) -> RetrievalResult:
    return RetrievalResult(
        documents=[doc for doc, _ in ranked],
        scores=[float(score) for _, score in ranked],
        method=method,
        query_used=query,
        metadata=metadata,
    )


def _copy_result(result: RetrievalResult) -> RetrievalResult:
    return RetrievalResult(
        documents=list(result.documents),
        scores=list(result.scores),
        method=result.method,
        query_used=result.query_used,
        metadata=dict(result.metadata),
    )
