"""Rule-based query router: intent, strategy and query rewrites."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from agentic_rag.obs.tracing import content_words, normalize_words
from agentic_rag.types import (
    ConversationTurn,
    CorpusSummary,
    Document,
    QueryIntent,
    RetrievalQuality,
    RetrievalStrategy,
    RoutingDecision,
    StrategyMetrics,
)

logger = logging.getLogger(__name__)

_QUOTED = re.compile(r"\"[^\"]+\"|'[^']{2,}'|`[^`]+`")
_IDENTIFIER = re.compile(r"\b[A-Z]{2,}[-_]?\d+\b|\b[a-z]+_[a-z0-9_]+\b|\b[A-Za-z]+\d+[A-Za-z0-9]*\b|\b\d+[-/]\d+\b")
_COMPARISON_SPLIT = re.compile(
    r"(?:differences?\s+between|compare|comparing|comparison\s+of)\s+(?P<a>.+?)\s+(?:and|with|to|vs\.?|versus)\s+(?P<b>.+)",
    flags=re.IGNORECASE,
)
_VERSUS_SPLIT = re.compile(r"(?P<a>.+?)\s+(?:vs\.?|versus|compared\s+to)\s+(?P<b>.+)", flags=re.IGNORECASE)
_CLAUSE_SPLIT = re.compile(r"\s*(?:;|,\s*and\s+|\band also\b|\band then\b|,|\band\b)\s*", flags=re.IGNORECASE)
_DEPENDENT_CLAUSE = re.compile(r"^(?:it|its|they|them|that|this|those|these|then)\b", flags=re.IGNORECASE)
_LEADING_WH = re.compile(r"^(what|how|why|when|where|which|who)\b\s*(\w+)?", flags=re.IGNORECASE)

_STRATEGY_ORDER = [strategy for strategy in RetrievalStrategy]

FALLBACK_STRATEGIES: dict[RetrievalStrategy, tuple[RetrievalStrategy, ...]] = {
    RetrievalStrategy.SEMANTIC: (RetrievalStrategy.HYBRID, RetrievalStrategy.KEYWORD),
    RetrievalStrategy.KEYWORD: (RetrievalStrategy.HYBRID, RetrievalStrategy.SEMANTIC),
    RetrievalStrategy.HYBRID: (RetrievalStrategy.SEMANTIC, RetrievalStrategy.KEYWORD),
    RetrievalStrategy.MULTI_QUERY: (RetrievalStrategy.RAG_FUSION, RetrievalStrategy.HYBRID),
    RetrievalStrategy.RAG_FUSION: (RetrievalStrategy.MULTI_QUERY, RetrievalStrategy.HYBRID),
    RetrievalStrategy.DIRECT_ANSWER: (),
}


class QueryRouter:
    """Classifies a query and picks a retrieval strategy.

    The router is a pure function of its inputs: the query, what it may know
    about the corpus, recent conversation turns and a metrics snapshot. Learned
    metrics take precedence over the heuristic once an intent has enough
    samples for some strategy.
    """

    INTENT_PATTERNS: dict[QueryIntent, list[str]] = {
        QueryIntent.CHITCHAT: [
            r"^(hi|hello|hey|howdy|greetings)\b",
            r"^good (morning|afternoon|evening)\b",
            r"^(thanks|thank you|cheers)\b",
            r"^how are you\b",
            r"^(bye|goodbye|see you)\b",
            r"^what'?s up\b",
        ],
        QueryIntent.CLARIFICATION: [
            r"^(what|how) about\b",
            r"^(can|could) you (elaborate|clarify|expand)",
            r"^tell me more\b",
            r"^what do you mean\b",
            r"\bmore detail(s)?\b",
            r"^(and|also)\b",
        ],
        QueryIntent.COMPARATIVE: [
            r"\bcompar(e|ed|ing|ison)\b",
            r"\b(vs\.?|versus)\b",
            r"\bdifferences? between\b",
            r"\b(better|worse|faster|slower|cheaper) than\b",
            r"\bpros and cons\b",
            r"\bwhich is (better|best|faster|cheaper)\b",
            r"\bsimilarit(y|ies) between\b",
        ],
        QueryIntent.PROCEDURAL: [
            r"^how (do|can|should|would) (i|we|you)\b",
            r"\bhow to\b",
            r"\bstep[- ]by[- ]step\b",
            r"\b(steps|instructions|procedure|guide) (to|for)\b",
            r"^(walk me through|show me how)\b",
        ],
        QueryIntent.ANALYTICAL: [
            r"^why\b",
            r"\banaly[sz](e|is)\b",
            r"\b(evaluate|assess|implications?|impact of|trade-?offs?)\b",
            r"\b(summari[sz]e|overview of|trends? in)\b",
            r"^explain\b",
        ],
    }

    RESEARCH_PATTERNS = [
        r"\b(overview|landscape|comprehensive|everything|all aspects|research|explore)\b",
        r"\b(trends?|various|broad(ly)?)\b",
    ]

    def __init__(self, *, min_samples: int = 3, short_query_words: int = 6, long_query_words: int = 12) -> None:
        self.min_samples = min_samples
        self.short_query_words = short_query_words
        self.long_query_words = long_query_words

    def route(
        self,
        query: str,
        corpus_summary: CorpusSummary,
        history: Sequence[ConversationTurn] | None = None,
        metrics: Sequence[StrategyMetrics] | None = None,
    ) -> RoutingDecision:
        intent, intent_confidence, intent_reason = self.classify_intent(query, corpus_summary, history)

        if intent is QueryIntent.CHITCHAT:
            return RoutingDecision(
                intent=intent,
                strategy=RetrievalStrategy.DIRECT_ANSWER,
                needs_retrieval=False,
                parallelizable=False,
                confidence=intent_confidence,
                reasoning=f"{intent_reason}; casual conversation does not require retrieval",
            )
        if intent is QueryIntent.OUT_OF_SCOPE:
            return RoutingDecision(
                intent=intent,
                strategy=RetrievalStrategy.DIRECT_ANSWER,
                needs_retrieval=False,
                parallelizable=False,
                confidence=intent_confidence,
                reasoning=f"{intent_reason}; query appears outside the knowledge base scope",
            )

        strategy, sub_queries, strategy_reason = self._heuristic_strategy(query, intent)
        learned = self._learned_strategy(intent, metrics)
        if learned is not None and learned.strategy is not strategy:
            strategy_reason = (
                f"learned preference for {learned.strategy.value} "
                f"(success {learned.success_rate:.2f} over {learned.total_queries} queries) "
                f"over heuristic {strategy.value}"
            )
            strategy = learned.strategy
            if strategy is RetrievalStrategy.MULTI_QUERY and not sub_queries:
                sub_queries = tuple(self.decompose(query))
        elif learned is not None:
            strategy_reason = f"{strategy_reason}; confirmed by historical performance"

        if strategy is not RetrievalStrategy.MULTI_QUERY:
            sub_queries = ()
        parallelizable = len(sub_queries) > 1 and all(
            not _DEPENDENT_CLAUSE.match(sub_query) for sub_query in sub_queries[1:]
        )

        decision = RoutingDecision(
            intent=intent,
            strategy=strategy,
            needs_retrieval=True,
            parallelizable=parallelizable,
            confidence=intent_confidence,
            reasoning=f"{intent_reason}; {strategy_reason}",
            sub_queries=sub_queries,
            fallback_strategies=FALLBACK_STRATEGIES[strategy],
            learned=learned is not None,
        )
        logger.debug("routed query", extra={"intent": intent.value, "strategy": strategy.value})
        return decision

    def classify_intent(
        self,
        query: str,
        corpus_summary: CorpusSummary,
        history: Sequence[ConversationTurn] | None = None,
    ) -> tuple[QueryIntent, float, str]:
        """Return `(intent, confidence, reason)` from lexical and structural cues."""

        text = query.strip().lower()
        words = normalize_words(text)
        terms = content_words(text)

        if len(words) <= 6 and self._matches(QueryIntent.CHITCHAT, text):
            return QueryIntent.CHITCHAT, 0.95, "greeting or small-talk pattern"

        if history and (self._matches(QueryIntent.CLARIFICATION, text) or _DEPENDENT_CLAUSE.match(text)):
            return QueryIntent.CLARIFICATION, 0.75, "follow-up to the previous exchange"

        if corpus_summary.vocabulary and terms and not any(term in corpus_summary.vocabulary for term in terms):
            return QueryIntent.OUT_OF_SCOPE, 0.7, "no query term occurs in the corpus vocabulary"

        for intent in (QueryIntent.COMPARATIVE, QueryIntent.PROCEDURAL, QueryIntent.ANALYTICAL):
            if self._matches(intent, text):
                return intent, 0.85, f"{intent.value} markers present"

        if not history and self._matches(QueryIntent.CLARIFICATION, text):
            return QueryIntent.CLARIFICATION, 0.5, "follow-up phrasing without prior context"

        if text.endswith("?") or _LEADING_WH.match(text):
            return QueryIntent.FACTUAL, 0.8, "direct question form"
        return QueryIntent.FACTUAL, 0.6, "no specific markers; treated as factual lookup"

    def decompose(self, query: str, n: int = 3) -> list[str]:
        """Split a compound or comparative query into standalone sub-queries.

        Returns `[query]` when no split yields at least two parts.
        """

        stripped = query.strip().rstrip("?").strip()
        match = _COMPARISON_SPLIT.search(stripped) or _VERSUS_SPLIT.fullmatch(stripped)
        if match:
            parts = [_clean_part(match.group("a")), _clean_part(match.group("b"))]
            if all(content_words(part) for part in parts):
                subjects = [part for part in parts if part]
                return _dedupe([f"What is {part}?" for part in subjects] + [query.strip()])[:n]

        clauses = [_clean_part(part) for part in _CLAUSE_SPLIT.split(stripped)]
        clauses = [clause for clause in clauses if len(content_words(clause)) >= 2]
        if len(clauses) < 2:
            return [query.strip()]

        lead = _LEADING_WH.match(stripped)
        sub_queries: list[str] = []
        for clause in clauses:
            if lead and not _LEADING_WH.match(clause):
                clause = f"{lead.group(0)} {clause}".strip()
            sub_queries.append(f"{clause[0].upper()}{clause[1:]}?")
        return _dedupe(sub_queries)[:n]

    def expand(self, query: str, n: int = 3) -> list[str]:
        """Deterministic variations for rank fusion; the original query comes first."""

        keywords = " ".join(content_words(query))
        if not keywords:
            return [query]
        candidates = [
            keywords,
            f"{keywords} overview",
            f"what is known about {keywords}",
            f"{keywords} details and explanation",
        ]
        return _dedupe([query] + candidates)[: n + 1]

    def evaluate_retrieval_quality(
        self,
        documents: Sequence[Document],
        query: str,
        top_k: int = 5,
        *,
        available: int | None = None,
    ) -> RetrievalQuality:
        """Score how well the top documents cover the query terms.

        `coverage` is the share of the reachable top-k slots that were filled;
        `available` caps that at the corpus size. `quality` is the mean share of
        query terms each document contains.
        """

        if not documents:
            return RetrievalQuality(quality=0.0, coverage=0.0, needs_fallback=True)
        terms = content_words(query)
        top = list(documents)[:top_k]
        slots = min(top_k, available) if available else top_k
        coverage = min(len(top) / max(1, slots), 1.0)
        if terms:
            matched = [
                len(set(terms) & set(normalize_words(f"{doc.title} {doc.content}"))) / len(terms)
                for doc in top
            ]
            quality = sum(matched) / len(matched)
        else:
            quality = 0.0
        return RetrievalQuality(
            quality=quality,
            coverage=coverage,
            needs_fallback=quality < 0.3 or coverage < 0.6,
        )

    def _matches(self, intent: QueryIntent, text: str) -> bool:
        return any(re.search(pattern, text) for pattern in self.INTENT_PATTERNS[intent])

    def _heuristic_strategy(
        self, query: str, intent: QueryIntent
    ) -> tuple[RetrievalStrategy, tuple[str, ...], str]:
        terms = content_words(query)
        has_exact_terms = bool(_QUOTED.search(query) or _IDENTIFIER.search(query))
        sub_queries = self.decompose(query)

        if intent is QueryIntent.COMPARATIVE or len(sub_queries) > 1:
            if len(sub_queries) < 2:
                sub_queries = [query.strip()]
            return (
                RetrievalStrategy.MULTI_QUERY,
                tuple(sub_queries),
                f"compound query decomposed into {len(sub_queries)} sub-queries",
            )
        if any(re.search(pattern, query.lower()) for pattern in self.RESEARCH_PATTERNS) or (
            len(terms) > self.long_query_words
        ):
            return RetrievalStrategy.RAG_FUSION, (), "open-ended research-style query"
        if len(terms) <= self.short_query_words:
            if has_exact_terms:
                return RetrievalStrategy.KEYWORD, (), "short query with quoted terms or identifiers"
            return RetrievalStrategy.SEMANTIC, (), "short single-concept query"
        return RetrievalStrategy.HYBRID, (), "default balanced retrieval"

    def _learned_strategy(
        self, intent: QueryIntent, metrics: Sequence[StrategyMetrics] | None
    ) -> StrategyMetrics | None:
        if not metrics:
            return None
        candidates = [
            item
            for item in metrics
            if item.intent is intent
            and item.total_queries >= self.min_samples
            and item.strategy is not RetrievalStrategy.DIRECT_ANSWER
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda item: (
                item.success_rate,
                item.average_confidence,
                -_STRATEGY_ORDER.index(item.strategy),
            ),
        )


def _clean_part(text: str) -> str:
    return text.strip().strip(",;:.?!").strip()


def _dedupe(items: list[str]) -> list[str]:
    seen: dict[str, str] = {}
    for item in items:
        key = item.strip().lower()
        if key and key not in seen:
            seen[key] = item.strip()
    return list(seen.values())
