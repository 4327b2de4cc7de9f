"""Self-reflective evaluation and critique of generated answers."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ValidationError

from agentic_rag.agent.generator import TextGenerator
from agentic_rag.config import EvaluatorConfig
from agentic_rag.errors import EvaluationParseError, GenerationError
from agentic_rag.obs.tracing import GroundednessEvaluator, content_words, normalize_words, strip_citations
from agentic_rag.types import (
    Criticism,
    EvaluationResult,
    RelevanceToken,
    RetrievalResult,
    SupportToken,
    UtilityToken,
)

logger = logging.getLogger(__name__)

RELEVANCE_VALUES = {
    RelevanceToken.RELEVANT: 1.0,
    RelevanceToken.PARTIALLY_RELEVANT: 0.5,
    RelevanceToken.NOT_RELEVANT: 0.0,
}
SUPPORT_VALUES = {
    SupportToken.FULLY_SUPPORTED: 1.0,
    SupportToken.PARTIALLY_SUPPORTED: 0.5,
    SupportToken.NOT_SUPPORTED: 0.0,
}
UTILITY_VALUES = {
    UtilityToken.USEFUL: 1.0,
    UtilityToken.SOMEWHAT_USEFUL: 0.5,
    UtilityToken.NOT_USEFUL: 0.0,
}

_REFUSAL = re.compile(
    r"(couldn'?t find|could not find|cannot verify|can'?t verify|don'?t have enough information|"
    r"no relevant information|unable to answer|outside my area)",
    flags=re.IGNORECASE,
)
_HEDGES = re.compile(r"\b(might|may|possibly|perhaps|unclear|not sure|probably)\b", flags=re.IGNORECASE)
_CONTRASTS = re.compile(r"\b(however|but|although|on the other hand|contradict\w*)\b", flags=re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{.*\}", flags=re.DOTALL)


class _ScorerVerdict(BaseModel):
    relevance: RelevanceToken
    support: SupportToken
    utility: UtilityToken
    reasoning: str = ""


class SelfEvaluator:
    """Grades an answer on relevance, support and utility.

    Tokens come from deterministic lexical checks unless an external `scorer`
    is configured, in which case the scorer's JSON verdict is used. Output that
    cannot be parsed into the three tokens yields the most conservative
    verdict. A scorer that fails outright falls back to the lexical checks.
    """

    def __init__(
        self,
        config: EvaluatorConfig | None = None,
        *,
        scorer: TextGenerator | None = None,
        scorer_model: str = "gpt-4o-mini",
    ) -> None:
        self.config = config or EvaluatorConfig()
        self.scorer = scorer
        self.scorer_model = scorer_model
        self.groundedness = GroundednessEvaluator(min_overlap=self.config.min_overlap)

    def evaluate(
        self,
        query: str,
        answer: str,
        retrieval: RetrievalResult,
        *,
        confidence_threshold: float = 0.6,
    ) -> EvaluationResult:
        if self.scorer is not None and _has_content(answer):
            try:
                verdict = self._score_externally(self.scorer, query, answer, retrieval)
            except EvaluationParseError:
                logger.warning("scorer output unparseable; using conservative verdict", exc_info=True)
                return conservative_evaluation("external scorer output could not be parsed")
            except GenerationError:
                logger.warning("scorer unavailable; using lexical evaluation", exc_info=True)
            else:
                return self._build(
                    verdict.relevance,
                    verdict.support,
                    verdict.utility,
                    confidence_threshold,
                    verdict.reasoning or "external scorer verdict",
                )

        relevance, relevance_note = self._relevance(query, retrieval)
        support, support_note = self._support(answer, retrieval)
        utility, utility_note = self._utility(query, answer)
        return self._build(
            relevance,
            support,
            utility,
            confidence_threshold,
            f"{relevance_note}; {support_note}; {utility_note}",
        )

    def confidence(self, relevance: RelevanceToken, support: SupportToken, utility: UtilityToken) -> float:
        """Weighted mean of token values; never decreases when a token improves."""

        cfg = self.config
        total = cfg.relevance_weight + cfg.support_weight + cfg.utility_weight
        score = (
            cfg.relevance_weight * RELEVANCE_VALUES[relevance]
            + cfg.support_weight * SUPPORT_VALUES[support]
            + cfg.utility_weight * UTILITY_VALUES[utility]
        ) / total
        return round(score, 6)

    def critique(self, query: str, answer: str, retrieval: RetrievalResult) -> Criticism:
        """Independent critic scores: consistency, accuracy and completeness."""

        hedges = len(_HEDGES.findall(answer))
        contrasts = len(_CONTRASTS.findall(answer))
        logical_consistency = max(0.0, min(1.0, 1.0 - 0.1 * hedges - 0.15 * max(0, contrasts - 1)))

        snippets = _evidence(retrieval)
        factual_accuracy = self.groundedness.score(answer, snippets) if snippets and _has_content(answer) else 0.0
        hallucinations = self.groundedness.ungrounded_sentences(answer, snippets) if snippets else []

        terms = content_words(query)
        answer_words = set(normalize_words(answer))
        missing = [term for term in terms if term not in answer_words]
        completeness = 1.0 - len(missing) / len(terms) if terms else 1.0

        suggestions: list[str] = []
        if hallucinations:
            suggestions.append("Ground every claim in a cited source")
        if missing:
            suggestions.append(f"Address: {', '.join(missing)}")
        if hedges:
            suggestions.append("State supported facts without hedging")
        return Criticism(
            logical_consistency=logical_consistency,
            factual_accuracy=factual_accuracy,
            completeness=completeness,
            hallucinations=hallucinations,
            gaps=missing,
            suggestions=suggestions,
        )

    def suggest_improvements(
        self, evaluation: EvaluationResult, criticism: Criticism | None = None
    ) -> tuple[bool, list[str]]:
        """Return `(should_retry, actions)` for the retry prompt and response metadata."""

        actions: list[str] = []
        should_retry = evaluation.needs_retry

        if evaluation.relevance is RelevanceToken.NOT_RELEVANT:
            actions.append("Reformulate query with more specific terms")
            actions.append("Try alternative retrieval strategy")
            should_retry = True
        if evaluation.support is SupportToken.NOT_SUPPORTED:
            actions.append("Retrieve additional documents")
            actions.append("Use stricter citation requirements")
            should_retry = True

        if criticism is not None:
            if criticism.logical_consistency < 0.6:
                actions.append("Improve logical flow in response generation")
                should_retry = True
            if criticism.factual_accuracy < 0.7:
                actions.append("Verify all facts against source documents")
                should_retry = True
            if criticism.completeness < 0.7:
                actions.append("Expand response to cover all aspects of query")
                if criticism.gaps:
                    actions.append(f"Consider missing information: {', '.join(criticism.gaps)}")
            if criticism.hallucinations:
                actions.append(f"Remove unsupported claims: {' | '.join(criticism.hallucinations)}")
                should_retry = True

        actions.extend(evaluation.suggestions)
        return should_retry, list(dict.fromkeys(actions))

    def _build(
        self,
        relevance: RelevanceToken,
        support: SupportToken,
        utility: UtilityToken,
        confidence_threshold: float,
        reasoning: str,
    ) -> EvaluationResult:
        confidence = self.confidence(relevance, support, utility)
        suggestions: list[str] = []
        if relevance is not RelevanceToken.RELEVANT:
            suggestions.append("Broaden retrieval with related terms")
        if support is not SupportToken.FULLY_SUPPORTED:
            suggestions.append("Restrict the answer to statements found in the sources")
        if utility is not UtilityToken.USEFUL:
            suggestions.append("Answer every part of the question directly")
        return EvaluationResult(
            relevance=relevance,
            support=support,
            utility=utility,
            confidence=confidence,
            # An unsupported answer is retried whatever the threshold.
            needs_retry=confidence < confidence_threshold or support is SupportToken.NOT_SUPPORTED,
            reasoning=reasoning,
            suggestions=suggestions,
        )

    def _relevance(self, query: str, retrieval: RetrievalResult) -> tuple[RelevanceToken, str]:
        if not retrieval.documents:
            return RelevanceToken.NOT_RELEVANT, "no documents retrieved"
        terms = content_words(query)
        if not terms:
            return RelevanceToken.PARTIALLY_RELEVANT, "query has no content terms"
        evidence_words: set[str] = set()
        for doc in retrieval.documents:
            evidence_words.update(normalize_words(f"{doc.title} {doc.content}"))
        coverage = sum(1 for term in terms if term in evidence_words) / len(terms)
        if coverage >= 0.6:
            token = RelevanceToken.RELEVANT
        elif coverage >= 0.3:
            token = RelevanceToken.PARTIALLY_RELEVANT
        else:
            token = RelevanceToken.NOT_RELEVANT
        return token, f"evidence covers {coverage:.0%} of query terms"

    def _support(self, answer: str, retrieval: RetrievalResult) -> tuple[SupportToken, str]:
        if not _has_content(answer):
            return SupportToken.NOT_SUPPORTED, "answer has no content to support"
        snippets = _evidence(retrieval)
        if not snippets:
            return SupportToken.NOT_SUPPORTED, "no evidence to support the answer"
        grounded = self.groundedness.score(answer, snippets)
        if grounded >= self.config.fully_supported_threshold:
            token = SupportToken.FULLY_SUPPORTED
        elif grounded >= self.config.partially_supported_threshold:
            token = SupportToken.PARTIALLY_SUPPORTED
        else:
            token = SupportToken.NOT_SUPPORTED
        return token, f"{grounded:.0%} of answer sentences grounded"

    def _utility(self, query: str, answer: str) -> tuple[UtilityToken, str]:
        if not _has_content(answer) or _REFUSAL.search(answer):
            return UtilityToken.NOT_USEFUL, "answer declines or is empty"
        terms = content_words(query)
        if not terms:
            return UtilityToken.SOMEWHAT_USEFUL, "query has no content terms"
        answer_words = set(normalize_words(answer))
        coverage = sum(1 for term in terms if term in answer_words) / len(terms)
        if coverage >= 0.5:
            token = UtilityToken.USEFUL
        elif coverage > 0:
            token = UtilityToken.SOMEWHAT_USEFUL
        else:
            token = UtilityToken.NOT_USEFUL
        return token, f"answer addresses {coverage:.0%} of query terms"

    def _score_externally(
        self, scorer: TextGenerator, query: str, answer: str, retrieval: RetrievalResult
    ) -> _ScorerVerdict:
        evidence = "\n\n".join(f"[{i}] {snippet[:600]}" for i, snippet in enumerate(_evidence(retrieval), start=1))
        prompt = (
            "Grade the answer against the evidence.\n\n"
            f"Question: {query}\n\nEvidence:\n{evidence or '(none)'}\n\nAnswer:\n{answer}\n\n"
            'Respond with ONLY JSON: {"relevance": "RELEVANT|PARTIALLY_RELEVANT|NOT_RELEVANT", '
            '"support": "FULLY_SUPPORTED|PARTIALLY_SUPPORTED|NOT_SUPPORTED", '
            '"utility": "USEFUL|SOMEWHAT_USEFUL|NOT_USEFUL", "reasoning": "..."}'
        )
        try:
            raw = scorer.generate(prompt, self.scorer_model)
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"scorer failed: {exc}") from exc
        return parse_verdict(raw)


def parse_verdict(raw: str) -> _ScorerVerdict:
    """Parse scorer output into tokens; raises `EvaluationParseError`."""

    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        raise EvaluationParseError("scorer output contains no JSON object")
    try:
        return _ScorerVerdict.model_validate_json(match.group(0))
    except ValidationError as exc:
        raise EvaluationParseError(str(exc)) from exc


def conservative_evaluation(reasoning: str) -> EvaluationResult:
    """The verdict used whenever evaluation itself cannot be trusted."""

    return EvaluationResult(
        relevance=RelevanceToken.NOT_RELEVANT,
        support=SupportToken.NOT_SUPPORTED,
        utility=UtilityToken.NOT_USEFUL,
        confidence=0.0,
        needs_retry=True,
        reasoning=reasoning,
        suggestions=[],
    )


def _has_content(answer: str) -> bool:
    return bool(normalize_words(strip_citations(answer)))


def _evidence(retrieval: RetrievalResult) -> list[str]:
    return [f"{doc.title}. {doc.content}" for doc in retrieval.documents]
