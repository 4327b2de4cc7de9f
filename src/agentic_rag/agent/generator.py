"""Text-generation adapters and the answer prompting contract."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from langchain_core.prompts import ChatPromptTemplate
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from agentic_rag.config import GeneratorConfig
from agentic_rag.errors import GenerationError
from agentic_rag.obs.tracing import content_words, normalize_words, split_sentences
from agentic_rag.types import EvaluationResult, QueryIntent, RetrievalResult

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You are a careful assistant for a retrieval-augmented knowledge base.

Rules:
1) Use only the context supplied in the request when it contains context.
2) Cite sources by their bracketed number, for example [1].
3) If the context does not answer the question, say so plainly.
""".strip()

_TRANSIENT_NAME_PATTERNS = ("timeout", "connection", "ratelimit", "unavailable", "temporary", "overloaded")
_TRANSIENT_CODES = frozenset({408, 429, 500, 502, 503, 504})

_SOURCE_HEADER = re.compile(r"^\[(?P<n>\d+)\]\s+(?P<title>.+?)\s+\(relevance: -?[0-9.]+\)$")
_QUESTION_LINE = re.compile(r"^User Question:\s*(?P<q>.+)$", flags=re.MULTILINE)
_ORIGINAL_QUERY = re.compile(r'^Original Query:\s*"(?P<q>.*)"\s*$', flags=re.MULTILINE)
_CASUAL_MESSAGE = re.compile(r'^Respond naturally to this casual message:\s*"(?P<q>.*)"', flags=re.MULTILINE)

NO_EVIDENCE_ANSWER = "I could not find verifiable evidence in the indexed documents."


class TextGenerator(Protocol):
    """Narrow contract of the external text-generation service."""

    def generate(self, prompt: str, model: str) -> str:
        """Return the completion for `prompt`; may raise or time out."""


def is_transient_error(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in _TRANSIENT_CODES
    name = type(exc).__name__.lower()
    return any(pattern in name for pattern in _TRANSIENT_NAME_PATTERNS)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "generation retry attempt %s",
        retry_state.attempt_number,
        extra={"attempt": retry_state.attempt_number, "error_type": type(exc).__name__ if exc else None},
    )


class LangChainGenerator:
    """`TextGenerator` over a LangChain chat model.

    `llm` serves every model name unless `model_factory` is given, in which
    case one chat model per requested name is built lazily and reused.
    Transient failures are retried with exponential backoff and jitter; the
    final failure surfaces as `GenerationError`.
    """

    def __init__(
        self,
        llm: Any,
        *,
        config: GeneratorConfig | None = None,
        model_factory: Any | None = None,
    ) -> None:
        self.llm = llm
        self.config = config or GeneratorConfig()
        self._model_factory = model_factory
        self._models: dict[str, Any] = {}
        self._prompt = ChatPromptTemplate.from_messages(
            [("system", _SYSTEM_PROMPT), ("human", "{request}")]
        )
        self._retrying = retry(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.config.retry_initial_seconds,
                max=self.config.retry_max_seconds,
                jitter=self.config.retry_initial_seconds,
            ),
            retry=retry_if_exception(is_transient_error),
            before_sleep=_log_retry,
            reraise=True,
        )

    def generate(self, prompt: str, model: str) -> str:
        chain = self._prompt | self._model_for(model)
        try:
            message = self._retrying(chain.invoke)({"request": prompt})
        except Exception as exc:
            raise GenerationError(f"generation with {model} failed: {exc}") from exc
        return _message_text(message)

    def _model_for(self, model: str) -> Any:
        if self._model_factory is None:
            return self.llm
        if model not in self._models:
            self._models[model] = self._model_factory(model)
        return self._models[model]


class ExtractiveGenerator:
    """Deterministic generator that answers from the prompt's own evidence.

    Keeps the same contract as `LangChainGenerator` and is useful for local or
    offline environments where `OPENAI_API_KEY` is not configured. Answers are
    built from source sentences that share the most words with the question,
    each followed by its citation number.
    """

    def __init__(self, max_sentences: int = 3) -> None:
        self.max_sentences = max_sentences

    def generate(self, prompt: str, model: str) -> str:
        del model  # the extractive path has a single behaviour.
        original = _ORIGINAL_QUERY.search(prompt)
        if original:
            query = original.group("q").strip()
            return " ".join(content_words(query)) or query
        if _CASUAL_MESSAGE.search(prompt):
            return "Hello! Ask me anything about the documents in this knowledge base."

        sources = _parse_sources(prompt)
        question = _QUESTION_LINE.search(prompt)
        question_terms = set(content_words(question.group("q"))) if question else set()
        return _build_answer(sources, question_terms, self.max_sentences)


class AnswerGenerator:
    """Fixed prompting contract between the orchestrator and a `TextGenerator`."""

    def __init__(
        self,
        generator: TextGenerator,
        *,
        config: GeneratorConfig | None = None,
        knowledge_base_name: str = "knowledge base",
    ) -> None:
        self.generator = generator
        self.config = config or GeneratorConfig()
        self.knowledge_base_name = knowledge_base_name

    def answer(self, query: str, retrieval: RetrievalResult) -> str:
        if not retrieval.documents:
            return (
                f'I couldn\'t find relevant information in the knowledge base to answer: "{query}". '
                "The knowledge base may not contain documents on this topic."
            )
        limit = self.config.context_chars_per_document
        context = "\n\n---\n\n".join(
            f"[{i}] {doc.title} (relevance: {score:.2f})\n{doc.content[:limit]}"
            for i, (doc, score) in enumerate(zip(retrieval.documents, retrieval.scores, strict=True), start=1)
        )
        prompt = (
            f'You have access to the "{self.knowledge_base_name}" knowledge base.\n\n'
            "Answer the user's question based ONLY on the provided context. "
            "Be accurate and cite sources by number.\n\n"
            f"Context from {retrieval.method.value} retrieval:\n{context}\n\n"
            f"User Question: {query}\n\n"
            "Instructions:\n"
            "1. Answer directly and concisely\n"
            "2. Cite sources using [1], [2], etc.\n"
            "3. If context doesn't fully answer the question, say so\n"
            "4. Do not make up information beyond what's in the context\n\n"
            "Answer:"
        )
        return self._call(prompt, self.config.answer_model)

    def direct_answer(self, query: str, intent: QueryIntent) -> str:
        if intent is QueryIntent.CHITCHAT:
            prompt = f'Respond naturally to this casual message: "{query}"\n\nKeep it brief and friendly.'
            return self._call(prompt, self.config.fast_model)
        if intent is QueryIntent.OUT_OF_SCOPE:
            return (
                f'I\'m a specialized assistant for the "{self.knowledge_base_name}" knowledge base. '
                "Your question appears to be outside my area of expertise. "
                "Could you ask something related to the available documents?"
            )
        return "I don't have enough information to answer that question based on the current knowledge base."

    def reformulate(self, query: str, evaluation: EvaluationResult, actions: list[str]) -> str:
        """Ask the fast model for a better query; keeps `query` when that fails."""

        improvements = "\n".join(f"- {action}" for action in actions) or "- Make the query more specific"
        prompt = (
            "Reformulate this query to improve retrieval quality.\n\n"
            f'Original Query: "{query}"\n\n'
            "Issues Identified:\n"
            f"- Relevance: {evaluation.relevance.value}\n"
            f"- Support: {evaluation.support.value}\n"
            f"- Utility: {evaluation.utility.value}\n"
            f"- Confidence: {evaluation.confidence:.2f}\n\n"
            f"Suggested Improvements:\n{improvements}\n\n"
            "Respond with ONLY the reformulated query, no explanation."
        )
        try:
            raw = self._call(prompt, self.config.fast_model)
        except GenerationError:
            logger.warning("query reformulation failed; keeping the current query", exc_info=True)
            return query
        lines = [line.strip().strip('"').strip() for line in raw.splitlines()]
        return next((line for line in lines if line), query)

    def _call(self, prompt: str, model: str) -> str:
        try:
            return self.generator.generate(prompt, model)
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"generation with {model} failed: {exc}") from exc


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content).strip()


def _parse_sources(prompt: str) -> list[tuple[str, str]]:
    sources: list[tuple[str, str]] = []
    current: str | None = None
    body: list[str] = []
    for line in prompt.splitlines():
        header = _SOURCE_HEADER.match(line.strip())
        if header:
            if current is not None:
                sources.append((current, " ".join(body)))
            current, body = header.group("n"), []
            continue
        if current is None:
            continue
        if line.strip() == "---" or line.startswith("User Question:"):
            sources.append((current, " ".join(body)))
            current, body = None, []
            continue
        if line.strip():
            body.append(line.strip())
    if current is not None:
        sources.append((current, " ".join(body)))
    return sources


def _build_answer(sources: list[tuple[str, str]], question_terms: set[str], limit: int) -> str:
    if not sources:
        return NO_EVIDENCE_ANSWER

    candidates: list[tuple[int, int, int, str, str]] = []
    for source_index, (citation, text) in enumerate(sources):
        for sentence_index, sentence in enumerate(split_sentences(text)):
            overlap = len(question_terms & set(normalize_words(sentence)))
            candidates.append((overlap, source_index, sentence_index, sentence, citation))

    ranked = sorted(candidates, key=lambda item: (-item[0], item[1], item[2]))
    chosen = [item for item in ranked if item[0] > 0][:limit] or ranked[:1]
    if not chosen:
        return NO_EVIDENCE_ANSWER
    chosen.sort(key=lambda item: (item[1], item[2]))
    return " ".join(f"{sentence} [{citation}]" for _, _, _, sentence, citation in chosen)
