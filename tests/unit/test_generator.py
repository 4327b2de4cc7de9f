import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.runnables import RunnableLambda

from agentic_rag.agent.evaluator import conservative_evaluation
from agentic_rag.agent.generator import (
    NO_EVIDENCE_ANSWER,
    AnswerGenerator,
    ExtractiveGenerator,
    LangChainGenerator,
    is_transient_error,
)
from agentic_rag.config import GeneratorConfig
from agentic_rag.errors import GenerationError
from agentic_rag.types import Document, QueryIntent, RetrievalResult, RetrievalStrategy

_FAST_RETRY = GeneratorConfig(max_attempts=3, retry_initial_seconds=0, retry_max_seconds=0)

_REFUND = Document(
    id="refund",
    title="Refund Policy",
    content=(
        "Our refund policy allows customers to request a refund within 30 days of purchase. "
        "Refunds are issued to the original payment method."
    ),
)
_SHIPPING = Document(
    id="shipping",
    title="Shipping Guide",
    content="Orders ship within two business days. Tracking numbers are sent by email.",
)


class ServiceUnavailableError(Exception):
    pass


class _FailingGenerator:
    def generate(self, prompt: str, model: str) -> str:
        raise ConnectionError("generation service unreachable")


def _retrieval(*docs: Document) -> RetrievalResult:
    return RetrievalResult(
        documents=list(docs),
        scores=[0.9 - 0.1 * i for i in range(len(docs))],
        method=RetrievalStrategy.HYBRID,
        query_used="What is the refund policy?",
    )


def test_langchain_generator_returns_model_text() -> None:
    generator = LangChainGenerator(FakeListChatModel(responses=["  Refunds take 30 days [1]  "]))

    assert generator.generate("What is the refund policy?", "gpt-4o") == "Refunds take 30 days [1]"


def test_model_factory_builds_one_model_per_name() -> None:
    built: list[str] = []

    def factory(name: str) -> FakeListChatModel:
        built.append(name)
        return FakeListChatModel(responses=[f"from {name}"])

    generator = LangChainGenerator(None, model_factory=factory)

    assert generator.generate("hi", "gpt-4o-mini") == "from gpt-4o-mini"
    assert generator.generate("hi", "gpt-4o-mini") == "from gpt-4o-mini"
    assert generator.generate("hi", "gpt-4o") == "from gpt-4o"
    assert built == ["gpt-4o-mini", "gpt-4o"]


def test_transient_failures_are_retried_then_surface_as_generation_error() -> None:
    calls = 0

    def unavailable(prompt_value):
        nonlocal calls
        calls += 1
        raise ServiceUnavailableError("model overloaded")

    generator = LangChainGenerator(RunnableLambda(unavailable), config=_FAST_RETRY)

    with pytest.raises(GenerationError):
        generator.generate("What is the refund policy?", "gpt-4o")
    assert calls == 3


def test_permanent_failures_are_not_retried() -> None:
    calls = 0

    def invalid(prompt_value):
        nonlocal calls
        calls += 1
        raise ValueError("invalid request")

    generator = LangChainGenerator(RunnableLambda(invalid), config=_FAST_RETRY)

    with pytest.raises(GenerationError):
        generator.generate("What is the refund policy?", "gpt-4o")
    assert calls == 1


def test_transient_error_classification() -> None:
    class _StatusError(Exception):
        def __init__(self, status_code: int) -> None:
            super().__init__(status_code)
            self.status_code = status_code

    assert is_transient_error(_StatusError(429))
    assert is_transient_error(_StatusError(503))
    assert not is_transient_error(_StatusError(400))
    assert is_transient_error(TimeoutError())
    assert not is_transient_error(KeyError("x"))


def test_extractive_answer_cites_best_matching_sentences() -> None:
    answerer = AnswerGenerator(ExtractiveGenerator(), knowledge_base_name="Support handbook")

    answer = answerer.answer("What is the refund policy?", _retrieval(_REFUND, _SHIPPING))

    assert answer == "Our refund policy allows customers to request a refund within 30 days of purchase. [1]"


def test_answer_without_documents_says_nothing_was_found() -> None:
    answerer = AnswerGenerator(ExtractiveGenerator())

    answer = answerer.answer("How do volcanoes erupt?", _retrieval())

    assert "couldn't find relevant information" in answer
    assert ExtractiveGenerator().generate("no sources here", "any") == NO_EVIDENCE_ANSWER


def test_direct_answers_by_intent() -> None:
    answerer = AnswerGenerator(ExtractiveGenerator(), knowledge_base_name="Support handbook")

    assert answerer.direct_answer("Hello there!", QueryIntent.CHITCHAT).startswith("Hello!")
    assert '"Support handbook"' in answerer.direct_answer("quantum?", QueryIntent.OUT_OF_SCOPE)


def test_reformulate_uses_fast_model_and_keeps_query_on_failure() -> None:
    evaluation = conservative_evaluation("unsupported")

    rewritten = AnswerGenerator(ExtractiveGenerator()).reformulate(
        "What is the refund policy?", evaluation, ["Retrieve additional documents"]
    )
    kept = AnswerGenerator(_FailingGenerator()).reformulate("What is the refund policy?", evaluation, [])

    assert rewritten == "refund policy"
    assert kept == "What is the refund policy?"


def test_answer_failures_become_generation_errors() -> None:
    with pytest.raises(GenerationError):
        AnswerGenerator(_FailingGenerator()).answer("What is the refund policy?", _retrieval(_REFUND))
