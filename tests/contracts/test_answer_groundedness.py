from agentic_rag.agent.evaluator import SelfEvaluator
from agentic_rag.agent.generator import _SYSTEM_PROMPT, AnswerGenerator, ExtractiveGenerator
from agentic_rag.obs.tracing import GroundednessEvaluator
from agentic_rag.types import Document, RetrievalResult, RetrievalStrategy, SupportToken


class _RecordingGenerator:
    def __init__(self) -> None:
        self.prompts: list[tuple[str, str]] = []

    def generate(self, prompt: str, model: str) -> str:
        self.prompts.append((prompt, model))
        return "Refunds are issued to the original payment method [1]."


def _retrieval() -> RetrievalResult:
    return RetrievalResult(
        documents=[
            Document(
                id="refund",
                title="Refund Policy",
                content="Refunds are issued to the original payment method within 30 days.",
            )
        ],
        scores=[0.87],
        method=RetrievalStrategy.HYBRID,
        query_used="How are refunds issued?",
    )


def test_system_prompt_requires_citations_and_context_only_answers() -> None:
    assert "Use only the context" in _SYSTEM_PROMPT
    assert "Cite sources by their bracketed number" in _SYSTEM_PROMPT


def test_answer_prompt_numbers_sources_and_forbids_invention() -> None:
    recorder = _RecordingGenerator()
    answerer = AnswerGenerator(recorder, knowledge_base_name="Support handbook")

    answerer.answer("How are refunds issued?", _retrieval())

    ((prompt, model),) = recorder.prompts
    assert model == answerer.config.answer_model
    assert '"Support handbook" knowledge base' in prompt
    assert "[1] Refund Policy (relevance: 0.87)" in prompt
    assert "Context from hybrid retrieval" in prompt
    assert "Cite sources using [1], [2], etc." in prompt
    assert "Do not make up information" in prompt


def test_extractive_answers_are_grounded_in_their_sources() -> None:
    retrieval = _retrieval()
    answer = AnswerGenerator(ExtractiveGenerator()).answer("How are refunds issued?", retrieval)

    assert answer.endswith("[1]")
    assert GroundednessEvaluator(min_overlap=0.35).score(answer, [doc.content for doc in retrieval.documents]) == 1.0
    assert (
        SelfEvaluator().evaluate("How are refunds issued?", answer, retrieval).support
        is SupportToken.FULLY_SUPPORTED
    )
