"""FastAPI entrypoint for corpus, query, feedback and learning endpoints."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from agentic_rag.agent.evaluator import SelfEvaluator
from agentic_rag.agent.generator import AnswerGenerator, ExtractiveGenerator, LangChainGenerator, TextGenerator
from agentic_rag.agent.orchestrator import Orchestrator
from agentic_rag.agent.router import QueryRouter
from agentic_rag.config import ChunkingConfig, GeneratorConfig, RetrievalConfig
from agentic_rag.errors import ChunkingError, ConfigurationError
from agentic_rag.ingest.chunker import chunk_and_embed
from agentic_rag.ingest.corpus import Corpus
from agentic_rag.ingest.embedding import reduce_dimensions_for_2d
from agentic_rag.learning.store import InMemoryRecordStore, RecordStore, SqliteRecordStore
from agentic_rag.learning.tracker import PerformanceTracker
from agentic_rag.obs.log import configure_logging
from agentic_rag.retrieval.retriever import StrategyRetriever
from agentic_rag.retrieval.search_backend import AzureSearchBackend
from agentic_rag.types import AgenticResponse, ChunkingStrategy, Feedback, QueryIntent

configure_logging(os.getenv("AGENTIC_RAG_LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)


def _create_generator(llm: Any, config: GeneratorConfig) -> TextGenerator:
    if llm is None:
        return ExtractiveGenerator()

    from langchain_openai import ChatOpenAI

    return LangChainGenerator(
        llm,
        config=config,
        model_factory=lambda model: ChatOpenAI(model=model, temperature=0),
    )


def _create_store() -> RecordStore:
    path = os.getenv("AGENTIC_RAG_DB")
    return SqliteRecordStore(path) if path else InMemoryRecordStore()


def _create_backend() -> AzureSearchBackend | None:
    endpoint = os.getenv("AZURE_SEARCH_ENDPOINT")
    api_key = os.getenv("AZURE_SEARCH_API_KEY")
    if not endpoint or not api_key:
        return None
    return AzureSearchBackend(endpoint, api_key)


class DocumentRequest(BaseModel):
    title: str = Field(min_length=1)
    content: str
    doc_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentUpdateRequest(BaseModel):
    title: str | None = None
    content: str | None = None
    metadata: dict[str, Any] | None = None


class ChunkRequest(BaseModel):
    content: str
    strategy: ChunkingStrategy = ChunkingStrategy.SEMANTIC
    project_2d: bool = False


class QueryRequest(BaseModel):
    question: str = Field(min_length=1)
    max_iterations: int = 3
    confidence_threshold: float = 0.6
    enable_criticism: bool = True
    enable_auto_retry: bool = True
    top_k: int = 5


class FeedbackRequest(BaseModel):
    run_id: str = Field(min_length=1)
    feedback: Feedback


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    _tracker.close()
    if _retriever.backend is not None:
        _retriever.backend.close()


app = FastAPI(title="Agentic RAG Engine", version="0.1.0", lifespan=lifespan)

_generator_config = GeneratorConfig()
_retrieval_config = RetrievalConfig(backend_index_name=os.getenv("AZURE_SEARCH_INDEX"))
_chunking_config = ChunkingConfig()

_corpus = Corpus(os.getenv("AGENTIC_RAG_KB_NAME", "knowledge base"), chunking=_chunking_config)
_router = QueryRouter()
_retriever = StrategyRetriever(
    _corpus,
    config=_retrieval_config,
    backend=_create_backend(),
    expander=_router.expand,
)
_llm = _create_llm()
_answer_generator = AnswerGenerator(
    _create_generator(_llm, _generator_config),
    config=_generator_config,
    knowledge_base_name=_corpus.name,
)
_tracker = PerformanceTracker(_create_store())
_orchestrator = Orchestrator(
    _corpus,
    _retriever,
    _router,
    _answer_generator,
    SelfEvaluator(),
    _tracker,
)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "generator_mode": "langchain" if _llm is not None else "extractive",
        "search_backend": "azure" if _retriever.backend is not None else "local",
        "document_count": len(_corpus),
    }


@app.post("/documents")
def add_document(request: DocumentRequest) -> dict[str, Any]:
    try:
        document = _corpus.add_document(
            request.title,
            request.content,
            doc_id=request.doc_id,
            metadata=request.metadata,
        )
    except (ChunkingError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "id": document.id,
        "title": document.title,
        "chunks_created": len(_corpus.chunks(document.id)),
    }


@app.put("/documents/{doc_id}")
def edit_document(doc_id: str, request: DocumentUpdateRequest) -> dict[str, Any]:
    try:
        document = _corpus.edit_document(
            doc_id,
            title=request.title,
            content=request.content,
            metadata=request.metadata,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ChunkingError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return asdict(document)


@app.post("/chunks")
def chunks(request: ChunkRequest) -> dict[str, Any]:
    try:
        items = chunk_and_embed(
            request.content,
            request.strategy,
            embedder=_corpus.embedder,
            config=_chunking_config,
        )
    except ChunkingError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payload: dict[str, Any] = {
        "items": [
            {
                "id": chunk.id,
                "text": chunk.text,
                "start_index": chunk.start_index,
                "end_index": chunk.end_index,
                "token_count": chunk.token_count,
            }
            for chunk in items
        ]
    }
    if request.project_2d:
        points = reduce_dimensions_for_2d([chunk.embedding or [] for chunk in items])
        payload["points"] = [asdict(point) for point in points]
    return payload


@app.post("/query")
def query(request: QueryRequest) -> dict[str, Any]:
    try:
        response = _orchestrator.orchestrate(request.question, request.model_dump(exclude={"question"}))
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _serialize_response(response)


@app.post("/feedback")
def feedback(request: FeedbackRequest) -> dict[str, Any]:
    try:
        _tracker.record_user_feedback(request.run_id, request.feedback)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info("feedback recorded", extra={"run_id": request.run_id, "feedback": request.feedback.value})
    return {"run_id": request.run_id, "feedback": request.feedback.value}


@app.get("/metrics")
def metrics(intent: QueryIntent | None = None) -> dict[str, Any]:
    items = _tracker.get_metrics_for_intent(intent) if intent else _tracker.get_all_metrics()
    payload: dict[str, Any] = {"items": [asdict(item) for item in items]}
    if intent:
        payload["recommendation"] = asdict(_tracker.recommend(intent))
    return payload


@app.get("/insights")
def insights() -> dict[str, Any]:
    return {"items": [asdict(item) for item in _tracker.get_insights()]}


@app.get("/history")
def history(limit: int = 50) -> dict[str, Any]:
    return {"items": [asdict(record) for record in _tracker.get_query_history(limit=limit)]}


def _serialize_response(response: AgenticResponse) -> dict[str, Any]:
    payload = asdict(response)
    # Full document bodies are already available through the corpus.
    payload["retrieval"]["documents"] = [
        {"id": doc.id, "title": doc.title} for doc in response.retrieval.documents
    ]
    return payload
