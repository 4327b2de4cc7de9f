"""Document corpus: add/edit/remove -> chunk -> embed -> index."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any

from agentic_rag.config import ChunkingConfig
from agentic_rag.ingest.chunker import chunk_and_embed
from agentic_rag.ingest.embedding import Embedder, HashingEmbedder
from agentic_rag.obs.tracing import normalize_words
from agentic_rag.retrieval.vector_store import InMemoryVectorStore
from agentic_rag.types import Chunk, ChunkingStrategy, CorpusSummary, Document

logger = logging.getLogger(__name__)


class Corpus:
    """Mutable document set with per-strategy chunk caches.

    Documents are chunked and embedded with `index_strategy` when they are
    added or edited, and those chunks feed the semantic vector index. Chunks
    for any other strategy are computed on first request and cached until the
    document changes. `version` increases on every mutation so callers can key
    caches on corpus state.
    """

    def __init__(
        self,
        name: str = "knowledge base",
        *,
        embedder: Embedder | None = None,
        chunking: ChunkingConfig | None = None,
        index_strategy: ChunkingStrategy = ChunkingStrategy.SEMANTIC,
    ) -> None:
        self.name = name
        self.embedder = embedder or HashingEmbedder()
        self.chunking = chunking or ChunkingConfig()
        self.index_strategy = ChunkingStrategy(index_strategy)
        self.vector_store = InMemoryVectorStore()
        self._documents: dict[str, Document] = {}
        self._chunks: dict[tuple[str, ChunkingStrategy], list[Chunk]] = {}
        self._version = 0
        self._last_added_at = 0.0
        self._lock = threading.RLock()

    @property
    def version(self) -> int:
        return self._version

    def add_document(
        self,
        title: str,
        content: str,
        *,
        doc_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        """Add a document and index it. Raises `ChunkingError` on bad content."""

        doc_id = doc_id or f"doc-{uuid.uuid4().hex[:12]}"
        with self._lock:
            if doc_id in self._documents:
                raise ValueError(f"Document already exists: {doc_id}")
            # Strictly increasing so recency tie-breaks are total.
            added_at = max(time.time(), self._last_added_at + 1e-6)
            document = Document(
                id=doc_id,
                title=title,
                content=content,
                metadata=dict(metadata or {}),
                added_at=added_at,
            )
            self._store(document, self._chunk(document, self.index_strategy))
            self._last_added_at = added_at
            self._documents[doc_id] = document
            self._version += 1
        logger.debug("added document %s", doc_id)
        return document

    def edit_document(
        self,
        doc_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        with self._lock:
            current = self._documents.get(doc_id)
            if current is None:
                raise KeyError(f"Unknown document: {doc_id}")
            merged = {**current.metadata, **(metadata or {}), "updated_at": time.time()}
            edited = Document(
                id=doc_id,
                title=current.title if title is None else title,
                content=current.content if content is None else content,
                metadata=merged,
                added_at=current.added_at,
            )
            chunks = self._chunk(edited, self.index_strategy)
            self._drop_chunks(doc_id)
            self._store(edited, chunks)
            self._documents[doc_id] = edited
            self._version += 1
        logger.debug("edited document %s", doc_id)
        return edited

    def remove_document(self, doc_id: str) -> None:
        with self._lock:
            if self._documents.pop(doc_id, None) is None:
                raise KeyError(f"Unknown document: {doc_id}")
            self._drop_chunks(doc_id)
            self._version += 1

    def get(self, doc_id: str) -> Document | None:
        return self._documents.get(doc_id)

    def documents(self) -> list[Document]:
        with self._lock:
            return list(self._documents.values())

    def chunks(self, doc_id: str, strategy: ChunkingStrategy | str | None = None) -> list[Chunk]:
        resolved = self.index_strategy if strategy is None else ChunkingStrategy(strategy)
        with self._lock:
            document = self._documents.get(doc_id)
            if document is None:
                raise KeyError(f"Unknown document: {doc_id}")
            key = (doc_id, resolved)
            if key not in self._chunks:
                self._chunks[key] = self._chunk(document, resolved)
            return list(self._chunks[key])

    def find_by_title(self, title: str) -> Document | None:
        wanted = title.strip().lower()
        for document in self.documents():
            if document.title.strip().lower() == wanted:
                return document
        return None

    def summary(self) -> CorpusSummary:
        vocabulary: set[str] = set()
        documents = self.documents()
        for document in documents:
            vocabulary.update(normalize_words(f"{document.title} {document.content}"))
        return CorpusSummary(
            name=self.name,
            document_count=len(documents),
            vocabulary=frozenset(vocabulary),
        )

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._documents

    def _store(self, document: Document, chunks: list[Chunk]) -> None:
        self._chunks[(document.id, self.index_strategy)] = chunks
        self.vector_store.upsert(chunks, added_at=document.added_at)

    def _chunk(self, document: Document, strategy: ChunkingStrategy) -> list[Chunk]:
        return chunk_and_embed(
            document.content,
            strategy,
            embedder=self.embedder,
            config=self.chunking,
            document_id=document.id,
        )

    def _drop_chunks(self, doc_id: str) -> None:
        for key in [key for key in self._chunks if key[0] == doc_id]:
            del self._chunks[key]
        self.vector_store.remove_document(doc_id)
