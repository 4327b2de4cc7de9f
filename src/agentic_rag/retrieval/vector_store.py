"""In-memory chunk vector index."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from agentic_rag.ingest.embedding import cosine_similarity
from agentic_rag.types import Chunk, ScoredChunk


@dataclass(slots=True)
class _StoredVector:
    chunk: Chunk
    embedding: list[float]
    added_at: float


class InMemoryVectorStore:
    """Deterministic brute-force vector store used for local retrieval.

    Ranking is by cosine similarity, descending. Equal scores go to the chunk
    whose document was added more recently, then to insertion order.
    """

    def __init__(self) -> None:
        self._store: dict[str, _StoredVector] = {}
        self._lock = threading.Lock()

    def upsert(self, chunks: list[Chunk], *, added_at: float = 0.0) -> None:
        missing = [chunk.id for chunk in chunks if not chunk.embedding]
        if missing:
            raise ValueError(f"chunks without embeddings: {missing[:3]}")
        with self._lock:
            for chunk in chunks:
                self._store[chunk.id] = _StoredVector(
                    chunk=chunk, embedding=list(chunk.embedding or []), added_at=added_at
                )

    def remove_document(self, document_id: str) -> int:
        with self._lock:
            stale = [key for key, rec in self._store.items() if rec.chunk.document_id == document_id]
            for key in stale:
                del self._store[key]
        return len(stale)

    def semantic_search(self, query_embedding: list[float], k: int) -> list[ScoredChunk]:
        with self._lock:
            records = list(self._store.values())
        scored = [
            (cosine_similarity(query_embedding, record.embedding), record)
            for record in records
        ]
        ranked = sorted(scored, key=lambda item: (-item[0], -item[1].added_at))
        return [
            ScoredChunk(chunk=record.chunk, score=score, rank=i + 1)
            for i, (score, record) in enumerate(ranked[:k])
        ]

    def __len__(self) -> int:
        return len(self._store)
