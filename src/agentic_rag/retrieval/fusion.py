"""Fusion of ranked document lists."""

from __future__ import annotations

from collections.abc import Sequence

from agentic_rag.types import Document


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[Document]], *, k: int = 60
) -> list[tuple[Document, float]]:
    """Fuse rankings with RRF: `score(d) = sum 1 / (k + rank_i(d))`.

    Ranks are 1-based. A document absent from a ranking contributes nothing
    for it. Equal fused scores keep first-appearance order.
    """

    scores: dict[str, float] = {}
    documents: dict[str, Document] = {}
    for ranking in rankings:
        for rank, document in enumerate(ranking, start=1):
            documents.setdefault(document.id, document)
            scores[document.id] = scores.get(document.id, 0.0) + 1.0 / (k + rank)
    ordered = sorted(scores, key=lambda doc_id: -scores[doc_id])
    return [(documents[doc_id], scores[doc_id]) for doc_id in ordered]


def max_score_fusion(
    results: Sequence[Sequence[tuple[Document, float]]],
) -> list[tuple[Document, float]]:
    """Dedupe scored lists by document id, keeping each document's best score."""

    best: dict[str, tuple[Document, float]] = {}
    for scored in results:
        for document, score in scored:
            current = best.get(document.id)
            if current is None or score > current[1]:
                best[document.id] = (document, score)
    return sorted(best.values(), key=lambda item: -item[1])
