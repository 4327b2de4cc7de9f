"""BM25 keyword ranking over document title and content."""

from __future__ import annotations

from collections import Counter
from math import log

from agentic_rag.obs.tracing import normalize_words
from agentic_rag.types import Document


class BM25Index:
    """Okapi BM25 over a fixed document snapshot.

    IDF uses the `log(1 + (N - df + 0.5) / (df + 0.5))` form, which is always
    positive, so a document's score never decreases when it matches more query
    terms. Documents with a zero score are not returned.
    """

    def __init__(self, documents: list[Document], *, k1: float = 1.5, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self._documents = list(documents)
        self._term_freqs = [
            Counter(normalize_words(f"{doc.title} {doc.content}")) for doc in self._documents
        ]
        self._lengths = [sum(freqs.values()) for freqs in self._term_freqs]
        total = sum(self._lengths)
        self._avg_length = total / len(self._lengths) if self._lengths and total else 1.0
        doc_freq: Counter[str] = Counter()
        for freqs in self._term_freqs:
            doc_freq.update(freqs.keys())
        n = len(self._documents)
        self._idf = {
            term: log(1.0 + (n - df + 0.5) / (df + 0.5)) for term, df in doc_freq.items()
        }

    def score(self, query: str) -> list[float]:
        terms = set(normalize_words(query))
        scores: list[float] = []
        for freqs, length in zip(self._term_freqs, self._lengths, strict=True):
            norm = self.k1 * (1.0 - self.b + self.b * length / self._avg_length)
            total = 0.0
            for term in terms:
                tf = freqs.get(term, 0)
                if tf:
                    total += self._idf[term] * tf * (self.k1 + 1.0) / (tf + norm)
            scores.append(total)
        return scores

    def search(self, query: str, k: int) -> list[tuple[Document, float]]:
        scored = [
            (doc, score)
            for doc, score in zip(self._documents, self.score(query), strict=True)
            if score > 0.0
        ]
        scored.sort(key=lambda item: (-item[1], -item[0].added_at))
        return scored[:k]
