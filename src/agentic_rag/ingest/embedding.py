"""Chunk embeddings and the vector geometry built on them.

`Embedder` is the contract `chunk_and_embed` and the corpus index depend on.
`HashingEmbedder` is the offline implementation used when no hosted
embedding provider is configured. Cosine similarity ranks chunks against a
query and the 2-D projection feeds the chunk visualiser.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Sequence
from hashlib import blake2b
from math import isfinite, sqrt

import numpy as np

from agentic_rag.obs.tracing import normalize_words
from agentic_rag.types import Point2D


class Embedder(ABC):
    """Maps chunk and query text to fixed-dimension vectors.

    Implementations may fail; `chunk_and_embed` turns failures and ragged
    output into `ChunkingError`.
    """

    dimension: int

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """One vector per chunk text, in input order."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Vector for a search query."""


class HashingEmbedder(Embedder):
    """Signed feature hashing over lowercased words, L2 normalised.

    Chunks that share vocabulary with a query land close to it in cosine
    space, so semantic retrieval works deterministically without a model.
    Text with no words maps to the zero vector, which scores 0.0 against
    everything.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._encode(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._encode(text)

    def _encode(self, text: str) -> list[float]:
        buckets: Counter[int] = Counter()
        for word in normalize_words(text):
            index, sign = self._bucket(word)
            buckets[index] += sign

        vector = [0.0] * self.dimension
        norm = sqrt(sum(count * count for count in buckets.values()))
        if norm == 0:
            return vector
        for index, count in buckets.items():
            vector[index] = count / norm
        return vector

    def _bucket(self, word: str) -> tuple[int, int]:
        digest = blake2b(word.encode("utf-8"), digest_size=8).digest()
        index = int.from_bytes(digest[:4], "little") % self.dimension
        return index, -1 if digest[4] % 2 else 1


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between `a` and `b`, in [-1, 1].

    Zero vectors and vectors of different length score 0.0. Non-finite
    components raise `ValueError`.
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    if not all(isfinite(x) for x in a) or not all(isfinite(y) for y in b):
        raise ValueError("cosine similarity needs finite vector components")
    scale_a = max(abs(x) for x in a)
    scale_b = max(abs(y) for y in b)
    if scale_a == 0 or scale_b == 0:
        return 0.0

    # Dividing by the largest magnitude keeps the squares clear of underflow and overflow.
    unit_a = [x / scale_a for x in a]
    unit_b = [y / scale_b for y in b]
    numerator = sum(x * y for x, y in zip(unit_a, unit_b, strict=True))
    squared_a = sum(x * x for x in unit_a)
    squared_b = sum(y * y for y in unit_b)
    # sqrt of the product keeps cos(v, v) exactly 1.0 in floating point.
    return max(-1.0, min(1.0, numerator / sqrt(squared_a * squared_b)))


def reduce_dimensions_for_2d(vectors: Sequence[Sequence[float]]) -> list[Point2D]:
    """Project vectors onto their first two principal components.

    Coordinates are rescaled into [0, 100] per axis for display. The output is
    for presentation only.
    """
    if len(vectors) == 0:
        return []
    if len(vectors) == 1:
        return [Point2D(x=50.0, y=50.0)]

    matrix = np.asarray(vectors, dtype=np.float64)
    centered = matrix - matrix.mean(axis=0)
    # Rows of vt are principal axes ordered by explained variance.
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    components = vt[:2]
    projected = centered @ components.T
    if projected.shape[1] < 2:
        projected = np.hstack([projected, np.zeros((projected.shape[0], 1))])

    points: list[Point2D] = []
    scaled = [_rescale(projected[:, axis]) for axis in (0, 1)]
    for x, y in zip(scaled[0], scaled[1], strict=True):
        points.append(Point2D(x=float(x), y=float(y)))
    return points


def _rescale(values: np.ndarray) -> np.ndarray:
    low = values.min()
    high = values.max()
    if high - low < 1e-12:
        return np.full_like(values, 50.0)
    return (values - low) / (high - low) * 100.0
