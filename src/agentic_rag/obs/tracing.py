"""Timing, token accounting and groundedness scoring."""

from __future__ import annotations

import re
import time

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)
_WORD_PATTERN = re.compile(r"\w+", flags=re.UNICODE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?。！？])\s+")
_CITATION_TAG = re.compile(r"\[[^\]]+\]")

STOP_WORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "but", "if", "of", "to", "in", "on",
        "for", "with", "at", "by", "from", "as", "is", "are", "was", "were",
        "be", "been", "being", "it", "its", "this", "that", "these", "those",
        "we", "our", "you", "your", "they", "their", "he", "she", "i", "me",
        "my", "not", "no", "can", "could", "will", "would", "should", "do",
        "does", "did", "have", "has", "had", "what", "which", "who", "whom",
        "when", "where", "why", "how", "about", "into", "there", "any", "so",
        "than", "then", "also", "just", "please", "tell", "explain",
    }
)


class GroundednessEvaluator:
    """Computes attribution correctness from answer-source overlap.

    Metric definition used here:
    - Split answer into sentences.
    - Remove citation tags like `[1]` or `[doc-1]`.
    - A sentence is considered grounded if at least one source snippet has word
      overlap ratio >= `min_overlap`.

    This is a pragmatic, deterministic proxy suitable for CI/contract tests.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, source_snippets: list[str]) -> float:
        sentences = split_sentences(answer)
        if not sentences:
            return 1.0
        if not source_snippets:
            return 0.0
        ungrounded = self.ungrounded_sentences(answer, source_snippets)
        return (len(sentences) - len(ungrounded)) / len(sentences)

    def ungrounded_sentences(self, answer: str, source_snippets: list[str]) -> list[str]:
        """Return the answer sentences no source snippet backs."""
        source_token_sets = [set(normalize_words(source)) for source in source_snippets]
        missing: list[str] = []
        for sentence in split_sentences(answer):
            clean_sentence = strip_citations(sentence)
            sentence_tokens = set(normalize_words(clean_sentence))
            if not sentence_tokens:
                continue
            if not any(
                self._overlap(sentence_tokens, source_tokens) >= self.min_overlap
                for source_tokens in source_token_sets
            ):
                missing.append(sentence)
        return missing

    @staticmethod
    def _overlap(a: set[str], b: set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a)


class Timer:
    """Simple context timer used by the orchestrator and retriever."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def normalize_words(text: str) -> list[str]:
    return [token.lower() for token in _WORD_PATTERN.findall(text)]


def content_words(text: str) -> list[str]:
    """Lowercased words minus stop words, first-occurrence order, no repeats."""
    seen: dict[str, None] = {}
    for word in normalize_words(text):
        if word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text) if part.strip()]


def strip_citations(text: str) -> str:
    return _CITATION_TAG.sub("", text).strip()
