"""Fixed, sentence, paragraph and semantic chunking with embeddings."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from agentic_rag.config import ChunkingConfig
from agentic_rag.errors import ChunkingError
from agentic_rag.ingest.embedding import Embedder
from agentic_rag.obs.tracing import content_words, estimate_token_count
from agentic_rag.types import Chunk, ChunkingStrategy

logger = logging.getLogger(__name__)

_SENTENCE_PATTERN = re.compile(r"[^.!?。！？]+(?:[.!?。！？]+|$)")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_HEADING_LINE = re.compile(r"^#{1,6}\s+\S.*$", flags=re.MULTILINE)


@dataclass(slots=True, frozen=True)
class _Span:
    start: int
    end: int


@dataclass(slots=True, frozen=True)
class _Unit:
    span: _Span
    section: int
    paragraph: int


class TextChunker:
    """Splits content into character-offset chunks under a named strategy.

    Strategy notes:
    1. `fixed` slides a `chunk_size` window with `chunk_overlap` characters of
       overlap. It is the only strategy whose chunks may overlap.
    2. `sentence` groups `sentences_per_chunk` consecutive sentences.
    3. `paragraph` emits one chunk per blank-line separated paragraph.
    4. `semantic` walks sentences and opens a new chunk at a markdown heading,
       at a paragraph boundary whose sentence shares almost no content words
       with the chunk so far (a lexical topic shift), or when the chunk would
       grow past `max_chunk_chars`. Sentences longer than the bound are cut
       into windows, preferring whitespace cut points.

    Every chunk text equals `content[start_index:end_index]`, so chunk
    boundaries are a pure function of the content and the configuration.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()
        self._strategies: dict[ChunkingStrategy, Callable[[str], list[_Span]]] = {
            ChunkingStrategy.FIXED: self._fixed_spans,
            ChunkingStrategy.SENTENCE: self._sentence_spans,
            ChunkingStrategy.PARAGRAPH: self._paragraph_spans,
            ChunkingStrategy.SEMANTIC: self._semantic_spans,
        }

    def chunk(
        self,
        content: str,
        strategy: ChunkingStrategy | str = ChunkingStrategy.SEMANTIC,
        *,
        document_id: str = "doc",
    ) -> list[Chunk]:
        if not isinstance(content, str):
            raise ChunkingError(f"content must be text, got {type(content).__name__}")
        try:
            resolved = ChunkingStrategy(strategy)
        except ValueError as exc:
            raise ChunkingError(f"Unknown chunking strategy: {strategy}") from exc
        if not content.strip():
            return []

        spans = self._strategies[resolved](content)
        chunks: list[Chunk] = []
        for span in spans:
            text = content[span.start : span.end]
            chunks.append(
                Chunk(
                    id=f"{document_id}-{resolved.value}-{len(chunks):04d}",
                    document_id=document_id,
                    text=text,
                    start_index=span.start,
                    end_index=span.end,
                    token_count=estimate_token_count(text),
                    strategy=resolved,
                )
            )
        return chunks

    def _fixed_spans(self, content: str) -> list[_Span]:
        size = self.config.chunk_size
        stride = size - self.config.chunk_overlap
        spans: list[_Span] = []
        start = 0
        while start < len(content):
            end = min(start + size, len(content))
            trimmed = _trim(content, start, end)
            if trimmed is not None:
                spans.append(trimmed)
            if end == len(content):
                break
            start += stride
        return spans

    def _sentence_spans(self, content: str) -> list[_Span]:
        sentences = _sentence_spans(content, 0, len(content))
        per_chunk = self.config.sentences_per_chunk
        return [
            _Span(group[0].start, group[-1].end)
            for group in (sentences[i : i + per_chunk] for i in range(0, len(sentences), per_chunk))
        ]

    def _paragraph_spans(self, content: str) -> list[_Span]:
        return _paragraph_spans(content, 0, len(content))

    def _semantic_spans(self, content: str) -> list[_Span]:
        units = self._semantic_units(content)
        limit = self.config.max_chunk_chars
        min_containment = 1.0 - self.config.semantic_break_threshold

        spans: list[_Span] = []
        current: list[_Unit] = []
        current_words: set[str] = set()

        def _close() -> None:
            if current:
                spans.append(_Span(current[0].span.start, current[-1].span.end))

        for unit in units:
            words = set(content_words(content[unit.span.start : unit.span.end]))
            if current:
                previous = current[-1]
                new_section = unit.section != previous.section
                too_long = unit.span.end - current[0].span.start > limit
                topic_shift = (
                    unit.paragraph != previous.paragraph
                    and bool(words)
                    and len(words & current_words) / len(words) < min_containment
                )
                if new_section or too_long or topic_shift:
                    _close()
                    current = []
                    current_words = set()
            current.append(unit)
            current_words |= words
        _close()
        return spans

    def _semantic_units(self, content: str) -> list[_Unit]:
        limit = self.config.max_chunk_chars
        units: list[_Unit] = []
        paragraph_index = 0
        for section_index, section in enumerate(_section_spans(content)):
            for paragraph in _paragraph_spans(content, section.start, section.end):
                for sentence in _sentence_spans(content, paragraph.start, paragraph.end):
                    for piece in _window_spans(content, sentence, limit):
                        units.append(_Unit(piece, section_index, paragraph_index))
                paragraph_index += 1
        return units


def chunk_and_embed(
    content: str,
    strategy: ChunkingStrategy | str,
    *,
    embedder: Embedder,
    config: ChunkingConfig | None = None,
    document_id: str = "doc",
) -> list[Chunk]:
    """Chunk `content` and attach one embedding per chunk.

    Raises `ChunkingError` for malformed content, an unknown strategy, or any
    embedding failure; a partial chunk set is never returned.
    """

    chunks = TextChunker(config).chunk(content, strategy, document_id=document_id)
    if not chunks:
        return []
    try:
        vectors = embedder.embed_documents([chunk.text for chunk in chunks])
    except Exception as exc:
        logger.warning("embedding failed for %s", document_id, exc_info=True)
        raise ChunkingError(f"Embedding failed for {document_id}: {exc}") from exc

    if len(vectors) != len(chunks):
        raise ChunkingError(
            f"Embedder returned {len(vectors)} vectors for {len(chunks)} chunks"
        )
    dimensions = {len(vector) for vector in vectors}
    if len(dimensions) != 1 or 0 in dimensions:
        raise ChunkingError("Embedder returned vectors of inconsistent dimension")

    for chunk, vector in zip(chunks, vectors, strict=True):
        chunk.embedding = [float(value) for value in vector]
    return chunks


def _trim(content: str, start: int, end: int) -> _Span | None:
    while start < end and content[start].isspace():
        start += 1
    while end > start and content[end - 1].isspace():
        end -= 1
    return _Span(start, end) if end > start else None


def _sentence_spans(content: str, start: int, end: int) -> list[_Span]:
    spans: list[_Span] = []
    for match in _SENTENCE_PATTERN.finditer(content, start, end):
        trimmed = _trim(content, match.start(), match.end())
        if trimmed is not None:
            spans.append(trimmed)
    return spans


def _paragraph_spans(content: str, start: int, end: int) -> list[_Span]:
    spans: list[_Span] = []
    cursor = start
    for match in _PARAGRAPH_BREAK.finditer(content, start, end):
        trimmed = _trim(content, cursor, match.start())
        if trimmed is not None:
            spans.append(trimmed)
        cursor = match.end()
    trimmed = _trim(content, cursor, end)
    if trimmed is not None:
        spans.append(trimmed)
    return spans


def _section_spans(content: str) -> list[_Span]:
    starts = [0] + [match.start() for match in _HEADING_LINE.finditer(content) if match.start() > 0]
    bounds = starts + [len(content)]
    return [
        _Span(bounds[i], bounds[i + 1])
        for i in range(len(starts))
        if bounds[i + 1] > bounds[i]
    ]


def _window_spans(content: str, span: _Span, limit: int) -> list[_Span]:
    if span.end - span.start <= limit:
        return [span]
    pieces: list[_Span] = []
    start = span.start
    while start < span.end:
        end = min(start + limit, span.end)
        if end < span.end:
            cut = content.rfind(" ", start + 1, end)
            if cut > start:
                end = cut
        trimmed = _trim(content, start, end)
        if trimmed is not None:
            pieces.append(trimmed)
        start = end
    return pieces
