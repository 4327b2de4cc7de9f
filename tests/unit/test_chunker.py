import pytest

from agentic_rag.config import ChunkingConfig
from agentic_rag.errors import ChunkingError
from agentic_rag.ingest.chunker import TextChunker, chunk_and_embed
from agentic_rag.ingest.embedding import Embedder, HashingEmbedder
from agentic_rag.types import ChunkingStrategy


_HANDBOOK = """# Refunds
Our refund policy allows customers to request a refund within 30 days of purchase. Refunds are issued to the original payment method.

Refund requests need the order number. Support confirms every refund request by email.

# Shipping
Orders ship within two business days. Tracking numbers are sent once the parcel leaves the warehouse.

Volcanic ash clouds sometimes delay international flights and parcels."""


class _BrokenEmbedder(Embedder):
    dimension = 4

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding service unavailable")

    def embed_query(self, text: str) -> list[float]:
        raise RuntimeError("embedding service unavailable")


class _RaggedEmbedder(Embedder):
    dimension = 4

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [[1.0] * (2 + i) for i, _ in enumerate(texts)]

    def embed_query(self, text: str) -> list[float]:
        return [1.0, 1.0]


@pytest.mark.parametrize("strategy", list(ChunkingStrategy))
def test_chunking_is_deterministic(strategy: ChunkingStrategy) -> None:
    embedder = HashingEmbedder()

    first = chunk_and_embed(_HANDBOOK, strategy, embedder=embedder, document_id="handbook")
    second = chunk_and_embed(_HANDBOOK, strategy, embedder=embedder, document_id="handbook")

    assert first
    assert [(c.start_index, c.end_index) for c in first] == [(c.start_index, c.end_index) for c in second]
    assert [c.embedding for c in first] == [c.embedding for c in second]


@pytest.mark.parametrize(
    "strategy", [ChunkingStrategy.SENTENCE, ChunkingStrategy.PARAGRAPH, ChunkingStrategy.SEMANTIC]
)
def test_non_fixed_chunks_are_ordered_non_overlapping_slices(strategy: ChunkingStrategy) -> None:
    chunks = TextChunker().chunk(_HANDBOOK, strategy, document_id="handbook")

    for chunk in chunks:
        assert chunk.text == _HANDBOOK[chunk.start_index : chunk.end_index]
        assert chunk.token_count > 0
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.end_index <= current.start_index


def test_fixed_windows_overlap() -> None:
    content = "abcdefghij" * 10
    chunker = TextChunker(ChunkingConfig(chunk_size=20, chunk_overlap=5))

    chunks = chunker.chunk(content, ChunkingStrategy.FIXED)

    assert chunks[0].start_index == 0
    assert chunks[0].end_index == 20
    assert chunks[1].start_index == 15
    assert chunks[-1].end_index == len(content)
    assert all(chunk.text == content[chunk.start_index : chunk.end_index] for chunk in chunks)


def test_paragraph_strategy_splits_on_blank_lines() -> None:
    chunks = TextChunker().chunk("First paragraph.\n\nSecond paragraph.\n   \nThird.", ChunkingStrategy.PARAGRAPH)

    assert [chunk.text for chunk in chunks] == ["First paragraph.", "Second paragraph.", "Third."]


def test_sentence_strategy_groups_sentences() -> None:
    chunker = TextChunker(ChunkingConfig(sentences_per_chunk=2))

    chunks = chunker.chunk("One. Two! Three? Four.", ChunkingStrategy.SENTENCE)

    assert [chunk.text for chunk in chunks] == ["One. Two!", "Three? Four."]


def test_semantic_chunks_break_at_headings_and_topic_shifts() -> None:
    chunks = TextChunker().chunk(_HANDBOOK, ChunkingStrategy.SEMANTIC, document_id="handbook")
    texts = [chunk.text for chunk in chunks]

    assert texts[0].startswith("# Refunds")
    assert any(text.startswith("# Shipping") for text in texts)
    assert not any("Refunds are issued" in text and "Orders ship" in text for text in texts)
    assert texts[-1].startswith("Volcanic ash")


def test_semantic_chunks_respect_max_chars() -> None:
    content = " ".join(f"Sentence number {i} talks about refunds and shipping." for i in range(40))
    long_word = "x" * 180
    chunker = TextChunker(ChunkingConfig(max_chunk_chars=80))

    chunks = chunker.chunk(f"{content}\n\n{long_word}", ChunkingStrategy.SEMANTIC)

    assert len(chunks) > 1
    assert all(len(chunk.text) <= 80 for chunk in chunks)
    assert all(chunk.text == f"{content}\n\n{long_word}"[chunk.start_index : chunk.end_index] for chunk in chunks)


def test_chunk_ids_are_stable_and_embeddings_have_fixed_dimension() -> None:
    chunks = chunk_and_embed(
        _HANDBOOK, ChunkingStrategy.PARAGRAPH, embedder=HashingEmbedder(dimension=64), document_id="kb-1"
    )

    assert chunks[0].id == "kb-1-paragraph-0000"
    assert {len(chunk.embedding or []) for chunk in chunks} == {64}
    assert all(chunk.document_id == "kb-1" for chunk in chunks)


def test_empty_content_yields_no_chunks() -> None:
    assert chunk_and_embed("   \n\n  ", ChunkingStrategy.SEMANTIC, embedder=HashingEmbedder()) == []


def test_malformed_content_raises_chunking_error() -> None:
    with pytest.raises(ChunkingError):
        chunk_and_embed(b"bytes are not text", ChunkingStrategy.FIXED, embedder=HashingEmbedder())  # type: ignore[arg-type]

    with pytest.raises(ChunkingError):
        chunk_and_embed("text", "unknown-strategy", embedder=HashingEmbedder())


def test_embedding_failures_raise_chunking_error() -> None:
    with pytest.raises(ChunkingError):
        chunk_and_embed(_HANDBOOK, ChunkingStrategy.PARAGRAPH, embedder=_BrokenEmbedder())

    with pytest.raises(ChunkingError):
        chunk_and_embed(_HANDBOOK, ChunkingStrategy.PARAGRAPH, embedder=_RaggedEmbedder())


def test_overlap_must_be_below_chunk_size() -> None:
    with pytest.raises(ValueError):
        ChunkingConfig(chunk_size=100, chunk_overlap=100)
