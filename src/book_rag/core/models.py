"""Domain models for chunks, cached embeddings and retrieval results."""

from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class Chapter:
    """A chapter of book text as handed to the chunker. The body may contain markup."""

    id: str
    title: str
    body: str


@dataclass(frozen=True)
class TextChunk:
    """An addressable slice of chapter text."""

    id: str
    chapter_id: str
    chapter_title: str
    content: str


@dataclass
class SemanticChunk:
    """A text chunk with its embedding, once known."""

    id: str
    chapter_id: str
    chapter_title: str
    content: str
    embedding: list[float] | None = None

    @classmethod
    def from_chunk(cls, chunk: TextChunk, embedding: list[float] | None = None) -> "SemanticChunk":
        return cls(
            id=chunk.id,
            chapter_id=chunk.chapter_id,
            chapter_title=chunk.chapter_title,
            content=chunk.content,
            embedding=embedding,
        )


@dataclass(frozen=True)
class EmbeddingRecord:
    """A persisted, int8-quantized embedding keyed by (book_id, chunk_id)."""

    book_id: str
    chunk_id: str
    embedding: np.ndarray
    scale: float
    model: str
    dimensions: int
    chunk_params: str | None = None


@dataclass(frozen=True)
class EmbeddingMeta:
    """Model identity and dimensionality recorded alongside a book's embeddings."""

    model: str | None
    dimensions: int | None
    chunk_params: str | None = None


@dataclass(frozen=True)
class RetrievalResult:
    """A chunk ranked against a query."""

    chunk: TextChunk | SemanticChunk
    score: float


@dataclass(frozen=True)
class QueueStatus:
    """Snapshot of the channel client's capacity usage."""

    in_flight: int
    queued: int


@dataclass(slots=True)
class IndexingStats:
    """Counters for one embedding pipeline run."""

    book_id: str
    total_chunks: int = 0
    cached_chunks: int = 0
    embedded_chunks: int = 0
    batches: int = 0
    cache_cleared: bool = False
    stale_reason: str | None = None


@dataclass
class IndexingResult:
    """Output of an embedding pipeline run."""

    chunks: list[SemanticChunk] = field(default_factory=list)
    stats: IndexingStats | None = None
