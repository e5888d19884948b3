"""Deterministic sliding-window chunking of chapter text."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from book_rag.core.logging import get_logger
from book_rag.core.models import Chapter, TextChunk

from .normalize_text import normalize_text

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 800
DEFAULT_OVERLAP = 100
MIN_CHAPTER_CHARS = 50


def chunk_id(chapter_id: str, index: int) -> str:
    """Stable id of the ``index``-th chunk of a chapter."""
    return f"{chapter_id}-chunk-{index}"


def chunk_params_fingerprint(chunk_size: int, overlap: int) -> str:
    """Identify the chunking parameters that produced a set of chunk ids."""
    return f"{chunk_size}:{overlap}"


def validate_chunk_params(chunk_size: int, overlap: int) -> None:
    """Reject parameters that would never advance the window.

    Raises:
        ValueError: If ``chunk_size <= 0`` or ``overlap`` is outside ``[0, chunk_size)``.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(
            f"overlap must satisfy 0 <= overlap < chunk_size, got overlap={overlap} "
            f"chunk_size={chunk_size}"
        )


def chunk_chapter(
    chapter: Chapter,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    min_chars: int = MIN_CHAPTER_CHARS,
) -> list[TextChunk]:
    """Split one chapter into overlapping windows, including the final partial one."""
    validate_chunk_params(chunk_size, overlap)

    plain_text = normalize_text(chapter.body)
    if len(plain_text) < min_chars:
        logger.debug(
            "Skipping chapter %s: %d chars after cleaning (< %d)",
            chapter.id,
            len(plain_text),
            min_chars,
        )
        return []

    step = chunk_size - overlap
    chunks: list[TextChunk] = []
    for index, start in enumerate(range(0, len(plain_text), step)):
        chunks.append(
            TextChunk(
                id=chunk_id(chapter.id, index),
                chapter_id=chapter.id,
                chapter_title=chapter.title,
                content=plain_text[start : start + chunk_size],
            )
        )
    return chunks


def chunk_book_content(
    chapters: Iterable[Chapter],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    min_chars: int = MIN_CHAPTER_CHARS,
) -> list[TextChunk]:
    """Chunk every chapter of a book, in chapter order.

    Args:
        chapters: Chapters with possibly-marked-up bodies.
        chunk_size: Window length in characters.
        overlap: Characters shared by consecutive windows of a chapter.
        min_chars: Chapters shorter than this after cleaning contribute no chunks.

    Returns:
        list[TextChunk]: Chunks with ids ``<chapterId>-chunk-<n>``.

    Raises:
        ValueError: If the chunking parameters are invalid.
    """
    validate_chunk_params(chunk_size, overlap)

    chunks: list[TextChunk] = []
    chapter_count = 0
    for chapter in chapters:
        chapter_count += 1
        chunks.extend(chunk_chapter(chapter, chunk_size, overlap, min_chars))

    logger.info(
        "Chunked %s chapters into %s chunks (chunk_size=%s, overlap=%s)",
        chapter_count,
        len(chunks),
        chunk_size,
        overlap,
    )
    return chunks


def chunk_chapter_map(chunks: Sequence[TextChunk]) -> dict[str, str]:
    """Map chunk ids to the id of the chapter they came from."""
    return {chunk.id: chunk.chapter_id for chunk in chunks}
