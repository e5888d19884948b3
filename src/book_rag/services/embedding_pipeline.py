"""Embedding pipeline: cache validation, batched embedding, index feeding, persistence."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from book_rag.core.constants import MSG_INDEX_CHUNK
from book_rag.core.exceptions import AppException, CacheStaleError, OperationAbortedError
from book_rag.core.logging import get_logger
from book_rag.core.models import IndexingResult, IndexingStats, SemanticChunk, TextChunk
from book_rag.repositories.embedding_repository import EmbeddingItem, EmbeddingStore
from book_rag.schemas.messages import IndexChunkPayload
from book_rag.worker.channel import TaskChannelClient

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


class Embedder(Protocol):
    """Anything that turns a batch of texts into vectors."""

    async def embed(
        self,
        texts: Sequence[str],
        model: str | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[list[float]]: ...


@dataclass(frozen=True)
class IndexValidation:
    """Whether persisted vectors for a book can be reused."""

    valid: bool
    reason: str | None = None


class EmbeddingPipeline:
    """Produces a vector for every chunk of a book, preferring the cache."""

    def __init__(
        self,
        *,
        store: EmbeddingStore,
        embedder: Embedder,
        channel: TaskChannelClient,
        model: str,
        batch_size: int = 50,
        chunk_params: str | None = None,
        drain_timeout: float | None = None,
    ) -> None:
        if not 1 <= batch_size <= 2048:
            raise ValueError(f"batch_size must be within 1..2048, got {batch_size}")
        self._store = store
        self._embedder = embedder
        self._channel = channel
        self._model = model
        self._batch_size = batch_size
        self._chunk_params = chunk_params
        self._drain_timeout = drain_timeout

    async def validate_index(self, book_id: str) -> IndexValidation:
        """Check persisted vectors against the configured model and chunking.

        No record at all is vacuously valid. Dimension changes under the same
        model name are left to the vector index, which rejects them on insert.
        """
        meta = await self._store.get_embedding_meta(book_id)
        if meta is None:
            return IndexValidation(valid=True)

        if self._model and meta.model and meta.model != self._model:
            return IndexValidation(
                valid=False,
                reason=f"Model mismatch: index={meta.model}, config={self._model}",
            )

        if self._chunk_params and meta.chunk_params and meta.chunk_params != self._chunk_params:
            return IndexValidation(
                valid=False,
                reason=(
                    f"Chunking mismatch: index={meta.chunk_params}, config={self._chunk_params}"
                ),
            )

        return IndexValidation(valid=True)

    async def index_chunks_with_embeddings(
        self,
        chunks: Sequence[TextChunk],
        book_id: str,
        on_progress: ProgressCallback | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> IndexingResult:
        """Embed and index every chunk of a book.

        Cached vectors are reused; the rest are embedded in sequential batches,
        each persisted with a single write. Every vector is handed to the
        vector index as a one-way INDEX_CHUNK message.

        Args:
            chunks: Chunks of the book, in order.
            book_id: Book the chunks belong to.
            on_progress: Called with ``(processed, total)`` after each batch.
            abort: Optional signal that cancels the in-flight provider call.

        Returns:
            IndexingResult: Semantic chunks in input order, plus run statistics.

        Raises:
            ProviderError: The provider failed after its retry budget.
            DimensionMismatchError: The vector index rejected a vector.
            OperationAbortedError: ``abort`` fired.
            RemoteCrashedError: The vector index context faulted before every insert landed.
        """
        stats = IndexingStats(book_id=book_id, total_chunks=len(chunks))

        try:
            validation = await self.validate_index(book_id)
            if not validation.valid:
                stale = CacheStaleError(book_id, validation.reason or "unknown")
                logger.warning("%s. Clearing...", stale.message)
                await self._store.clear_embeddings(book_id)
                stats.cache_cleared = True
                stats.stale_reason = validation.reason

            persisted = await self._store.get_embeddings(book_id)
            logger.info(
                "Indexing book_id=%s: %s chunks, %s cached vectors",
                book_id,
                len(chunks),
                len(persisted),
            )

            semantic_chunks: list[SemanticChunk] = []
            uncached: list[tuple[int, TextChunk]] = []
            for position, chunk in enumerate(chunks):
                cached = persisted.get(chunk.id)
                if cached is None:
                    semantic_chunks.append(SemanticChunk.from_chunk(chunk))
                    uncached.append((position, chunk))
                    continue
                embedding = [float(v) for v in cached]
                semantic_chunks.append(SemanticChunk.from_chunk(chunk, embedding))
                self._send_to_index(chunk, embedding)
                stats.cached_chunks += 1

            self._raise_index_errors()

            cached_count = len(chunks) - len(uncached)
            for start in range(0, len(uncached), self._batch_size):
                batch = uncached[start : start + self._batch_size]
                if abort is not None and abort.is_set():
                    raise OperationAbortedError()
                texts = [chunk.content for _, chunk in batch]

                embeddings = await self._embedder.embed(texts, self._model, abort=abort)

                new_items: list[EmbeddingItem] = []
                for (position, chunk), embedding in zip(batch, embeddings, strict=True):
                    self._send_to_index(chunk, embedding)
                    semantic_chunks[position].embedding = embedding
                    new_items.append((chunk.id, embedding))

                await self._store.put_embeddings_batch(
                    book_id, new_items, self._model, self._chunk_params
                )
                stats.embedded_chunks += len(batch)
                stats.batches += 1

                if on_progress is not None:
                    on_progress(cached_count + start + len(batch), len(chunks))

                self._raise_index_errors()

            if not uncached and on_progress is not None:
                on_progress(len(chunks), len(chunks))

            await self._channel.drain(timeout=self._drain_timeout)
            self._raise_index_errors()

            logger.info(
                "Indexed book_id=%s: %s cached, %s embedded in %s batches",
                book_id,
                stats.cached_chunks,
                stats.embedded_chunks,
                stats.batches,
            )
            return IndexingResult(chunks=semantic_chunks, stats=stats)

        except Exception as exc:
            logger.error("Error indexing book_id=%s: %s", book_id, exc, exc_info=True)
            raise

    def _send_to_index(self, chunk: TextChunk, embedding: list[float]) -> None:
        self._channel.send(
            MSG_INDEX_CHUNK,
            IndexChunkPayload(id=chunk.id, content=chunk.content, embedding=embedding),
        )

    def _raise_index_errors(self) -> None:
        errors: list[AppException] = self._channel.take_send_errors()
        if errors:
            if len(errors) > 1:
                logger.error("Vector index rejected %s inserts", len(errors))
            raise errors[0]
