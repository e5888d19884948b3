"""Lifetime-scoped owner of the providers, cache, and vector index channel."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence

from book_rag.config import Settings
from book_rag.core.exceptions import ChannelError, NotFoundException, ProviderError
from book_rag.core.logging import get_logger
from book_rag.core.models import (
    Chapter,
    IndexingResult,
    QueueStatus,
    RetrievalResult,
    SemanticChunk,
    TextChunk,
)
from book_rag.providers.chat import ChatMessage, ChatProvider, StreamChunk
from book_rag.providers.embedding import EmbeddingProvider
from book_rag.providers.http import ProviderClient
from book_rag.repositories.embedding_repository import EmbeddingStore, SQLiteEmbeddingRepository
from book_rag.services.embedding_pipeline import EmbeddingPipeline, ProgressCallback
from book_rag.services.search_service import (
    SearchService,
    build_system_prompt,
    format_context,
    keyword_search,
)
from book_rag.text_processing.chunker import chunk_book_content, chunk_params_fingerprint
from book_rag.worker.channel import TaskChannelClient
from book_rag.worker.transport import LocalTransport, ProcessTransport, Transport

logger = get_logger(__name__)

TransportFactory = Callable[[], Transport]


class RagSession:
    """One reading session: a single book at a time in the vector index.

    The session builds its channel lazily and rebuilds it when the isolated
    context has crashed or been terminated. A rebuilt context starts empty,
    so the active book must be indexed again before it can be searched.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: EmbeddingStore | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        chat_provider: ChatProvider | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        """Initialize the session.

        Args:
            settings: Application settings.
            store: Embedding cache; defaults to SQLite at ``embedding_db_path``.
            embedding_provider: Optional preconfigured embedding provider.
            chat_provider: Optional preconfigured chat provider.
            transport_factory: Builds the transport for each new channel;
                defaults to the one selected by ``worker_mode``.
        """
        self.settings = settings
        self._owns_store = store is None
        self.store: EmbeddingStore = store or SQLiteEmbeddingRepository(settings.embedding_db_path)

        self._client: ProviderClient | None = None
        if embedding_provider is None or chat_provider is None:
            self._client = ProviderClient(settings)
        self.embedding_provider = embedding_provider or EmbeddingProvider(
            settings, client=self._client
        )
        self.chat_provider = chat_provider or ChatProvider(settings, client=self._client)

        self._transport_factory = transport_factory or self._default_transport
        self._channel: TaskChannelClient | None = None
        self._search_service: SearchService | None = None

        self._active_book_id: str | None = None
        self._active_chunks: list[SemanticChunk] = []
        self._index_dirty = False
        self._index_lock = asyncio.Lock()

    def _default_transport(self) -> Transport:
        if self.settings.worker_mode == "process":
            return ProcessTransport(
                log_level=self.settings.log_level,
                shutdown_timeout=self.settings.worker_shutdown_timeout,
            )
        return LocalTransport()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._ensure_channel().start()
        logger.info(f"RAG session started (worker_mode={self.settings.worker_mode})")

    async def aclose(self) -> None:
        if self._channel is not None:
            await self._channel.aclose()
            self._channel = None
            self._search_service = None

        await self.embedding_provider.aclose()
        await self.chat_provider.aclose()

        if self._owns_store and isinstance(self.store, SQLiteEmbeddingRepository):
            self.store.close()
        logger.info("RAG session closed")

    async def __aenter__(self) -> RagSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _ensure_channel(self) -> TaskChannelClient:
        channel = self._channel
        if channel is not None and not channel.closed and not channel.crashed:
            return channel

        if channel is not None:
            logger.warning("Vector index channel is down, starting a fresh context")
            channel.terminate()

        channel = TaskChannelClient(
            self._transport_factory(),
            timeout=self.settings.channel_timeout,
            max_concurrent=self.settings.channel_max_concurrent,
        )
        self._channel = channel
        self._search_service = SearchService(
            self.embedding_provider,
            channel,
            search_timeout=self.settings.search_timeout,
            default_top_k=self.settings.search_top_k,
        )
        self._active_book_id = None
        self._active_chunks = []
        self._index_dirty = False
        return channel

    def _search(self) -> SearchService:
        self._ensure_channel()
        assert self._search_service is not None
        return self._search_service

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @property
    def active_book_id(self) -> str | None:
        return self._active_book_id

    @property
    def active_chunks(self) -> list[SemanticChunk]:
        return list(self._active_chunks)

    async def chunk_book(self, chapters: Sequence[Chapter]) -> list[TextChunk]:
        """Chunk a book off the event loop with the configured parameters."""
        return await asyncio.to_thread(
            chunk_book_content,
            list(chapters),
            self.settings.chunk_size,
            self.settings.chunk_overlap,
            self.settings.min_chapter_chars,
        )

    async def index_book(
        self,
        book_id: str,
        chapters: Sequence[Chapter],
        on_progress: ProgressCallback | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> IndexingResult:
        """Chunk, embed and index a book, replacing whatever the index held.

        Args:
            book_id: Book identifier used as the cache key.
            chapters: Chapters of the book.
            on_progress: Called with ``(processed, total)`` after each batch.
            abort: Optional signal that cancels in-flight provider calls.

        Returns:
            IndexingResult: Semantic chunks and run statistics.
        """
        async with self._index_lock:
            chunks = await self.chunk_book(chapters)
            search = self._search()
            channel = search.channel

            if self._index_dirty:
                await self._settle(channel)
                await search.clear_index()
            self._active_book_id = None
            self._active_chunks = []
            self._index_dirty = True

            pipeline = EmbeddingPipeline(
                store=self.store,
                embedder=self.embedding_provider,
                channel=channel,
                model=self.settings.embedding_model,
                batch_size=self.settings.embedding_batch_size,
                chunk_params=chunk_params_fingerprint(
                    self.settings.chunk_size, self.settings.chunk_overlap
                ),
                drain_timeout=self.settings.channel_timeout,
            )
            try:
                result = await pipeline.index_chunks_with_embeddings(
                    chunks, book_id, on_progress, abort=abort
                )
            except Exception:
                await self._settle_after_failure(channel)
                raise

            self._active_book_id = book_id
            self._active_chunks = result.chunks
            return result

    async def _settle(self, channel: TaskChannelClient) -> None:
        """Drop inserts a failed run left queued and wait for the ones in flight.

        CLEAR is a request, so it overtakes one-way messages still queued.
        """
        channel.discard_queued()
        await channel.drain(timeout=self.settings.channel_timeout)
        stale = channel.take_send_errors()
        if stale:
            logger.warning(f"Ignoring {len(stale)} index errors from an earlier run")

    async def _settle_after_failure(self, channel: TaskChannelClient) -> None:
        try:
            await self._settle(channel)
        except ChannelError as exc:
            logger.warning(f"Vector index did not settle after a failed run: {exc}")

    async def search(
        self,
        book_id: str,
        query: str,
        top_k: int | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[RetrievalResult]:
        """Search the active book.

        Semantic search is tried first. When the vector index or the
        embedding provider fails, the same chunks are ranked by keyword
        overlap instead, so a reader still gets passages.

        Raises:
            NotFoundException: ``book_id`` is not the book currently indexed.
            OperationAbortedError: ``abort`` fired.
        """
        search = self._search()
        if self._active_book_id != book_id:
            raise NotFoundException(f"Book {book_id} is not indexed in this session")

        chunks = self._active_chunks
        try:
            return await search.semantic_search(query, chunks, top_k, abort=abort)
        except (ChannelError, ProviderError) as exc:
            logger.warning(f"Semantic search failed, falling back to keywords: {exc}")
            k = self.settings.search_top_k if top_k is None else top_k
            return keyword_search(query, chunks, k)

    async def answer(
        self,
        book_id: str,
        question: str,
        *,
        book_title: str | None = None,
        history: Sequence[ChatMessage] = (),
        top_k: int | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream an answer grounded in passages retrieved from the active book.

        Args:
            book_id: Book currently indexed.
            question: The reader's question.
            book_title: Title used in the system prompt; defaults to ``book_id``.
            history: Earlier turns of the conversation.
            top_k: Number of passages to retrieve.
            abort: Optional signal that stops retrieval and the stream.

        Yields:
            StreamChunk: Answer deltas from the chat provider.
        """
        results = await self.search(book_id, question, top_k, abort=abort)
        messages = [
            ChatMessage(
                role="system",
                content=build_system_prompt(book_title or book_id, format_context(results)),
            ),
            *history,
            ChatMessage(role="user", content=question),
        ]
        async for chunk in self.chat_provider.stream_completion(messages, abort=abort):
            yield chunk

    async def clear_index(self) -> bool:
        """Empty the vector index without touching the cache."""
        async with self._index_lock:
            cleared = await self._search().clear_index()
            self._active_book_id = None
            self._active_chunks = []
            self._index_dirty = False
            return cleared

    async def delete_book_embeddings(self, book_id: str) -> None:
        """Drop a book's cached vectors, and its index entries if it is active."""
        await self.store.clear_embeddings(book_id)
        if self._active_book_id == book_id:
            await self.clear_index()
        logger.info(f"Deleted embeddings for book {book_id}")

    def queue_status(self) -> QueueStatus:
        if self._channel is None:
            return QueueStatus(in_flight=0, queued=0)
        return self._channel.get_queue_status()
