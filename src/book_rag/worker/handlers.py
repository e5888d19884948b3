"""Message handlers running inside the isolated vector index context."""

from typing import Any, Protocol

from book_rag.core.constants import (
    MSG_CLEAR,
    MSG_CLEAR_COMPLETE,
    MSG_INDEX_CHUNK,
    MSG_INDEX_COMPLETE,
    MSG_SEARCH,
    MSG_SEARCH_RESULT,
)
from book_rag.core.logging import get_logger
from book_rag.index.vector_index import VectorIndex
from book_rag.schemas.messages import (
    ClearCompletePayload,
    IndexChunkPayload,
    IndexCompletePayload,
    ScoredId,
    SearchPayload,
    SearchResultPayload,
)

logger = get_logger(__name__)


class MessageHandler(Protocol):
    """Protocol for message handlers."""

    def handle(self, payload: Any) -> tuple[str, dict[str, Any]]:
        """Handle a message payload.

        Args:
            payload: The raw message payload.

        Returns:
            tuple[str, dict[str, Any]]: (reply type, reply payload).
        """
        ...


class IndexChunkHandler:
    """Inserts one chunk vector into the index and acknowledges it."""

    def __init__(self, index: VectorIndex):
        self.index = index

    def handle(self, payload: Any) -> tuple[str, dict[str, Any]]:
        data = IndexChunkPayload.model_validate(payload)
        indexed = self.index.insert(data.id, data.embedding)
        return MSG_INDEX_COMPLETE, IndexCompletePayload(indexed=indexed).model_dump()


class SearchHandler:
    """Answers a top-K cosine similarity query."""

    def __init__(self, index: VectorIndex):
        self.index = index

    def handle(self, payload: Any) -> tuple[str, dict[str, Any]]:
        data = SearchPayload.model_validate(payload)
        ranked = self.index.search(data.query_embedding, data.top_k)
        logger.debug("Search over %s entries returned %s hits", self.index.count, len(ranked))
        result = SearchResultPayload(
            results=[ScoredId(id=chunk_id, score=score) for chunk_id, score in ranked]
        )
        return MSG_SEARCH_RESULT, result.model_dump()


class ClearHandler:
    """Empties the index and unlocks its dimension."""

    def __init__(self, index: VectorIndex):
        self.index = index

    def handle(self, payload: Any) -> tuple[str, dict[str, Any]]:
        dropped = self.index.count
        self.index.clear()
        logger.info("Cleared vector index (%s entries dropped)", dropped)
        return MSG_CLEAR_COMPLETE, ClearCompletePayload(success=True).model_dump()


class MessageHandlerRegistry:
    """Registry for message handlers."""

    def __init__(self, index: VectorIndex):
        """Initialize handler registry.

        Args:
            index: The vector index owned by this context.
        """
        self._handlers: dict[str, MessageHandler] = {
            MSG_INDEX_CHUNK: IndexChunkHandler(index),
            MSG_SEARCH: SearchHandler(index),
            MSG_CLEAR: ClearHandler(index),
        }

    def get_handler(self, message_type: str) -> MessageHandler | None:
        """Get handler for a message type.

        Args:
            message_type: The message type (e.g., "SEARCH").

        Returns:
            MessageHandler | None: The handler or None if not found.
        """
        return self._handlers.get(message_type)

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """Register a new handler.

        Args:
            message_type: The message type.
            handler: The handler instance.
        """
        self._handlers[message_type] = handler
        logger.info(f"Registered handler for message type: {message_type}")
