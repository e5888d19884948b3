"""Message processor for the isolated vector index context."""

from typing import Any

from pydantic import ValidationError

from book_rag.core.constants import (
    ERR_DIMENSION_MISMATCH,
    ERR_INVALID_PAYLOAD,
    ERR_UNKNOWN_MESSAGE,
    ERR_WORKER_ERROR,
    MSG_ERROR,
)
from book_rag.core.exceptions import DimensionMismatchError
from book_rag.core.logging import get_logger
from book_rag.index.vector_index import VectorIndex
from book_rag.schemas.messages import ChannelMessage, ChannelResponse, DimensionMismatchDetail
from book_rag.worker.handlers import MessageHandlerRegistry

logger = get_logger(__name__)


class MessageProcessor:
    """Turns one inbound envelope into one reply envelope.

    Messages are processed strictly one at a time by whoever drives the
    processor, so the index it owns needs no locking.
    """

    def __init__(self, index: VectorIndex | None = None):
        """Initialize message processor.

        Args:
            index: Vector index to serve; a fresh one is created when omitted.
        """
        self.index = index or VectorIndex()
        self.handler_registry = MessageHandlerRegistry(self.index)

    def _validate_envelope(self, raw: dict[str, Any]) -> ChannelMessage | None:
        """Validate the outbound envelope.

        Args:
            raw: Message dictionary as received.

        Returns:
            ChannelMessage | None: Validated envelope or None if invalid.
        """
        try:
            return ChannelMessage.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Failed to validate message envelope: {e}")
            return None

    @staticmethod
    def _error(
        message_id: str, error: str, code: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return ChannelResponse(
            id=message_id, type=MSG_ERROR, payload=payload, error=error, code=code
        ).model_dump()

    def process(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Process a single message and build its reply.

        Args:
            raw: Message dictionary ``{id, type, payload}``.

        Returns:
            dict[str, Any]: Reply dictionary ``{id, type, payload, error, code}``.
        """
        message = self._validate_envelope(raw)
        if message is None:
            message_id = str(raw.get("id", "")) if isinstance(raw, dict) else ""
            return self._error(message_id, "Invalid message envelope", ERR_INVALID_PAYLOAD)

        handler = self.handler_registry.get_handler(message.type)
        if handler is None:
            logger.error(f"No handler found for message type: {message.type}")
            return self._error(
                message.id, f"Unknown message type: {message.type}", ERR_UNKNOWN_MESSAGE
            )

        try:
            reply_type, reply_payload = handler.handle(message.payload)
        except DimensionMismatchError as e:
            logger.warning("Rejected %s %s: %s", message.type, message.id, e.message)
            detail = DimensionMismatchDetail(expected=e.expected, actual=e.actual)
            return self._error(message.id, e.message, ERR_DIMENSION_MISMATCH, detail.model_dump())
        except ValidationError as e:
            logger.error(f"Invalid payload for {message.type} {message.id}: {e}")
            return self._error(message.id, f"Invalid payload: {e}", ERR_INVALID_PAYLOAD)
        except Exception as e:
            logger.error(
                f"Error processing message {message.id} (type: {message.type}): {e}",
                exc_info=True,
            )
            return self._error(message.id, str(e) or "Worker error", ERR_WORKER_ERROR)

        return ChannelResponse(id=message.id, type=reply_type, payload=reply_payload).model_dump()
