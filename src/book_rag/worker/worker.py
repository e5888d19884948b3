"""Entry point of the isolated vector index process."""

import os
import signal
from multiprocessing.connection import Connection

from book_rag.core.logging import get_logger, setup_logging
from book_rag.worker.processor import MessageProcessor

logger = get_logger(__name__)


def run_vector_worker(inbox: Connection, outbox: Connection, log_level: str | None = None) -> None:
    """Serve channel messages until the shutdown sentinel or a closed inbox.

    Each message is fully processed and answered before the next is read.

    Args:
        inbox: Receiving end for ``{id, type, payload}`` dictionaries; ``None`` stops the loop.
        outbox: Sending end for reply dictionaries.
        log_level: Optional logging level override for this process.
    """
    setup_logging(log_level)
    # The parent process owns shutdown; Ctrl+C must not kill the index mid-message.
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    processor = MessageProcessor()
    logger.info("Vector index context started (pid=%s)", os.getpid())

    try:
        while True:
            try:
                message = inbox.recv()
            except EOFError:
                logger.info("Inbox closed by parent, stopping")
                break

            if message is None:
                logger.info("Received shutdown sentinel")
                break

            outbox.send(processor.process(message))
    finally:
        outbox.close()
        inbox.close()
        logger.info("Vector index context stopped (%s entries dropped)", processor.index.count)
