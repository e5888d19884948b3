"""Task channel to the isolated vector index context."""

from book_rag.worker.channel import TaskChannelClient
from book_rag.worker.processor import MessageProcessor
from book_rag.worker.transport import LocalTransport, ProcessTransport, Transport
from book_rag.worker.worker import run_vector_worker

__all__ = [
    # Client
    "TaskChannelClient",
    # Transports
    "LocalTransport",
    "ProcessTransport",
    "Transport",
    # Isolated context
    "MessageProcessor",
    "run_vector_worker",
]
