"""Message-passing boundaries between the caller and the vector index context."""

from __future__ import annotations

import asyncio
import multiprocessing
import threading
from collections.abc import Callable
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from typing import Any, Protocol

from book_rag.core.exceptions import ChannelClosedError, RemoteCrashedError
from book_rag.core.logging import get_logger
from book_rag.worker.processor import MessageProcessor
from book_rag.worker.worker import run_vector_worker

logger = get_logger(__name__)

OnMessage = Callable[[dict[str, Any]], None]
OnError = Callable[[BaseException], None]


class Transport(Protocol):
    """Raw asynchronous channel to an isolated context.

    ``on_message`` and ``on_error`` are always invoked on the event loop thread.
    """

    def start(self, on_message: OnMessage, on_error: OnError) -> None:
        """Start the context. Must be called from a running event loop."""
        ...

    def post(self, message: dict[str, Any]) -> None:
        """Deliver a message without waiting for it to be handled."""
        ...

    def close(self) -> None:
        """Tear the context down. Safe to call more than once."""
        ...

    async def aclose(self) -> None:
        """Tear the context down without blocking the event loop."""
        ...


class LocalTransport:
    """Runs the context as a single asyncio task fed by an inbox queue.

    Each message is handled on a worker thread so numeric work never blocks
    the event loop; the task awaits one message at a time, which keeps
    handling strictly sequential.
    """

    def __init__(self, processor: MessageProcessor | None = None):
        self.processor = processor or MessageProcessor()
        self._inbox: asyncio.Queue[dict[str, Any]] | None = None
        self._task: asyncio.Task[None] | None = None
        self._on_message: OnMessage | None = None
        self._on_error: OnError | None = None

    def start(self, on_message: OnMessage, on_error: OnError) -> None:
        if self._task is not None:
            return
        self._on_message = on_message
        self._on_error = on_error
        self._inbox = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="vector-index-context"
        )
        logger.info("Local vector index context started")

    async def _run(self) -> None:
        assert self._inbox is not None and self._on_message is not None
        try:
            while True:
                message = await self._inbox.get()
                reply = await asyncio.to_thread(self.processor.process, message)
                self._on_message(reply)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Vector index context crashed: {exc}", exc_info=True)
            self._task = None
            self._inbox = None
            if self._on_error is not None:
                self._on_error(RemoteCrashedError(f"Worker crashed: {exc}"))

    def post(self, message: dict[str, Any]) -> None:
        if self._inbox is None:
            raise ChannelClosedError("Vector index context is not running")
        self._inbox.put_nowait(message)

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Local vector index context stopped")
        self._inbox = None

    async def aclose(self) -> None:
        self.close()


class ProcessTransport:
    """Runs the context in a separate OS process connected by two one-way pipes.

    A reader thread blocks on the reply pipe and hands every reply to the
    event loop. End-of-file on that pipe while the transport is open means
    the process died, which is reported as a fatal fault.
    """

    def __init__(
        self,
        log_level: str | None = None,
        shutdown_timeout: float = 5.0,
        start_method: str = "spawn",
    ):
        self._log_level = log_level
        self._shutdown_timeout = shutdown_timeout
        self._start_method = start_method
        self._process: BaseProcess | None = None
        self._inbox_writer: Connection | None = None
        self._outbox_reader: Connection | None = None
        self._reader: threading.Thread | None = None
        self._closing = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def start(self, on_message: OnMessage, on_error: OnError) -> None:
        if self._process is not None:
            return

        loop = asyncio.get_running_loop()
        ctx = multiprocessing.get_context(self._start_method)
        inbox_reader, self._inbox_writer = ctx.Pipe(duplex=False)
        self._outbox_reader, outbox_writer = ctx.Pipe(duplex=False)

        self._closing = False
        self._process = ctx.Process(
            target=run_vector_worker,
            args=(inbox_reader, outbox_writer, self._log_level),
            name="vector-index-context",
            daemon=True,
        )
        self._process.start()

        # Drop the parent's copies of the child's ends so a dead child yields EOF.
        inbox_reader.close()
        outbox_writer.close()

        self._reader = threading.Thread(
            target=self._read_loop,
            args=(loop, self._outbox_reader, on_message, on_error),
            name="vector-index-reader",
            daemon=True,
        )
        self._reader.start()
        logger.info("Vector index process started (pid=%s)", self._process.pid)

    def _read_loop(
        self,
        loop: asyncio.AbstractEventLoop,
        outbox: Connection,
        on_message: OnMessage,
        on_error: OnError,
    ) -> None:
        while True:
            try:
                reply = outbox.recv()
            except (EOFError, OSError):
                break
            try:
                loop.call_soon_threadsafe(on_message, reply)
            except RuntimeError:
                # Event loop already closed.
                return

        if self._closing:
            return

        exitcode = None
        if self._process is not None:
            self._process.join(timeout=1.0)
            exitcode = self._process.exitcode
        logger.error("Vector index process exited unexpectedly (exit code %s)", exitcode)
        try:
            loop.call_soon_threadsafe(
                on_error, RemoteCrashedError(f"Worker crashed (exit code {exitcode})")
            )
        except RuntimeError:
            pass

    def post(self, message: dict[str, Any]) -> None:
        if self._inbox_writer is None or self._closing:
            raise ChannelClosedError("Vector index process is not running")
        try:
            self._inbox_writer.send(message)
        except (BrokenPipeError, OSError) as exc:
            raise RemoteCrashedError(f"Worker crashed: {exc}") from exc

    def close(self) -> None:
        if self._process is None:
            return
        self._closing = True
        process = self._process

        if self._inbox_writer is not None:
            try:
                self._inbox_writer.send(None)
            except OSError:
                pass

        process.join(timeout=self._shutdown_timeout)
        if process.is_alive():
            logger.warning("Shutdown timeout reached, terminating vector index process")
            process.terminate()
            process.join(timeout=1.0)

        if self._reader is not None:
            self._reader.join(timeout=1.0)

        for conn in (self._inbox_writer, self._outbox_reader):
            if conn is not None:
                conn.close()

        self._process = None
        self._inbox_writer = None
        self._outbox_reader = None
        self._reader = None
        logger.info("Vector index process stopped (exit code %s)", process.exitcode)

    async def aclose(self) -> None:
        # Joining the process and reader thread blocks for up to shutdown_timeout.
        await asyncio.to_thread(self.close)
