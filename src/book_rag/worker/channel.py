"""Correlated request/response and fire-and-forget client over a task channel.

The client hides the raw message boundary behind two operations:

* ``request()`` waits for the reply carrying the same correlation id, or
  fails with ``RequestTimeoutError`` when the deadline passes.
* ``send()`` never waits. It dispatches while fewer than ``max_concurrent``
  messages are in flight and queues FIFO otherwise; every completion drains
  the queue while capacity allows.

Replies are matched by id only. A reply with no pending entry (timed out,
abandoned, or the acknowledgement of a ``send()``) just releases capacity.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar, overload
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from book_rag.core.constants import ERR_DIMENSION_MISMATCH, FIRE_ID_PREFIX, REQUEST_ID_PREFIX
from book_rag.core.exceptions import (
    AppException,
    ChannelClosedError,
    ChannelError,
    DimensionMismatchError,
    RemoteCrashedError,
    RemoteTaskError,
    RequestTimeoutError,
)
from book_rag.core.logging import get_logger
from book_rag.core.models import QueueStatus
from book_rag.schemas.messages import ChannelMessage, ChannelResponse, DimensionMismatchDetail
from book_rag.worker.transport import Transport

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

SendErrorCallback = Callable[[str, AppException], None]


@dataclass(slots=True)
class _PendingRequest:
    message_type: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle


@dataclass(frozen=True, slots=True)
class _QueuedSend:
    id: str
    message_type: str
    payload: Any


def _crash_message(exc: BaseException) -> str:
    if isinstance(exc, RemoteCrashedError):
        return exc.message
    return f"Worker crashed: {exc}"


def _dump_payload(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(by_alias=True)
    return payload


class TaskChannelClient:
    """Client side of the channel to the isolated vector index context."""

    def __init__(
        self,
        transport: Transport,
        *,
        timeout: float = 30.0,
        max_concurrent: int = 10,
        on_send_error: SendErrorCallback | None = None,
    ):
        """Initialize the client.

        Args:
            transport: Message boundary to the isolated context.
            timeout: Default request timeout in seconds.
            max_concurrent: Ceiling on in-flight messages before ``send()`` queues.
            on_send_error: Optional callback for error replies to ``send()`` messages.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self._transport = transport
        self._default_timeout = timeout
        self._max_concurrent = max_concurrent
        self._on_send_error = on_send_error

        self._pending: dict[str, _PendingRequest] = {}
        self._queue: deque[_QueuedSend] = deque()
        self._in_flight = 0
        self._ids = itertools.count(1)
        self._send_errors: list[AppException] = []
        self._idle = asyncio.Event()
        self._idle.set()

        self._started = False
        self._closed = False
        self._remote_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the transport. Called implicitly by the first request or send."""
        self._ensure_started()

    def _ensure_started(self) -> None:
        if self._closed:
            raise ChannelClosedError()
        if self._remote_error is not None:
            raise RemoteCrashedError(_crash_message(self._remote_error))
        if not self._started:
            self._transport.start(self._handle_message, self._handle_remote_error)
            self._started = True

    def terminate(self) -> None:
        """Reject all outstanding work and close the transport. Idempotent."""
        if self._shut_down():
            self._transport.close()

    async def aclose(self) -> None:
        """Like ``terminate()``, but the transport is closed off the event loop."""
        if self._shut_down():
            await self._transport.aclose()

    def _shut_down(self) -> bool:
        if self._closed:
            return False
        self._closed = True

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ChannelClosedError())

        dropped = len(self._queue)
        self._queue.clear()
        self._in_flight = 0
        self._update_idle()

        logger.info(
            "Channel terminated (%s pending rejected, %s queued dropped)", len(pending), dropped
        )
        return True

    async def __aenter__(self) -> TaskChannelClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def crashed(self) -> bool:
        return self._remote_error is not None

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @overload
    async def request(
        self,
        message_type: str,
        payload: Any = None,
        *,
        timeout: float | None = None,
        response_model: None = None,
    ) -> Any: ...

    @overload
    async def request(
        self,
        message_type: str,
        payload: Any = None,
        *,
        timeout: float | None = None,
        response_model: type[T],
    ) -> T: ...

    async def request(
        self,
        message_type: str,
        payload: Any = None,
        *,
        timeout: float | None = None,
        response_model: type[T] | None = None,
    ) -> Any:
        """Send a message and wait for the reply with the same correlation id.

        Args:
            message_type: Message type, e.g. ``SEARCH``.
            payload: Message payload (pydantic models are dumped by alias).
            timeout: Per-call timeout in seconds; defaults to the client timeout.
            response_model: Optional model the reply payload is validated into.

        Returns:
            The reply payload, or an instance of ``response_model``.

        Raises:
            RequestTimeoutError: No reply arrived in time.
            RemoteCrashedError: The isolated context faulted.
            ChannelClosedError: The client was terminated.
            DimensionMismatchError: The context rejected a vector.
            RemoteTaskError: The context replied with any other error.
        """
        self._ensure_started()

        loop = asyncio.get_running_loop()
        message_id = f"{REQUEST_ID_PREFIX}_{next(self._ids)}_{uuid4().hex[:8]}"
        deadline = self._default_timeout if timeout is None else timeout

        future: asyncio.Future[Any] = loop.create_future()
        timer = loop.call_later(deadline, self._handle_timeout, message_id, deadline)
        self._pending[message_id] = _PendingRequest(message_type, future, timer)

        try:
            self._dispatch(message_id, message_type, _dump_payload(payload))
        except BaseException:
            timer.cancel()
            self._pending.pop(message_id, None)
            raise

        result = await future
        if response_model is not None:
            return response_model.model_validate(result)
        return result

    def send(self, message_type: str, payload: Any = None) -> str:
        """Fire-and-forget a message, queueing it when capacity is exhausted.

        Returns:
            str: The message id, which error replies will carry.
        """
        self._ensure_started()

        message_id = f"{FIRE_ID_PREFIX}_{next(self._ids)}"
        data = _dump_payload(payload)
        if self._in_flight < self._max_concurrent:
            self._dispatch(message_id, message_type, data)
        else:
            self._queue.append(_QueuedSend(message_id, message_type, data))
            self._update_idle()
        return message_id

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until nothing is in flight or queued.

        A fault or termination also empties the channel, so the wait ends
        with the matching error instead of returning as if the work landed.

        Raises:
            RequestTimeoutError: The channel did not go idle in time.
            RemoteCrashedError: The isolated context faulted.
            ChannelClosedError: The client was terminated.
        """
        if timeout is None:
            await self._idle.wait()
        else:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout)
            except TimeoutError as exc:
                raise RequestTimeoutError("drain", timeout) from exc

        if self._remote_error is not None:
            raise RemoteCrashedError(_crash_message(self._remote_error))
        if self._closed:
            raise ChannelClosedError()

    def discard_queued(self) -> int:
        """Drop one-way messages still waiting for capacity.

        Messages already handed to the transport are unaffected; ``drain()``
        waits for those.

        Returns:
            int: Number of messages dropped.
        """
        dropped = len(self._queue)
        self._queue.clear()
        self._update_idle()
        if dropped:
            logger.info("Discarded %s queued one-way messages", dropped)
        return dropped

    def take_send_errors(self) -> list[AppException]:
        """Return and forget the errors reported for ``send()`` messages."""
        errors, self._send_errors = self._send_errors, []
        return errors

    def get_queue_status(self) -> QueueStatus:
        return QueueStatus(in_flight=self._in_flight, queued=len(self._queue))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self, message_id: str, message_type: str, payload: Any) -> None:
        message = ChannelMessage(id=message_id, type=message_type, payload=payload).model_dump()
        self._in_flight += 1
        self._idle.clear()
        try:
            self._transport.post(message)
        except BaseException:
            self._in_flight = max(0, self._in_flight - 1)
            self._update_idle()
            raise

    def _process_queue(self) -> None:
        while self._queue and self._in_flight < self._max_concurrent:
            item = self._queue.popleft()
            try:
                self._dispatch(item.id, item.message_type, item.payload)
            except ChannelError as exc:
                logger.error(f"Failed to dispatch queued message {item.id}: {exc}")
                self._handle_remote_error(exc)
                return

    def _release(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        self._process_queue()
        self._update_idle()

    def _update_idle(self) -> None:
        if self._in_flight == 0 and not self._queue:
            self._idle.set()
        else:
            self._idle.clear()

    def _handle_timeout(self, message_id: str, timeout: float) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return

        self._release()
        logger.warning(
            "Request %s (%s) timed out after %.3fs", message_id, pending.message_type, timeout
        )
        if not pending.future.done():
            pending.future.set_exception(RequestTimeoutError(pending.message_type, timeout))

    def _handle_message(self, raw: dict[str, Any]) -> None:
        try:
            response = ChannelResponse.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Discarding malformed reply: {e}")
            self._release()
            return

        pending = self._pending.pop(response.id, None)
        if pending is None:
            self._release()
            if response.error is not None and response.id.startswith(FIRE_ID_PREFIX):
                exc = self._error_from_response(response)
                logger.warning("One-way message %s failed: %s", response.id, response.error)
                self._send_errors.append(exc)
                if self._on_send_error is not None:
                    self._on_send_error(response.id, exc)
            return

        pending.timer.cancel()
        self._release()

        if pending.future.done():
            return
        if response.error is not None:
            pending.future.set_exception(self._error_from_response(response))
        else:
            pending.future.set_result(response.payload)

    def _handle_remote_error(self, exc: BaseException) -> None:
        logger.error(f"Isolated context fault, rejecting all pending work: {exc}")
        self._remote_error = exc

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(RemoteCrashedError(_crash_message(exc)))

        self._queue.clear()
        self._in_flight = 0
        self._update_idle()

    @staticmethod
    def _error_from_response(response: ChannelResponse) -> AppException:
        message = response.error or "Worker error"
        if response.code == ERR_DIMENSION_MISMATCH:
            try:
                detail = DimensionMismatchDetail.model_validate(response.payload or {})
                return DimensionMismatchError(detail.expected, detail.actual)
            except ValidationError:
                pass
        return RemoteTaskError(message, code=response.code)
