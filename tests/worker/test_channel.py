"""Tests for the task channel client, driven through an in-memory transport."""

import asyncio
from typing import Any

import pytest

from book_rag.core.constants import (
    ERR_DIMENSION_MISMATCH,
    ERR_WORKER_ERROR,
    MSG_ERROR,
    MSG_INDEX_CHUNK,
    MSG_INDEX_COMPLETE,
    MSG_SEARCH,
    MSG_SEARCH_RESULT,
)
from book_rag.core.exceptions import (
    ChannelClosedError,
    DimensionMismatchError,
    RemoteCrashedError,
    RemoteTaskError,
    RequestTimeoutError,
)
from book_rag.schemas.messages import SearchPayload, SearchResultPayload
from book_rag.worker.channel import TaskChannelClient

pytestmark = pytest.mark.asyncio


class FakeTransport:
    """Records posted messages; replies and faults are injected by the test."""

    def __init__(self):
        self.posted: list[dict[str, Any]] = []
        self.on_message = None
        self.on_error = None
        self.started = 0
        self.closed = 0

    def start(self, on_message, on_error) -> None:
        self.started += 1
        self.on_message = on_message
        self.on_error = on_error

    def post(self, message: dict[str, Any]) -> None:
        self.posted.append(message)

    def close(self) -> None:
        self.closed += 1

    async def aclose(self) -> None:
        self.close()

    def reply(self, message: dict[str, Any], type_: str, payload: Any = None, **extra) -> None:
        self.on_message({"id": message["id"], "type": type_, "payload": payload, **extra})

    def ack(self, message: dict[str, Any]) -> None:
        self.reply(message, MSG_INDEX_COMPLETE, {"indexed": 1})


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def channel(transport: FakeTransport):
    client = TaskChannelClient(transport, timeout=5.0, max_concurrent=10)
    yield client
    client.terminate()


async def _posted_request(channel: TaskChannelClient, *args, **kwargs) -> asyncio.Task:
    task = asyncio.create_task(channel.request(*args, **kwargs))
    await asyncio.sleep(0)
    return task


async def test_request_resolves_with_matching_reply(channel, transport):
    task = await _posted_request(
        channel,
        MSG_SEARCH,
        SearchPayload(query_embedding=[1.0, 0.0], top_k=3),
        response_model=SearchResultPayload,
    )

    message = transport.posted[0]
    assert message["type"] == MSG_SEARCH
    assert message["id"].startswith("req_1_")
    assert message["payload"] == {"queryEmbedding": [1.0, 0.0], "topK": 3}

    transport.reply(message, MSG_SEARCH_RESULT, {"results": [{"id": "c1", "score": 0.5}]})
    result = await task

    assert isinstance(result, SearchResultPayload)
    assert result.results[0].id == "c1"
    assert channel.get_queue_status().in_flight == 0


async def test_replies_are_matched_by_id_not_order(channel, transport):
    first = await _posted_request(channel, MSG_SEARCH, {"n": 1})
    second = await _posted_request(channel, MSG_SEARCH, {"n": 2})
    m1, m2 = transport.posted

    transport.reply(m2, MSG_SEARCH_RESULT, {"answer": 2})
    transport.reply(m1, MSG_SEARCH_RESULT, {"answer": 1})

    assert await first == {"answer": 1}
    assert await second == {"answer": 2}


async def test_transport_started_once_on_first_use(channel, transport):
    channel.send(MSG_INDEX_CHUNK, {"id": "a"})
    channel.send(MSG_INDEX_CHUNK, {"id": "b"})
    assert transport.started == 1


async def test_sends_beyond_capacity_queue_in_fifo_order(channel, transport):
    ids = [channel.send(MSG_INDEX_CHUNK, {"id": f"c{i}"}) for i in range(12)]

    assert len(transport.posted) == 10
    status = channel.get_queue_status()
    assert (status.in_flight, status.queued) == (10, 2)

    transport.ack(transport.posted[0])
    assert [m["id"] for m in transport.posted] == ids[:11]
    status = channel.get_queue_status()
    assert (status.in_flight, status.queued) == (10, 1)

    transport.ack(transport.posted[1])
    assert [m["id"] for m in transport.posted] == ids
    status = channel.get_queue_status()
    assert (status.in_flight, status.queued) == (10, 0)


async def test_in_flight_never_exceeds_ceiling(transport):
    client = TaskChannelClient(transport, max_concurrent=3)
    acked = 0
    for i in range(20):
        client.send(MSG_INDEX_CHUNK, {"id": f"c{i}"})
        assert len(transport.posted) - acked <= 3
        if i % 2:
            transport.ack(transport.posted[acked])
            acked += 1
            assert client.get_queue_status().in_flight <= 3
    while acked < len(transport.posted):
        transport.ack(transport.posted[acked])
        acked += 1
    assert len(transport.posted) == 20
    assert client.get_queue_status().in_flight == 0
    client.terminate()


async def test_timeout_rejects_and_reclaims_capacity(channel, transport):
    with pytest.raises(RequestTimeoutError) as exc_info:
        await channel.request(MSG_SEARCH, {}, timeout=0.01)

    assert exc_info.value.message_type == MSG_SEARCH
    assert "Worker request timeout: SEARCH" in exc_info.value.message
    assert channel.get_queue_status().in_flight == 0

    # A late reply for the abandoned request is ignored.
    transport.reply(transport.posted[0], MSG_SEARCH_RESULT, {})
    assert channel.get_queue_status().in_flight == 0


async def test_timeout_releases_slot_for_queued_send(transport):
    client = TaskChannelClient(transport, max_concurrent=1)
    task = await _posted_request(client, MSG_SEARCH, {}, timeout=0.01)
    client.send(MSG_INDEX_CHUNK, {"id": "queued"})
    assert client.get_queue_status().queued == 1

    with pytest.raises(RequestTimeoutError):
        await task

    assert [m["type"] for m in transport.posted] == [MSG_SEARCH, MSG_INDEX_CHUNK]
    assert client.get_queue_status().queued == 0
    client.terminate()


async def test_remote_crash_rejects_all_pending(channel, transport):
    first = await _posted_request(channel, MSG_SEARCH, {})
    second = await _posted_request(channel, MSG_SEARCH, {})
    for i in range(12):
        channel.send(MSG_INDEX_CHUNK, {"id": f"c{i}"})

    transport.on_error(RemoteCrashedError("Worker crashed (exit code -9)"))

    with pytest.raises(RemoteCrashedError):
        await first
    with pytest.raises(RemoteCrashedError):
        await second
    status = channel.get_queue_status()
    assert (status.in_flight, status.queued) == (0, 0)
    assert channel.crashed

    with pytest.raises(RemoteCrashedError):
        await channel.request(MSG_SEARCH, {})
    with pytest.raises(RemoteCrashedError):
        channel.send(MSG_INDEX_CHUNK, {})


async def test_dimension_mismatch_reply_raises_typed_error(channel, transport):
    task = await _posted_request(channel, MSG_SEARCH, {})
    transport.reply(
        transport.posted[0],
        MSG_ERROR,
        {"expected": 3, "actual": 2},
        error="Dimension mismatch: expected 3, got 2",
        code=ERR_DIMENSION_MISMATCH,
    )

    with pytest.raises(DimensionMismatchError) as exc_info:
        await task
    assert (exc_info.value.expected, exc_info.value.actual) == (3, 2)


async def test_other_error_reply_raises_remote_task_error(channel, transport):
    task = await _posted_request(channel, MSG_SEARCH, {})
    transport.reply(transport.posted[0], MSG_ERROR, None, error="boom", code=ERR_WORKER_ERROR)

    with pytest.raises(RemoteTaskError) as exc_info:
        await task
    assert exc_info.value.code == ERR_WORKER_ERROR
    assert exc_info.value.message == "boom"


async def test_send_errors_are_recorded_and_reported(transport):
    reported = []
    client = TaskChannelClient(transport, on_send_error=lambda mid, exc: reported.append(mid))
    message_id = client.send(MSG_INDEX_CHUNK, {"id": "c1"})
    transport.reply(
        transport.posted[0],
        MSG_ERROR,
        {"expected": 3, "actual": 2},
        error="Dimension mismatch: expected 3, got 2",
        code=ERR_DIMENSION_MISMATCH,
    )

    errors = client.take_send_errors()
    assert len(errors) == 1
    assert isinstance(errors[0], DimensionMismatchError)
    assert reported == [message_id]
    assert client.take_send_errors() == []
    assert client.get_queue_status().in_flight == 0
    client.terminate()


async def test_unmatched_reply_releases_capacity(channel, transport):
    channel.send(MSG_INDEX_CHUNK, {"id": "c1"})
    assert channel.get_queue_status().in_flight == 1

    transport.on_message({"id": "unknown", "type": MSG_INDEX_COMPLETE, "payload": None})
    assert channel.get_queue_status().in_flight == 0


async def test_drain_waits_for_idle(channel, transport):
    for i in range(3):
        channel.send(MSG_INDEX_CHUNK, {"id": f"c{i}"})

    drained = asyncio.create_task(channel.drain())
    await asyncio.sleep(0)
    assert not drained.done()

    for message in transport.posted:
        transport.ack(message)
    await asyncio.wait_for(drained, 1.0)


async def test_drain_timeout(channel, transport):
    channel.send(MSG_INDEX_CHUNK, {"id": "c1"})
    with pytest.raises(RequestTimeoutError):
        await channel.drain(timeout=0.01)


async def test_terminate_is_idempotent_and_rejects_pending(channel, transport):
    task = await _posted_request(channel, MSG_SEARCH, {})
    for i in range(11):
        channel.send(MSG_INDEX_CHUNK, {"id": f"c{i}"})

    channel.terminate()
    channel.terminate()

    with pytest.raises(ChannelClosedError):
        await task
    assert transport.closed == 1
    assert channel.closed
    status = channel.get_queue_status()
    assert (status.in_flight, status.queued) == (0, 0)

    with pytest.raises(ChannelClosedError):
        channel.send(MSG_INDEX_CHUNK, {})
    with pytest.raises(ChannelClosedError):
        await channel.request(MSG_SEARCH, {})


async def test_max_concurrent_must_be_positive(transport):
    with pytest.raises(ValueError):
        TaskChannelClient(transport, max_concurrent=0)


async def test_aclose_closes_transport_once(channel, transport):
    task = await _posted_request(channel, MSG_SEARCH, {})

    await channel.aclose()
    await channel.aclose()
    channel.terminate()

    with pytest.raises(ChannelClosedError):
        await task
    assert transport.closed == 1


async def test_drain_raises_when_context_crashes_while_waiting(channel, transport):
    for i in range(3):
        channel.send(MSG_INDEX_CHUNK, {"id": f"c{i}"})

    drained = asyncio.create_task(channel.drain(timeout=1.0))
    await asyncio.sleep(0)
    transport.ack(transport.posted[0])
    transport.on_error(RemoteCrashedError("Worker crashed (exit code -9)"))

    with pytest.raises(RemoteCrashedError):
        await drained


async def test_drain_raises_after_terminate(channel, transport):
    channel.send(MSG_INDEX_CHUNK, {"id": "c1"})
    channel.terminate()

    with pytest.raises(ChannelClosedError):
        await channel.drain()


async def test_discard_queued_keeps_in_flight_messages(transport):
    client = TaskChannelClient(transport, max_concurrent=2)
    for i in range(5):
        client.send(MSG_INDEX_CHUNK, {"id": f"c{i}"})
    assert client.get_queue_status().queued == 3

    assert client.discard_queued() == 3

    status = client.get_queue_status()
    assert (status.in_flight, status.queued) == (2, 0)
    for message in list(transport.posted):
        transport.ack(message)
    await asyncio.wait_for(client.drain(), 1.0)
    assert [m["payload"]["id"] for m in transport.posted] == ["c0", "c1"]
    client.terminate()
