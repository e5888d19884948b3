"""End-to-end tests of the channel over the real transports."""

import asyncio
import multiprocessing
import signal

import pytest

from book_rag.core.constants import MSG_CLEAR, MSG_INDEX_CHUNK, MSG_SEARCH, MSG_SEARCH_RESULT
from book_rag.core.exceptions import DimensionMismatchError, RemoteCrashedError
from book_rag.schemas.messages import (
    ClearCompletePayload,
    IndexChunkPayload,
    SearchPayload,
    SearchResultPayload,
)
from book_rag.worker.channel import TaskChannelClient
from book_rag.worker.processor import MessageProcessor
from book_rag.worker.transport import LocalTransport, ProcessTransport
from book_rag.worker.worker import run_vector_worker


async def _index_and_search(channel: TaskChannelClient) -> SearchResultPayload:
    channel.send(MSG_INDEX_CHUNK, IndexChunkPayload(id="a", embedding=[1.0, 0.0, 0.0]))
    channel.send(MSG_INDEX_CHUNK, IndexChunkPayload(id="b", embedding=[0.0, 1.0, 0.0]))
    channel.send(MSG_INDEX_CHUNK, IndexChunkPayload(id="c", embedding=[0.9, 0.1, 0.0]))
    await channel.drain(timeout=10)
    return await channel.request(
        MSG_SEARCH,
        SearchPayload(query_embedding=[1.0, 0.0, 0.0], top_k=2),
        response_model=SearchResultPayload,
    )


@pytest.mark.asyncio
async def test_local_transport_round_trip(local_channel: TaskChannelClient):
    result = await _index_and_search(local_channel)

    assert [r.id for r in result.results] == ["a", "c"]
    assert result.results[0].score == pytest.approx(1.0, abs=1e-6)
    assert local_channel.get_queue_status().in_flight == 0


@pytest.mark.asyncio
async def test_local_transport_reports_dimension_mismatch(local_channel: TaskChannelClient):
    local_channel.send(MSG_INDEX_CHUNK, IndexChunkPayload(id="a", embedding=[1.0, 0.0, 0.0]))
    local_channel.send(MSG_INDEX_CHUNK, IndexChunkPayload(id="b", embedding=[1.0, 0.0]))
    await local_channel.drain(timeout=5)

    errors = local_channel.take_send_errors()
    assert len(errors) == 1
    assert isinstance(errors[0], DimensionMismatchError)

    cleared = await local_channel.request(MSG_CLEAR, response_model=ClearCompletePayload)
    assert cleared.success


@pytest.mark.asyncio
async def test_local_transport_fault_rejects_pending():
    class BrokenProcessor(MessageProcessor):
        def process(self, raw):
            raise RuntimeError("index corrupted")

    channel = TaskChannelClient(LocalTransport(BrokenProcessor()), timeout=5.0)
    try:
        with pytest.raises(RemoteCrashedError) as exc_info:
            await channel.request(MSG_SEARCH, SearchPayload(query_embedding=[1.0], top_k=1))
        assert "index corrupted" in exc_info.value.message
        assert channel.crashed
    finally:
        channel.terminate()


def test_worker_loop_serves_until_sentinel():
    inbox_reader, inbox_writer = multiprocessing.Pipe(duplex=False)
    outbox_reader, outbox_writer = multiprocessing.Pipe(duplex=False)

    inbox_writer.send(
        {"id": "fire_1", "type": MSG_INDEX_CHUNK, "payload": {"id": "a", "embedding": [1.0, 2.0]}}
    )
    inbox_writer.send(
        {
            "id": "req_2_x",
            "type": MSG_SEARCH,
            "payload": {"queryEmbedding": [1.0, 2.0], "topK": 5},
        }
    )
    inbox_writer.send(None)

    sigint = signal.getsignal(signal.SIGINT)
    try:
        run_vector_worker(inbox_reader, outbox_writer, "WARNING")
    finally:
        signal.signal(signal.SIGINT, sigint)

    first = outbox_reader.recv()
    second = outbox_reader.recv()
    assert first["id"] == "fire_1"
    assert first["payload"] == {"indexed": 1}
    assert second["id"] == "req_2_x"
    assert second["type"] == MSG_SEARCH_RESULT
    assert second["payload"]["results"][0]["id"] == "a"


@pytest.mark.asyncio
async def test_process_transport_round_trip():
    transport = ProcessTransport(log_level="WARNING", shutdown_timeout=5.0)
    channel = TaskChannelClient(transport, timeout=30.0)
    try:
        await channel.start()
        assert transport.pid is not None
        result = await _index_and_search(channel)
        assert [r.id for r in result.results] == ["a", "c"]
    finally:
        await channel.aclose()
    assert transport.pid is None


@pytest.mark.asyncio
async def test_process_transport_detects_killed_process():
    transport = ProcessTransport(log_level="WARNING")
    channel = TaskChannelClient(transport, timeout=30.0)
    try:
        await channel.start()
        pending = asyncio.create_task(channel.request(MSG_CLEAR))
        transport._process.kill()  # pyright: ignore[reportPrivateUsage, reportOptionalMemberAccess]

        with pytest.raises(RemoteCrashedError):
            await asyncio.wait_for(pending, 10)
    finally:
        channel.terminate()
