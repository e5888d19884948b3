"""Streaming chat completions through the provider proxy."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import asdict, dataclass
from typing import Literal

import aiohttp

from book_rag.config import Settings
from book_rag.core.exceptions import ProviderError
from book_rag.core.logging import get_logger
from book_rag.providers.http import ProviderClient, is_retryable_status, run_abortable

logger = get_logger(__name__)

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class StreamChunk:
    """One streamed delta, answer text and reasoning text kept apart."""

    content: str
    reasoning: str


def parse_sse_line(line: str) -> StreamChunk | None:
    """Parse one server-sent-events line into a chunk.

    Returns None for keep-alives, the ``[DONE]`` marker, unparsable lines and
    deltas that carry neither content nor reasoning.
    """
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    data = line[len(SSE_DATA_PREFIX) :]
    if data == SSE_DONE:
        return None

    try:
        event = json.loads(data)
        delta = (event.get("choices") or [{}])[0].get("delta") or {}
    except (json.JSONDecodeError, AttributeError, IndexError, TypeError):
        logger.debug("Ignoring unparsable stream line: %s", line[:80])
        return None

    chunk = StreamChunk(
        content=delta.get("content") or "",
        reasoning=delta.get("reasoning_content") or "",
    )
    if not chunk.content and not chunk.reasoning:
        return None
    return chunk


class ChatProvider:
    """Consumer-facing streaming chat client; retrieval results feed its prompts."""

    def __init__(
        self,
        settings: Settings,
        session: aiohttp.ClientSession | None = None,
        client: ProviderClient | None = None,
    ):
        self.settings = settings
        self.client = client or ProviderClient(settings, session=session)
        self.model = settings.chat_model

    async def aclose(self) -> None:
        await self.client.aclose()

    async def stream_completion(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion.

        Args:
            messages: Conversation so far.
            model: Chat model; defaults to the configured one.
            abort: Optional signal that stops the stream.

        Yields:
            StreamChunk: Non-empty deltas in arrival order.

        Raises:
            ProviderError: The request failed or the proxy answered with an error status.
            OperationAbortedError: ``abort`` fired.
        """
        body = {
            "model": model or self.model,
            "messages": [asdict(message) for message in messages],
            "stream": True,
        }
        url = f"{self.client.base_url}/chat/completions"

        try:
            async with self.client.session().post(
                url, json=body, headers=self.client.headers
            ) as response:
                if response.status >= 400:
                    detail = (await response.text())[:200]
                    raise ProviderError(
                        f"API Error: {response.status} - {detail}",
                        status=response.status,
                        retryable=is_retryable_status(response.status),
                    )

                while True:
                    raw = await run_abortable(response.content.readline(), abort)
                    if not raw:
                        break
                    line = raw.decode("utf-8", errors="replace")
                    if line.strip() == f"{SSE_DATA_PREFIX}{SSE_DONE}":
                        break
                    chunk = parse_sse_line(line)
                    if chunk is not None:
                        yield chunk
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.error(f"Stream error: {exc}")
            raise ProviderError(f"Chat request failed: {exc!r}", retryable=True) from exc
