# conftest.py
import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest_asyncio
from aiohttp import web

from book_rag.config import Settings


@dataclass
class ProviderStub:
    """Scripted stand-in for the provider proxy.

    ``responses`` is consumed front to back; once it is empty every call gets
    a well-formed reply with one small vector per input.
    """

    responses: list[tuple[int, Any]] = field(default_factory=list)
    requests: list[dict[str, Any]] = field(default_factory=list)
    headers: list[dict[str, str]] = field(default_factory=list)
    delay: float = 0.0
    stream_lines: list[str] = field(default_factory=list)
    base_url: str = ""

    async def embeddings(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append(body)
        self.headers.append(dict(request.headers))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            status, payload = self.responses.pop(0)
            if isinstance(payload, str):
                return web.Response(status=status, text=payload)
            return web.json_response(payload, status=status)
        data = [
            {"index": i, "embedding": [float(len(text)), float(i), 1.0]}
            for i, text in enumerate(body["input"])
        ]
        return web.json_response({"data": data})

    async def chat(self, request: web.Request) -> web.StreamResponse:
        body = await request.json()
        self.requests.append(body)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            status, payload = self.responses.pop(0)
            return web.Response(status=status, text=str(payload))

        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for line in self.stream_lines:
            await response.write(f"{line}\n".encode())
        await response.write_eof()
        return response


@pytest_asyncio.fixture
async def provider_stub():
    stub = ProviderStub()
    app = web.Application()
    app.router.add_post("/api/embeddings", stub.embeddings)
    app.router.add_post("/api/chat/completions", stub.chat)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    stub.base_url = f"http://{host}:{port}/api"
    try:
        yield stub
    finally:
        await runner.cleanup()


@pytest_asyncio.fixture
async def provider_settings(provider_stub: ProviderStub) -> Settings:
    return Settings(
        provider_base_url=provider_stub.base_url,
        provider_api_key="sk-test",
        provider_retry_base_delay=0.01,
        provider_timeout=5.0,
    )
