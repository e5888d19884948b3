"""Shared HTTP plumbing for provider calls: session, retry with backoff, abort."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable
from contextlib import suppress
from typing import Any, TypeVar

import aiohttp

from book_rag.config import Settings
from book_rag.core.exceptions import OperationAbortedError, ProviderError
from book_rag.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable_status(status: int) -> bool:
    """Server errors and rate limits are retried; other 4xx are returned at once."""
    return status >= 500 or status == 429


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Exponential backoff ``base * 2^attempt`` plus up to ``base`` of jitter."""
    return base_delay * (2**attempt) + random.uniform(0, base_delay)


async def run_abortable(aw: Awaitable[T], abort: asyncio.Event | None) -> T:
    """Await ``aw`` unless ``abort`` is set first.

    Raises:
        OperationAbortedError: The abort signal fired before ``aw`` finished.
    """
    task = asyncio.ensure_future(aw)
    if abort is None:
        return await task
    if abort.is_set():
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise OperationAbortedError()

    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not waiter.done():
            waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise OperationAbortedError()


class ProviderClient:
    """Owns the aiohttp session used to reach the provider proxy."""

    def __init__(self, settings: Settings, session: aiohttp.ClientSession | None = None):
        """Initialize the client.

        Args:
            settings: Application settings.
            session: Optional preconfigured session (primarily for tests).
        """
        self.settings = settings
        self.base_url = settings.provider_base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.provider_api_key:
            headers["Authorization"] = f"Bearer {self.settings.provider_api_key}"
        return headers

    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.provider_timeout)
            )
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        """Close the session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def post_json_with_retry(
        self,
        path: str,
        body: dict[str, Any],
        *,
        abort: asyncio.Event | None = None,
    ) -> Any:
        """POST a JSON body, retrying transient failures with exponential backoff.

        Retries network errors, 5xx and 429 up to ``provider_max_attempts``
        attempts in total. Any other 4xx fails immediately.

        Raises:
            ProviderError: The call failed; ``retryable`` tells whether it was transient.
            OperationAbortedError: The abort signal fired.
        """
        url = f"{self.base_url}{path}"
        max_attempts = self.settings.provider_max_attempts
        base_delay = self.settings.provider_retry_base_delay
        last_error: ProviderError | None = None

        for attempt in range(max_attempts):
            try:
                return await run_abortable(self._post_once(url, body), abort)
            except ProviderError as exc:
                if not exc.retryable:
                    raise
                last_error = exc

            if attempt + 1 < max_attempts:
                delay = backoff_delay(attempt, base_delay)
                logger.warning(
                    "Provider call to %s failed (attempt %s/%s): %s; retrying in %.2fs",
                    path,
                    attempt + 1,
                    max_attempts,
                    last_error,
                    delay,
                )
                await run_abortable(asyncio.sleep(delay), abort)

        logger.error("Provider call to %s failed after %s attempts", path, max_attempts)
        assert last_error is not None
        raise last_error

    async def _post_once(self, url: str, body: dict[str, Any]) -> Any:
        try:
            async with self.session().post(url, json=body, headers=self.headers) as response:
                if response.status < 400:
                    try:
                        return await response.json(content_type=None)
                    except ValueError as exc:
                        raise ProviderError(
                            f"Malformed provider response: {exc}", status=response.status
                        ) from exc

                detail = (await response.text())[:200]
                raise ProviderError(
                    f"Provider API Error: {response.status} - {detail}",
                    status=response.status,
                    retryable=is_retryable_status(response.status),
                )
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ProviderError(f"Provider request failed: {exc!r}", retryable=True) from exc
