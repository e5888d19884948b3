"""Embedding provider reached through the provider proxy's ``/embeddings`` route."""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from typing import Any

import aiohttp

from book_rag.config import Settings
from book_rag.core.exceptions import ProviderError
from book_rag.core.logging import get_logger
from book_rag.providers.http import ProviderClient

logger = get_logger(__name__)


class EmbeddingProvider:
    """Batched embedding calls with retry and malformed-reply detection."""

    def __init__(
        self,
        settings: Settings,
        session: aiohttp.ClientSession | None = None,
        client: ProviderClient | None = None,
    ):
        """Initialize the provider.

        Args:
            settings: Application settings.
            session: Optional aiohttp session (primarily for tests).
            client: Optional shared provider client.
        """
        self.settings = settings
        self.client = client or ProviderClient(settings, session=session)
        self.model = settings.embedding_model

    async def aclose(self) -> None:
        await self.client.aclose()

    async def embed(
        self,
        texts: Sequence[str],
        model: str | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[list[float]]:
        """Embed texts, splitting into calls of at most ``embedding_batch_limit`` inputs.

        Args:
            texts: Texts to embed; each is truncated to ``embedding_max_input_chars``.
            model: Embedding model; defaults to the configured one.
            abort: Optional signal that cancels the in-flight call.

        Returns:
            list[list[float]]: One vector per input text, in input order.

        Raises:
            ProviderError: The provider failed, or returned a malformed batch.
            OperationAbortedError: ``abort`` fired.
        """
        model = model or self.model
        limit = self.settings.embedding_batch_limit
        max_chars = self.settings.embedding_max_input_chars

        vectors: list[list[float]] = []
        for start in range(0, len(texts), limit):
            batch = [text[:max_chars] for text in texts[start : start + limit]]
            data = await self.client.post_json_with_retry(
                "/embeddings",
                {"model": model, "input": batch},
                abort=abort,
            )
            vectors.extend(self._parse_embeddings(data, expected=len(batch)))

        logger.debug("Embedded %s texts with model %s", len(texts), model)
        return vectors

    async def embed_query(
        self,
        text: str,
        model: str | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[float]:
        """Embed a single query text."""
        vectors = await self.embed([text], model, abort=abort)
        return vectors[0]

    @staticmethod
    def _parse_embeddings(data: Any, expected: int) -> list[list[float]]:
        """Validate a provider reply; any malformed entry fails the whole batch."""
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ProviderError("Malformed embedding response: missing 'data' list")
        if len(entries) != expected:
            raise ProviderError(
                f"Malformed embedding response: expected {expected} vectors, got {len(entries)}"
            )

        if all(isinstance(e, dict) and isinstance(e.get("index"), int) for e in entries):
            entries = sorted(entries, key=lambda e: e["index"])

        vectors: list[list[float]] = []
        dimension: int | None = None
        for position, entry in enumerate(entries):
            raw = entry.get("embedding") if isinstance(entry, dict) else None
            if not isinstance(raw, list) or not raw:
                raise ProviderError(f"Malformed embedding response: entry {position} has no vector")
            try:
                vector = [float(v) for v in raw]
            except (TypeError, ValueError) as exc:
                raise ProviderError(
                    f"Malformed embedding response: entry {position} is not numeric"
                ) from exc
            if not all(math.isfinite(v) for v in vector):
                raise ProviderError(f"Malformed embedding response: entry {position} is not finite")
            if dimension is None:
                dimension = len(vector)
            elif len(vector) != dimension:
                raise ProviderError(
                    f"Malformed embedding response: entry {position} has {len(vector)} "
                    f"dimensions, expected {dimension}"
                )
            vectors.append(vector)
        return vectors
