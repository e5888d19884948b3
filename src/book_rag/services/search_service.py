"""Search service: semantic lookup in the isolated vector index, keyword fallback, LLM context."""

import asyncio
import re
from collections.abc import Sequence

from book_rag.core.constants import MSG_CLEAR, MSG_SEARCH
from book_rag.core.logging import get_logger
from book_rag.core.models import RetrievalResult, SemanticChunk, TextChunk
from book_rag.providers.embedding import EmbeddingProvider
from book_rag.schemas.messages import ClearCompletePayload, SearchPayload, SearchResultPayload
from book_rag.worker.channel import TaskChannelClient

logger = get_logger(__name__)

# Kana, CJK ideographs and Hangul are matched one character at a time;
# every other run of letters and digits is one token.
_CJK = r"\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af"
_TOKEN_PATTERN = re.compile(rf"[{_CJK}]|[^\W_{_CJK}]+")

NO_CONTEXT = "No relevant content found."


class SearchService:
    """Service for semantic search operations."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        channel: TaskChannelClient,
        *,
        search_timeout: float | None = None,
        default_top_k: int = 5,
    ):
        """Initialize search service.

        Args:
            provider: Embedding provider used for query vectors.
            channel: Client of the vector index context.
            search_timeout: Request timeout for SEARCH; defaults to the channel's.
            default_top_k: Result count when the caller does not give one.
        """
        self.provider = provider
        self.channel = channel
        self.search_timeout = search_timeout
        self.default_top_k = default_top_k

    async def semantic_search(
        self,
        query: str,
        chunks: Sequence[TextChunk | SemanticChunk],
        top_k: int | None = None,
        timeout: float | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[RetrievalResult]:
        """Rank the caller's chunks against a query.

        Args:
            query: Free-text query.
            chunks: Chunks the returned ids are resolved against.
            top_k: Maximum number of results.
            timeout: SEARCH request timeout in seconds.
            abort: Optional signal that cancels the query embedding call.

        Returns:
            list[RetrievalResult]: Best first. Ids the index returns that are
            not among ``chunks`` are dropped.
        """
        k = self.default_top_k if top_k is None else top_k
        query_embedding = await self.provider.embed_query(query, abort=abort)

        reply = await self.channel.request(
            MSG_SEARCH,
            SearchPayload(query_embedding=query_embedding, top_k=k),
            timeout=timeout if timeout is not None else self.search_timeout,
            response_model=SearchResultPayload,
        )

        by_id = {chunk.id: chunk for chunk in chunks}
        results: list[RetrievalResult] = []
        for hit in reply.results:
            chunk = by_id.get(hit.id)
            if chunk is None:
                logger.debug(f"Dropping search hit {hit.id} not in the chunk list")
                continue
            results.append(RetrievalResult(chunk=chunk, score=hit.score))

        logger.info(f"Search returned {len(results)} results (top_k={k})")
        return results

    async def clear_index(self, timeout: float | None = None) -> bool:
        """Empty the vector index and unlock its dimension."""
        reply = await self.channel.request(
            MSG_CLEAR,
            timeout=timeout,
            response_model=ClearCompletePayload,
        )
        logger.info("Vector index cleared")
        return reply.success


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens of ``text``, punctuation and spaces dropped."""
    return _TOKEN_PATTERN.findall(text.lower())


def keyword_search(
    query: str,
    chunks: Sequence[TextChunk | SemanticChunk],
    top_k: int = 10,
) -> list[RetrievalResult]:
    """Rank chunks by word overlap with the query, without embeddings.

    The score is the number of chunk tokens that appear in the query,
    divided by the number of distinct query tokens. Chunks without any
    match are left out; equal scores keep the chunk order.

    Args:
        query: Free-text query.
        chunks: Chunks to rank.
        top_k: Maximum number of results.

    Returns:
        list[RetrievalResult]: Best first.
    """
    query_tokens = set(tokenize(query))
    if not query_tokens or top_k <= 0:
        return []

    results: list[RetrievalResult] = []
    for chunk in chunks:
        matches = sum(1 for token in tokenize(chunk.content) if token in query_tokens)
        if matches:
            results.append(RetrievalResult(chunk=chunk, score=matches / len(query_tokens)))

    results.sort(key=lambda r: r.score, reverse=True)
    return results[:top_k]


def format_context(results: Sequence[RetrievalResult]) -> str:
    """Render retrieved chunks as numbered excerpts for a chat prompt."""
    if not results:
        return NO_CONTEXT
    return "\n\n".join(
        f'[Excerpt {number}] "{result.chunk.content}"'
        for number, result in enumerate(results, start=1)
    )


def build_system_prompt(book_title: str, context: str) -> str:
    return (
        f'You are a reading assistant helping the user understand the book "{book_title}".\n\n'
        f"{context}\n\n"
        "Answer from the excerpts above. When quoting one, cite it as [Excerpt N]."
    )
