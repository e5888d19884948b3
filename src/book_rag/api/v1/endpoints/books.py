"""Book endpoints: indexing, semantic search and cache removal."""

from fastapi import APIRouter, status

from book_rag.core.logging import get_logger
from book_rag.core.models import Chapter
from book_rag.dependencies import RagSessionDep
from book_rag.schemas.books import (
    BookSearchRequest,
    BookSearchResponse,
    BookSearchResultItem,
    IndexBookRequest,
    IndexBookResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/books", tags=["books"])


@router.post(
    "/{book_id}/index",
    response_model=IndexBookResponse,
    summary="Index Book",
    description="Chunks, embeds and indexes a book, reusing cached embeddings",
    status_code=status.HTTP_200_OK,
)
async def index_book(
    book_id: str,
    request: IndexBookRequest,
    session: RagSessionDep,
) -> IndexBookResponse:
    """Index a book for semantic search.

    The book replaces whatever the vector index held before. Domain errors
    (provider failures, dimension mismatches, channel faults) are turned into
    JSON responses by the application exception handler.

    Args:
        book_id: Book identifier.
        request: Chapters of the book.
        session: Injected RAG session.

    Returns:
        IndexBookResponse: Indexing statistics.
    """
    logger.info(f"Index request: book_id={book_id}, chapters={len(request.chapters)}")

    chapters = [Chapter(id=c.id, title=c.title, body=c.body) for c in request.chapters]
    result = await session.index_book(book_id, chapters)
    stats = result.stats
    assert stats is not None

    return IndexBookResponse(
        book_id=book_id,
        total_chunks=stats.total_chunks,
        cached_chunks=stats.cached_chunks,
        embedded_chunks=stats.embedded_chunks,
        batches=stats.batches,
        cache_cleared=stats.cache_cleared,
        stale_reason=stats.stale_reason,
    )


@router.post(
    "/{book_id}/search",
    response_model=BookSearchResponse,
    summary="Semantic Search",
    description="Ranks the indexed book's chunks by cosine similarity to the query",
    status_code=status.HTTP_200_OK,
)
async def search_book(
    book_id: str,
    request: BookSearchRequest,
    session: RagSessionDep,
) -> BookSearchResponse:
    """Search the currently indexed book."""
    results = await session.search(book_id, request.query, request.top_k)

    logger.info(f"Search completed: book_id={book_id}, {len(results)} results")
    return BookSearchResponse(
        book_id=book_id,
        query=request.query,
        results=[
            BookSearchResultItem(
                id=r.chunk.id,
                chapter_id=r.chunk.chapter_id,
                chapter_title=r.chunk.chapter_title,
                content=r.chunk.content,
                score=r.score,
            )
            for r in results
        ],
    )


@router.delete(
    "/{book_id}/embeddings",
    summary="Delete Embeddings",
    description="Removes a book's cached embeddings",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_embeddings(book_id: str, session: RagSessionDep) -> None:
    await session.delete_book_embeddings(book_id)
