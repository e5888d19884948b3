"""Book indexing and search request and response schemas."""

from pydantic import BaseModel, Field


class ChapterIn(BaseModel):
    """A chapter as submitted for indexing. The body may contain markup."""

    id: str = Field(..., description="Chapter ID, stable across uploads", min_length=1)
    title: str = Field("", description="Chapter title")
    body: str = Field(..., description="Chapter text or markup")


class IndexBookRequest(BaseModel):
    """Request model for the index endpoint."""

    chapters: list[ChapterIn] = Field(..., description="Chapters in reading order")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "chapters": [
                        {
                            "id": "ch1",
                            "title": "Loomings",
                            "body": "<p>Call me Ishmael. Some years ago...</p>",
                        }
                    ]
                }
            ]
        }
    }


class IndexBookResponse(BaseModel):
    """Response model for the index endpoint."""

    book_id: str = Field(..., description="Book ID")
    total_chunks: int = Field(..., description="Chunks produced by the chunker")
    cached_chunks: int = Field(..., description="Chunks whose vectors came from the cache")
    embedded_chunks: int = Field(..., description="Chunks embedded by the provider")
    batches: int = Field(..., description="Provider batches issued")
    cache_cleared: bool = Field(..., description="Whether a stale cache was discarded")
    stale_reason: str | None = Field(None, description="Why the cache was discarded")


class BookSearchRequest(BaseModel):
    """Request model for the book search endpoint."""

    query: str = Field(..., description="Search query text", min_length=1)
    top_k: int | None = Field(None, description="Maximum number of results", ge=1, le=100)


class BookSearchResultItem(BaseModel):
    """A chunk ranked against the query."""

    id: str = Field(..., description="Chunk ID")
    chapter_id: str = Field(..., description="Chapter the chunk belongs to")
    chapter_title: str = Field(..., description="Chapter title")
    content: str = Field(..., description="Chunk text")
    score: float = Field(..., description="Cosine similarity to the query")


class BookSearchResponse(BaseModel):
    """Response model for the book search endpoint."""

    book_id: str = Field(..., description="Book ID")
    query: str = Field(..., description="Original search query")
    results: list[BookSearchResultItem] = Field(..., description="Best match first")
