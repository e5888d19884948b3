"""Envelope and payload schemas for messages crossing the task channel."""

from typing import Any

from pydantic import BaseModel, Field


class ChannelMessage(BaseModel):
    """Outbound envelope sent to the isolated context.

    Example:
    ```json
    {
        "id": "req_3_9f2c1a7e",
        "type": "SEARCH",
        "payload": {"queryEmbedding": [0.1, 0.2], "topK": 5}
    }
    ```
    """

    id: str = Field(..., description="Correlation id")
    type: str = Field(..., description="Message type discriminator")
    payload: Any = None


class ChannelResponse(BaseModel):
    """Inbound envelope produced by the isolated context.

    Example error reply:
    ```json
    {
        "id": "fire_12",
        "type": "ERROR",
        "payload": null,
        "error": "Dimension mismatch: expected 3, got 2",
        "code": "DIMENSION_MISMATCH"
    }
    ```
    """

    id: str
    type: str
    payload: Any = None
    error: str | None = None
    code: str | None = None


class IndexChunkPayload(BaseModel):
    """Payload of an INDEX_CHUNK message."""

    id: str = Field(..., description="Chunk id")
    content: str = ""
    embedding: list[float]


class IndexCompletePayload(BaseModel):
    """Acknowledgement of an INDEX_CHUNK message."""

    indexed: int


class SearchPayload(BaseModel):
    """Payload of a SEARCH request."""

    query_embedding: list[float] = Field(..., alias="queryEmbedding")
    top_k: int = Field(5, alias="topK")

    model_config = {"populate_by_name": True}


class ScoredId(BaseModel):
    """A chunk id with its cosine similarity to the query."""

    id: str
    score: float


class SearchResultPayload(BaseModel):
    """Reply to a SEARCH request."""

    results: list[ScoredId] = Field(default_factory=list)


class ClearCompletePayload(BaseModel):
    """Reply to a CLEAR request."""

    success: bool = True


class DimensionMismatchDetail(BaseModel):
    """Payload attached to a DIMENSION_MISMATCH error reply."""

    expected: int | None = None
    actual: int
