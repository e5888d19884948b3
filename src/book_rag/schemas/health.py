"""Health check schemas."""

from pydantic import BaseModel, Field


class QueueStatusResponse(BaseModel):
    """Capacity usage of the vector index channel."""

    in_flight: int = Field(..., description="Messages awaiting a reply")
    queued: int = Field(..., description="One-way messages waiting for capacity")


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Environment name")
    worker_mode: str = Field(..., description="How the vector index context is isolated")
    active_book_id: str | None = Field(None, description="Book currently held by the index")
    queue: QueueStatusResponse

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "status": "healthy",
                    "version": "0.1.0",
                    "environment": "development",
                    "worker_mode": "process",
                    "active_book_id": "moby-dick",
                    "queue": {"in_flight": 0, "queued": 0},
                }
            ]
        }
    }
