"""Application configuration and settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application
    app_name: str = "Book RAG API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API
    api_v1_prefix: str = "/api/v1"

    # CORS
    cors_origins: list[str] = ["*"]
    cors_credentials: bool = True
    cors_methods: list[str] = ["*"]
    cors_headers: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"

    # Provider (reverse proxy in front of the language-model API)
    provider_base_url: str = "http://localhost:3001/api"
    provider_api_key: str | None = None
    provider_timeout: float = 60.0
    provider_max_attempts: int = Field(3, ge=1)
    provider_retry_base_delay: float = 1.0  # Seconds, doubled per attempt
    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4o-mini"
    embedding_batch_size: int = Field(50, ge=1, le=2048)  # Chunks per pipeline batch
    embedding_batch_limit: int = Field(2048, ge=1)  # Inputs per HTTP call
    embedding_max_input_chars: int = 8000

    # Chunking
    chunk_size: int = Field(800, gt=0)
    chunk_overlap: int = Field(100, ge=0)
    min_chapter_chars: int = 50

    # Task channel / isolated vector index context
    channel_timeout: float = 30.0  # Default per-request timeout in seconds
    search_timeout: float = 60.0
    channel_max_concurrent: int = Field(10, ge=1)
    worker_mode: Literal["process", "local"] = "process"
    worker_shutdown_timeout: float = 5.0

    # Embedding cache
    embedding_db_path: Path = Path.home() / ".book-rag" / "embeddings.db"

    # Search
    search_top_k: int = 5

    @model_validator(mode="after")
    def _check_chunking(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
