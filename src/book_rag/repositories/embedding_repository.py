"""Persistent embedding cache keyed by (book_id, chunk_id)."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import numpy as np

from book_rag.core.logging import get_logger
from book_rag.core.models import EmbeddingMeta, EmbeddingRecord
from book_rag.core.quantization import dequantize, quantize

logger = get_logger(__name__)

EMBEDDING_SCHEMA = """
CREATE TABLE IF NOT EXISTS embeddings (
    book_id TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    embedding BLOB NOT NULL,
    scale REAL NOT NULL,
    model TEXT,
    dimensions INTEGER NOT NULL,
    chunk_params TEXT,
    created_at TEXT,
    PRIMARY KEY (book_id, chunk_id)
);

CREATE INDEX IF NOT EXISTS idx_embeddings_book ON embeddings(book_id);
"""

EmbeddingItem = tuple[str, Sequence[float] | np.ndarray]


class EmbeddingStore(Protocol):
    """Persistent store consumed by the embedding pipeline."""

    async def get_embeddings(self, book_id: str) -> dict[str, np.ndarray]: ...

    async def put_embeddings_batch(
        self,
        book_id: str,
        items: Sequence[EmbeddingItem],
        model: str,
        chunk_params: str | None = None,
    ) -> None: ...

    async def get_embedding_meta(self, book_id: str) -> EmbeddingMeta | None: ...

    async def clear_embeddings(self, book_id: str) -> None: ...


class SQLiteEmbeddingRepository:
    """Stores int8-quantized vectors in SQLite.

    Blocking SQLite calls run on a worker thread; a lock serializes them on the
    single shared connection. Writes use ``INSERT OR REPLACE`` so concurrent
    writers of the same key resolve last-write-wins.
    """

    def __init__(self, db_path: Path | str):
        """Open (and create if needed) the cache database.

        Args:
            db_path: SQLite file path, or ``":memory:"``.
        """
        self.db_path = db_path
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.executescript(EMBEDDING_SCHEMA)
        self._conn.commit()
        logger.info("Embedding cache opened at %s", db_path)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self._conn.close()
        logger.info("Embedding cache closed")

    # ------------------------------------------------------------------
    # Async interface
    # ------------------------------------------------------------------

    async def get_embeddings(self, book_id: str) -> dict[str, np.ndarray]:
        """Load every vector of a book, re-hydrated to float32."""
        records = await asyncio.to_thread(self.get_records, book_id)
        return {record.chunk_id: dequantize(record.embedding, record.scale) for record in records}

    async def put_embeddings_batch(
        self,
        book_id: str,
        items: Sequence[EmbeddingItem],
        model: str,
        chunk_params: str | None = None,
    ) -> None:
        """Persist a batch of vectors in a single transaction."""
        if not items:
            return
        await asyncio.to_thread(self._put_batch, book_id, items, model, chunk_params)

    async def get_embedding_meta(self, book_id: str) -> EmbeddingMeta | None:
        """Return model and dimensions of one representative record, if any."""
        return await asyncio.to_thread(self._get_meta, book_id)

    async def clear_embeddings(self, book_id: str) -> None:
        """Delete every vector of a book."""
        await asyncio.to_thread(self._clear, book_id)

    # ------------------------------------------------------------------
    # Blocking implementation
    # ------------------------------------------------------------------

    def get_records(self, book_id: str) -> list[EmbeddingRecord]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT chunk_id, embedding, scale, model, dimensions, chunk_params
                   FROM embeddings WHERE book_id = ?""",
                (book_id,),
            ).fetchall()

        return [
            EmbeddingRecord(
                book_id=book_id,
                chunk_id=chunk_id,
                embedding=np.frombuffer(blob, dtype=np.int8).copy(),
                scale=scale,
                model=model,
                dimensions=dimensions,
                chunk_params=chunk_params,
            )
            for chunk_id, blob, scale, model, dimensions, chunk_params in rows
        ]

    def _put_batch(
        self,
        book_id: str,
        items: Sequence[EmbeddingItem],
        model: str,
        chunk_params: str | None,
    ) -> None:
        created_at = datetime.now(UTC).isoformat()
        rows = []
        for chunk_id, vector in items:
            values, scale = quantize(vector)
            rows.append(
                (
                    book_id,
                    chunk_id,
                    values.tobytes(),
                    scale,
                    model,
                    int(values.shape[0]),
                    chunk_params,
                    created_at,
                )
            )

        with self._lock:
            with self._conn:
                self._conn.executemany(
                    """INSERT OR REPLACE INTO embeddings
                       (book_id, chunk_id, embedding, scale, model, dimensions,
                        chunk_params, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    rows,
                )
        logger.debug("Persisted %s embeddings for book %s (model=%s)", len(rows), book_id, model)

    def _get_meta(self, book_id: str) -> EmbeddingMeta | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT model, dimensions, chunk_params FROM embeddings WHERE book_id = ? LIMIT 1",
                (book_id,),
            ).fetchone()
        if row is None:
            return None
        model, dimensions, chunk_params = row
        return EmbeddingMeta(model=model, dimensions=dimensions, chunk_params=chunk_params)

    def _clear(self, book_id: str) -> None:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM embeddings WHERE book_id = ?", (book_id,))
        logger.info("Cleared %s cached embeddings for book %s", cursor.rowcount, book_id)
