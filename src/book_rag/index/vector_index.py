"""Dense in-memory vector index with brute-force cosine search.

The index lives inside the isolated worker context and is only ever touched
by that context's sequential message loop, so it carries no locking.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from book_rag.core.constants import COSINE_EPSILON, INDEX_GROWTH_ROWS
from book_rag.core.exceptions import DimensionMismatchError
from book_rag.core.logging import get_logger

logger = get_logger(__name__)


class VectorIndex:
    """Append-only float32 buffer of ``count x dimension`` plus a parallel id list."""

    def __init__(self, growth_rows: int = INDEX_GROWTH_ROWS, epsilon: float = COSINE_EPSILON):
        self._growth_rows = growth_rows
        self._epsilon = epsilon
        self._vectors: np.ndarray | None = None
        self._ids: list[str] = []
        self._dimension = 0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def dimension(self) -> int:
        """Locked dimension, 0 while the index is empty."""
        return self._dimension

    @property
    def capacity(self) -> int:
        """Number of floats the backing buffer can hold."""
        return 0 if self._vectors is None else int(self._vectors.size)

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def insert(self, chunk_id: str, vector: Sequence[float] | np.ndarray) -> int:
        """Append a vector, locking the dimension on the first insert.

        Args:
            chunk_id: Id of the chunk the vector belongs to.
            vector: Embedding values.

        Returns:
            int: Number of entries after the insert.

        Raises:
            DimensionMismatchError: If the vector length differs from the locked dimension.
        """
        values = np.asarray(vector, dtype=np.float32).reshape(-1)
        dim = int(values.shape[0])

        if dim == 0:
            raise DimensionMismatchError(self._dimension or None, dim)
        if self._count > 0 and dim != self._dimension:
            raise DimensionMismatchError(self._dimension, dim)

        if self._count == 0:
            self._dimension = dim

        if self._vectors is None or self._count >= self._vectors.shape[0]:
            self._grow()

        assert self._vectors is not None
        self._vectors[self._count] = values
        self._ids.append(chunk_id)
        self._count += 1
        return self._count

    def _grow(self) -> None:
        rows = max(self._growth_rows, self._count + self._growth_rows)
        grown = np.zeros((rows, self._dimension), dtype=np.float32)
        if self._vectors is not None and self._count:
            grown[: self._count] = self._vectors[: self._count]
        logger.debug(
            "Growing vector buffer from %s to %s rows (dimension=%s)",
            0 if self._vectors is None else self._vectors.shape[0],
            rows,
            self._dimension,
        )
        self._vectors = grown

    def search(self, query: Sequence[float] | np.ndarray, top_k: int) -> list[tuple[str, float]]:
        """Rank stored vectors by cosine similarity to the query.

        Ties keep insertion order. ``top_k`` larger than the entry count returns
        every entry; an empty index returns an empty list.

        Raises:
            DimensionMismatchError: If the query length differs from the locked dimension.
        """
        if self._count == 0 or self._vectors is None or top_k <= 0:
            return []

        q = np.asarray(query, dtype=np.float32).reshape(-1)
        if q.shape[0] != self._dimension:
            raise DimensionMismatchError(self._dimension, int(q.shape[0]))

        rows = self._vectors[: self._count].astype(np.float64)
        q64 = q.astype(np.float64)
        dots = rows @ q64
        norms = np.linalg.norm(rows, axis=1) * np.linalg.norm(q64)
        scores = dots / (norms + self._epsilon)

        order = np.argsort(-scores, kind="stable")[:top_k]
        return [(self._ids[i], float(scores[i])) for i in order]

    def clear(self) -> None:
        """Drop every entry, release the buffer and unlock the dimension."""
        self._vectors = None
        self._ids = []
        self._count = 0
        self._dimension = 0
