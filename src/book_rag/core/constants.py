"""Central constants shared by the channel client and the vector index context."""

from typing import Final

# Message types sent to the isolated vector index context.
MSG_INDEX_CHUNK: Final[str] = "INDEX_CHUNK"
MSG_SEARCH: Final[str] = "SEARCH"
MSG_CLEAR: Final[str] = "CLEAR"

# Reply types produced by the isolated context.
MSG_INDEX_COMPLETE: Final[str] = "INDEX_COMPLETE"
MSG_SEARCH_RESULT: Final[str] = "SEARCH_RESULT"
MSG_CLEAR_COMPLETE: Final[str] = "CLEAR_COMPLETE"
MSG_ERROR: Final[str] = "ERROR"

# Error codes carried by error replies.
ERR_DIMENSION_MISMATCH: Final[str] = "DIMENSION_MISMATCH"
ERR_UNKNOWN_MESSAGE: Final[str] = "UNKNOWN_MESSAGE"
ERR_INVALID_PAYLOAD: Final[str] = "INVALID_PAYLOAD"
ERR_WORKER_ERROR: Final[str] = "WORKER_ERROR"

# Correlation id prefixes.
REQUEST_ID_PREFIX: Final[str] = "req"
FIRE_ID_PREFIX: Final[str] = "fire"

# Vector index tuning.
INDEX_GROWTH_ROWS: Final[int] = 500
COSINE_EPSILON: Final[float] = 1e-8
