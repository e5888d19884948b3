"""Custom exceptions and exception handlers."""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from book_rag.core.logging import get_logger

logger = get_logger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND)


class ChannelError(AppException):
    """Base class for failures of the task channel to the vector index context."""

    def __init__(self, message: str, status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE):
        super().__init__(message, status_code=status_code)


class RequestTimeoutError(ChannelError):
    """No response arrived for a request before its deadline."""

    def __init__(self, message_type: str, timeout: float):
        self.message_type = message_type
        self.timeout = timeout
        super().__init__(
            f"Worker request timeout: {message_type} (after {timeout:.3f}s)",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        )


class RemoteCrashedError(ChannelError):
    """The isolated context faulted; all outstanding work was rejected."""

    def __init__(self, message: str = "Worker crashed"):
        super().__init__(message)


class ChannelClosedError(ChannelError):
    """The channel client was terminated."""

    def __init__(self, message: str = "Worker terminated"):
        super().__init__(message)


class RemoteTaskError(ChannelError):
    """The isolated context answered a message with an error reply."""

    def __init__(self, message: str, code: str | None = None):
        self.code = code
        super().__init__(message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


class DimensionMismatchError(AppException):
    """A vector's length does not match the dimension locked by the index."""

    def __init__(self, expected: int | None, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Dimension mismatch: expected {expected}, got {actual}",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )


class ProviderError(AppException):
    """An embedding or chat provider call failed."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = False):
        self.status = status
        self.retryable = retryable
        super().__init__(message, status_code=502)


class OperationAbortedError(AppException):
    """The caller aborted an in-flight provider call."""

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message, status_code=499)


class CacheStaleError(AppException):
    """Persisted embeddings no longer match the configured model or chunking."""

    def __init__(self, book_id: str, reason: str):
        self.book_id = book_id
        self.reason = reason
        super().__init__(f"Stale embedding cache for book {book_id}: {reason}")


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle custom application exceptions.

    Args:
        request: The incoming request.
        exc: The exception that was raised.

    Returns:
        JSONResponse: Error response.
    """
    logger.error(f"Application error: {exc.message}", exc_info=True)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "type": exc.__class__.__name__},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions.

    Args:
        request: The incoming request.
        exc: The HTTP exception that was raised.

    Returns:
        JSONResponse: Error response.
    """
    logger.warning(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions.

    Args:
        request: The incoming request.
        exc: The unhandled exception.

    Returns:
        JSONResponse: Error response.
    """
    logger.error(f"Unhandled error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )
