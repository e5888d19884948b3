"""Health check endpoint."""

from fastapi import APIRouter

from book_rag.dependencies import RagSessionDep, SettingsDep
from book_rag.schemas.health import HealthResponse, QueueStatusResponse

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Returns the health status of the API and the vector index channel",
)
async def health_check(settings: SettingsDep, session: RagSessionDep) -> HealthResponse:
    """Check API health and return status.

    Args:
        settings: Injected application settings.
        session: Injected RAG session.

    Returns:
        HealthResponse: Health status information.
    """
    queue = session.queue_status()
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
        worker_mode=settings.worker_mode,
        active_book_id=session.active_book_id,
        queue=QueueStatusResponse(in_flight=queue.in_flight, queued=queue.queued),
    )
