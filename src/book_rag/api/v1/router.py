"""Main API v1 router that combines all endpoint routers."""

from fastapi import APIRouter

from book_rag.api.v1.endpoints import books, health

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(health.router)
api_router.include_router(books.router)
