"""FastAPI dependency injection utilities."""

from typing import Annotated

from fastapi import Depends, Request

from book_rag.config import Settings
from book_rag.services.rag_session import RagSession


def get_app_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return request.app.state.settings


def get_rag_session(request: Request) -> RagSession:
    """Get the RagSession owned by the application lifespan.

    Returns:
        RagSession instance.
    """
    return request.app.state.rag_session


# Type aliases for dependency injection
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
RagSessionDep = Annotated[RagSession, Depends(get_rag_session)]
