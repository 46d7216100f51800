"""Route dependencies resolving the objects built by create_app()."""
from typing import Generator

from fastapi import Request
from sqlmodel import Session

from dashboard.cache.multilevel import MultiLevelCache
from dashboard.gripp.sync_service import SyncService


def get_cache(request: Request) -> MultiLevelCache:
    return request.app.state.cache


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_session(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session on the app's engine."""
    with Session(request.app.state.engine) as session:
        yield session
