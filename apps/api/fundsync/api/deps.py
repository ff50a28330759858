"""
FastAPI Dependency Injection utilities.

Provides common dependencies for:
- Session factory (overridable in tests)
- Provider registry (one shared HTTP client per request)
- Progress store
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from fundsync.core.database import async_session_factory
from fundsync.providers.registry import ProviderRegistry
from fundsync.services.progress_store import SqlProgressStore


def get_session_factory() -> async_sessionmaker:
    return async_session_factory


SessionFactoryDep = Annotated[async_sessionmaker, Depends(get_session_factory)]


async def get_registry() -> AsyncGenerator[ProviderRegistry, None]:
    """Registry built from settings, closed after the request."""
    async with ProviderRegistry.from_settings() as registry:
        yield registry


RegistryDep = Annotated[ProviderRegistry, Depends(get_registry)]


def get_progress_store(session_factory: SessionFactoryDep) -> SqlProgressStore:
    return SqlProgressStore(session_factory)


ProgressStoreDep = Annotated[SqlProgressStore, Depends(get_progress_store)]
