
from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from fundsync.api.deps import SessionFactoryDep
from fundsync.core.config import settings
from fundsync.core.database import utcnow

router = APIRouter()


@router.get("")
async def basic_health(session_factory: SessionFactoryDep):
    """Basic health check reporting DB status."""
    health = {
        "status": "ok",
        "db": "connected",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
    }
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        health["db"] = "disconnected"
        health["status"] = "degraded"
    return health
