"""
Cycle history backed by ``SyncStatus`` rows.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from fundsync.core.database import async_session_factory, get_db_context, utcnow
from fundsync.models.sync_status import SyncStatus

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 200


class CycleHistory:
    """Writes one ``SyncStatus`` row per cycle."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or async_session_factory

    async def start(self, cycle_id: str, started_at: datetime, sync_type: str = "ingestion") -> int:
        async with get_db_context(self.session_factory) as session:
            row = SyncStatus(
                cycle_id=cycle_id,
                sync_type=sync_type,
                started_at=started_at,
                status="running",
                success_count=0,
                error_count=0,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def finish(
        self,
        row_id: int,
        success_count: int,
        error_count: int,
        errors: dict[str, str],
        additional_data: Optional[dict[str, Any]] = None,
        status: Optional[str] = None,
    ) -> None:
        if status is None:
            if error_count == 0:
                status = "completed"
            elif success_count == 0:
                status = "failed"
            else:
                status = "partial"

        async with get_db_context(self.session_factory) as session:
            row = await session.get(SyncStatus, row_id)
            if row is None:
                logger.warning(f"Cycle history row {row_id} disappeared")
                return
            row.completed_at = utcnow()
            row.success_count = success_count
            row.error_count = error_count
            row.status = status
            row.errors = dict(list(errors.items())[:MAX_RECORDED_ERRORS]) or None
            row.additional_data = additional_data

    async def recent(self, limit: int = 20) -> list[SyncStatus]:
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                select(SyncStatus).order_by(SyncStatus.started_at.desc(), SyncStatus.id.desc()).limit(limit)
            )
            return list(result.scalars().all())
