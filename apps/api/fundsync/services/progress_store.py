"""
Entity Progress Store.

Persistent per-entity and global ingestion state, injected into the
scheduler. ``EntityProgressStore`` is the interface; ``SqlProgressStore``
implements it on SQLAlchemy async sessions.

Bulk transitions (reclaim, reopen, reset, request) take their column values
from ``state_machine`` so SQL updates and in-memory transitions agree.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time
from typing import Iterable, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from fundsync.core.database import async_session_factory, get_db_context, utcnow
from fundsync.models.entity_progress import EntityProgress, EntityStatus, PriorityClass
from fundsync.models.ingestion_phase import SINGLETON_ID, IngestionPhase, IngestionPhaseState
from fundsync.services import state_machine

logger = logging.getLogger(__name__)


def normalize_tickers(tickers: Iterable[str]) -> list[str]:
    """Upper-case, strip and de-duplicate, keeping first-seen order."""
    seen: dict[str, None] = {}
    for ticker in tickers:
        symbol = (ticker or "").strip().upper()
        if symbol:
            seen.setdefault(symbol, None)
    return list(seen)


@dataclass
class ProgressFilter:
    """Selection for ``load_entity_progress``."""
    statuses: Optional[list[EntityStatus]] = None
    tickers: Optional[list[str]] = None
    limit: Optional[int] = None


@dataclass
class ProcessingSummary:
    """Aggregate of entity-level state."""
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    with_basic_profile: int = 0
    with_history: int = 0
    with_ttm_update: int = 0
    with_secondary_data: int = 0
    updated_today: int = 0
    # ERROR entities that never got historical statements
    errors_without_history: int = 0

    def count(self, status: EntityStatus) -> int:
        return self.by_status.get(status.value, 0)

    @property
    def pending(self) -> int:
        return self.count(EntityStatus.PENDING)

    @property
    def processing(self) -> int:
        return self.count(EntityStatus.PROCESSING)

    @property
    def completed(self) -> int:
        return self.count(EntityStatus.COMPLETED)

    @property
    def errors(self) -> int:
        return self.count(EntityStatus.ERROR)

    @property
    def needs_history(self) -> int:
        return self.total - self.with_history

    @property
    def needs_ttm_update(self) -> int:
        return self.total - self.with_ttm_update

    def format(self) -> str:
        """Multi-line summary for logs and the CLI."""
        lines = [
            f"Entities: {self.total}",
            f"  pending={self.pending} processing={self.processing} "
            f"completed={self.completed} error={self.errors}",
            f"  basic profile: {self.with_basic_profile}/{self.total}",
            f"  historical statements: {self.with_history}/{self.total} "
            f"(abandoned: {self.errors_without_history})",
            f"  TTM update: {self.with_ttm_update}/{self.total}",
            f"  secondary data: {self.with_secondary_data}/{self.total}",
            f"  updated today: {self.updated_today}",
        ]
        return "\n".join(lines)


class EntityProgressStore(ABC):
    """Persistent progress state used by the scheduler."""

    @abstractmethod
    async def load_entity_progress(self, filter: Optional[ProgressFilter] = None) -> list[EntityProgress]:
        ...

    @abstractmethod
    async def get(self, ticker: str) -> Optional[EntityProgress]:
        ...

    @abstractmethod
    async def save_entity_progress(self, record: EntityProgress) -> None:
        ...

    @abstractmethod
    async def reset_entity_progress(self, tickers: Optional[Iterable[str]] = None) -> int:
        ...

    @abstractmethod
    async def load_global_phase(self) -> IngestionPhaseState:
        ...

    @abstractmethod
    async def save_global_phase(self, record: IngestionPhaseState) -> None:
        ...

    @abstractmethod
    async def register_entities(
        self, tickers: Iterable[str], priority: PriorityClass = PriorityClass.NORMAL
    ) -> int:
        ...

    @abstractmethod
    async def request_entities(self, tickers: Iterable[str]) -> list[str]:
        ...

    @abstractmethod
    async def select_eligible(
        self,
        limit: int,
        *,
        max_error_count: int,
        include_errors: bool = False,
        tickers: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> list[EntityProgress]:
        ...

    @abstractmethod
    async def mark_processing(self, entities: list[EntityProgress], now: datetime) -> list[EntityProgress]:
        ...

    @abstractmethod
    async def reclaim_stale(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    async def reopen_completed(self, completed_before: Optional[datetime] = None) -> int:
        ...

    @abstractmethod
    async def aggregate(self, now: Optional[datetime] = None) -> ProcessingSummary:
        ...


class SqlProgressStore(EntityProgressStore):
    """``EntityProgressStore`` on SQLAlchemy async sessions."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or async_session_factory

    async def load_entity_progress(self, filter: Optional[ProgressFilter] = None) -> list[EntityProgress]:
        filter = filter or ProgressFilter()
        stmt = select(EntityProgress).order_by(EntityProgress.ticker)
        if filter.statuses:
            stmt = stmt.where(EntityProgress.status.in_(filter.statuses))
        if filter.tickers:
            stmt = stmt.where(EntityProgress.ticker.in_(normalize_tickers(filter.tickers)))
        if filter.limit:
            stmt = stmt.limit(filter.limit)
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, ticker: str) -> Optional[EntityProgress]:
        async with get_db_context(self.session_factory) as session:
            return await session.get(EntityProgress, ticker.strip().upper())

    async def save_entity_progress(self, record: EntityProgress) -> None:
        async with get_db_context(self.session_factory) as session:
            await session.merge(record)

    async def reset_entity_progress(self, tickers: Optional[Iterable[str]] = None) -> int:
        """Reset the given entities (all when ``tickers`` is None)."""
        stmt = update(EntityProgress).values(**state_machine.reset_updates(), updated_at=utcnow())
        if tickers is not None:
            stmt = stmt.where(EntityProgress.ticker.in_(normalize_tickers(tickers)))
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(stmt)
            count = result.rowcount or 0
        logger.info(f"Reset {count} entities")
        return count

    async def load_global_phase(self) -> IngestionPhaseState:
        """The singleton phase row; a fresh DISCOVERING state before the first save."""
        async with get_db_context(self.session_factory) as session:
            state = await session.get(IngestionPhaseState, SINGLETON_ID)
        if state is None:
            state = IngestionPhaseState(
                id=SINGLETON_ID,
                phase=IngestionPhase.DISCOVERING,
                total_entities=0,
                entities_with_history=0,
                entities_updated_today=0,
            )
        return state

    async def save_global_phase(self, record: IngestionPhaseState) -> None:
        record.id = SINGLETON_ID
        async with get_db_context(self.session_factory) as session:
            await session.merge(record)

    async def register_entities(
        self, tickers: Iterable[str], priority: PriorityClass = PriorityClass.NORMAL
    ) -> int:
        """Create PENDING rows for unknown tickers. Returns how many were new."""
        symbols = normalize_tickers(tickers)
        if not symbols:
            return 0
        async with get_db_context(self.session_factory) as session:
            existing = set(
                (await session.execute(
                    select(EntityProgress.ticker).where(EntityProgress.ticker.in_(symbols))
                )).scalars().all()
            )
            new = [symbol for symbol in symbols if symbol not in existing]
            for symbol in new:
                session.add(
                    EntityProgress(
                        ticker=symbol,
                        status=EntityStatus.PENDING,
                        priority=int(priority),
                        error_count=0,
                        has_basic_profile=False,
                        has_historical_statements=False,
                        has_ttm_update=False,
                        has_secondary_data=False,
                    )
                )
        if new:
            logger.info(f"Registered {len(new)} new entities")
        return len(new)

    async def request_entities(self, tickers: Iterable[str]) -> list[str]:
        """Register if needed, then mark REQUESTED and PENDING."""
        symbols = normalize_tickers(tickers)
        if not symbols:
            return []
        await self.register_entities(symbols, priority=PriorityClass.REQUESTED)
        async with get_db_context(self.session_factory) as session:
            await session.execute(
                update(EntityProgress)
                .where(EntityProgress.ticker.in_(symbols))
                .values(**state_machine.request_updates(), updated_at=utcnow())
            )
        return symbols

    async def select_eligible(
        self,
        limit: int,
        *,
        max_error_count: int,
        include_errors: bool = False,
        tickers: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> list[EntityProgress]:
        """
        Next entities to process.

        Eligible: PENDING (or ERROR when ``include_errors``) with
        ``error_count <= max_error_count``. Ordered by priority desc,
        error_count asc, last_attempted_at asc (never attempted first).
        ``exclude`` skips tickers already attempted in this cycle.
        """
        if limit < 1:
            return []
        statuses = [EntityStatus.PENDING]
        if include_errors:
            statuses.append(EntityStatus.ERROR)

        stmt = (
            select(EntityProgress)
            .where(
                EntityProgress.status.in_(statuses),
                EntityProgress.error_count <= max_error_count,
            )
            .order_by(
                EntityProgress.priority.desc(),
                EntityProgress.error_count.asc(),
                EntityProgress.last_attempted_at.asc().nulls_first(),
                EntityProgress.ticker.asc(),
            )
            .limit(limit)
        )
        if tickers is not None:
            stmt = stmt.where(EntityProgress.ticker.in_(normalize_tickers(tickers)))
        if exclude:
            stmt = stmt.where(EntityProgress.ticker.not_in(list(exclude)))

        async with get_db_context(self.session_factory) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def mark_processing(self, entities: list[EntityProgress], now: datetime) -> list[EntityProgress]:
        """Claim ``entities`` for this cycle in one transaction."""
        claimed = []
        async with get_db_context(self.session_factory) as session:
            for entity in entities:
                state_machine.apply(entity, state_machine.claim(entity, now))
                claimed.append(await session.merge(entity))
        return claimed

    async def reclaim_stale(self, cutoff: datetime) -> int:
        """PROCESSING entities last attempted before ``cutoff`` go back to PENDING."""
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                update(EntityProgress)
                .where(
                    EntityProgress.status == EntityStatus.PROCESSING,
                    or_(
                        EntityProgress.last_attempted_at.is_(None),
                        EntityProgress.last_attempted_at < cutoff,
                    ),
                )
                .values(**state_machine.reclaim_updates(), updated_at=utcnow())
            )
            count = result.rowcount or 0
        if count:
            logger.warning(f"Reclaimed {count} stale PROCESSING entities")
        return count

    async def reopen_completed(self, completed_before: Optional[datetime] = None) -> int:
        """COMPLETED entities (completed before the cutoff, if given) go back to PENDING."""
        stmt = update(EntityProgress).where(EntityProgress.status == EntityStatus.COMPLETED)
        if completed_before is not None:
            stmt = stmt.where(
                or_(
                    EntityProgress.last_completed_at.is_(None),
                    EntityProgress.last_completed_at < completed_before,
                )
            )
        async with get_db_context(self.session_factory) as session:
            result = await session.execute(
                stmt.values(**state_machine.reopen_updates(), updated_at=utcnow())
            )
            count = result.rowcount or 0
        if count:
            logger.info(f"Reopened {count} completed entities for refresh")
        return count

    async def aggregate(self, now: Optional[datetime] = None) -> ProcessingSummary:
        now = now or utcnow()
        start_of_day = datetime.combine(now.date(), dt_time.min)

        def flag_count(column):
            return func.coalesce(func.sum(case((column.is_(True), 1), else_=0)), 0)

        async with get_db_context(self.session_factory) as session:
            totals = (await session.execute(
                select(
                    func.count(EntityProgress.ticker),
                    flag_count(EntityProgress.has_basic_profile),
                    flag_count(EntityProgress.has_historical_statements),
                    flag_count(EntityProgress.has_ttm_update),
                    flag_count(EntityProgress.has_secondary_data),
                    func.coalesce(func.sum(case(
                        (and_(
                            EntityProgress.last_completed_at.is_not(None),
                            EntityProgress.last_completed_at >= start_of_day,
                        ), 1),
                        else_=0,
                    )), 0),
                    func.coalesce(func.sum(case(
                        (and_(
                            EntityProgress.status == EntityStatus.ERROR,
                            EntityProgress.has_historical_statements.is_(False),
                        ), 1),
                        else_=0,
                    )), 0),
                )
            )).one()
            by_status = (await session.execute(
                select(EntityProgress.status, func.count(EntityProgress.ticker))
                .group_by(EntityProgress.status)
            )).all()

        return ProcessingSummary(
            total=int(totals[0] or 0),
            by_status={
                (status.value if isinstance(status, EntityStatus) else str(status)): int(count)
                for status, count in by_status
            },
            with_basic_profile=int(totals[1]),
            with_history=int(totals[2]),
            with_ttm_update=int(totals[3]),
            with_secondary_data=int(totals[4]),
            updated_today=int(totals[5]),
            errors_without_history=int(totals[6]),
        )
