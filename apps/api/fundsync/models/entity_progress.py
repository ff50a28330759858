"""
Entity Progress ORM Model

One row per ticker in the ingestion universe. Tracks:
- Processing status (PENDING, PROCESSING, COMPLETED, ERROR)
- Per-facet completion flags
- Consecutive error count and last error message
- Priority class and attempt/completion timestamps

Rows are created PENDING on discovery and are never deleted, only reset.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fundsync.core.database import Base, utcnow


class EntityStatus(str, Enum):
    """Processing status of one entity."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class PriorityClass(IntEnum):
    """Scheduling priority; higher values are selected first."""
    NORMAL = 0
    REQUESTED = 1


class EntityProgress(Base):
    """
    Persistent progress of one ticker through the ingestion pipeline.

    Facet flags are monotonic: once set they stay set until an explicit
    whole-entity reset.
    """
    __tablename__ = "entity_progress"

    ticker: Mapped[str] = mapped_column(String(20), primary_key=True)

    status: Mapped[EntityStatus] = mapped_column(
        SQLEnum(EntityStatus, native_enum=False, length=20),
        default=EntityStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Facets
    has_basic_profile: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_historical_statements: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_ttm_update: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_secondary_data: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Errors
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    priority: Mapped[int] = mapped_column(Integer, default=PriorityClass.NORMAL, nullable=False)

    # Timing
    last_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_entity_progress_selection", "status", "priority", "error_count"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntityProgress(ticker='{self.ticker}', status='{self.status.value}', "
            f"errors={self.error_count})>"
        )
