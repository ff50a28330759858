"""
Ingestion Phase ORM Model

Process-wide singleton row (id = 1) holding the global ingestion phase,
the cursor and aggregate counts. The phase is recomputed once per cycle
from entity-level facet flags.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fundsync.core.database import Base, utcnow

SINGLETON_ID = 1


class IngestionPhase(str, Enum):
    """Global phase, in forward order."""
    DISCOVERING = "DISCOVERING"
    PROCESSING_HISTORICAL = "PROCESSING_HISTORICAL"
    PROCESSING_TTM = "PROCESSING_TTM"
    COMPLETED = "COMPLETED"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = list(IngestionPhase)


class IngestionPhaseState(Base):
    """Global ingestion state."""
    __tablename__ = "ingestion_phase"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)

    phase: Mapped[IngestionPhase] = mapped_column(
        SQLEnum(IngestionPhase, native_enum=False, length=30),
        default=IngestionPhase.DISCOVERING,
        nullable=False,
    )

    # Ticker of the last entity fully processed, in selection order
    cursor: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Counts
    total_entities: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    entities_with_history: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    entities_updated_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timing
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_discovered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<IngestionPhaseState(phase='{self.phase.value}', total={self.total_entities})>"
