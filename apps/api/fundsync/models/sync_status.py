"""
Sync Status ORM Model

Ingestion cycle history:
- Cycle id and trigger (cli, api)
- Start/end timestamps
- Success/error counts
- Per-entity error details for debugging
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from fundsync.core.database import Base, utcnow


class SyncStatus(Base):
    """
    One row per ingestion cycle.

    Used for:
    - Monitoring ingestion health
    - Debugging failed entities
    """
    __tablename__ = "sync_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    cycle_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    sync_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default="ingestion"
    )  # 'ingestion', 'reset'

    # Timing
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Results
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default="running", nullable=False
    )  # 'running', 'completed', 'failed', 'partial'

    # {ticker: error message}
    errors: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Phase, batches, budget
    additional_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncStatus(cycle='{self.cycle_id}', status='{self.status}', success={self.success_count})>"

    @property
    def duration_seconds(self) -> Optional[float]:
        """Cycle duration in seconds."""
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None
