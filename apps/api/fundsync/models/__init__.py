"""
Models module - SQLAlchemy ORM models for the FundSync database.

- Entity progress & global ingestion phase
- Consolidated financial records
- Cycle history
"""

from fundsync.models.entity_progress import EntityProgress, EntityStatus, PriorityClass
from fundsync.models.ingestion_phase import IngestionPhase, IngestionPhaseState
from fundsync.models.financial_record import (
    FIELD_GROUPS,
    FINANCIAL_FIELDS,
    LARGE_MAGNITUDE_FIELDS,
    FinancialRecord,
)
from fundsync.models.sync_status import SyncStatus

__all__ = [
    # Progress
    "EntityProgress",
    "EntityStatus",
    "PriorityClass",
    "IngestionPhase",
    "IngestionPhaseState",
    # Financials
    "FinancialRecord",
    "FIELD_GROUPS",
    "FINANCIAL_FIELDS",
    "LARGE_MAGNITUDE_FIELDS",
    # Tracking
    "SyncStatus",
]
