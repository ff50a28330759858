"""
Services module - Scheduling, progress tracking and reconciliation.
"""

from fundsync.services.progress_store import EntityProgressStore, SqlProgressStore
from fundsync.services.reconciler import ConsolidatedRecord, Reconciler
from fundsync.services.scheduler import CycleOptions, CycleSummary, IngestionScheduler, create_scheduler

__all__ = [
    "EntityProgressStore",
    "SqlProgressStore",
    "ConsolidatedRecord",
    "Reconciler",
    "CycleOptions",
    "CycleSummary",
    "IngestionScheduler",
    "create_scheduler",
]
