"""
Core module - Application infrastructure and configuration.
"""

from fundsync.core.config import settings
from fundsync.core.database import get_db, engine, Base
from fundsync.core.exceptions import FundSyncException, ProviderError, ReconciliationError

__all__ = [
    "settings",
    "get_db",
    "engine",
    "Base",
    "FundSyncException",
    "ProviderError",
    "ReconciliationError",
]
