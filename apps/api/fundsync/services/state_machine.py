"""
Entity and phase transitions.

Every function here is pure: it reads the current state (plus the batch
outcome) and returns the column values to write, leaving persistence to
the progress store.

    PENDING    --claim-->                           PROCESSING
    PROCESSING --success-->                         COMPLETED
    PROCESSING --failure, error_count < max-->      PENDING
    PROCESSING --failure, error_count >= max-->     ERROR
    PROCESSING --stale-->                           PENDING
    COMPLETED  --refresh due-->                     PENDING
    any        --reset-->                           PENDING
"""

from datetime import datetime
from typing import Any, Iterable

from fundsync.models.entity_progress import EntityProgress, EntityStatus, PriorityClass
from fundsync.models.ingestion_phase import IngestionPhase
from fundsync.providers.base import Facet

MAX_ERROR_MESSAGE_LENGTH = 1000

FACET_FLAGS: dict[Facet, str] = {
    Facet.BASIC_PROFILE: "has_basic_profile",
    Facet.HISTORICAL_STATEMENTS: "has_historical_statements",
    Facet.TTM_UPDATE: "has_ttm_update",
    Facet.SECONDARY_DATA: "has_secondary_data",
}

CLAIMABLE = frozenset({EntityStatus.PENDING, EntityStatus.ERROR})


class InvalidTransitionError(ValueError):
    """Transition not allowed from the entity's current status."""


def claim(entity: EntityProgress, now: datetime) -> dict[str, Any]:
    if entity.status not in CLAIMABLE:
        raise InvalidTransitionError(f"Cannot claim {entity.ticker} in status {entity.status.value}")
    return {"status": EntityStatus.PROCESSING, "last_attempted_at": now}


def on_success(
    entity: EntityProgress,
    facets_completed: Iterable[Facet],
    now: datetime,
) -> dict[str, Any]:
    """PROCESSING -> COMPLETED. Facet flags only ever turn on here."""
    if entity.status != EntityStatus.PROCESSING:
        raise InvalidTransitionError(f"{entity.ticker} is not PROCESSING")
    updates: dict[str, Any] = {
        "status": EntityStatus.COMPLETED,
        "error_count": 0,
        "last_error": None,
        "priority": PriorityClass.NORMAL,
        "last_completed_at": now,
    }
    for facet in facets_completed:
        updates[FACET_FLAGS[facet]] = True
    return updates


def on_failure(
    entity: EntityProgress,
    error: BaseException,
    max_error_count: int,
) -> dict[str, Any]:
    """PROCESSING -> PENDING, or ERROR once the error ceiling is reached."""
    if entity.status != EntityStatus.PROCESSING:
        raise InvalidTransitionError(f"{entity.ticker} is not PROCESSING")
    error_count = entity.error_count + 1
    message = str(error) or type(error).__name__
    return {
        "status": EntityStatus.ERROR if error_count >= max_error_count else EntityStatus.PENDING,
        "error_count": error_count,
        "last_error": message[:MAX_ERROR_MESSAGE_LENGTH],
    }


def reclaim_updates() -> dict[str, Any]:
    """Stale PROCESSING -> PENDING."""
    return {"status": EntityStatus.PENDING}


def reopen_updates() -> dict[str, Any]:
    """COMPLETED -> PENDING for a periodic refresh. Facet flags stay set."""
    return {"status": EntityStatus.PENDING}


def request_updates() -> dict[str, Any]:
    """Explicitly requested entity: scheduled ahead of everything else."""
    return {
        "status": EntityStatus.PENDING,
        "priority": PriorityClass.REQUESTED,
        "error_count": 0,
    }


def reset_updates() -> dict[str, Any]:
    """Any -> PENDING, clearing every flag and the error history."""
    updates: dict[str, Any] = {
        "status": EntityStatus.PENDING,
        "error_count": 0,
        "last_error": None,
        "priority": PriorityClass.NORMAL,
        "last_attempted_at": None,
        "last_completed_at": None,
    }
    for flag in FACET_FLAGS.values():
        updates[flag] = False
    return updates


def apply(entity: EntityProgress, updates: dict[str, Any]) -> EntityProgress:
    for name, value in updates.items():
        setattr(entity, name, value)
    return entity


def derive_phase(
    total: int,
    with_history: int,
    pending: int,
    processing: int,
    abandoned: int = 0,
) -> IngestionPhase:
    """
    Phase implied by the aggregate of entity-level state.

    ``abandoned`` counts ERROR entities without history; they no longer hold
    the historical phase open.
    """
    if total == 0:
        return IngestionPhase.DISCOVERING
    if with_history + abandoned < total:
        return IngestionPhase.PROCESSING_HISTORICAL
    if pending + processing > 0:
        return IngestionPhase.PROCESSING_TTM
    return IngestionPhase.COMPLETED


def advance_phase(current: IngestionPhase, derived: IngestionPhase) -> IngestionPhase:
    """
    Move forward only. COMPLETED -> PROCESSING_TTM is the refresh loop and
    the one allowed step back.
    """
    if current == IngestionPhase.COMPLETED and derived == IngestionPhase.PROCESSING_TTM:
        return derived
    if derived.rank > current.rank:
        return derived
    return current

