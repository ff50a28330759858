"""
Ingestion API Endpoints

Trigger for one budgeted ingestion cycle (meant to be called by a cron or
serverless scheduler), plus progress status, per-entity progress, reset
and cycle history.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from fundsync.api.deps import ProgressStoreDep, RegistryDep, SessionFactoryDep
from fundsync.core.config import settings
from fundsync.models.entity_progress import EntityStatus, PriorityClass
from fundsync.models.ingestion_phase import IngestionPhase
from fundsync.services.cycle_history import CycleHistory
from fundsync.services.scheduler import CycleOptions, CycleSummary, create_scheduler

router = APIRouter()
logger = logging.getLogger(__name__)

# One cycle at a time per process.
_cycle_lock = asyncio.Lock()


class RunRequest(BaseModel):
    """Options for one ingestion cycle."""
    budget_ms: Optional[int] = Field(default=None, ge=1)
    tickers: Optional[List[str]] = None
    force_refresh: bool = False
    reset_all: bool = False
    include_errors: bool = False


class ResetRequest(BaseModel):
    """Tickers to reset; all entities when omitted."""
    tickers: Optional[List[str]] = None


class ResetResponse(BaseModel):
    status: str
    reset: int


class StatusResponse(BaseModel):
    """Global phase plus entity-level aggregate."""
    phase: IngestionPhase
    cursor: Optional[str]
    last_run_at: Optional[datetime]
    last_discovered_at: Optional[datetime]
    total: int
    by_status: dict[str, int]
    with_basic_profile: int
    with_history: int
    with_ttm_update: int
    with_secondary_data: int
    updated_today: int
    needs_history: int
    needs_ttm_update: int
    errors_without_history: int


class EntityProgressResponse(BaseModel):
    """Progress of a single entity."""
    ticker: str
    status: EntityStatus
    priority: PriorityClass
    has_basic_profile: bool
    has_historical_statements: bool
    has_ttm_update: bool
    has_secondary_data: bool
    error_count: int
    last_error: Optional[str]
    last_attempted_at: Optional[datetime]
    last_completed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class CycleHistoryItem(BaseModel):
    """Single cycle history entry."""
    id: int
    cycle_id: Optional[str]
    sync_type: str
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_seconds: Optional[float]
    success_count: int
    error_count: int
    errors: Optional[dict] = None
    additional_data: Optional[dict] = None


@router.post(
    "/run",
    response_model=CycleSummary,
    summary="Run Ingestion Cycle",
    description="Run one time-budgeted ingestion cycle and report its outcome.",
)
async def run_ingestion(
    request: RunRequest,
    registry: RegistryDep,
    session_factory: SessionFactoryDep,
) -> CycleSummary:
    if _cycle_lock.locked():
        raise HTTPException(status_code=409, detail="An ingestion cycle is already running")

    async with _cycle_lock:
        scheduler = create_scheduler(registry, session_factory)
        options = CycleOptions(
            target_entities=request.tickers,
            force_full_refresh=request.force_refresh,
            reset_all=request.reset_all,
            exclude_errors=not request.include_errors,
        )
        return await scheduler.run_cycle(request.budget_ms or settings.cycle_budget_ms, options)


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Ingestion Status",
)
async def ingestion_status(store: ProgressStoreDep) -> StatusResponse:
    state = await store.load_global_phase()
    summary = await store.aggregate()
    return StatusResponse(
        phase=state.phase,
        cursor=state.cursor,
        last_run_at=state.last_run_at,
        last_discovered_at=state.last_discovered_at,
        total=summary.total,
        by_status=summary.by_status,
        with_basic_profile=summary.with_basic_profile,
        with_history=summary.with_history,
        with_ttm_update=summary.with_ttm_update,
        with_secondary_data=summary.with_secondary_data,
        updated_today=summary.updated_today,
        needs_history=summary.needs_history,
        needs_ttm_update=summary.needs_ttm_update,
        errors_without_history=summary.errors_without_history,
    )


@router.get(
    "/entities/{ticker}",
    response_model=EntityProgressResponse,
    summary="Entity Progress",
)
async def entity_progress(ticker: str, store: ProgressStoreDep) -> EntityProgressResponse:
    entity = await store.get(ticker)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Unknown ticker: {ticker.upper()}")
    return EntityProgressResponse.model_validate(entity)


@router.post(
    "/reset",
    response_model=ResetResponse,
    summary="Reset Entity Progress",
    description="Return entities to PENDING with cleared flags and error history.",
)
async def reset_progress(request: ResetRequest, store: ProgressStoreDep) -> ResetResponse:
    if _cycle_lock.locked():
        raise HTTPException(status_code=409, detail="An ingestion cycle is running")
    count = await store.reset_entity_progress(request.tickers)
    return ResetResponse(status="ok", reset=count)


@router.get(
    "/history",
    response_model=List[CycleHistoryItem],
    summary="Cycle History",
)
async def cycle_history(
    session_factory: SessionFactoryDep,
    limit: int = Query(default=20, ge=1, le=100),
) -> List[CycleHistoryItem]:
    rows = await CycleHistory(session_factory).recent(limit)
    return [
        CycleHistoryItem(
            id=row.id,
            cycle_id=row.cycle_id,
            sync_type=row.sync_type,
            status=row.status,
            started_at=row.started_at,
            completed_at=row.completed_at,
            duration_seconds=row.duration_seconds,
            success_count=row.success_count or 0,
            error_count=row.error_count or 0,
            errors=row.errors,
            additional_data=row.additional_data,
        )
        for row in rows
    ]
