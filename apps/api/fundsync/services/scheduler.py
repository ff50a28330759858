"""
Time-budgeted ingestion scheduler.

One ``run_cycle`` call:
1. Reads the global phase (failure aborts the cycle)
2. Applies options (reset, targeted entities, forced refresh)
3. Discovers the universe when due and reopens COMPLETED entities whose
   TTM data is due for a refresh
4. Reclaims entities stuck in PROCESSING
5. Dispatches batches of eligible entities through the concurrency
   manager, each task wrapped as with_timeout(retry(task)), until the
   budget runs out or nothing is eligible
6. Recomputes the global phase once and records the cycle

Budget accounting charges each dispatched entity at least its estimated
cost, and never dispatches a batch whose worst-case timeout budget
exceeds the time left.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fundsync.core.concurrency import ConcurrencyManager
from fundsync.core.config import Settings, settings as default_settings
from fundsync.core.database import utcnow
from fundsync.core.exceptions import CycleAbortedError, FundSyncException
from fundsync.core.logging_config import current_cycle_id
from fundsync.core.retry import retry
from fundsync.core.timeout import with_timeout
from fundsync.models.entity_progress import EntityProgress
from fundsync.models.ingestion_phase import IngestionPhase, IngestionPhaseState
from fundsync.providers.registry import ProviderRegistry
from fundsync.providers.ward import WardProvider
from fundsync.services import state_machine
from fundsync.services.cycle_history import CycleHistory
from fundsync.services.ingestion_task import IngestionResult, IngestionTask
from fundsync.services.progress_store import EntityProgressStore, SqlProgressStore
from fundsync.services.reconciler import Reconciler
from fundsync.services.record_store import FinancialRecordStore
from fundsync.services.universe import UniverseSource, build_universe

logger = logging.getLogger(__name__)


class CycleOptions(BaseModel):
    """Invoker options for one cycle."""
    target_entities: Optional[list[str]] = None
    force_full_refresh: bool = False
    reset_all: bool = False
    exclude_errors: bool = True


class CycleSummary(BaseModel):
    """Outcome of one cycle."""
    cycle_id: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    elapsed_ms: float = 0.0
    errors: dict[str, str] = Field(default_factory=dict)
    phase: IngestionPhase
    batches: int = 0
    stop_reason: str = ""
    discovered: int = 0
    reclaimed: int = 0
    reopened: int = 0


class IngestionScheduler:
    """
    Drives ingestion cycles against an injected progress store.

    Args:
        progress_store: Entity and phase state
        task: Fetch-and-reconcile callable for one entity
        universe: Ticker discovery source (discovery is skipped when None)
        history: Cycle history writer (optional)
        config: Settings overriding the global ones
        clock: Monotonic seconds, for budget accounting
        now: Wall-clock timestamps written to the store
    """

    def __init__(
        self,
        progress_store: EntityProgressStore,
        task: IngestionTask,
        universe: Optional[UniverseSource] = None,
        history: Optional[CycleHistory] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = progress_store
        self.task = task
        self.universe = universe
        self.history = history
        self.config = config or default_settings
        self._clock = clock
        self._now = now
        self.manager = ConcurrencyManager(self.config.max_concurrency)

    async def run_cycle(
        self,
        budget_ms: Optional[int] = None,
        options: Optional[CycleOptions] = None,
    ) -> CycleSummary:
        """
        Run one budgeted cycle.

        Raises:
            CycleAbortedError: the global phase could not be read
        """
        budget_ms = budget_ms if budget_ms is not None else self.config.cycle_budget_ms
        options = options or CycleOptions()
        cycle_id = uuid4().hex[:12]
        context = current_cycle_id.set(cycle_id)
        try:
            return await self._run_cycle(cycle_id, budget_ms, options)
        finally:
            current_cycle_id.reset(context)

    async def _run_cycle(self, cycle_id: str, budget_ms: int, options: CycleOptions) -> CycleSummary:
        start = self._clock()
        config = self.config

        try:
            state = await self.store.load_global_phase()
        except (SQLAlchemyError, FundSyncException) as e:
            logger.error(f"Cannot read global phase: {e}")
            raise CycleAbortedError("Cannot read global ingestion phase", stage="load_phase") from e

        summary = CycleSummary(cycle_id=cycle_id, phase=state.phase)
        history_id = None
        if self.history is not None:
            history_id = await self.history.start(cycle_id, self._now())

        logger.info(f"Cycle started: phase={state.phase.value}, budget={budget_ms}ms")

        try:
            targets = await self._apply_options(state, options, summary)
            await self._discover(state, summary)

            summary.reopened += await self.store.reopen_completed(
                self._now() - timedelta(hours=config.ttm_refresh_hours)
            )

            summary.reclaimed = await self.store.reclaim_stale(
                self._now() - timedelta(seconds=config.stale_processing_seconds)
            )

            last_ticker = await self._dispatch_loop(start, budget_ms, options, targets, summary)

            await self._advance_phase(state, last_ticker)
            summary.phase = state.phase
        except Exception:
            if self.history is not None and history_id is not None:
                await self.history.finish(
                    history_id, summary.succeeded, summary.failed, summary.errors, status="failed"
                )
            raise

        summary.elapsed_ms = (self._clock() - start) * 1000

        if self.history is not None and history_id is not None:
            await self.history.finish(
                history_id,
                summary.succeeded,
                summary.failed,
                summary.errors,
                additional_data={
                    "phase": summary.phase.value,
                    "batches": summary.batches,
                    "budget_ms": budget_ms,
                    "stop_reason": summary.stop_reason,
                },
            )

        logger.info(
            f"Cycle finished: attempted={summary.attempted} succeeded={summary.succeeded} "
            f"failed={summary.failed} batches={summary.batches} phase={summary.phase.value} "
            f"stop={summary.stop_reason} elapsed={summary.elapsed_ms:.0f}ms"
        )
        return summary

    async def _apply_options(
        self,
        state: IngestionPhaseState,
        options: CycleOptions,
        summary: CycleSummary,
    ) -> Optional[list[str]]:
        if options.reset_all:
            await self.store.reset_entity_progress(None)
            state.phase = IngestionPhase.DISCOVERING
            state.cursor = None
            logger.warning("All entity progress reset")

        targets = None
        if options.target_entities:
            targets = await self.store.request_entities(options.target_entities)
            logger.info(f"Targeted entities: {', '.join(targets)}")

        if options.force_full_refresh:
            summary.reopened += await self.store.reopen_completed(None)

        return targets

    def _discovery_due(self, state: IngestionPhaseState) -> bool:
        if state.phase == IngestionPhase.DISCOVERING or state.last_discovered_at is None:
            return True
        age = self._now() - state.last_discovered_at
        return age >= timedelta(hours=self.config.universe_refresh_hours)

    async def _discover(self, state: IngestionPhaseState, summary: CycleSummary) -> None:
        if self.universe is None or not self._discovery_due(state):
            return
        try:
            tickers = await self.universe.list_tickers()
        except FundSyncException as e:
            logger.error(f"Discovery failed: {e.message}")
            return
        summary.discovered = await self.store.register_entities(tickers)
        state.last_discovered_at = self._now()
        logger.info(f"Discovery: {len(tickers)} tickers listed, {summary.discovered} new")

    def _plan_batch(self, remaining_ms: float) -> tuple[int, float]:
        """
        Batch size and per-task timeout for the remaining time.

        The timeout is capped at ``remaining_ms`` and the batch at as many
        waves of timeouts as fit, so the worst case still ends in time.
        Returns size 0 when the capped timeout would drop below one item
        estimate.
        """
        config = self.config
        timeout_ms = min(float(config.per_item_timeout_ms), remaining_ms)
        if timeout_ms < config.per_item_estimate_ms:
            return 0, timeout_ms
        batch_size = max(1, min(int(remaining_ms // config.per_item_estimate_ms), config.max_batch_size))
        waves = int(remaining_ms // timeout_ms)
        return min(batch_size, waves * config.max_concurrency), timeout_ms

    async def _dispatch_loop(
        self,
        start: float,
        budget_ms: int,
        options: CycleOptions,
        targets: Optional[list[str]],
        summary: CycleSummary,
    ) -> Optional[str]:
        config = self.config
        planned_ms = 0.0
        last_ticker = None
        attempted: set[str] = set()

        while True:
            measured_ms = (self._clock() - start) * 1000
            elapsed_ms = max(measured_ms, planned_ms)
            if elapsed_ms >= budget_ms:
                summary.stop_reason = "budget_exhausted"
                break

            remaining_ms = budget_ms - elapsed_ms
            batch_size, timeout_ms = self._plan_batch(remaining_ms)
            if batch_size == 0:
                summary.stop_reason = "remaining_below_estimate"
                break

            entities = await self.store.select_eligible(
                batch_size,
                max_error_count=config.max_error_count,
                include_errors=not options.exclude_errors,
                tickers=targets,
                exclude=attempted,
            )
            if not entities:
                summary.stop_reason = "no_eligible_entities"
                break

            claimed = await self.store.mark_processing(entities, self._now())
            summary.batches += 1
            summary.attempted += len(claimed)
            attempted.update(entity.ticker for entity in claimed)
            planned_ms += len(claimed) * config.per_item_estimate_ms
            logger.info(
                f"Batch {summary.batches}: {len(claimed)} entities "
                f"(remaining {remaining_ms:.0f}ms)"
            )

            outcomes = await self.manager.execute_batch(
                claimed, lambda entity: self._run_entity(entity, timeout_ms)
            )

            for outcome in outcomes:
                entity: EntityProgress = outcome.item
                if outcome.ok:
                    result: IngestionResult = outcome.value
                    updates = state_machine.on_success(entity, result.facets, self._now())
                else:
                    updates = state_machine.on_failure(entity, outcome.error, config.max_error_count)
                state_machine.apply(entity, updates)

                try:
                    await self.store.save_entity_progress(entity)
                except SQLAlchemyError as e:
                    # Left PROCESSING; reclaimed once stale.
                    logger.error(f"Failed to save progress for {entity.ticker}: {e}")
                    summary.failed += 1
                    summary.errors[entity.ticker] = f"progress not saved: {e}"
                    continue

                if outcome.ok:
                    summary.succeeded += 1
                    last_ticker = entity.ticker
                else:
                    summary.failed += 1
                    summary.errors[entity.ticker] = entity.last_error or ""
                    logger.warning(
                        f"{entity.ticker} failed ({entity.error_count}x, now {entity.status.value}): "
                        f"{entity.last_error}"
                    )

        return last_ticker

    async def _run_entity(self, entity: EntityProgress, timeout_ms: float) -> IngestionResult:
        config = self.config
        return await with_timeout(
            lambda token: retry(
                lambda: self.task.run(entity, token),
                config.retry_max_attempts,
                config.retry_initial_delay,
                max_delay=config.retry_max_delay,
                label=entity.ticker,
            ),
            timeout_ms,
            label=entity.ticker,
        )

    async def _advance_phase(self, state: IngestionPhaseState, last_ticker: Optional[str]) -> None:
        """Recompute the phase from entity-level truth and persist it."""
        now = self._now()
        aggregate = await self.store.aggregate(now)
        derived = state_machine.derive_phase(
            aggregate.total,
            aggregate.with_history,
            aggregate.pending,
            aggregate.processing,
            abandoned=aggregate.errors_without_history,
        )
        previous = state.phase
        state.phase = state_machine.advance_phase(previous, derived)
        state.total_entities = aggregate.total
        state.entities_with_history = aggregate.with_history
        state.entities_updated_today = aggregate.updated_today
        state.last_run_at = now
        if last_ticker is not None:
            state.cursor = last_ticker
        await self.store.save_global_phase(state)

        if state.phase != previous:
            logger.info(f"Phase advanced: {previous.value} -> {state.phase.value}")
        logger.info(aggregate.format())


def create_scheduler(
    registry: ProviderRegistry,
    session_factory: Optional[async_sessionmaker] = None,
    config: Optional[Settings] = None,
    universe: Optional[UniverseSource] = None,
) -> IngestionScheduler:
    """Wire the default stores, task and universe around ``registry``."""
    config = config or default_settings
    record_store = FinancialRecordStore(session_factory)
    task = IngestionTask(
        registry,
        record_store,
        Reconciler(priority=registry.priority, min_large_magnitude=config.min_large_magnitude),
    )
    if universe is None:
        ward = registry.get("ward")
        universe = build_universe(config, ward=ward if isinstance(ward, WardProvider) else None)
    return IngestionScheduler(
        SqlProgressStore(session_factory),
        task,
        universe=universe,
        history=CycleHistory(session_factory),
        config=config,
    )
