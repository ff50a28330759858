"""
Tests for the time-budgeted ingestion scheduler.
"""

import time
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from fundsync.core.config import Settings
from fundsync.core.database import utcnow
from fundsync.core.exceptions import (
    CycleAbortedError,
    DatabaseError,
    ProviderNotFoundError,
    ProviderUnavailableError,
)
from fundsync.models.entity_progress import EntityStatus, PriorityClass
from fundsync.models.ingestion_phase import IngestionPhase
from fundsync.providers.base import Facet
from fundsync.providers.registry import ProviderRegistry
from fundsync.providers.ward import WardProvider
from fundsync.services.progress_store import SqlProgressStore
from fundsync.services.record_store import FinancialRecordStore
from fundsync.services.scheduler import CycleOptions

from conftest import PROVIDER_PRIORITY, make_providers

SEVEN = ["ABEV3", "BBAS3", "ITUB4", "PETR4", "VALE3", "WEGE3", "SUZB3"]


class TestBudgetedCycles:

    async def test_seven_tickers_resume_across_cycles(self, make_scheduler, progress_store):
        scheduler = make_scheduler(SEVEN)

        first = await scheduler.run_cycle(10_000)

        assert first.discovered == 7
        assert first.attempted == 5
        assert first.succeeded == 5
        assert first.batches == 1
        assert first.stop_reason == "budget_exhausted"
        assert first.phase == IngestionPhase.PROCESSING_HISTORICAL
        summary = await progress_store.aggregate()
        assert summary.pending == 2
        assert summary.with_history == 5

        second = await scheduler.run_cycle(10_000)

        assert second.attempted == 2
        assert second.succeeded == 2
        assert second.stop_reason == "no_eligible_entities"
        assert second.phase == IngestionPhase.COMPLETED
        summary = await progress_store.aggregate()
        assert summary.with_history == 7
        assert summary.completed == 7

        state = await progress_store.load_global_phase()
        assert state.phase == IngestionPhase.COMPLETED
        assert state.total_entities == 7
        assert state.entities_with_history == 7
        assert state.cursor in SEVEN
        assert scheduler.manager.peak_in_flight <= 5

    async def test_completed_entities_are_not_redone(self, make_scheduler, providers):
        scheduler = make_scheduler(["PETR4", "VALE3"])
        await scheduler.run_cycle(10_000)
        ward_calls = len(providers["ward"].calls)

        summary = await scheduler.run_cycle(10_000)

        assert summary.attempted == 0
        assert summary.phase == IngestionPhase.COMPLETED
        assert len(providers["ward"].calls) == ward_calls

    async def test_ttm_refresh_after_completion(self, make_scheduler, providers, progress_store):
        await make_scheduler(["PETR4", "VALE3"]).run_cycle(10_000)
        ward_calls = len(providers["ward"].calls)

        later = make_scheduler(["PETR4", "VALE3"], now=lambda: utcnow() + timedelta(days=2))
        summary = await later.run_cycle(10_000)

        assert summary.reopened == 2
        assert summary.succeeded == 2
        assert summary.phase == IngestionPhase.COMPLETED
        # Historical facet already satisfied; only TTM is refetched
        assert len(providers["ward"].calls) == ward_calls
        assert providers["fundamentus"].tickers_called() == {"PETR4", "VALE3"}

    async def test_no_entities(self, make_scheduler):
        summary = await make_scheduler([]).run_cycle(10_000)
        assert summary.attempted == 0
        assert summary.stop_reason == "no_eligible_entities"
        assert summary.phase == IngestionPhase.DISCOVERING

    async def test_budget_smaller_than_one_estimate(self, make_scheduler):
        summary = await make_scheduler(SEVEN).run_cycle(1_000)
        assert summary.attempted == 0
        assert summary.stop_reason == "remaining_below_estimate"

    async def test_returns_within_budget_when_everything_times_out(self, make_scheduler):
        config = Settings(
            environment="test",
            cycle_budget_ms=1_000,
            per_item_estimate_ms=100,
            per_item_timeout_ms=200,
            max_batch_size=10,
            max_concurrency=2,
            retry_max_attempts=1,
            retry_initial_delay=0.01,
            retry_max_delay=0.02,
            provider_priority=PROVIDER_PRIORITY,
        )
        slow = ProviderRegistry(make_providers(delay=5).values(), priority=PROVIDER_PRIORITY)
        scheduler = make_scheduler(
            [f"T{i:03d}3" for i in range(20)],
            config=config,
            clock=time.monotonic,
            registry_override=slow,
        )

        start = time.perf_counter()
        summary = await scheduler.run_cycle(1_000)
        elapsed_ms = (time.perf_counter() - start) * 1000

        assert summary.attempted > 0
        assert summary.succeeded == 0
        assert summary.failed == summary.attempted
        assert all("deadline" in error for error in summary.errors.values())
        # budget + one task timeout, plus slack for the test database
        assert elapsed_ms < 1_000 + 200 + 500


class TestFailureHandling:

    async def test_failures_are_isolated(self, make_scheduler, providers, progress_store):
        providers["ward"].always_fail["VALE3"] = ProviderNotFoundError("ward", "VALE3")

        summary = await make_scheduler(["PETR4", "VALE3", "ITUB4"]).run_cycle(10_000)

        assert summary.attempted == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert list(summary.errors) == ["VALE3"]
        vale = await progress_store.get("VALE3")
        assert vale.status == EntityStatus.PENDING
        assert vale.error_count == 1
        assert "no data for VALE3" in vale.last_error

    async def test_failed_entity_not_retried_within_cycle(self, make_scheduler, providers):
        providers["ward"].always_fail["VALE3"] = ProviderNotFoundError("ward", "VALE3")
        summary = await make_scheduler(["VALE3"]).run_cycle(10_000)
        assert summary.attempted == 1
        assert providers["ward"].calls == [("VALE3", Facet.HISTORICAL_STATEMENTS)]

    async def test_all_entities_fail(self, make_scheduler, providers):
        for ticker in SEVEN:
            providers["ward"].always_fail[ticker] = ProviderNotFoundError("ward", ticker)

        summary = await make_scheduler(SEVEN).run_cycle(10_000)

        assert summary.succeeded == 0
        assert summary.failed == summary.attempted == 5
        assert summary.phase == IngestionPhase.PROCESSING_HISTORICAL

    async def test_transient_error_is_retried(self, make_scheduler, providers):
        providers["ward"].failures["PETR4"] = [ProviderUnavailableError("ward", status_code=503)]

        summary = await make_scheduler(["PETR4"]).run_cycle(10_000)

        assert summary.succeeded == 1
        assert providers["ward"].calls.count(("PETR4", Facet.HISTORICAL_STATEMENTS)) == 2

    async def test_exhausted_retries_fail_the_entity(self, make_scheduler, providers):
        providers["ward"].always_fail["PETR4"] = ProviderUnavailableError("ward", status_code=503)

        summary = await make_scheduler(["PETR4"]).run_cycle(10_000)

        assert summary.failed == 1
        assert "Failed after 2 attempt(s)" in summary.errors["PETR4"]

    async def test_error_ceiling_excludes_entity(self, make_scheduler, providers, progress_store):
        providers["ward"].always_fail["BAD3"] = ProviderNotFoundError("ward", "BAD3")
        scheduler = make_scheduler(["BAD3"])

        for _ in range(3):
            assert (await scheduler.run_cycle(10_000)).attempted == 1

        bad = await progress_store.get("BAD3")
        assert bad.status == EntityStatus.ERROR
        assert bad.error_count == 3

        assert (await scheduler.run_cycle(10_000)).attempted == 0

        retried = await scheduler.run_cycle(10_000, CycleOptions(exclude_errors=False))
        assert retried.attempted == 1
        assert (await progress_store.get("BAD3")).error_count == 4
        assert (await scheduler.run_cycle(10_000, CycleOptions(exclude_errors=False))).attempted == 0

    async def test_abandoned_entity_does_not_block_refresh(self, make_scheduler, providers, progress_store):
        providers["ward"].always_fail["BAD3"] = ProviderNotFoundError("ward", "BAD3")
        scheduler = make_scheduler(["PETR4", "VALE3", "BAD3"])

        for _ in range(3):
            summary = await scheduler.run_cycle(10_000)

        assert (await progress_store.get("BAD3")).status == EntityStatus.ERROR
        assert summary.phase == IngestionPhase.COMPLETED
        aggregate = await progress_store.aggregate()
        assert aggregate.with_history == 2
        assert aggregate.errors_without_history == 1

        fundamentus_calls = len(providers["fundamentus"].calls)
        later = make_scheduler(["PETR4", "VALE3", "BAD3"], now=lambda: utcnow() + timedelta(days=2))
        summary = await later.run_cycle(10_000)

        assert summary.reopened == 2
        assert summary.attempted == 2
        assert summary.succeeded == 2
        assert len(providers["fundamentus"].calls) == fundamentus_calls + 2

    async def test_refresh_runs_while_history_is_incomplete(self, make_scheduler, providers, progress_store):
        providers["ward"].always_fail["BAD3"] = ProviderNotFoundError("ward", "BAD3")
        await make_scheduler(["PETR4", "BAD3"]).run_cycle(10_000)
        assert (await progress_store.load_global_phase()).phase == IngestionPhase.PROCESSING_HISTORICAL

        later = make_scheduler(["PETR4", "BAD3"], now=lambda: utcnow() + timedelta(days=2))
        summary = await later.run_cycle(10_000)

        assert summary.reopened == 1
        assert (await progress_store.get("PETR4")).status == EntityStatus.COMPLETED

    async def test_malformed_required_payload_fails_entity(self, make_scheduler, providers, progress_store):

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"historicalStocks": "oops"})

        ward = WardProvider(
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            base_url="https://ward.test",
            token="jwt",
        )
        optional = [provider for name, provider in providers.items() if name != "ward"]
        registry = ProviderRegistry([ward, *optional], priority=PROVIDER_PRIORITY)

        summary = await make_scheduler(["PETR4"], registry_override=registry).run_cycle(10_000)

        assert summary.succeeded == 0
        assert summary.failed == 1
        entity = await progress_store.get("PETR4")
        assert entity.status == EntityStatus.PENDING
        assert entity.error_count == 1
        assert entity.has_historical_statements is False
        assert "Unexpected Ward payload" in entity.last_error

    async def test_persistence_error_fails_entity(self, make_scheduler, session_factory, progress_store):

        class FailingRecordStore(FinancialRecordStore):
            async def upsert_consolidated_record(self, ticker, year, fields, providers, sources=None):
                if ticker == "VALE3":
                    raise DatabaseError("disk full", operation="upsert")
                await super().upsert_consolidated_record(ticker, year, fields, providers, sources)

        scheduler = make_scheduler(
            ["PETR4", "VALE3"], record_store_override=FailingRecordStore(session_factory)
        )
        summary = await scheduler.run_cycle(10_000)

        assert summary.succeeded == 1
        assert summary.errors["VALE3"] == "disk full"
        assert (await progress_store.get("VALE3")).status == EntityStatus.PENDING

    async def test_stale_processing_is_reclaimed(self, make_scheduler, progress_store):
        await progress_store.register_entities(["PETR4"])
        entity = await progress_store.get("PETR4")
        entity.status = EntityStatus.PROCESSING
        entity.last_attempted_at = utcnow() - timedelta(hours=2)
        await progress_store.save_entity_progress(entity)

        summary = await make_scheduler(["PETR4"]).run_cycle(10_000)

        assert summary.reclaimed == 1
        assert summary.succeeded == 1
        assert (await progress_store.get("PETR4")).status == EntityStatus.COMPLETED

    async def test_unreadable_phase_aborts_cycle(self, make_scheduler, session_factory):

        class BrokenStore(SqlProgressStore):
            async def load_global_phase(self):
                raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        scheduler = make_scheduler(["PETR4"], store_override=BrokenStore(session_factory))
        with pytest.raises(CycleAbortedError):
            await scheduler.run_cycle(10_000)


class TestCycleOptions:

    async def test_targets_are_processed_first_and_alone(self, make_scheduler, progress_store):
        summary = await make_scheduler(SEVEN).run_cycle(
            10_000, CycleOptions(target_entities=["zzzz3"])
        )

        assert summary.attempted == 1
        assert summary.succeeded == 1
        target = await progress_store.get("ZZZZ3")
        assert target.status == EntityStatus.COMPLETED
        assert target.priority == PriorityClass.NORMAL
        assert (await progress_store.aggregate()).pending == 7

    async def test_force_full_refresh(self, make_scheduler, providers):
        scheduler = make_scheduler(["PETR4", "VALE3"])
        await scheduler.run_cycle(10_000)
        ward_calls = len(providers["ward"].calls)

        summary = await scheduler.run_cycle(10_000, CycleOptions(force_full_refresh=True))

        assert summary.reopened == 2
        assert summary.attempted == 2
        assert summary.phase == IngestionPhase.COMPLETED
        assert len(providers["ward"].calls) == ward_calls

    async def test_reset_all_reprocesses_everything(self, make_scheduler, providers, progress_store):
        scheduler = make_scheduler(["PETR4", "VALE3"])
        await scheduler.run_cycle(10_000)

        summary = await scheduler.run_cycle(10_000, CycleOptions(reset_all=True))

        assert summary.attempted == 2
        assert summary.phase == IngestionPhase.COMPLETED
        assert providers["ward"].calls.count(("PETR4", Facet.HISTORICAL_STATEMENTS)) == 2


class TestCycleHistory:

    async def test_cycle_is_recorded(self, make_scheduler, providers, cycle_history):
        providers["ward"].always_fail["VALE3"] = ProviderNotFoundError("ward", "VALE3")

        summary = await make_scheduler(["PETR4", "VALE3"]).run_cycle(10_000)

        rows = await cycle_history.recent()
        assert len(rows) == 1
        assert rows[0].cycle_id == summary.cycle_id
        assert rows[0].status == "partial"
        assert rows[0].success_count == 1
        assert rows[0].error_count == 1
        assert "VALE3" in rows[0].errors
        assert rows[0].additional_data["phase"] == summary.phase.value
