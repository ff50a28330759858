"""
Shared test fixtures.

Provides a per-test SQLite database, the stores built on it, fake
providers, a scheduler factory and an API client.
Uses a file-backed SQLite database so concurrent sessions do not share
one connection.
"""
import asyncio
import os
import tempfile
from datetime import date
from typing import Any, AsyncGenerator, Iterable, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set environment variables for testing BEFORE importing anything
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'fundsync_test.db')}"
)
os.environ["LOG_LEVEL"] = "WARNING"

from fundsync.api.deps import get_registry, get_session_factory
from fundsync.api.main import app
from fundsync.core.config import Settings
from fundsync.core.database import Base, utcnow
from fundsync.models import *  # Ensure all models are loaded for metadata
from fundsync.providers.base import Facet, FundamentalsProvider, PartialRecord, ProviderRequest
from fundsync.providers.registry import ProviderRegistry
from fundsync.services.cycle_history import CycleHistory
from fundsync.services.ingestion_task import IngestionTask
from fundsync.services.progress_store import SqlProgressStore
from fundsync.services.reconciler import Reconciler
from fundsync.services.record_store import FinancialRecordStore
from fundsync.services.scheduler import IngestionScheduler
from fundsync.services.universe import StaticUniverse

PROVIDER_PRIORITY = ["ward", "fundamentus", "brapi_pro", "brapi_quote"]
THIS_YEAR = date.today().year


class FakeProvider(FundamentalsProvider):
    """
    In-memory provider.

    ``records`` maps year -> fields and is served for every ticker unless
    ``overrides`` has an entry for it. ``failures`` holds errors raised on
    successive calls for a ticker; ``always_fail`` errors are raised on
    every call.
    """

    def __init__(
        self,
        name: str,
        facets: Iterable[Facet],
        records: Optional[dict[int, dict[str, Any]]] = None,
        required: bool = False,
        delay: float = 0.0,
    ):
        super().__init__(base_url="http://fake.test", token="token")
        self.name = name
        self.facets = frozenset(facets)
        self.required = required
        self.records = records or {}
        self.overrides: dict[str, dict[int, dict[str, Any]]] = {}
        self.failures: dict[str, list[BaseException]] = {}
        self.always_fail: dict[str, BaseException] = {}
        self.delay = delay
        self.calls: list[tuple[str, Facet]] = []

    def transform_query(self, ticker: str, facet: Facet) -> ProviderRequest:
        return ProviderRequest(url=f"{self.base_url}/{ticker}")

    def transform_data(self, ticker: str, facet: Facet, data: Any) -> list[PartialRecord]:
        return [PartialRecord(provider=self.name, year=year, fields=fields) for year, fields in data.items()]

    async def fetch(self, ticker: str, facet: Facet) -> list[PartialRecord]:
        self.calls.append((ticker, facet))
        if self.delay:
            await asyncio.sleep(self.delay)
        if ticker in self.always_fail:
            raise self.always_fail[ticker]
        pending = self.failures.get(ticker)
        if pending:
            raise pending.pop(0)
        return self.transform_data(ticker, facet, self.overrides.get(ticker, self.records))

    def tickers_called(self) -> set[str]:
        return {ticker for ticker, _ in self.calls}


def make_providers(delay: float = 0.0) -> dict[str, FakeProvider]:
    """Default provider set: Ward history plus three optional sources."""
    history = {
        THIS_YEAR - 5: {"revenue": 500.0, "net_income": 50.0},
        THIS_YEAR - 1: {"revenue": 900.0, "net_income": 80.0},
        THIS_YEAR: {"revenue": 1000.0, "net_income": 100.0, "pe_ratio": 10.0},
    }
    return {
        "ward": FakeProvider("ward", [Facet.HISTORICAL_STATEMENTS], history, required=True, delay=delay),
        "fundamentus": FakeProvider(
            "fundamentus", [Facet.TTM_UPDATE], {THIS_YEAR: {"pe_ratio": 12.0, "roe": 0.15}}, delay=delay
        ),
        "brapi_pro": FakeProvider(
            "brapi_pro", [Facet.SECONDARY_DATA], {THIS_YEAR: {"market_cap": 5e9}}, delay=delay
        ),
        "brapi_quote": FakeProvider(
            "brapi_quote", [Facet.BASIC_PROFILE], {THIS_YEAR: {"price": 25.0}}, delay=delay
        ),
    }



async def load_year(record_store: FinancialRecordStore, ticker: str, year: int):
    """Stored record for one (ticker, year), or None."""
    for record in await record_store.load_records(ticker):
        if record.year == year:
            return record
    return None

@pytest.fixture
async def test_engine(tmp_path):
    """Fresh database file per test, tables created up front."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fundsync.db'}",
        poolclass=NullPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def progress_store(session_factory) -> SqlProgressStore:
    return SqlProgressStore(session_factory)


@pytest.fixture
def record_store(session_factory) -> FinancialRecordStore:
    return FinancialRecordStore(session_factory)


@pytest.fixture
def cycle_history(session_factory) -> CycleHistory:
    return CycleHistory(session_factory)


@pytest.fixture
def test_settings() -> Settings:
    """Small, fast ingestion settings."""
    return Settings(
        environment="test",
        cycle_budget_ms=10_000,
        per_item_estimate_ms=2_000,
        per_item_timeout_ms=2_000,
        max_batch_size=10,
        max_concurrency=5,
        retry_max_attempts=2,
        retry_initial_delay=0.01,
        retry_max_delay=0.02,
        max_error_count=3,
        stale_processing_seconds=900,
        provider_priority=PROVIDER_PRIORITY,
    )


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return make_providers()


@pytest.fixture
def registry(providers) -> ProviderRegistry:
    return ProviderRegistry(providers.values(), priority=PROVIDER_PRIORITY)


@pytest.fixture
def make_scheduler(progress_store, record_store, cycle_history, registry, test_settings):
    """Factory for schedulers over the test stores; the clock is frozen by default."""

    def _make(
        tickers: Iterable[str] = (),
        config: Optional[Settings] = None,
        clock=lambda: 0.0,
        now=utcnow,
        registry_override: Optional[ProviderRegistry] = None,
        store_override=None,
        record_store_override=None,
    ) -> IngestionScheduler:
        reg = registry_override or registry
        task = IngestionTask(
            reg, record_store_override or record_store, Reconciler(priority=reg.priority)
        )
        return IngestionScheduler(
            store_override or progress_store,
            task,
            universe=StaticUniverse(tickers),
            history=cycle_history,
            config=config or test_settings,
            clock=clock,
            now=now,
        )

    return _make


@pytest.fixture
async def client(session_factory, registry) -> AsyncGenerator[AsyncClient, None]:
    """FastAPI test client with dependency overrides."""

    async def override_get_registry():
        yield registry

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_registry] = override_get_registry

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()
