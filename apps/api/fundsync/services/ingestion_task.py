"""
Fetch-and-reconcile for a single entity.

Facet planning: basic profile, historical statements and secondary data
are fetched until their flag is set; the TTM snapshot is fetched on every
dispatch. A facet counts as completed once any provider serving it answers
without error.

Errors from a required provider fail the entity; errors from optional
providers are logged and the provider contributes nothing. Every write is
an idempotent upsert, so the whole task can be retried or abandoned on
timeout safely.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from fundsync.core.exceptions import ProviderError, ReconciliationError
from fundsync.core.timeout import CancellationToken
from fundsync.models.entity_progress import EntityProgress
from fundsync.providers.base import Facet, PartialRecord
from fundsync.providers.registry import ProviderRegistry
from fundsync.services.reconciler import ConsolidatedRecord, Reconciler
from fundsync.services.record_store import FinancialRecordStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    """What one successful task produced."""
    ticker: str
    facets: set[Facet] = field(default_factory=set)
    years: list[int] = field(default_factory=list)
    providers: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


def plan_facets(entity: EntityProgress) -> list[Facet]:
    """Facets to fetch for ``entity`` on this dispatch."""
    facets = []
    if not entity.has_basic_profile:
        facets.append(Facet.BASIC_PROFILE)
    if not entity.has_historical_statements:
        facets.append(Facet.HISTORICAL_STATEMENTS)
    if not entity.has_secondary_data:
        facets.append(Facet.SECONDARY_DATA)
    facets.append(Facet.TTM_UPDATE)
    return facets


class IngestionTask:
    """Callable run by the scheduler for each claimed entity."""

    def __init__(
        self,
        registry: ProviderRegistry,
        record_store: FinancialRecordStore,
        reconciler: Optional[Reconciler] = None,
    ):
        self.registry = registry
        self.record_store = record_store
        self.reconciler = reconciler or Reconciler(priority=registry.priority)

    async def run(
        self,
        entity: EntityProgress,
        token: Optional[CancellationToken] = None,
    ) -> IngestionResult:
        ticker = entity.ticker
        result = IngestionResult(ticker=ticker)
        partials: list[PartialRecord] = []

        for facet in plan_facets(entity):
            for provider in self.registry.providers_for(facet):
                if token is not None:
                    token.raise_if_cancelled()
                try:
                    records = await provider.fetch(ticker, facet)
                except ProviderError as e:
                    if provider.required:
                        raise
                    logger.warning(f"{provider.name} skipped for {ticker} ({facet.value}): {e.message}")
                    result.skipped[provider.name] = e.code
                    continue
                except ReconciliationError as e:
                    if provider.required:
                        raise
                    logger.warning(f"{provider.name} returned unusable data for {ticker}: {e.message}")
                    result.skipped[provider.name] = e.code
                    continue
                result.facets.add(facet)
                partials.extend(records)

        if token is not None:
            token.raise_if_cancelled()

        written = await self.persist(ticker, partials)
        result.years = [record.year for record in written]
        result.providers = sorted(
            {p for record in written for p in record.providers},
            key=self.reconciler.rank,
        )
        return result

    async def persist(self, ticker: str, partials: list[PartialRecord]) -> list[ConsolidatedRecord]:
        """Reconcile per year (oldest first) and upsert."""
        by_year: dict[int, list[PartialRecord]] = defaultdict(list)
        for record in partials:
            by_year[record.year].append(record)
        if not by_year:
            return []

        stored = {record.year: record for record in await self.record_store.load_records(ticker)}
        history = {year: record.to_fields() for year, record in stored.items()}

        written = []
        for year in sorted(by_year):
            existing = ConsolidatedRecord.from_record(stored[year]) if year in stored else None
            consolidated = self.reconciler.reconcile(
                by_year[year], year, existing=existing, history=history
            )
            if consolidated.is_empty:
                continue
            await self.record_store.upsert_consolidated_record(
                ticker, year, consolidated.fields, consolidated.providers, consolidated.sources
            )
            history[year] = consolidated.fields
            written.append(consolidated)

        logger.debug(f"{ticker}: wrote {len(written)} year(s)")
        return written
