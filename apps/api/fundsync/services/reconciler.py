"""
Multi-provider reconciliation.

Merges per-provider partial records for one (ticker, year) into a single
consolidated record:

1. Providers are ranked by configured priority (highest first).
2. For each field the first value passing the validity predicate wins.
3. A stored value is kept unless the new value comes from a provider
   ranked at or above the one that supplied it. A new null or invalid
   value never erases a good one.
4. Derived metrics are computed for fields no provider supplied.

Every field records the provider it came from (``sources``, "derived"
for computed metrics). The record-level provenance lists the providers
behind the kept fields, joined with "+", e.g. "ward+fundamentus".
"""

import logging
import math
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from fundsync.core.config import settings
from fundsync.core.exceptions import ReconciliationError
from fundsync.models.financial_record import FINANCIAL_FIELDS, LARGE_MAGNITUDE_FIELDS, FinancialRecord
from fundsync.providers.base import PartialRecord
from fundsync.services.derived_metrics import DERIVED_FIELDS, compute_derived_metrics

logger = logging.getLogger(__name__)

SOURCE_SEPARATOR = "+"
DERIVED_SOURCE = "derived"

_KNOWN_FIELDS = frozenset(FINANCIAL_FIELDS)


class ConsolidatedRecord(BaseModel):
    """Reconciled fields for one (ticker, year)."""
    year: int
    fields: dict[str, float] = Field(default_factory=dict)
    providers: list[str] = Field(default_factory=list)
    sources: dict[str, str] = Field(default_factory=dict)

    @property
    def data_source(self) -> Optional[str]:
        return SOURCE_SEPARATOR.join(self.providers) if self.providers else None

    @property
    def is_empty(self) -> bool:
        return not self.fields

    def source_of(self, name: str) -> str:
        """
        Provider that supplied ``name``.

        Rows written before per-field sources were tracked fall back to
        "derived" for computed metrics and to the first listed provider
        otherwise.
        """
        if name in self.sources:
            return self.sources[name]
        if name in DERIVED_FIELDS or not self.providers:
            return DERIVED_SOURCE
        return self.providers[0]

    @classmethod
    def from_record(cls, record: FinancialRecord) -> "ConsolidatedRecord":
        """Wrap a stored row so it can serve as the merge fallback."""
        fields = {name: value for name, value in record.to_fields().items() if value is not None}
        providers = [p for p in (record.data_source or "").split(SOURCE_SEPARATOR) if p]
        sources = {name: source for name, source in (record.field_sources or {}).items() if name in fields}
        return cls(year=record.year, fields=fields, providers=providers, sources=sources)


def is_valid_value(field: str, value: Any, min_large_magnitude: float) -> bool:
    """
    Validity predicate for a single field value.

    Non-null, numeric (bool excluded), finite; large-magnitude fields must
    also exceed ``min_large_magnitude``.
    """
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value):
        return False
    if field in LARGE_MAGNITUDE_FIELDS and value <= min_large_magnitude:
        return False
    return True


class Reconciler:
    """
    Field-level merge of provider records by priority and validity.

    Args:
        priority: Provider names, highest priority first
        min_large_magnitude: Threshold for market cap / enterprise value
    """

    def __init__(
        self,
        priority: Optional[list[str]] = None,
        min_large_magnitude: Optional[float] = None,
    ):
        self.priority = list(priority if priority is not None else settings.provider_priority)
        self.min_large_magnitude = (
            min_large_magnitude if min_large_magnitude is not None else settings.min_large_magnitude
        )
        self._rank = {name: index for index, name in enumerate(self.priority)}

    def is_valid(self, field: str, value: Any) -> bool:
        return is_valid_value(field, value, self.min_large_magnitude)

    def rank(self, provider: str) -> int:
        """Lower is better; unknown providers rank last, computed values below them."""
        if provider == DERIVED_SOURCE:
            return len(self.priority) + 1
        return self._rank.get(provider, len(self.priority))

    def order(self, records: Iterable[PartialRecord]) -> list[PartialRecord]:
        """Highest priority first; unknown providers last, in input order."""
        return sorted(records, key=lambda r: self.rank(r.provider))

    @staticmethod
    def coerce(raw: Any) -> PartialRecord:
        """
        Accept a PartialRecord or an equivalent mapping.

        Raises:
            ReconciliationError: record has an unexpected shape
        """
        if isinstance(raw, PartialRecord):
            return raw
        try:
            return PartialRecord.model_validate(raw)
        except ValidationError as e:
            provider = raw.get("provider") if isinstance(raw, dict) else None
            raise ReconciliationError(
                f"Malformed provider record: {e.error_count()} validation error(s)",
                provider=provider if isinstance(provider, str) else None,
            )

    def reconcile(
        self,
        provider_records: Iterable[Any],
        year: int,
        existing: Optional[ConsolidatedRecord] = None,
        history: Optional[Mapping[int, Mapping[str, Optional[float]]]] = None,
    ) -> ConsolidatedRecord:
        """
        Merge provider records for ``year``.

        Args:
            provider_records: Partial records from any providers, any order
            year: Fiscal year being reconciled
            existing: Previously stored record for the same (ticker, year)
            history: Stored fields of other years, for growth metrics
        """
        records: list[PartialRecord] = []
        for raw in provider_records:
            try:
                record = self.coerce(raw)
            except ReconciliationError as e:
                logger.warning(f"Ignoring provider record: {e.message}")
                continue
            if record.year != year:
                logger.warning(
                    f"Ignoring {record.provider} record for year {record.year} "
                    f"while reconciling {year}"
                )
                continue
            records.append(record)

        incoming: dict[str, tuple[float, str]] = {}
        for record in self.order(records):
            for name, value in record.fields.items():
                if name not in _KNOWN_FIELDS or name in incoming:
                    continue
                if self.is_valid(name, value):
                    incoming[name] = (float(value), record.provider)

        stored = existing or ConsolidatedRecord(year=year)
        merged: dict[str, float] = {}
        sources: dict[str, str] = {}

        for name, (value, provider) in incoming.items():
            stored_value = stored.fields.get(name)
            if self.is_valid(name, stored_value):
                stored_source = stored.source_of(name)
                if self.rank(stored_source) < self.rank(provider):
                    merged[name] = float(stored_value)
                    sources[name] = stored_source
                    continue
            merged[name] = value
            sources[name] = provider

        for name, value in stored.fields.items():
            if name in merged or name not in _KNOWN_FIELDS or not self.is_valid(name, value):
                continue
            source = stored.source_of(name)
            if source == DERIVED_SOURCE:
                continue
            merged[name] = float(value)
            sources[name] = source

        derived = compute_derived_metrics(merged, year, history)
        for name in DERIVED_FIELDS:
            if name in merged:
                continue
            value = derived.get(name)
            if not self.is_valid(name, value):
                value = stored.fields.get(name)
            if self.is_valid(name, value):
                merged[name] = float(value)
                sources[name] = DERIVED_SOURCE

        providers = sorted(
            {source for source in sources.values() if source != DERIVED_SOURCE},
            key=self.rank,
        )
        return ConsolidatedRecord(year=year, fields=merged, providers=providers, sources=sources)
