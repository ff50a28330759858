"""
Consolidated financial record persistence.

Upserts are idempotent by (ticker, year): writing the same reconciled
record twice yields the same row. A NULL in the new values never erases a
stored value, so a late write from an abandoned task cannot regress data.
"""

import logging
from typing import Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fundsync.core.database import async_session_factory, get_db_context, get_upsert_stmt, utcnow
from fundsync.core.exceptions import DatabaseError
from fundsync.models.financial_record import FINANCIAL_FIELDS, FinancialRecord
from fundsync.services.reconciler import SOURCE_SEPARATOR

logger = logging.getLogger(__name__)


class FinancialRecordStore:
    """Reads and upserts ``FinancialRecord`` rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or async_session_factory

    async def upsert_consolidated_record(
        self,
        ticker: str,
        year: int,
        fields: Mapping[str, Optional[float]],
        providers: Iterable[str],
        sources: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Insert or update the record for (ticker, year).

        ``sources`` maps each field to the provider that supplied it.

        Raises:
            DatabaseError: the write failed
        """
        providers = list(providers)
        values = {
            "ticker": ticker.upper(),
            "year": year,
            **{name: fields.get(name) for name in FINANCIAL_FIELDS},
            "data_source": SOURCE_SEPARATOR.join(providers) if providers else None,
            "field_sources": dict(sources) if sources else None,
            "updated_at": utcnow(),
        }

        try:
            async with get_db_context(self.session_factory) as session:
                stmt = get_upsert_stmt(
                    FinancialRecord,
                    index_elements=["ticker", "year"],
                    values=values,
                    dialect_name=session.bind.dialect.name,
                    preserve_existing=(*FINANCIAL_FIELDS, "data_source", "field_sources"),
                )
                await session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert financial record {ticker}/{year}: {e}")
            raise DatabaseError(
                f"Failed to upsert financial record {ticker}/{year}", operation="upsert"
            ) from e

    async def load_records(self, ticker: str) -> list[FinancialRecord]:
        """Every stored year for ``ticker``, oldest first."""
        try:
            async with get_db_context(self.session_factory) as session:
                result = await session.execute(
                    select(FinancialRecord)
                    .where(FinancialRecord.ticker == ticker.upper())
                    .order_by(FinancialRecord.year)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to load records for {ticker}", operation="load") from e
