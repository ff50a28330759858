"""
Consolidated Financial Record ORM Model

One row per (ticker, fiscal year), merged from every provider that had
data for that year. All metric columns are independently nullable floats.

Ratios are stored as decimals (0.15 == 15%). Monetary amounts are in the
reporting currency.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fundsync.core.database import Base, utcnow


FIELD_GROUPS: dict[str, tuple[str, ...]] = {
    "valuation": (
        "pe_ratio", "forward_pe", "earnings_yield", "pb_ratio", "dividend_yield",
        "ev_ebitda", "ev_ebit", "ev_revenue", "ps_ratio", "price_to_assets",
        "price_to_working_capital", "price_to_ebit", "eps", "trailing_eps",
        "book_value_per_share",
    ),
    "market": ("price", "market_cap", "enterprise_value", "shares_outstanding"),
    "leverage": (
        "net_debt_to_equity", "net_debt_to_ebitda", "current_ratio", "quick_ratio",
        "liabilities_to_assets", "debt_to_equity",
    ),
    "profitability": (
        "roe", "roic", "roa", "gross_margin", "ebitda_margin", "operating_margin",
        "net_margin", "asset_turnover",
    ),
    "growth": ("earnings_cagr_5y", "revenue_cagr_5y", "earnings_growth", "revenue_growth"),
    "dividends": ("dividend_yield_12m", "dividend_yield_5y", "last_dividend", "payout_ratio"),
    "performance": ("change_52_weeks", "return_ytd"),
    "operating": (
        "revenue", "gross_profit", "ebitda", "ebit", "net_income",
        "operating_cash_flow", "investing_cash_flow", "financing_cash_flow",
        "free_cash_flow", "total_cash", "total_debt", "net_debt",
        "revenue_per_share", "cash_per_share",
    ),
    "balance_sheet": (
        "total_assets", "current_assets", "total_liabilities", "current_liabilities",
        "total_equity", "cash", "inventory", "receivables", "fixed_assets",
        "intangible_assets", "short_term_debt", "long_term_debt",
    ),
}

FINANCIAL_FIELDS: tuple[str, ...] = tuple(
    name for group in FIELD_GROUPS.values() for name in group
)

# Values at or below the configured minimum are provider placeholders.
LARGE_MAGNITUDE_FIELDS: frozenset[str] = frozenset({"market_cap", "enterprise_value"})


class FinancialRecord(Base):
    """
    Consolidated fundamentals for one ticker and fiscal year.

    Upserted by (ticker, year); years are never deleted.
    """
    __tablename__ = "financial_records"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    ticker: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    # Valuation
    pe_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    forward_pe: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    earnings_yield: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pb_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dividend_yield: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ev_ebitda: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ev_ebit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ev_revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ps_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_to_assets: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_to_working_capital: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_to_ebit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    eps: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    trailing_eps: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    book_value_per_share: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Market
    price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    market_cap: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    enterprise_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    shares_outstanding: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Leverage & liquidity
    net_debt_to_equity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    net_debt_to_ebitda: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quick_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    liabilities_to_assets: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    debt_to_equity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Profitability
    roe: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    roic: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    roa: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    gross_margin: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ebitda_margin: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    operating_margin: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    net_margin: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    asset_turnover: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Growth
    earnings_cagr_5y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    revenue_cagr_5y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    earnings_growth: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    revenue_growth: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Dividends
    dividend_yield_12m: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dividend_yield_5y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_dividend: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    payout_ratio: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Performance
    change_52_weeks: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    return_ytd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Operating
    revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    gross_profit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ebitda: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ebit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    net_income: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    operating_cash_flow: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    investing_cash_flow: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    financing_cash_flow: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    free_cash_flow: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_cash: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_debt: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    net_debt: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    revenue_per_share: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cash_per_share: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Balance sheet
    total_assets: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_assets: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_liabilities: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_liabilities: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_equity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cash: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    inventory: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    receivables: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fixed_assets: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    intangible_assets: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    short_term_debt: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    long_term_debt: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Provenance, e.g. "ward+fundamentus"
    data_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Per-field provider, e.g. {"pe_ratio": "ward", "earnings_yield": "derived"}
    field_sources: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("ticker", "year", name="uq_financial_records_ticker_year"),
    )

    def __repr__(self) -> str:
        return f"<FinancialRecord(ticker='{self.ticker}', year={self.year}, source='{self.data_source}')>"

    def to_fields(self) -> dict[str, Optional[float]]:
        """Metric columns as a plain dict."""
        return {name: getattr(self, name) for name in FINANCIAL_FIELDS}
