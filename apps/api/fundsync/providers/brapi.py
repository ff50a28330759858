"""
Brapi Providers.

- BrapiQuoteProvider: free quote endpoint, basic profile (price, market cap)
- BrapiProProvider: paid modules (key statistics, financial data and yearly
  statements), requires BRAPI_TOKEN

Both call GET {base}/quote/{ticker} with different module sets.
"""

import logging
from typing import Any, Optional

from fundsync.core.config import settings
from fundsync.core.exceptions import ProviderNotFoundError, ReconciliationError
from fundsync.providers.base import Facet, FundamentalsProvider, PartialRecord, ProviderRequest
from fundsync.providers.validators import DataValidator

logger = logging.getLogger(__name__)

PRO_MODULES = ",".join([
    "summaryProfile",
    "defaultKeyStatistics",
    "financialData",
    "balanceSheetHistory",
    "incomeStatementHistory",
    "cashflowHistory",
])

QUOTE_FIELDS = {
    "regularMarketPrice": "price",
    "marketCap": "market_cap",
    "priceEarnings": "pe_ratio",
    "earningsPerShare": "eps",
}

KEY_STATISTICS_FIELDS = {
    "enterpriseValue": "enterprise_value",
    "forwardPE": "forward_pe",
    "sharesOutstanding": "shares_outstanding",
    "trailingEps": "trailing_eps",
    "bookValue": "book_value_per_share",
    "priceToBook": "pb_ratio",
    "enterpriseToRevenue": "ev_revenue",
    "enterpriseToEbitda": "ev_ebitda",
    "52WeekChange": "change_52_weeks",
    "ytdReturn": "return_ytd",
    "lastDividendValue": "last_dividend",
    "dividendYield": "dividend_yield_12m",
}

FINANCIAL_DATA_FIELDS = {
    "currentPrice": "price",
    "ebitda": "ebitda",
    "quickRatio": "quick_ratio",
    "currentRatio": "current_ratio",
    "debtToEquity": "debt_to_equity",
    "revenuePerShare": "revenue_per_share",
    "returnOnAssets": "roa",
    "returnOnEquity": "roe",
    "earningsGrowth": "earnings_growth",
    "revenueGrowth": "revenue_growth",
    "grossMargins": "gross_margin",
    "ebitdaMargins": "ebitda_margin",
    "operatingMargins": "operating_margin",
    "profitMargins": "net_margin",
    "totalCash": "total_cash",
    "totalCashPerShare": "cash_per_share",
    "totalDebt": "total_debt",
    "totalRevenue": "revenue",
    "operatingCashflow": "operating_cash_flow",
    "freeCashflow": "free_cash_flow",
}

BALANCE_SHEET_FIELDS = {
    "totalAssets": "total_assets",
    "totalCurrentAssets": "current_assets",
    "totalLiab": "total_liabilities",
    "totalCurrentLiabilities": "current_liabilities",
    "totalStockholderEquity": "total_equity",
    "cash": "cash",
    "inventory": "inventory",
    "netReceivables": "receivables",
    "propertyPlantEquipment": "fixed_assets",
    "intangibleAssets": "intangible_assets",
    "shortLongTermDebt": "short_term_debt",
    "longTermDebt": "long_term_debt",
}

INCOME_STATEMENT_FIELDS = {
    "totalRevenue": "revenue",
    "grossProfit": "gross_profit",
    "ebit": "ebit",
    "netIncome": "net_income",
}

CASHFLOW_FIELDS = {
    "operatingCashFlow": "operating_cash_flow",
    "investmentCashFlow": "investing_cash_flow",
    "financingCashFlow": "financing_cash_flow",
}


def _map_fields(source: Any, mapping: dict[str, str]) -> dict[str, float]:
    if not isinstance(source, dict):
        return {}
    fields = {}
    for key, target in mapping.items():
        value = DataValidator.clean_numeric(source.get(key))
        if value is not None:
            fields[target] = value
    return fields


def _first_result(provider: str, ticker: str, data: Any) -> dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("results"), list):
        raise ReconciliationError(f"Unexpected Brapi payload for {ticker}", provider=provider)
    if not data["results"]:
        raise ProviderNotFoundError(provider=provider, ticker=ticker)
    result = data["results"][0]
    if not isinstance(result, dict):
        raise ReconciliationError(f"Unexpected Brapi result for {ticker}", provider=provider)
    return result


class _BrapiBase(FundamentalsProvider):
    def __init__(self, client=None, base_url: Optional[str] = None, token: Optional[str] = None, timeout=None):
        super().__init__(
            client=client,
            base_url=base_url or settings.brapi_base_url,
            token=token if token is not None else settings.brapi_token,
            timeout=timeout,
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}


class BrapiQuoteProvider(_BrapiBase):
    """Free quote endpoint: current price and market capitalization."""

    name = "brapi_quote"
    facets = frozenset({Facet.BASIC_PROFILE})

    def transform_query(self, ticker: str, facet: Facet) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/quote/{ticker.upper()}",
            params={"range": "1d", "interval": "1d", "fundamental": "false", "modules": "summaryProfile"},
            headers=self._headers(),
        )

    def transform_data(self, ticker: str, facet: Facet, data: Any) -> list[PartialRecord]:
        result = _first_result(self.name, ticker, data)
        fields = _map_fields(result, QUOTE_FIELDS)
        return [PartialRecord(provider=self.name, year=self.current_year(), fields=fields)]


class BrapiProProvider(_BrapiBase):
    """Paid modules: current-year statistics plus yearly statements."""

    name = "brapi_pro"
    facets = frozenset({Facet.SECONDARY_DATA})
    requires_credentials = True

    def transform_query(self, ticker: str, facet: Facet) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/quote/{ticker.upper()}",
            params={"modules": PRO_MODULES},
            headers=self._headers(),
        )

    def transform_data(self, ticker: str, facet: Facet, data: Any) -> list[PartialRecord]:
        result = _first_result(self.name, ticker, data)

        by_year: dict[int, dict[str, float]] = {}

        current = by_year.setdefault(self.current_year(), {})
        current.update(_map_fields(result, QUOTE_FIELDS))
        current.update(_map_fields(result.get("defaultKeyStatistics"), KEY_STATISTICS_FIELDS))
        current.update(_map_fields(result.get("financialData"), FINANCIAL_DATA_FIELDS))

        for module, mapping in (
            ("balanceSheetHistory", BALANCE_SHEET_FIELDS),
            ("incomeStatementHistory", INCOME_STATEMENT_FIELDS),
            ("cashflowHistory", CASHFLOW_FIELDS),
        ):
            statements = result.get(module) or []
            if not isinstance(statements, list):
                raise ReconciliationError(
                    f"Unexpected Brapi {module} for {ticker}", provider=self.name
                )
            for statement in statements:
                year = DataValidator.clean_year(
                    statement.get("endDate") if isinstance(statement, dict) else None
                )
                if year is None:
                    continue
                by_year.setdefault(year, {}).update(_map_fields(statement, mapping))

        return [
            PartialRecord(provider=self.name, year=year, fields=fields)
            for year, fields in sorted(by_year.items())
            if fields
        ]
