"""
Fundamentus Provider - scraped real-time fundamentals (trailing twelve months).

Endpoint: GET {base}/stock/{ticker}

Values are wrapped as {"value": x}. The snapshot is attributed to the
current calendar year.
"""

import logging
from typing import Any, Optional

from fundsync.core.config import settings
from fundsync.core.exceptions import ReconciliationError
from fundsync.providers.base import Facet, FundamentalsProvider, PartialRecord, ProviderRequest
from fundsync.providers.validators import DataValidator

logger = logging.getLogger(__name__)

# (section, key...) -> financial field
FIELD_PATHS: dict[tuple[str, ...], str] = {
    ("price_information", "price"): "price",
    ("detailed_information", "earnings_per_share"): "eps",
    ("detailed_information", "equity_value_per_share"): "book_value_per_share",
    ("valuation_indicators", "price_divided_by_profit_title"): "pe_ratio",
    ("valuation_indicators", "price_divided_by_asset_value"): "pb_ratio",
    ("valuation_indicators", "price_divided_by_ebit"): "price_to_ebit",
    ("valuation_indicators", "price_divided_by_net_revenue"): "ps_ratio",
    ("valuation_indicators", "price_divided_by_total_assets"): "price_to_assets",
    ("valuation_indicators", "price_by_working_capital"): "price_to_working_capital",
    ("valuation_indicators", "dividend_yield"): "dividend_yield",
    ("valuation_indicators", "enterprise_value_by_ebitda"): "ev_ebitda",
    ("valuation_indicators", "enterprise_value_by_ebit"): "ev_ebit",
    ("profitability_indicators", "return_on_equity"): "roe",
    ("profitability_indicators", "return_on_invested_capital"): "roic",
    ("profitability_indicators", "gross_profit_divided_by_net_revenue"): "gross_margin",
    ("profitability_indicators", "ebit_divided_by_net_revenue"): "operating_margin",
    ("profitability_indicators", "net_income_divided_by_net_revenue"): "net_margin",
    ("profitability_indicators", "net_revenue_divided_by_total_assets"): "asset_turnover",
    ("indebtedness_indicators", "current_liquidity"): "current_ratio",
    ("indebtedness_indicators", "net_debt_by_equity"): "net_debt_to_equity",
    ("indebtedness_indicators", "net_debt_by_ebitda"): "net_debt_to_ebitda",
    ("balance_sheet", "total_assets"): "total_assets",
    ("balance_sheet", "current_assets"): "current_assets",
    ("balance_sheet", "cash"): "cash",
    ("balance_sheet", "gross_debt"): "total_debt",
    ("balance_sheet", "net_debt"): "net_debt",
    ("balance_sheet", "equity"): "total_equity",
    ("income_statement", "twelve_months", "revenue"): "revenue",
    ("income_statement", "twelve_months", "ebit"): "ebit",
    ("income_statement", "twelve_months", "net_income"): "net_income",
}


class FundamentusProvider(FundamentalsProvider):
    """Trailing-twelve-month snapshot, refreshed on every dispatch."""

    name = "fundamentus"
    facets = frozenset({Facet.TTM_UPDATE})

    def __init__(self, client=None, base_url: Optional[str] = None, token=None, timeout=None):
        super().__init__(
            client=client,
            base_url=base_url or settings.fundamentus_base_url,
            token=token,
            timeout=timeout,
        )

    def transform_query(self, ticker: str, facet: Facet) -> ProviderRequest:
        return ProviderRequest(url=f"{self.base_url}/stock/{ticker.upper()}")

    def transform_data(self, ticker: str, facet: Facet, data: Any) -> list[PartialRecord]:
        if not isinstance(data, dict) or "valuation_indicators" not in data:
            raise ReconciliationError(f"Unexpected Fundamentus payload for {ticker}", provider=self.name)

        fields = {}
        for path, target in FIELD_PATHS.items():
            value = DataValidator.clean_numeric(DataValidator.nested(data, *path))
            if value is not None:
                fields[target] = value
        if "dividend_yield" in fields:
            fields["dividend_yield_12m"] = fields["dividend_yield"]

        return [PartialRecord(provider=self.name, year=self.current_year(), fields=fields)]
