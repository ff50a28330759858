"""
Ward Provider - historical fundamentals and the ticker universe.

Endpoints:
- GET /api/tools/screening/GetStockForAnalise?ticker=X -> {"historicalStocks": [...]}
- GET /api/tools/screening/GetForSearchInput -> [{"ticker": ...}, ...]

Ward reports percentages as 0-100 and unavailable values as -9999.
"""

import logging
from typing import Any, Optional

from fundsync.core.config import settings
from fundsync.core.exceptions import ReconciliationError
from fundsync.providers.base import Facet, FundamentalsProvider, PartialRecord, ProviderRequest
from fundsync.providers.validators import MISSING_SENTINEL, DataValidator

logger = logging.getLogger(__name__)

# Ward field -> financial field, for plain numeric values
NUMERIC_FIELDS = {
    "lpa": "eps",
    "pl": "pe_ratio",
    "vpa": "book_value_per_share",
    "pvp": "pb_ratio",
    "evEbit": "ev_ebit",
    "evEbitda": "ev_ebitda",
    "pEbit": "price_to_ebit",
    "preco": "price",
    "liquidezCorrente": "current_ratio",
    "dividaLiquidaEbitda": "net_debt_to_ebitda",
    "receitaLiquida": "revenue",
    "lucroLiquido": "net_income",
    "lucroBruto": "gross_profit",
    "ebitda": "ebitda",
    "ebit": "ebit",
    "dividaBruta": "total_debt",
    "dividaLiquida": "net_debt",
    "disponibilidades": "total_cash",
    "nroAcoes": "shares_outstanding",
}

# Ward field -> financial field, reported as 0-100
PERCENT_FIELDS = {
    "dy": "dividend_yield",
    "dy5Anos": "dividend_yield_5y",
    "roe": "roe",
    "roa": "roa",
    "roic": "roic",
    "margemEbitda": "ebitda_margin",
    "margemLiquida": "net_margin",
    "payout": "payout_ratio",
    "cagrLL5anos": "earnings_cagr_5y",
    "cagrRL5anos": "revenue_cagr_5y",
}


class WardProvider(FundamentalsProvider):
    """Historical yearly fundamentals. Required: an entity without history is not done."""

    name = "ward"
    facets = frozenset({Facet.HISTORICAL_STATEMENTS})
    required = True

    def __init__(self, client=None, base_url: Optional[str] = None, token: Optional[str] = None, timeout=None):
        super().__init__(
            client=client,
            base_url=base_url or settings.ward_base_url,
            token=token if token is not None else settings.ward_token,
            timeout=timeout,
        )

    def _auth(self) -> dict[str, str]:
        return {"jwtToken": self.token} if self.token else {}

    def transform_query(self, ticker: str, facet: Facet) -> ProviderRequest:
        return ProviderRequest(
            url=f"{self.base_url}/api/tools/screening/GetStockForAnalise",
            params={"ticker": ticker.upper()},
            cookies=self._auth(),
        )

    def transform_data(self, ticker: str, facet: Facet, data: Any) -> list[PartialRecord]:
        if not isinstance(data, dict) or not isinstance(data.get("historicalStocks", []), list):
            raise ReconciliationError(f"Unexpected Ward payload for {ticker}", provider=self.name)

        records = []
        for row in data.get("historicalStocks") or []:
            if not isinstance(row, dict):
                continue
            year = DataValidator.clean_year(row.get("ano"))
            if year is None:
                logger.debug(f"Skipping Ward row without a fiscal year for {ticker}: {row.get('ano')!r}")
                continue
            records.append(PartialRecord(provider=self.name, year=year, fields=self.convert_row(row)))
        return records

    @staticmethod
    def convert_row(row: dict[str, Any]) -> dict[str, Optional[float]]:
        """Convert one Ward yearly row to financial fields."""
        fields: dict[str, Optional[float]] = {}
        for source, target in NUMERIC_FIELDS.items():
            fields[target] = DataValidator.clean_numeric(row.get(source), sentinel=MISSING_SENTINEL)
        for source, target in PERCENT_FIELDS.items():
            fields[target] = DataValidator.clean_percentage(row.get(source), sentinel=MISSING_SENTINEL)

        fields["dividend_yield_12m"] = fields["dividend_yield"]

        shares = fields["shares_outstanding"]
        price = fields["price"]
        if shares and shares > 0 and price and price > 0:
            fields["market_cap"] = shares * price

        return {name: value for name, value in fields.items() if value is not None}

    async def list_tickers(self) -> list[str]:
        """Every ticker Ward can screen."""
        request = ProviderRequest(
            url=f"{self.base_url}/api/tools/screening/GetForSearchInput",
            cookies=self._auth(),
        )
        data = await self.extract_data("*", request)
        if not isinstance(data, list):
            raise ReconciliationError("Unexpected Ward ticker list payload", provider=self.name)
        return [
            str(item["ticker"]).strip().upper()
            for item in data
            if isinstance(item, dict) and item.get("ticker")
        ]
