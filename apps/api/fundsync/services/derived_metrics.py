"""
Derived Metrics.

Ratios that no provider supplies reliably, computed from reconciled fields:
- Payout ratio
- Return on invested capital
- 5-year compound growth of net income and revenue (sign aware)
- Year-over-year growth of net income and revenue
- Earnings yield

Every function returns None instead of fabricating a value from
incomplete or degenerate inputs.
"""

import math
from typing import Mapping, Optional

CAGR_YEARS = 5

Fields = Mapping[str, Optional[float]]


def _positive(value: Optional[float]) -> bool:
    return value is not None and value > 0


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return value


def payout_ratio(fields: Fields) -> Optional[float]:
    """
    (dividend yield x market cap) / net income, falling back to
    (dividend yield x market cap) / (eps x shares outstanding).
    """
    dividend_yield = fields.get("dividend_yield")
    market_cap = fields.get("market_cap")
    if dividend_yield is None or market_cap is None:
        return None

    net_income = fields.get("net_income")
    if net_income is None:
        eps = fields.get("eps")
        shares = fields.get("shares_outstanding")
        if eps is None or shares is None:
            return None
        net_income = eps * shares

    if net_income <= 0:
        return None
    return _finite(dividend_yield * market_cap / net_income)


def return_on_invested_capital(fields: Fields) -> Optional[float]:
    """
    EBIT / invested capital.

    EBIT falls back to revenue x operating margin. Invested capital is
    total assets - current liabilities, then equity + total debt, then
    total assets alone.
    """
    ebit = fields.get("ebit")
    if ebit is None:
        revenue = fields.get("revenue")
        margin = fields.get("operating_margin")
        if revenue is None or margin is None:
            return None
        ebit = revenue * margin

    total_assets = fields.get("total_assets")
    current_liabilities = fields.get("current_liabilities")
    equity = fields.get("total_equity")
    total_debt = fields.get("total_debt")

    invested_capital = None
    if total_assets is not None and current_liabilities is not None:
        invested_capital = total_assets - current_liabilities
    if not _positive(invested_capital) and equity is not None and total_debt is not None:
        invested_capital = equity + total_debt
    if not _positive(invested_capital) and total_assets is not None:
        invested_capital = total_assets

    if not _positive(invested_capital):
        return None
    return _finite(ebit / invested_capital)


def compound_growth(
    start: Optional[float],
    end: Optional[float],
    years: int = CAGR_YEARS,
) -> Optional[float]:
    """
    Annualized growth between two endpoints, handling sign changes.

    - both positive: (end / start) ** (1 / years) - 1
    - both negative: -((|end| / |start|) ** (1 / years) - 1)
    - negative -> positive: ((end + |start|) / |start|) ** (1 / years) - 1
    - positive -> negative: -(((start + |end|) / start) ** (1 / years) - 1)

    None when either endpoint is missing or zero.
    """
    if start is None or end is None or start == 0 or end == 0:
        return None

    exponent = 1 / years
    if start > 0 and end > 0:
        return (end / start) ** exponent - 1
    if start < 0 and end < 0:
        return -((abs(end) / abs(start)) ** exponent - 1)
    if start < 0 < end:
        return ((end + abs(start)) / abs(start)) ** exponent - 1
    return -(((start + abs(end)) / start) ** exponent - 1)


def year_over_year_growth(previous: Optional[float], current: Optional[float]) -> Optional[float]:
    """(current - previous) / |previous|; None when previous is zero or missing."""
    if previous is None or current is None or previous == 0:
        return None
    return (current - previous) / abs(previous)


def earnings_yield(fields: Fields) -> Optional[float]:
    """1 / P/E, falling back to EPS / price."""
    pe_ratio = fields.get("pe_ratio")
    if _positive(pe_ratio):
        return 1 / pe_ratio
    eps = fields.get("eps")
    price = fields.get("price")
    if eps is not None and _positive(price):
        return eps / price
    return None


def compute_derived_metrics(
    fields: Fields,
    year: int,
    history: Optional[Mapping[int, Fields]] = None,
) -> dict[str, Optional[float]]:
    """
    Every derived metric for ``year``.

    Args:
        fields: Reconciled fields of ``year``
        year: Fiscal year being reconciled
        history: Fields of other years of the same ticker, by year
    """
    history = history or {}
    five_years_ago = history.get(year - CAGR_YEARS, {})
    previous = history.get(year - 1, {})

    return {
        "payout_ratio": payout_ratio(fields),
        "roic": return_on_invested_capital(fields),
        "earnings_yield": earnings_yield(fields),
        "earnings_cagr_5y": compound_growth(five_years_ago.get("net_income"), fields.get("net_income")),
        "revenue_cagr_5y": compound_growth(five_years_ago.get("revenue"), fields.get("revenue")),
        "earnings_growth": year_over_year_growth(previous.get("net_income"), fields.get("net_income")),
        "revenue_growth": year_over_year_growth(previous.get("revenue"), fields.get("revenue")),
    }


DERIVED_FIELDS = (
    "payout_ratio",
    "roic",
    "earnings_yield",
    "earnings_cagr_5y",
    "revenue_cagr_5y",
    "earnings_growth",
    "revenue_growth",
)
