"""
Tests for derived financial metrics.
"""

import pytest

from fundsync.services.derived_metrics import (
    compound_growth,
    compute_derived_metrics,
    earnings_yield,
    payout_ratio,
    return_on_invested_capital,
    year_over_year_growth,
)


class TestCompoundGrowth:

    def test_both_positive(self):
        assert compound_growth(100, 400) == pytest.approx(4 ** 0.2 - 1)
        assert compound_growth(100, 400) == pytest.approx(0.3195, abs=1e-4)

    def test_both_negative_shrinking_loss_is_growth(self):
        result = compound_growth(-100, -25)
        assert result == pytest.approx(-((25 / 100) ** 0.2 - 1))
        assert result > 0

    def test_turnaround(self):
        result = compound_growth(-50, 200)
        assert result == pytest.approx((250 / 50) ** 0.2 - 1)
        assert result > 0

    def test_deterioration(self):
        result = compound_growth(300, -100)
        assert result == pytest.approx(-((400 / 300) ** 0.2 - 1))
        assert result < 0

    def test_growing_loss_is_negative(self):
        assert compound_growth(-25, -100) < 0

    @pytest.mark.parametrize("start, end", [(None, 100), (100, None), (0, 100), (100, 0), (None, None)])
    def test_missing_or_zero_endpoint(self, start, end):
        assert compound_growth(start, end) is None

    def test_custom_window(self):
        assert compound_growth(100, 121, years=2) == pytest.approx(0.1)


class TestYearOverYear:

    def test_simple_growth(self):
        assert year_over_year_growth(100, 150) == pytest.approx(0.5)

    def test_absolute_denominator(self):
        assert year_over_year_growth(-100, -50) == pytest.approx(0.5)
        assert year_over_year_growth(-100, 50) == pytest.approx(1.5)

    def test_zero_or_missing_previous(self):
        assert year_over_year_growth(0, 50) is None
        assert year_over_year_growth(None, 50) is None
        assert year_over_year_growth(100, None) is None


class TestRatios:

    def test_payout_ratio_from_net_income(self):
        fields = {"dividend_yield": 0.05, "market_cap": 1e9, "net_income": 1e8}
        assert payout_ratio(fields) == pytest.approx(0.5)

    def test_payout_ratio_falls_back_to_eps(self):
        fields = {"dividend_yield": 0.05, "market_cap": 1e9, "eps": 2.0, "shares_outstanding": 5e7}
        assert payout_ratio(fields) == pytest.approx(0.5)

    def test_payout_ratio_requires_positive_earnings(self):
        assert payout_ratio({"dividend_yield": 0.05, "market_cap": 1e9, "net_income": -1e8}) is None
        assert payout_ratio({"market_cap": 1e9, "net_income": 1e8}) is None

    def test_roic_from_assets_less_current_liabilities(self):
        fields = {"ebit": 100.0, "total_assets": 1000.0, "current_liabilities": 200.0}
        assert return_on_invested_capital(fields) == pytest.approx(0.125)

    def test_roic_falls_back_to_equity_plus_debt(self):
        fields = {
            "ebit": 100.0,
            "total_assets": 100.0,
            "current_liabilities": 300.0,
            "total_equity": 300.0,
            "total_debt": 200.0,
        }
        assert return_on_invested_capital(fields) == pytest.approx(0.2)

    def test_roic_ebit_from_operating_margin(self):
        fields = {"revenue": 1000.0, "operating_margin": 0.2, "total_assets": 2000.0}
        assert return_on_invested_capital(fields) == pytest.approx(0.1)

    def test_roic_without_capital(self):
        assert return_on_invested_capital({"ebit": 100.0}) is None

    def test_earnings_yield(self):
        assert earnings_yield({"pe_ratio": 10.0}) == pytest.approx(0.1)
        assert earnings_yield({"pe_ratio": -5.0, "eps": -2.0, "price": 20.0}) == pytest.approx(-0.1)
        assert earnings_yield({"pe_ratio": 0.0}) is None


class TestComputeDerivedMetrics:

    def test_growth_uses_history(self):
        history = {
            2018: {"net_income": 100.0, "revenue": 1000.0},
            2022: {"net_income": 300.0, "revenue": 2000.0},
        }
        fields = {"net_income": 400.0, "revenue": 2500.0}

        derived = compute_derived_metrics(fields, 2023, history)

        assert derived["earnings_cagr_5y"] == pytest.approx(4 ** 0.2 - 1)
        assert derived["revenue_cagr_5y"] == pytest.approx(2.5 ** 0.2 - 1)
        assert derived["earnings_growth"] == pytest.approx(1 / 3)
        assert derived["revenue_growth"] == pytest.approx(0.25)

    def test_no_history_means_no_growth(self):
        derived = compute_derived_metrics({"net_income": 400.0}, 2023)
        assert derived["earnings_cagr_5y"] is None
        assert derived["earnings_growth"] is None
