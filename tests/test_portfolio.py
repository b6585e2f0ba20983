from decimal import Decimal

import pytest

from conftest import DAI, ETH, USDC, WBTC, WETH, make_portfolio
from lending.core.portfolio import INFINITE_HEALTH, BorrowObject, Portfolio, SupplyObject
from lending.core.token import TokenAmount


class TestPortfolioMutation:
    def test_supply_and_withdraw(self):
        portfolio = make_portfolio()

        portfolio.supply(USDC, "500")
        portfolio.withdraw(ETH, TokenAmount(WETH, "0.5"))

        assert portfolio.find_supply(USDC).balance == Decimal("500")
        assert portfolio.find_supply(USDC).total_supply == Decimal("500")
        assert portfolio.find_supply(ETH).balance == Decimal("1.5")

    def test_withdraw_clamps_at_balance(self):
        portfolio = make_portfolio()

        portfolio.withdraw(ETH, "5")

        assert portfolio.find_supply(ETH).balance == 0

    def test_borrow_adds_variable_debt(self):
        portfolio = make_portfolio()

        portfolio.borrow(USDC, "250")

        borrow = portfolio.find_borrow(USDC)
        assert borrow.balances == [Decimal("1250"), Decimal(0)]
        assert borrow.total_borrow == Decimal("250")

    def test_repay_leaves_stable_debt(self):
        portfolio = make_portfolio()
        borrow = portfolio.find_borrow(USDC)
        borrow.balances[1] = Decimal("100")
        borrow.total_borrow = Decimal("1100")

        portfolio.repay(USDC, "1050")

        assert borrow.balances == [Decimal(0), Decimal("100")]
        assert borrow.variable_balance == 0
        assert borrow.total_borrow == Decimal("100")

    def test_repay_clamps_at_debt(self):
        portfolio = make_portfolio()

        portfolio.repay(USDC, "5000")

        assert portfolio.find_borrow(USDC).balance == 0

    def test_unlisted_token_raises(self):
        portfolio = make_portfolio()

        with pytest.raises(ValueError):
            portfolio.supply(DAI, "1")
        with pytest.raises(ValueError):
            portfolio.borrow(WBTC, "1")

    def test_wrapped_native_finds_native_position(self):
        portfolio = make_portfolio()

        assert portfolio.find_supply(WETH) is portfolio.find_supply(ETH)

    def test_duplicate_positions_rejected(self):
        with pytest.raises(ValueError):
            Portfolio(
                chain_id=1,
                protocol_id="fake",
                market_id="main",
                supplies=[SupplyObject(ETH, Decimal(2000)), SupplyObject(WETH, Decimal(2000))],
            )

    def test_clone_is_independent(self):
        portfolio = make_portfolio()
        clone = portfolio.clone()

        clone.supply(ETH, "1")

        assert portfolio.find_supply(ETH).balance == Decimal("2")
        assert clone != portfolio


class TestPortfolioAggregates:
    def test_totals(self):
        portfolio = make_portfolio()

        assert portfolio.total_supply_usd == Decimal("4000")
        assert portfolio.total_borrow_usd == Decimal("1000")
        assert portfolio.borrowing_power == Decimal("3200")
        assert portfolio.liquidation_limit == Decimal("3400")

    def test_health_factor(self):
        portfolio = make_portfolio()

        assert portfolio.health_factor == Decimal("3.4")
        assert portfolio.utilization == Decimal("1000") / Decimal("3200")

    def test_health_factor_without_debt(self):
        portfolio = make_portfolio(usdc_debt="0")

        assert portfolio.health_factor == INFINITE_HEALTH
        assert portfolio.utilization == 0

    def test_collateral_disabled_is_ignored(self):
        portfolio = make_portfolio()
        portfolio.find_supply(ETH).usage_as_collateral_enabled = False

        assert portfolio.borrowing_power == 0

    def test_has_positions(self):
        assert make_portfolio().has_positions
        assert not make_portfolio(eth_supply="0", usdc_debt="0").has_positions

    def test_caps(self):
        supply = SupplyObject(USDC, Decimal(1), supply_cap=Decimal(100), total_supply=Decimal("100.000001"))
        borrow = BorrowObject(USDC, Decimal(1), borrow_cap=Decimal(0), total_borrow=Decimal(10**9))

        assert supply.is_cap_exceeded()
        assert not borrow.is_cap_exceeded()

    def test_net_apy(self):
        portfolio = make_portfolio()
        portfolio.find_supply(ETH).apy = Decimal("0.02")
        portfolio.find_borrow(USDC).apys = [Decimal("0.04"), Decimal(0)]

        # (4000 * 0.02 - 1000 * 0.04) / 4000
        assert portfolio.net_apy == Decimal("0.01")
