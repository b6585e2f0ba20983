from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import AsyncWeb3

from conftest import ACCOUNT, ETH, USDC, WETH, FakeSwaper
from lending.core.engine import TransitionEngine
from lending.core.errors import UnsupportedChainError
from lending.core.flashloan import BalancerV2FlashLoanVenue, FlashLoanAggregator
from lending.core.logic import RID_FLASH_LOAN, RID_SEND_TOKEN, Fixed, FractionOfBalance
from lending.core.token import TokenAmount
from lending.protocols.radiant_v2 import RadiantV2Protocol
from lending.services.metrics import REGISTRY

RWETH = "0x00000000000000000000000000000000000000a1"
RUSDC = "0x00000000000000000000000000000000000000a2"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
RAY = 10**27

RESERVE_TOKENS = [("WETH", WETH.address), ("USDC", USDC.address)]

# Per reserve: configuration, reserve data, token addresses, oracle price
RESERVE_RESULTS = [
    (18, 8000, 8250, 10500, 1500, True, True, False, True, False),
    (100 * 10**18, 0, 50 * 10**18, 2 * RAY // 100, 3 * RAY // 100, 0, 0, RAY, RAY, 0),
    (RWETH, ZERO_ADDRESS, ZERO_ADDRESS),
    (2000 * 10**8,),
    (6, 7500, 8000, 10500, 1000, True, True, False, True, False),
    (1_000_000 * 10**6, 0, 500_000 * 10**6, RAY // 100, 4 * RAY // 100, 0, 0, RAY, RAY, 0),
    (RUSDC, ZERO_ADDRESS, ZERO_ADDRESS),
    (10**8,),
]

# currentATokenBalance, currentStableDebt, currentVariableDebt, ..., usageAsCollateralEnabled
USER_RESULTS = [
    (2 * 10**18, 0, 0, 0, 0, 0, 0, 0, True),
    (0, 0, 1000 * 10**6, 0, 1000 * 10**6, 0, 0, 0, False),
]


def market_reads(protocol_id: str, status: str) -> float:
    value = REGISTRY.get_sample_value(
        "lending_market_reads_total", {"protocol": protocol_id, "status": status}
    )
    return value or 0


class TestRadiantV2Protocol:
    @pytest.fixture
    def protocol(self):
        protocol = RadiantV2Protocol(chain_id=1, web3=MagicMock())
        protocol._data_provider = MagicMock()
        protocol._data_provider.functions.getAllReservesTokens.return_value.call = AsyncMock(
            return_value=RESERVE_TOKENS
        )
        protocol._multicall = MagicMock()
        # Reserve reads batch four calls per asset, portfolio reads one
        protocol._multicall.execute_and_decode = AsyncMock(
            side_effect=lambda calls: RESERVE_RESULTS if len(calls) == len(RESERVE_RESULTS) else USER_RESULTS
        )
        return protocol

    def test_deployments(self):
        assert RadiantV2Protocol.supported_chain_ids() == [1, 56, 42161]
        assert RadiantV2Protocol(chain_id=56, web3=MagicMock()).market_id == "bnb"

        with pytest.raises(UnsupportedChainError):
            RadiantV2Protocol(chain_id=10, web3=MagicMock())

    @pytest.mark.asyncio
    async def test_reserve_facts(self, protocol):
        await protocol.prepare("ethereum")

        assert protocol.is_token_for_supply("ethereum", ETH)
        assert protocol.is_token_for_borrow("ethereum", USDC)
        assert protocol.to_protocol_token("ethereum", USDC).symbol == "rUSDC"
        assert protocol.to_protocol_token("ethereum", ETH).address == AsyncWeb3.to_checksum_address(RWETH)
        assert not protocol.is_flash_loan_enabled(WETH)

    @pytest.mark.asyncio
    async def test_get_caps(self, protocol):
        caps = await protocol.get_caps("ethereum", USDC)

        assert caps.supply_cap == caps.borrow_cap == 0
        assert caps.total_borrow == Decimal(500_000)
        assert caps.total_supply == Decimal(1_500_000)

    @pytest.mark.asyncio
    async def test_get_portfolio(self, protocol):
        before = market_reads("radiant-v2", "success")

        portfolio = await protocol.get_portfolio(ACCOUNT, "ethereum")

        assert portfolio.protocol_id == "radiant-v2"
        eth = portfolio.find_supply(WETH)
        assert eth.token == ETH
        assert eth.balance == Decimal(2)
        assert eth.price == Decimal(2000)
        assert eth.ltv == Decimal("0.8")
        assert eth.apy == Decimal("0.02")
        # Untouched reserves keep the reserve's collateral flag
        assert portfolio.find_supply(USDC).usage_as_collateral_enabled

        usdc = portfolio.find_borrow(USDC)
        assert usdc.balance == Decimal(1000)
        assert usdc.variable_balance == Decimal(1000)
        assert portfolio.health_factor == Decimal("3.3")
        # One read for the reserves, one for the account
        assert market_reads("radiant-v2", "success") == before + 2

    @pytest.mark.asyncio
    async def test_account_read_failure(self, protocol):
        await protocol.prepare("ethereum")
        protocol._multicall.execute_and_decode = AsyncMock(side_effect=Exception("multicall reverted"))
        before = market_reads("radiant-v2", "error")

        with pytest.raises(Exception, match="multicall reverted"):
            await protocol.get_portfolio(ACCOUNT, "ethereum")

        assert market_reads("radiant-v2", "error") == before + 1

    @pytest.mark.asyncio
    async def test_logics(self, protocol):
        await protocol.prepare("ethereum")
        amount = TokenAmount(WETH, "1")

        deposit = protocol.new_supply_logic("ethereum", Fixed(amount))
        withdraw = protocol.new_withdraw_logic("ethereum", amount)
        borrow = protocol.new_borrow_logic("ethereum", TokenAmount(USDC, "100"))
        repay = protocol.new_repay_logic("ethereum", Fixed(TokenAmount(USDC, "100")), ACCOUNT)

        assert deposit.rid == "radiant-v2:deposit"
        assert deposit.output.token.symbol == "rWETH"
        assert withdraw.rid == "radiant-v2:withdraw"
        assert withdraw.input == FractionOfBalance(TokenAmount(protocol.to_protocol_token("ethereum", WETH), "1"))
        assert borrow.rid == "radiant-v2:borrow"
        assert repay.rid == "radiant-v2:repay"

    @pytest.mark.asyncio
    async def test_leverage_draws_from_shared_venue(self, protocol, settings):
        engine = TransitionEngine(
            protocols=[protocol],
            swapers=[FakeSwaper()],
            flash_loan_aggregator=FlashLoanAggregator([BalancerV2FlashLoanVenue(1)]),
            settings=settings,
        )
        portfolio = await protocol.get_portfolio(ACCOUNT, "ethereum")

        output = await engine.leverage_by_collateral(ACCOUNT, portfolio, ETH, "1", USDC)

        assert output.error is None
        assert [logic.rid for logic in output.logics] == [
            RID_FLASH_LOAN, "fake-swap:swap-token", "radiant-v2:deposit", RID_SEND_TOKEN,
            "radiant-v2:borrow", RID_FLASH_LOAN,
        ]
        assert output.logics[0].fields["protocol_id"] == "balancer-v2"
        assert output.logics[3].input_amount.token.symbol == "rWETH"
        # 2000 USDC plus 1% slippage, no flash-loan fee
        assert output.dest_amount == Decimal("2020")
        assert output.after_portfolio.find_supply(ETH).balance == Decimal(3)
        assert output.after_portfolio.find_borrow(USDC).balance == Decimal(3020)
