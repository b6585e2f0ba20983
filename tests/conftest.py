import asyncio
from decimal import Decimal
from typing import Dict, List, Set

import pytest

import lending.services.cache as cache_module
import lending.services.rpc as rpc_module
from lending.config import Settings, get_settings
from lending.core.engine import TransitionEngine
from lending.core.errors import MissingParamsError, NoRouteError
from lending.core.flashloan import FlashLoanAggregator, StaticFeeFlashLoanVenue
from lending.core.logic import AmountInput, FractionOfBalance, Logic, expected_amount
from lending.core.portfolio import BorrowObject, Portfolio, SupplyObject
from lending.core.token import NATIVE_TOKENS, WRAPPED_NATIVE_TOKENS, Token, TokenAmount
from lending.protocols.base import Caps, LendingProtocol, Market
from lending.services.token_metadata import get_known_token
from lending.swapers.base import SwapQuote, Swaper

ACCOUNT = "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"

ETH = NATIVE_TOKENS[1]
WETH = WRAPPED_NATIVE_TOKENS[1]
USDC = get_known_token(1, "USDC")
WBTC = get_known_token(1, "WBTC")
DAI = get_known_token(1, "DAI")

PRICES = {
    WETH: Decimal(2000),
    USDC: Decimal(1),
    WBTC: Decimal(60000),
    DAI: Decimal(1),
}

# Receipt tokens of the tokenized fake market
RECEIPT_TOKENS = {
    WETH: Token(1, "0x00000000000000000000000000000000000a0001", 18, "aWETH"),
    USDC: Token(1, "0x00000000000000000000000000000000000a0002", 6, "aUSDC"),
    WBTC: Token(1, "0x00000000000000000000000000000000000a0003", 8, "aWBTC"),
}


class FakeProtocol(LendingProtocol):
    """In-memory lending market with one market id, ``main``."""

    ID = "fake"

    def __init__(
        self,
        tokenized: bool = True,
        supply_tokens: Set[Token] | None = None,
        borrow_tokens: Set[Token] | None = None,
        leverage_disabled: Set[Token] | None = None,
        flash_loan_venue_id: str | None = None,
        caps: Dict[Token, Caps] | None = None,
    ):
        self.tokenized = tokenized
        self.supply_tokens = supply_tokens if supply_tokens is not None else {WETH, USDC, WBTC}
        self.borrow_tokens = borrow_tokens if borrow_tokens is not None else {WETH, USDC}
        self.leverage_disabled = leverage_disabled or set()
        self.flash_loan_venue_id = flash_loan_venue_id
        self.caps = caps or {}
        self.prepared = 0

    @classmethod
    def supported_chain_ids(cls) -> List[int]:
        return [1]

    @property
    def id(self) -> str:
        return self.ID

    @property
    def chain_id(self) -> int:
        return 1

    @property
    def markets(self) -> List[Market]:
        return [Market(id="main", name="Main")]

    async def prepare(self, market_id: str) -> None:
        self.prepared += 1

    def is_token_for_supply(self, market_id: str, token: Token) -> bool:
        return token.wrapped in self.supply_tokens

    def is_token_for_borrow(self, market_id: str, token: Token) -> bool:
        return token.wrapped in self.borrow_tokens

    def is_asset_tokenized(self, market_id: str, token: Token) -> bool:
        return self.tokenized

    def to_protocol_token(self, market_id: str, token: Token) -> Token:
        return RECEIPT_TOKENS[token.wrapped] if self.tokenized else token

    def can_leverage(self, market_id: str, token: Token) -> bool:
        return token.wrapped not in self.leverage_disabled

    async def get_caps(self, market_id: str, token: Token) -> Caps | None:
        return self.caps.get(token.wrapped)

    async def get_portfolio(self, account: str, market_id: str) -> Portfolio:
        raise NotImplementedError

    def new_supply_logic(self, market_id: str, input: AmountInput) -> Logic:
        amount = expected_amount(input)
        return Logic(
            rid=f"{self.ID}:supply",
            input=input,
            output=amount.clone(self.to_protocol_token(market_id, amount.token)),
        )

    def new_withdraw_logic(self, market_id: str, output: TokenAmount) -> Logic:
        if not self.tokenized:
            return Logic(rid=f"{self.ID}:withdraw", output=output)
        return Logic(
            rid=f"{self.ID}:withdraw",
            input=FractionOfBalance(output.clone(self.to_protocol_token(market_id, output.token))),
            output=output,
        )

    def new_borrow_logic(self, market_id: str, output: TokenAmount) -> Logic:
        return Logic(rid=f"{self.ID}:borrow", output=output)

    def new_repay_logic(self, market_id: str, input: AmountInput, borrower: str) -> Logic:
        if not borrower:
            raise MissingParamsError("missing required params: borrower")
        return Logic(rid=f"{self.ID}:repay", input=input, fields={"borrower": borrower})


class FakeSwaper(Swaper):
    """Quotes at fixed USD prices."""

    ID = "fake-swap"

    def __init__(self, prices: Dict[Token, Decimal] | None = None, delay: float = 0, no_route: bool = False):
        super().__init__(1, slippage_bps=100)
        self.prices = prices or PRICES
        self.delay = delay
        self.no_route = no_route
        self.calls = []

    @property
    def id(self) -> str:
        return self.ID

    async def _check(self, side: str, token_in: Token, token_out: Token):
        self.calls.append((side, token_in.symbol, token_out.symbol))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.no_route:
            raise NoRouteError(f"no route {token_in}->{token_out}")

    async def quote_exact_in(self, input: TokenAmount, token_out: Token) -> SwapQuote:
        await self._check("in", input.token, token_out)
        rate = self.prices[input.token.wrapped] / self.prices[token_out.wrapped]
        return SwapQuote(input=input, output=TokenAmount(token_out, input.amount * rate))

    async def quote_exact_out(self, token_in: Token, output: TokenAmount) -> SwapQuote:
        await self._check("out", token_in, output.token)
        rate = self.prices[output.token.wrapped] / self.prices[token_in.wrapped]
        input = self.with_slippage(TokenAmount(token_in, output.amount * rate))
        return SwapQuote(input=input, output=output, exact_in=False)


class ExactInFakeSwaper(FakeSwaper):
    """Quotes fixed inputs only, like aggregators without a buy side."""

    ID = "fake-exact-in"
    exact_in_only = True

    async def quote_exact_out(self, token_in: Token, output: TokenAmount) -> SwapQuote:
        return await Swaper.quote_exact_out(self, token_in, output)


def make_portfolio(
    eth_supply: str = "2",
    usdc_debt: str = "1000",
    usdc_supply_cap: str = "0",
    usdc_total_supply: str = "0",
    usdc_borrow_cap: str = "0",
    usdc_total_borrow: str = "0",
) -> Portfolio:
    return Portfolio(
        chain_id=1,
        protocol_id=FakeProtocol.ID,
        market_id="main",
        supplies=[
            SupplyObject(token=ETH, price=PRICES[WETH], balance=Decimal(eth_supply),
                         ltv=Decimal("0.8"), liquidation_threshold=Decimal("0.85")),
            SupplyObject(token=USDC, price=PRICES[USDC], balance=Decimal(0),
                         ltv=Decimal("0.75"), liquidation_threshold=Decimal("0.8"),
                         supply_cap=Decimal(usdc_supply_cap), total_supply=Decimal(usdc_total_supply)),
            SupplyObject(token=WBTC, price=PRICES[WBTC], balance=Decimal(0),
                         ltv=Decimal("0.7"), liquidation_threshold=Decimal("0.75")),
        ],
        borrows=[
            BorrowObject(token=ETH, price=PRICES[WETH], balances=[Decimal(0), Decimal(0)]),
            BorrowObject(token=USDC, price=PRICES[USDC], balances=[Decimal(usdc_debt), Decimal(0)],
                         borrow_cap=Decimal(usdc_borrow_cap), total_borrow=Decimal(usdc_total_borrow)),
        ],
    )


def replay(portfolio: Portfolio, logics: List[Logic]) -> Portfolio:
    """Apply the net position changes of ``logics`` to a copy of ``portfolio``."""
    result = portfolio.clone()
    for logic in logics:
        action = logic.action
        if action in ("supply", "deposit", "supply-collateral"):
            result.supply(logic.input_amount.token, logic.input_amount)
        elif action in ("withdraw", "withdraw-collateral"):
            result.withdraw(logic.output.token, logic.output)
        elif action == "borrow":
            result.borrow(logic.output.token, logic.output)
        elif action == "repay":
            result.repay(logic.input_amount.token, logic.input_amount)
    return result


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset cached singletons between tests to prevent cross-test pollution."""
    cache_module._reserve_cache = None
    cache_module._fee_cache = None
    rpc_module.reset_web3_instances()
    get_settings.cache_clear()
    yield
    cache_module._reserve_cache = None
    cache_module._fee_cache = None
    rpc_module.reset_web3_instances()
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings(quote_timeout_seconds=1.0, swap_slippage_bps=100)


@pytest.fixture
def protocol():
    return FakeProtocol()


@pytest.fixture
def swaper():
    return FakeSwaper()


@pytest.fixture
def venue():
    return StaticFeeFlashLoanVenue("fake-venue", 1, Decimal("0.0005"))


@pytest.fixture
def engine(protocol, swaper, venue, settings):
    return TransitionEngine(
        protocols=[protocol],
        swapers=[swaper],
        flash_loan_aggregator=FlashLoanAggregator([venue]),
        settings=settings,
    )


@pytest.fixture
def portfolio():
    return make_portfolio()


@pytest.fixture
def make_engine(settings):
    """Build an engine around custom collaborators."""
    def _make(protocol=None, swaper=None, venues=None, settings_override=None):
        return TransitionEngine(
            protocols=[protocol or FakeProtocol()],
            swapers=[swaper or FakeSwaper()],
            flash_loan_aggregator=FlashLoanAggregator(
                venues if venues is not None else [StaticFeeFlashLoanVenue("fake-venue", 1, Decimal("0.0005"))]
            ),
            settings=settings_override or settings,
        )
    return _make
