"""Morpho Blue lending protocol.

Each Morpho Blue market pairs exactly one collateral token with one loan
token. Collateral is held by the singleton and not tokenized, so sequences
need no receipt-token transfers. Portfolios are priced in the loan token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List

from web3 import AsyncWeb3

from lending.core.errors import LendingError, MissingParamsError, UnsupportedChainError
from lending.core.logic import AmountInput, Logic
from lending.core.portfolio import BorrowObject, Portfolio, SupplyObject
from lending.core.token import Token, TokenAmount
from lending.protocols.base import Caps, LendingProtocol, Market
from lending.services.metrics import record_market_read
from lending.services.multicall import MulticallService
from lending.services.rpc import get_web3
from lending.services.token_metadata import get_known_token

logger = logging.getLogger(__name__)

# Morpho Blue singleton (same address on every deployment)
MORPHO_BLUE_ADDRESSES = {
    1: "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
    8453: "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
}

ORACLE_ABI = [
    {
        "inputs": [],
        "name": "price",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Shares carry 6 extra decimals of virtual liquidity
VIRTUAL_SHARES = 10**6
VIRTUAL_ASSETS = 1
ORACLE_PRICE_SCALE = 36


@dataclass(frozen=True)
class MorphoMarket:
    id: str
    name: str
    collateral_token: Token
    loan_token: Token
    lltv: Decimal               # Liquidation LTV (0.86 = 86%)


def _market(chain_id: int, market_id: str, collateral: str, loan: str, lltv: str) -> MorphoMarket:
    collateral_token = get_known_token(chain_id, collateral)
    loan_token = get_known_token(chain_id, loan)
    return MorphoMarket(
        id=market_id,
        name=f"{collateral}-{loan}-{(Decimal(lltv) * 100).normalize():f}",
        collateral_token=collateral_token,
        loan_token=loan_token,
        lltv=Decimal(lltv),
    )


MORPHO_BLUE_MARKETS: Dict[int, List[MorphoMarket]] = {
    1: [
        _market(1, "0xb323495f7e4148be5643a4ea4a8221eef163e4bccfdedc2a6f4696baacbc86cc", "wstETH", "USDC", "0.86"),
        _market(1, "0xc54d7acf14de29e0e5527cabd7a576506870346a78a11a6762e2cca66322ec41", "wstETH", "WETH", "0.945"),
        _market(1, "0x3a85e619751152991742810df6ec69ce473daef99e28a64ab2340d7b7ccfee49", "WBTC", "USDC", "0.86"),
    ],
}


def to_assets_up(shares: int, total_assets: int, total_shares: int) -> int:
    """Convert borrow shares to assets, rounding up like the contract does."""
    numerator = shares * (total_assets + VIRTUAL_ASSETS)
    denominator = total_shares + VIRTUAL_SHARES
    return -(-numerator // denominator)


class MorphoBlueProtocol(LendingProtocol):
    ID = "morphoblue"

    flash_loan_venue_id = "morphoblue"

    def __init__(self, chain_id: int = 1, web3: AsyncWeb3 | None = None):
        if chain_id not in MORPHO_BLUE_MARKETS:
            raise UnsupportedChainError(
                f"Unsupported chain: {chain_id}. Supported: {list(MORPHO_BLUE_MARKETS.keys())}"
            )
        self._chain_id = chain_id
        self._web3 = web3 or get_web3(chain_id)
        self._morpho_address = AsyncWeb3.to_checksum_address(MORPHO_BLUE_ADDRESSES[chain_id])
        self._multicall = MulticallService(self._web3)
        self._markets = {market.id: market for market in MORPHO_BLUE_MARKETS[chain_id]}

    @classmethod
    def supported_chain_ids(cls) -> List[int]:
        return list(MORPHO_BLUE_MARKETS)

    @property
    def id(self) -> str:
        return self.ID

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def markets(self) -> List[Market]:
        return [Market(id=market.id, name=market.name) for market in self._markets.values()]

    def get_market(self, market_id: str) -> MorphoMarket:
        market = self._markets.get(market_id)
        if market is None:
            raise LendingError(f"Unknown {self.ID} market {market_id} on chain {self._chain_id}")
        return market

    def is_token_for_supply(self, market_id: str, token: Token) -> bool:
        return self.get_market(market_id).collateral_token.wrapped == token.wrapped

    def is_token_for_borrow(self, market_id: str, token: Token) -> bool:
        return self.get_market(market_id).loan_token.wrapped == token.wrapped

    def is_asset_tokenized(self, market_id: str, token: Token) -> bool:
        return False

    async def _read_market(self, account: str, market_id: str) -> Dict[str, int]:
        id_bytes = bytes.fromhex(market_id[2:])
        calls = [
            self._multicall.build_call(
                self._morpho_address,
                "position(bytes32,address)",
                ["bytes32", "address"],
                [id_bytes, AsyncWeb3.to_checksum_address(account)],
                ["uint256", "uint128", "uint128"],
            ),
            self._multicall.build_call(
                self._morpho_address,
                "market(bytes32)",
                ["bytes32"],
                [id_bytes],
                ["uint128", "uint128", "uint128", "uint128", "uint128", "uint128"],
            ),
            self._multicall.build_call(
                self._morpho_address,
                "idToMarketParams(bytes32)",
                ["bytes32"],
                [id_bytes],
                ["address", "address", "address", "address", "uint256"],
            ),
        ]
        position, market, params = await self._multicall.execute_and_decode(calls)

        oracle = self._web3.eth.contract(address=AsyncWeb3.to_checksum_address(params[2]), abi=ORACLE_ABI)
        price = await oracle.functions.price().call()

        return {
            "borrow_shares": position[1],
            "collateral": position[2],
            "total_supply_assets": market[0],
            "total_borrow_assets": market[2],
            "total_borrow_shares": market[3],
            "oracle_price": price,
        }

    async def get_caps(self, market_id: str, token: Token) -> Caps:
        market = self.get_market(market_id)
        if market.loan_token.wrapped != token.wrapped:
            # Collateral is never capped
            return Caps(Decimal(0), Decimal(0), Decimal(0), Decimal(0))
        call = self._multicall.build_call(
            self._morpho_address,
            "market(bytes32)",
            ["bytes32"],
            [bytes.fromhex(market_id[2:])],
            ["uint128", "uint128", "uint128", "uint128", "uint128", "uint128"],
        )
        (state,) = await self._multicall.execute_and_decode([call])
        loan_decimals = market.loan_token.decimals
        # Borrowing is bounded by the liquidity lenders supplied
        return Caps(
            supply_cap=Decimal(0),
            total_supply=Decimal(0),
            borrow_cap=Decimal(state[0]).scaleb(-loan_decimals),
            total_borrow=Decimal(state[2]).scaleb(-loan_decimals),
        )

    async def get_portfolio(self, account: str, market_id: str) -> Portfolio:
        market = self.get_market(market_id)
        try:
            state = await self._read_market(account, market_id)
        except Exception as e:
            record_market_read(self.ID, "error")
            logger.error(f"Failed to read {self.ID} market {market.name} for {account}: {e}")
            raise
        record_market_read(self.ID, "success")

        collateral_decimals = market.collateral_token.decimals
        loan_decimals = market.loan_token.decimals

        # Oracle price is loan-token wei per collateral-token wei, scaled by 1e36
        collateral_price = Decimal(state["oracle_price"]).scaleb(
            -(ORACLE_PRICE_SCALE + loan_decimals - collateral_decimals)
        )
        borrow_assets = to_assets_up(
            state["borrow_shares"], state["total_borrow_assets"], state["total_borrow_shares"]
        )

        return Portfolio(
            chain_id=self._chain_id,
            protocol_id=self.ID,
            market_id=market_id,
            supplies=[
                SupplyObject(
                    token=market.collateral_token.unwrapped,
                    price=collateral_price,
                    balance=Decimal(state["collateral"]).scaleb(-collateral_decimals),
                    ltv=market.lltv,
                    liquidation_threshold=market.lltv,
                ),
            ],
            borrows=[
                BorrowObject(
                    token=market.loan_token.unwrapped,
                    price=Decimal(1),
                    balances=[Decimal(borrow_assets).scaleb(-loan_decimals)],
                    borrow_cap=Decimal(state["total_supply_assets"]).scaleb(-loan_decimals),
                    total_borrow=Decimal(state["total_borrow_assets"]).scaleb(-loan_decimals),
                ),
            ],
        )

    def new_supply_logic(self, market_id: str, input: AmountInput) -> Logic:
        return Logic(rid=f"{self.ID}:supply-collateral", input=input, fields={"market_id": market_id})

    def new_withdraw_logic(self, market_id: str, output: TokenAmount) -> Logic:
        return Logic(rid=f"{self.ID}:withdraw-collateral", output=output, fields={"market_id": market_id})

    def new_borrow_logic(self, market_id: str, output: TokenAmount) -> Logic:
        return Logic(rid=f"{self.ID}:borrow", output=output, fields={"market_id": market_id})

    def new_repay_logic(self, market_id: str, input: AmountInput, borrower: str) -> Logic:
        if not borrower:
            raise MissingParamsError("missing required params: borrower")
        return Logic(
            rid=f"{self.ID}:repay",
            input=input,
            fields={"market_id": market_id, "borrower": borrower},
        )
