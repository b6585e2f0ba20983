"""Aave V3 lending protocol.

Market facts come from the UiPoolDataProvider (reserve configuration, caps,
indexes, prices), read once per TTL and shared by every planner call. Supply
is tokenized: supplying mints aTokens, withdrawing burns them, so sequences
running inside a flash loan must move aTokens to and from the account.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Set, Tuple

from web3 import AsyncWeb3

from lending.config import CHAIN_NAMES
from lending.core.errors import LendingError, MissingParamsError, UnsupportedChainError
from lending.core.flashloan import FlashLoanVenue
from lending.core.logic import AmountInput, FractionOfBalance, Logic, expected_amount
from lending.core.portfolio import BorrowObject, Portfolio, SupplyObject
from lending.core.token import Token, TokenAmount
from lending.protocols.base import Caps, LendingProtocol, Market
from lending.services.cache import get_fee_cache, get_reserve_cache
from lending.services.metrics import record_market_read
from lending.services.rpc import get_web3

logger = logging.getLogger(__name__)

# Aave V3 Pool addresses per chain
AAVE_V3_POOL_ADDRESSES = {
    1: "0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2",
    10: "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
    8453: "0xA238Dd80C259a72e81d7e4664a9801593F98d1c5",
    42161: "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
}

# Aave V3 Pool Addresses Provider (argument of the UiPoolDataProvider calls)
AAVE_V3_POOL_ADDRESSES_PROVIDER = {
    1: "0x2f39d218133AFaB8F2B819B1066c7E434Ad94E9e",
    10: "0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
    8453: "0xe20fCBdBfFC4Dd138cE8b2E6FBb6CB49777ad64D",
    42161: "0xa97684ead0e402dC232d5A977953DF7ECBaB3CDb",
}

# UiPoolDataProviderV3 addresses per chain
AAVE_V3_UI_POOL_DATA_PROVIDER = {
    1: "0x91c0eA31b49B69Ea18607702c61A09E4Be91B8FE",
    10: "0xbd83DdBE37fc91923d59C8c1E0bDe0CccC332C6f",
    8453: "0x174446a6741300cD2E7C1b1A636Fee99c8F83502",
    42161: "0x145dE30c929a065582da84Cf96F88460dB9745A7",
}

# Assets that can be borrowed but never supplied
AAVE_V3_SUPPLY_DISABLED = {
    1: {"0x40D16FC0246aD3160Ccc09B8D0D3A2cD28aE6C2f"},  # GHO
}

# Assets that cannot be the debt side of a leveraged position
AAVE_V3_LEVERAGE_DISABLED = {
    1: {"0x40D16FC0246aD3160Ccc09B8D0D3A2cD28aE6C2f"},  # GHO
}

VARIABLE_RATE_MODE = 2
RAY = Decimal(10) ** 27

# Field layout of IUiPoolDataProviderV3.AggregatedReserveData
RESERVE_FIELDS: List[Tuple[str, str]] = [
    ("address", "underlyingAsset"),
    ("string", "name"),
    ("string", "symbol"),
    ("uint256", "decimals"),
    ("uint256", "baseLTVasCollateral"),
    ("uint256", "reserveLiquidationThreshold"),
    ("uint256", "reserveLiquidationBonus"),
    ("uint256", "reserveFactor"),
    ("bool", "usageAsCollateralEnabled"),
    ("bool", "borrowingEnabled"),
    ("bool", "stableBorrowRateEnabled"),
    ("bool", "isActive"),
    ("bool", "isFrozen"),
    ("uint128", "liquidityIndex"),
    ("uint128", "variableBorrowIndex"),
    ("uint128", "liquidityRate"),
    ("uint128", "variableBorrowRate"),
    ("uint128", "stableBorrowRate"),
    ("uint40", "lastUpdateTimestamp"),
    ("address", "aTokenAddress"),
    ("address", "stableDebtTokenAddress"),
    ("address", "variableDebtTokenAddress"),
    ("address", "interestRateStrategyAddress"),
    ("uint256", "availableLiquidity"),
    ("uint256", "totalPrincipalStableDebt"),
    ("uint256", "averageStableRate"),
    ("uint256", "stableDebtLastUpdateTimestamp"),
    ("uint256", "totalScaledVariableDebt"),
    ("uint256", "priceInMarketReferenceCurrency"),
    ("address", "priceOracle"),
    ("uint256", "variableRateSlope1"),
    ("uint256", "variableRateSlope2"),
    ("uint256", "stableRateSlope1"),
    ("uint256", "stableRateSlope2"),
    ("uint256", "baseStableBorrowRate"),
    ("uint256", "baseVariableBorrowRate"),
    ("uint256", "optimalUsageRatio"),
    ("bool", "isPaused"),
    ("bool", "isSiloedBorrowing"),
    ("uint128", "accruedToTreasury"),
    ("uint128", "unbacked"),
    ("uint128", "isolationModeTotalDebt"),
    ("bool", "flashLoanEnabled"),
    ("uint256", "debtCeiling"),
    ("uint256", "debtCeilingDecimals"),
    ("uint8", "eModeCategoryId"),
    ("uint256", "borrowCap"),
    ("uint256", "supplyCap"),
    ("uint16", "eModeLtv"),
    ("uint16", "eModeLiquidationThreshold"),
    ("uint16", "eModeLiquidationBonus"),
    ("address", "eModePriceSource"),
    ("string", "eModeLabel"),
    ("bool", "borrowableInIsolation"),
]

USER_RESERVE_FIELDS: List[Tuple[str, str]] = [
    ("address", "underlyingAsset"),
    ("uint256", "scaledATokenBalance"),
    ("bool", "usageAsCollateralEnabledOnUser"),
    ("uint256", "stableBorrowRate"),
    ("uint256", "scaledVariableDebt"),
    ("uint256", "principalStableDebt"),
    ("uint256", "stableBorrowLastUpdateTimestamp"),
]

BASE_CURRENCY_FIELDS: List[Tuple[str, str]] = [
    ("uint256", "marketReferenceCurrencyUnit"),
    ("int256", "marketReferenceCurrencyPriceInUsd"),
    ("int256", "networkBaseTokenPriceInUsd"),
    ("uint8", "networkBaseTokenPriceDecimals"),
]


def _components(fields: List[Tuple[str, str]]) -> List[Dict[str, str]]:
    return [{"internalType": abi_type, "name": name, "type": abi_type} for abi_type, name in fields]


UI_POOL_DATA_PROVIDER_ABI = [
    {
        "inputs": [{"internalType": "contract IPoolAddressesProvider", "name": "provider", "type": "address"}],
        "name": "getReservesData",
        "outputs": [
            {"components": _components(RESERVE_FIELDS), "name": "", "type": "tuple[]"},
            {"components": _components(BASE_CURRENCY_FIELDS), "name": "", "type": "tuple"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "contract IPoolAddressesProvider", "name": "provider", "type": "address"},
            {"internalType": "address", "name": "user", "type": "address"},
        ],
        "name": "getUserReservesData",
        "outputs": [
            {"components": _components(USER_RESERVE_FIELDS), "name": "", "type": "tuple[]"},
            {"internalType": "uint8", "name": "", "type": "uint8"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

POOL_ABI = [
    {
        "inputs": [],
        "name": "FLASHLOAN_PREMIUM_TOTAL",
        "outputs": [{"internalType": "uint128", "name": "", "type": "uint128"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def _as_dict(fields: List[Tuple[str, str]], values: Any) -> Dict[str, Any]:
    return {name: value for (_, name), value in zip(fields, values)}


@dataclass(frozen=True)
class ReserveData:
    """One reserve of the market, with amounts in whole tokens."""
    token: Token
    protocol_token: Token
    ltv: Decimal
    liquidation_threshold: Decimal
    usage_as_collateral_enabled: bool
    borrowing_enabled: bool
    is_active: bool
    is_frozen: bool
    is_paused: bool
    flash_loan_enabled: bool
    liquidity_index: int
    variable_borrow_index: int
    supply_apy: Decimal
    variable_borrow_apy: Decimal
    stable_borrow_apy: Decimal
    price: Decimal
    supply_cap: Decimal
    borrow_cap: Decimal
    total_supply: Decimal
    total_borrow: Decimal


@dataclass(frozen=True)
class UserReserve:
    """An account's position in one reserve, in whole tokens."""
    supplied: Decimal = Decimal(0)
    variable_debt: Decimal = Decimal(0)
    stable_debt: Decimal = Decimal(0)
    # None falls back to the reserve's collateral flag
    usage_as_collateral_enabled: bool | None = None


class AaveV3Protocol(LendingProtocol):
    ID = "aave-v3"
    PROTOCOL_TOKEN_PREFIX = "a"
    POOL_ADDRESSES = AAVE_V3_POOL_ADDRESSES
    POOL_ADDRESSES_PROVIDER = AAVE_V3_POOL_ADDRESSES_PROVIDER
    UI_POOL_DATA_PROVIDER = AAVE_V3_UI_POOL_DATA_PROVIDER
    SUPPLY_DISABLED: Dict[int, Set[str]] = AAVE_V3_SUPPLY_DISABLED
    BORROW_DISABLED: Dict[int, Set[str]] = {}
    LEVERAGE_DISABLED: Dict[int, Set[str]] = AAVE_V3_LEVERAGE_DISABLED
    SUPPLY_ACTION = "supply"
    # Whether the pool also serves as a flash-loan venue
    LENDS_FLASH_LOANS = True

    def __init__(self, chain_id: int = 1, web3: AsyncWeb3 | None = None):
        if chain_id not in self.POOL_ADDRESSES:
            raise UnsupportedChainError(
                f"Unsupported chain: {chain_id}. Supported: {list(self.POOL_ADDRESSES.keys())}"
            )
        self._chain_id = chain_id
        self._web3 = web3 or get_web3(chain_id)

        self._pool_contract = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.POOL_ADDRESSES[chain_id]),
            abi=POOL_ABI,
        )
        self._ui_data_provider = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.UI_POOL_DATA_PROVIDER[chain_id]),
            abi=UI_POOL_DATA_PROVIDER_ABI,
        )
        self._reserve_cache = get_reserve_cache()

    @classmethod
    def supported_chain_ids(cls) -> List[int]:
        return list(cls.POOL_ADDRESSES)

    @property
    def id(self) -> str:
        return self.ID

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def market_id(self) -> str:
        return CHAIN_NAMES[self._chain_id]

    @property
    def markets(self) -> List[Market]:
        chain_display = self.market_id.capitalize()
        return [Market(id=self.market_id, name=f"{self.ID} ({chain_display})")]

    @property
    def pool_contract(self):
        return self._pool_contract

    # Reserve data

    def _cache_key(self) -> str:
        return f"{self.ID}:{self._chain_id}:{self.market_id}"

    def _ray_to_decimal(self, ray_value: int) -> Decimal:
        """Convert ray (1e27) to decimal (e.g., 0.032 for 3.2% APY)."""
        return Decimal(ray_value) / RAY

    def _calculate_actual_balance(self, scaled_balance: int, index: int, decimals: int) -> Decimal:
        """Convert a scaled balance to whole tokens using the liquidity or borrow index."""
        if scaled_balance == 0 or index == 0:
            return Decimal(0)
        # actual = scaled_balance * index / 1e27
        actual_raw = (scaled_balance * index) // (10**27)
        return Decimal(actual_raw).scaleb(-decimals)

    def _calculate_price(self, reserve: Dict[str, Any], base_currency: Dict[str, Any]) -> Decimal:
        """USD price of a reserve asset from its market-reference price."""
        market_ref_unit = base_currency["marketReferenceCurrencyUnit"]
        market_ref_price_usd = base_currency["marketReferenceCurrencyPriceInUsd"]
        price_in_market_ref = reserve["priceInMarketReferenceCurrency"]

        if market_ref_unit == 0:
            return Decimal(0)
        # Both prices carry 8 decimals like Chainlink feeds
        if market_ref_price_usd > 0:
            return Decimal(price_in_market_ref * market_ref_price_usd) / (Decimal(market_ref_unit) * Decimal(10**8))
        return Decimal(price_in_market_ref) / Decimal(10**8)

    def _build_reserve(self, reserve: Dict[str, Any], base_currency: Dict[str, Any]) -> ReserveData:
        decimals = int(reserve["decimals"])
        token = Token(self._chain_id, reserve["underlyingAsset"], decimals, reserve["symbol"], reserve["name"])
        protocol_token = Token(
            self._chain_id,
            reserve["aTokenAddress"],
            decimals,
            f"{self.PROTOCOL_TOKEN_PREFIX}{reserve['symbol']}",
        )
        total_variable_debt = self._calculate_actual_balance(
            reserve["totalScaledVariableDebt"], reserve["variableBorrowIndex"], decimals
        )
        total_borrow = total_variable_debt + Decimal(reserve["totalPrincipalStableDebt"]).scaleb(-decimals)
        total_supply = Decimal(reserve["availableLiquidity"] + reserve["unbacked"]).scaleb(-decimals) + total_borrow

        return ReserveData(
            token=token,
            protocol_token=protocol_token,
            ltv=Decimal(reserve["baseLTVasCollateral"]) / 10000,
            liquidation_threshold=Decimal(reserve["reserveLiquidationThreshold"]) / 10000,
            usage_as_collateral_enabled=reserve["usageAsCollateralEnabled"],
            borrowing_enabled=reserve["borrowingEnabled"],
            is_active=reserve["isActive"],
            is_frozen=reserve["isFrozen"],
            is_paused=reserve["isPaused"],
            flash_loan_enabled=reserve["flashLoanEnabled"],
            liquidity_index=reserve["liquidityIndex"],
            variable_borrow_index=reserve["variableBorrowIndex"],
            supply_apy=self._ray_to_decimal(reserve["liquidityRate"]),
            variable_borrow_apy=self._ray_to_decimal(reserve["variableBorrowRate"]),
            stable_borrow_apy=self._ray_to_decimal(reserve["stableBorrowRate"]),
            price=self._calculate_price(reserve, base_currency),
            # Caps are configured in whole tokens
            supply_cap=Decimal(reserve["supplyCap"]),
            borrow_cap=Decimal(reserve["borrowCap"]),
            total_supply=total_supply,
            total_borrow=total_borrow,
        )

    async def _fetch_reserves(self) -> Dict[Token, ReserveData]:
        provider_address = self.POOL_ADDRESSES_PROVIDER[self._chain_id]
        try:
            reserves_data, base_currency_info = await self._ui_data_provider.functions.getReservesData(
                provider_address
            ).call()
        except Exception as e:
            record_market_read(self.ID, "error")
            logger.error(f"Failed to read {self.ID} reserves on chain {self._chain_id}: {e}")
            raise
        record_market_read(self.ID, "success")

        base_currency = _as_dict(BASE_CURRENCY_FIELDS, base_currency_info)
        reserves = {}
        for raw in reserves_data:
            reserve = self._build_reserve(_as_dict(RESERVE_FIELDS, raw), base_currency)
            reserves[reserve.token] = reserve
        logger.debug(f"Loaded {len(reserves)} {self.ID} reserves on chain {self._chain_id}")
        return reserves

    async def prepare(self, market_id: str) -> None:
        await self.get_reserves()

    async def get_reserves(self) -> Dict[Token, ReserveData]:
        return await self._reserve_cache.get_or_fetch(self._cache_key(), self._fetch_reserves)

    def _loaded_reserves(self) -> Dict[Token, ReserveData]:
        reserves = self._reserve_cache.get(self._cache_key())
        if reserves is None:
            raise LendingError(f"{self.ID} reserves for chain {self._chain_id} are not loaded; await prepare() first")
        return reserves

    def get_reserve(self, token: Token) -> ReserveData | None:
        return self._loaded_reserves().get(token.wrapped)

    # Market facts

    def is_token_for_supply(self, market_id: str, token: Token) -> bool:
        reserve = self.get_reserve(token)
        if reserve is None or token.wrapped.address in self.SUPPLY_DISABLED.get(self._chain_id, set()):
            return False
        return reserve.is_active and not reserve.is_frozen and not reserve.is_paused

    def is_token_for_borrow(self, market_id: str, token: Token) -> bool:
        reserve = self.get_reserve(token)
        if reserve is None or token.wrapped.address in self.BORROW_DISABLED.get(self._chain_id, set()):
            return False
        return reserve.is_active and reserve.borrowing_enabled and not reserve.is_frozen and not reserve.is_paused

    def is_asset_tokenized(self, market_id: str, token: Token) -> bool:
        return True

    def is_flash_loan_enabled(self, token: Token) -> bool:
        reserves = self._reserve_cache.get(self._cache_key())
        if reserves is None:
            return False
        reserve = reserves.get(token.wrapped)
        return reserve is not None and reserve.flash_loan_enabled and reserve.is_active

    def to_protocol_token(self, market_id: str, token: Token) -> Token:
        reserve = self.get_reserve(token)
        if reserve is None:
            raise LendingError(f"{token.symbol} is not a {self.ID} reserve on chain {self._chain_id}")
        return reserve.protocol_token

    def can_leverage(self, market_id: str, token: Token) -> bool:
        return token.wrapped.address not in self.LEVERAGE_DISABLED.get(self._chain_id, set())

    async def get_caps(self, market_id: str, token: Token) -> Caps:
        reserves = await self.get_reserves()
        reserve = reserves.get(token.wrapped)
        if reserve is None:
            raise LendingError(f"{token.symbol} is not a {self.ID} reserve on chain {self._chain_id}")
        return Caps(
            supply_cap=reserve.supply_cap,
            total_supply=reserve.total_supply,
            borrow_cap=reserve.borrow_cap,
            total_borrow=reserve.total_borrow,
        )

    # Portfolio

    async def get_portfolio(self, account: str, market_id: str) -> Portfolio:
        """Read the account's supplies and borrows.

        Every active reserve is listed, with zero balances where the account
        holds nothing, so planners can target any asset of the market.
        """
        checksum_address = AsyncWeb3.to_checksum_address(account)
        provider_address = self.POOL_ADDRESSES_PROVIDER[self._chain_id]
        try:
            reserves, (user_reserves_data, _) = await asyncio.gather(
                self.get_reserves(),
                self._ui_data_provider.functions.getUserReservesData(provider_address, checksum_address).call(),
            )
        except Exception as e:
            record_market_read(self.ID, "error")
            logger.error(f"Failed to read {self.ID} portfolio of {account}: {e}")
            raise
        record_market_read(self.ID, "success")

        by_address = {reserve.token.address: reserve for reserve in reserves.values()}
        positions = {}
        for raw in user_reserves_data:
            user_reserve = _as_dict(USER_RESERVE_FIELDS, raw)
            reserve = by_address.get(AsyncWeb3.to_checksum_address(user_reserve["underlyingAsset"]))
            if reserve is None:
                continue
            decimals = reserve.token.decimals
            positions[reserve.token.address] = UserReserve(
                supplied=self._calculate_actual_balance(
                    user_reserve["scaledATokenBalance"], reserve.liquidity_index, decimals
                ),
                variable_debt=self._calculate_actual_balance(
                    user_reserve["scaledVariableDebt"], reserve.variable_borrow_index, decimals
                ),
                # Stable debt doesn't use an index, it's the principal amount
                stable_debt=Decimal(user_reserve["principalStableDebt"]).scaleb(-decimals),
                usage_as_collateral_enabled=user_reserve["usageAsCollateralEnabledOnUser"],
            )

        return self._build_portfolio(market_id, reserves, positions)

    def _build_portfolio(
        self, market_id: str, reserves: Dict[Token, ReserveData], positions: Dict[str, UserReserve]
    ) -> Portfolio:
        portfolio = Portfolio(chain_id=self._chain_id, protocol_id=self.ID, market_id=market_id)
        for reserve in reserves.values():
            if not reserve.is_active:
                continue
            position = positions.get(reserve.token.address, UserReserve())
            # Wrapped native reserves are shown as the native token
            token = reserve.token.unwrapped

            if token.wrapped.address not in self.SUPPLY_DISABLED.get(self._chain_id, set()):
                usage_as_collateral_enabled = position.usage_as_collateral_enabled
                if usage_as_collateral_enabled is None:
                    usage_as_collateral_enabled = reserve.usage_as_collateral_enabled
                portfolio.supplies.append(SupplyObject(
                    token=token,
                    price=reserve.price,
                    balance=position.supplied,
                    apy=reserve.supply_apy,
                    usage_as_collateral_enabled=usage_as_collateral_enabled,
                    ltv=reserve.ltv,
                    liquidation_threshold=reserve.liquidation_threshold,
                    supply_cap=reserve.supply_cap,
                    total_supply=reserve.total_supply,
                ))

            if reserve.borrowing_enabled:
                portfolio.borrows.append(BorrowObject(
                    token=token,
                    price=reserve.price,
                    balances=[position.variable_debt, position.stable_debt],
                    apys=[reserve.variable_borrow_apy, reserve.stable_borrow_apy],
                    borrow_cap=reserve.borrow_cap,
                    total_borrow=reserve.total_borrow,
                ))

        return portfolio

    # Logics

    def new_supply_logic(self, market_id: str, input: AmountInput) -> Logic:
        amount = expected_amount(input)
        return Logic(
            rid=f"{self.ID}:{self.SUPPLY_ACTION}",
            input=input,
            output=amount.clone(self.to_protocol_token(market_id, amount.token)),
            fields={"market_id": market_id},
        )

    def new_withdraw_logic(self, market_id: str, output: TokenAmount) -> Logic:
        # Burns whatever aTokens the router was given
        return Logic(
            rid=f"{self.ID}:withdraw",
            input=FractionOfBalance(output.clone(self.to_protocol_token(market_id, output.token))),
            output=output,
            fields={"market_id": market_id},
        )

    def new_borrow_logic(self, market_id: str, output: TokenAmount) -> Logic:
        return Logic(
            rid=f"{self.ID}:borrow",
            output=output,
            fields={"market_id": market_id, "interest_rate_mode": VARIABLE_RATE_MODE},
        )

    def new_repay_logic(self, market_id: str, input: AmountInput, borrower: str) -> Logic:
        if not borrower:
            raise MissingParamsError("missing required params: borrower")
        return Logic(
            rid=f"{self.ID}:repay",
            input=input,
            fields={
                "market_id": market_id,
                "borrower": borrower,
                "interest_rate_mode": VARIABLE_RATE_MODE,
            },
        )


class AaveV3FlashLoanVenue(FlashLoanVenue):
    """Flash loans from an Aave V3 pool, priced by ``FLASHLOAN_PREMIUM_TOTAL``."""

    def __init__(self, protocol: AaveV3Protocol):
        self._protocol = protocol
        self._fee_cache = get_fee_cache()

    @property
    def id(self) -> str:
        return self._protocol.id

    @property
    def chain_id(self) -> int:
        return self._protocol.chain_id

    def supports(self, token: Token) -> bool:
        return self._protocol.is_flash_loan_enabled(token)

    async def _fetch_fee_rate(self) -> Decimal:
        premium_bps = await self._protocol.pool_contract.functions.FLASHLOAN_PREMIUM_TOTAL().call()
        return Decimal(premium_bps) / 10000

    async def get_fee_rate(self, token: Token) -> Decimal:
        return await self._fee_cache.get_or_fetch(f"{self.id}:{self.chain_id}", self._fetch_fee_rate)
