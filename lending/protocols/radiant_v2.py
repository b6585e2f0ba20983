"""Radiant V2 lending protocol (an Aave V2 fork).

Radiant keeps Aave's pool interface, so supplies mint rTokens and logics look
like Aave V3's apart from the ``deposit`` action. Market facts come from the
ProtocolDataProvider and the PriceOracle instead of a UI data provider; the
per-reserve reads are batched through Multicall3 so they share one block.
Radiant has no supply or borrow caps, and its pool is not a flash-loan venue:
sequences draw from the chain's shared venues.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Sequence

from web3 import AsyncWeb3

from lending.core.errors import UnsupportedChainError
from lending.core.portfolio import Portfolio
from lending.core.token import Token
from lending.protocols.aave_v3 import AaveV3Protocol, ReserveData, UserReserve
from lending.services.cache import get_reserve_cache
from lending.services.metrics import record_market_read
from lending.services.multicall import Call, MulticallService
from lending.services.rpc import get_web3

logger = logging.getLogger(__name__)

RADIANT_V2_PROTOCOL_DATA_PROVIDER = {
    1: "0x362f3BB63Cff83bd169aE1793979E9e537993813",
    56: "0x2f9D57E97C3DFED8676e605BC504a48E0c5917E9",
    42161: "0x596B0cc4c5094507C50b579a662FE7e7b094A2cC",
}

RADIANT_V2_PRICE_ORACLE = {
    1: "0xbD60293fBe4B285402510562A64E5fCEE9c4a8F9",
    56: "0x0BB5c1Bc173b207cBf47CDf013617087776F3782",
    42161: "0xC0cE5De939aaD880b0bdDcf9aB5750a53EDa454b",
}

# Oracle prices are USD with 8 decimals
PRICE_DECIMALS = 8

PROTOCOL_DATA_PROVIDER_ABI = [
    {
        "inputs": [],
        "name": "getAllReservesTokens",
        "outputs": [
            {
                "components": [
                    {"internalType": "string", "name": "symbol", "type": "string"},
                    {"internalType": "address", "name": "tokenAddress", "type": "address"},
                ],
                "internalType": "struct AaveProtocolDataProvider.TokenData[]",
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

# decimals, ltv, liquidationThreshold, liquidationBonus, reserveFactor,
# usageAsCollateralEnabled, borrowingEnabled, stableBorrowRateEnabled, isActive, isFrozen
RESERVE_CONFIGURATION_TYPES = ["uint256"] * 5 + ["bool"] * 5
# availableLiquidity, totalStableDebt, totalVariableDebt, liquidityRate, variableBorrowRate,
# stableBorrowRate, averageStableBorrowRate, liquidityIndex, variableBorrowIndex, lastUpdateTimestamp
RESERVE_DATA_TYPES = ["uint256"] * 9 + ["uint40"]
# rTokenAddress, stableDebtTokenAddress, variableDebtTokenAddress
RESERVE_TOKENS_TYPES = ["address"] * 3
# currentATokenBalance, currentStableDebt, currentVariableDebt, principalStableDebt, scaledVariableDebt,
# stableBorrowRate, liquidityRate, stableRateLastUpdated, usageAsCollateralEnabled
USER_RESERVE_DATA_TYPES = ["uint256"] * 7 + ["uint40", "bool"]

CALLS_PER_RESERVE = 4


class RadiantV2Protocol(AaveV3Protocol):
    ID = "radiant-v2"
    PROTOCOL_TOKEN_PREFIX = "r"
    PROTOCOL_DATA_PROVIDER = RADIANT_V2_PROTOCOL_DATA_PROVIDER
    PRICE_ORACLE = RADIANT_V2_PRICE_ORACLE
    SUPPLY_DISABLED = {}
    BORROW_DISABLED = {}
    LEVERAGE_DISABLED = {}
    SUPPLY_ACTION = "deposit"
    LENDS_FLASH_LOANS = False

    def __init__(self, chain_id: int = 1, web3: AsyncWeb3 | None = None):
        if chain_id not in self.PROTOCOL_DATA_PROVIDER:
            raise UnsupportedChainError(
                f"Unsupported chain: {chain_id}. Supported: {list(self.PROTOCOL_DATA_PROVIDER.keys())}"
            )
        self._chain_id = chain_id
        self._web3 = web3 or get_web3(chain_id)

        self._data_provider = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.PROTOCOL_DATA_PROVIDER[chain_id]),
            abi=PROTOCOL_DATA_PROVIDER_ABI,
        )
        self._multicall = MulticallService(self._web3)
        self._reserve_cache = get_reserve_cache()

    @classmethod
    def supported_chain_ids(cls) -> List[int]:
        return list(cls.PROTOCOL_DATA_PROVIDER)

    # Reserve data

    def _reserve_calls(self, asset: str) -> List[Call]:
        provider_address = self.PROTOCOL_DATA_PROVIDER[self._chain_id]
        return [
            self._multicall.build_call(
                provider_address, "getReserveConfigurationData(address)", ["address"], [asset],
                RESERVE_CONFIGURATION_TYPES,
            ),
            self._multicall.build_call(
                provider_address, "getReserveData(address)", ["address"], [asset], RESERVE_DATA_TYPES,
            ),
            self._multicall.build_call(
                provider_address, "getReserveTokensAddresses(address)", ["address"], [asset],
                RESERVE_TOKENS_TYPES,
            ),
            self._multicall.build_call(
                self.PRICE_ORACLE[self._chain_id], "getAssetPrice(address)", ["address"], [asset], ["uint256"],
            ),
        ]

    def _build_radiant_reserve(
        self,
        asset: str,
        symbol: str,
        configuration: Sequence[Any],
        data: Sequence[Any],
        tokens: Sequence[Any],
        price: int,
    ) -> ReserveData:
        (decimals, ltv, liquidation_threshold, _, _,
         usage_as_collateral_enabled, borrowing_enabled, _, is_active, is_frozen) = configuration
        (available_liquidity, total_stable_debt, total_variable_debt, liquidity_rate, variable_borrow_rate,
         stable_borrow_rate, _, liquidity_index, variable_borrow_index, _) = data
        decimals = int(decimals)

        total_borrow = Decimal(total_stable_debt + total_variable_debt).scaleb(-decimals)
        return ReserveData(
            token=Token(self._chain_id, asset, decimals, symbol),
            protocol_token=Token(self._chain_id, tokens[0], decimals, f"{self.PROTOCOL_TOKEN_PREFIX}{symbol}"),
            ltv=Decimal(ltv) / 10000,
            liquidation_threshold=Decimal(liquidation_threshold) / 10000,
            usage_as_collateral_enabled=usage_as_collateral_enabled,
            borrowing_enabled=borrowing_enabled,
            is_active=is_active,
            is_frozen=is_frozen,
            is_paused=False,
            flash_loan_enabled=False,
            liquidity_index=liquidity_index,
            variable_borrow_index=variable_borrow_index,
            supply_apy=self._ray_to_decimal(liquidity_rate),
            variable_borrow_apy=self._ray_to_decimal(variable_borrow_rate),
            stable_borrow_apy=self._ray_to_decimal(stable_borrow_rate),
            price=Decimal(price).scaleb(-PRICE_DECIMALS),
            # No caps on Radiant
            supply_cap=Decimal(0),
            borrow_cap=Decimal(0),
            total_supply=Decimal(available_liquidity).scaleb(-decimals) + total_borrow,
            total_borrow=total_borrow,
        )

    async def _fetch_reserves(self) -> Dict[Token, ReserveData]:
        try:
            reserve_tokens = await self._data_provider.functions.getAllReservesTokens().call()
            assets = [AsyncWeb3.to_checksum_address(address) for _, address in reserve_tokens]
            calls = [call for asset in assets for call in self._reserve_calls(asset)]
            results = await self._multicall.execute_and_decode(calls)
        except Exception as e:
            record_market_read(self.ID, "error")
            logger.error(f"Failed to read {self.ID} reserves on chain {self._chain_id}: {e}")
            raise
        record_market_read(self.ID, "success")

        reserves = {}
        for i, (symbol, _) in enumerate(reserve_tokens):
            configuration, data, tokens, (price,) = results[i * CALLS_PER_RESERVE:(i + 1) * CALLS_PER_RESERVE]
            reserve = self._build_radiant_reserve(assets[i], symbol, configuration, data, tokens, price)
            reserves[reserve.token] = reserve
        logger.debug(f"Loaded {len(reserves)} {self.ID} reserves on chain {self._chain_id}")
        return reserves

    # Portfolio

    async def get_portfolio(self, account: str, market_id: str) -> Portfolio:
        checksum_address = AsyncWeb3.to_checksum_address(account)
        provider_address = self.PROTOCOL_DATA_PROVIDER[self._chain_id]
        try:
            reserves = await self.get_reserves()
            calls = [
                self._multicall.build_call(
                    provider_address,
                    "getUserReserveData(address,address)",
                    ["address", "address"],
                    [reserve.token.address, checksum_address],
                    USER_RESERVE_DATA_TYPES,
                )
                for reserve in reserves.values()
            ]
            results = await self._multicall.execute_and_decode(calls)
        except Exception as e:
            record_market_read(self.ID, "error")
            logger.error(f"Failed to read {self.ID} portfolio of {account}: {e}")
            raise
        record_market_read(self.ID, "success")

        positions = {}
        for reserve, result in zip(reserves.values(), results):
            supplied, stable_debt, variable_debt = result[:3]
            decimals = reserve.token.decimals
            positions[reserve.token.address] = UserReserve(
                supplied=Decimal(supplied).scaleb(-decimals),
                variable_debt=Decimal(variable_debt).scaleb(-decimals),
                stable_debt=Decimal(stable_debt).scaleb(-decimals),
                # Reserves the account never touched report the flag as off
                usage_as_collateral_enabled=result[8] if supplied > 0 else None,
            )

        return self._build_portfolio(market_id, reserves, positions)
