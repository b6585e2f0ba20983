"""Token and token amount value types.

Quantities are ``Decimal`` values quantized to the token's decimals, so an
amount never carries precision below one smallest unit ("wei") and never loses
precision above it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_UP, localcontext
from functools import total_ordering
from typing import Dict

from web3 import AsyncWeb3

# Balance fractions are expressed in basis points of the held balance
BPS_BASE = 10000

# Placeholder address aggregators and routers use for the chain's native coin
NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

# 78 digits covers any uint256 expressed with 18 decimals
DECIMAL_PRECISION = 78


def quantize(value: Decimal | int | str, decimals: int, rounding: str = ROUND_DOWN) -> Decimal:
    """Round a quantity to ``decimals`` places (down unless told otherwise)."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(value).quantize(Decimal(1).scaleb(-decimals), rounding=rounding)


@dataclass(frozen=True)
class Token:
    """A fungible asset on one chain. Identity is (chain_id, address)."""
    chain_id: int
    address: str
    decimals: int = field(compare=False)
    symbol: str = field(compare=False)
    name: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "address", AsyncWeb3.to_checksum_address(self.address))

    @property
    def is_native(self) -> bool:
        return self.address == NATIVE_TOKEN_ADDRESS

    @property
    def is_wrapped_native(self) -> bool:
        wrapped = WRAPPED_NATIVE_TOKENS.get(self.chain_id)
        return wrapped is not None and wrapped == self

    @property
    def wrapped(self) -> Token:
        """The ERC20 form of this token (WETH for ETH, itself otherwise)."""
        if self.is_native:
            return WRAPPED_NATIVE_TOKENS[self.chain_id]
        return self

    @property
    def unwrapped(self) -> Token:
        """The native form of a wrapped native token (ETH for WETH, itself otherwise)."""
        if self.is_wrapped_native:
            return NATIVE_TOKENS[self.chain_id]
        return self

    @property
    def unit(self) -> Decimal:
        """One smallest unit of this token."""
        return Decimal(1).scaleb(-self.decimals)

    def __str__(self) -> str:
        return self.symbol


@total_ordering
@dataclass(frozen=True)
class TokenAmount:
    """A quantity of a token, quantized to the token's decimals."""
    token: Token
    amount: Decimal = Decimal(0)

    def __post_init__(self):
        object.__setattr__(self, "amount", quantize(self.amount, self.token.decimals))

    @classmethod
    def from_wei(cls, token: Token, wei: int) -> TokenAmount:
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            return cls(token, Decimal(wei).scaleb(-token.decimals))

    def to_wei(self) -> int:
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            return int(self.amount.scaleb(self.token.decimals))

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    def _coerce(self, other: TokenAmount | Decimal | int | str) -> Decimal:
        if isinstance(other, TokenAmount):
            if other.token.wrapped != self.token.wrapped:
                raise ValueError(f"Cannot combine {other.token} amount with {self.token} amount")
            return other.amount
        return Decimal(other)

    def add(self, other: TokenAmount | Decimal | int | str) -> TokenAmount:
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            return TokenAmount(self.token, self.amount + self._coerce(other))

    def sub(self, other: TokenAmount | Decimal | int | str) -> TokenAmount:
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            return TokenAmount(self.token, self.amount - self._coerce(other))

    def add_wei(self, wei: int = 1) -> TokenAmount:
        return TokenAmount.from_wei(self.token, self.to_wei() + wei)

    def sub_wei(self, wei: int = 1) -> TokenAmount:
        return TokenAmount.from_wei(self.token, self.to_wei() - wei)

    def mul(self, factor: Decimal | int | str, rounding: str = ROUND_DOWN) -> TokenAmount:
        """Scale by ``factor``, rounding the result to the token's decimals."""
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            scaled = quantize(self.amount * Decimal(factor), self.token.decimals, rounding)
        return TokenAmount(self.token, scaled)

    def clone(self, token: Token | None = None) -> TokenAmount:
        """Same quantity, optionally expressed in another (equal-decimals) token."""
        return TokenAmount(token or self.token, self.amount)

    def __add__(self, other: TokenAmount | Decimal | int | str) -> TokenAmount:
        return self.add(other)

    def __sub__(self, other: TokenAmount | Decimal | int | str) -> TokenAmount:
        return self.sub(other)

    def __lt__(self, other: TokenAmount | Decimal | int | str) -> bool:
        return self.amount < self._coerce(other)

    def __str__(self) -> str:
        return f"{self.amount} {self.token.symbol}"


def ceil_fee(amount: TokenAmount, fee_rate: Decimal) -> TokenAmount:
    """Fee on ``amount`` at ``fee_rate``, rounded up to the token's decimals."""
    return amount.mul(fee_rate, rounding=ROUND_UP)


NATIVE_TOKENS: Dict[int, Token] = {
    **{
        chain_id: Token(chain_id, NATIVE_TOKEN_ADDRESS, 18, "ETH", "Ethereum")
        for chain_id in (1, 10, 8453, 42161)
    },
    56: Token(56, NATIVE_TOKEN_ADDRESS, 18, "BNB", "BNB"),
}

WRAPPED_NATIVE_TOKENS: Dict[int, Token] = {
    1: Token(1, "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18, "WETH", "Wrapped Ether"),
    10: Token(10, "0x4200000000000000000000000000000000000006", 18, "WETH", "Wrapped Ether"),
    56: Token(56, "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", 18, "WBNB", "Wrapped BNB"),
    8453: Token(8453, "0x4200000000000000000000000000000000000006", 18, "WETH", "Wrapped Ether"),
    42161: Token(42161, "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", 18, "WETH", "Wrapped Ether"),
}
