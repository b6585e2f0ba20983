"""Portfolio model and simulation.

A Portfolio is one account's supply and borrow positions in one lending
market. Planners clone it and apply supply/withdraw/borrow/repay deltas to
predict the state after a transition. Withdrawals and repayments clamp at the
held balance; callers check balances beforehand when they need to report a
shortfall.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from typing import List

from lending.core.token import DECIMAL_PRECISION, Token, TokenAmount, quantize

INFINITE_HEALTH = Decimal("Infinity")


def _to_decimal(amount: TokenAmount | Decimal | int | str) -> Decimal:
    if isinstance(amount, TokenAmount):
        return amount.amount
    return Decimal(amount)


@dataclass
class SupplyObject:
    """A supplied asset and the market-wide figures that constrain it."""
    token: Token
    price: Decimal                                  # Unit price in the quote currency
    balance: Decimal = Decimal(0)
    apy: Decimal = Decimal(0)                       # 0.032 = 3.2%
    usage_as_collateral_enabled: bool = True
    ltv: Decimal = Decimal(0)                       # 0.80 = 80%
    liquidation_threshold: Decimal = Decimal(0)     # 0.825 = 82.5%
    supply_cap: Decimal = Decimal(0)                # 0 means uncapped
    total_supply: Decimal = Decimal(0)              # Market-wide supplied amount

    @property
    def value(self) -> Decimal:
        return self.balance * self.price

    def is_cap_exceeded(self) -> bool:
        return self.supply_cap > 0 and self.total_supply > self.supply_cap


@dataclass
class BorrowObject:
    """A borrowed asset. ``balances`` and ``apys`` are per rate mode: [variable, stable]."""
    token: Token
    price: Decimal
    balances: List[Decimal] = field(default_factory=lambda: [Decimal(0)])
    apys: List[Decimal] = field(default_factory=lambda: [Decimal(0)])
    borrow_cap: Decimal = Decimal(0)                # 0 means uncapped
    total_borrow: Decimal = Decimal(0)

    @property
    def balance(self) -> Decimal:
        return sum(self.balances, Decimal(0))

    @property
    def variable_balance(self) -> Decimal:
        """The variable-rate debt, the only part repay logics pay down."""
        return self.balances[0]

    @property
    def value(self) -> Decimal:
        return self.balance * self.price

    def is_cap_exceeded(self) -> bool:
        return self.borrow_cap > 0 and self.total_borrow > self.borrow_cap


@dataclass
class Portfolio:
    chain_id: int
    protocol_id: str
    market_id: str
    supplies: List[SupplyObject] = field(default_factory=list)
    borrows: List[BorrowObject] = field(default_factory=list)

    def __post_init__(self):
        for label, objects in (("supply", self.supplies), ("borrow", self.borrows)):
            seen = set()
            for obj in objects:
                key = obj.token.wrapped
                if key in seen:
                    raise ValueError(f"Duplicate {label} position for {obj.token.symbol}")
                seen.add(key)

    def clone(self) -> Portfolio:
        return copy.deepcopy(self)

    # Lookups treat ETH and WETH as the same position
    def find_supply(self, token: Token) -> SupplyObject | None:
        for supply in self.supplies:
            if supply.token.wrapped == token.wrapped:
                return supply
        return None

    def find_borrow(self, token: Token) -> BorrowObject | None:
        for borrow in self.borrows:
            if borrow.token.wrapped == token.wrapped:
                return borrow
        return None

    def _require_supply(self, token: Token) -> SupplyObject:
        supply = self.find_supply(token)
        if supply is None:
            raise ValueError(f"{token.symbol} is not a supply asset of market {self.market_id}")
        return supply

    def _require_borrow(self, token: Token) -> BorrowObject:
        borrow = self.find_borrow(token)
        if borrow is None:
            raise ValueError(f"{token.symbol} is not a borrow asset of market {self.market_id}")
        return borrow

    def supply(self, token: Token, amount: TokenAmount | Decimal | int | str) -> None:
        supply = self._require_supply(token)
        delta = _to_decimal(amount)
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            supply.balance = quantize(supply.balance + delta, token.decimals)
            supply.total_supply = quantize(supply.total_supply + delta, token.decimals)

    def withdraw(self, token: Token, amount: TokenAmount | Decimal | int | str) -> None:
        supply = self._require_supply(token)
        delta = min(_to_decimal(amount), supply.balance)
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            supply.balance = quantize(supply.balance - delta, token.decimals)
            supply.total_supply = max(quantize(supply.total_supply - delta, token.decimals), Decimal(0))

    def borrow(self, token: Token, amount: TokenAmount | Decimal | int | str) -> None:
        borrow = self._require_borrow(token)
        delta = _to_decimal(amount)
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            # New debt always accrues at the variable rate
            borrow.balances[0] = quantize(borrow.balances[0] + delta, token.decimals)
            borrow.total_borrow = quantize(borrow.total_borrow + delta, token.decimals)

    def repay(self, token: Token, amount: TokenAmount | Decimal | int | str) -> None:
        borrow = self._require_borrow(token)
        # Repay logics use the variable rate mode, so stable debt is left alone
        repaid = min(_to_decimal(amount), borrow.variable_balance)
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            borrow.balances[0] = quantize(borrow.variable_balance - repaid, token.decimals)
            borrow.total_borrow = max(quantize(borrow.total_borrow - repaid, token.decimals), Decimal(0))

    @property
    def has_positions(self) -> bool:
        return any(s.balance > 0 for s in self.supplies) or any(b.balance > 0 for b in self.borrows)

    @property
    def total_supply_usd(self) -> Decimal:
        return sum((s.value for s in self.supplies), Decimal(0))

    @property
    def total_borrow_usd(self) -> Decimal:
        return sum((b.value for b in self.borrows), Decimal(0))

    @property
    def borrowing_power(self) -> Decimal:
        """Maximum debt value the collateral supports (sum of value * LTV)."""
        return sum(
            (s.value * s.ltv for s in self.supplies if s.usage_as_collateral_enabled),
            Decimal(0),
        )

    @property
    def liquidation_limit(self) -> Decimal:
        """Debt value at which the position becomes liquidatable."""
        return sum(
            (s.value * s.liquidation_threshold for s in self.supplies if s.usage_as_collateral_enabled),
            Decimal(0),
        )

    @property
    def health_factor(self) -> Decimal:
        # HF = sum(collateral * liquidation threshold) / debt
        total_borrow = self.total_borrow_usd
        if total_borrow == 0:
            return INFINITE_HEALTH
        return self.liquidation_limit / total_borrow

    @property
    def utilization(self) -> Decimal:
        """Share of borrowing power in use (0.5 = half)."""
        power = self.borrowing_power
        if power == 0:
            return Decimal(0)
        return self.total_borrow_usd / power

    @property
    def net_apy(self) -> Decimal:
        """Supply earnings minus borrow costs, relative to supplied value."""
        total_supply = self.total_supply_usd
        if total_supply == 0:
            return Decimal(0)
        earnings = sum((s.value * s.apy for s in self.supplies), Decimal(0))
        costs = sum(
            (bal * b.price * apy for b in self.borrows for bal, apy in zip(b.balances, b.apys)),
            Decimal(0),
        )
        return (earnings - costs) / total_supply
