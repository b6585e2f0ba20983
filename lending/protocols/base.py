"""Lending protocol interface.

A ``LendingProtocol`` answers questions about its markets (which tokens can be
supplied or borrowed, caps, whether supply is represented by a receipt token)
and builds the supply/withdraw/borrow/repay logics the engine sequences.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import List

from lending.core.logic import AmountInput, Logic
from lending.core.portfolio import Portfolio
from lending.core.token import Token, TokenAmount


@dataclass(frozen=True)
class Market:
    id: str
    name: str


@dataclass(frozen=True)
class Caps:
    """Market-wide limits for one asset. A cap of 0 means uncapped."""
    supply_cap: Decimal
    total_supply: Decimal
    borrow_cap: Decimal
    total_borrow: Decimal


class LendingProtocol(ABC):
    # Flash-loan venue the protocol's sequences must use; None lets the aggregator choose
    flash_loan_venue_id: str | None = None

    @classmethod
    @abstractmethod
    def supported_chain_ids(cls) -> List[int]:
        pass

    @property
    @abstractmethod
    def id(self) -> str:
        pass

    @property
    @abstractmethod
    def chain_id(self) -> int:
        pass

    @property
    @abstractmethod
    def markets(self) -> List[Market]:
        pass

    @abstractmethod
    def is_token_for_supply(self, market_id: str, token: Token) -> bool:
        pass

    @abstractmethod
    def is_token_for_borrow(self, market_id: str, token: Token) -> bool:
        pass

    @abstractmethod
    def is_asset_tokenized(self, market_id: str, token: Token) -> bool:
        """Whether supplying ``token`` mints a transferable receipt token."""
        pass

    def to_protocol_token(self, market_id: str, token: Token) -> Token:
        """The receipt token for ``token``; the token itself when not tokenized."""
        return token

    def can_leverage(self, market_id: str, token: Token) -> bool:
        return True

    async def prepare(self, market_id: str) -> None:
        """Load the facts the synchronous checks depend on. Called before planning."""
        pass

    async def get_caps(self, market_id: str, token: Token) -> Caps | None:
        """Current caps and market totals for ``token``.

        Planners apply these over the portfolio snapshot before checking caps.
        None keeps the snapshot figures.
        """
        return None

    @abstractmethod
    async def get_portfolio(self, account: str, market_id: str) -> Portfolio:
        """Read the account's positions in ``market_id`` from chain."""
        pass

    @abstractmethod
    def new_supply_logic(self, market_id: str, input: AmountInput) -> Logic:
        pass

    @abstractmethod
    def new_withdraw_logic(self, market_id: str, output: TokenAmount) -> Logic:
        pass

    @abstractmethod
    def new_borrow_logic(self, market_id: str, output: TokenAmount) -> Logic:
        pass

    @abstractmethod
    def new_repay_logic(self, market_id: str, input: AmountInput, borrower: str) -> Logic:
        pass

    def has_market(self, market_id: str) -> bool:
        return any(market.id == market_id for market in self.markets)
