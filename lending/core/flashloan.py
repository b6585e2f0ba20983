"""Flash-loan venues and the aggregator that wraps sequences in a loan.

A wrapped sequence is ``[draw, *inner, repay]``. The repay step returns the
drawn amount plus the venue fee and takes it from the router's balance, so it
is fraction-tagged.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Dict, Iterable, List, Tuple

from lending.core.errors import LendingError
from lending.core.logic import RID_FLASH_LOAN, FractionOfBalance, Logic
from lending.core.token import DECIMAL_PRECISION, Token, TokenAmount, ceil_fee, quantize

logger = logging.getLogger(__name__)


class FlashLoanVenue(ABC):
    @property
    @abstractmethod
    def id(self) -> str:
        pass

    @property
    @abstractmethod
    def chain_id(self) -> int:
        pass

    @abstractmethod
    def supports(self, token: Token) -> bool:
        pass

    @abstractmethod
    async def get_fee_rate(self, token: Token) -> Decimal:
        """Fee charged per unit drawn (0.0005 = 5 bps)."""
        pass


class StaticFeeFlashLoanVenue(FlashLoanVenue):
    """A venue with a fixed fee. ``tokens=None`` means any token can be drawn."""

    def __init__(
        self,
        venue_id: str,
        chain_id: int,
        fee_rate: Decimal = Decimal(0),
        tokens: Iterable[Token] | None = None,
    ):
        self._id = venue_id
        self._chain_id = chain_id
        self._fee_rate = Decimal(fee_rate)
        self._tokens = {token.wrapped for token in tokens} if tokens is not None else None

    @property
    def id(self) -> str:
        return self._id

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def supports(self, token: Token) -> bool:
        return self._tokens is None or token.wrapped in self._tokens

    async def get_fee_rate(self, token: Token) -> Decimal:
        return self._fee_rate


# Chains with a Balancer V2 Vault
BALANCER_V2_CHAIN_IDS = [1, 10, 8453, 42161]


class BalancerV2FlashLoanVenue(StaticFeeFlashLoanVenue):
    """Balancer V2 Vault flash loans (no protocol fee)."""

    def __init__(self, chain_id: int, tokens: Iterable[Token] | None = None):
        super().__init__("balancer-v2", chain_id, Decimal(0), tokens)


class MorphoBlueFlashLoanVenue(StaticFeeFlashLoanVenue):
    """Morpho Blue flash loans (free, any token the singleton holds)."""

    def __init__(self, chain_id: int, tokens: Iterable[Token] | None = None):
        super().__init__("morphoblue", chain_id, Decimal(0), tokens)


@dataclass(frozen=True)
class FlashLoanQuote:
    venue_id: str
    fee_rate: Decimal
    loan: TokenAmount
    repay: TokenAmount            # loan + fee

    @property
    def fee(self) -> TokenAmount:
        return self.repay - self.loan

    @classmethod
    def for_loan(cls, venue_id: str, fee_rate: Decimal, loan: TokenAmount) -> FlashLoanQuote:
        loan = loan.clone(loan.token.wrapped)
        return cls(venue_id, fee_rate, loan, loan + ceil_fee(loan, fee_rate))

    @classmethod
    def for_repay(cls, venue_id: str, fee_rate: Decimal, repay: TokenAmount) -> FlashLoanQuote:
        """Largest loan whose repayment does not exceed ``repay``."""
        token = repay.token.wrapped
        with localcontext() as ctx:
            ctx.prec = DECIMAL_PRECISION
            amount = quantize(repay.amount / (1 + fee_rate), token.decimals, ROUND_DOWN)
        quote = cls.for_loan(venue_id, fee_rate, TokenAmount(token, amount))
        # Rounding the fee up can overshoot the target by one unit
        while quote.repay.amount > repay.amount:
            quote = cls.for_loan(venue_id, fee_rate, quote.loan.sub_wei())
        return quote


class FlashLoanAggregator:
    def __init__(self, venues: Iterable[FlashLoanVenue] = ()):
        self._venues: Dict[str, FlashLoanVenue] = {}
        for venue in venues:
            self.register(venue)

    def register(self, venue: FlashLoanVenue) -> None:
        self._venues[venue.id] = venue

    @property
    def venue_ids(self) -> List[str]:
        return list(self._venues)

    async def get_fee_rate(self, token: Token, venue_id: str | None = None) -> Tuple[str, Decimal]:
        """Pick the venue for ``token`` and return its id and fee rate.

        Args:
            token: Asset to draw (native tokens are drawn wrapped)
            venue_id: Venue pinned by the lending protocol, or None for the cheapest

        Returns:
            (venue id, fee rate)
        """
        token = token.wrapped
        if venue_id is not None:
            venue = self._venues.get(venue_id)
            if venue is None:
                raise LendingError(f"Flash-loan venue {venue_id} is not registered")
            return venue.id, await venue.get_fee_rate(token)

        candidates = [venue for venue in self._venues.values() if venue.supports(token)]
        if not candidates:
            raise LendingError(f"No flash-loan venue supports {token.symbol} on chain {token.chain_id}")

        rates = await asyncio.gather(*(venue.get_fee_rate(token) for venue in candidates))
        # min() keeps registration order on ties
        venue, rate = min(zip(candidates, rates), key=lambda pair: pair[1])
        logger.debug(f"Selected flash-loan venue {venue.id} for {token.symbol} at fee {rate}")
        return venue.id, rate

    @staticmethod
    def wrap(quote: FlashLoanQuote, inner: List[Logic]) -> List[Logic]:
        draw = Logic(
            rid=RID_FLASH_LOAN,
            output=quote.loan,
            fields={"protocol_id": quote.venue_id, "is_loan": True},
        )
        repay = Logic(
            rid=RID_FLASH_LOAN,
            input=FractionOfBalance(quote.repay),
            fields={"protocol_id": quote.venue_id, "is_loan": False, "fee_rate": quote.fee_rate},
        )
        return [draw, *inner, repay]
