"""Swap venue interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_UP
from typing import Any, Dict

from lending.core.errors import NoRouteError
from lending.core.logic import AmountInput, Logic
from lending.core.token import BPS_BASE, Token, TokenAmount


@dataclass(frozen=True)
class SwapQuote:
    """A priced conversion. For exact-out quotes ``input`` already includes slippage."""
    input: TokenAmount
    output: TokenAmount
    exact_in: bool = True
    route: Dict[str, Any] = field(default_factory=dict, compare=False)


class Swaper(ABC):
    # Venues that can only price a fixed input; the engine approximates exact-out quotes for them
    exact_in_only = False

    def __init__(self, chain_id: int, slippage_bps: int = 100):
        self._chain_id = chain_id
        self._slippage_bps = slippage_bps

    @property
    @abstractmethod
    def id(self) -> str:
        pass

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def slippage_bps(self) -> int:
        return self._slippage_bps

    @abstractmethod
    async def quote_exact_in(self, input: TokenAmount, token_out: Token) -> SwapQuote:
        """Output obtained for ``input``.

        Raises:
            NoRouteError: No route for the pair and amount
            QuoteError: The venue could not be reached
        """
        pass

    async def quote_exact_out(self, token_in: Token, output: TokenAmount) -> SwapQuote:
        """Input needed to receive ``output``, including the slippage buffer."""
        raise NoRouteError(f"{self.id} only quotes exact inputs")

    def with_slippage(self, amount: TokenAmount) -> TokenAmount:
        """Raise an exact-out input by the slippage tolerance."""
        factor = Decimal(BPS_BASE + self._slippage_bps) / BPS_BASE
        return amount.mul(factor, rounding=ROUND_UP)

    def new_swap_token_logic(self, quote: SwapQuote, input: AmountInput) -> Logic:
        """Swap step for ``quote``. ``input`` decides whether it consumes a fixed amount."""
        return Logic(
            rid=f"{self.id}:swap-token",
            input=input,
            output=quote.output,
            fields={
                "exact_in": quote.exact_in,
                "slippage": self._slippage_bps,
                "route": quote.route,
            },
        )
