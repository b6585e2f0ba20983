"""ParaSwap V5 swap quotes.

Uses the public ``/prices`` endpoint: ``side=SELL`` prices an exact input,
``side=BUY`` an exact output. The returned ``priceRoute`` is kept on the swap
logic so the transaction builder can request calldata for the same route.
"""

import asyncio
import logging
import time
from typing import Any, Dict

import aiohttp

from lending.config import get_settings
from lending.core.errors import NoRouteError, QuoteError, QuoteTimeoutError, UnsupportedChainError
from lending.core.token import Token, TokenAmount
from lending.services.metrics import record_quote
from lending.swapers.base import SwapQuote, Swaper

logger = logging.getLogger(__name__)

PARASWAP_SUPPORTED_CHAIN_IDS = [1, 10, 56, 8453, 42161]


class ParaswapV5Swaper(Swaper):
    ID = "paraswap-v5"

    def __init__(self, chain_id: int = 1, slippage_bps: int | None = None):
        if chain_id not in PARASWAP_SUPPORTED_CHAIN_IDS:
            raise UnsupportedChainError(
                f"Unsupported chain: {chain_id}. Supported: {PARASWAP_SUPPORTED_CHAIN_IDS}"
            )
        settings = get_settings()
        super().__init__(chain_id, settings.swap_slippage_bps if slippage_bps is None else slippage_bps)
        self._api_url = settings.paraswap_api_url.rstrip("/")
        self._partner = settings.paraswap_partner
        self._timeout = aiohttp.ClientTimeout(total=settings.quote_timeout_seconds)

    @property
    def id(self) -> str:
        return self.ID

    async def _get_price_route(
        self,
        token_in: Token,
        token_out: Token,
        amount: TokenAmount,
        side: str,
    ) -> Dict[str, Any]:
        params = {
            "srcToken": token_in.address,
            "srcDecimals": token_in.decimals,
            "destToken": token_out.address,
            "destDecimals": token_out.decimals,
            "amount": str(amount.to_wei()),
            "side": side,
            "network": self.chain_id,
            "partner": self._partner,
        }
        start_time = time.time()
        status = "success"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(f"{self._api_url}/prices", params=params) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        status = "error"
                        logger.error(f"ParaSwap returned a non-JSON body with status {response.status}")
                        raise QuoteError(f"ParaSwap returned {response.status} with a non-JSON body") from e
                    if response.status == 200 and isinstance(data, dict) and "priceRoute" in data:
                        return data["priceRoute"]
                    message = data.get("error", f"HTTP {response.status}") if isinstance(data, dict) else str(data)
                    if 400 <= response.status < 500:
                        status = "no_route"
                        logger.warning(f"No ParaSwap route {token_in}->{token_out} for {amount}: {message}")
                        raise NoRouteError(message)
                    status = "error"
                    raise QuoteError(f"ParaSwap returned {response.status}: {message}")
        except asyncio.TimeoutError as e:
            status = "timeout"
            logger.error(f"ParaSwap quote {token_in}->{token_out} timed out")
            raise QuoteTimeoutError(f"ParaSwap quote timed out after {self._timeout.total}s") from e
        except aiohttp.ClientError as e:
            status = "error"
            logger.error(f"ParaSwap request failed: {e}")
            raise QuoteError(f"ParaSwap request failed: {e}") from e
        finally:
            record_quote(self.ID, side.lower(), status, time.time() - start_time)

    async def quote_exact_in(self, input: TokenAmount, token_out: Token) -> SwapQuote:
        route = await self._get_price_route(input.token, token_out, input, "SELL")
        output = TokenAmount.from_wei(token_out, int(route["destAmount"]))
        return SwapQuote(input=input, output=output, exact_in=True, route=route)

    async def quote_exact_out(self, token_in: Token, output: TokenAmount) -> SwapQuote:
        route = await self._get_price_route(token_in, output.token, output, "BUY")
        input = self.with_slippage(TokenAmount.from_wei(token_in, int(route["srcAmount"])))
        return SwapQuote(input=input, output=output, exact_in=False, route=route)
