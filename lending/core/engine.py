"""Position transition engine.

Each planner takes a portfolio snapshot and a requested change and returns
the simulated portfolio after the change, the ordered logics that perform it,
and the amount the caller receives (or owes) on the other side. Planners
never touch chain state: market facts come from the lending protocol, swap
prices from the swaper, and fees from the flash-loan aggregator.

Business constraint violations (insufficient balance, caps, unsupported
assets) are returned as ``OperationOutput.error``. Only programming errors
and unreachable collaborators raise.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from web3 import AsyncWeb3

from lending.config import Settings, get_settings
from lending.core.errors import (
    ErrorCode,
    LendingError,
    NoRouteError,
    OperationError,
    QuoteTimeoutError,
)
from lending.core.flashloan import FlashLoanAggregator, FlashLoanQuote
from lending.core.logic import (
    RID_FLASH_LOAN,
    AmountInput,
    Fixed,
    FractionOfBalance,
    Logic,
    expected_amount,
    new_pull_token_logic,
    new_send_token_logic,
    new_unwrap_native_logic,
    new_wrap_native_logic,
)
from lending.core.portfolio import Portfolio
from lending.core.token import Token, TokenAmount
from lending.protocols.base import LendingProtocol
from lending.services.metrics import TransitionTimer, record_flash_loan
from lending.swapers.base import SwapQuote, Swaper

logger = logging.getLogger(__name__)

# Receipt-token balances can fall a few wei short of the quoted withdrawal
WITHDRAW_DUST_WEI = 3


@dataclass
class OperationOutput:
    dest_amount: Decimal = Decimal(0)
    after_portfolio: Portfolio | None = None
    logics: List[Logic] = field(default_factory=list)
    error: OperationError | None = None


def _blocked(after: Portfolio, name: str, code: ErrorCode, dest_amount: Decimal = Decimal(0)) -> OperationOutput:
    return OperationOutput(
        dest_amount=dest_amount,
        after_portfolio=after,
        error=OperationError(name=name, code=code),
    )


def _noop(portfolio: Portfolio) -> OperationOutput:
    return OperationOutput(after_portfolio=portfolio.clone())


def _wrapped(amount: TokenAmount) -> TokenAmount:
    return amount.clone(amount.token.wrapped)


def planner(kind: str):
    """Time a planner, count its outcome and turn missing swap routes into results."""
    def decorator(func: Callable[..., Awaitable[OperationOutput]]):
        @wraps(func)
        async def wrapper(self: TransitionEngine, account: str, portfolio: Portfolio, *args, **kwargs):
            with TransitionTimer(kind, portfolio.protocol_id) as timer:
                try:
                    output = await func(self, account, portfolio, *args, **kwargs)
                except NoRouteError as e:
                    logger.warning(f"No swap route for {kind} on {portfolio.protocol_id}: {e}")
                    output = _blocked(portfolio.clone(), "destAmount", ErrorCode.NO_ROUTE)

                if output.error is not None:
                    timer.outcome = output.error.code.name.lower()
                    logger.warning(
                        f"{kind} on {portfolio.protocol_id}/{portfolio.market_id} blocked: "
                        f"{output.error.code.value} ({output.error.name})"
                    )
                elif not output.logics:
                    timer.outcome = "noop"
                else:
                    logger.info(
                        f"Planned {kind} on {portfolio.protocol_id}/{portfolio.market_id} for {account}: "
                        f"{len(output.logics)} logics, dest amount {output.dest_amount}"
                    )

                for logic in output.logics:
                    if logic.rid == RID_FLASH_LOAN and logic.fields.get("is_loan"):
                        record_flash_loan(logic.fields["protocol_id"])
            return output
        return wrapper
    return decorator


class TransitionEngine:
    def __init__(
        self,
        protocols: Iterable[LendingProtocol] = (),
        swapers: Iterable[Swaper] = (),
        flash_loan_aggregator: FlashLoanAggregator | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self._protocols: Dict[str, LendingProtocol] = {}
        self._swapers: Dict[str, Swaper] = {}
        self.flash_loans = flash_loan_aggregator or FlashLoanAggregator()
        for protocol in protocols:
            self.register_protocol(protocol)
        for swaper in swapers:
            self.register_swaper(swaper)

    # Registry

    def register_protocol(self, protocol: LendingProtocol) -> None:
        self._protocols[protocol.id] = protocol

    def register_swaper(self, swaper: Swaper) -> None:
        self._swapers[swaper.id] = swaper

    @property
    def protocol_ids(self) -> List[str]:
        return list(self._protocols)

    def get_protocol(self, protocol_id: str) -> LendingProtocol:
        protocol = self._protocols.get(protocol_id)
        if protocol is None:
            raise LendingError(f"Protocol {protocol_id} is not registered. Registered: {self.protocol_ids}")
        return protocol

    def get_swaper(self, swaper_id: str | None = None) -> Swaper:
        """The swaper registered as ``swaper_id``, or the first one registered."""
        if swaper_id is None:
            if not self._swapers:
                raise LendingError("No swaper is registered")
            return next(iter(self._swapers.values()))
        swaper = self._swapers.get(swaper_id)
        if swaper is None:
            raise LendingError(f"Swaper {swaper_id} is not registered")
        return swaper

    # Helpers

    async def _gather(self, *aws: Awaitable[Any]) -> List[Any]:
        """Await collaborator calls concurrently under the quote timeout."""
        timeout = self.settings.quote_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.gather(*aws), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise QuoteTimeoutError(f"Quotes did not complete within {timeout}s") from e

    async def _resolve(self, portfolio: Portfolio) -> LendingProtocol:
        protocol = self.get_protocol(portfolio.protocol_id)
        if protocol.chain_id != portfolio.chain_id:
            raise LendingError(
                f"Portfolio is on chain {portfolio.chain_id} but {protocol.id} is on chain {protocol.chain_id}"
            )
        if not protocol.has_market(portfolio.market_id):
            raise LendingError(f"Unknown {protocol.id} market {portfolio.market_id}")
        await self._gather(protocol.prepare(portfolio.market_id))
        return protocol

    async def _with_market_caps(self, protocol: LendingProtocol, portfolio: Portfolio) -> Portfolio:
        """Clone ``portfolio`` with the caps and market totals the protocol reports now."""
        after = portfolio.clone()
        market_id = after.market_id
        caps = await self._gather(
            *(protocol.get_caps(market_id, supply.token) for supply in after.supplies),
            *(protocol.get_caps(market_id, borrow.token) for borrow in after.borrows),
        )
        supply_caps, borrow_caps = caps[:len(after.supplies)], caps[len(after.supplies):]
        for supply, fresh in zip(after.supplies, supply_caps):
            if fresh is not None:
                supply.supply_cap, supply.total_supply = fresh.supply_cap, fresh.total_supply
        for borrow, fresh in zip(after.borrows, borrow_caps):
            if fresh is not None:
                borrow.borrow_cap, borrow.total_borrow = fresh.borrow_cap, fresh.total_borrow
        return after

    @staticmethod
    async def _quote_exact_out(swaper: Swaper, token_in: Token, output: TokenAmount) -> SwapQuote:
        """Input of ``token_in`` needed to receive ``output``, slippage buffer included."""
        if not swaper.exact_in_only:
            return await swaper.quote_exact_out(token_in, output)
        # Price the output backwards, then sell the buffered input forwards
        reverse = await swaper.quote_exact_in(output, token_in)
        input = swaper.with_slippage(reverse.output)
        forward = await swaper.quote_exact_in(input, output.token)
        return SwapQuote(input=input, output=forward.output, exact_in=True, route=forward.route)

    async def _fee_rate(self, protocol: LendingProtocol, token: Token):
        return await self.flash_loans.get_fee_rate(token, protocol.flash_loan_venue_id)

    @staticmethod
    def _can_supply(protocol: LendingProtocol, portfolio: Portfolio, token: Token) -> bool:
        return (
            portfolio.find_supply(token) is not None
            and protocol.is_token_for_supply(portfolio.market_id, token)
        )

    @staticmethod
    def _can_borrow(protocol: LendingProtocol, portfolio: Portfolio, token: Token) -> bool:
        return (
            portfolio.find_borrow(token) is not None
            and protocol.is_token_for_borrow(portfolio.market_id, token)
        )

    @staticmethod
    def _supply_steps(
        protocol: LendingProtocol, market_id: str, account: str, input: AmountInput, send: bool = True
    ) -> List[Logic]:
        supply = protocol.new_supply_logic(market_id, input)
        logics = [supply]
        if send and protocol.is_asset_tokenized(market_id, expected_amount(input).token):
            logics.append(new_send_token_logic(supply.output, account))
        return logics

    @staticmethod
    def _withdraw_steps(
        protocol: LendingProtocol, market_id: str, account: str, output: TokenAmount, pull: bool = True
    ) -> List[Logic]:
        logics = []
        if pull and protocol.is_asset_tokenized(market_id, output.token):
            receipt = output.clone(protocol.to_protocol_token(market_id, output.token))
            logics.append(new_pull_token_logic(receipt, account))
        logics.append(protocol.new_withdraw_logic(market_id, output))
        return logics

    @staticmethod
    def _withdrawn_swap_input(protocol: LendingProtocol, market_id: str, amount: TokenAmount) -> TokenAmount:
        if protocol.is_asset_tokenized(market_id, amount.token) and amount.to_wei() > WITHDRAW_DUST_WEI:
            return amount.sub_wei(WITHDRAW_DUST_WEI)
        return amount

    @staticmethod
    def _convert_native(amount: TokenAmount, token: Token) -> List[Logic]:
        """Wrap or unwrap ``amount`` so it arrives in the native form of ``token``."""
        if amount.token == token:
            return []
        if token.is_native:
            return [new_unwrap_native_logic(amount)]
        return [new_wrap_native_logic(amount)]

    # Zap planners

    @planner("zap_supply")
    async def zap_supply(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Swap ``src_amount`` of a wallet token into ``dest_token`` and supply it."""
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        if not self._can_supply(protocol, portfolio, dest_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)

        if src_token.wrapped == dest_token.wrapped:
            # Protocols accept either native form, so no conversion
            dest = src
            logics = self._supply_steps(protocol, market_id, account, Fixed(src), send=False)
        else:
            swaper = self.get_swaper()
            (quote,) = await self._gather(swaper.quote_exact_in(src, dest_token))
            dest = quote.output
            logics = [
                swaper.new_swap_token_logic(quote, Fixed(src)),
                *self._supply_steps(protocol, market_id, account, FractionOfBalance(dest), send=False),
            ]

        after.supply(dest_token, dest)
        if after.find_supply(dest_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.SUPPLY_CAP_EXCEEDED)
        return OperationOutput(dest_amount=dest.amount, after_portfolio=after, logics=logics)

    @planner("zap_withdraw")
    async def zap_withdraw(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Withdraw ``src_amount`` of a supplied token and swap it into ``dest_token``."""
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = portfolio.clone()
        supply = portfolio.find_supply(src_token)
        if supply is None:
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if src.amount > supply.balance:
            after.withdraw(src_token, src)
            return _blocked(after, "srcAmount", ErrorCode.INSUFFICIENT_AMOUNT)

        # The caller moves the receipt tokens in, so no pull step here
        logics = self._withdraw_steps(protocol, market_id, account, src, pull=False)
        if src_token.wrapped == dest_token.wrapped:
            dest = src.clone(dest_token)
            logics.extend(self._convert_native(src, dest_token))
        else:
            swaper = self.get_swaper()
            swap_input = self._withdrawn_swap_input(protocol, market_id, src)
            (quote,) = await self._gather(swaper.quote_exact_in(swap_input, dest_token))
            dest = quote.output
            logics.append(swaper.new_swap_token_logic(quote, FractionOfBalance(swap_input)))

        after.withdraw(src_token, src)
        return OperationOutput(dest_amount=dest.amount, after_portfolio=after, logics=logics)

    @planner("zap_borrow")
    async def zap_borrow(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Borrow ``src_amount`` and swap it into ``dest_token`` for the wallet."""
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        if not self._can_borrow(protocol, portfolio, src_token):
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)

        after.borrow(src_token, src)
        if after.find_borrow(src_token).is_cap_exceeded():
            return _blocked(after, "srcAmount", ErrorCode.BORROW_CAP_EXCEEDED)

        logics = [protocol.new_borrow_logic(market_id, src)]
        if src_token.wrapped == dest_token.wrapped:
            dest = src.clone(dest_token)
            logics.extend(self._convert_native(src, dest_token))
        else:
            swaper = self.get_swaper()
            (quote,) = await self._gather(swaper.quote_exact_in(src, dest_token))
            dest = quote.output
            logics.append(swaper.new_swap_token_logic(quote, FractionOfBalance(src)))

        return OperationOutput(dest_amount=dest.amount, after_portfolio=after, logics=logics)

    @planner("zap_repay")
    async def zap_repay(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Repay ``src_amount`` of debt, paying with ``dest_token`` from the wallet.

        ``dest_amount`` is what the wallet spends, slippage buffer included.
        """
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = portfolio.clone()
        borrow = portfolio.find_borrow(src_token)
        if borrow is None:
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if src.amount > borrow.variable_balance:
            after.repay(src_token, src)
            return _blocked(after, "srcAmount", ErrorCode.INSUFFICIENT_AMOUNT)

        if src_token.wrapped == dest_token.wrapped:
            dest = src.clone(dest_token)
            logics = [protocol.new_repay_logic(market_id, Fixed(dest), account)]
        else:
            swaper = self.get_swaper()
            (quote,) = await self._gather(self._quote_exact_out(swaper, dest_token, src))
            dest = quote.input
            logics = [
                swaper.new_swap_token_logic(quote, Fixed(quote.input)),
                protocol.new_repay_logic(market_id, FractionOfBalance(src), account),
            ]

        after.repay(src_token, src)
        return OperationOutput(dest_amount=dest.amount, after_portfolio=after, logics=logics)

    # Flash-loan planners

    @planner("collateral_swap")
    async def collateral_swap(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Replace ``src_amount`` of one collateral with another, funded by a flash loan."""
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        supply = portfolio.find_supply(src_token)
        if supply is None:
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if not self._can_supply(protocol, portfolio, dest_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if src.amount > supply.balance:
            after.withdraw(src_token, src)
            return _blocked(after, "srcAmount", ErrorCode.INSUFFICIENT_AMOUNT)
        if src_token.wrapped == dest_token.wrapped:
            return OperationOutput(dest_amount=src.amount, after_portfolio=after)

        swaper = self.get_swaper()
        ((venue_id, fee_rate),) = await self._gather(self._fee_rate(protocol, src_token))
        # The withdrawn collateral repays the loan
        loan = FlashLoanQuote.for_repay(venue_id, fee_rate, src)
        (quote,) = await self._gather(swaper.quote_exact_in(loan.loan, dest_token.wrapped))

        after.withdraw(src_token, src)
        after.supply(dest_token, quote.output)
        if after.find_supply(dest_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.SUPPLY_CAP_EXCEEDED)

        inner = [
            swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
            *self._supply_steps(protocol, market_id, account, FractionOfBalance(quote.output)),
            *self._withdraw_steps(protocol, market_id, account, _wrapped(src)),
        ]
        return OperationOutput(
            dest_amount=quote.output.amount,
            after_portfolio=after,
            logics=self.flash_loans.wrap(loan, inner),
        )

    @planner("debt_swap")
    async def debt_swap(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Refinance ``src_amount`` of debt into ``dest_token`` debt.

        ``dest_amount`` is the new debt, flash-loan fee included.
        """
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        borrow = portfolio.find_borrow(src_token)
        if borrow is None:
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if not self._can_borrow(protocol, portfolio, dest_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if src.amount > borrow.variable_balance:
            after.repay(src_token, src)
            return _blocked(after, "srcAmount", ErrorCode.INSUFFICIENT_AMOUNT)
        if src_token.wrapped == dest_token.wrapped:
            return OperationOutput(dest_amount=src.amount, after_portfolio=after)

        swaper = self.get_swaper()
        (venue_id, fee_rate), quote = await self._gather(
            self._fee_rate(protocol, dest_token),
            self._quote_exact_out(swaper, dest_token.wrapped, _wrapped(src)),
        )
        loan = FlashLoanQuote.for_loan(venue_id, fee_rate, quote.input)

        after.repay(src_token, src)
        after.borrow(dest_token, loan.repay)
        if after.find_borrow(dest_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.BORROW_CAP_EXCEEDED)

        inner = [
            swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
            protocol.new_repay_logic(market_id, FractionOfBalance(_wrapped(src)), account),
            protocol.new_borrow_logic(market_id, loan.repay),
        ]
        return OperationOutput(
            dest_amount=loan.repay.amount,
            after_portfolio=after,
            logics=self.flash_loans.wrap(loan, inner),
        )

    @planner("leverage_by_collateral")
    async def leverage_by_collateral(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Add ``src_amount`` of collateral, borrowing ``dest_token`` to pay for it.

        ``dest_amount`` is the debt added.
        """
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        if not self._can_supply(protocol, portfolio, src_token):
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if not self._can_borrow(protocol, portfolio, dest_token) or not protocol.can_leverage(market_id, dest_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)

        collateral = _wrapped(src)
        if src_token.wrapped == dest_token.wrapped:
            ((venue_id, fee_rate),) = await self._gather(self._fee_rate(protocol, src_token))
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, collateral)
            inner = self._supply_steps(protocol, market_id, account, Fixed(collateral))
        else:
            swaper = self.get_swaper()
            (venue_id, fee_rate), quote = await self._gather(
                self._fee_rate(protocol, dest_token),
                self._quote_exact_out(swaper, dest_token.wrapped, collateral),
            )
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, quote.input)
            inner = [
                swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
                *self._supply_steps(protocol, market_id, account, FractionOfBalance(collateral)),
            ]
        inner.append(protocol.new_borrow_logic(market_id, loan.repay))

        after.supply(src_token, src)
        after.borrow(dest_token, loan.repay)
        if after.find_supply(src_token).is_cap_exceeded():
            return _blocked(after, "srcAmount", ErrorCode.SUPPLY_CAP_EXCEEDED)
        if after.find_borrow(dest_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.BORROW_CAP_EXCEEDED)

        return OperationOutput(
            dest_amount=loan.repay.amount,
            after_portfolio=after,
            logics=self.flash_loans.wrap(loan, inner),
        )

    @planner("leverage_by_debt")
    async def leverage_by_debt(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Borrow ``src_amount`` more and supply what it buys of ``dest_token``.

        ``dest_amount`` is the collateral added.
        """
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        if not self._can_borrow(protocol, portfolio, src_token) or not protocol.can_leverage(market_id, src_token):
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if not self._can_supply(protocol, portfolio, dest_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)

        ((venue_id, fee_rate),) = await self._gather(self._fee_rate(protocol, src_token))
        # The new debt repays the loan
        loan = FlashLoanQuote.for_repay(venue_id, fee_rate, src)
        if src_token.wrapped == dest_token.wrapped:
            supplied = loan.loan
            inner = self._supply_steps(protocol, market_id, account, Fixed(supplied))
        else:
            swaper = self.get_swaper()
            (quote,) = await self._gather(swaper.quote_exact_in(loan.loan, dest_token.wrapped))
            supplied = quote.output
            inner = [
                swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
                *self._supply_steps(protocol, market_id, account, FractionOfBalance(supplied)),
            ]
        inner.append(protocol.new_borrow_logic(market_id, _wrapped(src)))

        after.supply(dest_token, supplied)
        after.borrow(src_token, src)
        if after.find_supply(dest_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.SUPPLY_CAP_EXCEEDED)
        if after.find_borrow(src_token).is_cap_exceeded():
            return _blocked(after, "srcAmount", ErrorCode.BORROW_CAP_EXCEEDED)

        return OperationOutput(
            dest_amount=supplied.amount,
            after_portfolio=after,
            logics=self.flash_loans.wrap(loan, inner),
        )

    @planner("deleverage")
    async def deleverage(
        self,
        account: str,
        portfolio: Portfolio,
        src_token: Token,
        src_amount: Decimal | int | str,
        dest_token: Token,
    ) -> OperationOutput:
        """Repay ``src_amount`` of debt with collateral withdrawn in ``dest_token``.

        ``dest_amount`` is the collateral withdrawn. When it exceeds the
        supplied balance the result carries ``INSUFFICIENT_AMOUNT`` on
        ``destAmount`` together with the simulated shortfall.
        """
        src = TokenAmount(src_token, src_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if src.is_zero:
            return _noop(portfolio)

        after = portfolio.clone()
        borrow = portfolio.find_borrow(src_token)
        supply = portfolio.find_supply(dest_token)
        if borrow is None:
            return _blocked(after, "srcAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if supply is None:
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if src.amount > borrow.variable_balance:
            after.repay(src_token, src)
            return _blocked(after, "srcAmount", ErrorCode.INSUFFICIENT_AMOUNT)

        debt = _wrapped(src)
        if src_token.wrapped == dest_token.wrapped:
            ((venue_id, fee_rate),) = await self._gather(self._fee_rate(protocol, src_token))
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, debt)
            inner = [protocol.new_repay_logic(market_id, Fixed(debt), account)]
        else:
            swaper = self.get_swaper()
            (venue_id, fee_rate), quote = await self._gather(
                self._fee_rate(protocol, dest_token),
                self._quote_exact_out(swaper, dest_token.wrapped, debt),
            )
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, quote.input)
            inner = [
                swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
                protocol.new_repay_logic(market_id, FractionOfBalance(debt), account),
            ]
        withdrawn = loan.repay
        inner.extend(self._withdraw_steps(protocol, market_id, account, withdrawn))

        after.repay(src_token, src)
        after.withdraw(dest_token, withdrawn)
        if withdrawn.amount > supply.balance:
            return _blocked(after, "destAmount", ErrorCode.INSUFFICIENT_AMOUNT, dest_amount=withdrawn.amount)

        return OperationOutput(
            dest_amount=withdrawn.amount,
            after_portfolio=after,
            logics=self.flash_loans.wrap(loan, inner),
        )

    # Position planners

    async def _zap_into(self, zap: TokenAmount, collateral_token: Token) -> SwapQuote | None:
        if zap.is_zero or zap.token.wrapped == collateral_token.wrapped:
            return None
        return await self.get_swaper().quote_exact_in(zap, collateral_token.wrapped)

    @planner("open_by_collateral")
    async def open_by_collateral(
        self,
        account: str,
        portfolio: Portfolio,
        zap_token: Token,
        zap_amount: Decimal | int | str,
        collateral_token: Token,
        collateral_amount: Decimal | int | str,
        debt_token: Token,
    ) -> OperationOutput:
        """Grow the position to ``collateral_amount`` of collateral in total.

        The wallet contributes ``zap_amount`` of ``zap_token`` (swapped into
        collateral first when it differs); the rest is bought with a flash loan
        of ``debt_token`` that is repaid by borrowing. ``dest_amount`` is the
        total debt afterwards.
        """
        zap = TokenAmount(zap_token, zap_amount)
        target = TokenAmount(collateral_token, collateral_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if target.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        if not self._can_supply(protocol, portfolio, collateral_token):
            return _blocked(after, "collateralAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if not self._can_borrow(protocol, portfolio, debt_token) or not protocol.can_leverage(market_id, debt_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)

        zap_quote, (venue_id, fee_rate) = await self._gather(
            self._zap_into(zap, collateral_token),
            self._fee_rate(protocol, debt_token),
        )
        zap_supply = TokenAmount(collateral_token.wrapped)
        if zap_quote is not None:
            zap_supply = zap_quote.output
        elif not zap.is_zero:
            zap_supply = _wrapped(zap)

        held = portfolio.find_supply(collateral_token).balance
        leverage = target.clone(collateral_token.wrapped) - held - zap_supply
        if leverage.amount <= 0:
            return _blocked(after, "collateralAmount", ErrorCode.COLLATERAL_AMOUNT_EXCEEDED)

        swaper = self.get_swaper()
        logics = []
        if zap_quote is not None:
            logics.append(swaper.new_swap_token_logic(zap_quote, Fixed(zap)))
        elif not zap.is_zero and zap.token.is_native:
            logics.append(new_wrap_native_logic(zap))

        supply_amount = zap_supply + leverage
        if debt_token.wrapped == collateral_token.wrapped:
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, leverage)
            supply_input = FractionOfBalance(supply_amount) if not zap.is_zero else Fixed(supply_amount)
            inner = self._supply_steps(protocol, market_id, account, supply_input)
        else:
            (quote,) = await self._gather(self._quote_exact_out(swaper, debt_token.wrapped, leverage))
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, quote.input)
            inner = [
                swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
                *self._supply_steps(protocol, market_id, account, FractionOfBalance(supply_amount)),
            ]
        inner.append(protocol.new_borrow_logic(market_id, loan.repay))
        logics.extend(self.flash_loans.wrap(loan, inner))

        after.supply(collateral_token, supply_amount)
        after.borrow(debt_token, loan.repay)
        if after.find_supply(collateral_token).is_cap_exceeded():
            return _blocked(after, "collateralAmount", ErrorCode.SUPPLY_CAP_EXCEEDED)
        if after.find_borrow(debt_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.BORROW_CAP_EXCEEDED)

        return OperationOutput(
            dest_amount=after.find_borrow(debt_token).balance,
            after_portfolio=after,
            logics=logics,
        )

    @planner("open_by_debt")
    async def open_by_debt(
        self,
        account: str,
        portfolio: Portfolio,
        zap_token: Token,
        zap_amount: Decimal | int | str,
        collateral_token: Token,
        debt_token: Token,
        debt_amount: Decimal | int | str,
    ) -> OperationOutput:
        """Grow the position to ``debt_amount`` of debt in total.

        The additional debt funds a flash loan that buys collateral; the wallet's
        zap is supplied alongside. ``dest_amount`` is the total collateral
        afterwards. A target at or below the current debt changes nothing.
        """
        zap = TokenAmount(zap_token, zap_amount)
        target = TokenAmount(debt_token, debt_amount)
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        if target.is_zero:
            return _noop(portfolio)

        after = await self._with_market_caps(protocol, portfolio)
        if not self._can_supply(protocol, portfolio, collateral_token):
            return _blocked(after, "destAmount", ErrorCode.UNSUPPORTED_TOKEN)
        if not self._can_borrow(protocol, portfolio, debt_token) or not protocol.can_leverage(market_id, debt_token):
            return _blocked(after, "debtAmount", ErrorCode.UNSUPPORTED_TOKEN)

        held = portfolio.find_borrow(debt_token).balance
        new_debt = target.clone(debt_token.wrapped) - held
        if new_debt.amount <= 0:
            return _noop(portfolio)

        zap_quote, (venue_id, fee_rate) = await self._gather(
            self._zap_into(zap, collateral_token),
            self._fee_rate(protocol, debt_token),
        )
        zap_supply = TokenAmount(collateral_token.wrapped)
        if zap_quote is not None:
            zap_supply = zap_quote.output
        elif not zap.is_zero:
            zap_supply = _wrapped(zap)

        swaper = self.get_swaper()
        logics = []
        if zap_quote is not None:
            logics.append(swaper.new_swap_token_logic(zap_quote, Fixed(zap)))
        elif not zap.is_zero and zap.token.is_native:
            logics.append(new_wrap_native_logic(zap))

        loan = FlashLoanQuote.for_repay(venue_id, fee_rate, new_debt)
        if debt_token.wrapped == collateral_token.wrapped:
            supply_amount = zap_supply + loan.loan
            supply_input = FractionOfBalance(supply_amount) if not zap.is_zero else Fixed(supply_amount)
            inner = self._supply_steps(protocol, market_id, account, supply_input)
        else:
            (quote,) = await self._gather(swaper.quote_exact_in(loan.loan, collateral_token.wrapped))
            supply_amount = zap_supply + quote.output
            inner = [
                swaper.new_swap_token_logic(quote, FractionOfBalance(loan.loan)),
                *self._supply_steps(protocol, market_id, account, FractionOfBalance(supply_amount)),
            ]
        inner.append(protocol.new_borrow_logic(market_id, new_debt))
        logics.extend(self.flash_loans.wrap(loan, inner))

        after.supply(collateral_token, supply_amount)
        after.borrow(debt_token, new_debt)
        if after.find_supply(collateral_token).is_cap_exceeded():
            return _blocked(after, "destAmount", ErrorCode.SUPPLY_CAP_EXCEEDED)
        if after.find_borrow(debt_token).is_cap_exceeded():
            return _blocked(after, "debtAmount", ErrorCode.BORROW_CAP_EXCEEDED)

        return OperationOutput(
            dest_amount=after.find_supply(collateral_token).balance,
            after_portfolio=after,
            logics=logics,
        )

    @planner("close")
    async def close(self, account: str, portfolio: Portfolio, withdrawal_token: Token) -> OperationOutput:
        """Unwind every position and pay out the remainder in ``withdrawal_token``.

        Debt is repaid from a flash loan of the withdrawal token, the
        collateral is withdrawn and swapped back into it, and the loan is
        repaid from the proceeds. ``dest_amount`` is what the wallet receives.
        """
        protocol = await self._resolve(portfolio)
        market_id = portfolio.market_id
        supplies = [supply for supply in portfolio.supplies if supply.balance > 0]
        borrows = [borrow for borrow in portfolio.borrows if borrow.balance > 0]
        if not supplies and not borrows:
            return _noop(portfolio)

        after = portfolio.clone()
        for supply in supplies:
            after.withdraw(supply.token, supply.balance)
        for borrow in borrows:
            after.repay(borrow.token, borrow.variable_balance)
        if any(borrow.balance > borrow.variable_balance for borrow in borrows):
            # Stable-rate debt cannot be repaid, so the collateral must stay
            return _blocked(after, "destAmount", ErrorCode.INSUFFICIENT_AMOUNT)

        swaper = self.get_swaper()
        payout_token = withdrawal_token.wrapped

        async def no_quote():
            return None

        debts = [TokenAmount(borrow.token.wrapped, borrow.variable_balance) for borrow in borrows]
        withdrawals = [TokenAmount(supply.token.wrapped, supply.balance) for supply in supplies]
        swap_inputs = [self._withdrawn_swap_input(protocol, market_id, amount) for amount in withdrawals]

        calls = [
            no_quote() if debt.token == payout_token else self._quote_exact_out(swaper, payout_token, debt)
            for debt in debts
        ]
        calls += [
            no_quote() if amount.token == payout_token else swaper.quote_exact_in(swap_input, payout_token)
            for amount, swap_input in zip(withdrawals, swap_inputs)
        ]
        if borrows:
            calls.append(self._fee_rate(protocol, payout_token))
        results = await self._gather(*calls)
        repay_quotes = results[:len(debts)]
        withdraw_quotes = results[len(debts):len(debts) + len(withdrawals)]

        inner = []
        loan_amount = TokenAmount(payout_token)
        for debt, quote in zip(debts, repay_quotes):
            if quote is None:
                loan_amount += debt
                inner.append(protocol.new_repay_logic(market_id, Fixed(debt), account))
            else:
                # Several swaps draw on the same loan, so each takes a fixed share
                loan_amount += quote.input
                inner.append(swaper.new_swap_token_logic(quote, Fixed(quote.input)))
                inner.append(protocol.new_repay_logic(market_id, FractionOfBalance(debt), account))

        proceeds = TokenAmount(payout_token)
        for amount, swap_input, quote in zip(withdrawals, swap_inputs, withdraw_quotes):
            inner.extend(self._withdraw_steps(protocol, market_id, account, amount))
            if quote is None:
                proceeds += amount
            else:
                proceeds += quote.output
                inner.append(swaper.new_swap_token_logic(quote, FractionOfBalance(swap_input)))

        if borrows:
            venue_id, fee_rate = results[-1]
            loan = FlashLoanQuote.for_loan(venue_id, fee_rate, loan_amount)
            logics = self.flash_loans.wrap(loan, inner)
            payout = proceeds - loan.repay
        else:
            logics = inner
            payout = proceeds

        if payout.amount <= 0:
            return _blocked(after, "destAmount", ErrorCode.INSUFFICIENT_AMOUNT)
        if withdrawal_token.is_native:
            logics.append(new_unwrap_native_logic(payout))

        return OperationOutput(dest_amount=payout.amount, after_portfolio=after, logics=logics)


def create_engine(chain_id: int, web3: AsyncWeb3 | None = None) -> TransitionEngine:
    """Build an engine with every protocol, swaper and flash-loan venue available on ``chain_id``."""
    from lending.protocols.registry import create_flash_loan_venues, create_protocols
    from lending.swapers.paraswap import ParaswapV5Swaper

    protocols = create_protocols(chain_id, web3)
    engine = TransitionEngine(
        protocols=protocols,
        swapers=[ParaswapV5Swaper(chain_id)],
        flash_loan_aggregator=FlashLoanAggregator(create_flash_loan_venues(chain_id, protocols)),
    )
    logger.info(
        f"Created transition engine for chain {chain_id}: protocols {engine.protocol_ids}, "
        f"flash-loan venues {engine.flash_loans.venue_ids}"
    )
    return engine
