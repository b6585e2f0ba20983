"""Operation descriptors ("logics") and the utility steps shared by all venues.

A logic names one on-chain action as ``"<venue>:<action>"`` and carries its
input and output amounts. The input is either ``Fixed`` (the quoted amount is
used as-is) or ``FractionOfBalance`` (the executor uses ``bps`` of whatever
balance the previous steps left behind; ``expected`` keeps the quoted value).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Union

from lending.core.token import BPS_BASE, TokenAmount

RID_FLASH_LOAN = "utility:flash-loan-aggregator"
RID_SEND_TOKEN = "utility:send-token"
RID_WRAPPED_NATIVE_TOKEN = "utility:wrapped-native-token"
RID_PULL_TOKEN = "permit2:pull-token"


@dataclass(frozen=True)
class Fixed:
    amount: TokenAmount


@dataclass(frozen=True)
class FractionOfBalance:
    expected: TokenAmount
    bps: int = BPS_BASE

    def __post_init__(self):
        if not 0 < self.bps <= BPS_BASE:
            raise ValueError(f"bps must be in (0, {BPS_BASE}], got {self.bps}")


AmountInput = Union[Fixed, FractionOfBalance]


def expected_amount(value: AmountInput) -> TokenAmount:
    """The quoted amount behind either input variant."""
    if isinstance(value, Fixed):
        return value.amount
    if isinstance(value, FractionOfBalance):
        return value.expected
    raise TypeError(f"Unknown amount variant: {type(value).__name__}")


@dataclass(frozen=True)
class Logic:
    rid: str
    input: AmountInput | None = None
    output: TokenAmount | None = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def venue(self) -> str:
        return self.rid.split(":", 1)[0]

    @property
    def action(self) -> str:
        return self.rid.split(":", 1)[1]

    @property
    def input_amount(self) -> TokenAmount | None:
        return expected_amount(self.input) if self.input is not None else None

    @property
    def balance_bps(self) -> int | None:
        if isinstance(self.input, FractionOfBalance):
            return self.input.bps
        return None


def new_send_token_logic(input: TokenAmount, recipient: str) -> Logic:
    """Send everything the router holds of ``input.token`` to ``recipient``."""
    return Logic(
        rid=RID_SEND_TOKEN,
        input=FractionOfBalance(input),
        fields={"recipient": recipient},
    )


def new_pull_token_logic(input: TokenAmount, owner: str) -> Logic:
    """Pull ``input`` from ``owner`` through a Permit2 allowance."""
    return Logic(rid=RID_PULL_TOKEN, input=Fixed(input), fields={"owner": owner})


def new_unwrap_native_logic(input: TokenAmount) -> Logic:
    """Unwrap the router's whole wrapped-native balance (WETH -> ETH)."""
    return Logic(
        rid=RID_WRAPPED_NATIVE_TOKEN,
        input=FractionOfBalance(input),
        output=input.clone(input.token.unwrapped),
    )


def new_wrap_native_logic(input: TokenAmount) -> Logic:
    """Wrap the router's whole native balance (ETH -> WETH)."""
    return Logic(
        rid=RID_WRAPPED_NATIVE_TOKEN,
        input=FractionOfBalance(input),
        output=input.clone(input.token.wrapped),
    )
