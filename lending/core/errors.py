"""Error types for transition planning.

Business constraint violations are reported as an ``OperationError`` inside
the planner result. Exceptions are reserved for programming errors and for
collaborators (swap venues, RPC) that could not answer.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Blocking reasons a planner reports without raising."""
    INSUFFICIENT_AMOUNT = "INSUFFICIENT_AMOUNT"
    SUPPLY_CAP_EXCEEDED = "SUPPLY_CAP_EXCEEDED"
    BORROW_CAP_EXCEEDED = "BORROW_CAP_EXCEEDED"
    COLLATERAL_AMOUNT_EXCEEDED = "COLLATERAL_AMOUNT_EXCEEDED"
    UNSUPPORTED_TOKEN = "UNSUPPORTED_TOKEN"
    NO_ROUTE = "NO_ROUTE"


@dataclass(frozen=True)
class OperationError:
    """A blocking error tied to the request parameter that caused it."""
    name: str         # Parameter name, e.g. "srcAmount"
    code: ErrorCode


class LendingError(Exception):
    """Base class for exceptions raised by this package."""


class MissingParamsError(LendingError):
    """A logic builder was called without a parameter it cannot do without."""


class UnsupportedChainError(LendingError, ValueError):
    """No deployment is known for the requested chain."""


class QuoteError(LendingError):
    """A quote collaborator failed to answer."""


class QuoteTimeoutError(QuoteError):
    """Quote requests did not complete within the configured timeout."""


class NoRouteError(QuoteError):
    """The swap venue has no route for the requested pair and amount."""
