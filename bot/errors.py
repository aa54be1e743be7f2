from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

from infra.rpc import ProviderUnavailableError, RPCTransportError


class ErrorKind(str, Enum):
    UNSUPPORTED_CHAIN = "UnsupportedChain"
    NO_POOL_FOUND = "NoPoolFound"
    QUOTE_FAILED = "QuoteFailed"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INVALID_SLIPPAGE = "InvalidSlippage"
    INVALID_AMOUNT = "InvalidAmount"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    SUBMISSION_REJECTED = "SubmissionRejected"
    TRANSACTION_REVERTED = "TransactionReverted"
    TIMEOUT = "Timeout"
    TIER_LOOKUP_FAILED = "TierLookupFailed"
    CANCELLED = "Cancelled"
    INTERNAL = "Internal"


class SwapError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        tx_hash: Optional[str] = None,
        explorer_url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash
        self.explorer_url = explorer_url


class UnsupportedChainError(SwapError):
    kind = ErrorKind.UNSUPPORTED_CHAIN


class NoPoolFoundError(SwapError):
    kind = ErrorKind.NO_POOL_FOUND


class QuoteFailedError(SwapError):
    kind = ErrorKind.QUOTE_FAILED


class InsufficientBalanceError(SwapError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class InvalidSlippageError(SwapError):
    kind = ErrorKind.INVALID_SLIPPAGE


class InvalidAmountError(SwapError):
    kind = ErrorKind.INVALID_AMOUNT


class SubmissionRejectedError(SwapError):
    kind = ErrorKind.SUBMISSION_REJECTED


class TransactionRevertedError(SwapError):
    kind = ErrorKind.TRANSACTION_REVERTED


class ConfirmationTimeoutError(SwapError):
    """No receipt inside the budget; the transaction's fate is unknown."""

    kind = ErrorKind.TIMEOUT


class IllegalTransition(RuntimeError):
    """A trade was asked to move along an edge the state machine does not have."""


def error_kind_for(exc: BaseException) -> ErrorKind:
    if isinstance(exc, SwapError):
        return exc.kind
    if isinstance(exc, (ProviderUnavailableError, RPCTransportError)):
        return ErrorKind.PROVIDER_UNAVAILABLE
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.PROVIDER_UNAVAILABLE
    return ErrorKind.INTERNAL
