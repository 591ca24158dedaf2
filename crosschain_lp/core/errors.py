"""Error taxonomy shared by every pipeline component.

Each error carries a stable ``code`` (persisted into wallet state and shown by
``status``) and a ``retryable`` flag that ``RetryPolicy`` consults before
backing off.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    STALE_NONCE = "STALE_NONCE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    ADDRESS_NOT_AUTHORIZED = "ADDRESS_NOT_AUTHORIZED"
    MINIMUM_AMOUNT = "MINIMUM_AMOUNT"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    TX_REVERTED = "TX_REVERTED"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    NO_LIQUIDITY_POOL = "NO_LIQUIDITY_POOL"
    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    CONFIG_MISSING = "CONFIG_MISSING"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STATE_CORRUPTED = "STATE_CORRUPTED"
    UNKNOWN = "UNKNOWN"


class PipelineError(Exception):
    code: ErrorCode = ErrorCode.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": str(self.code),
            "message": self.message,
            "retryable": self.retryable,
        }


# Retryable


class NetworkError(PipelineError):
    code = ErrorCode.NETWORK
    retryable = True


class OperationTimeoutError(PipelineError):
    code = ErrorCode.TIMEOUT
    retryable = True


class RateLimitError(PipelineError):
    code = ErrorCode.RATE_LIMIT
    retryable = True

    def __init__(
        self,
        message: str = "rate limited",
        *,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.retry_after = retry_after


class StaleNonceError(PipelineError):
    """Raised after a nonce rejection; the cache has already been resynced."""

    code = ErrorCode.STALE_NONCE
    retryable = True


# Fatal


class InsufficientFundsError(PipelineError):
    code = ErrorCode.INSUFFICIENT_FUNDS


class InvalidParametersError(PipelineError):
    code = ErrorCode.INVALID_PARAMETERS


class AddressNotAuthorizedError(PipelineError):
    code = ErrorCode.ADDRESS_NOT_AUTHORIZED


class MinimumAmountError(PipelineError):
    code = ErrorCode.MINIMUM_AMOUNT

    def __init__(
        self,
        message: str,
        *,
        amount: int | float | None = None,
        minimum: int | float | None = None,
    ):
        super().__init__(message, details={"amount": amount, "minimum": minimum})
        self.amount = amount
        self.minimum = minimum


class TransferFailedError(PipelineError):
    """A bridge or exchange withdrawal reached a failed/cancelled terminal status."""

    code = ErrorCode.TRANSFER_FAILED


class TransactionRevertedError(PipelineError):
    code = ErrorCode.TX_REVERTED

    def __init__(
        self,
        txn_hash: str,
        receipt: dict[str, Any] | None = None,
        message: str | None = None,
    ):
        super().__init__(message or f"Transaction reverted: {txn_hash}")
        self.txn_hash = txn_hash
        self.receipt = receipt or {}


# Operator action required


class RouteNotFoundError(PipelineError):
    code = ErrorCode.ROUTE_NOT_FOUND


class NoLiquidityPoolError(PipelineError):
    code = ErrorCode.NO_LIQUIDITY_POOL


# Startup


class WalletNotFoundError(PipelineError):
    code = ErrorCode.WALLET_NOT_FOUND


class ConfigMissingError(PipelineError):
    code = ErrorCode.CONFIG_MISSING


class InvalidTransitionError(PipelineError):
    code = ErrorCode.INVALID_TRANSITION


class StateCorruptedError(PipelineError):
    code = ErrorCode.STATE_CORRUPTED


def error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, PipelineError):
        return exc.to_dict()
    return {
        "code": str(ErrorCode.UNKNOWN),
        "message": f"{type(exc).__name__}: {exc}",
        "retryable": False,
    }
