"""CCXT Adapter - centralized exchange withdrawals for wallet funding."""

from .adapter import (
    CCXTAdapter,
    WithdrawalReceipt,
    WithdrawalState,
    WithdrawalStatus,
)

__all__ = [
    "CCXTAdapter",
    "WithdrawalReceipt",
    "WithdrawalState",
    "WithdrawalStatus",
]
