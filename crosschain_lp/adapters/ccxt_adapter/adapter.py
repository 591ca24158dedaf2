from __future__ import annotations

from enum import StrEnum
from typing import Any

import ccxt.async_support as ccxt_async
from ccxt.base import errors as ccxt_errors
from pydantic import BaseModel

from crosschain_lp.core.adapters.BaseAdapter import BaseAdapter
from crosschain_lp.core.errors import (
    AddressNotAuthorizedError,
    InsufficientFundsError,
    InvalidParametersError,
    MinimumAmountError,
    NetworkError,
    OperationTimeoutError,
    PipelineError,
    RateLimitError,
)
from crosschain_lp.core.utils.retry import (
    READ_POLICY,
    WRITE_POLICY,
    EndpointClass,
    RetryPolicy,
    Throttle,
    execute,
)


class WithdrawalState(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not WithdrawalState.PENDING


# ccxt unified transaction statuses
_STATUS_MAP: dict[str, WithdrawalState] = {
    "ok": WithdrawalState.COMPLETED,
    "failed": WithdrawalState.FAILED,
    "canceled": WithdrawalState.CANCELLED,
    "cancelled": WithdrawalState.CANCELLED,
}


class WithdrawalReceipt(BaseModel):
    withdrawal_id: str
    asset: str
    amount: float
    address: str
    network: str | None = None


class WithdrawalStatus(BaseModel):
    withdrawal_id: str
    state: WithdrawalState
    tx_hash: str | None = None
    raw_status: str | None = None


def translate_ccxt_error(exc: Exception, *, context: str) -> Exception:
    if isinstance(exc, PipelineError):
        return exc
    message = f"{context}: {exc}"
    text = str(exc).lower()
    if isinstance(exc, ccxt_errors.InsufficientFunds):
        return InsufficientFundsError(message)
    if isinstance(exc, (ccxt_errors.RateLimitExceeded, ccxt_errors.DDoSProtection)):
        return RateLimitError(message)
    if isinstance(exc, ccxt_errors.RequestTimeout):
        return OperationTimeoutError(message)
    if isinstance(exc, ccxt_errors.NetworkError):
        return NetworkError(message)
    if isinstance(exc, ccxt_errors.PermissionDenied) or "whitelist" in text:
        return AddressNotAuthorizedError(message)
    if "minimum" in text:
        return MinimumAmountError(message)
    if isinstance(
        exc,
        (
            ccxt_errors.BadRequest,
            ccxt_errors.ArgumentsRequired,
            ccxt_errors.AuthenticationError,
        ),
    ):
        return InvalidParametersError(message)
    return exc


class CCXTAdapter(BaseAdapter):
    """Withdrawals from one centralized exchange account through ccxt."""

    adapter_type = "CCXT"

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        exchange_id: str | None = None,
        options: dict[str, Any] | None = None,
        throttle: Throttle | None = None,
        read_policy: RetryPolicy = READ_POLICY,
        write_policy: RetryPolicy = WRITE_POLICY,
    ) -> None:
        super().__init__("ccxt_adapter", config)

        self.exchange_id = exchange_id or self.config.get("exchange_id") or "bybit"
        exchange_cls = getattr(ccxt_async, self.exchange_id, None)
        if exchange_cls is None:
            raise InvalidParametersError(
                f"Unknown exchange '{self.exchange_id}'. "
                f"Must be a valid ccxt exchange id."
            )
        opts = {"enableRateLimit": True, **(options or self.config.get("options") or {})}
        # See each exchange's describe() method for accepted params: https://docs.ccxt.com/#/README?id=exchange-structure
        self.exchange = exchange_cls(opts)
        self.throttle = throttle
        self.read_policy = read_policy
        self.write_policy = write_policy

    async def close(self) -> None:
        await self.exchange.close()

    async def _run(self, label: str, policy: RetryPolicy, fn) -> Any:
        async def _op() -> Any:
            try:
                return await fn()
            except Exception as exc:
                raise translate_ccxt_error(
                    exc, context=f"{self.exchange_id} {label}"
                ) from exc

        return await execute(
            _op,
            policy,
            endpoint=EndpointClass.CEX,
            throttle=self.throttle,
            label=f"{self.exchange_id} {label}",
        )

    async def fetch_free_balance(self, asset: str) -> float:
        balance = await self._run(
            "fetch_balance", self.read_policy, self.exchange.fetch_balance
        )
        free = (balance.get("free") or {}).get(asset)
        if free is None:
            free = (balance.get(asset) or {}).get("free")
        return float(free or 0)

    async def withdrawal_minimum(self, asset: str, network: str | None) -> float:
        await self._run("load_markets", self.read_policy, self.exchange.load_markets)
        currency = (self.exchange.currencies or {}).get(asset) or {}
        if network:
            networks = currency.get("networks") or {}
            info = networks.get(network) or {}
            value = ((info.get("limits") or {}).get("withdraw") or {}).get("min")
            if value is not None:
                return float(value)
        value = ((currency.get("limits") or {}).get("withdraw") or {}).get("min")
        return float(value or 0)

    async def withdraw(
        self,
        *,
        asset: str,
        amount: float,
        address: str,
        network: str | None,
    ) -> WithdrawalReceipt:
        minimum = await self.withdrawal_minimum(asset, network)
        if minimum and amount < minimum:
            raise MinimumAmountError(
                f"Withdrawal of {amount} {asset} is below the exchange minimum {minimum}",
                amount=amount,
                minimum=minimum,
            )

        params = {"network": network} if network else {}

        async def _withdraw() -> dict[str, Any]:
            return await self.exchange.withdraw(asset, amount, address, None, params)

        self.logger.info(
            f"Withdrawing {amount} {asset} to {address} via {network or 'default network'}"
        )
        result = await self._run("withdraw", self.write_policy, _withdraw)
        withdrawal_id = str(result.get("id") or "")
        if not withdrawal_id:
            raise NetworkError(f"{self.exchange_id} withdraw returned no id: {result}")
        return WithdrawalReceipt(
            withdrawal_id=withdrawal_id,
            asset=asset,
            amount=float(amount),
            address=address,
            network=network,
        )

    async def fetch_withdrawal(
        self, withdrawal_id: str, asset: str | None = None
    ) -> WithdrawalStatus:
        async def _fetch() -> list[dict[str, Any]]:
            return await self.exchange.fetch_withdrawals(asset)

        withdrawals = await self._run("fetch_withdrawals", self.read_policy, _fetch)
        for item in withdrawals or []:
            if str(item.get("id")) != str(withdrawal_id):
                continue
            raw = str(item.get("status") or "pending").lower()
            return WithdrawalStatus(
                withdrawal_id=str(withdrawal_id),
                state=_STATUS_MAP.get(raw, WithdrawalState.PENDING),
                tx_hash=item.get("txid"),
                raw_status=raw,
            )
        return WithdrawalStatus(
            withdrawal_id=str(withdrawal_id), state=WithdrawalState.PENDING
        )
