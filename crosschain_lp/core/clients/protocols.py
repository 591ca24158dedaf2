from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from crosschain_lp.adapters.ccxt_adapter.adapter import (
        WithdrawalReceipt,
        WithdrawalStatus,
    )
    from crosschain_lp.adapters.uniswap_adapter.adapter import PoolState
    from crosschain_lp.core.clients.LifiClient import BridgeRoute, BridgeStatus


class ChainClientProtocol(Protocol):
    async def get_pending_nonce(self, chain_id: int, address: str) -> int: ...

    async def get_balance(self, chain_id: int, address: str) -> int: ...

    async def token_balance(
        self, chain_id: int, token_address: str | None, address: str
    ) -> int: ...

    async def token_allowance(
        self, chain_id: int, token_address: str, owner: str, spender: str
    ) -> int: ...

    async def call(
        self,
        chain_id: int,
        *,
        target: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        args: list[Any],
        from_address: str | None = None,
        value: int = 0,
    ) -> Any: ...

    async def encode_call(
        self,
        *,
        target: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        args: list[Any],
        from_address: str,
        chain_id: int,
        value: int = 0,
    ) -> dict[str, Any]: ...

    async def estimate_gas_limit(self, transaction: dict) -> int: ...

    async def gas_price_fields(self, chain_id: int) -> dict[str, int]: ...

    async def estimate_fee_wei(self, chain_id: int, gas_units: int) -> int: ...

    async def broadcast(self, chain_id: int, signed_transaction: bytes) -> str: ...

    async def get_receipt(self, chain_id: int, txn_hash: str) -> dict | None: ...

    async def wait_for_receipt(
        self,
        chain_id: int,
        txn_hash: str,
        *,
        poll_interval: float = 1.0,
        timeout: float = 180,
    ) -> dict: ...


class BridgeClientProtocol(Protocol):
    async def get_quote(
        self,
        *,
        from_chain: int,
        to_chain: int,
        from_token: str,
        to_token: str,
        from_amount: int,
        from_address: str,
        to_address: str | None = None,
        slippage: float | None = None,
    ) -> BridgeRoute: ...

    async def get_status(
        self, *, tx_hash: str, from_chain: int, to_chain: int, bridge: str | None = None
    ) -> BridgeStatus: ...


class ExchangeProtocol(Protocol):
    async def fetch_free_balance(self, asset: str) -> float: ...

    async def withdrawal_minimum(self, asset: str, network: str | None) -> float: ...

    async def withdraw(
        self, *, asset: str, amount: float, address: str, network: str | None
    ) -> WithdrawalReceipt: ...

    async def fetch_withdrawal(
        self, withdrawal_id: str, asset: str | None = None
    ) -> WithdrawalStatus: ...

    async def close(self) -> None: ...


class DexProtocol(Protocol):
    chain_id: int
    position_manager: str
    swap_router: str

    async def read_pool(self, token_a: str, token_b: str, fee: int) -> PoolState: ...

    async def quote_exact_input(
        self, token_in: str, token_out: str, fee: int, amount_in: int
    ) -> int: ...

    async def build_swap_exact_input(
        self,
        *,
        owner: str,
        token_in: str,
        token_out: str,
        fee: int,
        amount_in: int,
        min_amount_out: int,
    ) -> dict[str, Any]: ...

    async def build_mint(
        self,
        *,
        owner: str,
        token0: str,
        token1: str,
        fee: int,
        tick_lower: int,
        tick_upper: int,
        amount0: int,
        amount1: int,
        slippage_bps: int,
    ) -> dict[str, Any]: ...

    async def build_increase_liquidity(
        self,
        *,
        owner: str,
        token_id: int,
        amount0: int,
        amount1: int,
        slippage_bps: int,
    ) -> dict[str, Any]: ...

    async def build_collect(self, *, owner: str, token_id: int) -> dict[str, Any]: ...

    async def build_close(
        self, *, owner: str, token_id: int, liquidity: int
    ) -> dict[str, Any]: ...

    async def owed_fees(self, owner: str, token_id: int) -> tuple[int, int]: ...

    def parse_mint_receipt(self, receipt: dict[str, Any]) -> dict[str, int]: ...
