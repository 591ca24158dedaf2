import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from crosschain_lp.core.constants.base import (
    DEFAULT_TRANSACTION_TIMEOUT,
    GAS_BUFFER_MULTIPLIER,
    MAX_BASE_FEE_GROWTH_MULTIPLIER,
    SUGGESTED_GAS_PRICE_MULTIPLIER,
    SUGGESTED_PRIORITY_FEE_MULTIPLIER,
)
from crosschain_lp.core.constants.chains import PRE_EIP_1559_CHAIN_IDS
from crosschain_lp.core.constants.erc20_abi import ERC20_ABI
from crosschain_lp.core.errors import (
    InvalidParametersError,
    NetworkError,
    TransactionRevertedError,
)
from crosschain_lp.core.utils.retry import (
    READ_POLICY,
    EndpointClass,
    RetryPolicy,
    Throttle,
    execute,
)
from crosschain_lp.core.utils.tokens import is_native_token
from crosschain_lp.core.utils.web3 import (
    get_transaction_chain_id,
    translate_rpc_error,
    web3_from_chain_id,
    web3s_from_chain_id,
)

T = TypeVar("T")


def _hex_hash(txn_hash: Any) -> str:
    if isinstance(txn_hash, (bytes, bytearray)):
        txn_hash = bytes(txn_hash).hex()
    txn_hash = str(txn_hash)
    return txn_hash if txn_hash.startswith("0x") else f"0x{txn_hash}"


class ChainClient:
    """EVM JSON-RPC access for every chain the pipeline touches.

    Reads go through the shared ``Throttle`` and ``READ_POLICY``. Broadcasting
    is a single attempt; duplicate-safe resending lives in
    ``core.utils.transaction.send_transaction``.
    """

    def __init__(
        self,
        rpc_urls: dict[Any, Any],
        *,
        throttle: Throttle | None = None,
        policy: RetryPolicy = READ_POLICY,
    ):
        self.rpc_urls = rpc_urls
        self.throttle = throttle
        self.policy = policy

    async def _read(
        self,
        chain_id: int,
        label: str,
        fn: Callable[[AsyncWeb3], Awaitable[T]],
    ) -> T:
        async def _op() -> T:
            try:
                async with web3_from_chain_id(chain_id, self.rpc_urls) as web3:
                    return await fn(web3)
            except Exception as exc:
                raise translate_rpc_error(exc, context=label) from exc

        return await execute(
            _op,
            self.policy,
            endpoint=EndpointClass.RPC,
            throttle=self.throttle,
            label=f"{label} (chain {chain_id})",
        )

    async def _read_all(
        self,
        chain_id: int,
        label: str,
        fn: Callable[[AsyncWeb3], Awaitable[T]],
    ) -> list[T]:
        async def _op() -> list[T]:
            try:
                async with web3s_from_chain_id(chain_id, self.rpc_urls) as web3s:
                    return list(await asyncio.gather(*[fn(web3) for web3 in web3s]))
            except Exception as exc:
                raise translate_rpc_error(exc, context=label) from exc

        return await execute(
            _op,
            self.policy,
            endpoint=EndpointClass.RPC,
            throttle=self.throttle,
            label=f"{label} (chain {chain_id})",
        )

    async def get_pending_nonce(self, chain_id: int, address: str) -> int:
        async def _get_nonce(web3: AsyncWeb3) -> int:
            return await web3.eth.get_transaction_count(
                web3.to_checksum_address(address), block_identifier="pending"
            )

        # Highest count across RPCs, in case one lags behind.
        nonces = await self._read_all(chain_id, "get_transaction_count", _get_nonce)
        return max(int(n) for n in nonces)

    async def get_balance(self, chain_id: int, address: str) -> int:
        async def _get_balance(web3: AsyncWeb3) -> int:
            return await web3.eth.get_balance(
                web3.to_checksum_address(address), block_identifier="pending"
            )

        return int(await self._read(chain_id, "get_balance", _get_balance))

    async def token_balance(
        self, chain_id: int, token_address: str | None, address: str
    ) -> int:
        if is_native_token(token_address):
            return await self.get_balance(chain_id, address)

        async def _balance_of(web3: AsyncWeb3) -> int:
            contract = web3.eth.contract(
                address=web3.to_checksum_address(str(token_address)), abi=ERC20_ABI
            )
            return await contract.functions.balanceOf(
                web3.to_checksum_address(address)
            ).call(block_identifier="pending")

        return int(await self._read(chain_id, "balanceOf", _balance_of))

    async def token_allowance(
        self, chain_id: int, token_address: str, owner: str, spender: str
    ) -> int:
        async def _allowance(web3: AsyncWeb3) -> int:
            contract = web3.eth.contract(
                address=web3.to_checksum_address(token_address), abi=ERC20_ABI
            )
            return await contract.functions.allowance(
                web3.to_checksum_address(owner),
                web3.to_checksum_address(spender),
            ).call(block_identifier="pending")

        return int(await self._read(chain_id, "allowance", _allowance))

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
    ) -> Any:
        async def _call(web3: AsyncWeb3) -> Any:
            contract = web3.eth.contract(
                address=web3.to_checksum_address(target), abi=abi
            )
            tx_params: dict[str, Any] = {"value": int(value)}
            if from_address:
                tx_params["from"] = web3.to_checksum_address(from_address)
            fn = getattr(contract.functions, fn_name)
            return await fn(*args).call(tx_params, block_identifier="latest")

        return await self._read(chain_id, fn_name, _call)

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
    ) -> dict[str, Any]:
        web3 = AsyncWeb3()
        try:
            contract = web3.eth.contract(
                address=web3.to_checksum_address(target),
                abi=abi,
            )
            data = contract.encode_abi(fn_name, args)
        except (ValueError, TypeError) as exc:
            raise InvalidParametersError(f"Failed to encode {fn_name}: {exc}") from exc

        return {
            "chainId": int(chain_id),
            "from": AsyncWeb3.to_checksum_address(from_address),
            "to": AsyncWeb3.to_checksum_address(target),
            "data": data,
            "value": int(value),
        }

    async def estimate_gas_limit(self, transaction: dict) -> int:
        transaction = transaction.copy()
        # prevents RPCs from taking this as a serious limit
        transaction.pop("gas", None)
        chain_id = get_transaction_chain_id(transaction)

        async def _estimate_gas(web3: AsyncWeb3) -> int:
            try:
                return await web3.eth.estimate_gas(transaction, block_identifier="latest")
            except Exception as e:
                logger.info(
                    f"Failed to estimate gas using {web3.provider.endpoint_uri}. Error: {e}"
                )
                translated = translate_rpc_error(e, context="estimate_gas")
                if not getattr(translated, "retryable", False):
                    raise translated from e
                return 0

        gas_limits = await self._read_all(chain_id, "estimate_gas", _estimate_gas)
        gas_limit = max(gas_limits)
        if gas_limit == 0:
            logger.error("Gas estimation failed on all RPCs")
            raise NetworkError("Gas estimation failed on all RPCs")
        # Swaps can use more gas at inclusion than at estimation.
        return int(math.ceil(gas_limit * GAS_BUFFER_MULTIPLIER))

    async def gas_price_fields(self, chain_id: int) -> dict[str, int]:
        async def _get_gas_price(web3: AsyncWeb3) -> int:
            return await web3.eth.gas_price

        async def _get_base_fee(web3: AsyncWeb3) -> int:
            latest_block = await web3.eth.get_block("latest")
            return latest_block.baseFeePerGas

        async def _get_priority_fee(web3: AsyncWeb3) -> int:
            lookback_blocks = 10
            percentile = 80
            fee_history = await web3.eth.fee_history(
                lookback_blocks, "latest", [percentile]
            )
            historical_priority_fees = [i[0] for i in fee_history.reward]
            return sum(historical_priority_fees) // max(1, len(historical_priority_fees))

        if chain_id in PRE_EIP_1559_CHAIN_IDS:
            gas_price = max(await self._read_all(chain_id, "gas_price", _get_gas_price))
            return {"gasPrice": int(gas_price * SUGGESTED_GAS_PRICE_MULTIPLIER)}

        base_fee = max(await self._read_all(chain_id, "get_block", _get_base_fee))
        priority_fee = max(
            await self._read_all(chain_id, "fee_history", _get_priority_fee)
        )
        return {
            "maxFeePerGas": int(
                base_fee * MAX_BASE_FEE_GROWTH_MULTIPLIER
                + priority_fee * SUGGESTED_PRIORITY_FEE_MULTIPLIER
            ),
            "maxPriorityFeePerGas": int(
                priority_fee * SUGGESTED_PRIORITY_FEE_MULTIPLIER
            ),
        }

    async def estimate_fee_wei(self, chain_id: int, gas_units: int) -> int:
        fields = await self.gas_price_fields(chain_id)
        per_gas = fields.get("maxFeePerGas") or fields.get("gasPrice") or 0
        return int(per_gas) * int(gas_units)

    async def broadcast(self, chain_id: int, signed_transaction: bytes) -> str:
        if self.throttle is not None:
            await self.throttle.wait(EndpointClass.RPC)
        try:
            async with web3_from_chain_id(chain_id, self.rpc_urls) as web3:
                tx_hash = await web3.eth.send_raw_transaction(signed_transaction)
        except Exception as exc:
            raise translate_rpc_error(exc, context="send_raw_transaction") from exc
        return _hex_hash(tx_hash)

    async def get_receipt(self, chain_id: int, txn_hash: str) -> dict | None:
        async def _get_receipt(web3: AsyncWeb3) -> dict | None:
            try:
                return dict(await web3.eth.get_transaction_receipt(_hex_hash(txn_hash)))
            except TransactionNotFound:
                return None

        return await self._read(chain_id, "get_transaction_receipt", _get_receipt)

    async def wait_for_receipt(
        self,
        chain_id: int,
        txn_hash: str,
        *,
        poll_interval: float = 1.0,
        timeout: float = DEFAULT_TRANSACTION_TIMEOUT,
    ) -> dict:
        txn_hash = _hex_hash(txn_hash)
        try:
            async with web3_from_chain_id(chain_id, self.rpc_urls) as web3:
                receipt = dict(
                    await web3.eth.wait_for_transaction_receipt(
                        txn_hash, poll_latency=poll_interval, timeout=timeout
                    )
                )
        except Exception as exc:
            raise translate_rpc_error(
                exc, context=f"waiting for receipt {txn_hash}"
            ) from exc

        if receipt.get("status") == 0:
            raise TransactionRevertedError(
                txn_hash,
                receipt,
                message=f"Transaction reverted (status=0): {txn_hash}",
            )
        return receipt
