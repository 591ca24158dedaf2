from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_utils import to_bytes, to_checksum_address
from web3 import AsyncWeb3
from web3.logs import DISCARD

from crosschain_lp.core.adapters.BaseAdapter import BaseAdapter
from crosschain_lp.core.clients.protocols import ChainClientProtocol
from crosschain_lp.core.constants.base import ZERO_ADDRESS
from crosschain_lp.core.constants.contracts import (
    UNISWAP_V3_FACTORY,
    UNISWAP_V3_NPM,
    UNISWAP_V3_QUOTER,
    UNISWAP_V3_SWAP_ROUTER,
)
from crosschain_lp.core.constants.uniswap_v3_abi import (
    NONFUNGIBLE_POSITION_MANAGER_ABI,
    QUOTER_V2_ABI,
    SWAP_ROUTER_02_ABI,
    UNISWAP_V3_FACTORY_ABI,
    UNISWAP_V3_POOL_ABI,
)
from crosschain_lp.core.errors import (
    InvalidParametersError,
    NoLiquidityPoolError,
    TransactionRevertedError,
)
from crosschain_lp.core.utils.uniswap_v3_math import (
    PositionData,
    collect_params,
    deadline,
    parse_position_struct,
    round_tick_down,
    round_tick_up,
    slippage_min,
    sort_tokens,
)

TICK_SPACING: dict[int, int] = {100: 1, 500: 10, 3000: 60, 10000: 200}


@dataclass(frozen=True)
class PoolState:
    address: str
    token0: str
    token1: str
    fee: int
    sqrt_price_x96: int
    tick: int
    tick_spacing: int
    liquidity: int


class UniswapV3Adapter(BaseAdapter):
    """Pool reads and calldata builders for Uniswap V3 on a single chain.

    Builders return unsigned transaction dicts; signing and broadcasting stay
    with the caller so it can persist the hash before waiting on a receipt.
    """

    adapter_type = "UNISWAP"

    def __init__(
        self,
        config: dict[str, Any],
        *,
        chain: ChainClientProtocol,
    ) -> None:
        super().__init__("uniswap_adapter", config)
        self.chain = chain
        self.chain_id: int = int(config.get("chain_id", 8453))
        self.deadline_s = int(config.get("deadline_s") or 300)

        def _address(key: str, defaults: dict[int, str]) -> str:
            value = config.get(key) or defaults.get(self.chain_id)
            if not value:
                raise InvalidParametersError(
                    f"No Uniswap V3 {key} known for chain {self.chain_id}; "
                    f"set dex.{key} in config"
                )
            return to_checksum_address(str(value))

        self.factory_address = _address("factory", UNISWAP_V3_FACTORY)
        self.position_manager = _address("position_manager", UNISWAP_V3_NPM)
        self.swap_router = _address("swap_router", UNISWAP_V3_SWAP_ROUTER)
        self.quoter = _address("quoter", UNISWAP_V3_QUOTER)

    def _tick_spacing_for_fee(self, fee: int) -> int:
        spacing = TICK_SPACING.get(int(fee))
        if spacing is None:
            raise InvalidParametersError(
                f"Unknown fee tier {fee}; expected one of {list(TICK_SPACING)}"
            )
        return spacing

    async def _npm_call(self, fn_name: str, args: list[Any], **kwargs: Any) -> Any:
        return await self.chain.call(
            self.chain_id,
            target=self.position_manager,
            abi=NONFUNGIBLE_POSITION_MANAGER_ABI,
            fn_name=fn_name,
            args=args,
            **kwargs,
        )

    async def _npm_tx(
        self, owner: str, fn_name: str, args: list[Any]
    ) -> dict[str, Any]:
        return await self.chain.encode_call(
            target=self.position_manager,
            abi=NONFUNGIBLE_POSITION_MANAGER_ABI,
            fn_name=fn_name,
            args=args,
            from_address=owner,
            chain_id=self.chain_id,
        )

    # ── reads ──

    async def get_pool(self, token_a: str, token_b: str, fee: int) -> str | None:
        t0, t1 = sort_tokens(token_a, token_b)
        pool = await self.chain.call(
            self.chain_id,
            target=self.factory_address,
            abi=UNISWAP_V3_FACTORY_ABI,
            fn_name="getPool",
            args=[t0, t1, int(fee)],
        )
        if not pool or str(pool).lower() == ZERO_ADDRESS:
            return None
        return to_checksum_address(pool)

    async def read_pool(self, token_a: str, token_b: str, fee: int) -> PoolState:
        pool = await self.get_pool(token_a, token_b, fee)
        if pool is None:
            raise NoLiquidityPoolError(
                f"No Uniswap V3 pool for {token_a}/{token_b} fee {fee} "
                f"on chain {self.chain_id}"
            )

        async def _pool_call(fn_name: str) -> Any:
            return await self.chain.call(
                self.chain_id,
                target=pool,
                abi=UNISWAP_V3_POOL_ABI,
                fn_name=fn_name,
                args=[],
            )

        slot0 = await _pool_call("slot0")
        liquidity = int(await _pool_call("liquidity"))
        if int(slot0[0]) == 0:
            raise NoLiquidityPoolError(f"Pool {pool} is not initialized")
        t0, t1 = sort_tokens(token_a, token_b)
        return PoolState(
            address=pool,
            token0=t0,
            token1=t1,
            fee=int(fee),
            sqrt_price_x96=int(slot0[0]),
            tick=int(slot0[1]),
            tick_spacing=self._tick_spacing_for_fee(fee),
            liquidity=liquidity,
        )

    async def read_position(self, token_id: int) -> PositionData:
        raw = await self._npm_call("positions", [int(token_id)])
        return parse_position_struct(tuple(raw))

    async def owed_fees(self, owner: str, token_id: int) -> tuple[int, int]:
        # collect() as a static call returns what a real collect would pay out
        owner = to_checksum_address(owner)
        result = await self._npm_call(
            "collect", [collect_params(token_id, owner)], from_address=owner
        )
        return int(result[0]), int(result[1])

    async def quote_exact_input(
        self, token_in: str, token_out: str, fee: int, amount_in: int
    ) -> int:
        result = await self.chain.call(
            self.chain_id,
            target=self.quoter,
            abi=QUOTER_V2_ABI,
            fn_name="quoteExactInputSingle",
            args=[
                (
                    to_checksum_address(token_in),
                    to_checksum_address(token_out),
                    int(amount_in),
                    int(fee),
                    0,
                )
            ],
        )
        return int(result[0])

    # ── builders ──

    async def build_swap_exact_input(
        self,
        *,
        owner: str,
        token_in: str,
        token_out: str,
        fee: int,
        amount_in: int,
        min_amount_out: int,
    ) -> dict[str, Any]:
        owner = to_checksum_address(owner)
        params = (
            to_checksum_address(token_in),
            to_checksum_address(token_out),
            int(fee),
            owner,
            int(amount_in),
            int(min_amount_out),
            0,
        )
        return await self.chain.encode_call(
            target=self.swap_router,
            abi=SWAP_ROUTER_02_ABI,
            fn_name="exactInputSingle",
            args=[params],
            from_address=owner,
            chain_id=self.chain_id,
        )

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
    ) -> dict[str, Any]:
        t0 = to_checksum_address(token0)
        t1 = to_checksum_address(token1)
        if int(t0, 16) > int(t1, 16):
            t0, t1 = t1, t0
            amount0, amount1 = amount1, amount0
            tick_lower, tick_upper = -tick_upper, -tick_lower

        spacing = self._tick_spacing_for_fee(fee)
        tick_lower = round_tick_down(int(tick_lower), spacing)
        tick_upper = round_tick_up(int(tick_upper), spacing)
        if tick_upper <= tick_lower:
            tick_upper = tick_lower + spacing

        owner = to_checksum_address(owner)
        params = (
            t0,
            t1,
            int(fee),
            tick_lower,
            tick_upper,
            int(amount0),
            int(amount1),
            slippage_min(amount0, slippage_bps),
            slippage_min(amount1, slippage_bps),
            owner,
            deadline(self.deadline_s),
        )
        return await self._npm_tx(owner, "mint", [params])

    async def build_increase_liquidity(
        self,
        *,
        owner: str,
        token_id: int,
        amount0: int,
        amount1: int,
        slippage_bps: int,
    ) -> dict[str, Any]:
        params = (
            int(token_id),
            int(amount0),
            int(amount1),
            slippage_min(amount0, slippage_bps),
            slippage_min(amount1, slippage_bps),
            deadline(self.deadline_s),
        )
        return await self._npm_tx(to_checksum_address(owner), "increaseLiquidity", [params])

    async def build_collect(self, *, owner: str, token_id: int) -> dict[str, Any]:
        owner = to_checksum_address(owner)
        return await self._npm_tx(owner, "collect", [collect_params(token_id, owner)])

    async def build_close(
        self, *, owner: str, token_id: int, liquidity: int
    ) -> dict[str, Any]:
        """decreaseLiquidity (all) + collect + burn in one multicall."""
        owner = to_checksum_address(owner)
        calls: list[bytes] = []
        if int(liquidity) > 0:
            decrease = await self._npm_tx(
                owner,
                "decreaseLiquidity",
                [(int(token_id), int(liquidity), 0, 0, deadline(self.deadline_s))],
            )
            calls.append(to_bytes(hexstr=decrease["data"]))
        collect = await self._npm_tx(owner, "collect", [collect_params(token_id, owner)])
        calls.append(to_bytes(hexstr=collect["data"]))
        burn = await self._npm_tx(owner, "burn", [int(token_id)])
        calls.append(to_bytes(hexstr=burn["data"]))
        return await self._npm_tx(owner, "multicall", [calls])

    def parse_mint_receipt(self, receipt: dict[str, Any]) -> dict[str, int]:
        contract = AsyncWeb3().eth.contract(
            address=self.position_manager, abi=NONFUNGIBLE_POSITION_MANAGER_ABI
        )
        events = contract.events.IncreaseLiquidity().process_receipt(
            receipt, errors=DISCARD
        )
        if not events:
            raise TransactionRevertedError(
                str(receipt.get("transactionHash", "")),
                receipt,
                message="Mint receipt carries no IncreaseLiquidity event",
            )
        args = events[0]["args"]
        return {
            "token_id": int(args["tokenId"]),
            "liquidity": int(args["liquidity"]),
            "amount0": int(args["amount0"]),
            "amount1": int(args["amount1"]),
        }
