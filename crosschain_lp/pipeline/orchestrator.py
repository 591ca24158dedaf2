"""Resumable per-wallet pipeline: Fund -> Bridge -> Swap -> OpenPosition -> Collect.

The orchestrator is the only place an exception becomes persisted state. Each
step handler writes its result snapshot to the store as soon as a transfer is
submitted (tx hash / withdrawal id) and before waiting on it, so a resumed run
polls the recorded transfer instead of issuing a second one.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

from eth_utils import keccak, to_checksum_address
from loguru import logger
from pydantic import BaseModel

from crosschain_lp.adapters.ccxt_adapter.adapter import WithdrawalState
from crosschain_lp.core.config import FundingSource
from crosschain_lp.core.errors import (
    ConfigMissingError,
    InsufficientFundsError,
    InvalidParametersError,
    InvalidTransitionError,
    MinimumAmountError,
    OperationTimeoutError,
    TransferFailedError,
    error_payload,
)
from crosschain_lp.core.utils.tokens import build_send_transaction, ensure_allowance
from crosschain_lp.core.utils.transaction import send_transaction
from crosschain_lp.core.utils.uniswap_v3_math import slippage_min
from crosschain_lp.pipeline.services import PipelineServices, WalletContext
from crosschain_lp.pipeline.steps import (
    PENDING_STEPS,
    Outcome,
    Step,
    is_terminal,
    transition,
)
from crosschain_lp.pipeline.types import (
    BridgeResult,
    CollectResult,
    ExecutionState,
    FeeSnapshot,
    FundResult,
    HarvestProgress,
    HarvestRecord,
    Position,
    PositionResult,
    StepError,
    SwapResult,
    TransferStatus,
    utcnow,
)

T = TypeVar("T")


class WaitCancelled(Exception):
    """A settlement wait observed the wallet's cancellation event."""


def dry_run_hash(*parts: Any) -> str:
    return f"0x{keccak(text=':'.join(str(p) for p in parts)).hex()}"


class StepOrchestrator:
    def __init__(self, services: PipelineServices):
        self.services = services
        self.settings = services.settings
        self.engine = services.engine
        self._handlers: dict[
            Step, Callable[[WalletContext, ExecutionState], Awaitable[None]]
        ] = {
            Step.FUND_PENDING: self._fund,
            Step.BRIDGE_PENDING: self._bridge,
            Step.SWAP_PENDING: self._swap,
            Step.POSITION_PENDING: self._open_position,
            Step.COLLECT_PENDING: self._collect,
        }

    # ── driving loop ──

    async def run(
        self, ctx: WalletContext, *, stop_after: Step | None = None
    ) -> ExecutionState:
        store = self.services.store
        log = logger.bind(wallet=ctx.address)
        state = await store.load_or_create(
            ctx.address, derivation_index=ctx.derivation_index, dry_run=ctx.dry_run
        )

        if state.current_step == Step.ERROR:
            if not ctx.retry_failed:
                log.warning(
                    f"Wallet {ctx.address} is in error at {state.failed_step}: "
                    f"{state.error.message if state.error else 'unknown'}; "
                    f"pass --retry-failed to resume it"
                )
                return state
            resumed = transition(
                Step.ERROR, Outcome.RETRY, failed_step=state.failed_step
            )
            log.info(f"Retrying {ctx.address} from {resumed}")
            state.current_step = resumed
            state.error = None
            await store.save(state)

        while not is_terminal(state.current_step):
            if stop_after is not None and state.current_step == stop_after:
                break
            if ctx.cancel.is_set():
                log.info(f"Cancelled at {state.current_step}")
                break

            pending = state.current_step
            if pending not in PENDING_STEPS:
                pending = transition(state.current_step, Outcome.START)
                state.current_step = pending
                await store.save(state)

            step_log = log.bind(step=str(pending))
            step_log.info(f"Executing {pending}")
            try:
                await self._handlers[pending](ctx, state)
            except WaitCancelled:
                step_log.info(f"Cancelled while waiting in {pending}")
                await store.save(state)
                break
            except Exception as exc:
                payload = error_payload(exc)
                state.error = StepError(**payload)
                state.failed_step = pending
                state.current_step = transition(pending, Outcome.FAILURE)
                await store.save(state)
                step_log.error(
                    f"{pending} failed [{payload['code']}]: {payload['message']}"
                )
                break

            state.current_step = transition(pending, Outcome.SUCCESS)
            state.failed_step = None
            await store.save(state)
            step_log.info(f"Reached {state.current_step}")

        return state

    # ── shared helpers ──

    def _dry_run(self, ctx: WalletContext) -> bool:
        return ctx.dry_run or self.settings.dry_run

    async def _persist(self, state: ExecutionState) -> None:
        await self.services.store.save(state)

    async def _pause(self, ctx: WalletContext, seconds: float) -> None:
        if ctx.cancel.is_set():
            raise WaitCancelled()
        if seconds <= 0:
            return
        sleeper = asyncio.ensure_future(self.services.sleep(seconds))
        canceller = asyncio.ensure_future(ctx.cancel.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
        if ctx.cancel.is_set():
            raise WaitCancelled()

    async def _wait_until(
        self,
        ctx: WalletContext,
        check: Callable[[], Awaitable[T | None]],
        *,
        timeout_s: float,
        poll_interval_s: float,
        label: str,
    ) -> T:
        """Poll ``check`` until it returns a non-None value or ``timeout_s`` passes."""
        clock = self.services.clock
        deadline = clock() + timeout_s
        while True:
            result = await check()
            if result is not None:
                return result
            if clock() >= deadline:
                raise OperationTimeoutError(f"{label} timeout after {timeout_s:.0f}s")
            await self._pause(ctx, poll_interval_s)

    async def _send(self, ctx: WalletContext, tx: dict[str, Any], label: str) -> str:
        if self._dry_run(ctx):
            tx_hash = dry_run_hash(ctx.address, label, tx.get("to"), tx.get("data"))
            logger.bind(wallet=ctx.address).info(
                f"[dry-run] would send {label} to {tx.get('to')} "
                f"value={tx.get('value', 0)} -> {tx_hash}"
            )
            return tx_hash
        return await send_transaction(
            tx,
            chain=self.services.chain,
            wallets=self.services.wallets,
            wait_for_receipt=False,
            sleep=self.services.sleep,
        )

    async def _confirm(
        self, ctx: WalletContext, chain_id: int, tx_hash: str
    ) -> dict[str, Any]:
        if self._dry_run(ctx):
            return {"status": 1, "transactionHash": tx_hash, "logs": []}
        return await self.services.chain.wait_for_receipt(
            chain_id, tx_hash, timeout=self.settings.receipt_timeout_s
        )

    async def _send_confirmed(
        self, ctx: WalletContext, chain_id: int, tx: dict[str, Any], label: str
    ) -> str:
        tx_hash = await self._send(ctx, tx, label)
        await self._confirm(ctx, chain_id, tx_hash)
        return tx_hash

    async def _submit_once(
        self,
        ctx: WalletContext,
        state: ExecutionState,
        snapshot: BaseModel,
        field: str,
        build: Callable[[], Awaitable[dict[str, Any]]],
        *,
        chain_id: int,
        label: str,
    ) -> dict[str, Any]:
        """Send unless ``snapshot.<field>`` already holds a hash, then confirm."""
        tx_hash = getattr(snapshot, field)
        if tx_hash is None:
            tx = await build()
            tx_hash = await self._send(ctx, tx, label)
            setattr(snapshot, field, tx_hash)
            await self._persist(state)
        else:
            logger.bind(wallet=ctx.address).info(
                f"Resuming {label}: polling recorded tx {tx_hash}"
            )
        return await self._confirm(ctx, chain_id, tx_hash)

    async def _approve(
        self,
        ctx: WalletContext,
        *,
        chain_id: int,
        token: str,
        spender: str,
        amount: int,
    ) -> str | None:
        if amount <= 0:
            return None

        async def _send_approval(tx: dict[str, Any]) -> str:
            return await self._send_confirmed(ctx, chain_id, tx, "approve")

        return await ensure_allowance(
            self.services.chain,
            token_address=token,
            owner=ctx.address,
            spender=spender,
            amount=int(amount),
            chain_id=chain_id,
            send=_send_approval,
        )

    # ── Fund ──

    async def _fund(self, ctx: WalletContext, state: ExecutionState) -> None:
        funding = self.settings.funding
        amount_human = ctx.fund_amount if ctx.fund_amount is not None else funding.amount
        amount_raw = int(Decimal(amount_human) * (Decimal(10) ** funding.decimals))

        snapshot = state.results.fund
        if snapshot is None:
            snapshot = FundResult(source=funding.source, amount=amount_raw)
            state.results.fund = snapshot

        if funding.source == FundingSource.NONE or amount_raw <= 0:
            snapshot.status = TransferStatus.SKIPPED
            logger.bind(wallet=ctx.address).info("No funding configured; using balance")
            return

        if funding.source == FundingSource.CEX:
            await self._fund_from_exchange(ctx, state, snapshot, float(amount_human))
        else:
            await self._fund_from_funder(ctx, state, snapshot)
        snapshot.status = TransferStatus.COMPLETED

    async def _fund_from_exchange(
        self,
        ctx: WalletContext,
        state: ExecutionState,
        snapshot: FundResult,
        amount: float,
    ) -> None:
        funding = self.settings.funding
        exchange = self.services.exchange
        if exchange is None:
            raise ConfigMissingError("funding.source is cex but no exchange is configured")

        if snapshot.withdrawal_id is None:
            if self._dry_run(ctx):
                snapshot.withdrawal_id = f"dry-run-{ctx.address.lower()}"
                logger.bind(wallet=ctx.address).info(
                    f"[dry-run] would withdraw {amount} {funding.asset} to {ctx.address}"
                )
            else:
                receipt = await exchange.withdraw(
                    asset=funding.asset,
                    amount=amount,
                    address=ctx.address,
                    network=funding.network,
                )
                snapshot.withdrawal_id = receipt.withdrawal_id
            await self._persist(state)

        if self._dry_run(ctx):
            return

        withdrawal_id = snapshot.withdrawal_id

        async def _terminal_status():
            status = await exchange.fetch_withdrawal(withdrawal_id, funding.asset)
            return status if status.state.is_terminal else None

        status = await self._wait_until(
            ctx,
            _terminal_status,
            timeout_s=funding.withdrawal_timeout_s,
            poll_interval_s=funding.poll_interval_s,
            label=f"withdrawal {withdrawal_id}",
        )
        if status.state in (WithdrawalState.FAILED, WithdrawalState.CANCELLED):
            raise TransferFailedError(
                f"Withdrawal {withdrawal_id} ended {status.state}",
                details={"withdrawal_id": withdrawal_id},
            )
        snapshot.tx_hash = status.tx_hash

    async def _fund_from_funder(
        self, ctx: WalletContext, state: ExecutionState, snapshot: FundResult
    ) -> None:
        funding = self.settings.funding
        if not funding.funder_private_key:
            raise ConfigMissingError("funding.funder_private_key is required for funder source")
        funder = self.services.wallets.register_private_key(funding.funder_private_key)
        chain_id = self.settings.bridge.from_chain_id

        async def _build() -> dict[str, Any]:
            return await build_send_transaction(
                self.services.chain,
                from_address=funder.address,
                to_address=ctx.address,
                token_address=funding.token_address,
                chain_id=chain_id,
                amount=snapshot.amount,
            )

        await self._submit_once(
            ctx, state, snapshot, "tx_hash", _build, chain_id=chain_id, label="fund"
        )

    # ── Bridge ──

    async def _bridge(self, ctx: WalletContext, state: ExecutionState) -> None:
        cfg = self.settings.bridge
        log = logger.bind(wallet=ctx.address, step="bridge")

        snapshot = state.results.bridge
        if snapshot is None:
            if cfg.amount <= 0:
                state.results.bridge = BridgeResult(status=TransferStatus.SKIPPED)
                log.info("Bridge amount is zero; skipping bridge")
                return
            if cfg.min_amount and cfg.amount < cfg.min_amount:
                raise MinimumAmountError(
                    f"Bridge amount {cfg.amount} is below the minimum {cfg.min_amount}",
                    amount=cfg.amount,
                    minimum=cfg.min_amount,
                )
            snapshot = BridgeResult(from_amount=cfg.amount)
            state.results.bridge = snapshot
            await self._persist(state)

        if snapshot.status == TransferStatus.SKIPPED:
            return

        route = None
        if snapshot.tx_hash is None:
            route = await self.services.bridge.get_quote(
                from_chain=cfg.from_chain_id,
                to_chain=cfg.to_chain_id,
                from_token=cfg.from_token,
                to_token=cfg.to_token,
                from_amount=cfg.amount,
                from_address=ctx.address,
                to_address=ctx.address,
                slippage=cfg.slippage,
            )
            snapshot.tool = route.tool
            snapshot.route_id = route.id
            snapshot.to_amount = route.estimate.to_amount
            snapshot.min_amount_out = route.estimate.to_amount_min
            spender = route.estimate.approval_address or route.transaction_request.to
            approval = await self._approve(
                ctx,
                chain_id=cfg.from_chain_id,
                token=cfg.from_token,
                spender=spender,
                amount=cfg.amount,
            )
            if approval:
                snapshot.approval_tx_hash = approval

        async def _build() -> dict[str, Any]:
            return route.transaction_request.to_tx(ctx.address, cfg.from_chain_id)

        await self._submit_once(
            ctx,
            state,
            snapshot,
            "tx_hash",
            _build,
            chain_id=cfg.from_chain_id,
            label="bridge",
        )

        if self._dry_run(ctx):
            snapshot.status = TransferStatus.COMPLETED
            return

        tx_hash = snapshot.tx_hash

        async def _settled():
            status = await self.services.bridge.get_status(
                tx_hash=tx_hash,
                from_chain=cfg.from_chain_id,
                to_chain=cfg.to_chain_id,
                bridge=snapshot.tool,
            )
            if status.is_failed:
                raise TransferFailedError(
                    f"Bridge transfer {tx_hash} failed ({status.substatus or status.status})",
                    details={"tx_hash": tx_hash},
                )
            return status if status.is_done else None

        status = await self._wait_until(
            ctx,
            _settled,
            timeout_s=cfg.timeout_s,
            poll_interval_s=cfg.poll_interval_s,
            label=f"bridge {tx_hash}",
        )
        snapshot.receiving_tx_hash = status.receiving_tx_hash
        snapshot.status = TransferStatus.COMPLETED
        log.info(f"Bridge {tx_hash} settled on chain {cfg.to_chain_id}")

    # ── Swap ──

    async def _await_arrival(
        self, ctx: WalletContext, state: ExecutionState, token: str
    ) -> None:
        """Wait until the bridged amount shows up on the destination chain."""
        bridged = state.results.bridge
        if bridged is None or bridged.status != TransferStatus.COMPLETED:
            return
        if self._dry_run(ctx):
            return

        chain_id = self.settings.dex_chain_id
        floor = max(1, bridged.min_amount_out)
        swap_cfg = self.settings.swap

        async def _arrived():
            balance = await self.services.chain.token_balance(chain_id, token, ctx.address)
            return balance if balance >= floor else None

        await self._wait_until(
            ctx,
            _arrived,
            timeout_s=swap_cfg.arrival_timeout_s,
            poll_interval_s=swap_cfg.poll_interval_s,
            label=f"arrival of bridged funds on chain {chain_id}",
        )

    async def _swap(self, ctx: WalletContext, state: ExecutionState) -> None:
        cfg = self.settings.swap
        chain = self.services.chain
        dex = self.services.dex
        chain_id = self.settings.dex_chain_id
        log = logger.bind(wallet=ctx.address, step="swap")

        snapshot = state.results.swap
        if snapshot is None:
            if not cfg.token_in or not cfg.token_out or cfg.swap_percent <= 0:
                state.results.swap = SwapResult(
                    token_in=cfg.token_in or "",
                    token_out=cfg.token_out or "",
                    status=TransferStatus.SKIPPED,
                )
                log.info("No swap configured; skipping")
                return

            await self._await_arrival(ctx, state, cfg.token_in)
            balance_in = await chain.token_balance(chain_id, cfg.token_in, ctx.address)
            amount_in = int(Decimal(balance_in) * Decimal(str(cfg.swap_percent)) / 100)
            if amount_in <= 0 and self._dry_run(ctx):
                # Nothing has actually been bridged in a dry run.
                amount_in = int(
                    Decimal(self.settings.bridge.amount)
                    * Decimal(str(cfg.swap_percent))
                    / 100
                )
            if amount_in <= 0:
                raise InsufficientFundsError(
                    f"No {cfg.token_in} balance to swap on chain {chain_id}"
                )
            balance_out_before = await chain.token_balance(
                chain_id, cfg.token_out, ctx.address
            )
            quoted = await dex.quote_exact_input(
                cfg.token_in, cfg.token_out, cfg.fee, amount_in
            )
            snapshot = SwapResult(
                token_in=cfg.token_in,
                token_out=cfg.token_out,
                amount_in=amount_in,
                min_amount_out=slippage_min(quoted, cfg.slippage_bps),
                balance_out_before=balance_out_before,
            )
            state.results.swap = snapshot
            await self._persist(state)

        if snapshot.status == TransferStatus.SKIPPED:
            return

        if snapshot.tx_hash is None:
            await self._approve(
                ctx,
                chain_id=chain_id,
                token=snapshot.token_in,
                spender=dex.swap_router,
                amount=snapshot.amount_in,
            )

        async def _build() -> dict[str, Any]:
            return await dex.build_swap_exact_input(
                owner=ctx.address,
                token_in=snapshot.token_in,
                token_out=snapshot.token_out,
                fee=cfg.fee,
                amount_in=snapshot.amount_in,
                min_amount_out=snapshot.min_amount_out,
            )

        await self._submit_once(
            ctx, state, snapshot, "tx_hash", _build, chain_id=chain_id, label="swap"
        )

        if self._dry_run(ctx):
            snapshot.amount_out = snapshot.min_amount_out
        else:
            balance_out = await chain.token_balance(
                chain_id, snapshot.token_out, ctx.address
            )
            snapshot.amount_out = max(0, balance_out - snapshot.balance_out_before)
        snapshot.status = TransferStatus.COMPLETED
        log.info(
            f"Swapped {snapshot.amount_in} {snapshot.token_in} -> "
            f"{snapshot.amount_out} {snapshot.token_out}"
        )

    # ── OpenPosition ──

    def _pool_tokens(self) -> tuple[str, str, int]:
        liq = self.settings.liquidity
        token0 = liq.token0 or self.settings.swap.token_in
        token1 = liq.token1 or self.settings.swap.token_out
        if not token0 or not token1:
            raise ConfigMissingError("liquidity.token0 and liquidity.token1 are required")
        return token0, token1, liq.fee

    async def _mint(
        self, ctx: WalletContext, state: ExecutionState, holder: BaseModel, field: str
    ) -> PositionResult:
        """Open a position, or resume the mint recorded at ``holder.<field>``."""
        dex = self.services.dex
        chain = self.services.chain
        chain_id = self.settings.dex_chain_id
        liq = self.settings.liquidity
        token_a, token_b, fee = self._pool_tokens()
        pool = await dex.read_pool(token_a, token_b, fee)

        snapshot: PositionResult | None = getattr(holder, field)
        if snapshot is None:
            balance0 = await chain.token_balance(chain_id, pool.token0, ctx.address)
            balance1 = await chain.token_balance(chain_id, pool.token1, ctx.address)
            tick_lower, tick_upper = self.engine.calculate_tick_range(
                pool.tick, pool.tick_spacing
            )
            amount0, amount1, liquidity = self.engine.plan_amounts(
                balance0=balance0,
                balance1=balance1,
                sqrt_price_x96=pool.sqrt_price_x96,
                tick_lower=tick_lower,
                tick_upper=tick_upper,
            )
            if liquidity <= 0 and not self._dry_run(ctx):
                raise InsufficientFundsError(
                    f"Balances {balance0}/{balance1} cannot fund a position in "
                    f"[{tick_lower}, {tick_upper}]"
                )
            snapshot = PositionResult(
                tick_lower=tick_lower,
                tick_upper=tick_upper,
                amount0_desired=amount0,
                amount1_desired=amount1,
            )
            setattr(holder, field, snapshot)
            await self._persist(state)

        if snapshot.tx_hash is None:
            for token, amount in (
                (pool.token0, snapshot.amount0_desired),
                (pool.token1, snapshot.amount1_desired),
            ):
                await self._approve(
                    ctx,
                    chain_id=chain_id,
                    token=token,
                    spender=dex.position_manager,
                    amount=amount,
                )

        async def _build() -> dict[str, Any]:
            return await dex.build_mint(
                owner=ctx.address,
                token0=pool.token0,
                token1=pool.token1,
                fee=fee,
                tick_lower=snapshot.tick_lower,
                tick_upper=snapshot.tick_upper,
                amount0=snapshot.amount0_desired,
                amount1=snapshot.amount1_desired,
                slippage_bps=liq.slippage_bps,
            )

        receipt = await self._submit_once(
            ctx, state, snapshot, "tx_hash", _build, chain_id=chain_id, label="mint"
        )
        if self._dry_run(ctx):
            minted = {
                "token_id": 0,
                "liquidity": 0,
                "amount0": snapshot.amount0_desired,
                "amount1": snapshot.amount1_desired,
            }
        else:
            minted = dex.parse_mint_receipt(receipt)

        snapshot.position = self.engine.open_position(
            token0=pool.token0,
            token1=pool.token1,
            fee=fee,
            token_id=minted["token_id"],
            tick_lower=snapshot.tick_lower,
            tick_upper=snapshot.tick_upper,
            liquidity=minted["liquidity"],
            amount0=minted["amount0"],
            amount1=minted["amount1"],
            sqrt_price_x96=pool.sqrt_price_x96,
        )
        snapshot.status = TransferStatus.COMPLETED
        logger.bind(wallet=ctx.address).info(
            f"Opened position #{minted['token_id']} in "
            f"[{snapshot.tick_lower}, {snapshot.tick_upper}] at price "
            f"{snapshot.position.last_price:.6g}"
        )
        return snapshot

    async def _open_position(self, ctx: WalletContext, state: ExecutionState) -> None:
        await self._mint(ctx, state, state.results, "position")

    # ── Collect ──

    async def _collect(self, ctx: WalletContext, state: ExecutionState) -> None:
        position = state.position
        if position is None:
            raise InvalidTransitionError("Collect requires an open position")

        snapshot = state.results.collect
        if snapshot is None:
            await self._pause(ctx, self.settings.liquidity.collect_after_s)
            owed0, owed1 = await self._owed_fees(ctx, position)
            snapshot = CollectResult(owed0=owed0, owed1=owed1)
            state.results.collect = snapshot
            if owed0 == 0 and owed1 == 0:
                snapshot.skipped_reason = "no fees"
            else:
                pool = await self.services.dex.read_pool(
                    position.token0, position.token1, position.fee
                )
                fees = self.engine.fee_snapshot(
                    owed0, owed1, pool.sqrt_price_x96, pool.tick
                )
                threshold = (
                    await self._harvest_gas_cost(fees)
                    * self.settings.liquidity.fee_gas_multiplier
                )
                if fees.total_value <= threshold:
                    snapshot.skipped_reason = "fees_below_threshold"
            if snapshot.skipped_reason:
                snapshot.status = TransferStatus.SKIPPED
                logger.bind(wallet=ctx.address).info(
                    f"Collect skipped ({snapshot.skipped_reason}): owed {owed0}/{owed1}"
                )
                return
            await self._persist(state)

        if snapshot.status == TransferStatus.SKIPPED:
            return

        await self._harvest_fees(ctx, state, position, snapshot)
        snapshot.status = TransferStatus.COMPLETED

    async def _owed_fees(self, ctx: WalletContext, position: Position) -> tuple[int, int]:
        if self._dry_run(ctx) and position.token_id == 0:
            return 0, 0
        return await self.services.dex.owed_fees(ctx.address, position.token_id)

    async def _harvest_gas_cost(self, fees: FeeSnapshot) -> float:
        """Gas for one harvest, in the same token1 units as ``fees``."""
        gas_wei = await self.services.chain.estimate_fee_wei(
            self.settings.dex_chain_id, self.settings.liquidity.harvest_gas_units
        )
        return self.engine.gas_cost_in_common_unit(gas_wei, fees.price)

    async def _harvest_fees(
        self,
        ctx: WalletContext,
        state: ExecutionState,
        position: Position,
        snapshot: CollectResult,
    ) -> None:
        """Collect owed fees, reinvest part of them and cash out the rest."""
        dex = self.services.dex
        chain_id = self.settings.dex_chain_id
        liq = self.settings.liquidity
        log = logger.bind(wallet=ctx.address)

        async def _build_collect() -> dict[str, Any]:
            return await dex.build_collect(owner=ctx.address, token_id=position.token_id)

        await self._submit_once(
            ctx,
            state,
            snapshot,
            "collect_tx_hash",
            _build_collect,
            chain_id=chain_id,
            label="collect",
        )

        pool = await dex.read_pool(position.token0, position.token1, position.fee)
        fees = self.engine.fee_snapshot(
            snapshot.owed0, snapshot.owed1, pool.sqrt_price_x96, pool.tick
        )
        breakdown = self.engine.compute_harvest_breakdown(fees)
        snapshot.reinvest0, snapshot.reinvest1 = breakdown.reinvest0, breakdown.reinvest1
        snapshot.cash_out0, snapshot.cash_out1 = breakdown.cash_out0, breakdown.cash_out1
        await self._persist(state)
        log.info(
            f"Fees {snapshot.owed0}/{snapshot.owed1}: reinvest "
            f"{breakdown.reinvest0}/{breakdown.reinvest1}, cash out "
            f"{breakdown.cash_out0}/{breakdown.cash_out1}"
        )

        if breakdown.reinvest0 or breakdown.reinvest1:
            if snapshot.reinvest_tx_hash is None:
                for token, amount in (
                    (position.token0, breakdown.reinvest0),
                    (position.token1, breakdown.reinvest1),
                ):
                    await self._approve(
                        ctx,
                        chain_id=chain_id,
                        token=token,
                        spender=dex.position_manager,
                        amount=amount,
                    )

            async def _build_increase() -> dict[str, Any]:
                return await dex.build_increase_liquidity(
                    owner=ctx.address,
                    token_id=position.token_id,
                    amount0=breakdown.reinvest0,
                    amount1=breakdown.reinvest1,
                    slippage_bps=liq.slippage_bps,
                )

            receipt = await self._submit_once(
                ctx,
                state,
                snapshot,
                "reinvest_tx_hash",
                _build_increase,
                chain_id=chain_id,
                label="reinvest",
            )
            if not self._dry_run(ctx):
                added = dex.parse_mint_receipt(receipt)
                position.liquidity += added["liquidity"]

        await self._cash_out(ctx, state, position, snapshot)
        position.last_harvest_at = utcnow()

    async def _cash_out(
        self,
        ctx: WalletContext,
        state: ExecutionState,
        position: Position,
        snapshot: CollectResult,
    ) -> None:
        settlement = self.settings.liquidity.settlement_token
        if not settlement:
            return
        settlement = to_checksum_address(settlement)
        if settlement == to_checksum_address(position.token0):
            token_in, amount_in = position.token1, snapshot.cash_out1
        elif settlement == to_checksum_address(position.token1):
            token_in, amount_in = position.token0, snapshot.cash_out0
        else:
            raise InvalidParametersError(
                f"settlement_token {settlement} is not one of the pool tokens"
            )
        if amount_in <= 0:
            return

        dex = self.services.dex
        chain_id = self.settings.dex_chain_id
        if snapshot.cash_out_tx_hash is None:
            await self._approve(
                ctx,
                chain_id=chain_id,
                token=token_in,
                spender=dex.swap_router,
                amount=amount_in,
            )

        async def _build() -> dict[str, Any]:
            quoted = await dex.quote_exact_input(
                token_in, settlement, position.fee, amount_in
            )
            return await dex.build_swap_exact_input(
                owner=ctx.address,
                token_in=token_in,
                token_out=settlement,
                fee=position.fee,
                amount_in=amount_in,
                min_amount_out=slippage_min(
                    quoted, self.settings.liquidity.slippage_bps
                ),
            )

        await self._submit_once(
            ctx,
            state,
            snapshot,
            "cash_out_tx_hash",
            _build,
            chain_id=chain_id,
            label="cash-out",
        )

    # ── periodic harvest ──

    async def harvest(self, ctx: WalletContext) -> ExecutionState:
        """Harvest fees and rebalance when warranted; the wallet stays at COLLECT_DONE.

        A cycle interrupted after moving funds is recorded on
        ``state.pending_harvest`` and the next call finishes it before
        evaluating anything new.
        """
        store = self.services.store
        log = logger.bind(wallet=ctx.address, step="harvest")
        state = await store.load(ctx.address)
        if state is None or state.current_step != Step.COLLECT_DONE:
            current = state.current_step if state else Step.IDLE
            raise InvalidTransitionError(
                f"Harvest requires {Step.COLLECT_DONE}, wallet is at {current}"
            )
        position = state.position
        if position is None:
            raise InvalidTransitionError("Harvest requires an open position")

        try:
            record = await self._harvest_cycle(ctx, state, position)
        except WaitCancelled:
            log.info("Harvest cancelled")
            return state
        except Exception as exc:
            state.error = StepError(**error_payload(exc))
            await store.save(state)
            log.error(f"Harvest failed: {exc}")
            return state

        state.error = None
        state.harvests.append(record)
        await store.save(state)
        return state

    async def _harvest_cycle(
        self, ctx: WalletContext, state: ExecutionState, position: Position
    ) -> HarvestRecord:
        log = logger.bind(wallet=ctx.address, step="harvest")
        liq = self.settings.liquidity

        progress = state.pending_harvest
        if progress is None:
            dex = self.services.dex
            pool = await dex.read_pool(position.token0, position.token1, position.fee)
            owed0, owed1 = await self._owed_fees(ctx, position)
            fees = self.engine.fee_snapshot(owed0, owed1, pool.sqrt_price_x96, pool.tick)
            gas_cost = await self._harvest_gas_cost(fees)
            decision = self.engine.evaluate_rebalance(position, fees, gas_cost)

            if not decision.should_rebalance:
                reason = "no fees" if owed0 == 0 and owed1 == 0 else "fees_below_threshold"
                log.info(
                    f"Harvest skipped ({reason}): fees {decision.fee_value:.0f} vs "
                    f"gas threshold {decision.gas_threshold:.0f}"
                )
                return HarvestRecord(
                    price=fees.price, owed0=owed0, owed1=owed1, skipped_reason=reason
                )

            progress = HarvestProgress(
                price=fees.price, owed0=owed0, owed1=owed1, reason=decision.reason
            )
            state.pending_harvest = progress
            await self._persist(state)
        else:
            log.info(
                f"Resuming {progress.reason} rebalance started at "
                f"{progress.started_at.isoformat()}"
            )

        try:
            async with asyncio.timeout(liq.rebalance_timeout_s):
                await self._rebalance(ctx, state, position, progress)
        except TimeoutError as exc:
            raise OperationTimeoutError(
                f"rebalance timeout after {liq.rebalance_timeout_s:.0f}s"
            ) from exc

        state.results.position = progress.reopen
        state.pending_harvest = None
        return progress.to_record()

    async def _rebalance(
        self,
        ctx: WalletContext,
        state: ExecutionState,
        position: Position,
        progress: HarvestProgress,
    ) -> None:
        """Close ``position`` and reopen around the current price."""
        dex = self.services.dex
        chain_id = self.settings.dex_chain_id

        async def _build_close() -> dict[str, Any]:
            return await dex.build_close(
                owner=ctx.address,
                token_id=position.token_id,
                liquidity=position.liquidity,
            )

        await self._submit_once(
            ctx,
            state,
            progress,
            "close_tx_hash",
            _build_close,
            chain_id=chain_id,
            label="close",
        )
        await self._mint(ctx, state, progress, "reopen")
