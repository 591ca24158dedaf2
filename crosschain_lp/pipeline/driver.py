from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from loguru import logger

from crosschain_lp.core.errors import ConfigMissingError, error_payload
from crosschain_lp.core.utils.tokens import build_send_transaction
from crosschain_lp.core.utils.transaction import send_transaction
from crosschain_lp.pipeline.distribution import execute_plan, plan_with_gas_reserve
from crosschain_lp.pipeline.orchestrator import StepOrchestrator, dry_run_hash
from crosschain_lp.pipeline.services import PipelineServices, WalletContext
from crosschain_lp.pipeline.steps import Step
from crosschain_lp.pipeline.types import DistributionResult, ExecutionState


@dataclass
class WalletOutcome:
    address: str
    step: str
    ok: bool
    error: dict[str, Any] | None = None


@dataclass
class RunSummary:
    wallets: list[WalletOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.wallets)

    @property
    def succeeded(self) -> int:
        return sum(1 for w in self.wallets if w.ok)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "wallets": [w.__dict__ for w in self.wallets],
        }


def _outcome(state: ExecutionState, *, target: Step = Step.COLLECT_DONE) -> WalletOutcome:
    return WalletOutcome(
        address=state.wallet_address,
        step=str(state.current_step),
        ok=state.current_step == target and state.error is None,
        error=state.error.model_dump() if state.error else None,
    )


class MultiWalletDriver:
    """Runs one orchestrator pass per wallet with bounded concurrency.

    A failure in one wallet is recorded on that wallet's outcome and never
    affects the others.
    """

    def __init__(
        self,
        services: PipelineServices,
        orchestrator: StepOrchestrator | None = None,
    ):
        self.services = services
        self.orchestrator = orchestrator or StepOrchestrator(services)

    def contexts_for(
        self,
        count: int,
        *,
        start: int = 0,
        dry_run: bool = False,
        retry_failed: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> list[WalletContext]:
        cancel = cancel or asyncio.Event()
        records = self.services.wallets.derive_many(count, start=start)
        return [
            WalletContext(
                address=record.address,
                derivation_index=record.derivation_index,
                dry_run=dry_run,
                retry_failed=retry_failed,
                cancel=cancel,
            )
            for record in records
        ]

    async def _gather(
        self,
        contexts: Sequence[WalletContext],
        work: Callable[[WalletContext], Awaitable[WalletOutcome]],
        concurrency: int | None,
    ) -> RunSummary:
        limit = max(1, concurrency or self.services.settings.max_concurrent_wallets)
        semaphore = asyncio.Semaphore(limit)

        async def _guarded(ctx: WalletContext) -> WalletOutcome:
            async with semaphore:
                try:
                    return await work(ctx)
                except Exception as exc:
                    logger.bind(wallet=ctx.address).error(f"Wallet failed: {exc}")
                    return WalletOutcome(
                        address=ctx.address,
                        step="unknown",
                        ok=False,
                        error=error_payload(exc),
                    )

        outcomes = await asyncio.gather(*[_guarded(ctx) for ctx in contexts])
        summary = RunSummary(wallets=list(outcomes))
        logger.info(
            f"{summary.succeeded}/{summary.total} wallets succeeded, "
            f"{summary.failed} failed"
        )
        return summary

    async def run_all(
        self, contexts: Sequence[WalletContext], *, concurrency: int | None = None
    ) -> RunSummary:
        async def _run(ctx: WalletContext) -> WalletOutcome:
            return _outcome(await self.orchestrator.run(ctx))

        return await self._gather(contexts, _run, concurrency)

    async def harvest_all(
        self, contexts: Sequence[WalletContext], *, concurrency: int | None = None
    ) -> RunSummary:
        async def _harvest(ctx: WalletContext) -> WalletOutcome:
            return _outcome(await self.orchestrator.harvest(ctx))

        return await self._gather(contexts, _harvest, concurrency)

    async def fund_hub(
        self, amount: Decimal, *, dry_run: bool = False
    ) -> ExecutionState:
        """Fund the distribution hub in one transfer before fanning out."""
        hub = self._hub()
        ctx = WalletContext(address=hub.address, dry_run=dry_run, fund_amount=amount)
        return await self.orchestrator.run(ctx, stop_after=Step.FUND_DONE)

    def _hub(self):
        key = self.services.settings.distribution.hub_private_key
        if not key:
            raise ConfigMissingError("distribution.hub_private_key is not configured")
        return self.services.wallets.register_private_key(key)

    async def distribute(
        self,
        recipients: Sequence[str],
        *,
        chain_id: int,
        token_address: str | None = None,
        dry_run: bool = False,
    ) -> DistributionResult:
        settings = self.services.settings
        cfg = settings.distribution
        chain = self.services.chain
        hub = self._hub()
        log = logger.bind(wallet=hub.address)

        balance = await chain.token_balance(chain_id, token_address, hub.address)
        plan = plan_with_gas_reserve(
            balance,
            recipients,
            cfg.gas_reserve_per_transfer,
            cfg.per_wallet_amount or None,
            randomize=cfg.randomize,
            variance_percent=cfg.variance_percent,
            min_amount=cfg.min_amount,
        )
        log.info(f"Distributing {sum(e.amount for e in plan)} to {len(plan)} wallets")

        async def _transfer(recipient: str, amount: int) -> str:
            tx = await build_send_transaction(
                chain,
                from_address=hub.address,
                to_address=recipient,
                token_address=token_address,
                chain_id=chain_id,
                amount=amount,
            )
            if dry_run or settings.dry_run:
                return dry_run_hash(hub.address, "distribute", recipient, amount)
            return await send_transaction(
                tx,
                chain=chain,
                wallets=self.services.wallets,
                receipt_timeout=settings.receipt_timeout_s,
                sleep=self.services.sleep,
            )

        return await execute_plan(
            plan,
            _transfer,
            batch_size=cfg.batch_size,
            inter_batch_delay_s=cfg.inter_batch_delay_s,
            sleep=self.services.sleep,
        )
