from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal

from loguru import logger

from crosschain_lp.adapters.ccxt_adapter.adapter import CCXTAdapter
from crosschain_lp.adapters.uniswap_adapter.adapter import UniswapV3Adapter
from crosschain_lp.core.clients.ChainClient import ChainClient
from crosschain_lp.core.clients.LifiClient import LifiClient
from crosschain_lp.core.clients.protocols import (
    BridgeClientProtocol,
    ChainClientProtocol,
    DexProtocol,
    ExchangeProtocol,
)
from crosschain_lp.core.config import FundingSource, PipelineSettings
from crosschain_lp.core.utils.retry import RetryPolicy, Throttle
from crosschain_lp.core.wallets.directory import WalletDirectory
from crosschain_lp.pipeline.liquidity import LiquidityEngine
from crosschain_lp.pipeline.state_store import StateStore

DRY_RUN_STATE_SUBDIR = "dry-run"


@dataclass
class PipelineServices:
    """Every collaborator the orchestrator and driver talk to."""

    settings: PipelineSettings
    chain: ChainClientProtocol
    wallets: WalletDirectory
    store: StateStore
    bridge: BridgeClientProtocol
    dex: DexProtocol
    exchange: ExchangeProtocol | None = None
    engine: LiquidityEngine | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if self.engine is None:
            self.engine = LiquidityEngine(self.settings.liquidity)

    async def close(self) -> None:
        for resource in (self.exchange, self.bridge):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as exc:
                logger.warning(f"Failed to close {type(resource).__name__}: {exc}")


@dataclass
class WalletContext:
    address: str
    derivation_index: int | None = None
    dry_run: bool = False
    retry_failed: bool = False
    # Overrides funding.amount, e.g. when funding a distribution hub.
    fund_amount: Decimal | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)


def _retry_policy(settings: PipelineSettings, **overrides) -> RetryPolicy:
    retry = settings.retry
    return RetryPolicy(
        max_attempts=retry.max_attempts,
        base_delay_s=retry.base_delay_s,
        max_delay_s=retry.max_delay_s,
        jitter_ratio=retry.jitter_ratio,
        **overrides,
    )


def state_dir_for(settings: PipelineSettings, *, dry_run: bool) -> str:
    # Dry runs never share records with real runs.
    if dry_run:
        return str(settings.state_dir / DRY_RUN_STATE_SUBDIR)
    return str(settings.state_dir)


def build_services(settings: PipelineSettings, *, dry_run: bool = False) -> PipelineServices:
    throttle = Throttle(settings.retry.min_interval_s)
    read_policy = _retry_policy(settings)
    chain = ChainClient(settings.rpc_urls, throttle=throttle, policy=read_policy)
    wallets = WalletDirectory(chain, seed=settings.wallet_mnemonic)

    bridge = LifiClient(
        base_url=settings.bridge.base_url,
        integrator=settings.bridge.integrator,
        api_key=settings.bridge.api_key,
        throttle=throttle,
        policy=_retry_policy(settings, max_delay_s=min(settings.retry.max_delay_s, 15.0)),
    )
    dex = UniswapV3Adapter(
        {
            "chain_id": settings.dex_chain_id,
            **settings.dex.model_dump(exclude={"chain_id"}, exclude_none=True),
        },
        chain=chain,
    )

    exchange = None
    if settings.funding.source == FundingSource.CEX:
        exchange = CCXTAdapter(
            exchange_id=settings.funding.exchange_id,
            options=settings.funding.exchange_options,
            throttle=throttle,
            read_policy=read_policy,
            write_policy=_retry_policy(settings, retry_unclassified=False),
        )

    return PipelineServices(
        settings=settings,
        chain=chain,
        wallets=wallets,
        store=StateStore(state_dir_for(settings, dry_run=dry_run)),
        bridge=bridge,
        dex=dex,
        exchange=exchange,
    )
