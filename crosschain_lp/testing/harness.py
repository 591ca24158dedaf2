from __future__ import annotations

from dataclasses import dataclass

from eth_utils import to_checksum_address

from crosschain_lp.core.config import PipelineSettings
from crosschain_lp.core.wallets.directory import WalletDirectory
from crosschain_lp.pipeline.driver import MultiWalletDriver
from crosschain_lp.pipeline.orchestrator import StepOrchestrator
from crosschain_lp.pipeline.services import PipelineServices, WalletContext
from crosschain_lp.pipeline.state_store import StateStore
from crosschain_lp.testing.fakes import (
    FakeBridge,
    FakeChain,
    FakeClock,
    FakeDex,
)

TEST_MNEMONIC = "test test test test test test test test test test test junk"
SOURCE_CHAIN = 8453
DEX_CHAIN = 2741
TOKEN_A = to_checksum_address("0x" + "1a" * 20)
TOKEN_B = to_checksum_address("0x" + "2b" * 20)
BRIDGE_AMOUNT = 10**18
GAS_PRICE_WEI = 10


def make_settings(tmp_path, **overrides) -> PipelineSettings:
    data = {
        "wallet_mnemonic": TEST_MNEMONIC,
        "wallet_count": 3,
        "state_dir": str(tmp_path / "state"),
        "bridge": {
            "from_chain_id": SOURCE_CHAIN,
            "to_chain_id": DEX_CHAIN,
            "to_token": TOKEN_A,
            "amount": BRIDGE_AMOUNT,
            "timeout_s": 60,
            "poll_interval_s": 3,
        },
        "swap": {"token_in": TOKEN_A, "token_out": TOKEN_B, "swap_percent": 50},
        # A harvest costs 100 units at 10 wei, so fees must beat 2000 to be worth it.
        "liquidity": {"token0": TOKEN_A, "token1": TOKEN_B, "harvest_gas_units": 100},
        "distribution": {"inter_batch_delay_s": 1},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return PipelineSettings.model_validate(data)


@dataclass
class Harness:
    settings: PipelineSettings
    chain: FakeChain
    bridge: FakeBridge
    dex: FakeDex
    clock: FakeClock
    services: PipelineServices

    @property
    def orchestrator(self) -> StepOrchestrator:
        return StepOrchestrator(self.services)

    @property
    def driver(self) -> MultiWalletDriver:
        return MultiWalletDriver(self.services)

    def wallet(self, index: int = 0, **kwargs) -> WalletContext:
        record = self.services.wallets.derive(index)
        return WalletContext(
            address=record.address, derivation_index=index, **kwargs
        )

    def fund_source(self, ctx: WalletContext, amount: int = BRIDGE_AMOUNT) -> None:
        self.chain.set_balance(SOURCE_CHAIN, None, ctx.address, amount)


def make_harness(tmp_path, **overrides) -> Harness:
    settings = make_settings(tmp_path, **overrides)
    chain = FakeChain(gas_price_wei=GAS_PRICE_WEI)
    clock = FakeClock()
    services = PipelineServices(
        settings=settings,
        chain=chain,
        wallets=WalletDirectory(chain, seed=TEST_MNEMONIC),
        store=StateStore(settings.state_dir),
        bridge=FakeBridge(chain),
        dex=FakeDex(chain, chain_id=DEX_CHAIN, token_a=TOKEN_A, token_b=TOKEN_B),
        sleep=clock.sleep,
        clock=clock,
    )
    return Harness(
        settings=settings,
        chain=chain,
        bridge=services.bridge,
        dex=services.dex,
        clock=clock,
        services=services,
    )
