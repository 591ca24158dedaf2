from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from crosschain_lp.core.config import FundingSource
from crosschain_lp.core.errors import StateCorruptedError
from crosschain_lp.pipeline.state_store import StateStore
from crosschain_lp.pipeline.steps import Step
from crosschain_lp.pipeline.types import BridgeResult, FundResult

ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


@pytest.mark.asyncio
async def test_load_or_create_persists_fresh_state(tmp_path: Path):
    store = StateStore(tmp_path)

    state = await store.load_or_create(ADDRESS, derivation_index=0)

    assert state.current_step == Step.IDLE
    path = store.path_for(ADDRESS)
    assert path.name == f"orchestrator-{ADDRESS.lower()}.json"
    on_disk = json.loads(path.read_text())
    assert on_disk["wallet_address"] == ADDRESS
    assert on_disk["current_step"] == "idle"


@pytest.mark.asyncio
async def test_save_and_reload_round_trips_snapshots(tmp_path: Path):
    store = StateStore(tmp_path)
    state = await store.load_or_create(ADDRESS)
    state.current_step = Step.BRIDGE_PENDING
    state.results.fund = FundResult(source=FundingSource.NONE, amount=5)
    state.results.bridge = BridgeResult(tx_hash="0xabc", from_amount=5)
    await store.save(state)

    reloaded = await StateStore(tmp_path).load(ADDRESS.lower())

    assert reloaded is not None
    assert reloaded.current_step == Step.BRIDGE_PENDING
    assert reloaded.results.bridge.tx_hash == "0xabc"
    assert reloaded.updated_at >= reloaded.created_at


@pytest.mark.asyncio
async def test_update_serializes_concurrent_writers(tmp_path: Path):
    store = StateStore(tmp_path)
    await store.load_or_create(ADDRESS)

    async def bump(state):
        await asyncio.sleep(0)
        state.derivation_index = (state.derivation_index or 0) + 1

    await asyncio.gather(*[store.update(ADDRESS, bump) for _ in range(20)])

    final = await store.load(ADDRESS)
    assert final.derivation_index == 20


@pytest.mark.asyncio
async def test_reset_deletes_record(tmp_path: Path):
    store = StateStore(tmp_path)
    await store.load_or_create(ADDRESS)

    assert await store.reset(ADDRESS) is True
    assert await store.load(ADDRESS) is None
    assert await store.reset(ADDRESS) is False


@pytest.mark.asyncio
async def test_write_leaves_no_temp_files(tmp_path: Path):
    store = StateStore(tmp_path)
    state = await store.load_or_create(ADDRESS)
    for _ in range(3):
        await store.save(state)

    assert [p.name for p in tmp_path.iterdir()] == [store.path_for(ADDRESS).name]


@pytest.mark.asyncio
async def test_corrupted_record_is_reported_not_replaced(tmp_path: Path):
    store = StateStore(tmp_path)
    store.path_for(ADDRESS).write_text("{not json")

    with pytest.raises(StateCorruptedError):
        await store.load_or_create(ADDRESS)
    assert store.path_for(ADDRESS).read_text() == "{not json"


@pytest.mark.asyncio
async def test_list_states_skips_corrupted(tmp_path: Path):
    store = StateStore(tmp_path)
    await store.load_or_create(ADDRESS)
    (tmp_path / "orchestrator-0xdead.json").write_text("[]")

    states = store.list_states()

    assert [s.wallet_address for s in states] == [ADDRESS]
