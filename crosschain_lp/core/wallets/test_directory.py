from __future__ import annotations

import asyncio

import pytest

from crosschain_lp.core.errors import NetworkError, WalletNotFoundError
from crosschain_lp.core.wallets.directory import WalletDirectory, derive_wallet

MNEMONIC = "test test test test test test test test test test test junk"
CHAIN_ID = 8453


class _NonceSource:
    def __init__(self, pending: int = 0) -> None:
        self.pending = pending
        self.calls = 0
        self.fail = False

    async def get_pending_nonce(self, chain_id: int, address: str) -> int:
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise ConnectionError("rpc down")
        return self.pending


def test_derive_wallet_is_deterministic():
    a = derive_wallet(MNEMONIC, 0)
    b = derive_wallet(MNEMONIC, 0)
    c = derive_wallet(MNEMONIC, 1)

    assert a.address == b.address
    assert a.address.lower() == "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
    assert c.address.lower() == "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
    assert a.derivation_index == 0 and c.derivation_index == 1


def test_private_key_is_hidden_from_repr():
    record = derive_wallet(MNEMONIC, 0)
    assert record.private_key not in repr(record)


def test_derive_many_and_lookup():
    directory = WalletDirectory(seed=MNEMONIC)
    records = directory.derive_many(3)

    assert len(directory) == 3
    assert [r.derivation_index for r in records] == [0, 1, 2]
    assert directory.get(records[1].address.lower()) is records[1]
    assert directory.by_index(2) is records[2]

    with pytest.raises(WalletNotFoundError):
        directory.get("0x0000000000000000000000000000000000000001")


def test_derive_without_seed_fails():
    with pytest.raises(WalletNotFoundError):
        WalletDirectory().derive(0)


@pytest.mark.asyncio
async def test_concurrent_allocations_yield_contiguous_nonces():
    source = _NonceSource(pending=7)
    directory = WalletDirectory(source, seed=MNEMONIC)
    address = directory.derive(0).address

    nonces = await asyncio.gather(
        *[directory.allocate_nonce(address, CHAIN_ID) for _ in range(10)]
    )

    assert sorted(nonces) == list(range(7, 17))
    assert len(set(nonces)) == 10


@pytest.mark.asyncio
async def test_allocation_prefers_chain_when_ahead_of_cache():
    source = _NonceSource(pending=3)
    directory = WalletDirectory(source, seed=MNEMONIC)
    address = directory.derive(0).address

    assert await directory.allocate_nonce(address, CHAIN_ID) == 3
    source.pending = 10
    assert await directory.allocate_nonce(address, CHAIN_ID) == 10
    assert await directory.allocate_nonce(address, CHAIN_ID) == 11


@pytest.mark.asyncio
async def test_chain_failure_raises_network_error_and_keeps_cache():
    source = _NonceSource(pending=5)
    directory = WalletDirectory(source, seed=MNEMONIC)
    record = directory.derive(0)

    assert await directory.allocate_nonce(record.address, CHAIN_ID) == 5
    source.fail = True
    with pytest.raises(NetworkError):
        await directory.allocate_nonce(record.address, CHAIN_ID)

    assert record.next_nonce[CHAIN_ID] == 6


@pytest.mark.asyncio
async def test_reset_nonce_resyncs_from_chain():
    source = _NonceSource(pending=0)
    directory = WalletDirectory(source, seed=MNEMONIC)
    address = directory.derive(0).address

    for _ in range(4):
        await directory.allocate_nonce(address, CHAIN_ID)
    assert directory.get(address).next_nonce[CHAIN_ID] == 4

    source.pending = 2
    assert await directory.reset_nonce(address, CHAIN_ID) == 2
    assert await directory.allocate_nonce(address, CHAIN_ID) == 2


@pytest.mark.asyncio
async def test_nonce_caches_are_per_chain_and_per_address():
    source = _NonceSource(pending=0)
    directory = WalletDirectory(source, seed=MNEMONIC)
    a, b = (r.address for r in directory.derive_many(2))

    assert await directory.allocate_nonce(a, 1) == 0
    assert await directory.allocate_nonce(a, 1) == 1
    assert await directory.allocate_nonce(a, 2741) == 0
    assert await directory.allocate_nonce(b, 1) == 0


@pytest.mark.asyncio
async def test_signer_produces_raw_transaction():
    directory = WalletDirectory(seed=MNEMONIC)
    address = directory.derive(0).address
    sign = directory.signer(address)

    raw = await sign(
        {
            "chainId": CHAIN_ID,
            "to": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
            "value": 1,
            "gas": 21000,
            "maxFeePerGas": 2_000_000_000,
            "maxPriorityFeePerGas": 1_000_000_000,
            "nonce": 0,
            "data": "0x",
        }
    )
    assert isinstance(raw, bytes) and len(raw) > 0
