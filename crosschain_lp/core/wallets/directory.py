"""Deterministic wallet set with per-address nonce allocation.

Every wallet the pipeline drives is derived from one mnemonic at
``m/44'/60'/0'/0/{index}``. Hub and funder wallets that are not derived can be
registered from a raw private key.

Nonces are allocated under a per-address ``asyncio.Lock``: the allocator takes
``max(chain pending count, cached next nonce)``, bumps the cache and hands out
the prior value, so concurrent senders for one address never collide while
different addresses never wait on each other.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from eth_account import Account
from loguru import logger

from crosschain_lp.core.errors import NetworkError, WalletNotFoundError
from crosschain_lp.core.utils.wallets import (
    make_wallet_from_mnemonic,
    make_wallet_from_private_key,
)


class NonceSource(Protocol):
    async def get_pending_nonce(self, chain_id: int, address: str) -> int: ...


@dataclass
class WalletRecord:
    address: str
    derivation_index: int | None
    private_key: str = field(repr=False)
    next_nonce: dict[int, int] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


def derive_wallet(seed: str, index: int) -> WalletRecord:
    wallet = make_wallet_from_mnemonic(seed, account_index=index)
    return WalletRecord(
        address=wallet["address"],
        derivation_index=wallet["derivation_index"],
        private_key=wallet["private_key_hex"],
    )


class WalletDirectory:
    def __init__(
        self,
        nonce_source: NonceSource | None = None,
        *,
        seed: str | None = None,
    ) -> None:
        self.nonce_source = nonce_source
        self._seed = seed
        self._wallets: dict[str, WalletRecord] = {}

    def __contains__(self, address: str) -> bool:
        return str(address).lower() in self._wallets

    def __len__(self) -> int:
        return len(self._wallets)

    def _register(self, record: WalletRecord) -> WalletRecord:
        key = record.address.lower()
        existing = self._wallets.get(key)
        if existing is not None:
            return existing
        self._wallets[key] = record
        return record

    def derive(self, index: int) -> WalletRecord:
        if not self._seed:
            raise WalletNotFoundError("No mnemonic configured for wallet derivation")
        return self._register(derive_wallet(self._seed, index))

    def derive_many(self, count: int, *, start: int = 0) -> list[WalletRecord]:
        return [self.derive(i) for i in range(int(start), int(start) + int(count))]

    def register_private_key(self, private_key: str) -> WalletRecord:
        wallet = make_wallet_from_private_key(private_key)
        return self._register(
            WalletRecord(
                address=wallet["address"],
                derivation_index=None,
                private_key=wallet["private_key_hex"],
            )
        )

    def get(self, address: str) -> WalletRecord:
        record = self._wallets.get(str(address).lower())
        if record is None:
            raise WalletNotFoundError(f"Unknown wallet {address}")
        return record

    def addresses(self) -> list[str]:
        return [w.address for w in self._wallets.values()]

    def by_index(self, index: int) -> WalletRecord:
        for record in self._wallets.values():
            if record.derivation_index == int(index):
                return record
        return self.derive(index)

    async def _chain_nonce(self, chain_id: int, address: str) -> int:
        if self.nonce_source is None:
            raise NetworkError("No chain client attached for nonce queries")
        try:
            return int(await self.nonce_source.get_pending_nonce(chain_id, address))
        except NetworkError:
            raise
        except Exception as exc:
            raise NetworkError(
                f"Failed to read pending nonce for {address} on chain {chain_id}: {exc}"
            ) from exc

    async def allocate_nonce(self, address: str, chain_id: int) -> int:
        record = self.get(address)
        async with record.lock:
            chain_nonce = await self._chain_nonce(chain_id, record.address)
            cached = record.next_nonce.get(int(chain_id))
            nonce = max(chain_nonce, cached) if cached is not None else chain_nonce
            record.next_nonce[int(chain_id)] = nonce + 1
        logger.debug(f"Allocated nonce {nonce} for {record.address} on {chain_id}")
        return nonce

    async def reset_nonce(self, address: str, chain_id: int) -> int:
        record = self.get(address)
        async with record.lock:
            chain_nonce = await self._chain_nonce(chain_id, record.address)
            record.next_nonce[int(chain_id)] = chain_nonce
        logger.info(
            f"Resynced nonce cache for {record.address} on {chain_id} to {chain_nonce}"
        )
        return chain_nonce

    def signer(self, address: str) -> Callable[[dict], Awaitable[bytes]]:
        account = Account.from_key(self.get(address).private_key)

        async def sign_callback(tx: dict) -> bytes:
            signed = account.sign_transaction(tx)
            return signed.raw_transaction

        return sign_callback
