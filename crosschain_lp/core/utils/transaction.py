import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from eth_utils import keccak, to_checksum_address
from loguru import logger

from crosschain_lp.core.errors import (
    InvalidParametersError,
    NetworkError,
    OperationTimeoutError,
    PipelineError,
    RateLimitError,
    StaleNonceError,
)
from crosschain_lp.core.utils.retry import exponential_backoff_s
from crosschain_lp.core.utils.web3 import get_transaction_chain_id

if TYPE_CHECKING:
    from crosschain_lp.core.clients.protocols import ChainClientProtocol
    from crosschain_lp.core.wallets.directory import WalletDirectory

NONCE_ATTEMPTS = 3
BROADCAST_ATTEMPTS = 3
_TRANSIENT_BROADCAST_ERRORS = (NetworkError, RateLimitError, OperationTimeoutError)


def _get_transaction_from_address(transaction: dict) -> str:
    if "from" not in transaction:
        raise InvalidParametersError("Transaction does not contain from address")
    return to_checksum_address(transaction["from"])


def signed_transaction_hash(signed_transaction: bytes) -> str:
    return f"0x{keccak(signed_transaction).hex()}"


async def prepare_transaction(
    transaction: dict,
    *,
    chain: "ChainClientProtocol",
    wallets: "WalletDirectory",
) -> dict:
    """Fill gas limit, fee fields and nonce, in that order.

    The nonce is allocated last; nothing after it can fail and strand it.
    """
    transaction = transaction.copy()
    chain_id = get_transaction_chain_id(transaction)
    sender = _get_transaction_from_address(transaction)

    transaction["gas"] = await chain.estimate_gas_limit(transaction)
    transaction.update(await chain.gas_price_fields(chain_id))
    transaction["nonce"] = await wallets.allocate_nonce(sender, chain_id)
    return transaction


async def _broadcast_signed(
    chain: "ChainClientProtocol",
    chain_id: int,
    signed_transaction: bytes,
    txn_hash: str,
    sleep: Callable[[float], Awaitable[None]],
) -> None:
    # Rebroadcasting the same signed bytes can never create a second transaction.
    for attempt in range(BROADCAST_ATTEMPTS):
        try:
            await chain.broadcast(chain_id, signed_transaction)
            return
        except StaleNonceError as exc:
            if "already known" in str(exc).lower():
                logger.info(f"Transaction {txn_hash} already in mempool")
                return
            raise
        except _TRANSIENT_BROADCAST_ERRORS as exc:
            if attempt >= BROADCAST_ATTEMPTS - 1:
                raise
            delay_s = exponential_backoff_s(attempt, base_delay_s=0.5, max_delay_s=5.0)
            logger.warning(
                f"Broadcast of {txn_hash} failed ({exc}); rebroadcasting in {delay_s:.2f}s"
            )
            await sleep(delay_s)


async def _resync_nonce(wallets: "WalletDirectory", sender: str, chain_id: int) -> None:
    try:
        await wallets.reset_nonce(sender, chain_id)
    except PipelineError as exc:
        logger.error(f"Nonce resync failed for {sender} on {chain_id}: {exc}")


async def send_transaction(
    transaction: dict,
    *,
    chain: "ChainClientProtocol",
    wallets: "WalletDirectory",
    wait_for_receipt: bool = True,
    receipt_timeout: float = 180,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Sign with the sender's key from ``wallets`` and broadcast.

    A nonce rejection resyncs the sender's cache from chain and retries with a
    fresh nonce; any other broadcast failure resyncs and propagates.
    """
    chain_id = get_transaction_chain_id(transaction)
    sender = _get_transaction_from_address(transaction)
    sign_callback = wallets.signer(sender)

    logger.info(f"Broadcasting transaction {_describe(transaction)}...")
    txn_hash = ""
    for nonce_attempt in range(NONCE_ATTEMPTS):
        prepared = await prepare_transaction(transaction, chain=chain, wallets=wallets)
        try:
            signed_transaction = await sign_callback(prepared)
            txn_hash = signed_transaction_hash(signed_transaction)
            await _broadcast_signed(chain, chain_id, signed_transaction, txn_hash, sleep)
        except StaleNonceError as exc:
            await _resync_nonce(wallets, sender, chain_id)
            if nonce_attempt >= NONCE_ATTEMPTS - 1:
                raise
            logger.warning(f"Nonce {prepared['nonce']} rejected ({exc}); retrying")
            continue
        except Exception:
            await _resync_nonce(wallets, sender, chain_id)
            raise
        break

    logger.info(f"Transaction broadcasted: {txn_hash}")
    if wait_for_receipt:
        await chain.wait_for_receipt(chain_id, txn_hash, timeout=receipt_timeout)
    return txn_hash


def _describe(transaction: dict[str, Any]) -> str:
    data = str(transaction.get("data") or "")
    selector = data[:10] if data else "transfer"
    return (
        f"chain={transaction.get('chainId')} from={transaction.get('from')} "
        f"to={transaction.get('to')} value={transaction.get('value', 0)} call={selector}"
    )
