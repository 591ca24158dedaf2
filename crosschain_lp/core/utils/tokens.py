from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from eth_utils import to_checksum_address
from loguru import logger

from crosschain_lp.core.constants.base import MAX_UINT256, NATIVE_TOKEN_ADDRESSES
from crosschain_lp.core.constants.contracts import TOKENS_REQUIRING_APPROVAL_RESET
from crosschain_lp.core.constants.erc20_abi import ERC20_ABI

if TYPE_CHECKING:
    from crosschain_lp.core.clients.protocols import ChainClientProtocol


def is_native_token(token_address: str | None) -> bool:
    if token_address is None:
        return True
    normalized = str(token_address).strip().lower()
    if normalized in ("", "native"):
        return True
    return normalized in NATIVE_TOKEN_ADDRESSES


async def build_approve_transaction(
    chain: "ChainClientProtocol",
    *,
    from_address: str,
    chain_id: int,
    token_address: str,
    spender_address: str,
    amount: int,
) -> dict:
    return await chain.encode_call(
        target=token_address,
        abi=ERC20_ABI,
        fn_name="approve",
        args=[to_checksum_address(spender_address), int(amount)],
        from_address=from_address,
        chain_id=chain_id,
    )


async def build_send_transaction(
    chain: "ChainClientProtocol",
    *,
    from_address: str,
    to_address: str,
    token_address: str | None,
    chain_id: int,
    amount: int,
) -> dict:
    if is_native_token(token_address):
        return {
            "to": to_checksum_address(to_address),
            "from": to_checksum_address(from_address),
            "value": int(amount),
            "chainId": int(chain_id),
        }
    return await chain.encode_call(
        target=str(token_address),
        abi=ERC20_ABI,
        fn_name="transfer",
        args=[to_checksum_address(to_address), int(amount)],
        from_address=from_address,
        chain_id=chain_id,
    )


async def ensure_allowance(
    chain: "ChainClientProtocol",
    *,
    token_address: str,
    owner: str,
    spender: str,
    amount: int,
    chain_id: int,
    send: Callable[[dict], Awaitable[str]],
    approval_amount: int | None = MAX_UINT256,
) -> str | None:
    """Approve ``spender`` when the current allowance is below ``amount``.

    Returns the approval hash, or None when no approval was needed. ``send``
    must wait for the approval to confirm before returning.
    """
    if is_native_token(token_address):
        return None

    allowance = await chain.token_allowance(chain_id, token_address, owner, spender)
    if allowance >= amount:
        return None

    if (
        int(chain_id),
        to_checksum_address(token_address),
    ) in TOKENS_REQUIRING_APPROVAL_RESET and allowance > 0:
        clear_transaction = await build_approve_transaction(
            chain,
            from_address=owner,
            chain_id=chain_id,
            token_address=token_address,
            spender_address=spender,
            amount=0,
        )
        await send(clear_transaction)

    approve_tx = await build_approve_transaction(
        chain,
        from_address=owner,
        chain_id=chain_id,
        token_address=token_address,
        spender_address=spender,
        amount=approval_amount if approval_amount is not None else amount,
    )
    logger.info(f"Approving {spender} to spend {token_address} for {owner}")
    return await send(approve_tx)
