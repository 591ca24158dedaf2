from contextlib import asynccontextmanager
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from crosschain_lp.core.config import get_rpc_urls
from crosschain_lp.core.constants.chains import POA_MIDDLEWARE_CHAIN_IDS
from crosschain_lp.core.errors import (
    ConfigMissingError,
    InsufficientFundsError,
    InvalidParametersError,
    NetworkError,
    OperationTimeoutError,
    PipelineError,
    RateLimitError,
    StaleNonceError,
)
from crosschain_lp.core.utils.retry import _extract_http_status, extract_retry_after_s

_RATE_LIMIT_HTTP_STATUS = 429
_RATE_LIMIT_RPC_ERROR_CODES = {429, -32005, -33200, -33300, -33400}
_RATE_LIMIT_MESSAGE_MARKERS = (
    "too many requests",
    "rate limit",
    "request rate exceeded",
    "limit exceeded",
    "compute units per second",
    "concurrent requests",
)
STALE_NONCE_MARKERS = (
    "nonce too low",
    "already known",
    "replacement transaction underpriced",
    "replacement underpriced",
    "nonce has already been used",
)
_INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient balance",
)
_NETWORK_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "econnreset",
    "socket hang up",
    "temporarily unavailable",
    "bad gateway",
    "service unavailable",
)


def _rpc_error_code(exc: BaseException) -> int | None:
    # web3 raises Web3RPCError with the JSON-RPC error dict as args[0]
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict) and isinstance(arg.get("code"), int):
            return arg["code"]
    rpc_response = getattr(exc, "rpc_response", None)
    if isinstance(rpc_response, dict):
        error = rpc_response.get("error")
        if isinstance(error, dict) and isinstance(error.get("code"), int):
            return error["code"]
    return None


def translate_rpc_error(exc: BaseException, *, context: str = "RPC call") -> Exception:
    """Map a web3/aiohttp failure onto the pipeline error taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, TimeExhausted):
        return OperationTimeoutError(f"{context} timed out: {exc}")

    text = str(exc).lower()
    status = _extract_http_status(exc)
    if (
        status == _RATE_LIMIT_HTTP_STATUS
        or _rpc_error_code(exc) in _RATE_LIMIT_RPC_ERROR_CODES
        or any(marker in text for marker in _RATE_LIMIT_MESSAGE_MARKERS)
    ):
        return RateLimitError(
            f"{context} rate limited: {exc}", retry_after=extract_retry_after_s(exc)
        )
    if any(marker in text for marker in STALE_NONCE_MARKERS):
        return StaleNonceError(f"{context} rejected nonce: {exc}")
    if any(marker in text for marker in _INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFundsError(f"{context} failed: {exc}")
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return NetworkError(f"{context} failed: {exc}")
    if status is not None and status >= 500:
        return NetworkError(f"{context} failed with HTTP {status}: {exc}")
    if any(marker in text for marker in _NETWORK_MESSAGE_MARKERS):
        return NetworkError(f"{context} failed: {exc}")
    if isinstance(exc, (ValueError, TypeError)) and "revert" not in text:
        return InvalidParametersError(f"{context} rejected: {exc}")
    return exc if isinstance(exc, Exception) else NetworkError(str(exc))


def _get_rpcs_for_chain_id(
    chain_id: int, rpc_urls: dict[Any, Any] | None = None
) -> list[str]:
    mapping = rpc_urls if rpc_urls is not None else get_rpc_urls()
    rpcs = mapping.get(str(chain_id))
    if rpcs is None:
        rpcs = mapping.get(int(chain_id))  # allow int keys
    if not rpcs:
        raise ConfigMissingError(f"No RPCs configured for chain ID {chain_id}")
    if isinstance(rpcs, str):
        return [rpcs]
    return list(rpcs)


def _get_web3(rpc: str, chain_id: int) -> AsyncWeb3:
    provider = AsyncHTTPProvider(
        rpc, request_kwargs={"headers": AsyncHTTPProvider.get_request_headers()}
    )
    web3 = AsyncWeb3(provider)
    if chain_id in POA_MIDDLEWARE_CHAIN_IDS:
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


def get_transaction_chain_id(transaction: dict) -> int:
    if "chainId" not in transaction:
        raise InvalidParametersError("Transaction does not contain chainId")
    return int(transaction["chainId"])


def get_web3s_from_chain_id(
    chain_id: int, rpc_urls: dict[Any, Any] | None = None
) -> list[AsyncWeb3]:
    rpcs = _get_rpcs_for_chain_id(chain_id, rpc_urls)
    return [_get_web3(rpc, chain_id) for rpc in rpcs]


@asynccontextmanager
async def web3s_from_chain_id(chain_id: int, rpc_urls: dict[Any, Any] | None = None):
    web3s = get_web3s_from_chain_id(chain_id, rpc_urls)
    try:
        yield web3s
    finally:
        for web3 in web3s:
            await web3.provider.disconnect()


@asynccontextmanager
async def web3_from_chain_id(chain_id: int, rpc_urls: dict[Any, Any] | None = None):
    web3s = get_web3s_from_chain_id(chain_id, rpc_urls)
    try:
        yield web3s[0]
    finally:
        await web3s[0].provider.disconnect()
