from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from crosschain_lp.core.constants.base import BRIDGE_HTTP_TIMEOUT
from crosschain_lp.core.errors import (
    InvalidParametersError,
    NetworkError,
    OperationTimeoutError,
    RateLimitError,
    RouteNotFoundError,
)
from crosschain_lp.core.utils.retry import (
    BRIDGE_POLICY,
    EndpointClass,
    RetryPolicy,
    Throttle,
    execute,
    extract_retry_after_s,
)

LIFI_API_BASE_URL = "https://li.quest/v1"
_NO_ROUTE_MARKERS = ("no available quotes", "no route", "no routes found")


class _LifiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BridgeEstimate(_LifiModel):
    from_amount: int = Field(0, alias="fromAmount")
    to_amount: int = Field(0, alias="toAmount")
    to_amount_min: int = Field(0, alias="toAmountMin")
    approval_address: str | None = Field(None, alias="approvalAddress")
    execution_duration: float | None = Field(None, alias="executionDuration")


class TransactionRequest(_LifiModel):
    to: str
    data: str
    value: int = 0
    gas_limit: int | None = Field(None, alias="gasLimit")
    chain_id: int | None = Field(None, alias="chainId")

    def to_tx(self, from_address: str, chain_id: int) -> dict[str, Any]:
        return {
            "chainId": int(self.chain_id or chain_id),
            "from": from_address,
            "to": self.to,
            "data": self.data,
            "value": int(self.value),
        }


class BridgeRoute(_LifiModel):
    id: str = ""
    tool: str = "lifi"
    estimate: BridgeEstimate
    transaction_request: TransactionRequest = Field(alias="transactionRequest")


class BridgeStatus(_LifiModel):
    status: str
    substatus: str | None = None
    receiving_tx_hash: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status in ("DONE", "RECEIVED")

    @property
    def is_failed(self) -> bool:
        return self.status in ("FAILED", "INVALID")


def _coerce_int(value: Any) -> Any:
    # Li.Fi returns hex strings for value/gasLimit and decimal strings for amounts
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return value


def _normalize_route(payload: dict[str, Any]) -> dict[str, Any]:
    data = dict(payload)
    tx_req = dict(data.get("transactionRequest") or {})
    if not tx_req:
        steps = data.get("steps") or []
        if steps and isinstance(steps[0], dict):
            tx_req = dict(steps[0].get("transactionRequest") or {})
    for key in ("value", "gasLimit", "chainId"):
        if key in tx_req:
            tx_req[key] = _coerce_int(tx_req[key])
    data["transactionRequest"] = tx_req
    if not data.get("tool"):
        steps = data.get("steps") or []
        data["tool"] = (steps[0].get("tool") if steps else None) or "lifi"
    return data


class LifiClient:
    """Quote and status client for the Li.Fi aggregator REST API."""

    def __init__(
        self,
        *,
        base_url: str = LIFI_API_BASE_URL,
        integrator: str | None = None,
        api_key: str | None = None,
        throttle: Throttle | None = None,
        policy: RetryPolicy = BRIDGE_POLICY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.integrator = integrator
        self.throttle = throttle
        self.policy = policy
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(BRIDGE_HTTP_TIMEOUT)
        )
        self.headers = {"accept": "application/json"}
        if api_key:
            self.headers["x-lifi-api-key"] = api_key

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug(f"Making {method} request to {url}")
        start_time = time.time()
        try:
            resp = await self.client.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise OperationTimeoutError(f"Li.Fi {path} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Li.Fi {path} transport error: {exc}") from exc

        elapsed = time.time() - start_time
        if resp.status_code >= 400:
            logger.warning(
                f"HTTP {resp.status_code} response for {method} {url} after {elapsed:.2f}s"
            )
            self._raise_for_status(resp, path)
        else:
            logger.debug(
                f"HTTP {resp.status_code} response for {method} {url} after {elapsed:.2f}s"
            )
        body = resp.json()
        if not isinstance(body, dict):
            raise NetworkError(f"Li.Fi {path} returned unexpected payload")
        return body

    @staticmethod
    def _raise_for_status(resp: httpx.Response, path: str) -> None:
        text = resp.text[:500]
        status = resp.status_code
        if status == 429:
            retry_after = extract_retry_after_s(
                httpx.HTTPStatusError("429", request=resp.request, response=resp)
            )
            raise RateLimitError(
                f"Li.Fi {path} rate limited", retry_after=retry_after
            )
        if status == 404 or any(m in text.lower() for m in _NO_ROUTE_MARKERS):
            raise RouteNotFoundError(f"Li.Fi {path}: no route ({status}): {text}")
        if status >= 500:
            raise NetworkError(f"Li.Fi {path} failed with HTTP {status}: {text}")
        raise InvalidParametersError(f"Li.Fi {path} rejected request ({status}): {text}")

    async def _call(self, label: str, method: str, path: str, **kwargs: Any) -> dict:
        async def _op() -> dict[str, Any]:
            return await self._request(method, path, **kwargs)

        return await execute(
            _op,
            self.policy,
            endpoint=EndpointClass.BRIDGE,
            throttle=self.throttle,
            label=label,
        )

    async def get_quote(
        self,
        *,
        from_chain: int,
        to_chain: int,
        from_token: str,
        to_token: str,
        from_amount: int,
        from_address: str,
        to_address: str | None = None,
        slippage: float | None = None,
    ) -> BridgeRoute:
        params: dict[str, Any] = {
            "fromChain": int(from_chain),
            "toChain": int(to_chain),
            "fromToken": from_token,
            "toToken": to_token,
            "fromAmount": str(int(from_amount)),
            "fromAddress": from_address,
            "toAddress": to_address or from_address,
        }
        if slippage is not None:
            params["slippage"] = slippage
        if self.integrator:
            params["integrator"] = self.integrator

        payload = await self._call("lifi quote", "GET", "/quote", params=params)
        try:
            route = BridgeRoute.model_validate(_normalize_route(payload))
        except ValidationError as exc:
            raise RouteNotFoundError(f"Li.Fi quote is missing a transaction: {exc}") from exc
        logger.info(
            f"Li.Fi quote via {route.tool}: {from_amount} -> {route.estimate.to_amount} "
            f"(min {route.estimate.to_amount_min})"
        )
        return route

    async def get_status(
        self,
        *,
        tx_hash: str,
        from_chain: int,
        to_chain: int,
        bridge: str | None = None,
    ) -> BridgeStatus:
        params: dict[str, Any] = {
            "txHash": tx_hash,
            "fromChain": int(from_chain),
            "toChain": int(to_chain),
        }
        if bridge:
            params["bridge"] = bridge
        try:
            payload = await self._call("lifi status", "GET", "/status", params=params)
        except RouteNotFoundError:
            # The status endpoint 404s until the source tx is indexed.
            return BridgeStatus(status="NOT_FOUND")
        receiving = payload.get("receiving") or {}
        return BridgeStatus(
            status=str(payload.get("status") or "PENDING").upper(),
            substatus=payload.get("substatus"),
            receiving_tx_hash=receiving.get("txHash") if isinstance(receiving, dict) else None,
        )
