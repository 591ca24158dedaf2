from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

import httpx
from loguru import logger

from crosschain_lp.core.errors import PipelineError, RateLimitError

T = TypeVar("T")

_RATE_LIMIT_HTTP_STATUS = 429
_RATE_LIMIT_MESSAGE_MARKERS = (
    "too many requests",
    "rate limit",
    "request rate exceeded",
    "limit exceeded",
)
_RETRYABLE_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "socket hang up",
    "temporarily unavailable",
)
_FATAL_MESSAGE_MARKERS = (
    "insufficient funds",
    "execution reverted",
    "invalid argument",
    "invalid address",
    "not whitelisted",
)


class ErrorClass(StrEnum):
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"
    UNCLASSIFIED = "UNCLASSIFIED"


class EndpointClass(StrEnum):
    RPC = "rpc"
    BRIDGE = "bridge"
    CEX = "cex"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_ratio: float = 0.2
    # Unclassified errors from a mutating call might mean "sent but unseen".
    retry_unclassified: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


READ_POLICY = RetryPolicy()
WRITE_POLICY = RetryPolicy(retry_unclassified=False)
BRIDGE_POLICY = RetryPolicy(max_attempts=5, base_delay_s=1.0, max_delay_s=15.0)


def exponential_backoff_s(
    attempt: int, *, base_delay_s: float = 0.25, max_delay_s: float | None = None
) -> float:
    delay_s = base_delay_s * (2**attempt)
    if max_delay_s is not None:
        delay_s = min(delay_s, max_delay_s)
    return delay_s


def _extract_http_status(exc: BaseException) -> int | None:
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    if isinstance(exc, RateLimitError) and exc.retry_after:
        return float(exc.retry_after)
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if not headers:
        return None
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        parsed = float(value)
        return parsed if parsed > 0 else None
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, PipelineError):
        return ErrorClass.RETRYABLE if exc.retryable else ErrorClass.FATAL
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError)):
        return ErrorClass.RETRYABLE

    status = _extract_http_status(exc)
    if status is not None:
        if status == _RATE_LIMIT_HTTP_STATUS or status >= 500:
            return ErrorClass.RETRYABLE
        if 400 <= status < 500:
            return ErrorClass.FATAL

    text = str(exc).lower()
    if any(marker in text for marker in _FATAL_MESSAGE_MARKERS):
        return ErrorClass.FATAL
    if any(marker in text for marker in _RATE_LIMIT_MESSAGE_MARKERS):
        return ErrorClass.RETRYABLE
    if any(marker in text for marker in _RETRYABLE_MESSAGE_MARKERS):
        return ErrorClass.RETRYABLE
    return ErrorClass.UNCLASSIFIED


def compute_delay_s(
    attempt: int, exc: BaseException, policy: RetryPolicy, *, rng: random.Random | None = None
) -> float:
    retry_after = extract_retry_after_s(exc)
    if retry_after is not None:
        return retry_after
    delay_s = exponential_backoff_s(
        attempt, base_delay_s=policy.base_delay_s, max_delay_s=policy.max_delay_s
    )
    if policy.jitter_ratio > 0:
        jitter = (rng or random).uniform(0, delay_s * policy.jitter_ratio)
        delay_s = min(delay_s + jitter, policy.max_delay_s)
    return delay_s


class Throttle:
    """Minimum spacing between calls per endpoint class, shared by all wallets."""

    def __init__(
        self,
        min_interval_s: dict[str, float] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval_s = dict(min_interval_s or {})
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_call: dict[str, float] = {}

    def _lock(self, endpoint: str) -> asyncio.Lock:
        lock = self._locks.get(endpoint)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[endpoint] = lock
        return lock

    async def wait(self, endpoint: str) -> None:
        spacing = self.min_interval_s.get(str(endpoint), 0.0)
        if spacing <= 0:
            return
        async with self._lock(str(endpoint)):
            last = self._last_call.get(str(endpoint))
            if last is not None:
                remaining = last + spacing - self._clock()
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_call[str(endpoint)] = self._clock()


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = READ_POLICY,
    *,
    endpoint: str | None = None,
    throttle: Throttle | None = None,
    label: str | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    name = label or getattr(operation, "__name__", "operation")

    for attempt in range(policy.max_attempts):
        if throttle is not None and endpoint is not None:
            await throttle.wait(endpoint)
        try:
            return await operation()
        except Exception as exc:
            kind = classify_error(exc)
            if kind == ErrorClass.FATAL:
                raise
            if kind == ErrorClass.UNCLASSIFIED and not policy.retry_unclassified:
                raise
            if attempt >= policy.max_attempts - 1:
                raise

            delay_s = compute_delay_s(attempt, exc, policy)
            logger.warning(
                f"{name} failed (attempt {attempt + 1}/{policy.max_attempts}): "
                f"{exc}; retrying in {delay_s:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay_s)
            await sleep(delay_s)

    raise RuntimeError("execute exhausted retries")
