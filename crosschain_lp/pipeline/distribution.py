"""Split a pooled balance across many wallets and push it out in batches."""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Awaitable, Callable, Sequence

from loguru import logger

from crosschain_lp.core.errors import InsufficientFundsError, InvalidParametersError
from crosschain_lp.pipeline.types import DistributionResult, PlanEntry

# Above this many leftover units the one-unit-at-a-time walk is replaced by a
# weighted split with the same expected shape.
_UNIT_WALK_LIMIT = 100_000


def compute_random_parts(
    total: int, n: int, min_each: int = 0, *, rng: random.Random | None = None
) -> list[int]:
    total, n, min_each = int(total), int(n), int(min_each)
    if n <= 0:
        raise InvalidParametersError("n must be positive")
    if total < 0 or min_each < 0:
        raise InvalidParametersError("total and min_each must be non-negative")
    if n * min_each > total:
        raise InvalidParametersError(
            f"Cannot give {n} parts at least {min_each} each from {total}"
        )

    rng = rng or random.Random()
    parts = [min_each] * n
    remainder = total - n * min_each

    if remainder > _UNIT_WALK_LIMIT:
        weights = [rng.random() for _ in range(n)]
        weight_sum = sum(weights) or 1.0
        shares = [int(remainder * w / weight_sum) for w in weights]
        for i, share in enumerate(shares):
            parts[i] += share
        remainder -= sum(shares)

    for _ in range(remainder):
        parts[rng.randrange(n)] += 1

    return parts


def _rescale(amounts: list[int], budget: int, floor: int) -> list[int]:
    current = sum(amounts)
    if current <= budget:
        return amounts
    scaled = [max(floor, (a * budget) // current) for a in amounts]
    # Flooring can still overshoot when many entries hit ``floor``.
    overshoot = sum(scaled) - budget
    i = 0
    while overshoot > 0 and i < len(scaled):
        take = min(overshoot, scaled[i] - floor)
        scaled[i] -= take
        overshoot -= take
        i += 1
    return scaled


def create_plan(
    balance: int,
    recipients: Sequence[str],
    per_recipient_target: int | None = None,
    *,
    randomize: bool = False,
    variance_percent: float = 0.0,
    min_amount: int = 0,
    rng: random.Random | None = None,
) -> list[PlanEntry]:
    """Plan transfers summing exactly to ``balance``.

    Every entry except the last is ``per_recipient_target`` (or a draw within
    ``±variance_percent`` of it when randomized); the last entry absorbs the
    remainder. Targets that would overrun ``balance`` are scaled down first.
    """
    balance = int(balance)
    n = len(recipients)
    if n == 0:
        raise InvalidParametersError("No recipients to distribute to")
    if balance < 0:
        raise InvalidParametersError("balance must be non-negative")
    if n * int(min_amount) > balance:
        raise InsufficientFundsError(
            f"Balance {balance} cannot cover {n} transfers of at least {min_amount}"
        )

    target = int(per_recipient_target) if per_recipient_target else balance // n
    if target * n > balance:
        target = balance // n
    target = max(target, int(min_amount))

    head = n - 1
    if randomize and head > 0:
        variance = max(0.0, float(variance_percent)) / 100
        lo = max(int(min_amount), math.ceil(target * (1 - variance)))
        hi = max(lo, math.floor(target * (1 + variance)))
        rng = rng or random.Random()
        amounts = [rng.randint(lo, hi) for _ in range(head)]
    else:
        amounts = [target] * head

    amounts = _rescale(amounts, balance - int(min_amount), int(min_amount))
    amounts.append(balance - sum(amounts))

    return [PlanEntry(recipient=r, amount=a) for r, a in zip(recipients, amounts)]


def plan_with_gas_reserve(
    balance: int,
    recipients: Sequence[str],
    gas_cost_per_transfer: int,
    per_recipient_target: int | None = None,
    **kwargs,
) -> list[PlanEntry]:
    reserve = int(gas_cost_per_transfer) * len(recipients)
    distributable = int(balance) - reserve
    if distributable <= 0:
        raise InsufficientFundsError(
            f"Balance {balance} does not cover gas reserve {reserve} "
            f"for {len(recipients)} transfers"
        )
    if per_recipient_target:
        distributable = min(distributable, int(per_recipient_target) * len(recipients))
    return create_plan(distributable, recipients, per_recipient_target, **kwargs)


TransferFn = Callable[[str, int], Awaitable[str]]


async def execute_plan(
    plan: Sequence[PlanEntry],
    transfer: TransferFn,
    *,
    batch_size: int = 10,
    inter_batch_delay_s: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> DistributionResult:
    if batch_size < 1:
        raise InvalidParametersError("batch_size must be >= 1")

    result = DistributionResult()
    batches = [plan[i : i + batch_size] for i in range(0, len(plan), batch_size)]

    for idx, batch in enumerate(batches):
        logger.info(
            f"Distribution batch {idx + 1}/{len(batches)} ({len(batch)} transfers)"
        )
        outcomes = await asyncio.gather(
            *[transfer(entry.recipient, entry.amount) for entry in batch],
            return_exceptions=True,
        )
        for entry, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(f"Transfer to {entry.recipient} failed: {outcome}")
                result.per_recipient_errors[entry.recipient] = str(outcome)
                continue
            result.succeeded_amount += entry.amount
            result.transaction_hashes[entry.recipient] = str(outcome)

        if idx < len(batches) - 1 and inter_batch_delay_s > 0:
            await sleep(inter_batch_delay_s)

    logger.info(
        f"Distribution finished: {len(result.transaction_hashes)} ok, "
        f"{len(result.per_recipient_errors)} failed, "
        f"{result.succeeded_amount} distributed"
    )
    return result
