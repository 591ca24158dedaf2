from __future__ import annotations

import random

import pytest

from crosschain_lp.core.errors import InsufficientFundsError, InvalidParametersError
from crosschain_lp.pipeline.distribution import (
    compute_random_parts,
    create_plan,
    execute_plan,
    plan_with_gas_reserve,
)

RECIPIENTS = [f"0x{i:040x}" for i in range(1, 11)]


# ── compute_random_parts ──


@pytest.mark.parametrize(
    "total,n,min_each",
    [(100, 10, 0), (100, 10, 10), (7, 3, 2), (1, 1, 1), (0, 4, 0), (10**18, 25, 10**15)],
)
def test_random_parts_sum_exactly_and_respect_floor(total, n, min_each):
    rng = random.Random(42)
    for _ in range(20):
        parts = compute_random_parts(total, n, min_each, rng=rng)
        assert len(parts) == n
        assert sum(parts) == total
        assert all(p >= min_each for p in parts)


def test_random_parts_rejects_impossible_floor():
    with pytest.raises(InvalidParametersError):
        compute_random_parts(10, 3, 4)


def test_random_parts_rejects_zero_slots():
    with pytest.raises(InvalidParametersError):
        compute_random_parts(10, 0, 0)


# ── create_plan ──


def test_equal_plan_ten_wallets():
    plan = create_plan(100, RECIPIENTS, 10)

    assert [e.amount for e in plan] == [10] * 10
    assert [e.recipient for e in plan] == RECIPIENTS


def test_equal_plan_last_absorbs_rounding_remainder():
    plan = create_plan(103, RECIPIENTS[:4])

    assert [e.amount for e in plan] == [25, 25, 25, 28]
    assert sum(e.amount for e in plan) == 103


def test_randomized_plan_within_variance_and_exact_sum():
    rng = random.Random(7)
    for _ in range(50):
        plan = create_plan(
            100, RECIPIENTS, 10, randomize=True, variance_percent=10, rng=rng
        )
        amounts = [e.amount for e in plan]
        assert sum(amounts) == 100
        assert all(9 <= a <= 11 for a in amounts[:-1])
        assert amounts[-1] >= 0


def test_randomized_plan_rescales_to_balance():
    rng = random.Random(3)
    plan = create_plan(
        50, RECIPIENTS, 10, randomize=True, variance_percent=15, min_amount=1, rng=rng
    )

    amounts = [e.amount for e in plan]
    assert sum(amounts) == 50
    assert all(a >= 1 for a in amounts)


def test_plan_respects_floor_or_fails():
    with pytest.raises(InsufficientFundsError):
        create_plan(5, RECIPIENTS, 1, min_amount=1)

    with pytest.raises(InvalidParametersError):
        create_plan(5, [], 1)


def test_plan_with_gas_reserve_caps_at_target():
    plan = plan_with_gas_reserve(1_000, RECIPIENTS[:4], 10, per_recipient_target=50)

    assert [e.amount for e in plan] == [50, 50, 50, 50]


def test_plan_with_gas_reserve_requires_headroom():
    with pytest.raises(InsufficientFundsError):
        plan_with_gas_reserve(30, RECIPIENTS[:4], 10)


# ── execute_plan ──


@pytest.mark.asyncio
async def test_execute_plan_batches_and_collects_failures():
    plan = create_plan(100, RECIPIENTS, 10)
    sent: list[str] = []
    sleeps: list[float] = []

    async def transfer(recipient: str, amount: int) -> str:
        if recipient == RECIPIENTS[4]:
            raise RuntimeError("nonce too low")
        sent.append(recipient)
        return f"0xhash{recipient[-2:]}"

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    result = await execute_plan(
        plan, transfer, batch_size=4, inter_batch_delay_s=2.0, sleep=fake_sleep
    )

    assert len(sent) == 9
    assert result.succeeded_amount == 90
    assert set(result.per_recipient_errors) == {RECIPIENTS[4]}
    assert "nonce too low" in result.per_recipient_errors[RECIPIENTS[4]]
    assert result.transaction_hashes[RECIPIENTS[0]] == "0xhash01"
    # three batches, two gaps
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_execute_plan_rejects_bad_batch_size():
    with pytest.raises(InvalidParametersError):
        await execute_plan([], lambda r, a: None, batch_size=0)
