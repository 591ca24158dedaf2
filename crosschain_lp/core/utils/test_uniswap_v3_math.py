from __future__ import annotations

import math
import random
import time

import pytest

from crosschain_lp.core.utils.uniswap_v3_math import (
    MAX_UINT128,
    Q96,
    amounts_for_liq,
    calculate_tick_range,
    collect_params,
    deadline,
    liq_for_amounts,
    parse_position_struct,
    price_from_sqrt_price_x96,
    price_to_tick,
    round_tick_down,
    round_tick_up,
    slippage_min,
    sort_tokens,
    sqrt_price_x96_from_tick,
    tick_to_price,
)

MOCK_OWNER = "0xaAaAaAaaAaAaAaaAaAAAAAAAAaaaAaAaAaaAaaAa"
MOCK_TOKEN0 = "0x1111111111111111111111111111111111111111"
MOCK_TOKEN1 = "0x3333333333333333333333333333333333333333"
MOCK_OPERATOR = "0x0000000000000000000000000000000000000000"

RAW_POSITION = (
    0,  # nonce
    MOCK_OPERATOR,  # operator
    MOCK_TOKEN0,  # token0
    MOCK_TOKEN1,  # token1
    3000,  # fee
    -60,  # tickLower
    60,  # tickUpper
    1_000_000,  # liquidity
    100,  # feeGrowthInside0LastX128
    200,  # feeGrowthInside1LastX128
    500,  # tokensOwed0
    600,  # tokensOwed1
)


# ── tick math (pure) ──


def test_round_tick_down_and_up_handle_negatives():
    assert round_tick_down(125, 60) == 120
    assert round_tick_down(-125, 60) == -180
    assert round_tick_up(125, 60) == 180
    assert round_tick_up(-125, 60) == -120
    assert round_tick_up(120, 60) == 120
    assert round_tick_down(-120, 60) == -120


def test_calculate_tick_range_five_percent():
    # ln(1.05)/ln(1.0001) ~= 487.9 -> 488
    lower, upper = calculate_tick_range(0, 60, 0.05)
    assert (lower, upper) == (-540, 540)


@pytest.mark.parametrize("spacing", [1, 10, 60, 200])
def test_calculate_tick_range_properties(spacing):
    rng = random.Random(11)
    for _ in range(200):
        tick = rng.randint(-200_000, 200_000)
        pct = rng.choice([0.001, 0.01, 0.05, 0.1, 0.3])
        lower, upper = calculate_tick_range(tick, spacing, pct)

        assert lower <= tick <= upper
        assert lower % spacing == 0 and upper % spacing == 0
        assert upper > lower
        delta = round(math.log(1 + pct) / math.log(1.0001))
        assert tick - lower >= delta
        assert upper - tick >= delta


def test_calculate_tick_range_rejects_bad_inputs():
    with pytest.raises(ValueError):
        calculate_tick_range(0, 0, 0.05)
    with pytest.raises(ValueError):
        calculate_tick_range(0, 60, 0)


def test_sqrt_price_from_tick_zero_is_q96():
    assert sqrt_price_x96_from_tick(0) == Q96
    assert sqrt_price_x96_from_tick(-100) < Q96 < sqrt_price_x96_from_tick(100)
    with pytest.raises(ValueError):
        sqrt_price_x96_from_tick(900_000)


def test_price_and_tick_conversions():
    assert price_from_sqrt_price_x96(Q96) == pytest.approx(1.0)
    assert price_from_sqrt_price_x96(2 * Q96) == pytest.approx(4.0)
    assert price_from_sqrt_price_x96(0) == 0.0
    assert price_to_tick(tick_to_price(1000) * 1.00001) == 1000


def test_liquidity_round_trip_in_range():
    sqrt_p = sqrt_price_x96_from_tick(0)
    sqrt_a = sqrt_price_x96_from_tick(-600)
    sqrt_b = sqrt_price_x96_from_tick(600)

    liquidity = liq_for_amounts(sqrt_p, sqrt_a, sqrt_b, 10**18, 10**18)
    amount0, amount1 = amounts_for_liq(sqrt_p, sqrt_a, sqrt_b, liquidity)

    assert liquidity > 0
    assert amount0 <= 10**18 and amount1 <= 10**18
    assert max(amount0, amount1) >= 10**18 * 0.999


def test_liquidity_out_of_range_uses_single_side():
    sqrt_a = sqrt_price_x96_from_tick(100)
    sqrt_b = sqrt_price_x96_from_tick(200)
    below = sqrt_price_x96_from_tick(0)

    liquidity = liq_for_amounts(below, sqrt_a, sqrt_b, 10**18, 10**18)
    amount0, amount1 = amounts_for_liq(below, sqrt_a, sqrt_b, liquidity)

    assert amount1 == 0
    assert amount0 > 0


# ── struct + params ──


def test_parse_position_struct():
    pos = parse_position_struct(RAW_POSITION)
    assert pos["token0"].lower() == MOCK_TOKEN0.lower()
    assert pos["fee"] == 3000
    assert pos["tick_lower"] == -60
    assert pos["liquidity"] == 1_000_000
    assert pos["tokens_owed0"] == 500
    assert pos["tokens_owed1"] == 600


def test_collect_params_and_slippage():
    assert collect_params(7, MOCK_OWNER) == (7, MOCK_OWNER, MAX_UINT128, MAX_UINT128)
    assert slippage_min(10_000, 50) == 9_950
    assert slippage_min(10_000, 20_000) == 0
    assert deadline(60) >= int(time.time()) + 59


def test_sort_tokens_orders_by_address():
    t0, t1 = sort_tokens(MOCK_TOKEN1, MOCK_TOKEN0)
    assert t0.lower() == MOCK_TOKEN0.lower()
    assert t1.lower() == MOCK_TOKEN1.lower()
