"""Uniswap v3 math helpers.

Pure math (tick/price/liquidity conversions) plus the struct parsing and call
parameter helpers shared by the DEX adapter and the liquidity engine. No I/O.
"""

from __future__ import annotations

import math
import time
from decimal import Decimal, getcontext
from typing import TypedDict

from eth_utils import to_checksum_address

getcontext().prec = 64

Q96 = 1 << 96
Q96_DEC = Decimal(Q96)
TICK_BASE = 1.0001
MIN_TICK = -887272
MAX_TICK = 887272
MAX_UINT128 = 2**128 - 1


class PositionData(TypedDict):
    nonce: int
    operator: str
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    liquidity: int
    fee_growth_inside0_last_x128: int
    fee_growth_inside1_last_x128: int
    tokens_owed0: int
    tokens_owed1: int


def price_from_sqrt_price_x96(sqrt_price_x96: int) -> float:
    """Raw price (token1 units per token0 unit) from a pool's sqrtPriceX96."""
    if sqrt_price_x96 <= 0:
        return 0.0
    ratio = Decimal(int(sqrt_price_x96)) / Q96_DEC
    return float(ratio * ratio)


def tick_to_price(tick: int) -> float:
    return TICK_BASE**tick


def price_to_tick(price: float) -> int:
    if price <= 0:
        return MIN_TICK
    return int(math.floor(math.log(price) / math.log(TICK_BASE)))


def round_tick_down(tick: int, spacing: int) -> int:
    # // floors toward -inf, also for negative ticks
    return (tick // spacing) * spacing


def round_tick_up(tick: int, spacing: int) -> int:
    remainder = tick % spacing
    if remainder == 0:
        return tick
    return tick + (spacing - remainder)


def tick_delta_for_fraction(fraction: float) -> int:
    return round(math.log(1 + fraction) / math.log(TICK_BASE))


def calculate_tick_range(
    current_tick: int, tick_spacing: int, range_fraction: float
) -> tuple[int, int]:
    """Ticks bracketing ``current_tick`` by ``±range_fraction``.

    ``range_fraction`` is a fraction (0.05 for 5%). The lower bound rounds down
    and the upper bound rounds up to ``tick_spacing`` so the realized band never
    shrinks below the requested one.
    """
    if tick_spacing <= 0:
        raise ValueError("tick_spacing must be positive")
    if range_fraction <= 0:
        raise ValueError("range_fraction must be positive")

    delta = tick_delta_for_fraction(range_fraction)
    tick_lower = round_tick_down(int(current_tick) - delta, tick_spacing)
    tick_upper = round_tick_up(int(current_tick) + delta, tick_spacing)
    if tick_upper <= tick_lower:
        tick_upper = tick_lower + tick_spacing

    min_usable = round_tick_up(MIN_TICK, tick_spacing)
    max_usable = round_tick_down(MAX_TICK, tick_spacing)
    return max(tick_lower, min_usable), min(tick_upper, max_usable)


def sqrt_price_x96_from_tick(tick: int) -> int:
    if tick < MIN_TICK or tick > MAX_TICK:
        raise ValueError(f"tick {tick} out of range [{MIN_TICK}, {MAX_TICK}]")

    abs_tick = tick if tick >= 0 else -tick
    ratio = 0x100000000000000000000000000000000

    if abs_tick & 0x1:
        ratio = (ratio * 0xFFFCB933BD6FAD37AA2D162D1A594001) >> 128
    if abs_tick & 0x2:
        ratio = (ratio * 0xFFF97272373D413259A46990580E213A) >> 128
    if abs_tick & 0x4:
        ratio = (ratio * 0xFFF2E50F5F656932EF12357CF3C7FDCC) >> 128
    if abs_tick & 0x8:
        ratio = (ratio * 0xFFE5CACA7E10E4E61C3624EAA0941CD0) >> 128
    if abs_tick & 0x10:
        ratio = (ratio * 0xFFCB9843D60F6159C9DB58835C926644) >> 128
    if abs_tick & 0x20:
        ratio = (ratio * 0xFF973B41FA98C081472E6896DFB254C0) >> 128
    if abs_tick & 0x40:
        ratio = (ratio * 0xFF2EA16466C96A3843EC78B326B52861) >> 128
    if abs_tick & 0x80:
        ratio = (ratio * 0xFE5DEE046A99A2A811C461F1969C3053) >> 128
    if abs_tick & 0x100:
        ratio = (ratio * 0xFCBE86C7900A88AEDCFFC83B479AA3A4) >> 128
    if abs_tick & 0x200:
        ratio = (ratio * 0xF987A7253AC413176F2B074CF7815E54) >> 128
    if abs_tick & 0x400:
        ratio = (ratio * 0xF3392B0822B70005940C7A398E4B70F3) >> 128
    if abs_tick & 0x800:
        ratio = (ratio * 0xE7159475A2C29B7443B29C7FA6E889D9) >> 128
    if abs_tick & 0x1000:
        ratio = (ratio * 0xD097F3BDFD2022B8845AD8F792AA5825) >> 128
    if abs_tick & 0x2000:
        ratio = (ratio * 0xA9F746462D870FDF8A65DC1F90E061E5) >> 128
    if abs_tick & 0x4000:
        ratio = (ratio * 0x70D869A156D2A1B890BB3DF62BAF32F7) >> 128
    if abs_tick & 0x8000:
        ratio = (ratio * 0x31BE135F97D08FD981231505542FCFA6) >> 128
    if abs_tick & 0x10000:
        ratio = (ratio * 0x9AA508B5B7A84E1C677DE54F3E99BC9) >> 128
    if abs_tick & 0x20000:
        ratio = (ratio * 0x5D6AF8DEDB81196699C329225EE604) >> 128
    if abs_tick & 0x40000:
        ratio = (ratio * 0x2216E584F5FA1EA926041BEDFE98) >> 128
    if abs_tick & 0x80000:
        ratio = (ratio * 0x48A170391F7DC42444E8FA2) >> 128

    if tick > 0:
        ratio = ((1 << 256) - 1) // ratio

    sqrt_price_x96 = ratio >> 32
    if ratio & ((1 << 32) - 1):
        sqrt_price_x96 += 1
    return int(sqrt_price_x96)


def _sorted_bounds(sqrt_a: int, sqrt_b: int) -> tuple[Decimal, Decimal]:
    a, b = sorted((Decimal(sqrt_a), Decimal(sqrt_b)))
    return a, b


def amt0_for_liq(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    a, b = _sorted_bounds(sqrt_a, sqrt_b)
    return int((Decimal(liquidity) * (b - a) * Q96_DEC) / (a * b))


def amt1_for_liq(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    a, b = _sorted_bounds(sqrt_a, sqrt_b)
    return int((Decimal(liquidity) * (b - a)) / Q96_DEC)


def liq_for_amt0(sqrt_a: int, sqrt_b: int, amount0: int) -> int:
    a, b = _sorted_bounds(sqrt_a, sqrt_b)
    return int((Decimal(amount0) * a * b) / (Q96_DEC * (b - a)))


def liq_for_amt1(sqrt_a: int, sqrt_b: int, amount1: int) -> int:
    a, b = _sorted_bounds(sqrt_a, sqrt_b)
    return int((Decimal(amount1) * Q96_DEC) / (b - a))


def liq_for_amounts(
    sqrt_p: int, sqrt_a: int, sqrt_b: int, amount0: int, amount1: int
) -> int:
    a, b = _sorted_bounds(sqrt_a, sqrt_b)
    p = Decimal(sqrt_p)
    if p <= a:
        return liq_for_amt0(int(a), int(b), amount0)
    if p >= b:
        return liq_for_amt1(int(a), int(b), amount1)
    return min(
        liq_for_amt0(int(p), int(b), amount0), liq_for_amt1(int(a), int(p), amount1)
    )


def amounts_for_liq(
    sqrt_p: int, sqrt_a: int, sqrt_b: int, liquidity: int
) -> tuple[int, int]:
    a, b = _sorted_bounds(sqrt_a, sqrt_b)
    p = Decimal(sqrt_p)
    if p <= a:
        return amt0_for_liq(int(a), int(b), liquidity), 0
    if p < b:
        return (
            amt0_for_liq(int(p), int(b), liquidity),
            amt1_for_liq(int(a), int(p), liquidity),
        )
    return 0, amt1_for_liq(int(a), int(b), liquidity)


def parse_position_struct(raw: tuple) -> PositionData:
    return PositionData(
        nonce=int(raw[0]),
        operator=to_checksum_address(raw[1]),
        token0=to_checksum_address(raw[2]),
        token1=to_checksum_address(raw[3]),
        fee=int(raw[4]),
        tick_lower=int(raw[5]),
        tick_upper=int(raw[6]),
        liquidity=int(raw[7]),
        fee_growth_inside0_last_x128=int(raw[8]),
        fee_growth_inside1_last_x128=int(raw[9]),
        tokens_owed0=int(raw[10]),
        tokens_owed1=int(raw[11]),
    )


def collect_params(token_id: int, recipient: str) -> tuple:
    return (int(token_id), recipient, MAX_UINT128, MAX_UINT128)


def slippage_min(amount: int, slippage_bps: int) -> int:
    bps = max(0, min(10_000, int(slippage_bps)))
    return max(0, (int(amount) * (10_000 - bps)) // 10_000)


def deadline(seconds: int = 300) -> int:
    return int(time.time()) + seconds


def sort_tokens(token_a: str, token_b: str) -> tuple[str, str]:
    a = to_checksum_address(token_a)
    b = to_checksum_address(token_b)
    return (a, b) if int(a, 16) < int(b, 16) else (b, a)
