"""Concentrated-liquidity decisions: range sizing, rebalance trigger, fee split.

All values are compared in one common unit, raw token1 units, using the
pool's own price (token1 per token0, from ``sqrtPriceX96``). No external price
source is consulted.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from loguru import logger

from crosschain_lp.core.config import LiquiditySettings
from crosschain_lp.core.utils.uniswap_v3_math import (
    amounts_for_liq,
    calculate_tick_range,
    liq_for_amounts,
    price_from_sqrt_price_x96,
    sqrt_price_x96_from_tick,
)
from crosschain_lp.pipeline.types import (
    FeeSnapshot,
    HarvestBreakdown,
    Position,
    RebalanceDecision,
    RebalanceReason,
)


def _dec(value: float | int) -> Decimal:
    return Decimal(str(value))


def _floor_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_DOWN))


class LiquidityEngine:
    def __init__(self, settings: LiquiditySettings | None = None):
        self.settings = settings or LiquiditySettings()

    def calculate_tick_range(
        self, current_tick: int, tick_spacing: int, range_percent: float | None = None
    ) -> tuple[int, int]:
        """Ticks bracketing the price by ``±range_percent`` (5 for 5%)."""
        pct = self.settings.range_percent if range_percent is None else range_percent
        return calculate_tick_range(current_tick, tick_spacing, pct / 100)

    def plan_amounts(
        self,
        *,
        balance0: int,
        balance1: int,
        sqrt_price_x96: int,
        tick_lower: int,
        tick_upper: int,
    ) -> tuple[int, int, int]:
        """Token amounts (and liquidity) to mint from the utilized balances."""
        utilization = _dec(self.settings.utilization_percent) / 100
        usable0 = _floor_int(Decimal(balance0) * utilization)
        usable1 = _floor_int(Decimal(balance1) * utilization)
        sqrt_a = sqrt_price_x96_from_tick(tick_lower)
        sqrt_b = sqrt_price_x96_from_tick(tick_upper)
        liquidity = liq_for_amounts(sqrt_price_x96, sqrt_a, sqrt_b, usable0, usable1)
        amount0, amount1 = amounts_for_liq(sqrt_price_x96, sqrt_a, sqrt_b, liquidity)
        return min(amount0, usable0), min(amount1, usable1), liquidity

    def fee_snapshot(
        self, owed0: int, owed1: int, sqrt_price_x96: int, tick: int
    ) -> FeeSnapshot:
        price = price_from_sqrt_price_x96(sqrt_price_x96)
        return FeeSnapshot(
            owed0=int(owed0),
            owed1=int(owed1),
            price=price,
            tick=int(tick),
            value0=float(Decimal(int(owed0)) * _dec(price)),
            value1=float(owed1),
        )

    def gas_cost_in_common_unit(self, gas_cost_wei: int, price: float) -> float:
        if self.settings.gas_token == "token1":
            return float(gas_cost_wei)
        return float(Decimal(int(gas_cost_wei)) * _dec(price))

    def evaluate_rebalance(
        self, position: Position, snapshot: FeeSnapshot, gas_cost_estimate: float
    ) -> RebalanceDecision:
        """Rebalance when fees beat ``gas * multiplier`` or price drifted too far.

        When neither trigger fires the position's ``last_observed_price`` is
        updated in place and no rebalance is reported.
        """
        fee_value = snapshot.total_value
        gas_threshold = float(gas_cost_estimate) * self.settings.fee_gas_multiplier

        change_pct = 0.0
        if position.last_price > 0:
            change_pct = (
                abs(snapshot.price - position.last_price) / position.last_price * 100
            )

        reason: RebalanceReason | None = None
        if fee_value > gas_threshold:
            reason = RebalanceReason.FEES_HIGH
        elif change_pct > self.settings.price_threshold_percent:
            reason = RebalanceReason.SIGNIFICANT_MOVE
            if not position.tick_lower <= snapshot.tick < position.tick_upper:
                reason = RebalanceReason.PRICE_OUT_OF_RANGE

        if reason is None:
            position.last_observed_price = snapshot.price
            logger.debug(
                f"No rebalance: fees {fee_value:.0f} <= {gas_threshold:.0f}, "
                f"price move {change_pct:.2f}%"
            )
        else:
            logger.info(
                f"Rebalance triggered ({reason}): fees {fee_value:.0f} vs gas "
                f"threshold {gas_threshold:.0f}, price move {change_pct:.2f}%"
            )

        return RebalanceDecision(
            should_rebalance=reason is not None,
            reason=reason,
            fee_value=fee_value,
            gas_threshold=gas_threshold,
            price_change_percent=change_pct,
        )

    def compute_harvest_breakdown(
        self, snapshot: FeeSnapshot, reinvest_percent: float | None = None
    ) -> HarvestBreakdown:
        """Split owed fees into reinvest and cash-out amounts.

        ``reinvest_percent`` applies to the combined value; that value is then
        mapped back onto each token by its share of the combined value, not by
        raw amount.
        """
        pct = self.settings.reinvest_percent if reinvest_percent is None else reinvest_percent
        if not 0 <= pct <= 100:
            raise ValueError("reinvest_percent must be within [0, 100]")

        value0 = _dec(snapshot.value0)
        value1 = _dec(snapshot.value1)
        total = value0 + value1
        if snapshot.owed0 == 0 and snapshot.owed1 == 0:
            return HarvestBreakdown(0, 0, 0, 0, 0.0, 0.0)
        if total <= 0:
            return HarvestBreakdown(0, 0, snapshot.owed0, snapshot.owed1, 0.0, 0.0)

        reinvest_value = total * _dec(pct) / 100
        reinvest0 = reinvest1 = 0
        if value0 > 0:
            share0_value = reinvest_value * value0 / total
            reinvest0 = _floor_int(Decimal(snapshot.owed0) * share0_value / value0)
        if value1 > 0:
            share1_value = reinvest_value * value1 / total
            reinvest1 = _floor_int(Decimal(snapshot.owed1) * share1_value / value1)

        reinvest0 = min(reinvest0, snapshot.owed0)
        reinvest1 = min(reinvest1, snapshot.owed1)
        return HarvestBreakdown(
            reinvest0=reinvest0,
            reinvest1=reinvest1,
            cash_out0=snapshot.owed0 - reinvest0,
            cash_out1=snapshot.owed1 - reinvest1,
            reinvest_value=float(reinvest_value),
            cash_out_value=float(total - reinvest_value),
        )

    def open_position(
        self,
        *,
        token0: str,
        token1: str,
        fee: int,
        token_id: int,
        tick_lower: int,
        tick_upper: int,
        liquidity: int,
        amount0: int,
        amount1: int,
        sqrt_price_x96: int,
    ) -> Position:
        price = price_from_sqrt_price_x96(sqrt_price_x96)
        return Position(
            token0=token0,
            token1=token1,
            fee=int(fee),
            token_id=int(token_id),
            tick_lower=int(tick_lower),
            tick_upper=int(tick_upper),
            liquidity=int(liquidity),
            amount0=int(amount0),
            amount1=int(amount1),
            last_price=price,
            last_observed_price=price,
        )
