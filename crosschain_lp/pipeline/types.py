from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from crosschain_lp.core.config import FundingSource
from crosschain_lp.pipeline.steps import Step


def utcnow() -> datetime:
    return datetime.now(UTC)


class TransferStatus(StrEnum):
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class RebalanceReason(StrEnum):
    PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
    FEES_HIGH = "FEES_HIGH"
    SIGNIFICANT_MOVE = "SIGNIFICANT_MOVE"
    MANUAL = "MANUAL"


# ── persisted step snapshots ──


class FundResult(BaseModel):
    source: FundingSource
    amount: int = 0
    withdrawal_id: str | None = None
    tx_hash: str | None = None
    status: TransferStatus = TransferStatus.SUBMITTED


class BridgeResult(BaseModel):
    tool: str | None = None
    route_id: str | None = None
    from_amount: int = 0
    to_amount: int = 0
    min_amount_out: int = 0
    approval_tx_hash: str | None = None
    tx_hash: str | None = None
    receiving_tx_hash: str | None = None
    status: TransferStatus = TransferStatus.SUBMITTED


class SwapResult(BaseModel):
    token_in: str
    token_out: str
    amount_in: int = 0
    min_amount_out: int = 0
    balance_out_before: int = 0
    amount_out: int = 0
    tx_hash: str | None = None
    status: TransferStatus = TransferStatus.SUBMITTED


class Position(BaseModel):
    token0: str
    token1: str
    fee: int
    token_id: int
    tick_lower: int
    tick_upper: int
    liquidity: int
    amount0: int
    amount1: int
    # token1 raw units per token0 raw unit, read from the pool.
    last_price: float
    last_observed_price: float
    opened_at: datetime = Field(default_factory=utcnow)
    last_harvest_at: datetime | None = None


class PositionResult(BaseModel):
    tick_lower: int
    tick_upper: int
    amount0_desired: int
    amount1_desired: int
    tx_hash: str | None = None
    position: Position | None = None
    status: TransferStatus = TransferStatus.SUBMITTED


class CollectResult(BaseModel):
    owed0: int = 0
    owed1: int = 0
    collect_tx_hash: str | None = None
    reinvest0: int = 0
    reinvest1: int = 0
    reinvest_tx_hash: str | None = None
    cash_out0: int = 0
    cash_out1: int = 0
    cash_out_tx_hash: str | None = None
    skipped_reason: str | None = None
    status: TransferStatus = TransferStatus.SUBMITTED


class HarvestRecord(BaseModel):
    at: datetime = Field(default_factory=utcnow)
    price: float
    owed0: int = 0
    owed1: int = 0
    reinvest0: int = 0
    reinvest1: int = 0
    cash_out0: int = 0
    cash_out1: int = 0
    rebalanced: bool = False
    reason: RebalanceReason | None = None
    tx_hashes: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None


class HarvestProgress(BaseModel):
    """A triggered harvest cycle that has started moving funds.

    The live position stays on ``results.position`` until ``reopen`` is
    confirmed, so an interrupted cycle is resumed from here instead of from
    the already closed position.
    """

    price: float
    owed0: int = 0
    owed1: int = 0
    reason: RebalanceReason | None = None
    close_tx_hash: str | None = None
    reopen: PositionResult | None = None
    started_at: datetime = Field(default_factory=utcnow)

    def to_record(self) -> HarvestRecord:
        hashes = [self.close_tx_hash, self.reopen.tx_hash if self.reopen else None]
        return HarvestRecord(
            price=self.price,
            owed0=self.owed0,
            owed1=self.owed1,
            # Fees come back with the principal and go into the new position.
            reinvest0=self.owed0,
            reinvest1=self.owed1,
            rebalanced=True,
            reason=self.reason,
            tx_hashes=[h for h in hashes if h],
        )


class StepResults(BaseModel):
    fund: FundResult | None = None
    bridge: BridgeResult | None = None
    swap: SwapResult | None = None
    position: PositionResult | None = None
    collect: CollectResult | None = None


class StepError(BaseModel):
    code: str
    message: str
    retryable: bool = False


class ExecutionState(BaseModel):
    wallet_address: str
    derivation_index: int | None = None
    current_step: Step = Step.IDLE
    failed_step: Step | None = None
    error: StepError | None = None
    dry_run: bool = False
    results: StepResults = Field(default_factory=StepResults)
    harvests: list[HarvestRecord] = Field(default_factory=list)
    pending_harvest: HarvestProgress | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def position(self) -> Position | None:
        snapshot = self.results.position
        return snapshot.position if snapshot is not None else None

    def summary(self) -> dict[str, Any]:
        return {
            "address": self.wallet_address,
            "step": str(self.current_step),
            "failed_step": str(self.failed_step) if self.failed_step else None,
            "error": self.error.model_dump() if self.error else None,
            "dry_run": self.dry_run,
            "harvests": len(self.harvests),
            "harvest_pending": self.pending_harvest is not None,
            "updated_at": self.updated_at.isoformat(),
        }


# ── ephemeral liquidity values ──


@dataclass(frozen=True)
class FeeSnapshot:
    owed0: int
    owed1: int
    price: float
    tick: int
    # Value in token1 raw units.
    value0: float
    value1: float

    @property
    def total_value(self) -> float:
        return self.value0 + self.value1


@dataclass(frozen=True)
class HarvestBreakdown:
    reinvest0: int
    reinvest1: int
    cash_out0: int
    cash_out1: int
    reinvest_value: float
    cash_out_value: float

    @property
    def is_empty(self) -> bool:
        return not (self.reinvest0 or self.reinvest1 or self.cash_out0 or self.cash_out1)


@dataclass(frozen=True)
class RebalanceDecision:
    should_rebalance: bool
    reason: RebalanceReason | None = None
    fee_value: float = 0.0
    gas_threshold: float = 0.0
    price_change_percent: float = 0.0


@dataclass(frozen=True)
class PlanEntry:
    recipient: str
    amount: int


@dataclass
class DistributionResult:
    succeeded_amount: int = 0
    transaction_hashes: dict[str, str] = field(default_factory=dict)
    per_recipient_errors: dict[str, str] = field(default_factory=dict)
